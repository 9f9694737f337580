from typing import Dict, Any, Optional, Literal, Set, Callable, Type
from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny
from pydantic_core import PydanticSerializationError
from datetime import datetime
from enum import Enum
import json


class EventType(str, Enum):
    """All event types published by the agent core"""
    # Conversation lifecycle
    CONVERSATION_STARTED = "conversation:started"
    CONVERSATION_ENDED = "conversation:ended"
    CONVERSATION_PAUSED = "conversation:paused"
    CONVERSATION_RESUMED = "conversation:resumed"

    # Loop phases
    AGENT_PHASE_STARTED = "agent:phase:started"
    AGENT_PHASE_COMPLETED = "agent:phase:completed"

    # Tool execution
    TOOL_EXECUTION_STARTED = "tool:execution:started"
    TOOL_EXECUTION_COMPLETED = "tool:execution:completed"
    TOOL_EXECUTION_ERROR = "tool:execution:error"

    # Human interaction
    USER_INTERACTION_REQUIRED = "user:interaction:required"
    USER_INPUT_RECEIVED = "user:input:received"

    # Responses
    RESPONSE_GENERATED = "response:generated"

    # System
    SYSTEM_INFO = "system:info"
    SYSTEM_WARNING = "system:warning"
    SYSTEM_ERROR = "system:error"


ALL_EVENTS = "*"

# Visible through a conversation filter even without a conversation id
ALWAYS_VISIBLE_TYPES = frozenset({EventType.SYSTEM_ERROR})


class EventPayload(BaseModel):
    """Fields shared by every payload"""
    model_config = ConfigDict(frozen=True, extra="allow")

    conversation_id: Optional[str] = None
    correlation_id: Optional[str] = None
    source: Optional[str] = None
    timestamp: Optional[datetime] = None


class ConversationPayload(EventPayload):
    user_message: Optional[str] = None
    final_status: Optional[str] = None
    duration_ms: Optional[float] = None
    iterations: Optional[int] = None
    cleared: bool = False


class PhasePayload(EventPayload):
    phase: str
    iteration: int = 0
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ToolExecutionPayload(EventPayload):
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: Optional[float] = None


class ResponsePayload(EventPayload):
    content: str
    is_final: bool = True


class InteractionPayload(EventPayload):
    interaction_type: str = "request_input"
    details: Dict[str, Any] = Field(default_factory=dict)
    value: Any = None


class SystemPayload(EventPayload):
    message: str
    level: Literal["info", "warning", "error"] = "info"
    details: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


PAYLOAD_TYPES: Dict[EventType, Type[EventPayload]] = {
    EventType.CONVERSATION_STARTED: ConversationPayload,
    EventType.CONVERSATION_ENDED: ConversationPayload,
    EventType.CONVERSATION_PAUSED: InteractionPayload,
    EventType.CONVERSATION_RESUMED: InteractionPayload,
    EventType.AGENT_PHASE_STARTED: PhasePayload,
    EventType.AGENT_PHASE_COMPLETED: PhasePayload,
    EventType.TOOL_EXECUTION_STARTED: ToolExecutionPayload,
    EventType.TOOL_EXECUTION_COMPLETED: ToolExecutionPayload,
    EventType.TOOL_EXECUTION_ERROR: ToolExecutionPayload,
    EventType.USER_INTERACTION_REQUIRED: InteractionPayload,
    EventType.USER_INPUT_RECEIVED: InteractionPayload,
    EventType.RESPONSE_GENERATED: ResponsePayload,
    EventType.SYSTEM_INFO: SystemPayload,
    EventType.SYSTEM_WARNING: SystemPayload,
    EventType.SYSTEM_ERROR: SystemPayload,
}


class Event(BaseModel):
    """Immutable record of something that happened"""
    model_config = ConfigDict(frozen=True)

    type: EventType
    payload: SerializeAsAny[EventPayload]
    timestamp: datetime
    id: str

    @property
    def conversation_id(self) -> Optional[str]:
        return self.payload.conversation_id

    def to_message(self) -> Dict[str, Any]:
        """Wire form handed to consumers"""
        try:
            return self.model_dump(mode="json")
        except PydanticSerializationError:
            # Tool results may carry objects pydantic cannot encode
            return json.loads(json.dumps(self.model_dump(), default=str))


class EventFilter(BaseModel):
    """Criteria for querying the event history"""
    types: Optional[Set[EventType]] = None
    conversation_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    predicate: Optional[Callable[[Event], bool]] = None

    def matches(self, event: Event) -> bool:
        if self.types is not None and event.type not in self.types:
            return False
        if self.conversation_id is not None and event.conversation_id != self.conversation_id:
            if not (event.type in ALWAYS_VISIBLE_TYPES and event.conversation_id is None):
                return False
        if self.since is not None and event.timestamp < self.since:
            return False
        if self.until is not None and event.timestamp > self.until:
            return False
        if self.predicate is not None and not self.predicate(event):
            return False
        return True

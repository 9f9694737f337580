from typing import Dict, Any, List, Optional, Callable, Awaitable, Union
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum

from codeagent.domain.events.event_dispatcher import EventDispatcher
from codeagent.domain.events.event_types import EventType, EventPayload


class ToolErrorKind(str, Enum):
    """Why a tool call failed"""
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    PERMISSION_DENIED = "permission_denied"
    EXECUTION = "execution"
    TIMEOUT = "timeout"


class ToolStatus(str, Enum):
    USER_INPUT_REQUESTED = "user_input_requested"


class ToolResult(BaseModel):
    """Outcome of one tool call"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0
    error_kind: Optional[ToolErrorKind] = None
    status: Optional[str] = None
    correlation_id: Optional[str] = None

    @property
    def permission_denied(self) -> bool:
        return self.error_kind == ToolErrorKind.PERMISSION_DENIED

    @property
    def awaiting_input(self) -> bool:
        return self.status == ToolStatus.USER_INPUT_REQUESTED.value

    @classmethod
    def failure(cls, error: str, kind: ToolErrorKind, **kwargs) -> "ToolResult":
        return cls(success=False, error=error, error_kind=kind, **kwargs)


class ToolExecutionContext(BaseModel):
    """What a running tool can see of its surroundings"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    conversation_id: Optional[str] = None
    correlation_id: Optional[str] = None
    dispatcher: Optional[EventDispatcher] = None
    host: Dict[str, Any] = Field(default_factory=dict, description="Host surfaces such as file system or terminal")
    granted_permissions: List[str] = Field(default_factory=list)

    def publish(
        self,
        event_type: EventType,
        payload: Union[EventPayload, Dict[str, Any], None] = None,
        forced_id: Optional[str] = None
    ):
        """Dispatch an event tagged with this call's conversation and correlation ids"""
        if self.dispatcher is None:
            return None
        if payload is None:
            payload = {}
        elif isinstance(payload, EventPayload):
            payload = payload.model_dump(exclude_unset=True)
        else:
            payload = dict(payload)
        payload.setdefault("conversation_id", self.conversation_id)
        payload.setdefault("correlation_id", self.correlation_id)
        return self.dispatcher.dispatch(event_type, payload, forced_id=forced_id)


ToolCallable = Callable[[Dict[str, Any], ToolExecutionContext], Union[Any, Awaitable[Any]]]


class ToolDefinition(BaseModel):
    """A named capability the agent can invoke"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(min_length=1)
    description: str
    parameters_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    required_permissions: List[str] = Field(default_factory=list)
    execute: ToolCallable
    category: str = "general"
    interactive: bool = False
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

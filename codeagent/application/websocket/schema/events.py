from typing import Dict, Any, Optional, List, Literal, Union
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from codeagent.domain.models.conversation_state import utcnow


class MessageType(str, Enum):
    """WebSocket message types"""
    AGENT_EVENT = "agent_event"
    MARKDOWN = "markdown"
    COMPONENT = "component"
    ERROR = "error"
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"
    USER_INPUT = "user_input"


class ComponentType(str, Enum):
    """UI component types"""
    PROGRESS = "progress"
    UI_INTERACTION = "ui_interaction"


class BaseEvent(BaseModel):
    """Base model for all WebSocket messages"""
    type: MessageType
    timestamp: datetime = Field(default_factory=utcnow)
    conversation_id: Optional[str] = None


class AgentEvent(BaseEvent):
    """A dispatcher event forwarded verbatim"""
    type: Literal[MessageType.AGENT_EVENT] = MessageType.AGENT_EVENT
    payload: Dict[str, Any]


class MarkdownEvent(BaseEvent):
    """Markdown content event for chat messages"""
    type: Literal[MessageType.MARKDOWN] = MessageType.MARKDOWN
    payload: str


class ProgressData(BaseModel):
    """Progress component data"""
    status: str
    phase: Optional[str] = None
    iteration: Optional[int] = None


class InteractionData(BaseModel):
    """A question the agent is waiting on"""
    correlation_id: str
    prompt: str
    input_type: Literal["text", "confirmation", "choice"] = "text"
    options: Optional[List[str]] = None


class ComponentPayload(BaseModel):
    """Component event payload"""
    component: ComponentType
    data: Union[ProgressData, InteractionData, Dict[str, Any]]


class ComponentEvent(BaseEvent):
    """Component event for UI interactions"""
    type: Literal[MessageType.COMPONENT] = MessageType.COMPONENT
    payload: ComponentPayload


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[MessageType.ERROR] = MessageType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[MessageType.CONNECTION] = MessageType.CONNECTION
    status: Literal["connected", "disconnected", "reconnecting"]


class UserMessage(BaseEvent):
    """User message from the client"""
    type: Literal[MessageType.USER_MESSAGE] = MessageType.USER_MESSAGE
    content: str = Field(min_length=1)
    context: Optional[Dict[str, Any]] = None


class UserInputMessage(BaseEvent):
    """Answer to a pending interaction"""
    type: Literal[MessageType.USER_INPUT] = MessageType.USER_INPUT
    correlation_id: str
    value: Any = None

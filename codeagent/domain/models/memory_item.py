from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
import uuid

from .conversation_state import utcnow


class MemoryKind(str, Enum):
    """What a memory item is about"""
    CONTEXT = "context"
    CODEBASE = "codebase"
    USER = "user"
    TOOL_RESULT = "tool_result"
    REASONING = "reasoning"


class MemoryItem(BaseModel):
    """A unit of remembered information"""
    id: str = Field(default_factory=lambda: f"mem_{uuid.uuid4().hex[:12]}")
    kind: MemoryKind = MemoryKind.CONTEXT
    content: Any = None
    relevance: float = Field(default=0.5, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Optional[Dict[str, Any]] = None

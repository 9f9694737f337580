from typing import Dict, Any, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum
import json


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CompletionStatus(str, Enum):
    """Run status; completed and failed are terminal"""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class HistoryPhase(str, Enum):
    """Loop stage that produced a history entry"""
    USER_INPUT = "user_input"
    REASONING = "reasoning"
    ACTION = "action"
    REFLECTION = "reflection"
    CORRECTION = "correction"
    RESPONSE_GENERATION = "responseGeneration"
    SYSTEM_MESSAGE = "system_message"
    TOOL_OUTPUT_ANALYSIS = "toolOutputAnalysis"


class EntryStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class HistoryEntry(BaseModel):
    """Append-only audit line of a conversation"""
    model_config = ConfigDict(frozen=True)

    phase: HistoryPhase
    iteration: int = Field(ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def status(self) -> Optional[str]:
        return self.metadata.get("status")


class ToolExecutionRecord(BaseModel):
    """Nested record of one capability call, stored on action entries"""
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    success: bool
    duration_ms: float = 0.0


class ReasoningResult(BaseModel):
    """Latest reasoning output kept on the state"""
    reasoning: str = ""
    tool_name: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class ActionResult(BaseModel):
    """Latest action outcome kept on the state"""
    tool_name: str
    params: Dict[str, Any] = Field(default_factory=dict)
    success: bool
    result: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class PendingInteraction(BaseModel):
    """A run suspended until the user answers a request"""
    correlation_id: str
    tool_name: str
    prompt: Optional[str] = None
    requested_at: datetime = Field(default_factory=utcnow)


class ConversationState(BaseModel):
    """Mutable record of one conversation"""
    conversation_id: str
    objective: str = ""
    user_message: str = ""
    iteration_count: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=10, ge=1)
    completion_status: CompletionStatus = Field(default=CompletionStatus.IN_PROGRESS)
    error: Optional[str] = None
    reasoning_result: Optional[ReasoningResult] = None
    action_result: Optional[ActionResult] = None
    reflection_result: Optional[Dict[str, Any]] = None
    correction_result: Optional[Dict[str, Any]] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    project_context: Optional[Dict[str, Any]] = None
    editor_context: Optional[Dict[str, Any]] = None
    final_output: Optional[str] = None
    memory_summary: str = ""
    pending_interaction: Optional[PendingInteraction] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.completion_status != CompletionStatus.IN_PROGRESS

    @property
    def is_paused(self) -> bool:
        return self.pending_interaction is not None

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None

    def begin_run(self):
        """Reset per-run fields before a new run of the loop"""
        self.completion_status = CompletionStatus.IN_PROGRESS
        self.iteration_count = 0
        self.error = None
        self.final_output = None
        self.reasoning_result = None
        self.action_result = None
        self.reflection_result = None
        self.correction_result = None
        self.pending_interaction = None
        self.metrics = {}
        self.started_at = utcnow()
        self.ended_at = None

    def add_history(
        self,
        phase: HistoryPhase,
        content: Union[str, Dict[str, Any], List[Any]],
        **metadata: Any
    ) -> HistoryEntry:
        """Append a history entry; structured content is stored as pretty JSON"""
        if not isinstance(content, str):
            content = json.dumps(content, indent=2, default=str)
        metadata.setdefault("status", EntryStatus.SUCCESS.value)
        entry = HistoryEntry(
            phase=phase,
            iteration=self.iteration_count,
            content=content,
            metadata=metadata
        )
        self.history.append(entry)
        return entry

    def complete(self) -> bool:
        """Mark the run completed; no-op once terminal"""
        if self.is_terminal:
            return False
        self.completion_status = CompletionStatus.COMPLETED
        return True

    def fail(self, error: Optional[str] = None) -> bool:
        """Mark the run failed; no-op once terminal"""
        if self.is_terminal:
            return False
        self.completion_status = CompletionStatus.FAILED
        if error:
            self.error = error
        return True

    def record_error(self, error: str):
        """Record a non-fatal error, keeping earlier ones"""
        self.error = f"{self.error}; {error}" if self.error else error

    def recent_history(self, limit: int) -> List[HistoryEntry]:
        return self.history[-limit:] if limit > 0 else []

    def last_user_input(self) -> Optional[HistoryEntry]:
        for entry in reversed(self.history):
            if entry.phase == HistoryPhase.USER_INPUT:
                return entry
        return None

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "conversation_id": self.conversation_id,
            "status": self.completion_status.value,
            "iteration_count": self.iteration_count,
            "max_iterations": self.max_iterations,
            "history_length": len(self.history),
            "final_output": self.final_output,
            "error": self.error,
            "paused": self.is_paused,
            "pending_correlation_id": self.pending_interaction.correlation_id if self.pending_interaction else None,
            "started_at": self.started_at.isoformat(),
            "ended": self.is_ended
        }

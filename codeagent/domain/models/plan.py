from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum
import uuid


class AnalysisType(str, Enum):
    """Routing decision of the request classifier"""
    DIRECT_ACTION = "direct_action"
    PLANNING_NEEDED = "planning_needed"


class AnalysisResult(BaseModel):
    """Classifier output for one request"""
    type: AnalysisType = AnalysisType.PLANNING_NEEDED
    tool_name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    category: str = "other"
    reason: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return self.type == AnalysisType.DIRECT_ACTION and bool(self.tool_name)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanStep(BaseModel):
    """One tool call of a plan"""
    id: str = Field(default_factory=lambda: f"step_{uuid.uuid4().hex[:8]}")
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    required: bool = True
    fallback_step: Optional[int] = Field(None, description="Index of the step to run if this one fails")
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: Optional[str] = None


class PlanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Plan(BaseModel):
    """Ordered list of steps produced by a planner"""
    id: str = Field(default_factory=lambda: f"plan_{uuid.uuid4().hex[:8]}")
    goal: str
    steps: List[PlanStep] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.PENDING

    def fallback_targets(self) -> set:
        """Indices only reachable as another step's fallback"""
        return {
            step.fallback_step for step in self.steps
            if step.fallback_step is not None and 0 <= step.fallback_step < len(self.steps)
        }

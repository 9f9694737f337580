from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field

from codeagent.domain.models.conversation_state import ConversationState, HistoryEntry
from codeagent.domain.models.plan import AnalysisResult, Plan
from codeagent.domain.tool.tool_models import ToolDefinition


class ReasoningOutput(BaseModel):
    """One decision of the reasoning service"""
    thought: str = ""
    capability_name: Optional[str] = None
    capability_input: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class ReasoningService(ABC):
    """Decides the next step of a conversation"""

    @abstractmethod
    async def generate_reasoning(
        self,
        state: ConversationState,
        capability_descriptions: str,
        history_window: List[HistoryEntry]
    ) -> ReasoningOutput:
        pass

    @abstractmethod
    async def generate_final_response(self, state: ConversationState) -> str:
        pass


class Planner(ABC):
    """Turns a request into an ordered plan of tool calls"""

    @abstractmethod
    async def create_plan(self, state: ConversationState, capability_descriptions: str) -> Plan:
        pass


class RequestClassifier(ABC):
    """Decides whether a request maps onto a single tool call"""

    @abstractmethod
    async def classify(self, message: str, tools: List[ToolDefinition]) -> AnalysisResult:
        pass

from typing import TypedDict, Dict, Any, Optional, Literal
import asyncio
import uuid

from langgraph.graph import StateGraph, END
import structlog

from codeagent.domain.models.conversation_state import (
    ConversationState,
    EntryStatus,
    HistoryPhase,
)
from codeagent.domain.models.plan import AnalysisResult, Plan
from codeagent.domain.orchestration.core.base_strategy import BaseConversationStrategy
from codeagent.domain.orchestration.core.reasoning import Planner, RequestClassifier
from codeagent.domain.tool.tool_models import ToolResult
from .input_analyzer import KeywordInputAnalyzer
from .workflow_executor import WorkflowExecutor

logger = structlog.get_logger(__name__)


class RouterState(TypedDict):
    """State for the routing graph"""
    conversation: ConversationState
    analysis: Optional[AnalysisResult]
    plan: Optional[Plan]
    direct_result: Optional[ToolResult]


class OrchestrationRouter(BaseConversationStrategy):
    """Analyze-then-act strategy built on LangGraph.

    Simple requests that map onto one tool with explicit parameters run
    as a single direct action. Everything else, including a direct action
    that failed, goes through a planner and the plan executor. Either
    path ends in a synthesized answer.
    """

    name = "orchestration_router"

    def __init__(
        self,
        *args,
        planner: Planner,
        classifier: Optional[RequestClassifier] = None,
        **kwargs
    ):
        super().__init__(*args, **kwargs)
        self.planner = planner
        self.classifier = classifier or KeywordInputAnalyzer()
        self.executor = WorkflowExecutor(self._execute_step, self._await_user_input)
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the routing graph"""

        workflow = StateGraph(RouterState)

        workflow.add_node("analyze", self.analyze_node)
        workflow.add_node("direct_action", self.direct_action_node)
        workflow.add_node("create_plan", self.plan_node)
        workflow.add_node("execute_plan", self.execute_plan_node)
        workflow.add_node("synthesize", self.synthesize_node)

        workflow.set_entry_point("analyze")

        workflow.add_conditional_edges(
            "analyze",
            self.route_after_analysis,
            {
                "direct_action": "direct_action",
                "plan": "create_plan",
                "finish": END
            }
        )
        workflow.add_conditional_edges(
            "direct_action",
            self.route_after_direct_action,
            {
                "synthesize": "synthesize",
                "plan": "create_plan",
                "finish": END
            }
        )
        workflow.add_conditional_edges(
            "create_plan",
            self.route_after_planning,
            {
                "execute_plan": "execute_plan",
                "synthesize": "synthesize",
                "finish": END
            }
        )
        workflow.add_conditional_edges(
            "execute_plan",
            self.route_after_execution,
            {
                "synthesize": "synthesize",
                "finish": END
            }
        )
        workflow.add_edge("synthesize", END)

        return workflow.compile()

    async def _run(self, state: ConversationState) -> None:
        initial: RouterState = {
            "conversation": state,
            "analysis": None,
            "plan": None,
            "direct_result": None
        }
        await self.workflow.ainvoke(initial)

    # Nodes

    async def analyze_node(self, graph_state: RouterState) -> Dict[str, Any]:
        """Classify the request"""
        state = graph_state["conversation"]
        self._phase_started(state, HistoryPhase.REASONING, {"step": "analyze"})

        try:
            analysis = await asyncio.wait_for(
                self.classifier.classify(state.user_message, self.registry.list_tools()),
                timeout=self.settings.reasoning_timeout_seconds
            )
        except asyncio.TimeoutError:
            analysis = AnalysisResult(reason="Classification timed out")
        except Exception as e:
            logger.error("classification_failed", error=str(e), exc_info=True)
            analysis = AnalysisResult(reason=f"Classification failed: {e}")

        state.add_history(HistoryPhase.REASONING, analysis.model_dump(mode="json"), step="analyze")
        self._phase_completed(
            state, HistoryPhase.REASONING,
            {"step": "analyze", "type": analysis.type.value, "tool_name": analysis.tool_name}
        )
        return {"analysis": analysis}

    async def direct_action_node(self, graph_state: RouterState) -> Dict[str, Any]:
        """Run the single tool the analysis picked"""
        state = graph_state["conversation"]
        analysis = graph_state["analysis"]

        state.iteration_count += 1
        params = dict(analysis.parameters)
        result = await self._execute_step(state, analysis.tool_name, params, str(uuid.uuid4()))

        if result.awaiting_input:
            if not await self._await_user_input(state, analysis.tool_name, result):
                result = ToolResult(success=False, error="No answer from the user")

        if result.success and analysis.tool_name in self.settings.response_tool_names:
            state.final_output = self._response_text(result, params)
            state.complete()
        elif not result.success:
            if result.permission_denied:
                state.fail(result.error)
            else:
                state.record_error(f"Direct action '{analysis.tool_name}' failed: {result.error}")
                logger.info("direct_action_fell_back_to_planning", tool_name=analysis.tool_name)

        return {"direct_result": result}

    async def plan_node(self, graph_state: RouterState) -> Dict[str, Any]:
        """Ask the planner for a plan"""
        state = graph_state["conversation"]
        self._phase_started(state, HistoryPhase.REASONING, {"step": "plan"})

        error = None
        plan = None
        try:
            plan = await asyncio.wait_for(
                self.planner.create_plan(state, self.registry.describe_tools()),
                timeout=self.settings.reasoning_timeout_seconds
            )
        except asyncio.TimeoutError:
            error = "Planning timed out"
        except Exception as e:
            logger.error("planning_failed", error=str(e), exc_info=True)
            error = f"Planning failed: {e}"

        if plan is not None:
            state.add_history(HistoryPhase.REASONING, plan.model_dump(mode="json"), step="plan")
        else:
            state.add_history(HistoryPhase.REASONING, error, step="plan", status=EntryStatus.ERROR.value, error=error)
            state.fail(error)

        self._phase_completed(
            state, HistoryPhase.REASONING,
            {"step": "plan", "steps": len(plan.steps) if plan else 0},
            error=error
        )
        return {"plan": plan}

    async def execute_plan_node(self, graph_state: RouterState) -> Dict[str, Any]:
        """Run the plan's steps"""
        state = graph_state["conversation"]
        plan = graph_state["plan"]

        outcome = await self.executor.execute_plan(state, plan)
        if not outcome.success:
            state.fail(outcome.error)
        return {"plan": plan}

    async def synthesize_node(self, graph_state: RouterState) -> Dict[str, Any]:
        """Produce the final answer"""
        state = graph_state["conversation"]
        if not state.final_output:
            state.final_output = await self._generate_final_response(state)
        state.complete()
        return {"plan": graph_state["plan"]}

    # Routing

    def route_after_analysis(self, graph_state: RouterState) -> Literal["direct_action", "plan", "finish"]:
        state = graph_state["conversation"]
        analysis = graph_state["analysis"]

        if state.is_terminal:
            return "finish"
        if (
            analysis is not None
            and analysis.is_direct
            and analysis.confidence >= self.settings.direct_action_confidence
            and self.registry.get(analysis.tool_name) is not None
        ):
            return "direct_action"
        return "plan"

    def route_after_direct_action(self, graph_state: RouterState) -> Literal["synthesize", "plan", "finish"]:
        state = graph_state["conversation"]
        result = graph_state["direct_result"]

        if state.is_terminal:
            return "finish"
        if result is not None and result.success:
            return "synthesize"
        return "plan"

    def route_after_planning(self, graph_state: RouterState) -> Literal["execute_plan", "synthesize", "finish"]:
        state = graph_state["conversation"]
        plan = graph_state["plan"]

        if state.is_terminal:
            return "finish"
        if plan is None or not plan.steps:
            return "synthesize"
        return "execute_plan"

    def route_after_execution(self, graph_state: RouterState) -> Literal["synthesize", "finish"]:
        return "finish" if graph_state["conversation"].is_terminal else "synthesize"

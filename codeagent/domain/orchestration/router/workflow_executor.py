from typing import Dict, Any, List, Optional, Callable, Awaitable, Set
from dataclasses import dataclass, field
import uuid

import structlog

from codeagent.domain.models.conversation_state import ConversationState, EntryStatus, HistoryPhase
from codeagent.domain.models.plan import Plan, PlanStatus, PlanStep, StepStatus
from codeagent.domain.orchestration.core.base_strategy import MAX_ITERATIONS_NOTE
from codeagent.domain.tool.tool_models import ToolErrorKind, ToolResult

logger = structlog.get_logger(__name__)

StepRunner = Callable[[ConversationState, str, Dict[str, Any], Optional[str]], Awaitable[ToolResult]]
InputAwaiter = Callable[[ConversationState, str, ToolResult], Awaitable[bool]]


@dataclass
class PlanOutcome:
    success: bool
    fatal: bool = False
    exhausted: bool = False
    error: Optional[str] = None
    results: List[Dict[str, Any]] = field(default_factory=list)


class WorkflowExecutor:
    """Runs the steps of a plan in order.

    A failed step hands over to its fallback step when it has one. Steps
    that are some other step's fallback only ever run in that role. A
    required step that fails with no working fallback aborts the plan;
    an optional one is logged and skipped. Permission denial aborts at
    once. Reaching the iteration ceiling stops the plan without failing
    it; the steps that did not run are skipped.
    """

    def __init__(self, run_step: StepRunner, await_input: InputAwaiter):
        self.run_step = run_step
        self.await_input = await_input

    async def execute_plan(self, state: ConversationState, plan: Plan) -> PlanOutcome:
        plan.status = PlanStatus.RUNNING
        fallback_only = plan.fallback_targets()
        outcome = PlanOutcome(success=True)

        for index, step in enumerate(plan.steps):
            if index in fallback_only:
                continue

            succeeded = await self._run_with_fallback(state, plan, index, set(), outcome)
            if outcome.exhausted:
                break
            if outcome.fatal:
                plan.status = PlanStatus.FAILED
                outcome.success = False
                return outcome

            if succeeded:
                continue

            if step.required:
                plan.status = PlanStatus.FAILED
                outcome.success = False
                outcome.error = f"Required step '{step.description or step.tool_name}' failed: {step.error}"
                logger.warning("plan_aborted", plan_id=plan.id, step_id=step.id, error=step.error)
                return outcome

            logger.info("optional_step_skipped", plan_id=plan.id, step_id=step.id, error=step.error)
            state.add_history(
                HistoryPhase.SYSTEM_MESSAGE,
                f"Optional step '{step.description or step.tool_name}' failed and was skipped",
                status=EntryStatus.SKIPPED.value,
                step_id=step.id
            )

        if outcome.exhausted:
            logger.warning("max_iterations_reached", plan_id=plan.id, iterations=state.iteration_count)
            state.add_history(HistoryPhase.SYSTEM_MESSAGE, MAX_ITERATIONS_NOTE, status=EntryStatus.ERROR.value)

        for step in plan.steps:
            if step.status == StepStatus.PENDING:
                step.status = StepStatus.SKIPPED

        plan.status = PlanStatus.COMPLETED
        return outcome

    async def _run_with_fallback(
        self,
        state: ConversationState,
        plan: Plan,
        index: int,
        visited: Set[int],
        outcome: PlanOutcome
    ) -> bool:
        if state.iteration_count >= state.max_iterations:
            outcome.exhausted = True
            return False

        visited.add(index)
        step = plan.steps[index]
        result = await self._run_single(state, step)
        outcome.results.append({
            "step_id": step.id,
            "tool_name": step.tool_name,
            "success": result.success,
            "result": result.data,
            "error": result.error,
        })

        if result.success:
            return True

        if result.permission_denied:
            outcome.fatal = True
            outcome.error = result.error
            return False

        fallback = step.fallback_step
        if fallback is not None and 0 <= fallback < len(plan.steps) and fallback not in visited:
            logger.info("running_fallback_step", failed_step=step.id, fallback_index=fallback)
            return await self._run_with_fallback(state, plan, fallback, visited, outcome)
        return False

    async def _run_single(self, state: ConversationState, step: PlanStep) -> ToolResult:
        state.iteration_count += 1
        step.status = StepStatus.RUNNING
        result = await self.run_step(state, step.tool_name, step.parameters, str(uuid.uuid4()))

        if result.awaiting_input:
            answered = await self.await_input(state, step.tool_name, result)
            if not answered:
                result = ToolResult.failure("No answer from the user", ToolErrorKind.TIMEOUT)

        if result.success:
            step.status = StepStatus.COMPLETED
            step.result = result.data
        else:
            step.status = StepStatus.FAILED
            step.error = result.error
        return result

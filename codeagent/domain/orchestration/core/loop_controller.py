from typing import Optional
import asyncio
import time
import uuid

import structlog

from codeagent.domain.context.history_window import HistoryWindow
from codeagent.domain.models.conversation_state import (
    ConversationState,
    EntryStatus,
    HistoryPhase,
    ReasoningResult,
)
from codeagent.domain.models.memory_item import MemoryKind
from .base_strategy import MAX_ITERATIONS_NOTE, BaseConversationStrategy
from .reasoning import ReasoningOutput

logger = structlog.get_logger(__name__)

NO_CAPABILITY_NOTE = "No capability selected; continuing."


class LoopController(BaseConversationStrategy):
    """Bounded reason/act loop.

    Each iteration asks the reasoning service for the next step and runs
    the selected tool. The run ends when a response tool delivers the
    answer, when reasoning selects nothing (under the default "respond"
    policy), on a fatal error, or when the iteration ceiling is hit; in
    the last two non-fatal cases a final response is generated.
    """

    name = "loop_controller"

    def __init__(self, *args, history_window: Optional[HistoryWindow] = None, **kwargs):
        super().__init__(*args, **kwargs)
        if self.reasoning is None:
            raise ValueError("LoopController requires a reasoning service")
        self.history_window = history_window or HistoryWindow(self.settings.history_window)

    async def _run(self, state: ConversationState) -> None:
        ready_to_answer = False

        while state.iteration_count < state.max_iterations and not state.is_terminal:
            state.iteration_count += 1
            state.memory_summary = self.memory.get_summary(state.conversation_id)

            reasoning = await self._reason(state)
            if state.is_terminal:
                break

            if not reasoning.capability_name:
                if self.settings.no_capability_action == "continue":
                    state.add_history(
                        HistoryPhase.SYSTEM_MESSAGE, NO_CAPABILITY_NOTE,
                        status=EntryStatus.SKIPPED.value
                    )
                    continue
                ready_to_answer = True
                break

            await self._act(state, reasoning)

        if state.is_terminal:
            return

        if not ready_to_answer and state.iteration_count >= state.max_iterations:
            logger.warning("max_iterations_reached", iterations=state.iteration_count)
            state.add_history(HistoryPhase.SYSTEM_MESSAGE, MAX_ITERATIONS_NOTE, status=EntryStatus.ERROR.value)

        if not state.final_output:
            state.final_output = await self._generate_final_response(state)
        state.complete()

    async def _reason(self, state: ConversationState) -> ReasoningOutput:
        self._phase_started(state, HistoryPhase.REASONING)
        window = self.history_window.select(state)
        started = time.perf_counter()

        try:
            output = await asyncio.wait_for(
                self.reasoning.generate_reasoning(state, self.registry.describe_tools(), window),
                timeout=self.settings.reasoning_timeout_seconds
            )
        except asyncio.TimeoutError:
            output = ReasoningOutput(
                error=f"Reasoning timed out after {self.settings.reasoning_timeout_seconds}s"
            )
        except Exception as e:
            logger.error("reasoning_failed", error=str(e), exc_info=True)
            output = ReasoningOutput(error=f"Reasoning service error: {e}")

        state.metrics["reasoning_ms"] = state.metrics.get("reasoning_ms", 0.0) + (time.perf_counter() - started) * 1000
        state.reasoning_result = ReasoningResult(
            reasoning=output.thought,
            tool_name=output.capability_name,
            params=output.capability_input,
            error=output.error
        )
        state.add_history(
            HistoryPhase.REASONING,
            {
                "thought": output.thought,
                "capability_name": output.capability_name,
                "capability_input": output.capability_input,
            },
            status=EntryStatus.ERROR.value if output.error else EntryStatus.SUCCESS.value,
            error=output.error
        )
        if output.thought:
            self.memory.add_short_term(
                state.conversation_id, MemoryKind.REASONING, output.thought, relevance=0.4
            )

        if output.error:
            if output.capability_name:
                state.record_error(output.error)
            else:
                state.fail(output.error)

        self._phase_completed(
            state, HistoryPhase.REASONING,
            {"capability_name": output.capability_name},
            error=output.error
        )
        return output

    async def _act(self, state: ConversationState, reasoning: ReasoningOutput):
        tool_name = reasoning.capability_name
        params = dict(reasoning.capability_input or {})
        correlation_id = str(uuid.uuid4())

        result = await self._execute_step(state, tool_name, params, correlation_id)

        if result.awaiting_input:
            await self._await_user_input(state, tool_name, result)
            return

        if tool_name in self.settings.response_tool_names:
            if result.success:
                state.final_output = self._response_text(result, params)
                state.complete()
            else:
                state.fail(result.error)
            return

        if result.success:
            return

        if result.permission_denied:
            state.fail(result.error)
        else:
            state.record_error(f"Tool '{tool_name}' failed: {result.error}")

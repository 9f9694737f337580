from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
import asyncio
import json
import time
import traceback
import uuid

import structlog

from codeagent.domain.context.memory_manager import MemoryManager
from codeagent.domain.context.state.state_store import ConversationStateStore
from codeagent.domain.events.event_dispatcher import EventDispatcher
from codeagent.domain.events.event_types import (
    ConversationPayload,
    EventType,
    InteractionPayload,
    PhasePayload,
    ResponsePayload,
    SystemPayload,
)
from codeagent.domain.models.conversation_state import (
    ActionResult,
    CompletionStatus,
    ConversationState,
    EntryStatus,
    HistoryPhase,
    PendingInteraction,
    ToolExecutionRecord,
)
from codeagent.domain.models.memory_item import MemoryKind
from codeagent.domain.tool.tool_models import ToolExecutionContext, ToolResult
from codeagent.domain.tool.tool_registry import ToolRegistry
from codeagent.infrastructure.config.settings import AgentSettings
from codeagent.infrastructure.observability.logging import agent_logger
from .interaction_broker import InteractionBroker
from .reasoning import ReasoningService

logger = structlog.get_logger(__name__)

FALLBACK_RESPONSE = "I was not able to put together a complete answer for this request."
MAX_ITERATIONS_NOTE = "Max iterations reached."
RESPONSE_KEYS = ("message", "response", "content", "answer")


class BaseConversationStrategy(ABC):
    """Base class for strategies that drive one run of a conversation.

    `run` wraps the strategy body with the lifecycle every strategy
    shares: the started event, conversion of unexpected exceptions into a
    failed run, exactly one terminal event followed by the ended event,
    and a best-effort save of the state.
    """

    name = "strategy"

    def __init__(
        self,
        dispatcher: EventDispatcher,
        registry: ToolRegistry,
        memory: MemoryManager,
        reasoning: Optional[ReasoningService] = None,
        settings: Optional[AgentSettings] = None,
        state_store: Optional[ConversationStateStore] = None,
        broker: Optional[InteractionBroker] = None,
        host: Optional[Dict[str, Any]] = None
    ):
        self.dispatcher = dispatcher
        self.registry = registry
        self.memory = memory
        self.reasoning = reasoning
        self.settings = settings or AgentSettings()
        self.state_store = state_store
        self.broker = broker or InteractionBroker(dispatcher)
        self.host = host or {}

    @abstractmethod
    async def _run(self, state: ConversationState) -> None:
        """Strategy body; leaves the state terminal or in progress"""
        pass

    async def run(self, state: ConversationState) -> ConversationState:
        with structlog.contextvars.bound_contextvars(conversation_id=state.conversation_id, strategy=self.name):
            started = time.perf_counter()
            failure_details = None
            self._publish(
                EventType.CONVERSATION_STARTED, state,
                ConversationPayload(user_message=state.user_message)
            )
            try:
                await self._load_memory(state)
                await self._run(state)
            except asyncio.CancelledError:
                state.fail("Run cancelled")
                raise
            except Exception as e:
                logger.error("conversation_run_failed", error=str(e), exc_info=True)
                state.fail(f"Unexpected error: {e}")
                failure_details = {
                    "error_type": type(e).__name__,
                    "stack": "".join(traceback.format_exception(type(e), e, e.__traceback__))
                }
            finally:
                state.pending_interaction = None
                state.metrics["total_duration_ms"] = (time.perf_counter() - started) * 1000
                state.metrics["iterations"] = state.iteration_count
                await self._finalize(state, failure_details)
                await self._persist(state)

        return state

    # Lifecycle

    async def _load_memory(self, state: ConversationState):
        self.memory.update_context(
            state.conversation_id,
            user_query=state.user_message,
            active_file=(state.editor_context or {}).get("active_file"),
            workspace_root=(state.project_context or {}).get("workspace_root")
        )
        await self.memory.retrieve_relevant(state.user_message, conversation_id=state.conversation_id)
        state.memory_summary = self.memory.get_summary(state.conversation_id)

    async def _finalize(self, state: ConversationState, failure_details: Optional[Dict[str, Any]] = None):
        """Publish the one terminal event and the ended event"""

        if state.completion_status == CompletionStatus.IN_PROGRESS:
            state.fail("Run ended without reaching a terminal status")

        if state.completion_status == CompletionStatus.COMPLETED and state.final_output:
            self._publish(
                EventType.RESPONSE_GENERATED, state,
                ResponsePayload(content=state.final_output, is_final=True)
            )
            await self._remember_answer(state)
        elif state.completion_status == CompletionStatus.FAILED:
            self._publish(
                EventType.SYSTEM_ERROR, state,
                SystemPayload(
                    message=f"Conversation failed: {state.error or 'unknown error'}",
                    level="error",
                    error=state.error,
                    details={"iterations": state.iteration_count, **(failure_details or {})}
                )
            )
        else:
            self._publish(
                EventType.SYSTEM_WARNING, state,
                SystemPayload(
                    message="Conversation completed without a final response",
                    level="warning",
                    details={"iterations": state.iteration_count}
                )
            )

        self._publish(
            EventType.CONVERSATION_ENDED, state,
            ConversationPayload(
                final_status=state.completion_status.value,
                duration_ms=state.metrics.get("total_duration_ms"),
                iterations=state.iteration_count
            )
        )

    async def _remember_answer(self, state: ConversationState):
        if not self.settings.persist_final_answers:
            return
        await self.memory.persist_long_term(
            MemoryKind.CONTEXT,
            {"question": state.user_message, "answer": state.final_output},
            relevance=0.8,
            tags=["final_answer"],
            conversation_id=state.conversation_id
        )

    async def _persist(self, state: ConversationState):
        if self.state_store is None:
            return
        try:
            await self.state_store.update(state)
        except Exception as e:
            logger.error("state_persist_failed", error=str(e), exc_info=True)

    # Steps shared by strategies

    async def _execute_step(
        self,
        state: ConversationState,
        tool_name: str,
        params: Dict[str, Any],
        correlation_id: Optional[str] = None
    ) -> ToolResult:
        """Run one tool call and record it on the state"""

        correlation_id = correlation_id or str(uuid.uuid4())
        self._phase_started(state, HistoryPhase.ACTION, {"tool_name": tool_name, "correlation_id": correlation_id})

        context = ToolExecutionContext(
            conversation_id=state.conversation_id,
            correlation_id=correlation_id,
            dispatcher=self.dispatcher,
            host=self.host
        )
        result = await self.registry.execute(tool_name, params, context)

        record = ToolExecutionRecord(
            name=tool_name,
            parameters=params,
            result=result.data,
            error=result.error,
            success=result.success,
            duration_ms=result.execution_time_ms
        )
        state.action_result = ActionResult(
            tool_name=tool_name,
            params=params,
            success=result.success,
            result=result.data,
            error=result.error
        )

        content: Dict[str, Any] = {"tool_name": tool_name, "params": params, "success": result.success}
        if result.success:
            content["result"] = result.data
        else:
            content["error"] = result.error
        state.add_history(
            HistoryPhase.ACTION,
            content,
            status=EntryStatus.SUCCESS.value if result.success else EntryStatus.ERROR.value,
            error=result.error,
            error_kind=result.error_kind.value if result.error_kind else None,
            correlation_id=result.correlation_id or correlation_id,
            tool_executions=[record.model_dump()]
        )

        state.metrics["tool_executions"] = state.metrics.get("tool_executions", 0) + 1
        state.metrics["tool_ms"] = state.metrics.get("tool_ms", 0.0) + result.execution_time_ms

        if result.success and not result.awaiting_input:
            self.memory.add_short_term(
                state.conversation_id,
                MemoryKind.TOOL_RESULT,
                {"tool": tool_name, "result": result.data},
                relevance=0.7,
                metadata={"correlation_id": correlation_id}
            )

        self._phase_completed(
            state, HistoryPhase.ACTION,
            {"tool_name": tool_name, "success": result.success},
            error=result.error
        )
        return result

    async def _await_user_input(self, state: ConversationState, tool_name: str, result: ToolResult) -> bool:
        """Suspend the run until the user answers; False when the wait timed out"""

        correlation_id = result.correlation_id
        prompt = result.data.get("prompt") if isinstance(result.data, dict) else None
        state.pending_interaction = PendingInteraction(
            correlation_id=correlation_id,
            tool_name=tool_name,
            prompt=prompt
        )
        await self._persist(state)
        self._publish(
            EventType.CONVERSATION_PAUSED, state,
            InteractionPayload(
                correlation_id=correlation_id,
                interaction_type="awaiting_input",
                details={"tool_name": tool_name, "prompt": prompt}
            )
        )

        try:
            value = await self.broker.wait_for(
                correlation_id, timeout=self.settings.user_input_timeout_seconds
            )
        except asyncio.TimeoutError:
            state.pending_interaction = None
            message = f"Timed out waiting for user input ({correlation_id})"
            state.record_error(message)
            state.add_history(
                HistoryPhase.SYSTEM_MESSAGE, message,
                status=EntryStatus.ERROR.value, correlation_id=correlation_id
            )
            logger.warning("user_input_timeout", correlation_id=correlation_id, tool_name=tool_name)
            return False

        state.pending_interaction = None
        state.add_history(
            HistoryPhase.USER_INPUT,
            value if value is not None else "",
            sender="user",
            correlation_id=correlation_id,
            in_reply_to=tool_name
        )
        self.memory.add_short_term(
            state.conversation_id,
            MemoryKind.USER,
            value,
            relevance=0.9,
            metadata={"correlation_id": correlation_id, "prompt": prompt}
        )
        self._publish(
            EventType.CONVERSATION_RESUMED, state,
            InteractionPayload(
                correlation_id=correlation_id,
                interaction_type="input_received",
                value=value
            )
        )
        return True

    async def _generate_final_response(self, state: ConversationState) -> str:
        self._phase_started(state, HistoryPhase.RESPONSE_GENERATION)
        text = None
        error = None

        if self.reasoning is not None:
            try:
                text = await asyncio.wait_for(
                    self.reasoning.generate_final_response(state),
                    timeout=self.settings.reasoning_timeout_seconds
                )
            except asyncio.TimeoutError:
                error = "Final response generation timed out"
            except Exception as e:
                logger.error("final_response_failed", error=str(e), exc_info=True)
                error = f"Final response generation failed: {e}"

        if error:
            state.record_error(error)
        if not text:
            text = self._fallback_response(state)

        state.add_history(
            HistoryPhase.RESPONSE_GENERATION, text,
            status=EntryStatus.ERROR.value if error else EntryStatus.SUCCESS.value,
            error=error
        )
        self._phase_completed(state, HistoryPhase.RESPONSE_GENERATION, error=error)
        return text

    @staticmethod
    def _fallback_response(state: ConversationState) -> str:
        action = state.action_result
        if action is not None and action.success and action.result is not None:
            result = action.result
            if isinstance(result, dict) and isinstance(result.get("message"), str):
                return result["message"]
            return f"Result of {action.tool_name}: {result}"
        return FALLBACK_RESPONSE

    @staticmethod
    def _response_text(result: ToolResult, params: Dict[str, Any]) -> str:
        """Answer text carried by a response tool's result or its parameters"""
        data = result.data
        if isinstance(data, str):
            return data
        if isinstance(data, dict):
            for key in RESPONSE_KEYS:
                if isinstance(data.get(key), str):
                    return data[key]
        for key in RESPONSE_KEYS:
            if isinstance(params.get(key), str):
                return params[key]
        if data is None:
            return ""
        return json.dumps(data, indent=2, default=str)

    # Events

    def _publish(self, event_type: EventType, state: ConversationState, payload=None, **fields):
        if payload is None:
            payload = fields
        elif fields:
            payload = payload.model_copy(update=fields)
        if isinstance(payload, dict):
            payload.setdefault("conversation_id", state.conversation_id)
            payload.setdefault("source", self.name)
        else:
            updates = {}
            if payload.conversation_id is None:
                updates["conversation_id"] = state.conversation_id
            if payload.source is None:
                updates["source"] = self.name
            if updates:
                payload = payload.model_copy(update=updates)
        return self.dispatcher.dispatch(event_type, payload)

    def _phase_started(self, state: ConversationState, phase: HistoryPhase, data: Optional[Dict[str, Any]] = None):
        agent_logger.log_phase_transition(state.conversation_id, phase.value, "started", state.iteration_count)
        self._publish(
            EventType.AGENT_PHASE_STARTED, state,
            PhasePayload(phase=phase.value, iteration=state.iteration_count, data=data)
        )

    def _phase_completed(
        self,
        state: ConversationState,
        phase: HistoryPhase,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ):
        agent_logger.log_phase_transition(
            state.conversation_id, phase.value,
            "failed" if error else "completed", state.iteration_count, error
        )
        self._publish(
            EventType.AGENT_PHASE_COMPLETED, state,
            PhasePayload(phase=phase.value, iteration=state.iteration_count, data=data, error=error)
        )

    def get_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "tools": [tool.name for tool in self.registry.list_tools()],
            "max_iterations": self.settings.max_iterations,
        }


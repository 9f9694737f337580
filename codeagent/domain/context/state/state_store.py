from typing import Dict, Any, List, Optional
from contextlib import asynccontextmanager
import asyncio

import structlog

from codeagent.domain.exceptions import ConversationBusyError, ConversationNotFoundError
from codeagent.domain.models.conversation_state import ConversationState, HistoryPhase, utcnow

logger = structlog.get_logger(__name__)


class ConversationStateStore:
    """Owns the ConversationState of every active conversation"""

    def __init__(self, max_iterations: int = 10):
        self.states: Dict[str, ConversationState] = {}
        self.max_iterations = max_iterations
        self._lock = asyncio.Lock()
        self._active_runs: set = set()

    async def get_or_create(
        self,
        conversation_id: str,
        user_message: str,
        context_data: Optional[Dict[str, Any]] = None
    ) -> ConversationState:
        """Fetch the state for a new user message, creating it on first use.

        A reused state keeps its history; the per-run fields are reset and
        the message is appended as a user_input entry.
        """
        context_data = context_data or {}

        async with self._lock:
            state = self.states.get(conversation_id)
            reused = state is not None

            if state is None:
                state = ConversationState(
                    conversation_id=conversation_id,
                    max_iterations=self.max_iterations
                )
                self.states[conversation_id] = state

            state.begin_run()
            state.user_message = user_message
            state.objective = f"Respond to: {user_message[:100]}"
            if context_data.get("project_context") is not None:
                state.project_context = context_data["project_context"]
            if context_data.get("editor_context") is not None:
                state.editor_context = context_data["editor_context"]

            state.add_history(
                HistoryPhase.USER_INPUT,
                user_message,
                sender="user",
                context_data=context_data
            )

        logger.info(
            "conversation_state_reused" if reused else "conversation_state_created",
            conversation_id=conversation_id,
            history_length=len(state.history)
        )
        return state

    async def get(self, conversation_id: str) -> Optional[ConversationState]:
        async with self._lock:
            return self.states.get(conversation_id)

    async def require(self, conversation_id: str) -> ConversationState:
        state = await self.get(conversation_id)
        if state is None:
            raise ConversationNotFoundError(conversation_id)
        return state

    async def update(self, state: ConversationState):
        async with self._lock:
            self.states[state.conversation_id] = state

    async def end(self, conversation_id: str) -> Optional[ConversationState]:
        """Close a conversation.

        The state stays readable until cleared; the next message reopens it.
        Raises ConversationBusyError while a run is active.
        """
        async with self._lock:
            if conversation_id in self._active_runs:
                raise ConversationBusyError(conversation_id)
            state = self.states.get(conversation_id)
            if state is not None and state.ended_at is None:
                state.ended_at = utcnow()
        if state is not None:
            logger.info(
                "conversation_ended",
                conversation_id=conversation_id,
                status=state.completion_status.value
            )
        return state

    async def clear(self, conversation_id: str) -> bool:
        async with self._lock:
            removed = self.states.pop(conversation_id, None) is not None
        logger.info("conversation_state_cleared", conversation_id=conversation_id, removed=removed)
        return removed

    async def list_conversations(self) -> List[str]:
        async with self._lock:
            return list(self.states.keys())

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._active_runs

    @asynccontextmanager
    async def run_guard(self, conversation_id: str):
        """Hold the run slot of a conversation; a second concurrent run is rejected"""
        async with self._lock:
            if conversation_id in self._active_runs:
                raise ConversationBusyError(conversation_id)
            self._active_runs.add(conversation_id)
        try:
            yield
        finally:
            self._active_runs.discard(conversation_id)

from typing import Dict, Any, Optional
import asyncio

import structlog

from codeagent.domain.context.memory_manager import MemoryManager
from codeagent.domain.context.state.state_store import ConversationStateStore
from codeagent.domain.events.event_dispatcher import EventDispatcher
from codeagent.domain.events.event_types import Event, EventType, InteractionPayload
from codeagent.domain.exceptions import ConversationBusyError
from codeagent.domain.models.conversation_state import ConversationState
from codeagent.domain.models.memory_item import MemoryKind
from codeagent.domain.tool.permission_manager import PermissionManager
from .base_strategy import BaseConversationStrategy

logger = structlog.get_logger(__name__)


class ConversationService:
    """Entry point for hosts: one call per user message"""

    def __init__(
        self,
        strategy: BaseConversationStrategy,
        state_store: ConversationStateStore,
        memory: MemoryManager,
        dispatcher: EventDispatcher,
        permission_manager: Optional[PermissionManager] = None
    ):
        self.strategy = strategy
        self.state_store = state_store
        self.memory = memory
        self.dispatcher = dispatcher
        self.permission_manager = permission_manager
        self._background: set = set()

    async def handle_message(
        self,
        conversation_id: str,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ConversationState:
        """Run the strategy for a new user message and return the final state"""

        context = context or {}
        async with self.state_store.run_guard(conversation_id):
            state = await self.state_store.get_or_create(conversation_id, message, context)
            self._remember_editor_context(conversation_id, context)

            logger.info("handling_message", conversation_id=conversation_id, message_length=len(message))
            state = await self.strategy.run(state)
            await self.state_store.update(state)
            return state

    def start_message(
        self,
        conversation_id: str,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ) -> asyncio.Task:
        """Run handle_message in the background; busy conversations are rejected up front"""

        if self.state_store.is_running(conversation_id):
            raise ConversationBusyError(conversation_id)

        task = asyncio.get_running_loop().create_task(
            self.handle_message(conversation_id, message, context)
        )
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def submit_user_input(self, conversation_id: str, correlation_id: str, value: Any) -> Event:
        """Deliver the user's answer to a paused run"""

        return self.dispatcher.dispatch(
            EventType.USER_INPUT_RECEIVED,
            InteractionPayload(
                conversation_id=conversation_id,
                correlation_id=correlation_id,
                interaction_type="response",
                value=value,
                source="user"
            )
        )

    async def get_state(self, conversation_id: str) -> Optional[ConversationState]:
        return await self.state_store.get(conversation_id)

    async def end_conversation(self, conversation_id: str) -> Optional[ConversationState]:
        state = await self.state_store.end(conversation_id)
        if self.permission_manager is not None:
            self.permission_manager.clear_session_permissions(conversation_id)
        return state

    async def clear_conversation(self, conversation_id: str) -> bool:
        removed = await self.state_store.clear(conversation_id)
        self.memory.clear_conversation(conversation_id)
        if self.permission_manager is not None:
            self.permission_manager.clear_session_permissions(conversation_id)
        self.dispatcher.system_info(
            "Conversation cleared",
            conversation_id=conversation_id,
            source="ConversationService"
        )
        return removed

    def _remember_editor_context(self, conversation_id: str, context: Dict[str, Any]):
        editor = context.get("editor_context") or {}
        project = context.get("project_context") or {}
        self.memory.update_context(
            conversation_id,
            active_file=editor.get("active_file"),
            workspace_root=project.get("workspace_root"),
            code_context=editor.get("selection")
        )
        if editor.get("selection"):
            self.memory.add_short_term(
                conversation_id,
                MemoryKind.CODEBASE,
                {"file": editor.get("active_file"), "selection": editor["selection"]},
                relevance=0.6
            )

    def _on_background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, ConversationBusyError):
            logger.warning("background_run_rejected", conversation_id=error.conversation_id)
        elif error is not None:
            logger.error("background_run_failed", error=str(error), error_type=type(error).__name__)

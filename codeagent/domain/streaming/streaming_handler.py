from typing import Dict, Any, Optional, Callable
import structlog

from codeagent.application.websocket.connection_manager import ConnectionManager
from codeagent.application.websocket.schema.events import (
    AgentEvent, MarkdownEvent, ComponentEvent, ComponentPayload,
    ComponentType, InteractionData, ProgressData
)
from codeagent.domain.events.event_dispatcher import EventDispatcher
from codeagent.domain.events.event_types import ALL_EVENTS, Event, EventType

logger = structlog.get_logger(__name__)

PHASE_LABELS = {
    "reasoning": "Thinking...",
    "action": "Running a tool...",
    "responseGeneration": "Writing the answer...",
}


class StreamingHandler:
    """Streams dispatcher events of a conversation to its WebSocket client"""

    def __init__(self, dispatcher: EventDispatcher, connection_manager: Optional[ConnectionManager] = None):
        self.dispatcher = dispatcher
        self.connection_manager = connection_manager or ConnectionManager()
        self._subscriptions: Dict[str, Callable[[], None]] = {}

    def attach(self, conversation_id: str) -> Callable[[], None]:
        """Start forwarding the conversation's events; returns the detach callable"""

        self.detach(conversation_id)

        async def forward(event: Event):
            if event.conversation_id != conversation_id:
                return
            await self.handle_event(conversation_id, event)

        unsubscribe = self.dispatcher.subscribe(ALL_EVENTS, forward)
        self._subscriptions[conversation_id] = unsubscribe
        return lambda: self.detach(conversation_id)

    def detach(self, conversation_id: str):
        unsubscribe = self._subscriptions.pop(conversation_id, None)
        if unsubscribe is not None:
            unsubscribe()

    def detach_all(self):
        for conversation_id in list(self._subscriptions):
            self.detach(conversation_id)

    async def handle_event(self, conversation_id: str, event: Event):
        """Forward the raw event, then any UI component it maps to"""

        await self.connection_manager.send_event(
            conversation_id,
            AgentEvent(payload=event.to_message(), conversation_id=conversation_id)
        )

        payload = event.payload
        if event.type == EventType.AGENT_PHASE_STARTED:
            label = PHASE_LABELS.get(payload.phase, payload.phase)
            await self.send_progress(conversation_id, label, phase=payload.phase, iteration=payload.iteration)

        elif event.type == EventType.USER_INTERACTION_REQUIRED:
            details = payload.details or {}
            await self.send_interaction(
                conversation_id,
                InteractionData(
                    correlation_id=payload.correlation_id or event.id,
                    prompt=details.get("prompt", ""),
                    input_type=details.get("input_type", "text"),
                    options=details.get("options")
                )
            )

        elif event.type == EventType.RESPONSE_GENERATED:
            await self.send_markdown(conversation_id, payload.content)

        elif event.type == EventType.SYSTEM_ERROR:
            await self.connection_manager.send_error(conversation_id, payload.message)

        elif event.type == EventType.CONVERSATION_ENDED:
            await self.send_workflow_complete(conversation_id)

    async def send_progress(
        self,
        conversation_id: str,
        status: str,
        phase: Optional[str] = None,
        iteration: Optional[int] = None
    ):
        """Send progress update to client"""

        await self.connection_manager.send_event(
            conversation_id,
            ComponentEvent(
                conversation_id=conversation_id,
                payload=ComponentPayload(
                    component=ComponentType.PROGRESS,
                    data=ProgressData(status=status, phase=phase, iteration=iteration)
                )
            )
        )

    async def send_interaction(self, conversation_id: str, interaction: InteractionData):
        """Send a question the agent is waiting on"""

        await self.connection_manager.send_event(
            conversation_id,
            ComponentEvent(
                conversation_id=conversation_id,
                payload=ComponentPayload(component=ComponentType.UI_INTERACTION, data=interaction)
            )
        )

    async def send_markdown(self, conversation_id: str, content: str):
        """Send markdown content to client"""

        await self.connection_manager.send_event(
            conversation_id,
            MarkdownEvent(payload=content, conversation_id=conversation_id)
        )

    async def send_workflow_complete(self, conversation_id: str):
        """Send workflow completion signal"""

        await self.send_progress(conversation_id, "_workflow_finish")

    def get_info(self) -> Dict[str, Any]:
        return {"attached_conversations": sorted(self._subscriptions)}

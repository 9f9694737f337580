from typing import Dict, Any, List, Optional
from collections import OrderedDict
import asyncio

import structlog

from codeagent.domain.events.event_dispatcher import EventDispatcher
from codeagent.domain.events.event_types import Event, EventType

logger = structlog.get_logger(__name__)


class InteractionBroker:
    """Matches user answers to the runs waiting for them.

    Runs wait on a future keyed by correlation id; a USER_INPUT_RECEIVED
    event carrying that id resolves it. Answers that arrive before anyone
    waits are held until the wait starts.
    """

    def __init__(self, dispatcher: EventDispatcher, max_early_answers: int = 100):
        self.dispatcher = dispatcher
        self.max_early_answers = max_early_answers
        self._waiters: Dict[str, asyncio.Future] = {}
        self._early: "OrderedDict[str, Any]" = OrderedDict()
        self._unsubscribe = dispatcher.subscribe(EventType.USER_INPUT_RECEIVED, self._on_input)

    def register(self, correlation_id: str) -> asyncio.Future:
        existing = self._waiters.get(correlation_id)
        if existing is not None and not existing.done():
            return existing

        future = asyncio.get_running_loop().create_future()
        if correlation_id in self._early:
            future.set_result(self._early.pop(correlation_id))
        self._waiters[correlation_id] = future
        return future

    async def wait_for(self, correlation_id: str, timeout: Optional[float] = None) -> Any:
        """Suspend until the answer for correlation_id arrives; raises asyncio.TimeoutError"""
        future = self.register(correlation_id)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._waiters.pop(correlation_id, None)

    def pending(self) -> List[str]:
        return [cid for cid, future in self._waiters.items() if not future.done()]

    def cancel(self, correlation_id: str) -> bool:
        future = self._waiters.pop(correlation_id, None)
        if future is None or future.done():
            return False
        future.cancel()
        return True

    def close(self):
        self._unsubscribe()
        for correlation_id in list(self._waiters):
            self.cancel(correlation_id)
        self._early.clear()

    def _on_input(self, event: Event):
        correlation_id = event.payload.correlation_id
        if not correlation_id:
            logger.warning("user_input_without_correlation_id", event_id=event.id)
            return

        value = getattr(event.payload, "value", None)
        future = self._waiters.get(correlation_id)

        if future is None:
            self._early[correlation_id] = value
            while len(self._early) > self.max_early_answers:
                self._early.popitem(last=False)
            return

        if future.done():
            return
        # Dispatch may happen off the loop thread
        future.get_loop().call_soon_threadsafe(self._resolve, future, value)

    @staticmethod
    def _resolve(future: asyncio.Future, value: Any):
        if not future.done():
            future.set_result(value)

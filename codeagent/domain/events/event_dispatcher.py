from typing import Dict, Any, List, Optional, Callable, Iterable, Union
from collections import defaultdict, deque
from datetime import datetime
import asyncio
import inspect
import threading
import traceback
import uuid

import structlog

from codeagent.domain.models.conversation_state import utcnow
from .event_types import (
    ALL_EVENTS,
    Event,
    EventFilter,
    EventPayload,
    EventType,
    PAYLOAD_TYPES,
    SystemPayload,
)

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Event], Any]
PayloadInput = Union[EventPayload, Dict[str, Any], None]


class EventDispatcher:
    """In-process publish/subscribe bus with a bounded event history.

    Handlers run synchronously in subscription order on the dispatching
    thread. A handler that returns a coroutine has it scheduled on the
    running loop and is not awaited. A failing handler is logged and never
    stops the remaining handlers.
    """

    def __init__(self, max_history: int = 200):
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self.max_history = max_history
        self._history: deque = deque(maxlen=max_history)
        self._subscribers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._lock = threading.RLock()
        self._pending_tasks: set = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._disposed = False

    def dispatch(
        self,
        event_type: EventType,
        payload: PayloadInput = None,
        forced_id: Optional[str] = None
    ) -> Event:
        """Publish an event and notify its subscribers"""

        event_type = EventType(event_type)
        timestamp = utcnow()
        payload = self._build_payload(event_type, payload, timestamp)
        event = Event(
            type=event_type,
            payload=payload,
            timestamp=timestamp,
            id=forced_id or str(uuid.uuid4())
        )

        with self._lock:
            self._history.append(event)
            handlers = list(self._subscribers.get(event_type.value, ()))
            handlers.extend(self._subscribers.get(ALL_EVENTS, ()))

        for handler in handlers:
            self._notify(handler, event)

        return event

    def bind_loop(self, loop: asyncio.AbstractEventLoop):
        """Loop that runs coroutine handlers for dispatches made off the loop thread"""
        self._loop = loop

    def subscribe(
        self,
        event_types: Union[EventType, str, Iterable[Union[EventType, str]]],
        handler: EventHandler
    ) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it again"""

        keys = self._keys_for(event_types)
        with self._lock:
            for key in keys:
                self._subscribers[key].append(handler)

        def unsubscribe():
            with self._lock:
                for key in keys:
                    handlers = self._subscribers.get(key)
                    if handlers and handler in handlers:
                        handlers.remove(handler)
                        if not handlers:
                            del self._subscribers[key]

        return unsubscribe

    def once(self, event_type: Union[EventType, str], handler: EventHandler) -> Callable[[], None]:
        """Register a handler that fires for the next matching event only"""

        fired = threading.Event()

        def wrapper(event: Event):
            if fired.is_set():
                return None
            fired.set()
            unsubscribe()
            return handler(event)

        unsubscribe = self.subscribe(event_type, wrapper)
        return unsubscribe

    def get_history(self, event_filter: Optional[EventFilter] = None) -> List[Event]:
        """Events still in the ring, oldest first"""

        with self._lock:
            events = list(self._history)

        if event_filter is None:
            return events
        return [event for event in events if event_filter.matches(event)]

    def subscriber_count(self, event_type: Optional[Union[EventType, str]] = None) -> int:
        with self._lock:
            if event_type is None:
                return sum(len(handlers) for handlers in self._subscribers.values())
            key = event_type.value if isinstance(event_type, EventType) else event_type
            return len(self._subscribers.get(key, ()))

    def dispose(self):
        """Drop all subscriptions and history; safe to call twice"""

        with self._lock:
            if self._disposed:
                return
            self._subscribers.clear()
            self._history.clear()
            self._disposed = True
        logger.debug("event_dispatcher_disposed")

    # System helpers

    def system_info(self, message: str, details: Optional[Dict[str, Any]] = None,
                    conversation_id: Optional[str] = None, source: Optional[str] = None) -> Event:
        return self.dispatch(
            EventType.SYSTEM_INFO,
            SystemPayload(message=message, level="info", details=details,
                          conversation_id=conversation_id, source=source)
        )

    def system_warning(self, message: str, details: Optional[Dict[str, Any]] = None,
                       conversation_id: Optional[str] = None, source: Optional[str] = None) -> Event:
        return self.dispatch(
            EventType.SYSTEM_WARNING,
            SystemPayload(message=message, level="warning", details=details,
                          conversation_id=conversation_id, source=source)
        )

    def system_error(
        self,
        message: str,
        error: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
        source: Optional[str] = None
    ) -> Event:
        details = dict(details or {})
        if error is not None:
            details.setdefault("error_type", type(error).__name__)
            details.setdefault(
                "stack",
                "".join(traceback.format_exception(type(error), error, error.__traceback__))
            )
        return self.dispatch(
            EventType.SYSTEM_ERROR,
            SystemPayload(
                message=message,
                level="error",
                details=details or None,
                error=str(error) if error is not None else None,
                conversation_id=conversation_id,
                source=source
            )
        )

    # Internals

    @staticmethod
    def _keys_for(event_types) -> List[str]:
        if isinstance(event_types, (EventType, str)):
            event_types = [event_types]
        keys = []
        for event_type in event_types:
            if event_type == ALL_EVENTS:
                keys.append(ALL_EVENTS)
            else:
                keys.append(EventType(event_type).value)
        return keys

    @staticmethod
    def _build_payload(event_type: EventType, payload: PayloadInput, timestamp: datetime) -> EventPayload:
        payload_cls = PAYLOAD_TYPES.get(event_type, EventPayload)
        if payload is None:
            data: Dict[str, Any] = {}
        elif isinstance(payload, EventPayload):
            data = payload.model_dump(exclude_unset=True)
            if isinstance(payload, payload_cls):
                return payload.model_copy(update={"timestamp": timestamp})
        else:
            data = dict(payload)
        # The dispatcher's timestamp is the only one that counts
        data["timestamp"] = timestamp
        return payload_cls.model_validate(data)

    def _notify(self, handler: EventHandler, event: Event):
        try:
            result = handler(event)
        except Exception as e:
            logger.error(
                "event_handler_failed",
                event_type=event.type.value,
                event_id=event.id,
                handler=getattr(handler, "__qualname__", repr(handler)),
                error=str(e),
                exc_info=True
            )
            return

        if inspect.iscoroutine(result):
            self._schedule(result, event)

    def _schedule(self, coro, event: Event):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            # Dispatched from a worker thread, e.g. a sync tool
            owner = self._loop
            if owner is not None and owner.is_running() and not owner.is_closed():
                future = asyncio.run_coroutine_threadsafe(coro, owner)
                future.add_done_callback(self._on_task_done)
                return
            coro.close()
            logger.warning(
                "async_handler_dropped",
                event_type=event.type.value,
                event_id=event.id,
                reason="no running event loop"
            )
            return

        task = loop.create_task(coro)
        self._pending_tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task):
        self._pending_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "async_event_handler_failed",
                error=str(error),
                error_type=type(error).__name__
            )

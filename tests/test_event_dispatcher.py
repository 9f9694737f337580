"""
Tests for the in-process event dispatcher.

Covers the bounded history ring, filtering, handler isolation and the
async handler scheduling rules.
"""

import asyncio
from datetime import timedelta

import pytest

from codeagent.domain.events.event_dispatcher import EventDispatcher
from codeagent.domain.events.event_types import (
    ALL_EVENTS,
    EventFilter,
    EventType,
    PhasePayload,
    SystemPayload,
    ToolExecutionPayload,
)


@pytest.fixture
def dispatcher():
    return EventDispatcher(max_history=5)


class TestDispatch:
    """Publishing events."""

    def test_dispatch_returns_event_with_typed_payload(self, dispatcher):
        event = dispatcher.dispatch(
            EventType.TOOL_EXECUTION_STARTED,
            {"tool_name": "read_file", "parameters": {"path": "a.py"}, "conversation_id": "c1"}
        )
        assert isinstance(event.payload, ToolExecutionPayload)
        assert event.payload.tool_name == "read_file"
        assert event.conversation_id == "c1"
        assert event.id

    def test_forced_id_is_used(self, dispatcher):
        event = dispatcher.dispatch(EventType.SYSTEM_INFO, {"message": "hi"}, forced_id="fixed-id")
        assert event.id == "fixed-id"

    def test_payload_timestamp_is_overwritten(self, dispatcher):
        stale = SystemPayload(message="old", timestamp=None)
        event = dispatcher.dispatch(EventType.SYSTEM_INFO, stale)
        assert event.payload.timestamp == event.timestamp

    def test_string_event_type_is_accepted(self, dispatcher):
        event = dispatcher.dispatch("system:warning", {"message": "careful"})
        assert event.type == EventType.SYSTEM_WARNING

    def test_extra_payload_fields_are_kept(self, dispatcher):
        event = dispatcher.dispatch(
            EventType.AGENT_PHASE_STARTED,
            {"phase": "reasoning", "iteration": 2, "custom": "value"}
        )
        message = event.to_message()
        assert message["payload"]["custom"] == "value"
        assert message["type"] == "agent:phase:started"

    def test_unserializable_result_still_renders(self, dispatcher):
        class Opaque:
            def __str__(self):
                return "opaque"

        event = dispatcher.dispatch(
            EventType.TOOL_EXECUTION_COMPLETED,
            {"tool_name": "x", "result": Opaque()}
        )
        assert event.to_message()["payload"]["result"] == "opaque"


class TestHistory:
    """The bounded history ring and its filters."""

    def test_ring_keeps_most_recent_events(self, dispatcher):
        for i in range(8):
            dispatcher.dispatch(EventType.SYSTEM_INFO, {"message": f"m{i}"})

        history = dispatcher.get_history()
        assert len(history) == 5
        assert [e.payload.message for e in history] == ["m3", "m4", "m5", "m6", "m7"]

    def test_invalid_capacity_rejected(self):
        with pytest.raises(ValueError):
            EventDispatcher(max_history=0)

    def test_filter_by_type(self, dispatcher):
        dispatcher.dispatch(EventType.SYSTEM_INFO, {"message": "a"})
        dispatcher.dispatch(EventType.SYSTEM_WARNING, {"message": "b"})

        events = dispatcher.get_history(EventFilter(types={EventType.SYSTEM_WARNING}))
        assert [e.payload.message for e in events] == ["b"]

    def test_filter_by_conversation_keeps_global_errors(self, dispatcher):
        dispatcher.dispatch(EventType.SYSTEM_INFO, {"message": "mine", "conversation_id": "c1"})
        dispatcher.dispatch(EventType.SYSTEM_INFO, {"message": "other", "conversation_id": "c2"})
        dispatcher.dispatch(EventType.SYSTEM_INFO, {"message": "global info"})
        dispatcher.system_error("global failure")

        events = dispatcher.get_history(EventFilter(conversation_id="c1"))
        assert [e.payload.message for e in events] == ["mine", "global failure"]

    def test_filter_by_time_window_and_predicate(self, dispatcher):
        first = dispatcher.dispatch(EventType.SYSTEM_INFO, {"message": "first"})
        second = dispatcher.dispatch(EventType.SYSTEM_INFO, {"message": "second"})

        since = dispatcher.get_history(EventFilter(since=second.timestamp))
        assert second in since

        until = dispatcher.get_history(EventFilter(until=first.timestamp - timedelta(seconds=1)))
        assert until == []

        picked = dispatcher.get_history(EventFilter(predicate=lambda e: e.payload.message == "first"))
        assert picked == [first]


class TestSubscriptions:
    """Handler registration and isolation."""

    def test_handlers_run_in_subscription_order(self, dispatcher):
        calls = []
        dispatcher.subscribe(EventType.SYSTEM_INFO, lambda e: calls.append("first"))
        dispatcher.subscribe(EventType.SYSTEM_INFO, lambda e: calls.append("second"))
        dispatcher.subscribe(ALL_EVENTS, lambda e: calls.append("wildcard"))

        dispatcher.system_info("hello")

        assert calls == ["first", "second", "wildcard"]

    def test_failing_handler_does_not_stop_others(self, dispatcher):
        calls = []

        def broken(event):
            raise RuntimeError("boom")

        dispatcher.subscribe(EventType.SYSTEM_INFO, broken)
        dispatcher.subscribe(EventType.SYSTEM_INFO, lambda e: calls.append(e.id))

        event = dispatcher.system_info("hello")

        assert calls == [event.id]

    def test_unsubscribe_removes_handler(self, dispatcher):
        calls = []
        unsubscribe = dispatcher.subscribe(EventType.SYSTEM_INFO, calls.append)
        unsubscribe()
        unsubscribe()

        dispatcher.system_info("hello")

        assert calls == []
        assert dispatcher.subscriber_count(EventType.SYSTEM_INFO) == 0

    def test_once_fires_a_single_time(self, dispatcher):
        calls = []
        dispatcher.once(EventType.SYSTEM_INFO, calls.append)

        dispatcher.system_info("one")
        dispatcher.system_info("two")

        assert len(calls) == 1
        assert calls[0].payload.message == "one"

    def test_subscribe_many_types(self, dispatcher):
        calls = []
        dispatcher.subscribe([EventType.SYSTEM_INFO, EventType.SYSTEM_WARNING], calls.append)

        dispatcher.system_info("a")
        dispatcher.system_warning("b")
        dispatcher.system_error("c")

        assert [e.type for e in calls] == [EventType.SYSTEM_INFO, EventType.SYSTEM_WARNING]

    def test_async_handler_without_loop_is_dropped(self, dispatcher):
        async def handler(event):
            raise AssertionError("should never run")

        dispatcher.subscribe(EventType.SYSTEM_INFO, handler)
        dispatcher.system_info("hello")

    @pytest.mark.asyncio
    async def test_async_handler_is_scheduled_on_running_loop(self, dispatcher):
        received = asyncio.Event()

        async def handler(event):
            received.set()

        dispatcher.subscribe(EventType.SYSTEM_INFO, handler)
        dispatcher.system_info("hello")

        await asyncio.wait_for(received.wait(), timeout=1)

    def test_dispose_is_idempotent(self, dispatcher):
        dispatcher.subscribe(EventType.SYSTEM_INFO, lambda e: None)
        dispatcher.system_info("hello")

        dispatcher.dispose()
        dispatcher.dispose()

        assert dispatcher.subscriber_count() == 0
        assert dispatcher.get_history() == []


class TestSystemHelpers:

    def test_system_error_carries_stack(self, dispatcher):
        try:
            raise KeyError("missing")
        except KeyError as e:
            event = dispatcher.system_error("lookup failed", error=e, conversation_id="c1")

        assert event.type == EventType.SYSTEM_ERROR
        assert event.payload.level == "error"
        assert event.payload.details["error_type"] == "KeyError"
        assert "Traceback" in event.payload.details["stack"]

    def test_phase_payload_defaults(self, dispatcher):
        event = dispatcher.dispatch(EventType.AGENT_PHASE_COMPLETED, PhasePayload(phase="action"))
        assert event.payload.iteration == 0
        assert event.payload.error is None

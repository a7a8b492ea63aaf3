"""Tests for events/bus.py -- async pub/sub event bus.

Covers publish/subscribe, buffering, close_team sentinel, bounded
history, per-publisher ordering, non-blocking delivery and the global
singleton accessor.
"""

import asyncio

from events.bus import EventBus, get_event_bus, reset_event_bus
from events.types import AgentEvent, EventType

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    team_id: str = "team_test",
    event_type: EventType = EventType.WORKER_CREATED,
    **data: object,
) -> AgentEvent:
    return AgentEvent(
        type=event_type,
        team_id=team_id,
        data=data or {"test": True},
    )


# =========================================================================
# Subscribe / Publish basics
# =========================================================================


class TestSubscribePublish:
    """Basic subscribe and async publish."""

    async def test_subscribe_returns_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("team_1")
        assert isinstance(queue, asyncio.Queue)

    async def test_publish_delivers_to_subscriber(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("team_1")
        await event_bus.publish(_make_event("team_1"))
        received = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert received.type == EventType.WORKER_CREATED
        assert received.team_id == "team_1"

    async def test_publish_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("team_1")
        q2 = event_bus.subscribe("team_1")
        await event_bus.publish(_make_event("team_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        r2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert r1 == r2

    async def test_publish_does_not_cross_teams(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("team_1")
        q2 = event_bus.subscribe("team_2")
        await event_bus.publish(_make_event("team_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        assert r1.team_id == "team_1"
        assert q2.empty()

    async def test_single_publisher_order_preserved(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("team_1")
        for i in range(20):
            await event_bus.publish(_make_event("team_1", EventType.TASK_ASSIGNED, seq=i))
        received = [queue.get_nowait().data["seq"] for _ in range(20)]
        assert received == list(range(20))

    async def test_unread_subscriber_does_not_block_publisher(
        self, event_bus: EventBus
    ) -> None:
        event_bus.subscribe("team_1")
        # Nobody drains the queue; publishing must still complete promptly.
        for i in range(500):
            await asyncio.wait_for(
                event_bus.publish(_make_event("team_1", seq=i)), timeout=1.0
            )


# =========================================================================
# Event Buffering
# =========================================================================


class TestEventBuffering:
    """Events published before a subscriber connects are buffered."""

    async def test_buffered_events_delivered_on_subscribe(
        self, event_bus: EventBus
    ) -> None:
        await event_bus.publish(_make_event("team_1", EventType.WORKER_CREATED))
        await event_bus.publish(_make_event("team_1", EventType.TEAM_FORMED))

        queue = event_bus.subscribe("team_1")
        r1 = await asyncio.wait_for(queue.get(), timeout=1.0)
        r2 = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert r1.type == EventType.WORKER_CREATED
        assert r2.type == EventType.TEAM_FORMED

    async def test_buffer_cleared_after_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("team_1"))
        q1 = event_bus.subscribe("team_1")
        assert not q1.empty()
        # A second subscriber should NOT get the already-delivered buffer
        q2 = event_bus.subscribe("team_1")
        assert q2.empty()


# =========================================================================
# Unsubscribe
# =========================================================================


class TestUnsubscribe:
    """Unsubscribe removes a specific queue from the team."""

    async def test_unsubscribe_removes_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("team_1")
        event_bus.unsubscribe("team_1", queue)
        assert event_bus.get_subscriber_count("team_1") == 0

    async def test_unsubscribe_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        dummy: asyncio.Queue[AgentEvent] = asyncio.Queue()
        event_bus.unsubscribe("no_such_team", dummy)

    async def test_unsubscribe_wrong_queue_is_noop(self, event_bus: EventBus) -> None:
        event_bus.subscribe("team_1")
        wrong_queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        event_bus.unsubscribe("team_1", wrong_queue)
        assert event_bus.get_subscriber_count("team_1") == 1

    async def test_after_unsubscribe_events_not_delivered(
        self, event_bus: EventBus
    ) -> None:
        queue = event_bus.subscribe("team_1")
        event_bus.unsubscribe("team_1", queue)
        await event_bus.publish(_make_event("team_1"))
        assert queue.empty()


# =========================================================================
# close_team -- sentinel
# =========================================================================


class TestCloseTeam:
    """close_team sends a TEAM_CLOSED sentinel and cleans up."""

    async def test_close_sends_sentinel(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("team_1")
        await event_bus.close_team("team_1")
        sentinel = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert sentinel.type == EventType.TEAM_CLOSED
        assert sentinel.team_id == "team_1"

    async def test_close_removes_subscribers(self, event_bus: EventBus) -> None:
        event_bus.subscribe("team_1")
        await event_bus.close_team("team_1")
        assert event_bus.get_subscriber_count("team_1") == 0

    async def test_close_clears_buffer(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("team_1"))
        await event_bus.close_team("team_1")
        queue = event_bus.subscribe("team_1")
        assert queue.empty()

    async def test_close_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        await event_bus.close_team("no_such_team")

    async def test_close_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("team_1")
        q2 = event_bus.subscribe("team_1")
        await event_bus.close_team("team_1")
        s1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        s2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert s1.type == EventType.TEAM_CLOSED
        assert s2.type == EventType.TEAM_CLOSED

    async def test_close_keeps_history(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("team_1"))
        await event_bus.close_team("team_1")
        history = event_bus.get_event_history("team_1")
        assert [e.type for e in history] == [EventType.WORKER_CREATED]


# =========================================================================
# History
# =========================================================================


class TestEventHistory:
    """Bounded per-team replay history."""

    async def test_history_records_in_order(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("team_1", EventType.WORKER_CREATED))
        await event_bus.publish(_make_event("team_1", EventType.TEAM_FORMED))
        history = event_bus.get_event_history("team_1")
        assert [e.type for e in history] == [
            EventType.WORKER_CREATED,
            EventType.TEAM_FORMED,
        ]

    async def test_history_is_bounded(self) -> None:
        bus = EventBus(history_limit=3)
        for i in range(5):
            await bus.publish(_make_event("team_1", seq=i))
        history = bus.get_event_history("team_1")
        assert [e.data["seq"] for e in history] == [2, 3, 4]

    async def test_history_returns_copy(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("team_1"))
        event_bus.get_event_history("team_1").clear()
        assert len(event_bus.get_event_history("team_1")) == 1

    async def test_clear_event_history(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("team_1"))
        event_bus.clear_event_history("team_1")
        assert event_bus.get_event_history("team_1") == []

    async def test_unknown_team_history_is_empty(self, event_bus: EventBus) -> None:
        assert event_bus.get_event_history("no_such_team") == []


# =========================================================================
# Global singleton
# =========================================================================


class TestGlobalEventBus:
    """get_event_bus / reset_event_bus singleton pattern."""

    def test_get_event_bus_returns_same_instance(self) -> None:
        reset_event_bus()
        bus1 = get_event_bus()
        bus2 = get_event_bus()
        assert bus1 is bus2

    def test_reset_event_bus_creates_new_instance(self) -> None:
        reset_event_bus()
        bus1 = get_event_bus()
        reset_event_bus()
        bus2 = get_event_bus()
        assert bus1 is not bus2


# =========================================================================
# Subscriber count and active teams
# =========================================================================


class TestSubscriberInfo:
    """Utility methods for inspecting bus state."""

    async def test_subscriber_count(self, event_bus: EventBus) -> None:
        assert event_bus.get_subscriber_count("team_1") == 0
        event_bus.subscribe("team_1")
        assert event_bus.get_subscriber_count("team_1") == 1
        event_bus.subscribe("team_1")
        assert event_bus.get_subscriber_count("team_1") == 2

    async def test_active_teams(self, event_bus: EventBus) -> None:
        assert event_bus.get_active_teams() == []
        event_bus.subscribe("team_1")
        event_bus.subscribe("team_2")
        assert set(event_bus.get_active_teams()) == {"team_1", "team_2"}

"""Async event bus for team orchestration pub/sub.

This module provides an EventBus class that broadcasts lifecycle events
from the Manager and Scheduler to any number of read-only observers.

The event bus supports:
- Multiple subscribers per team
- Non-blocking delivery via asyncio.Queue
- Buffering of events published before the first subscriber
- Bounded per-team history for replay
- Team lifecycle management (closing a team terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from config import settings
from events.types import AgentEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for agent events.

    The EventBus manages subscriptions per team. Events are delivered via
    unbounded asyncio.Queue instances with ``put_nowait`` so a slow
    subscriber never blocks a publisher. Events from a single publisher
    arrive in publication order; there is no total order across publishers.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("team_123")
        >>> await bus.publish(AgentEvent(
        ...     type=EventType.WORKER_CREATED,
        ...     team_id="team_123",
        ...     worker_id="worker_1",
        ...     data={"specialization": "Coder"},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("team_123", queue)
        >>> await bus.close_team("team_123")

    Attributes:
        _subscribers: Dict mapping team_id to list of subscriber queues
        _event_buffer: Dict mapping team_id to list of buffered events
        _event_history: Dict mapping team_id to its bounded replay history
        _lock: Threading lock guarding the subscription registry
    """

    def __init__(self, history_limit: int | None = None) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[AgentEvent]] = defaultdict(list)
        self._event_history: dict[str, list[AgentEvent]] = defaultdict(list)
        self._history_limit = history_limit or settings.event_history_limit
        self._lock = threading.Lock()
        logger.info("event_bus_initialized", history_limit=self._history_limit)

    def subscribe(self, team_id: str) -> asyncio.Queue[AgentEvent]:
        """Subscribe to events for a team.

        If there are buffered events for this team (events that were
        published before any subscriber connected), they are delivered
        immediately to the new subscriber.

        Args:
            team_id: The team to subscribe to

        Returns:
            An asyncio.Queue that will receive AgentEvent objects
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        buffered_events: list[AgentEvent] = []

        with self._lock:
            self._subscribers[team_id].append(queue)
            subscriber_count = len(self._subscribers[team_id])
            if team_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(team_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            team_id=team_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, team_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        """Unsubscribe a queue from team events. Unknown queues are a no-op."""
        with self._lock:
            queues = self._subscribers.get(team_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", team_id=team_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[team_id]
            subscriber_count = len(queues)

        logger.info(
            "subscriber_removed",
            team_id=team_id,
            subscriber_count=subscriber_count,
        )

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to all subscribers for its team.

        If there are no subscribers, the event is buffered until one
        connects. All events except the closing sentinel are also kept in
        the team's bounded history.

        Args:
            event: The AgentEvent to publish
        """
        with self._lock:
            if event.type != EventType.TEAM_CLOSED:
                history = self._event_history[event.team_id]
                history.append(event)
                if len(history) > self._history_limit:
                    del history[: len(history) - self._history_limit]

            subscribers = list(self._subscribers.get(event.team_id, []))

            if not subscribers:
                self._event_buffer[event.team_id].append(event)
                logger.debug(
                    "event_buffered",
                    team_id=event.team_id,
                    event_type=event.type.value,
                    buffer_size=len(self._event_buffer[event.team_id]),
                )
                return

        for queue in subscribers:
            queue.put_nowait(event)

        logger.debug(
            "event_published",
            team_id=event.team_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            task_id=event.task_id,
            worker_id=event.worker_id,
        )

    def get_event_history(self, team_id: str) -> list[AgentEvent]:
        """Get all stored events for a team in publication order."""
        with self._lock:
            return list(self._event_history.get(team_id, []))

    async def close_team(self, team_id: str) -> None:
        """Close a team's stream and notify all subscribers.

        Puts a TEAM_CLOSED sentinel into each subscriber queue so consumers
        can break out of their read loops, then removes all subscribers and
        clears buffered events. Event history is preserved.

        Args:
            team_id: The team to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(team_id, [])
            buffered = self._event_buffer.pop(team_id, [])

        for queue in queues_to_signal:
            queue.put_nowait(
                AgentEvent(
                    type=EventType.TEAM_CLOSED,
                    team_id=team_id,
                    data={"reason": "team_closed"},
                )
            )

        if queues_to_signal or buffered:
            logger.info(
                "team_stream_closed",
                team_id=team_id,
                subscribers_removed=len(queues_to_signal),
                buffered_events_cleared=len(buffered),
            )
        else:
            logger.debug("close_team_not_found", team_id=team_id)

    def get_subscriber_count(self, team_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(team_id, []))

    def get_active_teams(self) -> list[str]:
        """Get list of teams with at least one subscriber."""
        with self._lock:
            return list(self._subscribers.keys())

    def clear_event_history(self, team_id: str) -> None:
        """Drop stored history once a team is archived or destroyed."""
        with self._lock:
            self._event_history.pop(team_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")

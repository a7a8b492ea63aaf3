"""Event and message infrastructure for team orchestration.

This package provides two channels:

Key Components:
    - EventType / AgentEvent: Broadcast lifecycle events, one stream per team
    - EventBus: Async pub/sub implementation for event distribution
    - MessageType / AgentMessage: Point-to-point envelopes with a closed tag set
    - MessageBus: Identity-keyed inboxes for Manager/Worker coordination

Usage:
    >>> from events import AgentEvent, EventType, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("team_123")
    >>> await bus.publish(AgentEvent(
    ...     type=EventType.TASK_ASSIGNED,
    ...     team_id="team_123",
    ...     task_id="task_1",
    ...     worker_id="worker_1",
    ... ))
    >>> event = await queue.get()
    >>> print(f"Received: {event.type.value}")
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.messages import (
    AgentMessage,
    MessageBus,
    MessageType,
)
from events.types import (
    AgentEvent,
    EventType,
)

__all__ = [
    # Event types
    "EventType",
    "AgentEvent",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
    # Messages
    "AgentMessage",
    "MessageBus",
    "MessageType",
]

"""Point-to-point messaging between the Manager and Workers.

Messages are distinct from the broadcast event stream: each one has a
single destination identity, which must be registered with the bus.
"""

import asyncio
import threading
import time
from collections import deque
from enum import StrEnum

import structlog
from pydantic import BaseModel, ConfigDict, Field, JsonValue

from errors import MessageDeliveryFailed

logger = structlog.get_logger()


class MessageType(StrEnum):
    """Closed set of message tags."""

    TASK_ASSIGNMENT = "task_assignment"
    TASK_COMPLETION = "task_completion"
    REVISION_REQUEST = "revision_request"
    APPROVAL = "approval"
    REJECTION = "rejection"
    AGENT_COMMUNICATION = "agent_communication"
    SYSTEM_EVENT = "system_event"


class AgentMessage(BaseModel):
    """Envelope for one point-to-point message.

    Serialized with the wire names ``from`` and ``to``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    message_type: MessageType
    payload: JsonValue = None
    timestamp: float = Field(default_factory=time.time)


class MessageBus:
    """Registry of inboxes keyed by identity.

    ``send`` never blocks on the receiver: inboxes are unbounded queues
    filled with ``put_nowait``. Messages to the same destination arrive in
    send order.
    """

    MAX_HISTORY = 1000

    def __init__(self) -> None:
        self._inboxes: dict[str, asyncio.Queue[AgentMessage]] = {}
        self._history: deque[AgentMessage] = deque(maxlen=self.MAX_HISTORY)
        self._lock = threading.Lock()

    def register(self, identity: str) -> asyncio.Queue[AgentMessage]:
        """Register an identity as a destination and return its inbox.

        Registering an identity twice returns the existing inbox.
        """
        with self._lock:
            inbox = self._inboxes.get(identity)
            if inbox is None:
                inbox = asyncio.Queue()
                self._inboxes[identity] = inbox
                logger.debug("message_destination_registered", identity=identity)
        return inbox

    def unregister(self, identity: str) -> None:
        with self._lock:
            self._inboxes.pop(identity, None)
        logger.debug("message_destination_unregistered", identity=identity)

    def is_registered(self, identity: str) -> bool:
        with self._lock:
            return identity in self._inboxes

    async def send(self, message: AgentMessage) -> None:
        """Deliver a message to its destination inbox.

        Raises:
            MessageDeliveryFailed: If the destination identity is not registered.
        """
        with self._lock:
            inbox = self._inboxes.get(message.to_id)
            if inbox is None:
                raise MessageDeliveryFailed(message.to_id)
            self._history.append(message)

        inbox.put_nowait(message)
        logger.debug(
            "message_sent",
            from_id=message.from_id,
            to_id=message.to_id,
            message_type=message.message_type.value,
        )

    def get_history(self, identity: str | None = None) -> list[AgentMessage]:
        """Return delivered messages, optionally only those involving ``identity``."""
        with self._lock:
            messages = list(self._history)
        if identity is None:
            return messages
        return [m for m in messages if identity in (m.from_id, m.to_id)]

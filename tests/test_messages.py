"""Tests for events/messages.py -- point-to-point manager/worker messaging."""

import asyncio

import pytest

from errors import MessageDeliveryFailed
from events.messages import AgentMessage, MessageBus, MessageType


def _message(to_id: str = "worker_1", from_id: str = "manager_1", **payload: object) -> AgentMessage:
    return AgentMessage(
        from_id=from_id,
        to_id=to_id,
        message_type=MessageType.TASK_ASSIGNMENT,
        payload=payload or {"task_id": "task_1"},
    )


# =========================================================================
# AgentMessage
# =========================================================================


class TestAgentMessage:
    """Envelope validation and wire format."""

    def test_wire_names_from_and_to(self) -> None:
        data = _message().model_dump(by_alias=True)
        assert data["from"] == "manager_1"
        assert data["to"] == "worker_1"
        assert data["message_type"] == "task_assignment"

    def test_json_round_trip(self) -> None:
        original = _message(feedback="tighten tests", attempt=2)
        restored = AgentMessage.model_validate_json(original.model_dump_json(by_alias=True))
        assert restored == original

    def test_accepts_wire_names_on_input(self) -> None:
        msg = AgentMessage.model_validate(
            {"from": "a", "to": "b", "message_type": "approval", "payload": None}
        )
        assert msg.from_id == "a"
        assert msg.message_type == MessageType.APPROVAL

    def test_unknown_message_type_rejected(self) -> None:
        with pytest.raises(ValueError):
            AgentMessage.model_validate(
                {"from": "a", "to": "b", "message_type": "gossip"}
            )

    def test_frozen(self) -> None:
        msg = _message()
        with pytest.raises(ValueError):
            msg.to_id = "worker_2"  # type: ignore[misc]

    def test_closed_tag_set(self) -> None:
        assert {t.value for t in MessageType} == {
            "task_assignment",
            "task_completion",
            "revision_request",
            "approval",
            "rejection",
            "agent_communication",
            "system_event",
        }


# =========================================================================
# MessageBus
# =========================================================================


class TestMessageBus:
    """Registration, delivery and history."""

    async def test_send_delivers_to_inbox(self, message_bus: MessageBus) -> None:
        inbox = message_bus.register("worker_1")
        await message_bus.send(_message())
        received = await asyncio.wait_for(inbox.get(), timeout=1.0)
        assert received.payload == {"task_id": "task_1"}

    async def test_register_is_idempotent(self, message_bus: MessageBus) -> None:
        first = message_bus.register("worker_1")
        second = message_bus.register("worker_1")
        assert first is second

    async def test_unknown_destination_raises(self, message_bus: MessageBus) -> None:
        with pytest.raises(MessageDeliveryFailed) as exc_info:
            await message_bus.send(_message(to_id="worker_missing"))
        assert exc_info.value.destination == "worker_missing"
        assert message_bus.get_history() == []

    async def test_unregister_stops_delivery(self, message_bus: MessageBus) -> None:
        message_bus.register("worker_1")
        message_bus.unregister("worker_1")
        assert not message_bus.is_registered("worker_1")
        with pytest.raises(MessageDeliveryFailed):
            await message_bus.send(_message())

    async def test_send_order_preserved(self, message_bus: MessageBus) -> None:
        inbox = message_bus.register("worker_1")
        for i in range(10):
            await message_bus.send(_message(seq=i))
        assert [inbox.get_nowait().payload["seq"] for _ in range(10)] == list(range(10))

    async def test_history_filtered_by_identity(self, message_bus: MessageBus) -> None:
        message_bus.register("worker_1")
        message_bus.register("worker_2")
        await message_bus.send(_message(to_id="worker_1"))
        await message_bus.send(_message(to_id="worker_2"))
        assert len(message_bus.get_history()) == 2
        assert [m.to_id for m in message_bus.get_history("worker_2")] == ["worker_2"]
        assert len(message_bus.get_history("manager_1")) == 2

    async def test_history_is_bounded(self, message_bus: MessageBus) -> None:
        message_bus.register("worker_1")
        for i in range(MessageBus.MAX_HISTORY + 5):
            await message_bus.send(_message(seq=i))
        history = message_bus.get_history()
        assert len(history) == MessageBus.MAX_HISTORY
        assert history[0].payload["seq"] == 5

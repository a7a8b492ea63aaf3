"""Tests for agents/scheduler.py -- dispatch, review outcomes and intervention.

Covers:
- dispatch: first eligible idle worker, no double assignment
- run loop: completion, stall, revision, rejection, retries, timeouts
- manager intervention: cancel, unblock, budget exhaustion
- side effects: events, point-to-point messages, persistence
"""

import asyncio

import pytest

from agents.manager import ManagerAgent
from agents.reasoning import DEFAULT_MOCK_RESPONSES, MockReasoning
from agents.scheduler import (
    REASSIGN_ANY_WORKER,
    REASSIGN_SAME_WORKER,
    Scheduler,
    SchedulerOutcome,
    SchedulerPolicy,
)
from errors import (
    AgentNotFound,
    ConfigError,
    InvalidStateTransition,
    JsonError,
    LlmError,
    TaskExecutionFailed,
)
from events.bus import EventBus
from events.messages import MessageBus, MessageType
from events.types import EventType
from metrics import UsageTracker
from models.repository import InMemoryRepository
from models.schemas import Approved, TaskStatus, WorkerStatus
from tests.conftest import (
    TEAM_ID,
    collect_events,
    event_types,
    hang,
    make_scheduler,
    make_task,
    make_worker,
)

REJECT = {"decision": "rejected", "reason": "incomplete"}
REVISE = {"decision": "revision_requested", "feedback": "Add tests"}


# =========================================================================
# Policy
# =========================================================================


class TestSchedulerPolicy:
    """Policy validation."""

    def test_defaults(self) -> None:
        policy = SchedulerPolicy()
        assert policy.max_attempts == 3
        assert policy.timeout_reassignment == REASSIGN_ANY_WORKER
        assert policy.block_on_reject is False

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"task_timeout_seconds": 0},
            {"timeout_reassignment": "random_worker"},
        ],
    )
    def test_invalid_policy(self, kwargs: dict) -> None:
        with pytest.raises(ConfigError):
            SchedulerPolicy(**kwargs)


# =========================================================================
# dispatch
# =========================================================================


class TestDispatch:
    """One dispatch cycle."""

    async def test_first_eligible_worker_by_id(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        workers = [
            make_worker(mock_reasoning, worker_id="worker_b"),
            make_worker(mock_reasoning, worker_id="worker_a"),
        ]
        scheduler = make_scheduler(mock_reasoning, workers, event_bus)
        task = make_task()
        await scheduler.add_tasks([task])

        assignments = await scheduler.dispatch()

        assert assignments == [(task.id, "worker_a")]
        assert task.status == TaskStatus.ASSIGNED
        assert task.assigned_worker_id == "worker_a"
        assert task.attempt_count == 1
        assert scheduler.workers["worker_a"].status == WorkerStatus.WORKING
        assert scheduler.workers["worker_b"].status == WorkerStatus.IDLE

        events = await collect_events(event_bus)
        assert event_types(events) == [EventType.TASK_ASSIGNED]
        assert events[0].task_id == task.id
        assert events[0].data["attempt"] == 1

    async def test_no_eligible_worker_leaves_task_pending(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        scheduler = make_scheduler(
            mock_reasoning, [make_worker(mock_reasoning, skills=["Rust"])], event_bus
        )
        task = make_task(required_skills=["javascript"])
        await scheduler.add_tasks([task])

        assert await scheduler.dispatch() == []

        assert task.status == TaskStatus.PENDING
        assert task.attempt_count == 0
        assert EventType.TASK_ASSIGNED not in event_types(await collect_events(event_bus))

    async def test_busy_worker_not_reassigned(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        worker = make_worker(mock_reasoning)
        scheduler = make_scheduler(mock_reasoning, [worker], event_bus)
        first, second = make_task(title="first"), make_task(title="second")
        await scheduler.add_tasks([first, second])

        assert await scheduler.dispatch() == [(first.id, worker.id)]
        assert await scheduler.dispatch() == []
        assert second.status == TaskStatus.PENDING
        assert worker.assigned_task_id == first.id

    async def test_concurrent_dispatch_never_double_assigns(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        workers = [make_worker(mock_reasoning) for _ in range(2)]
        scheduler = make_scheduler(mock_reasoning, workers, event_bus)
        await scheduler.add_tasks([make_task(title=f"t{i}") for i in range(3)])

        results = await asyncio.gather(*(scheduler.dispatch() for _ in range(5)))

        assignments = [pair for result in results for pair in result]
        assert len(assignments) == 2
        assert len({worker_id for _, worker_id in assignments}) == 2
        assert len({task_id for task_id, _ in assignments}) == 2
        for worker in workers:
            assert worker.status == WorkerStatus.WORKING

    async def test_add_tasks_stamps_team(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        scheduler = make_scheduler(mock_reasoning, [make_worker(mock_reasoning)], event_bus)
        task = make_task(team_id=None)
        await scheduler.add_tasks([task])
        assert task.team_id == TEAM_ID
        assert scheduler.get_task(task.id) is task

    async def test_unknown_lookups(self, mock_reasoning: MockReasoning, event_bus: EventBus) -> None:
        scheduler = make_scheduler(mock_reasoning, [], event_bus)
        with pytest.raises(AgentNotFound):
            scheduler.get_task("task_missing")
        with pytest.raises(AgentNotFound):
            scheduler.get_worker("worker_missing")


# =========================================================================
# Run loop
# =========================================================================


class TestRun:
    """Dispatch, execution and review until a terminal condition."""

    async def test_all_tasks_approved(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        workers = [make_worker(mock_reasoning) for _ in range(2)]
        scheduler = make_scheduler(mock_reasoning, workers, event_bus)
        tasks = [make_task(title=f"t{i}") for i in range(3)]
        await scheduler.add_tasks(tasks)

        outcome = await scheduler.run()

        assert outcome == SchedulerOutcome.COMPLETED
        assert all(t.status == TaskStatus.APPROVED for t in tasks)
        assert all(w.status == WorkerStatus.IDLE for w in workers)
        assert all(w.assigned_task_id is None for w in workers)
        types = event_types(await collect_events(event_bus))
        assert types.count(EventType.TASK_ASSIGNED) == 3
        assert types.count(EventType.TASK_COMPLETED) == 3

    async def test_rejection_fails_task_and_frees_worker(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"review": [REJECT]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(reasoning, [worker], event_bus)
        task = make_task()
        await scheduler.add_tasks([task])

        outcome = await scheduler.run()

        assert outcome == SchedulerOutcome.COMPLETED
        assert task.status == TaskStatus.FAILED
        assert worker.status == WorkerStatus.IDLE
        failed = [e for e in await collect_events(event_bus) if e.type == EventType.TASK_FAILED]
        assert failed[0].data["reason"] == "incomplete"

    async def test_rejection_blocks_worker_when_configured(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"review": [REJECT]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(reasoning, [worker], event_bus, block_on_reject=True)
        await scheduler.add_tasks([make_task()])

        await scheduler.run()

        assert worker.status == WorkerStatus.BLOCKED
        assert scheduler.state("executing").blocked_workers == [worker.id]
        await scheduler.unblock_worker(worker.id)
        assert worker.status == WorkerStatus.IDLE
        assert worker.assigned_task_id is None

    async def test_blocked_worker_released_for_starving_task(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"review": [REJECT, {"decision": "approved"}]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(reasoning, [worker], event_bus, block_on_reject=True)
        first, second = make_task(title="first"), make_task(title="second")
        await scheduler.add_tasks([first, second])

        outcome = await scheduler.run()

        assert outcome == SchedulerOutcome.COMPLETED
        assert first.status == TaskStatus.FAILED
        assert second.status == TaskStatus.APPROVED
        assert second.assigned_worker_id == worker.id

    async def test_revision_returns_to_same_worker(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"review": [REVISE]})
        workers = [make_worker(reasoning, worker_id="worker_a"), make_worker(reasoning, worker_id="worker_b")]
        scheduler = make_scheduler(reasoning, workers, event_bus)
        task = make_task()
        await scheduler.add_tasks([task])

        await scheduler.run()

        assert task.status == TaskStatus.APPROVED
        assert task.attempt_count == 2
        assert task.assigned_worker_id == "worker_a"
        assert "Add tests" in task.feedback
        assert "Add tests" in reasoning.calls("execute")[1].user
        events = await collect_events(event_bus)
        revision = [e for e in events if e.type == EventType.TASK_REVISION_REQUESTED]
        assert revision[0].data == {"feedback": "Add tests", "attempt": 1}
        assert event_types(events).count(EventType.TASK_ASSIGNED) == 1

    async def test_revision_at_attempt_cap_becomes_rejection(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"review": [REVISE, REVISE]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(reasoning, [worker], event_bus, max_attempts=2)
        task = make_task()
        await scheduler.add_tasks([task])

        await scheduler.run()

        assert task.status == TaskStatus.FAILED
        assert task.attempt_count == 2
        assert worker.status == WorkerStatus.IDLE
        failed = [e for e in await collect_events(event_bus) if e.type == EventType.TASK_FAILED]
        assert "revision limit" in failed[0].data["reason"]

    async def test_no_capable_worker_stalls(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        scheduler = make_scheduler(
            mock_reasoning, [make_worker(mock_reasoning, skills=["Rust"])], event_bus
        )
        task = make_task(required_skills=["javascript"])
        await scheduler.add_tasks([task])

        assert await scheduler.run() == SchedulerOutcome.STALLED
        assert task.status == TaskStatus.PENDING

    async def test_empty_task_list_completes(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        scheduler = make_scheduler(mock_reasoning, [make_worker(mock_reasoning)], event_bus)
        assert await scheduler.run() == SchedulerOutcome.COMPLETED


# =========================================================================
# Retries and timeouts
# =========================================================================


class TestRetries:
    """Recoverable reasoning failures consume attempts."""

    async def test_execution_error_retried(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"execute": [LlmError("down")]})
        scheduler = make_scheduler(reasoning, [make_worker(reasoning)], event_bus)
        task = make_task()
        await scheduler.add_tasks([task])

        await scheduler.run()

        assert task.status == TaskStatus.APPROVED
        assert task.attempt_count == 2

    async def test_review_error_retried(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"review": [JsonError("garbled")]})
        scheduler = make_scheduler(reasoning, [make_worker(reasoning)], event_bus)
        task = make_task()
        await scheduler.add_tasks([task])

        await scheduler.run()

        assert task.status == TaskStatus.APPROVED
        assert len(reasoning.calls("execute")) == 2

    async def test_attempts_exhausted_fails_task(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"execute": [LlmError("down")]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(reasoning, [worker], event_bus, max_attempts=1)
        task = make_task()
        await scheduler.add_tasks([task])

        await scheduler.run()

        assert task.status == TaskStatus.FAILED
        assert worker.status == WorkerStatus.IDLE

    async def test_non_retryable_error_propagates(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"execute": [TaskExecutionFailed("boom")]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(reasoning, [worker], event_bus)
        task = make_task()
        await scheduler.add_tasks([task])

        with pytest.raises(TaskExecutionFailed):
            await scheduler.run()

        assert scheduler.cancelled
        assert task.status == TaskStatus.FAILED
        assert worker.status == WorkerStatus.IDLE


class TestTimeouts:
    """Timed-out executions are re-queued or failed."""

    @pytest.mark.parametrize(
        ("reassignment", "expected_workers"),
        [
            (REASSIGN_ANY_WORKER, ["worker_b", "worker_a"]),
            (REASSIGN_SAME_WORKER, ["worker_b", "worker_b"]),
        ],
    )
    async def test_timeout_requeues(
        self, event_bus: EventBus, reassignment: str, expected_workers: list[str]
    ) -> None:
        reasoning = MockReasoning({"execute": [DEFAULT_MOCK_RESPONSES["execute"], hang()]})
        workers = [make_worker(reasoning, worker_id="worker_a"), make_worker(reasoning, worker_id="worker_b")]
        scheduler = make_scheduler(
            reasoning,
            workers,
            event_bus,
            task_timeout_seconds=0.1,
            timeout_reassignment=reassignment,
        )
        fast, slow = make_task(title="fast"), make_task(title="slow")
        await scheduler.add_tasks([fast, slow])

        assert await scheduler.run() == SchedulerOutcome.COMPLETED

        assert fast.status == TaskStatus.APPROVED
        assert slow.status == TaskStatus.APPROVED
        assert slow.attempt_count == 2
        events = await collect_events(event_bus)
        assigned_to = [
            e.worker_id for e in events if e.type == EventType.TASK_ASSIGNED and e.task_id == slow.id
        ]
        assert assigned_to == expected_workers
        timed_out = [e for e in events if e.type == EventType.TASK_TIMED_OUT]
        assert timed_out[0].data["timeout_seconds"] == 0.1

    async def test_timeout_on_last_attempt_fails(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"execute": [hang()]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(
            reasoning, [worker], event_bus, task_timeout_seconds=0.05, max_attempts=1
        )
        task = make_task()
        await scheduler.add_tasks([task])

        await scheduler.run()

        assert task.status == TaskStatus.FAILED
        assert worker.status == WorkerStatus.IDLE
        types = event_types(await collect_events(event_bus))
        assert types[-2:] == [EventType.TASK_TIMED_OUT, EventType.TASK_FAILED]

    async def test_hung_review_times_out_and_frees_worker(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"review": [hang()]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(
            reasoning, [worker], event_bus, task_timeout_seconds=0.05, max_attempts=1
        )
        task = make_task()
        await scheduler.add_tasks([task])

        await asyncio.wait_for(scheduler.run(), timeout=2.0)

        assert task.status == TaskStatus.FAILED
        assert worker.status == WorkerStatus.IDLE
        types = event_types(await collect_events(event_bus))
        assert types[-2:] == [EventType.TASK_TIMED_OUT, EventType.TASK_FAILED]

    async def test_hung_review_requeues_task(self, event_bus: EventBus) -> None:
        reasoning = MockReasoning({"review": [hang()]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(reasoning, [worker], event_bus, task_timeout_seconds=0.1)
        task = make_task()
        await scheduler.add_tasks([task])

        outcome = await asyncio.wait_for(scheduler.run(), timeout=2.0)

        assert outcome == SchedulerOutcome.COMPLETED
        assert task.status == TaskStatus.APPROVED
        assert task.attempt_count == 2
        assert worker.status == WorkerStatus.IDLE
        assert EventType.TASK_TIMED_OUT in event_types(await collect_events(event_bus))


# =========================================================================
# apply_review
# =========================================================================


class TestApplyReview:
    """Direct application of review decisions."""

    async def test_reapplying_approved_is_noop(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        scheduler = make_scheduler(mock_reasoning, [make_worker(mock_reasoning)], event_bus)
        task = make_task()
        await scheduler.add_tasks([task])
        await scheduler.run()
        before = len(event_bus.get_event_history(TEAM_ID))

        assert await scheduler.apply_review(task.id, Approved()) is False

        assert task.status == TaskStatus.APPROVED
        assert len(event_bus.get_event_history(TEAM_ID)) == before

    async def test_task_not_in_review_is_invalid(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        scheduler = make_scheduler(mock_reasoning, [make_worker(mock_reasoning)], event_bus)
        task = make_task()
        await scheduler.add_tasks([task])
        await scheduler.dispatch()

        with pytest.raises(InvalidStateTransition):
            await scheduler.apply_review(task.id, Approved())
        assert task.status == TaskStatus.ASSIGNED

    async def test_unknown_task(self, mock_reasoning: MockReasoning, event_bus: EventBus) -> None:
        scheduler = make_scheduler(mock_reasoning, [], event_bus)
        with pytest.raises(AgentNotFound):
            await scheduler.apply_review("task_missing", Approved())


# =========================================================================
# Manager intervention
# =========================================================================


class TestIntervention:
    """Cancel, unblock and budget enforcement."""

    @pytest.mark.parametrize(
        ("block_on_reject", "expected_status"),
        [(False, WorkerStatus.IDLE), (True, WorkerStatus.BLOCKED)],
    )
    async def test_cancel_stops_in_flight_work(
        self, event_bus: EventBus, block_on_reject: bool, expected_status: WorkerStatus
    ) -> None:
        started = asyncio.Event()
        reasoning = MockReasoning({"execute": [hang(started)]})
        worker = make_worker(reasoning)
        scheduler = make_scheduler(reasoning, [worker], event_bus, block_on_reject=block_on_reject)
        running, waiting = make_task(title="running"), make_task(title="waiting")
        await scheduler.add_tasks([running, waiting])

        run = asyncio.create_task(scheduler.run())
        await asyncio.wait_for(started.wait(), timeout=1.0)
        await scheduler.cancel("user_cancelled")

        assert await asyncio.wait_for(run, timeout=1.0) == SchedulerOutcome.CANCELLED
        assert running.status == TaskStatus.FAILED
        assert waiting.status == TaskStatus.FAILED
        assert worker.status == expected_status
        assert scheduler.cancel_reason == "user_cancelled"
        reasons = [
            e.data["reason"] for e in await collect_events(event_bus) if e.type == EventType.TASK_FAILED
        ]
        assert reasons == ["cancelled: user_cancelled"] * 2

    async def test_cancel_is_idempotent_and_disables_dispatch(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        scheduler = make_scheduler(mock_reasoning, [make_worker(mock_reasoning)], event_bus)
        task = make_task()
        await scheduler.add_tasks([task])

        await scheduler.cancel("first")
        await scheduler.cancel("second")

        assert scheduler.cancel_reason == "first"
        assert task.status == TaskStatus.FAILED
        assert await scheduler.dispatch() == []
        assert await scheduler.run() == SchedulerOutcome.CANCELLED

    async def test_unblock_requires_blocked_worker(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        worker = make_worker(mock_reasoning)
        scheduler = make_scheduler(mock_reasoning, [worker], event_bus)
        with pytest.raises(InvalidStateTransition):
            await scheduler.unblock_worker(worker.id)
        with pytest.raises(AgentNotFound):
            await scheduler.unblock_worker("worker_missing")

    async def test_budget_exhaustion_cancels_team(self, event_bus: EventBus) -> None:
        tracker = UsageTracker(input_cost_per_1k=1.0, output_cost_per_1k=0.0)
        tracker.start(TEAM_ID, budget_limit=0.5)
        reasoning = MockReasoning(usage_tracker=tracker, team_id=TEAM_ID, tokens_per_call=(1000, 0))
        scheduler = Scheduler(
            team_id=TEAM_ID,
            manager=ManagerAgent(TEAM_ID, reasoning),
            workers=[make_worker(reasoning)],
            event_bus=event_bus,
            policy=SchedulerPolicy(task_timeout_seconds=5.0),
            usage_tracker=tracker,
        )
        first, second = make_task(title="first"), make_task(title="second")
        await scheduler.add_tasks([first, second])

        outcome = await scheduler.run()

        assert outcome == SchedulerOutcome.BUDGET_EXHAUSTED
        assert scheduler.cancel_reason == "budget_exhausted"
        assert first.status == TaskStatus.APPROVED
        assert second.status == TaskStatus.FAILED

    async def test_budget_ignored_when_not_enforced(self, event_bus: EventBus) -> None:
        tracker = UsageTracker(input_cost_per_1k=1.0, output_cost_per_1k=0.0)
        tracker.start(TEAM_ID, budget_limit=0.5)
        reasoning = MockReasoning(usage_tracker=tracker, team_id=TEAM_ID, tokens_per_call=(1000, 0))
        scheduler = Scheduler(
            team_id=TEAM_ID,
            manager=ManagerAgent(TEAM_ID, reasoning),
            workers=[make_worker(reasoning)],
            event_bus=event_bus,
            policy=SchedulerPolicy(task_timeout_seconds=5.0, enforce_budget=False),
            usage_tracker=tracker,
        )
        await scheduler.add_tasks([make_task(title="first"), make_task(title="second")])

        assert await scheduler.run() == SchedulerOutcome.COMPLETED


# =========================================================================
# Side effects
# =========================================================================


class TestSideEffects:
    """Messages, state projection and persistence."""

    async def test_messages_follow_task_lifecycle(
        self, mock_reasoning: MockReasoning, event_bus: EventBus, message_bus: MessageBus
    ) -> None:
        worker = make_worker(mock_reasoning)
        scheduler = make_scheduler(mock_reasoning, [worker], event_bus, message_bus)
        task = make_task()
        await scheduler.add_tasks([task])

        await scheduler.run()

        history = message_bus.get_history(worker.id)
        assert [m.message_type for m in history] == [
            MessageType.TASK_ASSIGNMENT,
            MessageType.TASK_COMPLETION,
            MessageType.APPROVAL,
        ]
        assert history[1].from_id == worker.id
        assert history[1].to_id == scheduler.manager.id
        assert all(m.payload["task_id"] == task.id for m in history)

    async def test_state_projection(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        worker = make_worker(mock_reasoning)
        scheduler = make_scheduler(mock_reasoning, [worker], event_bus)
        first, second = make_task(title="first"), make_task(title="second")
        await scheduler.add_tasks([first, second])
        await scheduler.dispatch()

        state = scheduler.state("executing")

        assert state.team_id == TEAM_ID
        assert state.current_phase == "executing"
        assert state.active_workers == [worker.id]
        assert state.pending_tasks == [second.id]
        assert state.approved_tasks == []

    async def test_records_persisted(
        self, mock_reasoning: MockReasoning, event_bus: EventBus
    ) -> None:
        repository = InMemoryRepository()
        worker = make_worker(mock_reasoning)
        scheduler = Scheduler(
            team_id=TEAM_ID,
            manager=ManagerAgent(TEAM_ID, mock_reasoning),
            workers=[worker],
            event_bus=event_bus,
            policy=SchedulerPolicy(task_timeout_seconds=5.0),
            repository=repository,
        )
        task = make_task()
        await scheduler.add_tasks([task])

        await scheduler.run()

        stored = await repository.load_task(task.id)
        assert stored.status == TaskStatus.APPROVED
        assert stored.attempt_count == 1
        record = await repository.load_worker(worker.id)
        assert record.status == WorkerStatus.IDLE

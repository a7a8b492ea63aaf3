"""Scheduler: dispatches tasks to workers and drives the task state machine.

The Scheduler is the only caller of ``WorkerAgent.assign_task``. Dispatch
decisions are serialized by a single dispatch lock, and every status
change of a worker (together with its task) happens under that worker's
own lock, so no worker can ever hold two tasks.

Execution runs one asyncio task per busy worker. Each execution is bounded
by a per-attempt timeout; reviewed outputs are applied through
``apply_review``. The run loop ends when every task is terminal, when no
progress is possible, or when the team is cancelled (explicitly or by
budget exhaustion).
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from agents.manager import ManagerAgent
from agents.state import project_agent_state
from agents.worker import WorkerAgent
from config import Settings, settings
from errors import AgentError, AgentNotFound, ConfigError
from events.bus import EventBus
from events.messages import AgentMessage, MessageBus, MessageType
from events.types import AgentEvent, EventType
from metrics import UsageTracker
from models.repository import TeamRepository
from models.schemas import (
    AgentState,
    Approved,
    Rejected,
    ReviewDecision,
    RevisionRequested,
    Task,
    TaskStatus,
    WorkerStatus,
)
from models.transitions import transition_task

logger = structlog.get_logger()

REASSIGN_ANY_WORKER = "any_worker"
REASSIGN_SAME_WORKER = "same_worker"


class SchedulerOutcome(StrEnum):
    """Why the run loop stopped."""

    COMPLETED = "completed"
    STALLED = "stalled"
    CANCELLED = "cancelled"
    BUDGET_EXHAUSTED = "budget_exhausted"


@dataclass(frozen=True)
class SchedulerPolicy:
    """Retry, timeout and failure policy for one scheduler.

    Attributes:
        max_attempts: Execution attempts per task. A revision requested on
            the last attempt becomes a rejection.
        task_timeout_seconds: Bound on one execution call.
        timeout_reassignment: "any_worker" re-queues a timed-out task for
            normal dispatch; "same_worker" pins it to the worker it timed
            out on.
        block_on_reject: Park workers in Blocked after a rejection or a
            cancellation instead of returning them to Idle.
        enforce_budget: Cancel the team once its budget is spent.
    """

    max_attempts: int = 3
    task_timeout_seconds: float = 300.0
    timeout_reassignment: str = REASSIGN_ANY_WORKER
    block_on_reject: bool = False
    enforce_budget: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.task_timeout_seconds <= 0:
            raise ConfigError(
                f"task_timeout_seconds must be > 0, got {self.task_timeout_seconds}"
            )
        if self.timeout_reassignment not in (REASSIGN_ANY_WORKER, REASSIGN_SAME_WORKER):
            raise ConfigError(f"unknown timeout_reassignment '{self.timeout_reassignment}'")

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "SchedulerPolicy":
        source = source or settings
        return cls(
            max_attempts=source.max_task_attempts,
            task_timeout_seconds=source.task_timeout_seconds,
            timeout_reassignment=source.timeout_reassignment,
            block_on_reject=source.block_worker_on_reject,
            enforce_budget=source.enforce_budget,
        )


class Scheduler:
    """Matches Pending tasks to Idle workers and applies review outcomes.

    Attributes:
        team_id: The team being scheduled.
        manager: Reviews outputs; its id is the sender of manager messages.
        workers: Workers keyed by id, in ascending id order.
        tasks: Tasks keyed by id, in decomposition order.
        policy: Retry, timeout and failure policy.
    """

    def __init__(
        self,
        team_id: str,
        manager: ManagerAgent,
        workers: Iterable[WorkerAgent],
        event_bus: EventBus,
        message_bus: MessageBus | None = None,
        policy: SchedulerPolicy | None = None,
        usage_tracker: UsageTracker | None = None,
        repository: TeamRepository | None = None,
    ) -> None:
        self.team_id = team_id
        self.manager = manager
        self.workers: dict[str, WorkerAgent] = {
            w.id: w for w in sorted(workers, key=lambda w: w.id)
        }
        self.tasks: dict[str, Task] = {}
        self.event_bus = event_bus
        self.message_bus = message_bus
        self.policy = policy or SchedulerPolicy.from_settings()
        self.usage_tracker = usage_tracker
        self.repository = repository

        self._dispatch_lock = asyncio.Lock()
        self._pinned: dict[str, str] = {}
        self._in_flight: dict[asyncio.Task[None], str] = {}
        self._cancelled = False
        self._cancel_complete = asyncio.Event()
        self.cancel_reason: str | None = None

        if self.message_bus is not None:
            self.message_bus.register(self.manager.id)
            for worker_id in self.workers:
                self.message_bus.register(worker_id)

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def get_task(self, task_id: str) -> Task:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise AgentNotFound("task", task_id) from None

    def get_worker(self, worker_id: str) -> WorkerAgent:
        try:
            return self.workers[worker_id]
        except KeyError:
            raise AgentNotFound("worker", worker_id) from None

    def all_terminal(self) -> bool:
        return all(task.is_terminal for task in self.tasks.values())

    def state(self, phase: str) -> AgentState:
        return project_agent_state(self.team_id, phase, self.workers.values(), self.tasks.values())

    # -----------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------

    async def add_tasks(self, tasks: Iterable[Task]) -> None:
        """Enqueue tasks in the given order."""
        for task in tasks:
            if task.team_id is None:
                task.team_id = self.team_id
            self.tasks[task.id] = task
            await self._persist(task=task)
        logger.info("tasks_enqueued", team_id=self.team_id, total_tasks=len(self.tasks))

    async def dispatch(self) -> list[tuple[str, str]]:
        """Run one dispatch cycle.

        For each Pending task in order, assign it to the first Idle worker
        (ascending id) that can handle its required skills. A task pinned
        by a same-worker timeout only goes back to that worker. Tasks with
        no eligible worker stay Pending without an event.

        Returns:
            The (task_id, worker_id) pairs assigned in this cycle.
        """
        assignments: list[tuple[str, str]] = []
        async with self._dispatch_lock:
            if self._cancelled:
                return assignments

            for task in self.tasks.values():
                if task.status != TaskStatus.PENDING:
                    continue
                worker = await self._claim_worker(task)
                if worker is None:
                    logger.debug(
                        "task_awaiting_worker",
                        team_id=self.team_id,
                        task_id=task.id,
                        required_skills=task.required_skills,
                    )
                    continue
                assignments.append((task.id, worker.id))
                await self._announce_assignment(task, worker)

        return assignments

    async def _claim_worker(self, task: Task) -> WorkerAgent | None:
        pinned_id = self._pinned.get(task.id)
        if pinned_id is not None:
            candidates = [self.workers[pinned_id]]
        else:
            candidates = [w for w in self.workers.values() if w.can_handle(task.required_skills)]

        for worker in candidates:
            async with worker.lock:
                if worker.status != WorkerStatus.IDLE:
                    continue
                worker.assign_task(task.id)
                transition_task(task, TaskStatus.ASSIGNED)
                task.assigned_worker_id = worker.id
                task.attempt_count += 1
            self._pinned.pop(task.id, None)
            return worker
        return None

    async def _announce_assignment(self, task: Task, worker: WorkerAgent) -> None:
        logger.info(
            "task_assigned",
            team_id=self.team_id,
            task_id=task.id,
            worker_id=worker.id,
            attempt=task.attempt_count,
        )
        await self._publish(
            EventType.TASK_ASSIGNED,
            task_id=task.id,
            worker_id=worker.id,
            attempt=task.attempt_count,
        )
        await self._send(
            self.manager.id,
            worker.id,
            MessageType.TASK_ASSIGNMENT,
            {"task_id": task.id, "title": task.title, "attempt": task.attempt_count},
        )
        await self._persist(task=task, worker=worker)

    # -----------------------------------------------------------------
    # Run loop
    # -----------------------------------------------------------------

    async def run(self) -> SchedulerOutcome:
        """Drive dispatch and execution until a terminal condition.

        Raises:
            AgentError: Any non-retryable error from an execution (for
                example an invalid transition). In-flight work is cancelled
                before the error propagates.
        """
        logger.info("scheduler_started", team_id=self.team_id, tasks=len(self.tasks))
        try:
            outcome = await self._run_loop()
        except asyncio.CancelledError:
            await self.cancel("interrupted")
            raise

        logger.info(
            "scheduler_finished",
            team_id=self.team_id,
            outcome=outcome.value,
            approved=sum(1 for t in self.tasks.values() if t.status == TaskStatus.APPROVED),
            failed=sum(1 for t in self.tasks.values() if t.status == TaskStatus.FAILED),
        )
        return outcome

    async def _run_loop(self) -> SchedulerOutcome:
        while True:
            if self._cancelled:
                await self._cancel_complete.wait()
                return SchedulerOutcome.CANCELLED
            if self._budget_exhausted():
                await self.cancel("budget_exhausted")
                return SchedulerOutcome.BUDGET_EXHAUSTED

            await self.dispatch()
            self._start_idle_assignments()

            if self.all_terminal():
                return SchedulerOutcome.COMPLETED

            if not self._in_flight:
                if await self._intervene_on_blocked_workers():
                    continue
                logger.warning(
                    "scheduler_stalled",
                    team_id=self.team_id,
                    pending_tasks=[t.id for t in self.tasks.values() if t.status == TaskStatus.PENDING],
                )
                return SchedulerOutcome.STALLED

            done, _ = await asyncio.wait(
                list(self._in_flight), return_when=asyncio.FIRST_COMPLETED
            )
            for execution in done:
                self._in_flight.pop(execution, None)
                if execution.cancelled():
                    continue
                error = execution.exception()
                if error is not None:
                    await self.cancel(f"error: {error}")
                    raise error

    def _start_idle_assignments(self) -> None:
        """Start an execution for every Assigned task that has none running."""
        running = set(self._in_flight.values())
        for task in self.tasks.values():
            if task.status != TaskStatus.ASSIGNED or task.id in running:
                continue
            worker = self.workers[task.assigned_worker_id]
            execution = asyncio.create_task(
                self._execute_attempts(task, worker),
                name=f"execute-{task.id}",
            )
            self._in_flight[execution] = task.id

    def _budget_exhausted(self) -> bool:
        return (
            self.policy.enforce_budget
            and self.usage_tracker is not None
            and self.usage_tracker.is_exhausted(self.team_id)
        )

    async def _intervene_on_blocked_workers(self) -> bool:
        """Release blocked workers that could unblock a starving task.

        Returns True if any worker was released.
        """
        pending = [t for t in self.tasks.values() if t.status == TaskStatus.PENDING]
        released = False
        for worker in self.workers.values():
            if worker.status != WorkerStatus.BLOCKED:
                continue
            if any(worker.can_handle(t.required_skills) for t in pending):
                await self.unblock_worker(worker.id)
                released = True
        return released

    async def _execute_attempts(self, task: Task, worker: WorkerAgent) -> None:
        """Execute and review a task on one worker until it leaves that worker."""
        while True:
            if self._budget_exhausted():
                return

            try:
                output = await asyncio.wait_for(
                    worker.execute_task(task),
                    timeout=self.policy.task_timeout_seconds,
                )
            except TimeoutError:
                await self._handle_timeout(task, worker)
                return
            except AgentError as e:
                if not e.retryable:
                    raise
                if await self._retry_or_fail(task, worker, e):
                    continue
                return

            async with worker.lock:
                transition_task(task, TaskStatus.IN_REVIEW)
            await self._send(
                worker.id,
                self.manager.id,
                MessageType.TASK_COMPLETION,
                {"task_id": task.id, "attempt": task.attempt_count, "artifacts": output.artifacts},
            )
            await self._persist(task=task)

            try:
                decision = await asyncio.wait_for(
                    self.manager.review_output(task, output),
                    timeout=self.policy.task_timeout_seconds,
                )
            except TimeoutError:
                await self._handle_timeout(task, worker)
                return
            except AgentError as e:
                if not e.retryable:
                    raise
                if await self._retry_or_fail(task, worker, e):
                    continue
                return

            if not await self.apply_review(task.id, decision):
                return

    async def _handle_timeout(self, task: Task, worker: WorkerAgent) -> None:
        async with worker.lock:
            worker.release()
            if task.attempt_count >= self.policy.max_attempts:
                transition_task(task, TaskStatus.FAILED)
                exhausted = True
            else:
                # a review that timed out goes back through ASSIGNED
                if task.status == TaskStatus.IN_REVIEW:
                    transition_task(task, TaskStatus.ASSIGNED)
                transition_task(task, TaskStatus.PENDING)
                task.assigned_worker_id = None
                if self.policy.timeout_reassignment == REASSIGN_SAME_WORKER:
                    self._pinned[task.id] = worker.id
                exhausted = False

        logger.warning(
            "task_timed_out",
            team_id=self.team_id,
            task_id=task.id,
            worker_id=worker.id,
            attempt=task.attempt_count,
            timeout_seconds=self.policy.task_timeout_seconds,
            requeued=not exhausted,
        )
        await self._publish(
            EventType.TASK_TIMED_OUT,
            task_id=task.id,
            worker_id=worker.id,
            attempt=task.attempt_count,
            timeout_seconds=self.policy.task_timeout_seconds,
        )
        if exhausted:
            await self._publish(
                EventType.TASK_FAILED,
                task_id=task.id,
                worker_id=worker.id,
                reason="attempts exhausted after timeout",
            )
        await self._persist(task=task, worker=worker)

    async def _retry_or_fail(self, task: Task, worker: WorkerAgent, error: AgentError) -> bool:
        """Consume an attempt after a recoverable reasoning error.

        Returns True if the same worker should try again.
        """
        async with worker.lock:
            if task.attempt_count >= self.policy.max_attempts:
                transition_task(task, TaskStatus.FAILED)
                self._free_worker(worker, blocked=False)
                retry = False
            else:
                if task.status == TaskStatus.IN_REVIEW:
                    transition_task(task, TaskStatus.ASSIGNED)
                task.attempt_count += 1
                retry = True

        logger.warning(
            "task_attempt_failed",
            team_id=self.team_id,
            task_id=task.id,
            worker_id=worker.id,
            attempt=task.attempt_count,
            error_type=type(error).__name__,
            error=str(error),
            retrying=retry,
        )
        if not retry:
            await self._publish(
                EventType.TASK_FAILED,
                task_id=task.id,
                worker_id=worker.id,
                reason=str(error),
            )
        await self._persist(task=task, worker=worker)
        return retry

    # -----------------------------------------------------------------
    # Review
    # -----------------------------------------------------------------

    async def apply_review(self, task_id: str, decision: ReviewDecision) -> bool:
        """Apply a review decision to a task in review.

        Approved retires the task and frees the worker. RevisionRequested
        appends feedback and hands the task back to the same worker with
        the attempt count incremented; on the last allowed attempt it is
        treated as Rejected. Rejected fails the task and frees the worker
        (or blocks it, per policy). Re-applying Approved to an Approved
        task is a no-op.

        Returns:
            True if the same worker should run another attempt.

        Raises:
            AgentNotFound: If the task or its worker is unknown.
            InvalidStateTransition: If the task is not in review.
        """
        task = self.get_task(task_id)
        if isinstance(decision, Approved) and task.status == TaskStatus.APPROVED:
            logger.debug("review_already_applied", team_id=self.team_id, task_id=task_id)
            return False
        if task.assigned_worker_id is None:
            raise AgentNotFound("worker", f"assigned to {task_id}")
        worker = self.get_worker(task.assigned_worker_id)

        if isinstance(decision, RevisionRequested) and task.attempt_count >= self.policy.max_attempts:
            logger.info(
                "revision_limit_reached",
                team_id=self.team_id,
                task_id=task.id,
                attempt=task.attempt_count,
            )
            decision = Rejected(
                reason=f"revision limit of {self.policy.max_attempts} attempts reached: {decision.feedback}"
            )

        async with worker.lock:
            if isinstance(decision, Approved):
                transition_task(task, TaskStatus.APPROVED)
                worker.release()
            elif isinstance(decision, RevisionRequested):
                transition_task(task, TaskStatus.ASSIGNED)
                task.append_feedback(decision.feedback)
                task.attempt_count += 1
            else:
                transition_task(task, TaskStatus.FAILED)
                self._free_worker(worker, blocked=self.policy.block_on_reject)

        if isinstance(decision, Approved):
            await self._publish(
                EventType.TASK_COMPLETED,
                task_id=task.id,
                worker_id=worker.id,
                attempt=task.attempt_count,
            )
            await self._send(self.manager.id, worker.id, MessageType.APPROVAL, {"task_id": task.id})
        elif isinstance(decision, RevisionRequested):
            await self._publish(
                EventType.TASK_REVISION_REQUESTED,
                task_id=task.id,
                worker_id=worker.id,
                feedback=decision.feedback,
                attempt=task.attempt_count - 1,
            )
            await self._send(
                self.manager.id,
                worker.id,
                MessageType.REVISION_REQUEST,
                {"task_id": task.id, "feedback": decision.feedback},
            )
        else:
            await self._publish(
                EventType.TASK_FAILED,
                task_id=task.id,
                worker_id=worker.id,
                reason=decision.reason,
            )
            await self._send(
                self.manager.id,
                worker.id,
                MessageType.REJECTION,
                {"task_id": task.id, "reason": decision.reason},
            )

        await self._persist(task=task, worker=worker)
        return isinstance(decision, RevisionRequested)

    def _free_worker(self, worker: WorkerAgent, blocked: bool) -> None:
        """Move a Working worker out of its task. Caller holds ``worker.lock``."""
        if worker.status != WorkerStatus.WORKING:
            return
        if blocked:
            worker.block()
        else:
            worker.release()

    # -----------------------------------------------------------------
    # Manager intervention
    # -----------------------------------------------------------------

    async def cancel(self, reason: str) -> None:
        """Stop the team: cancel in-flight work, fail open tasks, disable dispatch.

        Workers that were Working end up Idle, or Blocked when the policy
        blocks on rejection. Calling cancel twice is a no-op.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self.cancel_reason = reason
        logger.warning("scheduler_cancelling", team_id=self.team_id, reason=reason)
        try:
            await self._stop_in_flight()
            await self._fail_open_tasks(reason)
        finally:
            self._cancel_complete.set()

    async def _stop_in_flight(self) -> None:
        current = asyncio.current_task()
        in_flight = [t for t in self._in_flight if t is not current]
        for execution in in_flight:
            execution.cancel()
        if in_flight:
            results = await asyncio.gather(*in_flight, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(
                        "execution_failed_during_cancel",
                        team_id=self.team_id,
                        error_type=type(result).__name__,
                        error=str(result),
                    )
        for execution in in_flight:
            self._in_flight.pop(execution, None)

    async def _fail_open_tasks(self, reason: str) -> None:
        async with self._dispatch_lock:
            for task in self.tasks.values():
                if task.is_terminal:
                    continue
                worker = self.workers.get(task.assigned_worker_id or "")
                if worker is not None and task.status != TaskStatus.PENDING:
                    async with worker.lock:
                        transition_task(task, TaskStatus.FAILED)
                        self._free_worker(worker, blocked=self.policy.block_on_reject)
                else:
                    transition_task(task, TaskStatus.FAILED)
                await self._publish(
                    EventType.TASK_FAILED,
                    task_id=task.id,
                    worker_id=task.assigned_worker_id,
                    reason=f"cancelled: {reason}",
                )
                await self._persist(task=task, worker=worker)

    async def unblock_worker(self, worker_id: str) -> None:
        """Return a Blocked worker to Idle.

        Raises:
            AgentNotFound: If the worker is unknown.
            InvalidStateTransition: If the worker is not Blocked.
        """
        worker = self.get_worker(worker_id)
        async with worker.lock:
            worker.release()
        logger.info("worker_unblocked", team_id=self.team_id, worker_id=worker_id)
        await self._persist(worker=worker)

    # -----------------------------------------------------------------
    # Side effects
    # -----------------------------------------------------------------

    async def _publish(
        self,
        event_type: EventType,
        task_id: str | None = None,
        worker_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.event_bus.publish(
            AgentEvent(
                type=event_type,
                team_id=self.team_id,
                task_id=task_id,
                worker_id=worker_id,
                data=data,
            )
        )

    async def _send(
        self,
        from_id: str,
        to_id: str,
        message_type: MessageType,
        payload: dict[str, Any],
    ) -> None:
        if self.message_bus is None:
            return
        await self.message_bus.send(
            AgentMessage(from_id=from_id, to_id=to_id, message_type=message_type, payload=payload)
        )

    async def _persist(
        self,
        task: Task | None = None,
        worker: WorkerAgent | None = None,
    ) -> None:
        if self.repository is None:
            return
        if task is not None:
            await self.repository.save_task(task)
        if worker is not None:
            await self.repository.save_worker(worker.snapshot())

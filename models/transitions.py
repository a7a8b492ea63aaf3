"""Explicit status transition tables for tasks, workers and teams.

Every status change in the engine goes through one of the ``transition_*``
helpers below. A target not listed for the current status raises
InvalidStateTransition; nothing is ever coerced.
"""

import time
from collections.abc import Mapping
from enum import StrEnum
from typing import TypeVar

from errors import InvalidStateTransition
from models.schemas import Task, TaskStatus, Team, TeamStatus, WorkerStatus

S = TypeVar("S", bound=StrEnum)

TASK_TRANSITIONS: Mapping[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.FAILED}),
    # PENDING again after a timeout or an aborted dispatch
    TaskStatus.ASSIGNED: frozenset(
        {TaskStatus.IN_REVIEW, TaskStatus.PENDING, TaskStatus.FAILED}
    ),
    # ASSIGNED again when a revision is requested
    TaskStatus.IN_REVIEW: frozenset(
        {TaskStatus.APPROVED, TaskStatus.ASSIGNED, TaskStatus.FAILED}
    ),
    TaskStatus.APPROVED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}

WORKER_TRANSITIONS: Mapping[WorkerStatus, frozenset[WorkerStatus]] = {
    WorkerStatus.IDLE: frozenset({WorkerStatus.WORKING}),
    WorkerStatus.WORKING: frozenset({WorkerStatus.IDLE, WorkerStatus.BLOCKED}),
    WorkerStatus.BLOCKED: frozenset({WorkerStatus.IDLE}),
}

TEAM_TRANSITIONS: Mapping[TeamStatus, frozenset[TeamStatus]] = {
    TeamStatus.PENDING: frozenset({TeamStatus.PLANNING}),
    TeamStatus.PLANNING: frozenset({TeamStatus.ACTIVE, TeamStatus.FAILED}),
    TeamStatus.ACTIVE: frozenset({TeamStatus.COMPLETED, TeamStatus.FAILED}),
    TeamStatus.COMPLETED: frozenset({TeamStatus.ARCHIVED}),
    TeamStatus.FAILED: frozenset({TeamStatus.ARCHIVED}),
    TeamStatus.ARCHIVED: frozenset(),
}


def can_transition(table: Mapping[S, frozenset[S]], current: S, target: S) -> bool:
    return target in table.get(current, frozenset())


def ensure_transition(
    entity: str,
    table: Mapping[S, frozenset[S]],
    current: S,
    target: S,
) -> None:
    """Raise InvalidStateTransition unless ``current -> target`` is allowed."""
    if not can_transition(table, current, target):
        raise InvalidStateTransition(entity, current.value, target.value)


def transition_task(task: Task, target: TaskStatus) -> None:
    ensure_transition(f"task {task.id}", TASK_TRANSITIONS, task.status, target)
    task.status = target


def transition_team(team: Team, target: TeamStatus, reason: str | None = None) -> None:
    """Move a team to ``target`` and stamp the lifecycle timestamps.

    Args:
        team: The team aggregate to update in place.
        target: The requested status.
        reason: Failure reason, recorded when ``target`` is FAILED.
    """
    ensure_transition(f"team {team.id}", TEAM_TRANSITIONS, team.status, target)
    now = time.time()
    if target == TeamStatus.ACTIVE:
        team.started_at = now
    elif target in (TeamStatus.COMPLETED, TeamStatus.FAILED):
        team.completed_at = now
    if target == TeamStatus.FAILED:
        team.failure_reason = reason or "unspecified"
    team.status = target

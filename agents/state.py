"""Read-only projection of a team's orchestration state."""

from collections.abc import Iterable
from typing import Protocol

from models.schemas import AgentState, Task, TaskStatus, WorkerStatus


class _HasStatus(Protocol):
    id: str
    status: WorkerStatus


def project_agent_state(
    team_id: str,
    phase: str,
    workers: Iterable[_HasStatus],
    tasks: Iterable[Task],
) -> AgentState:
    """Recompute an AgentState from current worker and task records.

    Works with live WorkerAgent objects and persisted WorkerRecords alike.
    """
    workers = list(workers)
    tasks = list(tasks)
    return AgentState(
        team_id=team_id,
        current_phase=str(phase),
        active_workers=[w.id for w in workers if w.status == WorkerStatus.WORKING],
        blocked_workers=[w.id for w in workers if w.status == WorkerStatus.BLOCKED],
        pending_tasks=[t.id for t in tasks if t.status == TaskStatus.PENDING],
        approved_tasks=[t.id for t in tasks if t.status == TaskStatus.APPROVED],
        failed_tasks=[t.id for t in tasks if t.status == TaskStatus.FAILED],
    )

"""Persistence port for Team, Worker and Task records.

The orchestration core treats storage as a transactional key-value
interface: whole records are saved and loaded by identity. Adapters live
here (in-memory) and in ``models.database`` (SQLite).
"""

import asyncio
from typing import Any, Protocol, runtime_checkable

from errors import AgentNotFound
from models.schemas import Task, Team, WorkerRecord


@runtime_checkable
class TeamRepository(Protocol):
    """Capability the engine needs from a persistence layer.

    Every ``load_*`` raises AgentNotFound for an unknown identity.
    ``list_tasks`` returns tasks in first-save order.
    """

    async def save_team(self, team: Team) -> None: ...

    async def load_team(self, team_id: str) -> Team: ...

    async def save_worker(self, worker: WorkerRecord) -> None: ...

    async def load_worker(self, worker_id: str) -> WorkerRecord: ...

    async def list_workers(self, team_id: str) -> list[WorkerRecord]: ...

    async def save_task(self, task: Task) -> None: ...

    async def load_task(self, task_id: str) -> Task: ...

    async def list_tasks(self, team_id: str) -> list[Task]: ...

    async def save_usage(self, team_id: str, usage: dict[str, Any]) -> None: ...

    async def load_usage(self, team_id: str) -> dict[str, Any]: ...


class InMemoryRepository:
    """Dict-backed repository, used by default and in tests.

    Records are stored as deep copies so callers cannot mutate persisted
    state by holding on to the objects they saved.
    """

    def __init__(self) -> None:
        self._teams: dict[str, Team] = {}
        self._workers: dict[str, WorkerRecord] = {}
        self._tasks: dict[str, Task] = {}
        self._usage: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save_team(self, team: Team) -> None:
        async with self._lock:
            self._teams[team.id] = team.model_copy(deep=True)

    async def load_team(self, team_id: str) -> Team:
        async with self._lock:
            team = self._teams.get(team_id)
        if team is None:
            raise AgentNotFound("team", team_id)
        return team.model_copy(deep=True)

    async def save_worker(self, worker: WorkerRecord) -> None:
        async with self._lock:
            self._workers[worker.id] = worker.model_copy(deep=True)

    async def load_worker(self, worker_id: str) -> WorkerRecord:
        async with self._lock:
            worker = self._workers.get(worker_id)
        if worker is None:
            raise AgentNotFound("worker", worker_id)
        return worker.model_copy(deep=True)

    async def list_workers(self, team_id: str) -> list[WorkerRecord]:
        async with self._lock:
            return [
                w.model_copy(deep=True)
                for w in self._workers.values()
                if w.team_id == team_id
            ]

    async def save_task(self, task: Task) -> None:
        async with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)

    async def load_task(self, task_id: str) -> Task:
        async with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise AgentNotFound("task", task_id)
        return task.model_copy(deep=True)

    async def list_tasks(self, team_id: str) -> list[Task]:
        async with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self._tasks.values()
                if t.team_id == team_id
            ]

    async def save_usage(self, team_id: str, usage: dict[str, Any]) -> None:
        async with self._lock:
            self._usage[team_id] = dict(usage)

    async def load_usage(self, team_id: str) -> dict[str, Any]:
        async with self._lock:
            usage = self._usage.get(team_id)
        if usage is None:
            raise AgentNotFound("usage", team_id)
        return dict(usage)

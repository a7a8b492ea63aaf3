"""SQLite-backed team persistence using aiosqlite.

This module provides the SqliteRepository class, a persistence adapter
that stores Team, Worker and Task records as JSON documents keyed by
``(kind, id)``. Each save runs in its own transaction.

Tables:
    records: One row per persisted record (kind, id, team_id, data, updated_at).
    team_usage: Latest token/cost snapshot per team.

Usage:
    >>> from models.database import SqliteRepository
    >>> repo = SqliteRepository("./data/teams.db")
    >>> await repo.init()
    >>> await repo.save_team(Team(goal="Build a scraper"))
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog
from pydantic import BaseModel

from errors import AgentNotFound
from models.schemas import Task, Team, WorkerRecord

logger = structlog.get_logger(__name__)

KIND_TEAM = "team"
KIND_WORKER = "worker"
KIND_TASK = "task"


class SqliteRepository:
    """Async SQLite implementation of the TeamRepository port.

    Unlike a best-effort store, storage errors are logged and re-raised:
    the caller decides whether a failed save is fatal.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the repository.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS records (
                        kind TEXT NOT NULL,
                        id TEXT NOT NULL,
                        team_id TEXT,
                        data TEXT NOT NULL,
                        updated_at REAL NOT NULL,
                        PRIMARY KEY (kind, id)
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_records_team
                    ON records(kind, team_id)
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS team_usage (
                        team_id TEXT PRIMARY KEY,
                        data TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.commit()
            logger.info("team_repository_initialized", db_path=self.db_path)
        except aiosqlite.Error as e:
            logger.error(
                "team_repository_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Generic record access
    # -----------------------------------------------------------------

    async def _upsert(self, kind: str, record_id: str, team_id: str | None, record: BaseModel) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO records (kind, id, team_id, data, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(kind, id) DO UPDATE SET
                        team_id = excluded.team_id,
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (kind, record_id, team_id, record.model_dump_json(), time.time()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("record_save_failed", kind=kind, record_id=record_id, error=str(e))
            raise
        logger.debug("record_saved", kind=kind, record_id=record_id)

    async def _fetch_one(self, kind: str, record_id: str) -> str:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT data FROM records WHERE kind = ? AND id = ?",
                (kind, record_id),
            )
            row = await cursor.fetchone()
        if row is None:
            raise AgentNotFound(kind, record_id)
        return row[0]

    async def _fetch_for_team(self, kind: str, team_id: str) -> list[str]:
        async with aiosqlite.connect(self.db_path) as db:
            # rowid survives upserts, so this is first-save order
            cursor = await db.execute(
                "SELECT data FROM records WHERE kind = ? AND team_id = ? ORDER BY rowid",
                (kind, team_id),
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # -----------------------------------------------------------------
    # TeamRepository
    # -----------------------------------------------------------------

    async def save_team(self, team: Team) -> None:
        await self._upsert(KIND_TEAM, team.id, team.id, team)

    async def load_team(self, team_id: str) -> Team:
        return Team.model_validate_json(await self._fetch_one(KIND_TEAM, team_id))

    async def save_worker(self, worker: WorkerRecord) -> None:
        await self._upsert(KIND_WORKER, worker.id, worker.team_id, worker)

    async def load_worker(self, worker_id: str) -> WorkerRecord:
        return WorkerRecord.model_validate_json(await self._fetch_one(KIND_WORKER, worker_id))

    async def list_workers(self, team_id: str) -> list[WorkerRecord]:
        return [
            WorkerRecord.model_validate_json(data)
            for data in await self._fetch_for_team(KIND_WORKER, team_id)
        ]

    async def save_task(self, task: Task) -> None:
        await self._upsert(KIND_TASK, task.id, task.team_id, task)

    async def load_task(self, task_id: str) -> Task:
        return Task.model_validate_json(await self._fetch_one(KIND_TASK, task_id))

    async def list_tasks(self, team_id: str) -> list[Task]:
        return [
            Task.model_validate_json(data)
            for data in await self._fetch_for_team(KIND_TASK, team_id)
        ]

    # -----------------------------------------------------------------
    # Usage snapshots
    # -----------------------------------------------------------------

    async def save_usage(self, team_id: str, usage: dict[str, Any]) -> None:
        """Save or replace the token/cost snapshot for a team."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO team_usage (team_id, data, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (team_id, json.dumps(usage), time.time()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("team_usage_save_failed", team_id=team_id, error=str(e))
            raise
        logger.debug("team_usage_saved", team_id=team_id)

    async def load_usage(self, team_id: str) -> dict[str, Any]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT data FROM team_usage WHERE team_id = ?",
                (team_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            raise AgentNotFound("usage", team_id)
        return json.loads(row[0])

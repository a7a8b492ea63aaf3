"""Models module for the orchestration data model.

This module exposes the Pydantic schemas, the status transition tables and
the persistence port with its adapters.
"""

from models.database import SqliteRepository
from models.repository import InMemoryRepository, TeamRepository
from models.schemas import (
    MAX_TEAM_SIZE,
    MIN_TEAM_SIZE,
    AgentState,
    Approved,
    GoalAnalysis,
    Rejected,
    ReviewDecision,
    RevisionRequested,
    Specialization,
    Task,
    TaskOutput,
    TaskStatus,
    Team,
    TeamPhase,
    TeamStatus,
    WorkerRecord,
    WorkerSpec,
    WorkerStatus,
    review_decision_adapter,
)
from models.transitions import (
    TASK_TRANSITIONS,
    TEAM_TRANSITIONS,
    WORKER_TRANSITIONS,
    ensure_transition,
    transition_task,
    transition_team,
)

__all__ = [
    "MAX_TEAM_SIZE",
    "MIN_TEAM_SIZE",
    "AgentState",
    "Approved",
    "GoalAnalysis",
    "Rejected",
    "ReviewDecision",
    "RevisionRequested",
    "Specialization",
    "Task",
    "TaskOutput",
    "TaskStatus",
    "Team",
    "TeamPhase",
    "TeamStatus",
    "WorkerRecord",
    "WorkerSpec",
    "WorkerStatus",
    "review_decision_adapter",
    "TASK_TRANSITIONS",
    "TEAM_TRANSITIONS",
    "WORKER_TRANSITIONS",
    "ensure_transition",
    "transition_task",
    "transition_team",
    "TeamRepository",
    "InMemoryRepository",
    "SqliteRepository",
]

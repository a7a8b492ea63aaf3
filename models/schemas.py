"""Pydantic schemas for the orchestration data model.

This module defines every record that crosses a component boundary:
goal analysis, worker specs, tasks, task outputs, review decisions, the
team aggregate and the derived orchestration state. All models use
Pydantic v2 so that serialization round-trips are exact.
"""

import time
from enum import StrEnum
from typing import Annotated, Literal
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field, JsonValue, TypeAdapter

logger = structlog.get_logger(__name__)

MIN_TEAM_SIZE = 3
MAX_TEAM_SIZE = 5


def new_id(prefix: str) -> str:
    """Generate an identifier in the format ``{prefix}_{12 hex chars}``."""
    return f"{prefix}_{uuid4().hex[:12]}"


class Specialization(StrEnum):
    """Closed set of worker role categories."""

    RESEARCHER = "Researcher"
    CODER = "Coder"
    REVIEWER = "Reviewer"
    TESTER = "Tester"
    WRITER = "Writer"

    @classmethod
    def parse(cls, value: str) -> "Specialization":
        """Map a free-form specialization string onto the closed set.

        Matching is case-insensitive. Anything unrecognized becomes
        RESEARCHER; this fallback is the documented policy, not an error.
        """
        normalized = value.strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        logger.info(
            "specialization_fallback",
            raw_specialization=value,
            fallback=cls.RESEARCHER.value,
        )
        return cls.RESEARCHER


class WorkerStatus(StrEnum):
    """Worker lifecycle status."""

    IDLE = "idle"
    WORKING = "working"
    BLOCKED = "blocked"


class TaskStatus(StrEnum):
    """Task lifecycle status."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.APPROVED, TaskStatus.FAILED})


class TeamStatus(StrEnum):
    """Team lifecycle status.

    Pending -> Planning -> Active -> Completed
                  |           |
                  +-----------+--> Failed -> Archived
    """

    PENDING = "pending"
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class TeamPhase(StrEnum):
    """Fine-grained pipeline phase reported in AgentState."""

    CREATED = "created"
    ANALYZING = "analyzing"
    FORMING_TEAM = "forming_team"
    DECOMPOSING = "decomposing"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class GoalAnalysis(BaseModel):
    """Manager's structured understanding of a goal."""

    model_config = ConfigDict(frozen=True)

    core_objective: str = Field(min_length=1, description="One-sentence objective")
    subtasks: list[str] = Field(default_factory=list, description="Ordered subtasks")
    required_specializations: list[str] = Field(default_factory=list)
    estimated_timeline_hours: float = Field(default=0.0, ge=0.0)
    potential_blockers: list[str] = Field(default_factory=list)
    success_criteria: list[str] = Field(default_factory=list)


class WorkerSpec(BaseModel):
    """Specification for one worker, produced by team formation."""

    model_config = ConfigDict(frozen=True)

    specialization: str = Field(description="Raw specialization name")
    skills: list[str] = Field(default_factory=list)
    responsibilities: list[str] = Field(default_factory=list)
    required_tools: list[str] = Field(default_factory=list)


class Task(BaseModel):
    """A discrete unit of work produced by goal decomposition.

    Mutated only by the Scheduler (and through it, the Manager's review);
    status changes go through ``models.transitions.transition_task``.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: new_id("task"))
    team_id: str | None = None
    title: str = Field(min_length=1)
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    required_skills: list[str] = Field(default_factory=list)
    estimated_complexity: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    feedback: str = ""
    assigned_worker_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def append_feedback(self, text: str) -> None:
        """Accumulate reviewer feedback across attempts."""
        text = text.strip()
        if not text:
            return
        self.feedback = f"{self.feedback}\n\n{text}" if self.feedback else text


class TaskOutput(BaseModel):
    """Result of one execution attempt. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    worker_id: str
    result: JsonValue = None
    artifacts: list[str] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)
    metadata: dict[str, JsonValue] = Field(default_factory=dict)


class Approved(BaseModel):
    """Review accepted the output; the task is retired."""

    model_config = ConfigDict(frozen=True)

    decision: Literal["approved"] = "approved"


class RevisionRequested(BaseModel):
    """Review asked the same worker for another attempt."""

    model_config = ConfigDict(frozen=True)

    decision: Literal["revision_requested"] = "revision_requested"
    feedback: str


class Rejected(BaseModel):
    """Review rejected the output; the task fails."""

    model_config = ConfigDict(frozen=True)

    decision: Literal["rejected"] = "rejected"
    reason: str


ReviewDecision = Annotated[
    Approved | RevisionRequested | Rejected,
    Field(discriminator="decision"),
]

review_decision_adapter: TypeAdapter[ReviewDecision] = TypeAdapter(ReviewDecision)


class WorkerRecord(BaseModel):
    """Serializable snapshot of a worker, used for persistence."""

    id: str
    team_id: str
    specialization: Specialization
    skills: list[str] = Field(default_factory=list)
    responsibilities: list[str] = Field(default_factory=list)
    required_tools: list[str] = Field(default_factory=list)
    status: WorkerStatus = WorkerStatus.IDLE
    assigned_task_id: str | None = None


class Team(BaseModel):
    """Team aggregate: one goal, one manager, 3-5 workers.

    Status changes go through ``models.transitions.transition_team``.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: new_id("team"))
    goal: str = Field(min_length=1, description="The team's objective")
    status: TeamStatus = TeamStatus.PENDING
    manager_id: str | None = None
    budget_limit: float | None = Field(
        default=None,
        gt=0,
        description="Spend limit in the same currency as the cost settings",
    )
    created_at: float = Field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    failure_reason: str | None = None


class AgentState(BaseModel):
    """Read-only projection of a team's orchestration state.

    Recomputed from Worker/Task records on every query; never the source
    of truth.
    """

    model_config = ConfigDict(frozen=True)

    team_id: str
    current_phase: str
    active_workers: list[str] = Field(default_factory=list)
    pending_tasks: list[str] = Field(default_factory=list)
    blocked_workers: list[str] = Field(default_factory=list)
    approved_tasks: list[str] = Field(default_factory=list)
    failed_tasks: list[str] = Field(default_factory=list)

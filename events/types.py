"""Event type definitions for the team orchestration event stream.

Every meaningful team, worker and task state change produces an event.
Events are broadcast per team and never mutated after publication.
"""

import time
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, JsonValue


class EventType(StrEnum):
    """All event types in the orchestration engine.

    Events are categorized by:
    - Team lifecycle: formation, status changes and stream closure
    - Worker lifecycle: creation
    - Task lifecycle: assignment, completion, revision, failure and timeout
    """

    # Team lifecycle
    TEAM_FORMED = "team_formed"
    TEAM_STATUS_CHANGED = "team_status_changed"
    TEAM_CLOSED = "team_closed"

    # Worker lifecycle
    WORKER_CREATED = "worker_created"

    # Task lifecycle
    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    TASK_REVISION_REQUESTED = "task_revision_requested"
    TASK_FAILED = "task_failed"
    TASK_TIMED_OUT = "task_timed_out"


class AgentEvent(BaseModel):
    """An event emitted during team orchestration.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - team_id: Which team this event belongs to
    - task_id / worker_id: The identities involved, when applicable
    - data: Event-specific payload

    Payload schemas by event type:

    TEAM_FORMED:
        - worker_ids: list[str] - Workers in the formed team
        - manager_id: str - The coordinating manager

    TEAM_STATUS_CHANGED:
        - from_status: str - Previous TeamStatus
        - to_status: str - New TeamStatus
        - reason: str - Failure reason (only for transitions to failed)

    WORKER_CREATED:
        - specialization: str - Resolved Specialization
        - skills: list[str] - Worker skills

    TASK_ASSIGNED:
        - attempt: int - Attempt number this assignment starts

    TASK_COMPLETED:
        - attempt: int - Attempt that produced the approved output

    TASK_REVISION_REQUESTED:
        - feedback: str - Reviewer feedback for the next attempt
        - attempt: int - Attempt that was reviewed

    TASK_FAILED:
        - reason: str - Rejection reason or terminal error

    TASK_TIMED_OUT:
        - timeout_seconds: float - The timeout that expired
        - attempt: int - Attempt that timed out
    """

    model_config = ConfigDict(frozen=True)

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    team_id: str
    task_id: str | None = None
    worker_id: str | None = None
    data: dict[str, JsonValue] = Field(default_factory=dict)

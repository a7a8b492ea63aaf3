"""Shared test fixtures for the orchestration engine tests.

Provides fresh buses, a deterministic MockReasoning, worker and task
factories, and an event collection helper so tests never touch a real
LLM API.
"""

import asyncio
import os
import sys
from collections.abc import Callable, Iterable
from typing import Any

import pytest

# Ensure the repository root is on sys.path so that absolute imports
# like ``from agents.worker import ...`` resolve when running pytest
# without an editable install.
_repo_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _repo_root not in sys.path:
    sys.path.insert(0, _repo_root)

# Use litellm's bundled model cost map instead of fetching it over the
# network at import time (its background retry thread can deadlock imports
# in offline environments).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from agents.manager import ManagerAgent  # noqa: E402
from agents.reasoning import DEFAULT_MOCK_RESPONSES, MockReasoning  # noqa: E402
from agents.scheduler import Scheduler, SchedulerPolicy  # noqa: E402
from agents.worker import WorkerAgent  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.messages import MessageBus  # noqa: E402
from events.types import AgentEvent, EventType  # noqa: E402
from models.schemas import Specialization, Task  # noqa: E402

TEAM_ID = "team_test"

# ---------------------------------------------------------------------------
# Buses
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


@pytest.fixture()
def message_bus() -> MessageBus:
    """Return a fresh MessageBus instance for each test."""
    return MessageBus()


# ---------------------------------------------------------------------------
# Reasoning
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_reasoning() -> MockReasoning:
    """A MockReasoning answering every operation with its defaults."""
    return MockReasoning()


@pytest.fixture()
def mock_llm_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set USE_MOCK_LLM=true in the environment."""
    monkeypatch.setenv("USE_MOCK_LLM", "true")


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_worker(
    reasoning: Any,
    skills: Iterable[str] = ("Python",),
    specialization: Specialization = Specialization.CODER,
    worker_id: str | None = None,
    team_id: str = TEAM_ID,
) -> WorkerAgent:
    """Create a WorkerAgent with sensible defaults."""
    return WorkerAgent(
        team_id=team_id,
        specialization=specialization,
        skills=skills,
        reasoning=reasoning,
        worker_id=worker_id,
    )


def make_task(
    title: str = "Implement feature",
    required_skills: Iterable[str] = ("python",),
    team_id: str = TEAM_ID,
    **kwargs: Any,
) -> Task:
    """Create a Pending Task with sensible defaults."""
    return Task(
        title=title,
        team_id=team_id,
        required_skills=list(required_skills),
        acceptance_criteria=kwargs.pop("acceptance_criteria", ["It works"]),
        **kwargs,
    )


def make_scheduler(
    reasoning: Any,
    workers: Iterable[WorkerAgent],
    event_bus: EventBus,
    message_bus: MessageBus | None = None,
    **policy: Any,
) -> Scheduler:
    """Create a Scheduler with a fast default policy."""
    policy.setdefault("task_timeout_seconds", 5.0)
    return Scheduler(
        team_id=TEAM_ID,
        manager=ManagerAgent(TEAM_ID, reasoning),
        workers=workers,
        event_bus=event_bus,
        message_bus=message_bus,
        policy=SchedulerPolicy(**policy),
    )


@pytest.fixture()
def worker_factory(mock_reasoning: MockReasoning):
    """Factory fixture building workers bound to ``mock_reasoning``."""

    def _factory(**kwargs: Any) -> WorkerAgent:
        return make_worker(mock_reasoning, **kwargs)

    return _factory


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


async def collect_events(event_bus: EventBus, team_id: str = TEAM_ID) -> list[AgentEvent]:
    """Subscribe to a team and drain all buffered events."""
    queue = event_bus.subscribe(team_id)
    events: list[AgentEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def event_types(events: Iterable[AgentEvent]) -> list[EventType]:
    return [event.type for event in events]


def hang(started: asyncio.Event | None = None) -> Callable[[Any], Any]:
    """MockReasoning script item that never finishes on its own.

    Sets ``started`` (if given) once the call is underway, so tests can
    intervene while work is in flight.
    """

    async def _run(prompt: Any) -> Any:
        if started is not None:
            started.set()
        await asyncio.sleep(60)
        return DEFAULT_MOCK_RESPONSES["execute"]

    return _run

"""Team orchestrator for running many teams side by side.

This module provides the TeamOrchestrator class that manages the lifecycle
of teams: creation, background execution of each team graph, cancellation,
archiving and cleanup.

The TeamOrchestrator coordinates between:
- TeamGraph: One per team, drives planning and execution
- EventBus: For lifecycle event streaming to subscribers
- MessageBus: Shared inbox registry for manager/worker messages
- UsageTracker: Token cost and budget accounting
- TeamRepository: Optional persistence of team, worker and task records

Usage:
    >>> from events import get_event_bus
    >>> from orchestrator import TeamOrchestrator
    >>>
    >>> orchestrator = TeamOrchestrator(event_bus=get_event_bus())
    >>> team_id = await orchestrator.create_team("Build a scraper", budget_limit=2.0)
    >>> team = await orchestrator.wait_for_team(team_id)
    >>> print(team.status)
    >>>
    >>> await orchestrator.cleanup_all()
"""

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from agents.reasoning import ReasoningPort, create_reasoning
from agents.scheduler import SchedulerPolicy
from agents.team_graph import TeamGraph, create_team_graph
from config import settings
from errors import AgentNotFound
from events.bus import EventBus, get_event_bus
from events.messages import MessageBus
from metrics import UsageTracker
from models.repository import TeamRepository
from models.schemas import AgentState, Team, TeamStatus
from models.transitions import transition_team

logger = structlog.get_logger()

ReasoningFactory = Callable[[str, UsageTracker], ReasoningPort]

TERMINAL_TEAM_STATUSES = frozenset({TeamStatus.COMPLETED, TeamStatus.FAILED, TeamStatus.ARCHIVED})


def _default_reasoning_factory(team_id: str, usage_tracker: UsageTracker) -> ReasoningPort:
    return create_reasoning(team_id=team_id, usage_tracker=usage_tracker)


@dataclass
class TeamRun:
    """A team together with the graph and background task running it."""

    team: Team
    graph: TeamGraph
    task: asyncio.Task[None] | None = None


class TeamOrchestrator:
    """Manages the lifecycle of teams.

    Thread Safety:
        All registry operations use asyncio.Lock. Background tasks are
        always awaited outside the lock, since their cancellation handlers
        touch the registry too.

    Attributes:
        event_bus: Event bus shared by every team
        message_bus: Message bus shared by every team
        usage_tracker: Cost and budget tracker shared by every team
        repository: Optional persistence for team records
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        repository: TeamRepository | None = None,
        usage_tracker: UsageTracker | None = None,
        reasoning_factory: ReasoningFactory | None = None,
        message_bus: MessageBus | None = None,
        cancel_grace_seconds: float = 5.0,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.message_bus = message_bus or MessageBus()
        self.usage_tracker = usage_tracker or UsageTracker()
        self.repository = repository
        self.reasoning_factory = reasoning_factory or _default_reasoning_factory
        self.cancel_grace_seconds = cancel_grace_seconds
        self._runs: dict[str, TeamRun] = {}
        self._lock = asyncio.Lock()
        logger.info("team_orchestrator_initialized")

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _get_run(self, team_id: str) -> TeamRun:
        run = self._runs.get(team_id)
        if run is None:
            raise AgentNotFound("team", team_id)
        return run

    def get_team(self, team_id: str) -> Team:
        """Raises AgentNotFound for unknown teams."""
        return self._get_run(team_id).team

    def get_state(self, team_id: str) -> AgentState:
        """Current AgentState of a team. Raises AgentNotFound for unknown teams."""
        return self._get_run(team_id).graph.state()

    def list_teams(self) -> list[Team]:
        return [run.team for run in self._runs.values()]

    async def get_usage(self, team_id: str) -> dict[str, Any] | None:
        """Live usage for a running team, or the persisted usage of a finished one."""
        run = self._get_run(team_id)
        live = self.usage_tracker.get(team_id)
        if live is not None:
            return live.to_dict()
        if run.graph.usage is not None:
            return run.graph.usage.to_dict()
        if self.repository is not None:
            with contextlib.suppress(AgentNotFound):
                return await self.repository.load_usage(team_id)
        return None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_team(
        self,
        goal: str,
        budget_limit: float | None = None,
        policy: SchedulerPolicy | None = None,
    ) -> str:
        """Create a team for a goal and start running it in the background.

        Args:
            goal: Free-text objective for the team
            budget_limit: Spend limit; defaults to ``settings.default_budget_limit``
            policy: Scheduler policy override for this team

        Returns:
            The new team id

        Raises:
            pydantic.ValidationError: If the goal is empty or the budget is not positive.
        """
        team = Team(
            goal=goal,
            budget_limit=budget_limit if budget_limit is not None else settings.default_budget_limit,
        )
        self.usage_tracker.start(team.id, team.budget_limit)
        reasoning = self.reasoning_factory(team.id, self.usage_tracker)
        graph = create_team_graph(
            team=team,
            reasoning=reasoning,
            event_bus=self.event_bus,
            message_bus=self.message_bus,
            policy=policy,
            usage_tracker=self.usage_tracker,
            repository=self.repository,
        )
        if self.repository is not None:
            await self.repository.save_team(team)

        run = TeamRun(team=team, graph=graph)
        async with self._lock:
            self._runs[team.id] = run
            run.task = asyncio.create_task(self._run_team(run), name=f"team_{team.id}")

            def _forget_task(t: asyncio.Task[None], r: TeamRun = run) -> None:
                if r.task is t:
                    r.task = None

            run.task.add_done_callback(_forget_task)

        logger.info(
            "create_team_complete",
            team_id=team.id,
            goal_length=len(goal),
            budget_limit=team.budget_limit,
        )
        return team.id

    async def _run_team(self, run: TeamRun) -> None:
        team_id = run.team.id
        try:
            await run.graph.run()
            logger.info(
                "team_run_complete",
                team_id=team_id,
                status=run.team.status.value,
            )
        except asyncio.CancelledError:
            logger.info("team_run_cancelled", team_id=team_id)
            raise
        except Exception as e:
            logger.error(
                "team_run_error",
                team_id=team_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await run.graph.fail(f"error: {e}")

    async def wait_for_team(self, team_id: str, timeout: float | None = None) -> Team:
        """Wait until a team's background run has finished.

        Raises:
            AgentNotFound: If the team is unknown.
            TimeoutError: If ``timeout`` expires first.
        """
        run = self._get_run(team_id)
        task = run.task
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                raise TimeoutError(f"team {team_id} still running after {timeout}s")
        return run.team

    async def cancel_team(self, team_id: str, reason: str = "user_cancelled") -> None:
        """Cancel a running team.

        The graph is asked to stop first so in-flight work is cancelled and
        open tasks fail cleanly. If it has not settled within the grace
        period, its background task is cancelled outright. Cancelling a
        finished team is a no-op.

        Raises:
            AgentNotFound: If the team is unknown.
        """
        run = self._get_run(team_id)
        if run.team.status in TERMINAL_TEAM_STATUSES:
            logger.info(
                "cancel_team_noop_terminal_state",
                team_id=team_id,
                status=run.team.status.value,
            )
            return

        logger.info("cancel_team_start", team_id=team_id, reason=reason)
        await run.graph.cancel(reason)

        # Extract the task under the lock, await it outside.
        async with self._lock:
            task = run.task

        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self.cancel_grace_seconds)
            if not done:
                logger.warning(
                    "cancel_team_grace_expired",
                    team_id=team_id,
                    grace_seconds=self.cancel_grace_seconds,
                )
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        logger.info("cancel_team_complete", team_id=team_id, status=run.team.status.value)

    async def archive_team(self, team_id: str) -> None:
        """Archive a finished team, close its event stream and forget it.

        The team leaves the in-process registry; with a repository
        configured its archived record stays loadable from there.

        Raises:
            AgentNotFound: If the team is unknown.
            InvalidStateTransition: If the team is not Completed or Failed.
        """
        run = self._get_run(team_id)
        transition_team(run.team, TeamStatus.ARCHIVED)
        if self.repository is not None:
            await self.repository.save_team(run.team)

        self.message_bus.unregister(run.graph.manager.id)
        for worker in run.graph.workers:
            self.message_bus.unregister(worker.id)

        await self.event_bus.close_team(team_id)
        self.event_bus.clear_event_history(team_id)

        async with self._lock:
            self._runs.pop(team_id, None)
        logger.info("team_archived", team_id=team_id)

    async def cleanup_all(self) -> None:
        """Cancel every running team and close all event streams.

        Call during application shutdown.
        """
        logger.info("cleanup_all_start", team_count=len(self._runs))

        async with self._lock:
            runs = list(self._runs.items())

        for team_id, run in runs:
            if run.team.status in TERMINAL_TEAM_STATUSES:
                continue
            try:
                await self.cancel_team(team_id, reason="shutdown")
            except Exception as e:
                logger.error(
                    "cleanup_cancel_failed",
                    team_id=team_id,
                    error=str(e),
                )

        for team_id, _ in runs:
            await self.event_bus.close_team(team_id)
            self.event_bus.clear_event_history(team_id)

        async with self._lock:
            self._runs.clear()

        logger.info("cleanup_all_complete")

"""Team lifecycle LangGraph implementation.

This module provides the team graph - where the manager analyses a goal,
forms a team of specialized workers, decomposes the goal into tasks, and
the scheduler drives execution and review until the team finishes.

Graph structure:
    START -> analyze -> form_team -> decompose -> execute -> finalize -> END
               |            |            |
               |____________|____________|____> finalize (on error, cancel or budget)

Events emitted:
- TEAM_STATUS_CHANGED: On every team status transition
- WORKER_CREATED: For each worker instantiated from a spec
- TEAM_FORMED: Once the whole worker pool exists
- TASK_*: During execution, through the Scheduler
"""

import asyncio
from typing import Any, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.manager import ManagerAgent
from agents.reasoning import ReasoningPort
from agents.scheduler import Scheduler, SchedulerOutcome, SchedulerPolicy
from agents.state import project_agent_state
from agents.worker import WorkerAgent
from errors import AgentError
from events.bus import EventBus
from events.messages import MessageBus
from events.types import AgentEvent, EventType
from metrics import TeamUsage, UsageTracker
from models.repository import TeamRepository
from models.schemas import (
    AgentState,
    GoalAnalysis,
    TaskStatus,
    Team,
    TeamPhase,
    TeamStatus,
)
from models.transitions import transition_team

logger = structlog.get_logger()


# -----------------------------------------------------------------------------
# State Definition
# -----------------------------------------------------------------------------


class TeamState(TypedDict):
    """State carried through the team graph.

    Attributes:
        team_id: The team being run
        goal: The team's free-text goal
        phase: Current TeamPhase value
        analysis: GoalAnalysis as a dict, once analysed
        worker_ids: Workers in the formed team
        task_ids: Tasks in decomposition order
        outcome: Why the scheduler stopped, once it has run
        error_message: Error that stopped the pipeline, if any
    """

    team_id: str
    goal: str
    phase: str
    analysis: dict[str, Any] | None
    worker_ids: list[str]
    task_ids: list[str]
    outcome: str | None
    error_message: str | None


def create_team_initial_state(team: Team) -> TeamState:
    """Create the initial state for a team graph run."""
    return TeamState(
        team_id=team.id,
        goal=team.goal,
        phase=TeamPhase.CREATED.value,
        analysis=None,
        worker_ids=[],
        task_ids=[],
        outcome=None,
        error_message=None,
    )


# -----------------------------------------------------------------------------
# TeamGraph Class
# -----------------------------------------------------------------------------


class TeamGraph:
    """Runs one team from goal to a terminal status.

    Usage:
        >>> graph = TeamGraph(team, reasoning, event_bus)
        >>> final_state = await graph.run()
        >>> team.status
        <TeamStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        team: Team,
        reasoning: ReasoningPort,
        event_bus: EventBus,
        message_bus: MessageBus | None = None,
        policy: SchedulerPolicy | None = None,
        usage_tracker: UsageTracker | None = None,
        repository: TeamRepository | None = None,
    ) -> None:
        """Initialize the team graph.

        Args:
            team: Team aggregate, updated in place as the run progresses
            reasoning: Reasoning capability shared by the manager and workers
            event_bus: Event bus for lifecycle events
            message_bus: Optional bus for manager/worker messages
            policy: Scheduler policy (defaults from settings)
            usage_tracker: Optional tracker used for cost and budget checks
            repository: Optional persistence for team, worker and task records
        """
        self.team = team
        self.reasoning = reasoning
        self.event_bus = event_bus
        self.message_bus = message_bus
        self.policy = policy or SchedulerPolicy.from_settings()
        self.usage_tracker = usage_tracker
        self.repository = repository

        self.manager = ManagerAgent(team.id, reasoning, manager_id=team.manager_id)
        self.team.manager_id = self.manager.id
        self.workers: list[WorkerAgent] = []
        self.scheduler: Scheduler | None = None
        self.phase = TeamPhase.CREATED
        self.usage: TeamUsage | None = None
        self._analysis: GoalAnalysis | None = None
        self._cancel_reason: str | None = None
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        """Build and compile the LangGraph StateGraph."""
        graph = StateGraph(TeamState)

        graph.add_node("analyze", self._analyze)
        graph.add_node("form_team", self._form_team)
        graph.add_node("decompose", self._decompose)
        graph.add_node("execute", self._execute)
        graph.add_node("finalize", self._finalize)

        graph.add_edge(START, "analyze")
        graph.add_conditional_edges(
            "analyze",
            self._route_planning,
            {"continue": "form_team", "finalize": "finalize"},
        )
        graph.add_conditional_edges(
            "form_team",
            self._route_planning,
            {"continue": "decompose", "finalize": "finalize"},
        )
        graph.add_conditional_edges(
            "decompose",
            self._route_planning,
            {"continue": "execute", "finalize": "finalize"},
        )
        graph.add_edge("execute", "finalize")
        graph.add_edge("finalize", END)

        return graph.compile()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancel_reason is not None

    def _halt_reason(self) -> str | None:
        """Reason the pipeline must stop before the next node, if any."""
        if self._cancel_reason is not None:
            return f"cancelled: {self._cancel_reason}"
        if (
            self.policy.enforce_budget
            and self.usage_tracker is not None
            and self.usage_tracker.is_exhausted(self.team.id)
        ):
            return "budget_exhausted"
        return None

    def _route_planning(self, state: TeamState) -> str:
        if state.get("error_message") or self._halt_reason():
            return "finalize"
        return "continue"

    def _enter_phase(self, phase: TeamPhase) -> None:
        self.phase = phase
        logger.info("team_phase_entered", team_id=self.team.id, phase=phase.value)

    async def _set_status(self, target: TeamStatus, reason: str | None = None) -> None:
        previous = self.team.status
        transition_team(self.team, target, reason)
        data: dict[str, Any] = {"from_status": previous.value, "to_status": target.value}
        if target == TeamStatus.FAILED:
            data["reason"] = self.team.failure_reason
        await self.event_bus.publish(
            AgentEvent(type=EventType.TEAM_STATUS_CHANGED, team_id=self.team.id, data=data)
        )
        if self.repository is not None:
            await self.repository.save_team(self.team)

    def _node_error(self, node: str, error: AgentError) -> dict[str, Any]:
        logger.error(
            "team_node_failed",
            team_id=self.team.id,
            node=node,
            error_type=type(error).__name__,
            error=str(error),
        )
        return {"error_message": f"{type(error).__name__}: {error}"}

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def _analyze(self, state: TeamState) -> dict[str, Any]:
        """Analyze node: move to planning and turn the goal into a GoalAnalysis."""
        await self._set_status(TeamStatus.PLANNING)
        if self._halt_reason() is not None:
            return {"phase": self.phase.value}

        self._enter_phase(TeamPhase.ANALYZING)
        try:
            self._analysis = await self.manager.analyze_goal(state["goal"])
        except AgentError as e:
            return self._node_error("analyze", e)
        return {"phase": self.phase.value, "analysis": self._analysis.model_dump()}

    async def _form_team(self, state: TeamState) -> dict[str, Any]:
        """Form node: instantiate the 3-5 workers proposed by the manager."""
        self._enter_phase(TeamPhase.FORMING_TEAM)
        analysis = self._analysis or GoalAnalysis.model_validate(state["analysis"])
        try:
            specs = await self.manager.form_team(analysis, goal=state["goal"])
        except AgentError as e:
            return self._node_error("form_team", e)

        self.workers = [WorkerAgent.from_spec(spec, self.team.id, self.reasoning) for spec in specs]
        for worker in self.workers:
            await self.event_bus.publish(
                AgentEvent(
                    type=EventType.WORKER_CREATED,
                    team_id=self.team.id,
                    worker_id=worker.id,
                    data={
                        "specialization": worker.specialization.value,
                        "skills": worker.skills,
                    },
                )
            )
            if self.repository is not None:
                await self.repository.save_worker(worker.snapshot())

        self.scheduler = Scheduler(
            team_id=self.team.id,
            manager=self.manager,
            workers=self.workers,
            event_bus=self.event_bus,
            message_bus=self.message_bus,
            policy=self.policy,
            usage_tracker=self.usage_tracker,
            repository=self.repository,
        )
        worker_ids = list(self.scheduler.workers)
        await self.event_bus.publish(
            AgentEvent(
                type=EventType.TEAM_FORMED,
                team_id=self.team.id,
                data={"worker_ids": worker_ids, "manager_id": self.manager.id},
            )
        )
        logger.info("team_formed", team_id=self.team.id, size=len(worker_ids))
        return {"phase": self.phase.value, "worker_ids": worker_ids}

    async def _decompose(self, state: TeamState) -> dict[str, Any]:
        """Decompose node: break the goal into tasks and enqueue them."""
        self._enter_phase(TeamPhase.DECOMPOSING)
        try:
            tasks = await self.manager.decompose_goal(state["goal"], self._analysis)
        except AgentError as e:
            return self._node_error("decompose", e)

        assert self.scheduler is not None
        await self.scheduler.add_tasks(tasks)
        return {"phase": self.phase.value, "task_ids": [t.id for t in tasks]}

    async def _execute(self, state: TeamState) -> dict[str, Any]:
        """Execute node: activate the team and let the scheduler run to an outcome."""
        assert self.scheduler is not None
        await self._set_status(TeamStatus.ACTIVE)
        self._enter_phase(TeamPhase.EXECUTING)

        # A cancel that arrived before the scheduler existed still applies.
        if self._cancel_reason is not None:
            await self.scheduler.cancel(self._cancel_reason)

        try:
            outcome = await self.scheduler.run()
        except AgentError as e:
            return self._node_error("execute", e)
        return {"phase": self.phase.value, "outcome": outcome.value}

    def _failure_reason(self, state: TeamState) -> str | None:
        """None when the team succeeded, else why it failed."""
        if state.get("error_message"):
            return state["error_message"]
        outcome = state.get("outcome")
        if outcome is None:
            return self._halt_reason() or "not_executed"
        if outcome == SchedulerOutcome.COMPLETED:
            assert self.scheduler is not None
            if all(t.status == TaskStatus.APPROVED for t in self.scheduler.tasks.values()):
                return None
            return "tasks_failed"
        if outcome == SchedulerOutcome.CANCELLED:
            reason = self.scheduler.cancel_reason if self.scheduler else None
            return f"cancelled: {reason}" if reason else "cancelled"
        return outcome

    async def _finalize(self, state: TeamState) -> dict[str, Any]:
        """Finalize node: settle the team status and persist usage."""
        reason = self._failure_reason(state)
        await self._finish(reason)
        return {"phase": self.phase.value}

    async def _finish(self, reason: str | None) -> None:
        if self.team.status in (TeamStatus.COMPLETED, TeamStatus.FAILED, TeamStatus.ARCHIVED):
            return

        if reason is None:
            await self._set_status(TeamStatus.COMPLETED)
            self.phase = TeamPhase.COMPLETED
        else:
            if self.team.status == TeamStatus.PENDING:
                await self._set_status(TeamStatus.PLANNING)
            await self._set_status(TeamStatus.FAILED, reason)
            self.phase = TeamPhase.FAILED

        if self.usage_tracker is not None:
            self.usage = self.usage_tracker.finish(self.team.id)
            if self.usage is not None and self.repository is not None:
                await self.repository.save_usage(self.team.id, self.usage.to_dict())

        logger.info(
            "team_finished",
            team_id=self.team.id,
            status=self.team.status.value,
            failure_reason=self.team.failure_reason,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def cancel(self, reason: str = "cancelled") -> None:
        """Request a graceful stop.

        Planning stops before its next node; a running scheduler cancels its
        in-flight work and fails the remaining tasks. Idempotent.
        """
        if self._cancel_reason is not None:
            return
        self._cancel_reason = reason
        logger.info("team_cancel_requested", team_id=self.team.id, reason=reason)
        if self.scheduler is not None and self.phase == TeamPhase.EXECUTING:
            await self.scheduler.cancel(reason)

    async def fail(self, reason: str) -> None:
        """Fail the team from outside the graph, for errors no node handled."""
        if self.scheduler is not None:
            await self.scheduler.cancel(reason)
        await self._finish(reason)

    def state(self) -> AgentState:
        """Current read-only orchestration state."""
        if self.scheduler is not None:
            return self.scheduler.state(self.phase.value)
        return project_agent_state(self.team.id, self.phase.value, self.workers, [])

    async def run(self, initial_state: TeamState | None = None) -> TeamState:
        """Run the graph to completion.

        If the surrounding task is cancelled, the team is failed with reason
        "cancelled" before the cancellation propagates.

        Returns:
            The final state after completion
        """
        initial_state = initial_state or create_team_initial_state(self.team)
        logger.info("team_graph_started", team_id=self.team.id, goal_length=len(self.team.goal))
        try:
            return await self._compiled_graph.ainvoke(initial_state)
        except asyncio.CancelledError:
            await self._finish(f"cancelled: {self._cancel_reason or 'interrupted'}")
            raise


# -----------------------------------------------------------------------------
# Factory Function
# -----------------------------------------------------------------------------


def create_team_graph(
    team: Team,
    reasoning: ReasoningPort,
    event_bus: EventBus,
    message_bus: MessageBus | None = None,
    policy: SchedulerPolicy | None = None,
    usage_tracker: UsageTracker | None = None,
    repository: TeamRepository | None = None,
) -> TeamGraph:
    """Factory function to create a team graph.

    Args:
        team: Team aggregate to run
        reasoning: Reasoning capability for the manager and workers
        event_bus: Event bus for lifecycle events

    Returns:
        Configured TeamGraph instance
    """
    return TeamGraph(
        team=team,
        reasoning=reasoning,
        event_bus=event_bus,
        message_bus=message_bus,
        policy=policy,
        usage_tracker=usage_tracker,
        repository=repository,
    )

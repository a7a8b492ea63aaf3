"""In-memory token usage and cost tracking for active teams.

This module provides the UsageTracker class that accumulates token usage
and cost for running teams, broken down per task. It is also the budget
authority: the Scheduler asks it whether a team has exhausted its budget
after every reasoning call. When a team finishes, the final snapshot is
persisted through the repository's ``save_usage``.

Usage:
    >>> from metrics import UsageTracker
    >>> tracker = UsageTracker()
    >>> tracker.start("team_abc123", budget_limit=2.0)
    >>> tracker.record_llm_call("team_abc123", prompt_tokens=100, completion_tokens=50)
    >>> tracker.is_exhausted("team_abc123")
    False
    >>> final = tracker.finish("team_abc123")
"""

import time
from dataclasses import dataclass, field

import structlog

from config import settings

logger = structlog.get_logger(__name__)


@dataclass
class TaskUsage:
    """Token and cost totals attributed to one task."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_calls: int = 0
    cost: float = 0.0


@dataclass
class TeamUsage:
    """Accumulated usage for a single team.

    Attributes:
        total_tokens: Sum of prompt and completion tokens.
        prompt_tokens: Total input tokens across all reasoning calls.
        completion_tokens: Total output tokens across all reasoning calls.
        llm_calls: Number of reasoning calls.
        cost: Total cost in the currency of the configured token prices.
        budget_limit: Spend limit, or None for an unlimited team.
        duration_ms: Total tracked time in milliseconds (set by finish()).
        started_at: Unix timestamp when tracking began.
        tasks: Per-task breakdown keyed by task id.
    """

    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_calls: int = 0
    cost: float = 0.0
    budget_limit: float | None = None
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)
    tasks: dict[str, TaskUsage] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Convert to a plain dict suitable for ``TeamRepository.save_usage()``."""
        return {
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "llm_calls": self.llm_calls,
            "cost": round(self.cost, 6),
            "budget_limit": self.budget_limit,
            "duration_ms": self.duration_ms,
            "tasks": {
                task_id: {
                    "prompt_tokens": usage.prompt_tokens,
                    "completion_tokens": usage.completion_tokens,
                    "llm_calls": usage.llm_calls,
                    "cost": round(usage.cost, 6),
                }
                for task_id, usage in self.tasks.items()
            },
        }


class UsageTracker:
    """In-memory tracker of per-team usage and budgets.

    Each active team gets its own TeamUsage instance. All mutations are
    plain synchronous dict updates made from the event loop thread.

    Attributes:
        input_cost_per_1k: Price of 1k prompt tokens.
        output_cost_per_1k: Price of 1k completion tokens.
    """

    def __init__(
        self,
        input_cost_per_1k: float | None = None,
        output_cost_per_1k: float | None = None,
    ) -> None:
        self.input_cost_per_1k = (
            settings.llm_input_cost_per_1k_tokens if input_cost_per_1k is None else input_cost_per_1k
        )
        self.output_cost_per_1k = (
            settings.llm_output_cost_per_1k_tokens if output_cost_per_1k is None else output_cost_per_1k
        )
        self._teams: dict[str, TeamUsage] = {}
        logger.info("usage_tracker_initialized")

    def start(self, team_id: str, budget_limit: float | None = None) -> None:
        """Begin tracking a team. A second call only updates the budget."""
        usage = self._teams.get(team_id)
        if usage is not None:
            usage.budget_limit = budget_limit
            logger.debug("usage_already_tracking", team_id=team_id)
            return

        self._teams[team_id] = TeamUsage(budget_limit=budget_limit)
        logger.debug("usage_tracking_started", team_id=team_id, budget_limit=budget_limit)

    def cost_for(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens / 1000 * self.input_cost_per_1k
            + completion_tokens / 1000 * self.output_cost_per_1k
        )

    def record_llm_call(
        self,
        team_id: str,
        prompt_tokens: int,
        completion_tokens: int,
        task_id: str | None = None,
    ) -> float:
        """Record token usage from a single reasoning call.

        If the team is not being tracked, this is a no-op with a warning.

        Args:
            team_id: The team the call belongs to.
            prompt_tokens: Number of input tokens used.
            completion_tokens: Number of output tokens used.
            task_id: Task to attribute the call to, if any.

        Returns:
            The cost of this call.
        """
        cost = self.cost_for(prompt_tokens, completion_tokens)
        usage = self._teams.get(team_id)
        if usage is None:
            logger.warning("usage_record_no_team", team_id=team_id)
            return cost

        usage.prompt_tokens += prompt_tokens
        usage.completion_tokens += completion_tokens
        usage.total_tokens += prompt_tokens + completion_tokens
        usage.llm_calls += 1
        usage.cost += cost

        if task_id is not None:
            task_usage = usage.tasks.setdefault(task_id, TaskUsage())
            task_usage.prompt_tokens += prompt_tokens
            task_usage.completion_tokens += completion_tokens
            task_usage.llm_calls += 1
            task_usage.cost += cost

        logger.debug(
            "usage_llm_call_recorded",
            team_id=team_id,
            task_id=task_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_cost=round(usage.cost, 6),
        )
        return cost

    def remaining_budget(self, team_id: str) -> float | None:
        """Budget left for a team, or None when it has no limit."""
        usage = self._teams.get(team_id)
        if usage is None or usage.budget_limit is None:
            return None
        return max(usage.budget_limit - usage.cost, 0.0)

    def is_exhausted(self, team_id: str) -> bool:
        """True once a team's spend has reached its budget limit."""
        usage = self._teams.get(team_id)
        if usage is None or usage.budget_limit is None:
            return False
        return usage.cost >= usage.budget_limit

    def finish(self, team_id: str) -> TeamUsage | None:
        """Finalize usage for a team and stop tracking it.

        Returns:
            The final TeamUsage, or None if not tracked.
        """
        usage = self._teams.pop(team_id, None)
        if usage is None:
            logger.warning("usage_finish_no_team", team_id=team_id)
            return None

        usage.duration_ms = int((time.time() - usage.started_at) * 1000)
        logger.info(
            "usage_team_finished",
            team_id=team_id,
            total_tokens=usage.total_tokens,
            llm_calls=usage.llm_calls,
            cost=round(usage.cost, 6),
            duration_ms=usage.duration_ms,
        )
        return usage

    def get(self, team_id: str) -> TeamUsage | None:
        """Current (in-progress) usage for a team, without removing it."""
        return self._teams.get(team_id)

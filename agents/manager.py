"""Manager agent: goal analysis, team formation, decomposition and review.

The Manager is the only producer of ReviewDecisions. Every operation
renders a versioned prompt, calls the reasoning capability and validates
the JSON reply into the data model. Replies that cannot be validated
surface as JsonError; reasoning failures surface as LlmError.
"""

from typing import Any

import structlog
from pydantic import ValidationError

from agents.prompts import GOAL_ANALYSIS, OUTPUT_REVIEW, TASK_DECOMPOSITION, TEAM_FORMATION
from agents.reasoning import ReasoningPort
from agents.utils import JsonPayload
from config import settings
from errors import InvalidTeamSize, JsonError
from models.schemas import (
    MAX_TEAM_SIZE,
    MIN_TEAM_SIZE,
    GoalAnalysis,
    ReviewDecision,
    Task,
    TaskOutput,
    WorkerSpec,
    new_id,
    review_decision_adapter,
)

logger = structlog.get_logger()

TASK_FIELDS = ("title", "description", "acceptance_criteria", "required_skills")

# Decision spellings seen in model replies, keyed by their normalized form.
DECISION_ALIASES = {
    "approved": "approved",
    "approve": "approved",
    "accepted": "approved",
    "revisionrequested": "revision_requested",
    "revision": "revision_requested",
    "needsrevision": "revision_requested",
    "revise": "revision_requested",
    "rejected": "rejected",
    "reject": "rejected",
}


def _unwrap_list(payload: JsonPayload, key: str) -> list[Any]:
    """Accept either a bare JSON array or an object holding it under ``key``."""
    if isinstance(payload, dict):
        payload = payload.get(key)
    if not isinstance(payload, list):
        raise JsonError(f"expected a list of {key}")
    return payload


def parse_review_decision(payload: JsonPayload) -> ReviewDecision:
    """Validate a review reply into a ReviewDecision.

    Decision tags are matched case-insensitively and ignore spaces,
    hyphens and underscores, so "Revision Requested" is accepted.
    """
    if not isinstance(payload, dict):
        raise JsonError("review reply must be a JSON object")

    raw = str(payload.get("decision") or payload.get("status") or "")
    normalized = "".join(ch for ch in raw.lower() if ch.isalnum())
    decision = DECISION_ALIASES.get(normalized)
    if decision is None:
        raise JsonError(f"unknown review decision '{raw}'")

    data: dict[str, Any] = {"decision": decision}
    if decision == "revision_requested":
        data["feedback"] = str(payload.get("feedback") or payload.get("reason") or "")
    elif decision == "rejected":
        data["reason"] = str(payload.get("reason") or payload.get("feedback") or "rejected by reviewer")

    try:
        return review_decision_adapter.validate_python(data)
    except ValidationError as e:
        raise JsonError(f"invalid review decision: {e}") from e


class ManagerAgent:
    """Coordinating role for one team.

    Attributes:
        id: Manager identity (``manager_<hex>``), also its message-bus address.
        team_id: The team being managed.
        formation_retries: Re-prompts allowed when team size is out of range.
    """

    def __init__(
        self,
        team_id: str,
        reasoning: ReasoningPort,
        manager_id: str | None = None,
        formation_retries: int | None = None,
    ) -> None:
        self.id = manager_id or new_id("manager")
        self.team_id = team_id
        self.reasoning = reasoning
        self.formation_retries = (
            settings.team_formation_retries if formation_retries is None else formation_retries
        )

    async def analyze_goal(self, goal: str) -> GoalAnalysis:
        """Turn a free-text goal into a GoalAnalysis.

        Raises:
            LlmError: If the reasoning call fails.
            JsonError: If the reply does not validate as a GoalAnalysis.
        """
        prompt = GOAL_ANALYSIS.render(goal=goal)
        payload = await self.reasoning.analyze(prompt)
        if not isinstance(payload, dict):
            raise JsonError("goal analysis reply must be a JSON object")
        try:
            analysis = GoalAnalysis.model_validate(payload)
        except ValidationError as e:
            raise JsonError(f"invalid goal analysis: {e}") from e

        logger.info(
            "goal_analyzed",
            team_id=self.team_id,
            subtasks=len(analysis.subtasks),
            specializations=analysis.required_specializations,
            prompt_version=prompt.version,
        )
        return analysis

    async def form_team(self, analysis: GoalAnalysis, goal: str | None = None) -> list[WorkerSpec]:
        """Propose 3-5 worker specs for the analysed goal.

        A reply with a worker count outside 3-5 is re-prompted up to
        ``formation_retries`` times before failing.

        Raises:
            InvalidTeamSize: If every attempt returned an out-of-range count.
            LlmError: If the reasoning call fails.
            JsonError: If a reply does not validate as a list of WorkerSpec.
        """
        prompt = TEAM_FORMATION.render(
            goal=goal or analysis.core_objective,
            subtasks=analysis.subtasks,
            specializations=analysis.required_specializations,
        )

        size = 0
        for attempt in range(self.formation_retries + 1):
            payload = await self.reasoning.form_team(prompt)
            specs = self._parse_worker_specs(payload)
            size = len(specs)
            if MIN_TEAM_SIZE <= size <= MAX_TEAM_SIZE:
                logger.info(
                    "team_specs_formed",
                    team_id=self.team_id,
                    size=size,
                    attempt=attempt + 1,
                )
                return specs
            logger.warning(
                "team_size_out_of_range",
                team_id=self.team_id,
                size=size,
                attempt=attempt + 1,
                retries=self.formation_retries,
            )

        raise InvalidTeamSize(size)

    def _parse_worker_specs(self, payload: JsonPayload) -> list[WorkerSpec]:
        specs: list[WorkerSpec] = []
        for item in _unwrap_list(payload, "workers"):
            if not isinstance(item, dict):
                raise JsonError("worker spec must be a JSON object")
            if "specialization" not in item and "role" in item:
                item = {**item, "specialization": item["role"]}
            try:
                specs.append(WorkerSpec.model_validate(item))
            except ValidationError as e:
                raise JsonError(f"invalid worker spec: {e}") from e
        return specs

    async def decompose_goal(self, goal: str, analysis: GoalAnalysis | None = None) -> list[Task]:
        """Break a goal into Pending tasks carrying required skills.

        Raises:
            LlmError: If the reasoning call fails.
            JsonError: If the reply is malformed or holds no tasks.
        """
        prompt = TASK_DECOMPOSITION.render(
            goal=goal,
            subtasks=analysis.subtasks if analysis else [],
        )
        payload = await self.reasoning.decompose(prompt)

        tasks: list[Task] = []
        for item in _unwrap_list(payload, "tasks"):
            if not isinstance(item, dict):
                raise JsonError("task must be a JSON object")
            data = {key: item[key] for key in TASK_FIELDS if item.get(key) is not None}
            complexity = item.get("estimated_complexity")
            if complexity is not None:
                data["estimated_complexity"] = str(complexity)
            try:
                tasks.append(Task.model_validate({**data, "team_id": self.team_id}))
            except ValidationError as e:
                raise JsonError(f"invalid task: {e}") from e

        if not tasks:
            raise JsonError("decomposition produced no tasks")

        logger.info(
            "goal_decomposed",
            team_id=self.team_id,
            tasks=len(tasks),
            prompt_version=prompt.version,
        )
        return tasks

    async def review_output(self, task: Task, output: TaskOutput) -> ReviewDecision:
        """Review one task output and decide its fate.

        Raises:
            LlmError: If the reasoning call fails.
            JsonError: If the reply is not a recognizable decision.
        """
        prompt = OUTPUT_REVIEW.render(
            title=task.title,
            description=task.description or "(none)",
            acceptance_criteria=task.acceptance_criteria,
            attempt=task.attempt_count,
            output=output.model_dump_json(indent=2),
        )
        payload = await self.reasoning.review(prompt, task_id=task.id)
        decision = parse_review_decision(payload)
        logger.info(
            "output_reviewed",
            team_id=self.team_id,
            task_id=task.id,
            worker_id=output.worker_id,
            decision=decision.decision,
            attempt=task.attempt_count,
        )
        return decision

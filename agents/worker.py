"""Worker agent: a specialized, single-task execution unit.

A worker holds a specialization and a skill set and executes exactly one
assigned task at a time through the reasoning capability. Its status is
only changed by the Scheduler, which holds ``worker.lock`` around every
call to ``assign_task``, ``release`` and ``block``.
"""

import asyncio
from collections.abc import Iterable

import structlog
from pydantic import ValidationError

from agents.prompts import TASK_EXECUTION
from agents.reasoning import ReasoningPort
from errors import JsonError, TaskExecutionFailed
from models.schemas import (
    Specialization,
    Task,
    TaskOutput,
    WorkerRecord,
    WorkerSpec,
    WorkerStatus,
    new_id,
)
from models.transitions import WORKER_TRANSITIONS, ensure_transition

logger = structlog.get_logger()


class WorkerAgent:
    """A team member that executes tasks matching its skills.

    Attributes:
        id: Unique worker identity (``worker_<hex>``).
        team_id: Owning team.
        specialization: Resolved role category.
        skills: Skills used for task matching.
        responsibilities: Free-text responsibilities from team formation.
        required_tools: Tools the worker expects to use.
        status: Current WorkerStatus.
        assigned_task_id: The single task currently held, if any.
        lock: Serializes every status change of this worker.
    """

    def __init__(
        self,
        team_id: str,
        specialization: Specialization,
        skills: Iterable[str],
        reasoning: ReasoningPort,
        responsibilities: Iterable[str] = (),
        required_tools: Iterable[str] = (),
        worker_id: str | None = None,
    ) -> None:
        self.id = worker_id or new_id("worker")
        self.team_id = team_id
        self.specialization = specialization
        self.skills = list(skills)
        self.responsibilities = list(responsibilities)
        self.required_tools = list(required_tools)
        self.reasoning = reasoning
        self.status = WorkerStatus.IDLE
        self.assigned_task_id: str | None = None
        self.lock = asyncio.Lock()

    @classmethod
    def from_spec(
        cls,
        spec: WorkerSpec,
        team_id: str,
        reasoning: ReasoningPort,
    ) -> "WorkerAgent":
        """Instantiate a worker from a team-formation spec.

        Unknown specialization names fall back to Researcher.
        """
        worker = cls(
            team_id=team_id,
            specialization=Specialization.parse(spec.specialization),
            skills=spec.skills,
            responsibilities=spec.responsibilities,
            required_tools=spec.required_tools,
            reasoning=reasoning,
        )
        logger.info(
            "worker_created",
            team_id=team_id,
            worker_id=worker.id,
            specialization=worker.specialization.value,
            skills=worker.skills,
        )
        return worker

    def _transition(self, target: WorkerStatus) -> None:
        ensure_transition(f"worker {self.id}", WORKER_TRANSITIONS, self.status, target)
        self.status = target

    def assign_task(self, task_id: str) -> None:
        """Take ownership of a task (Idle -> Working).

        Raises:
            TaskExecutionFailed: If the worker is not Idle. Status is unchanged.
        """
        if self.status != WorkerStatus.IDLE:
            raise TaskExecutionFailed(
                f"worker {self.id} is {self.status.value}, cannot accept task {task_id}"
            )
        self._transition(WorkerStatus.WORKING)
        self.assigned_task_id = task_id
        logger.debug("worker_task_assigned", worker_id=self.id, task_id=task_id)

    def can_handle(self, required_skills: Iterable[str]) -> bool:
        """True iff some required skill is a case-insensitive substring of some worker skill.

        Deliberately permissive: "test" matches "Testing", and a task with
        no required skills matches nobody.
        """
        own = [skill.lower() for skill in self.skills]
        return any(
            required.lower() in skill
            for required in required_skills
            for skill in own
        )

    async def execute_task(self, task: Task) -> TaskOutput:
        """Run the assigned task through the reasoning capability.

        Does not change status; the Scheduler applies the review outcome.

        Raises:
            TaskExecutionFailed: If no task is assigned, or ``task`` is not
                the assigned one.
            LlmError: If the reasoning call fails.
            JsonError: If the reply cannot be turned into a TaskOutput.
        """
        if self.assigned_task_id is None:
            raise TaskExecutionFailed(f"worker {self.id} has no assigned task")
        if task.id != self.assigned_task_id:
            raise TaskExecutionFailed(
                f"worker {self.id} is assigned {self.assigned_task_id}, not {task.id}"
            )

        prompt = TASK_EXECUTION.render(
            specialization=self.specialization.value,
            skills=self.skills,
            title=task.title,
            description=task.description or "(none)",
            acceptance_criteria=task.acceptance_criteria,
            feedback=task.feedback or "(none)",
        )
        logger.info(
            "worker_executing_task",
            team_id=self.team_id,
            worker_id=self.id,
            task_id=task.id,
            attempt=task.attempt_count,
        )
        payload = await self.reasoning.execute(prompt, task_id=task.id)

        if isinstance(payload, dict) and "result" in payload:
            body = payload
        else:
            body = {"result": payload}
        try:
            return TaskOutput(
                task_id=task.id,
                worker_id=self.id,
                result=body.get("result"),
                artifacts=body.get("artifacts") or [],
                logs=body.get("logs") or [],
                metadata={
                    **(body.get("metadata") or {}),
                    "specialization": self.specialization.value,
                    "attempt": task.attempt_count,
                    "prompt_version": prompt.version,
                },
            )
        except (ValidationError, TypeError) as e:
            raise JsonError(f"invalid task output for {task.id}: {e}") from e

    def report_progress(self) -> str:
        return (
            f"Worker {self.id} ({self.specialization.value}) - "
            f"Status: {self.status.value}, Task: {self.assigned_task_id or 'None'}"
        )

    def release(self) -> None:
        """Return to Idle and drop the assignment (Working/Blocked -> Idle)."""
        self._transition(WorkerStatus.IDLE)
        self.assigned_task_id = None

    def block(self) -> None:
        """Park the worker until the manager releases it (Working -> Blocked).

        The assignment is kept so the blocked task stays attributable.
        """
        self._transition(WorkerStatus.BLOCKED)

    def snapshot(self) -> WorkerRecord:
        return WorkerRecord(
            id=self.id,
            team_id=self.team_id,
            specialization=self.specialization,
            skills=self.skills,
            responsibilities=self.responsibilities,
            required_tools=self.required_tools,
            status=self.status,
            assigned_task_id=self.assigned_task_id,
        )

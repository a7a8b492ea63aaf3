"""Reasoning capability used by the Manager and Workers.

The orchestration core never talks to an LLM directly. It depends on the
ReasoningPort protocol: five operations that each take a rendered prompt
and return parsed JSON. Two adapters are provided:

- LLMReasoning: LiteLLM-backed, through agents.utils.LLMClient
- MockReasoning: deterministic and scriptable, for tests and offline runs
"""

import copy
import inspect
from collections import deque
from collections.abc import Callable, Iterable
from typing import Any, Protocol, runtime_checkable

import structlog

from agents.prompts import RenderedPrompt
from agents.utils import JsonPayload, LLMClient, count_tokens_estimate, extract_json_from_response
from config import settings
from errors import JsonError
from metrics import UsageTracker

logger = structlog.get_logger()

OPERATIONS = ("analyze", "form_team", "decompose", "review", "execute")


@runtime_checkable
class ReasoningPort(Protocol):
    """Abstract reasoning capability.

    Implementations raise LlmError when the underlying call fails and
    JsonError when the reply holds no parseable JSON. They never retry
    beyond their own transport policy.
    """

    async def analyze(self, prompt: RenderedPrompt) -> JsonPayload: ...

    async def form_team(self, prompt: RenderedPrompt) -> JsonPayload: ...

    async def decompose(self, prompt: RenderedPrompt) -> JsonPayload: ...

    async def review(self, prompt: RenderedPrompt, *, task_id: str | None = None) -> JsonPayload: ...

    async def execute(self, prompt: RenderedPrompt, *, task_id: str | None = None) -> JsonPayload: ...


class LLMReasoning:
    """ReasoningPort backed by an LLM through LLMClient.

    Manager operations (analyze, form_team, decompose, review) use the
    manager model settings; ``execute`` uses the worker model settings.
    """

    def __init__(
        self,
        client: LLMClient,
        team_id: str | None = None,
        manager_model: str | None = None,
        worker_model: str | None = None,
    ) -> None:
        self.client = client
        self.team_id = team_id
        self.manager_model = manager_model or settings.manager_model
        self.worker_model = worker_model or settings.worker_model

    async def _complete(
        self,
        prompt: RenderedPrompt,
        model: str,
        temperature: float,
        max_tokens: int,
        task_id: str | None = None,
    ) -> JsonPayload:
        response = await self.client.call(
            prompt.to_messages(),
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            team_id=self.team_id,
            task_id=task_id,
        )
        payload = extract_json_from_response(response.content)
        if payload is None:
            logger.warning(
                "reasoning_response_not_json",
                prompt=prompt.name,
                prompt_version=prompt.version,
                team_id=self.team_id,
                content_preview=response.content[:200],
            )
            raise JsonError(f"no JSON found in {prompt.name} response")
        return payload

    async def _manager_call(self, prompt: RenderedPrompt, task_id: str | None = None) -> JsonPayload:
        return await self._complete(
            prompt,
            model=self.manager_model,
            temperature=settings.manager_temperature,
            max_tokens=settings.manager_max_tokens,
            task_id=task_id,
        )

    async def analyze(self, prompt: RenderedPrompt) -> JsonPayload:
        return await self._manager_call(prompt)

    async def form_team(self, prompt: RenderedPrompt) -> JsonPayload:
        return await self._manager_call(prompt)

    async def decompose(self, prompt: RenderedPrompt) -> JsonPayload:
        return await self._manager_call(prompt)

    async def review(self, prompt: RenderedPrompt, *, task_id: str | None = None) -> JsonPayload:
        return await self._manager_call(prompt, task_id=task_id)

    async def execute(self, prompt: RenderedPrompt, *, task_id: str | None = None) -> JsonPayload:
        return await self._complete(
            prompt,
            model=self.worker_model,
            temperature=settings.worker_temperature,
            max_tokens=settings.worker_max_tokens,
            task_id=task_id,
        )


DEFAULT_MOCK_RESPONSES: dict[str, JsonPayload] = {
    "analyze": {
        "core_objective": "Placeholder goal analysis",
        "subtasks": ["Subtask 1", "Subtask 2"],
        "required_specializations": ["Coder", "Tester", "Reviewer"],
        "estimated_timeline_hours": 8.0,
        "potential_blockers": [],
        "success_criteria": ["All tasks approved"],
    },
    "form_team": {
        "workers": [
            {
                "specialization": "Coder",
                "skills": ["Python", "API design"],
                "responsibilities": ["Implement features"],
                "required_tools": ["python"],
            },
            {
                "specialization": "Tester",
                "skills": ["Testing", "QA"],
                "responsibilities": ["Write and run tests"],
                "required_tools": ["pytest"],
            },
            {
                "specialization": "Reviewer",
                "skills": ["Code review"],
                "responsibilities": ["Review changes"],
                "required_tools": ["ruff"],
            },
        ]
    },
    "decompose": {
        "tasks": [
            {
                "title": "Implement core functionality",
                "description": "Build the main feature set",
                "acceptance_criteria": ["Feature works end to end"],
                "required_skills": ["python"],
                "estimated_complexity": "medium",
            },
            {
                "title": "Write tests",
                "description": "Cover the main feature set with tests",
                "acceptance_criteria": ["Tests pass"],
                "required_skills": ["testing"],
                "estimated_complexity": "low",
            },
            {
                "title": "Review implementation",
                "description": "Review the implementation for quality",
                "acceptance_criteria": ["No blocking comments"],
                "required_skills": ["code review"],
                "estimated_complexity": "low",
            },
        ]
    },
    "review": {"decision": "approved"},
    "execute": {
        "result": {"status": "completed"},
        "artifacts": [],
        "logs": ["Task executed successfully"],
    },
}

ScriptItem = JsonPayload | BaseException | Callable[[RenderedPrompt], Any]


class MockReasoning:
    """Deterministic ReasoningPort for tests and ``use_mock_llm`` runs.

    Each operation answers from its own script queue first and falls back
    to DEFAULT_MOCK_RESPONSES once the queue is empty. A script item may be:

    - a JSON value, returned as a deep copy
    - an exception instance, raised
    - a callable taking the prompt, whose (possibly awaited) result is
      treated as a script item

    Usage:
        >>> reasoning = MockReasoning({"review": [{"decision": "rejected", "reason": "no"}]})
        >>> await reasoning.review(prompt)
        {'decision': 'rejected', 'reason': 'no'}
    """

    def __init__(
        self,
        responses: dict[str, Iterable[ScriptItem]] | None = None,
        usage_tracker: UsageTracker | None = None,
        team_id: str | None = None,
        tokens_per_call: tuple[int, int] | None = None,
    ) -> None:
        responses = responses or {}
        unknown = set(responses) - set(OPERATIONS)
        if unknown:
            raise ValueError(f"unknown mock operations: {sorted(unknown)}")
        self._queues: dict[str, deque[ScriptItem]] = {
            op: deque(responses.get(op, ())) for op in OPERATIONS
        }
        self.usage_tracker = usage_tracker
        self.team_id = team_id
        self.tokens_per_call = tokens_per_call
        self.call_history: list[tuple[str, RenderedPrompt]] = []

    def script(self, operation: str, *items: ScriptItem) -> None:
        """Append items to an operation's script queue."""
        if operation not in self._queues:
            raise ValueError(f"unknown mock operation: {operation}")
        self._queues[operation].extend(items)

    def calls(self, operation: str) -> list[RenderedPrompt]:
        return [prompt for op, prompt in self.call_history if op == operation]

    def _record_usage(self, prompt: RenderedPrompt, task_id: str | None) -> None:
        if self.usage_tracker is None or self.team_id is None:
            return
        if self.tokens_per_call is not None:
            prompt_tokens, completion_tokens = self.tokens_per_call
        else:
            prompt_tokens = count_tokens_estimate(prompt.system + prompt.user)
            completion_tokens = 0
        self.usage_tracker.record_llm_call(
            self.team_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            task_id=task_id,
        )

    async def _respond(
        self,
        operation: str,
        prompt: RenderedPrompt,
        task_id: str | None = None,
    ) -> JsonPayload:
        self.call_history.append((operation, prompt))
        queue = self._queues[operation]
        item: Any = queue.popleft() if queue else DEFAULT_MOCK_RESPONSES[operation]

        if callable(item):
            item = item(prompt)
            if inspect.isawaitable(item):
                item = await item
        if isinstance(item, BaseException):
            raise item

        self._record_usage(prompt, task_id)
        logger.debug("mock_reasoning_call", operation=operation, prompt=prompt.name, task_id=task_id)
        return copy.deepcopy(item)

    async def analyze(self, prompt: RenderedPrompt) -> JsonPayload:
        return await self._respond("analyze", prompt)

    async def form_team(self, prompt: RenderedPrompt) -> JsonPayload:
        return await self._respond("form_team", prompt)

    async def decompose(self, prompt: RenderedPrompt) -> JsonPayload:
        return await self._respond("decompose", prompt)

    async def review(self, prompt: RenderedPrompt, *, task_id: str | None = None) -> JsonPayload:
        return await self._respond("review", prompt, task_id)

    async def execute(self, prompt: RenderedPrompt, *, task_id: str | None = None) -> JsonPayload:
        return await self._respond("execute", prompt, task_id)


def create_reasoning(
    team_id: str | None = None,
    usage_tracker: UsageTracker | None = None,
    use_mock: bool | None = None,
) -> ReasoningPort:
    """Build the configured reasoning adapter for a team.

    Args:
        team_id: Team that usage is attributed to.
        usage_tracker: Tracker that receives token usage.
        use_mock: Override for ``settings.use_mock_llm``.
    """
    if use_mock if use_mock is not None else settings.use_mock_llm:
        logger.info("reasoning_adapter_selected", adapter="mock", team_id=team_id)
        return MockReasoning(usage_tracker=usage_tracker, team_id=team_id)

    logger.info("reasoning_adapter_selected", adapter="llm", team_id=team_id)
    return LLMReasoning(LLMClient(usage_tracker=usage_tracker), team_id=team_id)

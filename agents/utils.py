"""LLM client and JSON helpers behind the LLM reasoning adapter.

This module provides:
- LLMClient: LiteLLM wrapper that retries transient failures, falls back to
  a secondary model and reports token usage to a UsageTracker
- extract_json_from_response: Pull the first JSON object or array out of a
  model reply
- MockLLMClient: Scripted client for tests
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    APIConnectionError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from errors import LlmError
from metrics import UsageTracker

logger = structlog.get_logger()

RETRYABLE_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout, APIConnectionError)
MAX_RETRY_DELAY = 4.0

JsonPayload = dict[str, Any] | list[Any]


@dataclass
class LLMMetrics:
    """Token usage and latency for one LLM call."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


@dataclass
class LLMResponse:
    """Text reply of one LLM call plus its usage.

    Attributes:
        content: Reply text, empty if the provider returned none
        finish_reason: Why the model stopped (stop, length, etc.)
        metrics: Token usage and latency
        raw_response: The LiteLLM ModelResponse, when there was one
    """

    content: str
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """LiteLLM wrapper used by LLMReasoning.

    A call walks a model plan: the requested model with up to
    ``retry_attempts`` retries on transient errors (exponential backoff
    capped at MAX_RETRY_DELAY), then the fallback model once. Any other
    error from the requested model is not retried and skips the
    fallback. Whatever fails leaves as an LlmError chained to the LiteLLM
    exception.

    Attributes:
        default_model: Model used when a call names none
        fallback_model: Model tried once after the requested one gives up
        retry_attempts: Retries per call on transient errors
        retry_delay: Base backoff delay in seconds
        usage_tracker: Receives token usage for calls attributed to a team
    """

    def __init__(
        self,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        usage_tracker: UsageTracker | None = None,
    ) -> None:
        self.default_model = default_model or settings.manager_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            settings.llm_max_retries if retry_attempts is None else retry_attempts
        )
        self.retry_delay = retry_delay
        self.usage_tracker = usage_tracker

    def _model_plan(self, model: str) -> list[tuple[str, int]]:
        """(model, retries) pairs to try in order."""
        plan = [(model, self.retry_attempts)]
        if self.fallback_model and self.fallback_model != model:
            plan.append((self.fallback_model, 0))
        return plan

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        team_id: str | None = None,
        task_id: str | None = None,
    ) -> LLMResponse:
        """Complete a chat and record its usage against ``team_id``/``task_id``.

        Raises:
            LlmError: If the requested model fails fatally, or every model
                in the plan gives up.
        """
        model = model or self.default_model
        started = time.monotonic()
        last_error: Exception | None = None

        for candidate, retries in self._model_plan(model):
            if candidate != model:
                logger.warning(
                    "llm_fallback_attempt",
                    primary_model=model,
                    fallback_model=candidate,
                    primary_error=str(last_error),
                )
            try:
                response = await self._request_with_backoff(
                    messages, candidate, retries, temperature, max_tokens
                )
            except RETRYABLE_ERRORS as e:
                last_error = e
                continue
            except Exception as e:
                # unknown provider failures are fatal for this model
                logger.error(
                    "llm_call_failed_no_retry",
                    model=candidate,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if candidate == model:
                    raise LlmError(f"{type(e).__name__}: {e}") from e
                last_error = e
                continue

            llm_response = self._parse_response(
                response, candidate, int((time.monotonic() - started) * 1000)
            )
            self._record_usage(llm_response.metrics, team_id, task_id)
            logger.info(
                "llm_call_complete",
                model=candidate,
                team_id=team_id,
                task_id=task_id,
                input_tokens=llm_response.metrics.input_tokens,
                output_tokens=llm_response.metrics.output_tokens,
                latency_ms=llm_response.metrics.latency_ms,
                fallback=candidate != model,
            )
            return llm_response

        raise LlmError(f"{model} gave up: {last_error}") from last_error

    async def _request_with_backoff(
        self,
        messages: list[dict[str, Any]],
        model: str,
        retries: int,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        attempt = 0
        while True:
            try:
                return await self._make_request(
                    messages=messages,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except RETRYABLE_ERRORS as e:
                if attempt >= retries:
                    logger.error(
                        "llm_retries_exhausted",
                        model=model,
                        attempts=attempt + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise
                delay = min(self.retry_delay * 2**attempt, MAX_RETRY_DELAY)
                logger.warning(
                    "llm_call_retry",
                    model=model,
                    attempt=attempt + 1,
                    max_retries=retries,
                    error_type=type(e).__name__,
                    retry_delay=delay,
                )
                await self._async_sleep(delay)
                attempt += 1

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "unknown",
            metrics=LLMMetrics(
                model=model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                latency_ms=latency_ms,
            ),
            raw_response=response,
        )

    def _record_usage(
        self,
        metrics: LLMMetrics,
        team_id: str | None,
        task_id: str | None,
    ) -> None:
        if self.usage_tracker is None or team_id is None:
            return
        self.usage_tracker.record_llm_call(
            team_id,
            prompt_tokens=metrics.input_tokens,
            completion_tokens=metrics.output_tokens,
            task_id=task_id,
        )

    async def _async_sleep(self, seconds: float) -> None:
        # Patched out in tests.
        await asyncio.sleep(seconds)


_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_decoder = json.JSONDecoder()


def _as_payload(value: Any) -> JsonPayload | None:
    return value if isinstance(value, (dict, list)) else None


def _scan_for_json(text: str) -> JsonPayload | None:
    """First object or array that decodes cleanly from any bracket position."""
    for index, ch in enumerate(text):
        if ch not in "{[":
            continue
        try:
            value, _ = _decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            continue
        return value
    return None


def extract_json_from_response(response: str) -> JsonPayload | None:
    """Extract a JSON object or array from a reply that may hold prose around it.

    Tries the whole reply, then each fenced code block, then the first
    decodable object or array anywhere in the text. Bare scalars are
    ignored.

    Returns:
        The parsed dict or list, or None if there is none.
    """
    try:
        payload = _as_payload(json.loads(response.strip()))
    except json.JSONDecodeError:
        payload = None
    if payload is not None:
        return payload

    for match in _FENCE_PATTERN.finditer(response):
        payload = _scan_for_json(match.group(1))
        if payload is not None:
            return payload

    return _scan_for_json(response)


def count_tokens_estimate(text: str) -> int:
    """Rough token count, at ~4 characters per token."""
    return len(text) // 4


class MockLLMClient(LLMClient):
    """LLMClient that answers from a script instead of calling a provider.

    Script items are consumed in order: strings become an LLMResponse with
    estimated token counts, LLMResponse objects are returned as-is and
    exceptions are raised. Usage is recorded like a real call.

    Usage:
        >>> client = MockLLMClient(responses=['{"decision": "approved"}'])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | str | Exception] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses or [])
        self.call_history: list[dict[str, Any]] = []
        self._cursor = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        team_id: str | None = None,
        task_id: str | None = None,
    ) -> LLMResponse:
        """Return the next scripted reply.

        Raises:
            LlmError: If the script is used up.
        """
        model = model or self.default_model
        self.call_history.append(
            {
                "messages": messages,
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "team_id": team_id,
                "task_id": task_id,
            }
        )
        if self._cursor >= len(self.responses):
            raise LlmError("mock script exhausted")
        item = self.responses[self._cursor]
        self._cursor += 1

        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            prompt_text = "".join(str(m.get("content", "")) for m in messages)
            item = LLMResponse(
                content=item,
                finish_reason="stop",
                metrics=LLMMetrics(
                    model=model,
                    input_tokens=count_tokens_estimate(prompt_text),
                    output_tokens=count_tokens_estimate(item),
                ),
            )

        self._record_usage(item.metrics, team_id, task_id)
        logger.debug("mock_llm_call", index=self._cursor - 1, team_id=team_id, task_id=task_id)
        return item

    def reset(self) -> None:
        self._cursor = 0
        self.call_history.clear()

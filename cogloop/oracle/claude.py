"""
Claude Oracle — reasoning continuations from the Anthropic Messages API.

The model is asked to answer in lines of the form

    STEP: <text> | likelihood: <0-1>

and the reply is parsed tolerantly: missing likelihoods default to 0.5,
percentages are scaled, and lines without a STEP marker are ignored (except
in answer mode, where the whole reply is the answer). Transport errors are
retried with backoff; once retries are spent, or on a non-retryable error,
``ReasoningUnavailable`` is raised so the control loop can fail the query.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Optional, Sequence

import anthropic
import structlog

from cogloop.config import ClaudeConfig
from cogloop.errors import ReasoningUnavailable
from cogloop.harness.retry import RetryConfig, with_retries
from cogloop.prompts import MODE_ANSWER, MODE_EXPLORE, parse_sections
from cogloop.types import Candidate, ReasoningStep, StepKind

logger = structlog.get_logger(__name__)

_STEP_RE = re.compile(
    r"^\s*(?:[-*]\s*)?STEP\s*:\s*(?P<text>.+?)\s*(?:\|\s*likelihood\s*[:=]\s*(?P<score>[0-9.]+)\s*(?P<pct>%)?)?\s*$",
    re.IGNORECASE,
)

SYSTEM_PROMPT = """\
You are the reasoning component of a personal knowledge assistant. You never
see the user's memories directly; you plan how to search them and, at the
end, phrase an answer from what was found.

The user message is split into ## sections. ## MODE tells you what to do:

- reason: propose the single next reasoning step for answering ## QUERY,
  given the steps so far. If the plan is complete, reply with DONE.
- explore: propose up to {max_alternatives} genuinely different ways to
  approach ## QUERY than ## CURRENT.
- answer: write the final answer to ## QUERY using only ## KNOWLEDGE and
  ## INSIGHTS. Mention uncertainty when ## CONFIDENCE is below 0.7.

For reason and explore, answer with one line per proposal:
STEP: <one sentence> | likelihood: <number between 0 and 1>
For answer, reply with the answer text only."""


def parse_candidates(text: str, max_alternatives: int, kind: Optional[StepKind] = None) -> list[Candidate]:
    """Pull ``STEP:`` lines out of a model reply."""
    candidates: list[Candidate] = []
    for line in text.splitlines():
        match = _STEP_RE.match(line)
        if not match:
            continue
        content = match.group("text").strip()
        if not content:
            continue
        raw = match.group("score")
        likelihood = 0.5
        if raw:
            try:
                likelihood = float(raw)
            except ValueError:
                likelihood = 0.5
            if match.group("pct") or likelihood > 1.0:
                likelihood /= 100.0
        candidates.append(Candidate(content, likelihood, kind))
        if len(candidates) >= max_alternatives:
            break
    return candidates


class ClaudeOracle:
    """A ``ReasoningOracle`` backed by Claude."""

    def __init__(self, config: ClaudeConfig, client: Optional[Any] = None):
        if client is None:
            if not config.api_key:
                raise ReasoningUnavailable("ANTHROPIC_API_KEY is not set")
            client = anthropic.AsyncAnthropic(api_key=config.api_key)
        self._client = client
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._temperature = config.temperature
        self._timeout = float(config.request_timeout_seconds)
        self._retry_config = RetryConfig.from_settings(config)

        self._total_calls = 0
        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._last_call_seconds: Optional[float] = None

        logger.info("claude_oracle.initialized", model=self._model)

    async def propose_continuation(
        self,
        prompt: str,
        prior_steps: Sequence[ReasoningStep],
        max_alternatives: int,
    ) -> list[Candidate]:
        if max_alternatives < 1:
            return []
        mode = parse_sections(prompt).get("MODE", "").lower()

        user_content = prompt
        if prior_steps:
            listed = "\n".join(
                f"{i + 1}. {step.content} (likelihood {step.likelihood:.2f})"
                for i, step in enumerate(prior_steps)
            )
            user_content = f"{prompt}\n\n## STEPS SO FAR\n{listed}"

        text = await self._complete(user_content, max_alternatives)

        if mode == MODE_ANSWER:
            answer = text.strip()
            return [Candidate(answer, 1.0, StepKind.FINAL)] if answer else []
        if text.strip().upper() == "DONE":
            return []
        kind = StepKind.EXPLORATION if mode == MODE_EXPLORE else None
        candidates = parse_candidates(text, max_alternatives, kind)
        if not candidates:
            logger.warning("claude_oracle.unparseable_reply", preview=text[:120])
        return candidates

    async def _complete(self, user_content: str, max_alternatives: int) -> str:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "system": SYSTEM_PROMPT.format(max_alternatives=max_alternatives),
            "messages": [{"role": "user", "content": user_content}],
        }

        async def _create() -> Any:
            return await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._timeout,
            )

        started = time.monotonic()
        try:
            response = await with_retries(_create, config=self._retry_config)
        except anthropic.APIError as exc:
            logger.error(
                "claude_oracle.api_error",
                error=str(exc)[:200],
                status=getattr(exc, "status_code", None),
            )
            raise ReasoningUnavailable(f"Claude request failed: {exc}") from exc
        except (ConnectionError, TimeoutError, asyncio.TimeoutError) as exc:
            logger.error("claude_oracle.transport_error", error_type=type(exc).__name__)
            raise ReasoningUnavailable(f"Claude request failed: {type(exc).__name__}") from exc

        self._total_calls += 1
        self._last_call_seconds = time.monotonic() - started
        usage = getattr(response, "usage", None)
        if usage is not None:
            self._total_input_tokens += getattr(usage, "input_tokens", 0) or 0
            self._total_output_tokens += getattr(usage, "output_tokens", 0) or 0

        return extract_text(response)

    @property
    def telemetry(self) -> dict[str, Any]:
        return {
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
            "last_call_seconds": self._last_call_seconds,
        }


def extract_text(response: Any) -> str:
    """Join the text blocks of a Messages API response."""
    parts = []
    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", None) == "text":
            parts.append(block.text)
    return "\n".join(parts)

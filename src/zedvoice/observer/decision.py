"""Decision engine: prompt the provider and validate its untrusted answer."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal, Union

from ..ai.provider import ModelProvider, translate_provider_error
from ..core.errors import ObserverError, ParseError, ProviderError
from ..core.models import Decision, ObservationContext
from ..services.telemetry import emit
from .prompts import PROMPT_VERSION, build_prompt

__all__ = [
    "DecisionEngine",
    "DecisionResult",
    "ParsedDecision",
    "ParseFailure",
    "ParseOutcome",
    "parse_decision",
]

LOGGER = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^\s*```[\w+-]*[ \t]*\n(?P<body>.*?)\n?[ \t]*```\s*$", re.DOTALL)
_RAW_PREVIEW_CHARS = 2_000

EngineStatus = Literal["ok", "provider_error", "parse_error"]


@dataclass(frozen=True, slots=True)
class ParsedDecision:
    decision: Decision


@dataclass(frozen=True, slots=True)
class ParseFailure:
    reason: str
    raw: str


ParseOutcome = Union[ParsedDecision, ParseFailure]


@dataclass(frozen=True, slots=True)
class DecisionResult:
    """Outcome of one engine call; failures carry the no-op decision."""

    decision: Decision
    status: EngineStatus
    latency_ms: float = 0.0
    error: ObserverError | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _strip_fence(text: str) -> str:
    match = _FENCE_PATTERN.match(text)
    if match is None:
        return text.strip()
    return match.group("body").strip()


def _require(payload: dict[str, Any], key: str, expected: type | tuple[type, ...], label: str) -> Any:
    if key not in payload:
        raise ParseError(f"Missing required field '{key}'")
    value = payload[key]
    if isinstance(value, bool) and bool not in (expected if isinstance(expected, tuple) else (expected,)):
        raise ParseError(f"Field '{key}' must be {label}, got a boolean")
    if not isinstance(value, expected):
        raise ParseError(f"Field '{key}' must be {label}, got {type(value).__name__}")
    return value


def _decode(raw: str) -> Decision:
    body = _strip_fence(raw)
    if not body:
        raise ParseError("Response was empty")
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Response is not valid JSON: {exc.msg}") from exc
    except ValueError as exc:
        raise ParseError(f"Response could not be decoded: {exc}") from exc
    if not isinstance(payload, dict):
        raise ParseError(f"Response must be a JSON object, got {type(payload).__name__}")

    should_speak = _require(payload, "shouldSpeak", bool, "a boolean")
    confidence = _require(payload, "confidence", (int, float), "a number")
    suggestion = _require(payload, "suggestion", str, "a string")
    reasoning = payload.get("reasoning", "")
    if reasoning is None:
        reasoning = ""
    if not isinstance(reasoning, str):
        raise ParseError(f"Field 'reasoning' must be a string, got {type(reasoning).__name__}")
    if isinstance(confidence, float) and math.isinf(confidence):
        confidence = 1.0 if confidence > 0 else 0.0
    return Decision.validated(
        should_speak=should_speak,
        confidence=confidence,
        suggestion=suggestion,
        reasoning=reasoning,
    )


def parse_decision(raw: str | None) -> ParseOutcome:
    """Parse the provider's raw text into a validated decision.

    Never raises: malformed input yields a :class:`ParseFailure` describing
    what was wrong so callers can log it and fall back to the no-op decision.
    """

    text = raw if isinstance(raw, str) else ""
    try:
        return ParsedDecision(_decode(text))
    except ParseError as exc:
        return ParseFailure(reason=exc.message, raw=text)


class DecisionEngine:
    """Turns an observation context into a validated :class:`Decision`."""

    def __init__(
        self,
        provider: ModelProvider,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._provider = provider
        self._clock = clock or time.perf_counter

    @property
    def provider(self) -> ModelProvider:
        return self._provider

    async def decide(self, context: ObservationContext, *, model_id: str, timeout: float) -> DecisionResult:
        prompt = build_prompt(context)
        started = self._clock()
        try:
            raw = await asyncio.wait_for(self._provider.submit(prompt, model_id, timeout), timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            latency_ms = (self._clock() - started) * 1000.0
            error = translate_provider_error(exc) if not isinstance(exc, ProviderError) else exc
            LOGGER.warning(
                "Provider call for %s failed (%s, transient=%s): %s",
                context.file_path,
                error.kind,
                error.transient,
                error.message,
            )
            emit(
                "observer.provider.error",
                {
                    "kind": error.kind,
                    "transient": error.transient,
                    "status_code": error.status_code,
                    "model_id": model_id,
                    "latency_ms": round(latency_ms, 3),
                },
            )
            return DecisionResult(Decision.noop(), "provider_error", latency_ms, error)

        latency_ms = (self._clock() - started) * 1000.0
        outcome = parse_decision(raw)
        if isinstance(outcome, ParseFailure):
            LOGGER.debug(
                "Discarding malformed provider response (%s): %s",
                outcome.reason,
                outcome.raw[:_RAW_PREVIEW_CHARS],
            )
            emit(
                "observer.parse.failure",
                {"reason": outcome.reason, "model_id": model_id, "prompt_version": PROMPT_VERSION},
            )
            return DecisionResult(Decision.noop(), "parse_error", latency_ms, ParseError(outcome.reason))
        return DecisionResult(outcome.decision, "ok", latency_ms)

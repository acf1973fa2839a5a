"""Value types shared by every stage of an observation cycle."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping

__all__ = [
    "TriggerKind",
    "PRIORITY_TRIGGERS",
    "Diagnostic",
    "FileInfo",
    "CursorPosition",
    "ObservationContext",
    "Decision",
    "CacheEntry",
    "SuggestionRecord",
    "FeedbackRecord",
    "NotificationPayload",
    "CycleReport",
    "clamp_unit",
]

Severity = Literal["error", "warning", "info", "hint"]
CycleStatus = Literal["ok", "cached", "skipped", "disabled", "provider_error", "parse_error"]
DispatchOutcome = Literal["not_accepted", "sent", "suppressed", "stale", "failed"]

_SEVERITY_RANK: Mapping[str, int] = {"error": 0, "warning": 1, "info": 2, "hint": 3}


class TriggerKind(str, Enum):
    """Reasons the scheduler may start an observation cycle."""

    TIMER = "timer"
    ON_ERROR = "onError"
    ON_WARNING = "onWarning"
    ON_GIT_CONFLICT = "onGitConflict"

    @property
    def is_proactive(self) -> bool:
        return self is not TriggerKind.TIMER

    @classmethod
    def parse(cls, value: "str | TriggerKind") -> "TriggerKind":
        if isinstance(value, TriggerKind):
            return value
        normalized = str(value).strip()
        for member in cls:
            if normalized == member.value or normalized.upper() == member.name:
                return member
        raise ValueError(f"Unknown trigger kind '{value}'")


PRIORITY_TRIGGERS: frozenset[TriggerKind] = frozenset(
    {TriggerKind.ON_ERROR, TriggerKind.ON_WARNING, TriggerKind.ON_GIT_CONFLICT}
)


def clamp_unit(value: float) -> float:
    """Clamp *value* into ``[0, 1]``; NaN collapses to zero."""

    try:
        number = float(value)
    except OverflowError:
        return 1.0 if value > 0 else 0.0
    if math.isnan(number):
        return 0.0
    return min(1.0, max(0.0, number))


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """A single compiler/linter message reported by the editing session."""

    severity: str
    message: str
    line: int

    @property
    def severity_rank(self) -> int:
        return _SEVERITY_RANK.get(self.severity.lower(), len(_SEVERITY_RANK))

    def sort_key(self) -> tuple[int, int]:
        return (self.line, self.severity_rank)

    def as_dict(self) -> dict[str, Any]:
        return {"severity": self.severity, "message": self.message, "line": self.line}


@dataclass(frozen=True, slots=True)
class FileInfo:
    path: str | None
    language: str | None = None


@dataclass(frozen=True, slots=True)
class CursorPosition:
    line: int
    column: int = 0


@dataclass(frozen=True, slots=True)
class ObservationContext:
    """Bounded snapshot of the editing session sampled for one cycle."""

    file_path: str | None
    language: str | None
    cursor_line: int
    cursor_column: int
    code_window: str
    diagnostics: tuple[Diagnostic, ...]
    git_status: str
    fingerprint: str
    imports: str = ""
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class Decision:
    """Validated answer to "should we say something, and what?"."""

    should_speak: bool
    confidence: float
    suggestion: str = ""
    reasoning: str = ""

    @classmethod
    def noop(cls) -> "Decision":
        return cls(should_speak=False, confidence=0.0, suggestion="", reasoning="")

    @classmethod
    def validated(
        cls,
        *,
        should_speak: bool,
        confidence: float,
        suggestion: str = "",
        reasoning: str = "",
    ) -> "Decision":
        """Build a decision enforcing the clamp and the silent-means-empty rule."""

        clamped = clamp_unit(confidence)
        text = (suggestion or "").strip()
        if not should_speak:
            return cls(should_speak=False, confidence=clamped, suggestion="", reasoning="")
        if not text:
            return cls.noop()
        return cls(should_speak=True, confidence=clamped, suggestion=text, reasoning=(reasoning or "").strip())

    def is_accepted(self, min_confidence: float) -> bool:
        return self.should_speak and self.confidence >= min_confidence

    def as_dict(self) -> dict[str, Any]:
        return {
            "shouldSpeak": self.should_speak,
            "confidence": self.confidence,
            "suggestion": self.suggestion,
            "reasoning": self.reasoning,
        }


@dataclass(slots=True)
class CacheEntry:
    fingerprint: str
    decision: Decision
    created_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.created_at < self.ttl


@dataclass(frozen=True, slots=True)
class SuggestionRecord:
    suggestion_hash: str
    emitted_at: float


@dataclass(frozen=True, slots=True)
class FeedbackRecord:
    suggestion_hash: str
    accepted: bool
    recorded_at: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class NotificationPayload:
    title: str
    message: str
    severity: str = "info"


@dataclass(frozen=True, slots=True)
class CycleReport:
    """Summary of one observation cycle, shared with callers and telemetry."""

    trigger: TriggerKind
    decision: Decision
    status: CycleStatus
    accepted: bool = False
    dispatch: DispatchOutcome = "not_accepted"
    fingerprint: str | None = None
    cache_hit: bool = False
    latency_ms: float = 0.0

    def as_payload(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "status": self.status,
            "accepted": self.accepted,
            "dispatch": self.dispatch,
            "fingerprint": self.fingerprint,
            "cache_hit": self.cache_hit,
            "confidence": self.decision.confidence,
            "latency_ms": round(self.latency_ms, 3),
        }

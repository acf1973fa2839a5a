"""Decision cache and emitted-suggestion history."""

from __future__ import annotations

import hashlib
import re
import time
from collections import OrderedDict, deque
from threading import RLock
from typing import Callable, Deque, Iterator, Sequence

from ..core.models import CacheEntry, Decision, FeedbackRecord, SuggestionRecord

__all__ = ["DecisionCache", "SuggestionHistory", "suggestion_hash"]

_WHITESPACE = re.compile(r"\s+")
_HISTORY_LIMIT = 256
_FEEDBACK_LIMIT = 256


def suggestion_hash(text: str) -> str:
    """Stable identity for a suggestion: lower-cased, whitespace collapsed."""

    normalized = _WHITESPACE.sub(" ", (text or "").strip().lower())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class DecisionCache:
    """Fingerprint-keyed LRU of recent decisions with a freshness window."""

    def __init__(
        self,
        *,
        capacity: int = 32,
        ttl_seconds: float = 90.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._capacity = max(1, int(capacity))
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = RLock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def configure(self, *, capacity: int | None = None, ttl_seconds: float | None = None) -> None:
        with self._lock:
            if capacity is not None:
                self._capacity = max(1, int(capacity))
            if ttl_seconds is not None:
                self._ttl_seconds = max(0.0, float(ttl_seconds))
            self._enforce_capacity_locked()

    def get(self, fingerprint: str) -> Decision | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if not entry.is_fresh(now):
                del self._entries[fingerprint]
                return None
            self._entries.move_to_end(fingerprint)
            return entry.decision

    def put(self, fingerprint: str, decision: Decision) -> None:
        entry = CacheEntry(
            fingerprint=fingerprint,
            decision=decision,
            created_at=self._clock(),
            ttl=self._ttl_seconds,
        )
        with self._lock:
            self._entries[fingerprint] = entry
            self._entries.move_to_end(fingerprint)
            self._enforce_capacity_locked()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            return fingerprint in self._entries

    def _enforce_capacity_locked(self) -> None:
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)


class SuggestionHistory:
    """Bounded log of emitted suggestions and the feedback recorded for them."""

    def __init__(
        self,
        *,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] | None = None,
        limit: int = _HISTORY_LIMIT,
    ) -> None:
        self._cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._clock = clock or time.monotonic
        self._records: Deque[SuggestionRecord] = deque(maxlen=max(1, limit))
        self._feedback: Deque[FeedbackRecord] = deque(maxlen=_FEEDBACK_LIMIT)
        self._lock = RLock()

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds

    def configure(self, *, cooldown_seconds: float) -> None:
        self._cooldown_seconds = max(0.0, float(cooldown_seconds))

    def is_duplicate(self, digest: str) -> bool:
        now = self._clock()
        with self._lock:
            for record in reversed(self._records):
                if record.suggestion_hash != digest:
                    continue
                return now - record.emitted_at < self._cooldown_seconds
        return False

    def record(self, digest: str) -> SuggestionRecord:
        record = SuggestionRecord(suggestion_hash=digest, emitted_at=self._clock())
        with self._lock:
            self._records.append(record)
        return record

    def record_feedback(self, digest: str, accepted: bool) -> FeedbackRecord:
        feedback = FeedbackRecord(suggestion_hash=digest, accepted=bool(accepted))
        with self._lock:
            self._feedback.append(feedback)
        return feedback

    def records(self) -> Sequence[SuggestionRecord]:
        with self._lock:
            return tuple(self._records)

    def feedback(self) -> Sequence[FeedbackRecord]:
        with self._lock:
            return tuple(self._feedback)

    def __iter__(self) -> Iterator[SuggestionRecord]:
        return iter(self.records())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

"""Trigger bus adapting host editor events onto :class:`TriggerKind`."""

from __future__ import annotations

import logging
import weakref
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Iterable, List

from ..core.models import Diagnostic, TriggerKind

__all__ = ["TriggerBus", "TriggerHandler", "CONFLICT_STATUS_CODES", "has_merge_conflict"]

LOGGER = logging.getLogger(__name__)

TriggerHandler = Callable[[TriggerKind], None]

# Two-letter ``git status --porcelain`` codes for unmerged paths.
CONFLICT_STATUS_CODES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})


def has_merge_conflict(git_status: str) -> bool:
    for line in (git_status or "").splitlines():
        if line[:2] in CONFLICT_STATUS_CODES:
            return True
        if line.lstrip().lower().startswith("both modified:"):
            return True
    return False


@dataclass(slots=True)
class _Subscription:
    strong: TriggerHandler | None
    weak: Callable[[], TriggerHandler | None] | None = None

    def resolve(self) -> TriggerHandler | None:
        if self.weak is not None:
            return self.weak()
        return self.strong

    def matches(self, handler: TriggerHandler) -> bool:
        return self.resolve() == handler


class TriggerBus:
    """Synchronous pub/sub bus; the observer handle subscribes to it.

    Hosts either publish :class:`TriggerKind` values directly or feed raw
    editor signals through the adapter helpers, which decide which trigger
    (if any) the signal maps to.
    """

    def __init__(self) -> None:
        self._subscriptions: List[_Subscription] = []
        self._lock = RLock()
        self._last_severities: frozenset[str] = frozenset()
        self._last_conflict = False

    def subscribe(self, handler: TriggerHandler, *, weak: bool = False) -> None:
        subscription = _Subscription(strong=handler)
        if weak:
            try:
                subscription = _Subscription(strong=None, weak=weakref.WeakMethod(handler))  # type: ignore[arg-type]
            except TypeError:
                try:
                    subscription = _Subscription(strong=None, weak=weakref.ref(handler))
                except TypeError:
                    subscription = _Subscription(strong=handler)
        with self._lock:
            self._subscriptions.append(subscription)

    def unsubscribe(self, handler: TriggerHandler) -> None:
        with self._lock:
            self._subscriptions[:] = [item for item in self._subscriptions if not item.matches(handler)]

    def publish(self, trigger: TriggerKind | str) -> None:
        kind = TriggerKind.parse(trigger)
        callbacks: list[TriggerHandler] = []
        with self._lock:
            live: list[_Subscription] = []
            for subscription in self._subscriptions:
                callback = subscription.resolve()
                if callback is None:
                    continue
                live.append(subscription)
                callbacks.append(callback)
            self._subscriptions[:] = live
        for callback in callbacks:
            try:
                callback(kind)
            except Exception:  # pragma: no cover - subscriber isolation
                LOGGER.exception("Trigger subscriber failed")

    def diagnostics_changed(self, diagnostics: Iterable[Diagnostic]) -> TriggerKind | None:
        """Publish ``ON_ERROR``/``ON_WARNING`` when a new severity appears."""

        severities = frozenset(item.severity.lower() for item in diagnostics)
        previous = self._last_severities
        self._last_severities = severities
        if "error" in severities and "error" not in previous:
            self.publish(TriggerKind.ON_ERROR)
            return TriggerKind.ON_ERROR
        if "warning" in severities and "warning" not in previous:
            self.publish(TriggerKind.ON_WARNING)
            return TriggerKind.ON_WARNING
        return None

    def git_status_changed(self, git_status: str) -> TriggerKind | None:
        """Publish ``ON_GIT_CONFLICT`` when unmerged paths first show up."""

        conflict = has_merge_conflict(git_status)
        previous = self._last_conflict
        self._last_conflict = conflict
        if conflict and not previous:
            self.publish(TriggerKind.ON_GIT_CONFLICT)
            return TriggerKind.ON_GIT_CONFLICT
        return None

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for item in self._subscriptions if item.resolve() is not None)

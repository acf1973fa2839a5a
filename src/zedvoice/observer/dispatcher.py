"""Routes accepted decisions to a notification or speech sink."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Protocol, runtime_checkable

from ..core.errors import DispatchError
from ..core.models import Decision, DispatchOutcome, FeedbackRecord, NotificationPayload, TriggerKind
from ..services.telemetry import emit
from .cache import SuggestionHistory, suggestion_hash

__all__ = ["OutputSink", "OutputDispatcher", "LoggingSink", "DEFAULT_TITLE"]

LOGGER = logging.getLogger(__name__)

DEFAULT_TITLE = "ZedVoice"
_WARNING_TRIGGERS = frozenset({TriggerKind.ON_ERROR, TriggerKind.ON_GIT_CONFLICT})


@runtime_checkable
class OutputSink(Protocol):
    """Host-provided renderer; either method may be sync or async."""

    def notify(self, payload: NotificationPayload) -> Any:
        ...

    def speak(self, text: str) -> Any:
        ...


class LoggingSink:
    """Sink that writes suggestions to the log, for headless runs."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or LOGGER

    def notify(self, payload: NotificationPayload) -> None:
        level = logging.WARNING if payload.severity == "warning" else logging.INFO
        self._logger.log(level, "%s: %s", payload.title, payload.message)

    async def speak(self, text: str) -> None:
        self._logger.info("(speech) %s", text)


class OutputDispatcher:
    """Applies duplicate suppression and renders exactly one sink call per suggestion."""

    def __init__(
        self,
        sink: OutputSink,
        history: SuggestionHistory | None = None,
        *,
        title: str = DEFAULT_TITLE,
    ) -> None:
        self._sink = sink
        self._history = history or SuggestionHistory()
        self._title = title

    @property
    def history(self) -> SuggestionHistory:
        return self._history

    @property
    def sink(self) -> OutputSink:
        return self._sink

    async def dispatch(
        self,
        decision: Decision,
        trigger: TriggerKind,
        *,
        voice_enabled: bool,
    ) -> DispatchOutcome:
        if not decision.should_speak or not decision.suggestion:
            return "not_accepted"

        digest = suggestion_hash(decision.suggestion)
        if self._history.is_duplicate(digest):
            LOGGER.debug("Suppressing duplicate suggestion %s", digest[:12])
            emit("observer.dispatch.suppressed", {"trigger": trigger.value, "suggestion_hash": digest})
            return "suppressed"

        channel = "speech" if voice_enabled else "notification"
        try:
            await self._render(decision, trigger, voice_enabled=voice_enabled)
        except DispatchError as exc:
            LOGGER.warning("Dropping suggestion: %s", exc)
            emit(
                "observer.dispatch.failed",
                {"trigger": trigger.value, "channel": channel, "error": exc.message},
            )
            return "failed"

        self._history.record(digest)
        emit(
            "observer.dispatch.sent",
            {
                "trigger": trigger.value,
                "channel": channel,
                "suggestion_hash": digest,
                "confidence": decision.confidence,
            },
        )
        return "sent"

    def record_feedback(self, digest: str, accepted: bool) -> FeedbackRecord:
        record = self._history.record_feedback(digest, accepted)
        LOGGER.debug("Recorded %s feedback for %s", "positive" if accepted else "negative", digest[:12])
        return record

    def build_notification(self, decision: Decision, trigger: TriggerKind) -> NotificationPayload:
        severity = "warning" if trigger in _WARNING_TRIGGERS else "info"
        return NotificationPayload(title=self._title, message=decision.suggestion, severity=severity)

    async def _render(self, decision: Decision, trigger: TriggerKind, *, voice_enabled: bool) -> None:
        try:
            if voice_enabled:
                result = self._sink.speak(decision.suggestion)
            else:
                result = self._sink.notify(self.build_notification(decision, trigger))
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            raise DispatchError(f"Output sink failed: {exc}", sink=type(self._sink).__name__) from exc

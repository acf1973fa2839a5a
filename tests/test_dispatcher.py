"""Tests for the output dispatcher."""

from __future__ import annotations

import logging

import pytest

from zedvoice.core.models import Decision, NotificationPayload, TriggerKind
from zedvoice.observer.cache import SuggestionHistory, suggestion_hash
from zedvoice.observer.dispatcher import LoggingSink, OutputDispatcher

from tests.helpers import RecordingSink

_SPEAK = Decision(should_speak=True, confidence=0.9, suggestion="add a null check")


@pytest.mark.asyncio
async def test_silent_decision_never_reaches_sink() -> None:
    sink = RecordingSink()
    dispatcher = OutputDispatcher(sink)

    outcome = await dispatcher.dispatch(
        Decision(should_speak=False, confidence=1.0), TriggerKind.TIMER, voice_enabled=False
    )
    voiced = await dispatcher.dispatch(Decision.noop(), TriggerKind.ON_ERROR, voice_enabled=True)

    assert outcome == "not_accepted"
    assert voiced == "not_accepted"
    assert sink.call_count == 0
    assert len(dispatcher.history) == 0


@pytest.mark.asyncio
async def test_notification_payload_and_severity() -> None:
    sink = RecordingSink()
    dispatcher = OutputDispatcher(sink, title="Observer")

    await dispatcher.dispatch(_SPEAK, TriggerKind.ON_ERROR, voice_enabled=False)
    await dispatcher.dispatch(
        Decision(True, 0.8, "consider a type hint"), TriggerKind.ON_WARNING, voice_enabled=False
    )

    assert sink.notifications == [
        NotificationPayload(title="Observer", message="add a null check", severity="warning"),
        NotificationPayload(title="Observer", message="consider a type hint", severity="info"),
    ]


@pytest.mark.asyncio
async def test_voice_enabled_speaks_instead_of_notifying(recorder) -> None:
    sink = RecordingSink()
    dispatcher = OutputDispatcher(sink)

    outcome = await dispatcher.dispatch(_SPEAK, TriggerKind.TIMER, voice_enabled=True)

    assert outcome == "sent"
    assert sink.spoken == ["add a null check"]
    assert sink.notifications == []
    sent = [event for event in recorder.tail() if event["event"] == "observer.dispatch.sent"]
    assert sent and sent[0]["channel"] == "speech"


@pytest.mark.asyncio
async def test_duplicate_within_cooldown_is_suppressed(recorder) -> None:
    sink = RecordingSink()
    dispatcher = OutputDispatcher(sink, SuggestionHistory(cooldown_seconds=300))

    first = await dispatcher.dispatch(_SPEAK, TriggerKind.TIMER, voice_enabled=False)
    second = await dispatcher.dispatch(
        Decision(True, 0.95, "Add a  null check"), TriggerKind.TIMER, voice_enabled=False
    )

    assert (first, second) == ("sent", "suppressed")
    assert sink.call_count == 1
    assert len(dispatcher.history) == 1
    assert "observer.dispatch.suppressed" in recorder.names()


@pytest.mark.asyncio
async def test_sink_failure_is_logged_and_history_untouched(caplog: pytest.LogCaptureFixture, recorder) -> None:
    caplog.set_level(logging.WARNING, logger="zedvoice.observer.dispatcher")
    dispatcher = OutputDispatcher(RecordingSink(fail=True))

    outcome = await dispatcher.dispatch(_SPEAK, TriggerKind.TIMER, voice_enabled=False)

    assert outcome == "failed"
    assert len(dispatcher.history) == 0
    assert "dispatch_error" in caplog.text
    assert "observer.dispatch.failed" in recorder.names()


@pytest.mark.asyncio
async def test_retry_after_failure_is_not_treated_as_duplicate() -> None:
    sink = RecordingSink(fail=True)
    dispatcher = OutputDispatcher(sink)
    await dispatcher.dispatch(_SPEAK, TriggerKind.TIMER, voice_enabled=False)

    sink.fail = False
    outcome = await dispatcher.dispatch(_SPEAK, TriggerKind.TIMER, voice_enabled=False)

    assert outcome == "sent"
    assert len(sink.notifications) == 1


def test_record_feedback_is_stored() -> None:
    dispatcher = OutputDispatcher(RecordingSink())
    digest = suggestion_hash("add a null check")

    record = dispatcher.record_feedback(digest, True)

    assert dispatcher.history.feedback() == (record,)


@pytest.mark.asyncio
async def test_logging_sink_writes_to_log(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="zedvoice.tests.sink")
    dispatcher = OutputDispatcher(LoggingSink(logging.getLogger("zedvoice.tests.sink")))

    await dispatcher.dispatch(_SPEAK, TriggerKind.ON_GIT_CONFLICT, voice_enabled=False)
    await dispatcher.dispatch(Decision(True, 0.9, "run the tests"), TriggerKind.TIMER, voice_enabled=True)

    assert "add a null check" in caplog.text
    assert "(speech) run the tests" in caplog.text

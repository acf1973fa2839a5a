"""Shared pytest fixtures."""

from __future__ import annotations

import os
from typing import Iterator

import pytest

from zedvoice.observer.scheduler import SchedulerConfig
from zedvoice.services.telemetry import InMemoryEventRecorder

OBSERVER_EVENTS = (
    "observer.cycle.start",
    "observer.cycle.end",
    "observer.cycle.skipped",
    "observer.cache.hit",
    "observer.provider.error",
    "observer.parse.failure",
    "observer.dispatch.sent",
    "observer.dispatch.suppressed",
    "observer.dispatch.failed",
)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in list(os.environ):
        if name.startswith("ZEDVOICE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ZEDVOICE_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def recorder() -> Iterator[InMemoryEventRecorder]:
    events = InMemoryEventRecorder(*OBSERVER_EVENTS, capacity=500)
    try:
        yield events
    finally:
        events.close()


@pytest.fixture
def fast_config() -> SchedulerConfig:
    """Scheduler timings compressed 100x; one configured second is 10ms."""

    return SchedulerConfig(auto_tick=False, time_scale=0.01)

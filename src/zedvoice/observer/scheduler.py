"""Background scheduler driving observation cycles."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from ..core.errors import ContextUnavailable
from ..core.models import CycleReport, Decision, DispatchOutcome, TriggerKind
from ..services.settings import EffectiveSettings
from ..services.telemetry import emit
from .cache import DecisionCache
from .context import ContextAggregator, EditingSession
from .decision import DecisionEngine
from .dispatcher import OutputDispatcher

__all__ = ["ObserverScheduler", "SchedulerConfig", "SchedulerState"]

LOGGER = logging.getLogger(__name__)

ReportCallback = Callable[[CycleReport], None]


class SchedulerState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    COOLDOWN = "cooldown"


@dataclass(slots=True)
class SchedulerConfig:
    """Tunable timing parameters for the scheduler."""

    cooldown_seconds: float = 1.0
    priority_spacing_seconds: float = 2.0
    max_backoff_multiplier: float = 8.0
    auto_tick: bool = True
    time_scale: float = 1.0

    def scaled(self, seconds: float) -> float:
        return max(0.0, float(seconds) * max(0.0, self.time_scale))


class ObserverScheduler:
    """Debounces triggers and runs at most one observation cycle at a time.

    Every method except :meth:`run_now` and :meth:`aclose` must be called on
    the event-loop thread that owns the scheduler; other threads go through
    ``loop.call_soon_threadsafe``.
    """

    def __init__(
        self,
        *,
        settings: EffectiveSettings,
        session: EditingSession,
        engine: DecisionEngine,
        dispatcher: OutputDispatcher,
        aggregator: ContextAggregator | None = None,
        cache: DecisionCache | None = None,
        config: SchedulerConfig | None = None,
        clock: Callable[[], float] | None = None,
        report_callback: ReportCallback | None = None,
    ) -> None:
        self._config = config or SchedulerConfig()
        self._clock = clock or time.monotonic
        self._settings = settings
        self._session = session
        self._engine = engine
        self._dispatcher = dispatcher
        self._aggregator = aggregator or ContextAggregator(settings.context_limits)
        self._cache = cache or DecisionCache(clock=self._clock)
        self._report_callback = report_callback

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._pending: TriggerKind | None = None
        self._backoff = 1.0
        self._last_completed_at = self._clock()
        self._last_priority_at: float | None = None
        self._cooldown_until = 0.0
        self._cycle_count = 0
        self._last_report: CycleReport | None = None
        self._worker_task: asyncio.Task[None] | None = None
        self._ticker_task: asyncio.Task[None] | None = None
        self._closed = False
        self._configure_components(settings)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def settings(self) -> EffectiveSettings:
        return self._settings

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def cache(self) -> DecisionCache:
        return self._cache

    @property
    def dispatcher(self) -> OutputDispatcher:
        return self._dispatcher

    @property
    def backoff_multiplier(self) -> float:
        return self._backoff

    @property
    def pending_trigger(self) -> TriggerKind | None:
        return self._pending

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    @property
    def state(self) -> SchedulerState:
        if self._lock.locked():
            return SchedulerState.RUNNING
        if self._clock() < self._cooldown_until:
            return SchedulerState.COOLDOWN
        if self._pending is not None:
            return SchedulerState.PENDING
        return SchedulerState.IDLE

    def start(self) -> None:
        """Start the worker (and ticker) on the running loop."""

        if self._worker_task is not None or self._closed:
            return
        loop = asyncio.get_running_loop()
        self._last_completed_at = self._clock()
        self._worker_task = loop.create_task(self._drain_queue())
        if self._config.auto_tick:
            self._ticker_task = loop.create_task(self._tick())
        LOGGER.debug(
            "Observer scheduler started (interval=%ss, enabled=%s)",
            self._settings.interval_seconds,
            self._settings.enabled,
        )

    def submit(self, trigger: TriggerKind) -> None:
        """Record *trigger* as the pending one; an earlier pending trigger is dropped."""

        if self._closed:
            return
        if not self._settings.enabled:
            LOGGER.debug("Observer disabled; ignoring %s trigger", trigger.value)
            return
        previous = self._pending
        self._pending = trigger
        if previous is not None:
            LOGGER.debug("Trigger %s superseded by %s", previous.value, trigger.value)
        self._wake.set()

    def apply_settings(self, settings: EffectiveSettings) -> None:
        previous = self._settings
        self._settings = settings
        self._configure_components(settings)
        if previous.model_id != settings.model_id:
            LOGGER.info("Model changed from %s to %s; clearing decision cache", previous.model_id, settings.model_id)
            self._cache.clear()
        if not settings.enabled and self._pending is not None:
            LOGGER.debug("Observer disabled; dropping pending %s trigger", self._pending.value)
            self._pending = None
        self._wake.set()

    async def run_now(self, trigger: TriggerKind = TriggerKind.TIMER) -> CycleReport:
        """Run one cycle immediately, waiting for any cycle already in flight."""

        if not self._settings.enabled:
            report = CycleReport(trigger=trigger, decision=Decision.noop(), status="disabled")
            LOGGER.debug("Observer disabled; run_now(%s) returns the no-op decision", trigger.value)
            return report
        return await self._run_cycle(trigger)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending = None
        self._wake.set()
        for task in (self._ticker_task, self._worker_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._ticker_task = None
        self._worker_task = None
        # Let an in-flight run_now finish before the provider is released.
        async with self._lock:
            pass

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------
    async def _tick(self) -> None:
        try:
            while not self._closed:
                await asyncio.sleep(self._config.scaled(self._settings.interval_seconds))
                if self._settings.enabled:
                    self.submit(TriggerKind.TIMER)
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            return

    async def _drain_queue(self) -> None:
        try:
            while not self._closed:
                await self._wake.wait()
                self._wake.clear()
                while self._pending is not None and not self._closed:
                    if not self._settings.enabled:
                        self._pending = None
                        break
                    delay = self._delay_for(self._pending)
                    if delay > 0:
                        with contextlib.suppress(asyncio.TimeoutError):
                            await asyncio.wait_for(self._wake.wait(), delay)
                        self._wake.clear()
                        continue
                    trigger = self._pending
                    self._pending = None
                    try:
                        await self._run_cycle(trigger)
                    except Exception:
                        LOGGER.exception("Observer cycle for %s trigger failed", trigger.value)
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            return

    def _uses_priority_bypass(self, trigger: TriggerKind) -> bool:
        return trigger.is_proactive and self._settings.trigger_enabled(trigger)

    def _delay_for(self, trigger: TriggerKind) -> float:
        now = self._clock()
        cooldown = self._cooldown_until - now
        if self._uses_priority_bypass(trigger):
            if self._last_priority_at is None:
                wait = 0.0
            else:
                spacing = self._config.scaled(self._config.priority_spacing_seconds)
                wait = self._last_priority_at + spacing - now
        else:
            interval = self._config.scaled(self._settings.interval_seconds * self._backoff)
            wait = self._last_completed_at + interval - now
        return max(cooldown, wait, 0.0)

    async def _run_cycle(self, trigger: TriggerKind) -> CycleReport:
        async with self._lock:
            if self._uses_priority_bypass(trigger):
                self._last_priority_at = self._clock()
            try:
                report = await self._execute(trigger, self._settings)
            finally:
                now = self._clock()
                self._last_completed_at = now
                self._cooldown_until = now + self._config.scaled(self._config.cooldown_seconds)
                self._cycle_count += 1
        self._last_report = report
        self._notify_report(report)
        return report

    async def _execute(self, trigger: TriggerKind, settings: EffectiveSettings) -> CycleReport:
        started = time.perf_counter()
        emit("observer.cycle.start", {"trigger": trigger.value, "backoff": self._backoff})
        try:
            context = self._aggregator.collect(self._session)
        except ContextUnavailable as exc:
            LOGGER.debug("Skipping %s cycle: %s", trigger.value, exc.message)
            emit("observer.cycle.skipped", {"trigger": trigger.value, "reason": exc.code})
            return CycleReport(trigger=trigger, decision=Decision.noop(), status="skipped")
        except Exception as exc:
            LOGGER.warning("Unable to sample the editing session: %s", exc)
            emit("observer.cycle.skipped", {"trigger": trigger.value, "reason": "session_error"})
            return CycleReport(trigger=trigger, decision=Decision.noop(), status="skipped")

        cached = self._cache.get(context.fingerprint)
        if cached is not None:
            emit("observer.cache.hit", {"trigger": trigger.value, "fingerprint": context.fingerprint})
            decision = cached
            status = "cached"
        else:
            result = await self._engine.decide(
                context,
                model_id=settings.model_id,
                timeout=settings.request_timeout_seconds,
            )
            decision = result.decision
            status = result.status
            if result.status == "ok":
                self._cache.put(context.fingerprint, decision)
                self._backoff = 1.0
            elif result.status == "provider_error" and getattr(result.error, "transient", True):
                self._backoff = min(self._config.max_backoff_multiplier, self._backoff * 2)
                LOGGER.debug("Backoff multiplier is now %s", self._backoff)

        accepted = decision.is_accepted(settings.min_confidence)
        outcome: DispatchOutcome = "not_accepted"
        if accepted:
            if settings.suppress_stale and self._is_stale(context.fingerprint):
                LOGGER.debug("Session changed during the cycle; dropping the suggestion")
                emit("observer.dispatch.suppressed", {"trigger": trigger.value, "reason": "stale"})
                outcome = "stale"
            else:
                outcome = await self._dispatcher.dispatch(
                    decision,
                    trigger,
                    voice_enabled=settings.voice_enabled,
                )

        report = CycleReport(
            trigger=trigger,
            decision=decision,
            status=status,
            accepted=accepted,
            dispatch=outcome,
            fingerprint=context.fingerprint,
            cache_hit=status == "cached",
            latency_ms=(time.perf_counter() - started) * 1000.0,
        )
        emit("observer.cycle.end", report.as_payload())
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _configure_components(self, settings: EffectiveSettings) -> None:
        self._aggregator.update_limits(settings.context_limits)
        self._cache.configure(
            capacity=settings.cache_capacity,
            ttl_seconds=self._config.scaled(settings.effective_cache_ttl),
        )
        self._dispatcher.history.configure(
            cooldown_seconds=self._config.scaled(settings.suggestion_cooldown_seconds),
        )

    def _is_stale(self, fingerprint: str) -> bool:
        try:
            current = self._aggregator.fingerprint(self._session)
        except Exception as exc:
            LOGGER.debug("Unable to re-fingerprint the session: %s", exc)
            return True
        return current != fingerprint

    def _notify_report(self, report: CycleReport) -> None:
        if self._report_callback is None:
            return
        try:
            self._report_callback(report)
        except Exception:  # pragma: no cover - callback isolation
            LOGGER.debug("Cycle report callback failed", exc_info=True)

"""Observer lifecycle: one background loop thread per editing session."""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import threading
from typing import Any, Callable, Mapping

from .ai.provider import ModelProvider, OpenAIProvider
from .core.models import CycleReport, Decision, FeedbackRecord, TriggerKind
from .observer.cache import SuggestionHistory
from .observer.context import ContextAggregator, EditingSession
from .observer.decision import DecisionEngine
from .observer.dispatcher import OutputDispatcher, OutputSink
from .observer.prompts import system_prompt
from .observer.scheduler import ObserverScheduler, SchedulerConfig
from .observer.triggers import TriggerBus
from .services.settings import EffectiveSettings, SettingsResolver, settings_to_payload

__all__ = ["ObserverHandle", "initialize", "trigger_now", "shutdown"]

LOGGER = logging.getLogger(__name__)

ConfigInput = EffectiveSettings | Mapping[str, Any] | None
ReportCallback = Callable[[CycleReport], None]
_DEFAULT_START_TIMEOUT = 10.0
_DEFAULT_STOP_TIMEOUT = 10.0


def _resolve_config(config: ConfigInput, resolver: SettingsResolver) -> EffectiveSettings:
    if isinstance(config, EffectiveSettings):
        return config
    if config is None:
        return resolver.resolve()
    if isinstance(config, Mapping):
        return resolver.resolve(config)
    raise TypeError(f"Unsupported observer configuration type: {type(config).__name__}")


class ObserverHandle:
    """Owns the worker thread, its event loop and the scheduler living on it."""

    def __init__(
        self,
        settings: EffectiveSettings,
        *,
        session: EditingSession,
        sink: OutputSink,
        provider: ModelProvider | None = None,
        scheduler_config: SchedulerConfig | None = None,
        resolver: SettingsResolver | None = None,
        report_callback: ReportCallback | None = None,
    ) -> None:
        self._settings = settings
        self._session = session
        self._sink = sink
        self._provider = provider
        self._scheduler_config = scheduler_config or SchedulerConfig()
        self._resolver = resolver or SettingsResolver()
        self._report_callback = report_callback
        self._triggers = TriggerBus()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._scheduler: ObserverScheduler | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._startup_error: BaseException | None = None
        self._state_lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def settings(self) -> EffectiveSettings:
        return self._settings

    @property
    def triggers(self) -> TriggerBus:
        return self._triggers

    @property
    def scheduler(self) -> ObserverScheduler | None:
        return self._scheduler

    @property
    def history(self) -> SuggestionHistory | None:
        scheduler = self._scheduler
        return scheduler.dispatcher.history if scheduler is not None else None

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return not self._closed and thread is not None and thread.is_alive()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, *, timeout: float | None = _DEFAULT_START_TIMEOUT) -> None:
        with self._state_lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._thread_main, name="zedvoice-observer", daemon=True)
            self._thread.start()
        if not self._ready.wait(timeout):
            raise TimeoutError("Observer worker did not start in time")
        if self._startup_error is not None:
            self._thread.join(timeout)
            self._closed = True
            raise RuntimeError("Observer worker failed to start") from self._startup_error
        self._triggers.subscribe(self.publish)
        LOGGER.info(
            "Observer started (model=%s, interval=%ss, voice=%s)",
            self._settings.model_id,
            self._settings.interval_seconds,
            self._settings.voice_enabled,
        )

    def close(self, *, timeout: float | None = _DEFAULT_STOP_TIMEOUT) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._triggers.unsubscribe(self.publish)
        loop = self._loop
        stop_event = self._stop_event
        if loop is not None and stop_event is not None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(stop_event.set)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                LOGGER.warning("Observer worker did not stop within %ss", timeout)
        LOGGER.info("Observer stopped")

    def _thread_main(self) -> None:
        try:
            asyncio.run(self._serve())
        except Exception as exc:
            if self._startup_error is None:
                LOGGER.exception("Observer worker crashed")
            self._startup_error = self._startup_error or exc
        finally:
            self._ready.set()

    async def _serve(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        try:
            async with contextlib.AsyncExitStack() as stack:
                provider = self._provider or OpenAIProvider.from_settings(
                    self._settings,
                    system_prompt=system_prompt(),
                )
                stack.push_async_callback(provider.aclose)
                scheduler = ObserverScheduler(
                    settings=self._settings,
                    session=self._session,
                    engine=DecisionEngine(provider),
                    dispatcher=OutputDispatcher(self._sink, SuggestionHistory()),
                    aggregator=ContextAggregator(self._settings.context_limits),
                    config=self._scheduler_config,
                    report_callback=self._report_callback,
                )
                stack.push_async_callback(scheduler.aclose)
                scheduler.start()
                self._scheduler = scheduler
                self._ready.set()
                await self._stop_event.wait()
        except Exception as exc:
            if not self._ready.is_set():
                self._startup_error = exc
                LOGGER.error("Observer worker failed to start: %s", exc)
                return
            raise

    # ------------------------------------------------------------------
    # Cross-thread operations
    # ------------------------------------------------------------------
    def publish(self, trigger: TriggerKind | str) -> None:
        """Queue *trigger* on the worker loop; safe from any thread."""

        kind = TriggerKind.parse(trigger)
        scheduler = self._scheduler
        if self._closed or scheduler is None:
            LOGGER.debug("Observer not running; dropping %s trigger", kind.value)
            return
        self._call_soon(scheduler.submit, kind)

    def update_settings(self, *layers: Mapping[str, Any] | EffectiveSettings) -> EffectiveSettings:
        """Layer overrides on top of the current snapshot and apply the result."""

        snapshot = self._settings
        if len(layers) == 1 and isinstance(layers[0], EffectiveSettings):
            snapshot = layers[0]
        else:
            mappings = [layer for layer in layers if not isinstance(layer, EffectiveSettings)]
            snapshot = self._resolver.resolve(settings_to_payload(snapshot), *mappings)
        self._settings = snapshot
        scheduler = self._scheduler
        if scheduler is not None and not self._closed:
            self._call_soon(scheduler.apply_settings, snapshot)
        return snapshot

    def record_feedback(self, suggestion_hash: str, accepted: bool) -> None:
        scheduler = self._scheduler
        if self._closed or scheduler is None:
            return
        self._call_soon(scheduler.dispatcher.record_feedback, suggestion_hash, accepted)

    def run_now(self, trigger: TriggerKind | str = TriggerKind.TIMER, *, timeout: float | None = None) -> CycleReport:
        """Run one cycle synchronously and return its report."""

        kind = TriggerKind.parse(trigger)
        noop = CycleReport(trigger=kind, decision=Decision.noop(), status="disabled")
        scheduler = self._scheduler
        loop = self._loop
        if self._closed or scheduler is None or loop is None:
            LOGGER.debug("Observer not running; run_now(%s) returns the no-op decision", kind.value)
            return noop
        if threading.current_thread() is self._thread:
            raise RuntimeError("run_now cannot be called from the observer worker thread")
        if not self._settings.enabled:
            return noop
        future = asyncio.run_coroutine_threadsafe(scheduler.run_now(kind), loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            LOGGER.warning("Observer cycle did not finish within %ss", timeout)
            return CycleReport(trigger=kind, decision=Decision.noop(), status="provider_error")

    def feedback(self) -> tuple[FeedbackRecord, ...]:
        history = self.history
        return tuple(history.feedback()) if history is not None else ()

    def _call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            LOGGER.debug("Observer loop already closed; dropping %s", getattr(callback, "__name__", callback))


def initialize(
    config: ConfigInput,
    *,
    session: EditingSession,
    sink: OutputSink,
    provider: ModelProvider | None = None,
    scheduler_config: SchedulerConfig | None = None,
    report_callback: ReportCallback | None = None,
    start_timeout: float | None = _DEFAULT_START_TIMEOUT,
) -> ObserverHandle:
    """Start observing *session* and return the handle controlling it."""

    resolver = SettingsResolver()
    settings = _resolve_config(config, resolver)
    handle = ObserverHandle(
        settings,
        session=session,
        sink=sink,
        provider=provider,
        scheduler_config=scheduler_config,
        resolver=resolver,
        report_callback=report_callback,
    )
    handle.start(timeout=start_timeout)
    return handle


def trigger_now(
    handle: ObserverHandle,
    trigger: TriggerKind | str = TriggerKind.TIMER,
    timeout: float | None = None,
) -> Decision:
    """Run one cycle now, bypassing the timer but not single-flight."""

    return handle.run_now(trigger, timeout=timeout).decision


def shutdown(handle: ObserverHandle | None) -> None:
    """Stop the worker and release the provider; calling it twice is harmless."""

    if handle is None:
        return
    handle.close()

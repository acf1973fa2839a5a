"""Shared test helpers and stub classes.

Reusable fakes for the editing session, the model provider and the output
sink. Import from here instead of redefining them in individual test files.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from typing import Any, Callable, Iterable, Sequence

from zedvoice.core.errors import ProviderError
from zedvoice.core.models import CursorPosition, Diagnostic, FileInfo, NotificationPayload


def decision_json(
    should_speak: bool = True,
    confidence: float = 0.9,
    suggestion: str = "add a null check",
    reasoning: str = "",
) -> str:
    return json.dumps(
        {
            "shouldSpeak": should_speak,
            "confidence": confidence,
            "suggestion": suggestion,
            "reasoning": reasoning,
        }
    )


class FakeSession:
    """In-memory editing session.

    Example:
        session = FakeSession("a = 1\\nb = 2", path="/tmp/demo.py", cursor_line=1)
    """

    def __init__(
        self,
        text: str = "",
        *,
        path: str | None = "/tmp/demo.py",
        language: str | None = "python",
        cursor_line: int = 0,
        cursor_column: int = 0,
        diagnostics: Iterable[Diagnostic] = (),
        git_status: str = "",
    ) -> None:
        self.text = text
        self.path = path
        self.language = language
        self.cursor_line = cursor_line
        self.cursor_column = cursor_column
        self.diagnostics_list = list(diagnostics)
        self.status = git_status
        self.window_calls: list[tuple[int, int]] = []

    def current_file(self) -> FileInfo | None:
        if self.path is None:
            return None
        return FileInfo(path=self.path, language=self.language)

    def cursor(self) -> CursorPosition:
        return CursorPosition(self.cursor_line, self.cursor_column)

    def text_window(self, start_line: int, end_line: int) -> str:
        self.window_calls.append((start_line, end_line))
        lines = self.text.splitlines()
        return "\n".join(lines[max(0, start_line) : end_line + 1])

    def diagnostics(self) -> Sequence[Diagnostic]:
        return tuple(self.diagnostics_list)

    def git_status(self) -> str:
        return self.status


class FakeProvider:
    """Scripted :class:`ModelProvider` that tracks calls and concurrency."""

    def __init__(
        self,
        responses: Iterable[str | BaseException] | None = None,
        *,
        default: str | None = None,
        delay: float = 0.0,
    ) -> None:
        self._responses = list(responses or [])
        self._default = default if default is not None else decision_json()
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._lock = threading.Lock()
        self.on_submit: Callable[[str], None] | None = None

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    async def submit(self, prompt: str, model_id: str, timeout: float) -> str:
        with self._lock:
            self.calls.append({"prompt": prompt, "model_id": model_id, "timeout": timeout, "at": time.monotonic()})
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            response: str | BaseException = self._responses.pop(0) if self._responses else self._default
        try:
            if self.on_submit is not None:
                self.on_submit(prompt)
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(response, BaseException):
                raise response
            return response
        finally:
            with self._lock:
                self.active -= 1

    async def aclose(self) -> None:
        self.closed = True


class FailingProvider(FakeProvider):
    def __init__(self, error: BaseException | None = None) -> None:
        super().__init__()
        self._error = error or ProviderError("boom", kind="network")

    async def submit(self, prompt: str, model_id: str, timeout: float) -> str:
        with self._lock:
            self.calls.append({"prompt": prompt, "model_id": model_id, "timeout": timeout, "at": time.monotonic()})
        raise self._error


class RecordingSink:
    """Sink remembering every notification and speech request."""

    def __init__(self, *, fail: bool = False) -> None:
        self.notifications: list[NotificationPayload] = []
        self.spoken: list[str] = []
        self.fail = fail
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.notifications) + len(self.spoken)

    def notify(self, payload: NotificationPayload) -> None:
        if self.fail:
            raise RuntimeError("notification daemon unavailable")
        with self._lock:
            self.notifications.append(payload)

    async def speak(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("speech engine unavailable")
        with self._lock:
            self.spoken.append(text)


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll *predicate* from a non-loop thread until it holds or *timeout* passes."""

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()

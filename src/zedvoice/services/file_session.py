"""Editing session backed by a file on disk, for headless runs."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from threading import RLock
from typing import Iterable, List, Sequence

from ..core.models import CursorPosition, Diagnostic, FileInfo
from ..observer.context import guess_language

__all__ = ["FileSession", "read_git_status"]

LOGGER = logging.getLogger(__name__)

_GIT_STATUS_MAX_LINES = 50


def read_git_status(directory: Path, *, timeout: float = 2.0, max_lines: int = _GIT_STATUS_MAX_LINES) -> str:
    """Return ``git status --porcelain`` for *directory*, or an empty string."""

    try:
        result = subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=directory,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError:
        LOGGER.debug("%s is not inside a git work tree", directory)
        return ""
    except (OSError, subprocess.TimeoutExpired) as exc:
        LOGGER.debug("git status failed in %s: %s", directory, exc)
        return ""
    lines = [line for line in result.stdout.splitlines() if line.strip()]
    if len(lines) > max_lines:
        hidden = len(lines) - max_lines
        lines = lines[:max_lines] + [f"... {hidden} more path(s)"]
    return "\n".join(lines)


class FileSession:
    """:class:`~zedvoice.observer.context.EditingSession` over a single file.

    The file is re-read on every call so edits made by another program are
    picked up by the next observation cycle.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        line: int = 0,
        column: int = 0,
        language: str | None = None,
        diagnostics: Iterable[Diagnostic] = (),
        git_timeout: float = 2.0,
    ) -> None:
        self._path = Path(path).expanduser()
        self._language = language or guess_language(str(self._path))
        self._cursor = CursorPosition(max(0, int(line)), max(0, int(column)))
        self._diagnostics: List[Diagnostic] = list(diagnostics)
        self._git_timeout = git_timeout
        self._lock = RLock()

    @property
    def path(self) -> Path:
        return self._path

    def set_cursor(self, line: int, column: int = 0) -> None:
        with self._lock:
            self._cursor = CursorPosition(max(0, int(line)), max(0, int(column)))

    def set_diagnostics(self, diagnostics: Iterable[Diagnostic]) -> None:
        with self._lock:
            self._diagnostics = list(diagnostics)

    def current_file(self) -> FileInfo | None:
        if not self._path.is_file():
            return None
        return FileInfo(path=str(self._path), language=self._language)

    def cursor(self) -> CursorPosition:
        with self._lock:
            return self._cursor

    def text_window(self, start_line: int, end_line: int) -> str:
        if end_line < start_line:
            return ""
        lines = self._read_lines()
        start = max(0, start_line)
        return "\n".join(lines[start : end_line + 1])

    def diagnostics(self) -> Sequence[Diagnostic]:
        with self._lock:
            return tuple(self._diagnostics)

    def git_status(self) -> str:
        return read_git_status(self._path.parent, timeout=self._git_timeout)

    def _read_lines(self) -> List[str]:
        try:
            text = self._path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        return text.splitlines()

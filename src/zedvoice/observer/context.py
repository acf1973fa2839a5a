"""Bounded snapshots of the editing session for one observation cycle."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Mapping, Protocol, Sequence, runtime_checkable

from ..core.errors import ContextUnavailable
from ..core.models import CursorPosition, Diagnostic, FileInfo, ObservationContext
from ..services.settings import ContextLimits

__all__ = [
    "EditingSession",
    "ContextAggregator",
    "compute_fingerprint",
    "guess_language",
    "render_diagnostic",
    "TRUNCATION_MARKER",
]

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "... [context truncated]"
_IMPORT_SCAN_LINES = 200
_CURSOR_MARK = ">"

_LANGUAGE_BY_SUFFIX: Mapping[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".rs": "rust",
    ".go": "go",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".java": "java",
    ".kt": "kotlin",
    ".scala": "scala",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
}

_IMPORT_PATTERNS: Mapping[str, re.Pattern[str]] = {
    "python": re.compile(r"^\s*(?:import\s+\S|from\s+\S+\s+import\s)"),
    "javascript": re.compile(r"^\s*(?:import\s|export\s+.*\sfrom\s|(?:const|let|var)\s+.+=\s*require\()"),
    "typescript": re.compile(r"^\s*(?:import\s|export\s+.*\sfrom\s|(?:const|let|var)\s+.+=\s*require\()"),
    "rust": re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:use\s|extern\s+crate\s|mod\s+\w+\s*;)"),
    "go": re.compile(r"^\s*(?:import\b|\"[\w./-]+\"\s*$)"),
    "c": re.compile(r"^\s*#\s*include\b"),
    "cpp": re.compile(r"^\s*(?:#\s*include\b|import\s)"),
    "java": re.compile(r"^\s*import\s"),
    "kotlin": re.compile(r"^\s*import\s"),
    "scala": re.compile(r"^\s*import\s"),
    "csharp": re.compile(r"^\s*using\s+[\w.]+\s*;"),
    "ruby": re.compile(r"^\s*(?:require|require_relative)\s"),
    "php": re.compile(r"^\s*(?:use\s|require(?:_once)?\b|include(?:_once)?\b)"),
    "swift": re.compile(r"^\s*import\s"),
}
_GENERIC_IMPORT_PATTERN = re.compile(r"^\s*(?:import\s|from\s+\S+\s+import\s|#\s*include\b|use\s|require\b)")


@runtime_checkable
class EditingSession(Protocol):
    """Read-only view of the host editor consumed by the aggregator."""

    def current_file(self) -> FileInfo | None:
        ...

    def cursor(self) -> CursorPosition:
        ...

    def text_window(self, start_line: int, end_line: int) -> str:
        """Return lines ``start_line..end_line`` (inclusive, 0-based)."""
        ...

    def diagnostics(self) -> Sequence[Diagnostic]:
        ...

    def git_status(self) -> str:
        ...


def guess_language(path: str | None) -> str | None:
    if not path:
        return None
    return _LANGUAGE_BY_SUFFIX.get(PurePath(path).suffix.lower())


def render_diagnostic(diagnostic: Diagnostic) -> str:
    return f"line {diagnostic.line + 1} [{diagnostic.severity}] {diagnostic.message}"


def compute_fingerprint(
    file_path: str | None,
    language: str | None,
    code_window: str,
    diagnostics: Sequence[Diagnostic],
    git_status: str,
) -> str:
    """Return the SHA-256 digest identifying an observation's content."""

    document = [
        file_path,
        language,
        code_window,
        [diagnostic.as_dict() for diagnostic in diagnostics],
        git_status,
    ]
    encoded = json.dumps(document, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class _WindowLine:
    number: int
    text: str


@dataclass(slots=True)
class _Draft:
    lines: list[_WindowLine]
    cursor_index: int
    imports: str = ""
    diagnostics: list[Diagnostic] = field(default_factory=list)
    git_status: str = ""

    def render_window(self, *, mark_cursor: bool = True) -> str:
        if not self.lines:
            return ""
        width = len(str(self.lines[-1].number))
        rendered: list[str] = []
        for index, line in enumerate(self.lines):
            marker = _CURSOR_MARK if mark_cursor and index == self.cursor_index else " "
            rendered.append(f"{marker} {line.number:>{width}} | {line.text}")
        return "\n".join(rendered)

    def size(self) -> int:
        diagnostics = sum(len(render_diagnostic(item)) + 1 for item in self.diagnostics)
        return len(self.imports) + len(self.render_window()) + diagnostics + len(self.git_status)


class ContextAggregator:
    """Samples the session into an :class:`ObservationContext` under a size budget."""

    def __init__(self, limits: ContextLimits | None = None) -> None:
        self._limits = limits or ContextLimits()

    @property
    def limits(self) -> ContextLimits:
        return self._limits

    def update_limits(self, limits: ContextLimits) -> None:
        self._limits = limits

    def collect(self, session: EditingSession) -> ObservationContext:
        info = session.current_file()
        if info is None:
            raise ContextUnavailable("The editing session has no active file")
        limits = self._limits
        language = info.language or guess_language(info.path)
        cursor = session.cursor()
        cursor_line = max(0, int(cursor.line))

        start = max(0, cursor_line - limits.lines_before)
        end = cursor_line + limits.lines_after
        raw = session.text_window(start, end) or ""
        lines = [_WindowLine(start + offset + 1, text) for offset, text in enumerate(raw.splitlines())]
        if lines:
            last_line = start + len(lines) - 1
            cursor_index = min(cursor_line, last_line) - start
        else:
            last_line = start - 1
            cursor_index = -1

        draft = _Draft(lines=lines, cursor_index=cursor_index)
        if limits.include_imports and start > 0:
            draft.imports = self._collect_imports(session, language, start)
        if limits.include_diagnostics:
            draft.diagnostics = sorted(
                (item for item in session.diagnostics() if start <= item.line <= last_line),
                key=Diagnostic.sort_key,
            )
        draft.git_status = (session.git_status() or "").rstrip()

        truncated = self._apply_budget(draft, limits.max_chars)
        code_window = draft.render_window()
        unmarked_window = draft.render_window(mark_cursor=False)
        if truncated:
            code_window = f"{code_window}\n{TRUNCATION_MARKER}" if code_window else TRUNCATION_MARKER
            unmarked_window = f"{unmarked_window}\n{TRUNCATION_MARKER}" if unmarked_window else TRUNCATION_MARKER
            LOGGER.debug("Context for %s truncated to %s chars", info.path, limits.max_chars)

        diagnostics = tuple(draft.diagnostics)
        fingerprint = compute_fingerprint(info.path, language, unmarked_window, diagnostics, draft.git_status)
        return ObservationContext(
            file_path=info.path,
            language=language,
            cursor_line=cursor_line,
            cursor_column=max(0, int(cursor.column)),
            code_window=code_window,
            diagnostics=diagnostics,
            git_status=draft.git_status,
            fingerprint=fingerprint,
            imports=draft.imports,
            truncated=truncated,
        )

    def fingerprint(self, session: EditingSession) -> str | None:
        """Return the current fingerprint, or ``None`` when nothing is observable."""

        try:
            return self.collect(session).fingerprint
        except ContextUnavailable:
            return None

    @staticmethod
    def _collect_imports(session: EditingSession, language: str | None, window_start: int) -> str:
        scan_start = max(0, window_start - _IMPORT_SCAN_LINES)
        header = session.text_window(scan_start, window_start - 1) or ""
        pattern = _IMPORT_PATTERNS.get(language or "", _GENERIC_IMPORT_PATTERN)
        seen: set[str] = set()
        imports: list[str] = []
        for line in header.splitlines():
            if not pattern.match(line):
                continue
            stripped = line.strip()
            if stripped in seen:
                continue
            seen.add(stripped)
            imports.append(stripped)
        return "\n".join(imports)

    @staticmethod
    def _apply_budget(draft: _Draft, max_chars: int) -> bool:
        if draft.size() <= max_chars:
            return False
        budget = max(0, max_chars - len(TRUNCATION_MARKER) - 1)

        draft.imports = ""
        while draft.size() > budget and len(draft.lines) > 1:
            above = draft.cursor_index
            below = len(draft.lines) - 1 - draft.cursor_index
            if above > below:
                draft.lines.pop(0)
                draft.cursor_index -= 1
            else:
                draft.lines.pop()
        if draft.lines:
            first, last = draft.lines[0].number - 1, draft.lines[-1].number - 1
            draft.diagnostics = [item for item in draft.diagnostics if first <= item.line <= last]
        while draft.size() > budget and draft.diagnostics:
            draft.diagnostics.pop()
        if draft.size() > budget and draft.git_status:
            overflow = draft.size() - budget
            draft.git_status = draft.git_status[: max(0, len(draft.git_status) - overflow)].rstrip()
        if draft.size() > budget and draft.lines:
            cursor = draft.lines[draft.cursor_index]
            overflow = draft.size() - budget
            cursor.text = cursor.text[: max(0, len(cursor.text) - overflow)]
        return True

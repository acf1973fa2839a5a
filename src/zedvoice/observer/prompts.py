"""Prompt templates for observation cycles.

The templates are pure functions of the observation context so the same
context always yields the same prompt text. Bump :data:`PROMPT_VERSION`
whenever the wording or the response schema changes.
"""

from __future__ import annotations

from ..core.models import ObservationContext
from .context import render_diagnostic

PROMPT_VERSION = "observer-v1"


def system_prompt() -> str:
    """Instructions shared by every observation request."""
    return f"""{_role_section()}

## Response format

{_schema_section()}

## Guidelines

{_guidelines_section()}"""


def _role_section() -> str:
    return """You are a quiet pair-programming companion watching a developer edit code.
Most of the time the right answer is to stay silent.
Speak up only when you notice something concrete and useful: a bug, a likely
mistake, a failing diagnostic with an obvious fix, or a merge conflict."""


def _schema_section() -> str:
    return """Reply with exactly one JSON object and nothing else:
{"shouldSpeak": <true|false>, "confidence": <number between 0 and 1>,
 "suggestion": "<one or two sentences, empty when silent>",
 "reasoning": "<optional short justification>"}"""


def _guidelines_section() -> str:
    return """- Keep the suggestion short enough to be read aloud.
- Refer to line numbers when pointing at code.
- Do not repeat the code back to the developer.
- Use a confidence below 0.5 when you are guessing."""


def build_prompt(context: ObservationContext) -> str:
    """Render the user prompt for *context*."""

    sections: list[str] = [f"Prompt version: {PROMPT_VERSION}"]
    sections.append(f"File: {context.file_path or '(untitled)'}")
    sections.append(f"Language: {context.language or 'unknown'}")
    sections.append(f"Cursor: line {context.cursor_line + 1}, column {context.cursor_column + 1}")
    if context.imports:
        sections.append(f"Imports:\n{context.imports}")
    sections.append(f"Code (cursor line marked with '>'):\n{context.code_window or '(empty)'}")
    if context.diagnostics:
        rendered = "\n".join(render_diagnostic(item) for item in context.diagnostics)
        sections.append(f"Diagnostics:\n{rendered}")
    else:
        sections.append("Diagnostics: none")
    if context.git_status:
        sections.append(f"Git status:\n{context.git_status}")
    if context.truncated:
        sections.append("Note: the context above was truncated to fit the size budget.")
    sections.append("Should the developer hear a suggestion right now? Answer with the JSON object only.")
    return "\n\n".join(sections)


__all__ = ["PROMPT_VERSION", "build_prompt", "system_prompt"]

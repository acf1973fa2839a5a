"""Core domain types shared by the observer, settings and adapters."""

from .models import (
    PRIORITY_TRIGGERS,
    CacheEntry,
    CursorPosition,
    CycleReport,
    Decision,
    Diagnostic,
    FeedbackRecord,
    FileInfo,
    NotificationPayload,
    ObservationContext,
    SuggestionRecord,
    TriggerKind,
    clamp_unit,
)

__all__ = [
    "PRIORITY_TRIGGERS",
    "CacheEntry",
    "CursorPosition",
    "CycleReport",
    "Decision",
    "Diagnostic",
    "FeedbackRecord",
    "FileInfo",
    "NotificationPayload",
    "ObservationContext",
    "SuggestionRecord",
    "TriggerKind",
    "clamp_unit",
]

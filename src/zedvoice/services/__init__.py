"""Service layer helpers (settings, telemetry, file-backed sessions)."""

from .settings import (
    ContextLimits,
    EffectiveSettings,
    ProviderSettings,
    SettingsResolver,
    SettingsStore,
)

__all__ = [
    "ContextLimits",
    "EffectiveSettings",
    "ProviderSettings",
    "SettingsResolver",
    "SettingsStore",
]

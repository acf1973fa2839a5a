"""ZedVoice: a background observer that suggests things while you edit."""

from .core.models import Decision, Diagnostic, NotificationPayload, TriggerKind
from .observer.dispatcher import LoggingSink
from .observer.scheduler import SchedulerConfig
from .services.settings import EffectiveSettings
from .session import ObserverHandle, initialize, shutdown, trigger_now

__version__ = "0.1.0"

__all__ = [
    "Decision",
    "Diagnostic",
    "EffectiveSettings",
    "LoggingSink",
    "NotificationPayload",
    "ObserverHandle",
    "SchedulerConfig",
    "TriggerKind",
    "initialize",
    "shutdown",
    "trigger_now",
]

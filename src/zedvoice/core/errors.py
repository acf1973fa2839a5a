"""Error taxonomy for the observer pipeline.

Every error carries a machine-readable ``code`` so telemetry and logs can
categorize failures without string matching. None of these errors is allowed
to escape an observation cycle; each is recovered where it is raised.
"""

from __future__ import annotations

from typing import Any, ClassVar, Literal

__all__ = [
    "ObserverError",
    "ContextUnavailable",
    "ProviderError",
    "ParseError",
    "ConfigError",
    "DispatchError",
]

ProviderErrorKind = Literal["timeout", "network", "status", "rate_limit", "unknown"]


class ObserverError(Exception):
    """Base class for recoverable observer failures."""

    code: ClassVar[str] = "observer_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ContextUnavailable(ObserverError):
    """No active session or buffer to observe."""

    code = "context_unavailable"


class ProviderError(ObserverError):
    """The model provider failed, timed out, or answered with an error status."""

    code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        kind: ProviderErrorKind = "unknown",
        transient: bool = True,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, kind=kind, transient=transient, status_code=status_code)
        self.kind = kind
        self.transient = transient
        self.status_code = status_code


class ParseError(ObserverError):
    """The model response did not match the decision schema."""

    code = "parse_error"


class ConfigError(ObserverError):
    """A configuration value was malformed or out of range."""

    code = "config_error"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message, field=field)
        self.field = field


class DispatchError(ObserverError):
    """The output sink could not render an accepted suggestion."""

    code = "dispatch_error"

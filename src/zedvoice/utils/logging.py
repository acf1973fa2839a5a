"""Logging setup for the observer: one rotating log plus a suggestions log."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["setup_logging", "resolve_log_dir", "SUGGESTION_LOGGER"]

SUGGESTION_LOGGER = "zedvoice.suggestions"
_DEFAULT_SETTINGS_PATH = Path.home() / ".zedvoice" / "settings.json"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"
_SUGGESTION_FORMAT = "%(asctime)s | %(message)s"
_CONFIGURED = False
_LOG_PATH: Path | None = None


def resolve_log_dir(log_dir: Path | str | None = None, *, settings_path: Path | None = None) -> Path:
    """Pick the log directory: explicit, then ``ZEDVOICE_LOG_DIR``, then ``logs/`` beside the settings file."""

    if log_dir:
        return Path(log_dir).expanduser()
    env_override = os.environ.get("ZEDVOICE_LOG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    return (settings_path or _DEFAULT_SETTINGS_PATH).expanduser().parent / "logs"


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    settings_path: Path | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging and return the path of the main log file.

    Suggestions rendered through the ``zedvoice.suggestions`` logger are also
    written to ``suggestions.log`` so a headless ``--watch`` run leaves a
    plain transcript of what the observer said.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = resolve_log_dir(log_dir, settings_path=settings_path)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "zedvoice.log"

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [
        _rotating_handler(log_path, level, formatter, max_bytes=max_bytes, backup_count=backup_count)
    ]
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _route_suggestions(target_dir / "suggestions.log", max_bytes=max_bytes, backup_count=backup_count)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def _rotating_handler(
    path: Path,
    level: int,
    formatter: logging.Formatter,
    *,
    max_bytes: int,
    backup_count: int,
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _route_suggestions(path: Path, *, max_bytes: int, backup_count: int) -> None:
    logger = logging.getLogger(SUGGESTION_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.addHandler(
        _rotating_handler(
            path,
            logging.INFO,
            logging.Formatter(fmt=_SUGGESTION_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"),
            max_bytes=max_bytes,
            backup_count=backup_count,
        )
    )
    logger.setLevel(logging.INFO)


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)

"""Command line entry point for running the observer headless."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO

from .core.models import TriggerKind
from .observer.dispatcher import LoggingSink
from .observer.scheduler import SchedulerConfig
from .services.file_session import FileSession
from .services.settings import (
    EffectiveSettings,
    SettingsStore,
    nest_dotted_keys,
    setting_keys,
    settings_to_payload,
)
from .session import initialize, shutdown, trigger_now
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_WATCH_POLL_SECONDS = 0.5
_TRIGGER_GRACE_SECONDS = 5.0


def configure_logging(debug: bool = False, *, settings_path: Path | None = None, force: bool = False) -> None:
    """Configure file and console logging for the CLI, beside the settings file."""

    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.setup_logging(level, settings_path=settings_path, force=force)
    _LOGGER.debug("Logging to %s (level=%s)", log_path, logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> EffectiveSettings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except Exception as exc:  # pragma: no cover - defensive path
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = EffectiveSettings()
    return settings


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `zedvoice` console script."""

    args = _parse_cli_args(argv)
    debug = bool(args.debug) or _env_flag("ZEDVOICE_DEBUG", default=False)
    settings_path = args.settings_path or os.environ.get("ZEDVOICE_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    configure_logging(debug, settings_path=settings_store.path)

    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    overrides_mapping = nest_dotted_keys(cli_overrides) if cli_overrides else None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if args.command == "observe":
        _run_observe(args, settings)
        return

    print("Nothing to do; pass --dump-settings or the 'observe' command.", file=sys.stderr)
    raise SystemExit(2)


def _run_observe(args: argparse.Namespace, settings: EffectiveSettings, *, stream: TextIO | None = None) -> None:
    session = FileSession(args.file, line=max(1, args.line) - 1, column=max(1, args.column) - 1)
    if session.current_file() is None:
        print(f"File not found: {args.file}", file=sys.stderr)
        raise SystemExit(2)

    sink = LoggingSink(logging.getLogger(logging_utils.SUGGESTION_LOGGER))
    handle = initialize(
        settings,
        session=session,
        sink=sink,
        scheduler_config=SchedulerConfig(auto_tick=bool(args.watch)),
    )
    try:
        if args.watch:
            _LOGGER.info("Watching %s every %ss (Ctrl+C to stop)", session.path, settings.interval_seconds)
            while handle.is_running:
                time.sleep(_WATCH_POLL_SECONDS)
            return
        timeout = settings.request_timeout_seconds + _TRIGGER_GRACE_SECONDS
        decision = trigger_now(handle, TriggerKind.parse(args.trigger), timeout=timeout)
        destination = stream or sys.stdout
        json.dump(decision.as_dict(), destination, indent=2)
        destination.write("\n")
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
    finally:
        shutdown(handle)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="zedvoice",
        add_help=True,
        description="Run the ZedVoice observer over a file or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.zedvoice/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings (repeatable, dotted keys for nested blocks).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command")
    observe = subparsers.add_parser("observe", help="Observe a file on disk.")
    observe.add_argument("file", metavar="FILE", help="File to observe.")
    observe.add_argument("--line", type=int, default=1, help="1-based cursor line (default: 1).")
    observe.add_argument("--column", type=int, default=1, help="1-based cursor column (default: 1).")
    observe.add_argument(
        "--trigger",
        default=TriggerKind.TIMER.value,
        choices=[kind.value for kind in TriggerKind],
        help="Trigger kind for the one-shot cycle.",
    )
    observe.add_argument(
        "--watch",
        action="store_true",
        help="Keep observing on the configured interval until interrupted.",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides
    known = setting_keys()
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in known:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(raw_value.strip())
    return overrides


def _coerce_value(raw_value: str) -> Any:
    """Decode JSON literals (numbers, booleans, null, lists); keep anything else as text."""

    if not raw_value:
        return raw_value
    try:
        return json.loads(raw_value)
    except json.JSONDecodeError:
        return raw_value


def _dump_settings(
    settings: EffectiveSettings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    metadata = {
        "path": str(store.path),
        "secret_backend": getattr(store.vault, "strategy", "unknown"),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": store.active_env_overrides(),
    }
    output = {"observerMode": settings_to_payload(settings, include_secrets=False), "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()

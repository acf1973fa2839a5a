"""Tests for the command line entry point."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from zedvoice import app
from zedvoice import session as session_module
from zedvoice.services import file_session
from zedvoice.services.settings import SettingsResolver, SettingsStore

from tests.helpers import FakeProvider, decision_json


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda *args, **kwargs: None)


def _dump(capsys: pytest.CaptureFixture[str], *argv: str) -> dict[str, Any]:
    app.main(["--dump-settings", *argv])
    return json.loads(capsys.readouterr().out)


def test_dump_settings_applies_overrides_and_redacts(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    output = _dump(
        capsys,
        "--settings-path",
        str(tmp_path / "settings.json"),
        "--set",
        "intervalSeconds=12",
        "--set",
        "provider.apiKey=sk-secretvalue",
        "--set",
        "proactiveTriggers=[\"onError\"]",
    )

    block = output["observerMode"]
    assert block["intervalSeconds"] == 12
    assert block["proactiveTriggers"] == ["onError"]
    assert block["provider"]["apiKey"] != "sk-secretvalue"
    assert block["provider"]["apiKey"].startswith("sk")
    assert output["meta"]["cli_overrides"] == ["intervalSeconds", "proactiveTriggers", "provider.apiKey"]
    assert output["meta"]["path"] == str(tmp_path / "settings.json")


def test_dump_settings_reads_persisted_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "settings.json"
    settings = SettingsResolver().resolve({"modelId": "gpt-file", "provider": {"apiKey": "sk-persisted-key"}})
    SettingsStore(path).save(settings)
    monkeypatch.setenv("ZEDVOICE_SETTINGS_PATH", str(path))
    monkeypatch.setenv("ZEDVOICE_MIN_CONFIDENCE", "0.8")

    output = _dump(capsys)

    assert output["observerMode"]["modelId"] == "gpt-file"
    assert output["observerMode"]["minConfidence"] == 0.8
    assert "sk-persisted-key" not in json.dumps(output)
    assert output["meta"]["secret_backend"] == "fernet"
    assert output["meta"]["environment_variables"] == ["ZEDVOICE_MIN_CONFIDENCE"]


@pytest.mark.parametrize("override", ["noEquals", "=3", "unknownSetting=1", "provider.colour=red"])
def test_invalid_override_exits_with_usage_error(
    tmp_path: Path, override: str, capsys: pytest.CaptureFixture[str]
) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["--settings-path", str(tmp_path / "s.json"), "--set", override, "--dump-settings"])

    assert excinfo.value.code == 2
    assert "Invalid --set override" in capsys.readouterr().err


def test_no_command_exits_with_usage_error(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["--settings-path", str(tmp_path / "s.json")])

    assert excinfo.value.code == 2


def test_observe_missing_file_exits(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["--settings-path", str(tmp_path / "s.json"), "observe", str(tmp_path / "absent.py")])

    assert excinfo.value.code == 2
    assert "File not found" in capsys.readouterr().err


def test_observe_prints_one_shot_decision(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    source = tmp_path / "loader.py"
    source.write_text("def load(key):\n    value = cache.get(key)\n    return value.strip()\n", encoding="utf-8")
    provider = FakeProvider([decision_json(reasoning="value may be None")])
    monkeypatch.setattr(file_session, "read_git_status", lambda *_args, **_kwargs: "")

    def _initialize(config, **kwargs):
        kwargs["provider"] = provider
        return session_module.initialize(config, **kwargs)

    monkeypatch.setattr(app, "initialize", _initialize)

    app.main(
        [
            "--settings-path",
            str(tmp_path / "s.json"),
            "observe",
            str(source),
            "--line",
            "3",
            "--trigger",
            "onError",
        ]
    )

    decision = json.loads(capsys.readouterr().out)
    assert decision == {
        "shouldSpeak": True,
        "confidence": 0.9,
        "suggestion": "add a null check",
        "reasoning": "value may be None",
    }
    assert provider.closed
    assert "> 3 | " in provider.calls[0]["prompt"]


def test_logging_is_configured_beside_the_settings_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    seen: list[dict[str, Any]] = []
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, **kwargs: seen.append(kwargs))

    _dump(capsys, "--settings-path", str(tmp_path / "profile" / "settings.json"))

    assert seen == [{"settings_path": tmp_path / "profile" / "settings.json"}]

"""Tests for settings resolution and persistence."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

import pytest

from zedvoice.core.models import TriggerKind
from zedvoice.services.settings import (
    ContextLimits,
    EffectiveSettings,
    ProviderSettings,
    SecretVault,
    SettingsResolver,
    SettingsStore,
    nest_dotted_keys,
    redact_secret,
    setting_keys,
    settings_to_payload,
)


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


def test_resolve_without_layers_returns_defaults() -> None:
    settings = SettingsResolver().resolve()

    assert settings == EffectiveSettings()
    assert settings.interval_seconds == 30
    assert settings.min_confidence == 0.7
    assert settings.proactive_triggers == frozenset({TriggerKind.ON_ERROR, TriggerKind.ON_GIT_CONFLICT})
    assert settings.effective_cache_ttl == 90.0


def test_only_min_confidence_override_keeps_every_other_field() -> None:
    defaults = EffectiveSettings()

    settings = SettingsResolver().resolve({"minConfidence": 0.42})

    assert settings.min_confidence == 0.42
    assert replace(settings, min_confidence=defaults.min_confidence) == defaults


def test_later_layers_win_and_nested_blocks_merge_per_field() -> None:
    settings = SettingsResolver().resolve(
        {"intervalSeconds": 10, "contextLimits": {"linesBefore": 5, "includeImports": False}},
        {"observerMode": {"intervalSeconds": 20, "contextLimits": {"linesAfter": 3}}},
        {"provider": {"baseUrl": "http://localhost:8080/v1"}},
    )

    assert settings.interval_seconds == 20
    assert settings.context_limits == ContextLimits(
        lines_before=5,
        lines_after=3,
        include_imports=False,
        include_diagnostics=True,
        max_chars=4_000,
    )
    assert settings.provider == replace(ProviderSettings(), base_url="http://localhost:8080/v1")


def test_unknown_fields_are_ignored() -> None:
    settings = SettingsResolver().resolve({"intervalSeconds": 12, "mystery": True, "contextLimits": {"nope": 1}})

    assert settings.interval_seconds == 12
    assert settings.context_limits == ContextLimits()


def test_wrong_types_are_ignored_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="zedvoice.services.settings")

    settings = SettingsResolver().resolve(
        {"intervalSeconds": "soon", "voiceEnabled": 3, "minConfidence": True, "modelId": "gpt-x"}
    )

    assert settings.interval_seconds == 30
    assert settings.voice_enabled is False
    assert settings.min_confidence == 0.7
    assert settings.model_id == "gpt-x"
    assert "intervalSeconds" in caplog.text


@pytest.mark.parametrize("raw, expected", [(1.5, 1.0), (-0.2, 0.0), (0.55, 0.55)])
def test_min_confidence_is_clamped(raw: float, expected: float) -> None:
    assert SettingsResolver().resolve({"minConfidence": raw}).min_confidence == expected


def test_out_of_range_numbers_are_ignored_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="zedvoice.services.settings")

    settings = SettingsResolver().resolve(
        {"minConfidence": 10**400, "intervalSeconds": 10**400, "contextLimits": {"maxChars": "9" * 5000}}
    )

    assert settings.min_confidence == 0.7
    assert settings.interval_seconds == 30
    assert settings.context_limits == EffectiveSettings().context_limits
    assert "minConfidence is out of range" in caplog.text
    assert "intervalSeconds is out of range" in caplog.text


def test_non_positive_interval_is_floored_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="zedvoice.services.settings")

    settings = SettingsResolver().resolve({"intervalSeconds": 0})

    assert settings.interval_seconds == 1
    assert "intervalSeconds=0" in caplog.text


def test_negative_line_counts_are_floored() -> None:
    settings = SettingsResolver().resolve({"contextLimits": {"linesBefore": -4, "linesAfter": -1}})

    assert settings.context_limits.lines_before == 0
    assert settings.context_limits.lines_after == 0


def test_proactive_triggers_accept_wire_values_and_skip_unknown() -> None:
    settings = SettingsResolver().resolve({"proactiveTriggers": ["onWarning", "ON_ERROR", "timer", "bogus"]})

    assert settings.proactive_triggers == frozenset({TriggerKind.ON_WARNING, TriggerKind.ON_ERROR})


def test_string_values_from_environment_are_coerced() -> None:
    settings = SettingsResolver().resolve(
        {"intervalSeconds": "15", "voiceEnabled": "yes", "minConfidence": "0.8", "cacheTtlSeconds": None}
    )

    assert settings.interval_seconds == 15
    assert settings.voice_enabled is True
    assert settings.min_confidence == 0.8
    assert settings.effective_cache_ttl == 45.0


def test_unknown_provider_kind_falls_back_to_openai() -> None:
    settings = SettingsResolver().resolve({"provider": {"kind": "carrier-pigeon", "maxAttempts": 0}})

    assert settings.provider.kind == "openai"
    assert settings.provider.max_attempts == 1


def test_payload_round_trip_reproduces_settings() -> None:
    original = SettingsResolver().resolve(
        {
            "intervalSeconds": 12,
            "voiceEnabled": True,
            "proactiveTriggers": ["onWarning"],
            "contextLimits": {"maxChars": 1200},
            "provider": {"apiKey": "sk-test", "defaultHeaders": {"X-Team": "core"}},
            "cacheTtlSeconds": 5,
        }
    )

    rebuilt = SettingsResolver().resolve(settings_to_payload(original))

    assert rebuilt == original


def test_nest_dotted_keys_builds_nested_blocks() -> None:
    nested = nest_dotted_keys({"modelId": "m", "contextLimits.linesBefore": 3, "provider.baseUrl": "u"})

    assert nested == {"modelId": "m", "contextLimits": {"linesBefore": 3}, "provider": {"baseUrl": "u"}}
    assert "contextLimits.linesBefore" in setting_keys()
    assert "modelId" in setting_keys()


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    assert _store(tmp_path).load() == EffectiveSettings()


def test_save_and_load_roundtrip_encrypts_api_key(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = SettingsResolver().resolve(
        {"modelId": "gpt-4.1-mini", "intervalSeconds": 45, "provider": {"apiKey": "super-secret"}}
    )

    path = store.save(original)
    raw = json.loads(path.read_text(encoding="utf-8"))
    reloaded = _store(tmp_path).load()

    assert reloaded == original
    assert raw["version"] == 1
    provider_block = raw["observerMode"]["provider"]
    assert "apiKey" not in provider_block
    assert provider_block["apiKeyCiphertext"].startswith("fernet:")
    assert "super-secret" not in path.read_text(encoding="utf-8")


def test_save_preserves_unrelated_top_level_keys(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"editor": {"theme": "dark"}}), encoding="utf-8")

    _store(tmp_path).save(EffectiveSettings())

    assert json.loads(path.read_text(encoding="utf-8"))["editor"] == {"theme": "dark"}


def test_invalid_json_falls_back_to_defaults(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="zedvoice.services.settings")
    (tmp_path / "settings.json").write_text("{not json", encoding="utf-8")

    assert _store(tmp_path).load() == EffectiveSettings()
    assert "not valid JSON" in caplog.text


def test_undecodable_numbers_fall_back_to_defaults(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="zedvoice.services.settings")
    payload = '{"observerMode": {"intervalSeconds": 1' + "0" * 5000 + "}}"
    (tmp_path / "settings.json").write_text(payload, encoding="utf-8")

    assert _store(tmp_path).load() == EffectiveSettings()
    assert "could not be decoded" in caplog.text


def test_env_overrides_take_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(SettingsResolver().resolve({"modelId": "from-file", "provider": {"apiKey": "file-key"}}))
    monkeypatch.setenv("ZEDVOICE_MODEL", "from-env")
    monkeypatch.setenv("ZEDVOICE_INTERVAL", "7")
    monkeypatch.setenv("ZEDVOICE_API_KEY", "env-key")

    settings = _store(tmp_path).load(overrides={"modelId": "from-cli", "intervalSeconds": 99})

    assert settings.model_id == "from-env"
    assert settings.interval_seconds == 7
    assert settings.provider.api_key == "env-key"
    assert store.active_env_overrides() == ["ZEDVOICE_API_KEY", "ZEDVOICE_INTERVAL", "ZEDVOICE_MODEL"]


def test_cli_overrides_beat_the_file(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(SettingsResolver().resolve({"intervalSeconds": 20}))

    settings = store.load(overrides={"intervalSeconds": 5})

    assert settings.interval_seconds == 5


def test_vault_rejects_unknown_prefix(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "key")
    token = vault.encrypt("hello")

    assert vault.decrypt(token) == "hello"
    with pytest.raises(ValueError):
        vault.decrypt("rot13:uryyb")


def test_redact_secret_masks_the_middle() -> None:
    assert redact_secret("") == ""
    assert redact_secret("abc") == "***"
    assert redact_secret("sk-123456") == "sk*****56"

"""Observer settings snapshots, layered resolution and persistence helpers."""

from __future__ import annotations

import contextlib
import json
import logging
import math
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping

from cryptography.fernet import Fernet, InvalidToken

from ..core.models import PRIORITY_TRIGGERS, TriggerKind, clamp_unit
from ..core.errors import ConfigError

__all__ = [
    "ContextLimits",
    "ProviderSettings",
    "EffectiveSettings",
    "SettingsResolver",
    "SettingsStore",
    "SecretVault",
    "settings_to_payload",
    "nest_dotted_keys",
    "setting_keys",
    "redact_secret",
    "CONFIG_ROOT_KEY",
]

LOGGER = logging.getLogger(__name__)
CONFIG_ROOT_KEY = "observerMode"
_SETTINGS_DIR = Path.home() / ".zedvoice"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_MIN_INTERVAL_SECONDS = 1
_MIN_TIMEOUT_SECONDS = 0.1
_MAX_INT_SETTING = 10**9
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_API_KEY_FIELD = "apiKeyCiphertext"
_ENV_OVERRIDES: Mapping[str, str] = {
    "ZEDVOICE_MODEL": "modelId",
    "ZEDVOICE_INTERVAL": "intervalSeconds",
    "ZEDVOICE_MIN_CONFIDENCE": "minConfidence",
    "ZEDVOICE_VOICE": "voiceEnabled",
    "ZEDVOICE_ENABLED": "enabled",
}
_PROVIDER_ENV_OVERRIDES: Mapping[str, str] = {
    "ZEDVOICE_BASE_URL": "baseUrl",
    "ZEDVOICE_API_KEY": "apiKey",
}


@dataclass(frozen=True, slots=True)
class ContextLimits:
    """Bounds applied by the context aggregator."""

    lines_before: int = 40
    lines_after: int = 20
    include_imports: bool = True
    include_diagnostics: bool = True
    max_chars: int = 4_000


@dataclass(frozen=True, slots=True)
class ProviderSettings:
    """Provider-selection block naming the model endpoint."""

    kind: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    organization: str | None = None
    max_attempts: int = 1
    temperature: float = 0.2
    default_headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EffectiveSettings:
    """Immutable configuration snapshot shared read-only by every component."""

    enabled: bool = True
    interval_seconds: int = 30
    model_id: str = "gpt-4o-mini"
    voice_enabled: bool = False
    min_confidence: float = 0.7
    proactive_triggers: frozenset[TriggerKind] = frozenset(
        {TriggerKind.ON_ERROR, TriggerKind.ON_GIT_CONFLICT}
    )
    context_limits: ContextLimits = field(default_factory=ContextLimits)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    cache_capacity: int = 32
    cache_ttl_seconds: float | None = None
    suggestion_cooldown_seconds: float = 300.0
    request_timeout_seconds: float = 15.0
    suppress_stale: bool = False

    @property
    def effective_cache_ttl(self) -> float:
        if self.cache_ttl_seconds is not None:
            return self.cache_ttl_seconds
        return float(self.interval_seconds * 3)

    def trigger_enabled(self, trigger: TriggerKind) -> bool:
        return trigger in self.proactive_triggers


# ----------------------------------------------------------------------
# Field coercion
# ----------------------------------------------------------------------
def _coerce_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}", field=name)


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}", field=name)
    number: int | None = None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and math.isfinite(value):
        number = int(value)
    elif isinstance(value, str):
        with contextlib.suppress(ValueError):
            number = int(value.strip(), 10)
    if number is None:
        raise ConfigError(f"{name} must be an integer, got {value!r}", field=name)
    if abs(number) > _MAX_INT_SETTING:
        raise ConfigError(f"{name} is out of range", field=name)
    return number


def _coerce_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}", field=name)
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError as exc:
            raise ConfigError(f"{name} is out of range", field=name) from exc
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number, got {value!r}", field=name) from exc
    else:
        raise ConfigError(f"{name} must be a number, got {value!r}", field=name)
    if math.isnan(number):
        raise ConfigError(f"{name} must not be NaN", field=name)
    return number


def _coerce_optional_float(value: Any, name: str) -> float | None:
    if value is None:
        return None
    return _coerce_float(value, name)


def _coerce_str(value: Any, name: str) -> str:
    if isinstance(value, str):
        return value.strip()
    raise ConfigError(f"{name} must be a string, got {value!r}", field=name)


def _coerce_optional_str(value: Any, name: str) -> str | None:
    if value is None:
        return None
    return _coerce_str(value, name) or None


def _coerce_headers(value: Any, name: str) -> Mapping[str, str]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{name} must be an object", field=name)
    return {str(key): str(item) for key, item in value.items()}


def _coerce_triggers(value: Any, name: str) -> frozenset[TriggerKind]:
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise ConfigError(f"{name} must be a list of trigger names", field=name)
    triggers: set[TriggerKind] = set()
    for item in value:
        try:
            trigger = TriggerKind.parse(item)
        except ValueError:
            LOGGER.warning("Ignoring unknown proactive trigger %r", item)
            continue
        if trigger not in PRIORITY_TRIGGERS:
            LOGGER.warning("Trigger %r cannot be proactive; ignoring it", item)
            continue
        triggers.add(trigger)
    return frozenset(triggers)


Coercer = Callable[[Any, str], Any]

# camelCase key -> (attribute, coercer)
_TOP_LEVEL_FIELDS: Mapping[str, tuple[str, Coercer]] = {
    "enabled": ("enabled", _coerce_bool),
    "intervalSeconds": ("interval_seconds", _coerce_int),
    "modelId": ("model_id", _coerce_str),
    "voiceEnabled": ("voice_enabled", _coerce_bool),
    "minConfidence": ("min_confidence", _coerce_float),
    "proactiveTriggers": ("proactive_triggers", _coerce_triggers),
    "cacheCapacity": ("cache_capacity", _coerce_int),
    "cacheTtlSeconds": ("cache_ttl_seconds", _coerce_optional_float),
    "suggestionCooldownSeconds": ("suggestion_cooldown_seconds", _coerce_float),
    "requestTimeoutSeconds": ("request_timeout_seconds", _coerce_float),
    "suppressStale": ("suppress_stale", _coerce_bool),
}
_CONTEXT_FIELDS: Mapping[str, tuple[str, Coercer]] = {
    "linesBefore": ("lines_before", _coerce_int),
    "linesAfter": ("lines_after", _coerce_int),
    "includeImports": ("include_imports", _coerce_bool),
    "includeDiagnostics": ("include_diagnostics", _coerce_bool),
    "maxChars": ("max_chars", _coerce_int),
}
_PROVIDER_FIELDS: Mapping[str, tuple[str, Coercer]] = {
    "kind": ("kind", _coerce_str),
    "baseUrl": ("base_url", _coerce_str),
    "apiKey": ("api_key", _coerce_str),
    "organization": ("organization", _coerce_optional_str),
    "maxAttempts": ("max_attempts", _coerce_int),
    "temperature": ("temperature", _coerce_float),
    "defaultHeaders": ("default_headers", _coerce_headers),
}
_NESTED_BLOCKS: Mapping[str, Mapping[str, tuple[str, Coercer]]] = {
    "contextLimits": _CONTEXT_FIELDS,
    "provider": _PROVIDER_FIELDS,
}
_SUPPORTED_PROVIDERS = {"openai"}


class SettingsResolver:
    """Merges defaults with ordered override layers into one snapshot.

    Layers use the persisted camelCase vocabulary. Later layers win per field;
    the ``contextLimits`` and ``provider`` blocks merge per sub-field rather
    than being replaced wholesale. Malformed values are dropped with a warning
    so that resolution never fails the host session.
    """

    def __init__(self, defaults: EffectiveSettings | None = None) -> None:
        self._defaults = defaults or EffectiveSettings()

    @property
    def defaults(self) -> EffectiveSettings:
        return self._defaults

    def resolve(self, *layers: Mapping[str, Any] | None) -> EffectiveSettings:
        top: Dict[str, Any] = {}
        nested: Dict[str, Dict[str, Any]] = {"contextLimits": {}, "provider": {}}
        for index, layer in enumerate(layers):
            if layer is None:
                continue
            if not isinstance(layer, Mapping):
                LOGGER.warning("Ignoring settings layer %d: expected a mapping, got %s", index, type(layer).__name__)
                continue
            payload = layer.get(CONFIG_ROOT_KEY, layer)
            if not isinstance(payload, Mapping):
                LOGGER.warning("Ignoring settings layer %d: %s is not an object", index, CONFIG_ROOT_KEY)
                continue
            self._merge_layer(payload, top, nested)

        context_limits = self._build_block(ContextLimits, self._defaults.context_limits, nested["contextLimits"])
        provider = self._build_block(ProviderSettings, self._defaults.provider, nested["provider"])
        settings = replace(self._defaults, context_limits=context_limits, provider=provider, **top)
        return self._normalize(settings)

    def _merge_layer(
        self,
        payload: Mapping[str, Any],
        top: MutableMapping[str, Any],
        nested: MutableMapping[str, Dict[str, Any]],
    ) -> None:
        for key, value in payload.items():
            block_fields = _NESTED_BLOCKS.get(key)
            if block_fields is not None:
                if not isinstance(value, Mapping):
                    LOGGER.warning("Ignoring %s: expected an object, got %r", key, value)
                    continue
                for sub_key, sub_value in value.items():
                    spec = block_fields.get(sub_key)
                    if spec is None:
                        LOGGER.debug("Ignoring unknown setting %s.%s", key, sub_key)
                        continue
                    attr, coercer = spec
                    coerced = self._coerce(coercer, sub_value, f"{key}.{sub_key}")
                    if coerced is not _INVALID:
                        nested[key][attr] = coerced
                continue
            spec = _TOP_LEVEL_FIELDS.get(key)
            if spec is None:
                LOGGER.debug("Ignoring unknown setting %s", key)
                continue
            attr, coercer = spec
            coerced = self._coerce(coercer, value, key)
            if coerced is not _INVALID:
                top[attr] = coerced

    @staticmethod
    def _coerce(coercer: Coercer, value: Any, name: str) -> Any:
        try:
            return coercer(value, name)
        except ConfigError as exc:
            LOGGER.warning("Ignoring invalid setting: %s", exc.message)
            return _INVALID

    @staticmethod
    def _build_block(block_type: type, base: Any, updates: Mapping[str, Any]) -> Any:
        if not updates:
            return base
        allowed = {item.name for item in fields(block_type)}
        return replace(base, **{key: value for key, value in updates.items() if key in allowed})

    def _normalize(self, settings: EffectiveSettings) -> EffectiveSettings:
        updates: Dict[str, Any] = {}
        if settings.interval_seconds < _MIN_INTERVAL_SECONDS:
            LOGGER.warning(
                "intervalSeconds=%s is not positive; using %s",
                settings.interval_seconds,
                _MIN_INTERVAL_SECONDS,
            )
            updates["interval_seconds"] = _MIN_INTERVAL_SECONDS
        confidence = clamp_unit(settings.min_confidence)
        if confidence != settings.min_confidence:
            LOGGER.warning("minConfidence=%s is outside [0, 1]; clamped to %s", settings.min_confidence, confidence)
            updates["min_confidence"] = confidence
        if settings.cache_capacity < 1:
            LOGGER.warning("cacheCapacity=%s is too small; using 1", settings.cache_capacity)
            updates["cache_capacity"] = 1
        ttl = settings.cache_ttl_seconds
        if ttl is not None and ttl <= 0:
            LOGGER.warning("cacheTtlSeconds=%s is not positive; deriving it from the interval", ttl)
            updates["cache_ttl_seconds"] = None
        if settings.suggestion_cooldown_seconds < 0:
            LOGGER.warning("suggestionCooldownSeconds is negative; using 0")
            updates["suggestion_cooldown_seconds"] = 0.0
        if settings.request_timeout_seconds < _MIN_TIMEOUT_SECONDS:
            LOGGER.warning(
                "requestTimeoutSeconds=%s is too small; using %s",
                settings.request_timeout_seconds,
                _MIN_TIMEOUT_SECONDS,
            )
            updates["request_timeout_seconds"] = _MIN_TIMEOUT_SECONDS

        limits = settings.context_limits
        limit_updates: Dict[str, Any] = {}
        for name in ("lines_before", "lines_after"):
            value = getattr(limits, name)
            if value < 0:
                LOGGER.warning("contextLimits.%s=%s is negative; using 0", name, value)
                limit_updates[name] = 0
        if limits.max_chars < 1:
            LOGGER.warning("contextLimits.maxChars=%s is not positive; using the default", limits.max_chars)
            limit_updates["max_chars"] = ContextLimits().max_chars
        if limit_updates:
            updates["context_limits"] = replace(limits, **limit_updates)

        provider = settings.provider
        provider_updates: Dict[str, Any] = {}
        kind = provider.kind.lower()
        if kind not in _SUPPORTED_PROVIDERS:
            LOGGER.warning("Unknown provider kind %r; falling back to 'openai'", provider.kind)
            kind = "openai"
        if kind != provider.kind:
            provider_updates["kind"] = kind
        if provider.max_attempts < 1:
            LOGGER.warning("provider.maxAttempts=%s is too small; using 1", provider.max_attempts)
            provider_updates["max_attempts"] = 1
        temperature = min(2.0, max(0.0, provider.temperature))
        if temperature != provider.temperature:
            LOGGER.warning("provider.temperature=%s is outside [0, 2]; clamped", provider.temperature)
            provider_updates["temperature"] = temperature
        if provider_updates:
            updates["provider"] = replace(provider, **provider_updates)

        return replace(settings, **updates) if updates else settings


_INVALID = object()


def settings_to_payload(settings: EffectiveSettings, *, include_secrets: bool = True) -> Dict[str, Any]:
    """Serialize *settings* into the persisted camelCase ``observerMode`` block."""

    payload: Dict[str, Any] = {}
    for key, (attr, _) in _TOP_LEVEL_FIELDS.items():
        value = getattr(settings, attr)
        if attr == "proactive_triggers":
            value = sorted(trigger.value for trigger in value)
        payload[key] = value
    payload["contextLimits"] = {
        key: getattr(settings.context_limits, attr) for key, (attr, _) in _CONTEXT_FIELDS.items()
    }
    provider: Dict[str, Any] = {}
    for key, (attr, _) in _PROVIDER_FIELDS.items():
        value = getattr(settings.provider, attr)
        if attr == "default_headers":
            value = dict(value)
        if attr == "api_key" and not include_secrets:
            value = redact_secret(value)
        provider[key] = value
    payload["provider"] = provider
    return payload


def setting_keys() -> frozenset[str]:
    """Every persisted key, with nested ones in dotted form."""

    keys = set(_TOP_LEVEL_FIELDS)
    for block, block_fields in _NESTED_BLOCKS.items():
        keys.update(f"{block}.{name}" for name in block_fields)
    return frozenset(keys)


def nest_dotted_keys(flat: Mapping[str, Any]) -> Dict[str, Any]:
    """Expand ``{"contextLimits.linesBefore": 10}`` into nested mappings."""

    nested: Dict[str, Any] = {}
    for key, value in flat.items():
        head, _, tail = key.partition(".")
        if not tail:
            nested[head] = value
            continue
        block = nested.setdefault(head, {})
        if isinstance(block, dict):
            block[tail] = value
    return nested


class SecretVault:
    """Encrypts the provider API key with a Fernet key stored beside the settings."""

    name = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def strategy(self) -> str:
        return self.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{self.name}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload:
            prefix, payload = self.name, token
        if prefix != self.name:
            raise ValueError(f"Unknown secret token prefix {prefix!r}")
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`EffectiveSettings`."""

    def __init__(
        self,
        path: Path | None = None,
        *,
        vault: SecretVault | None = None,
        resolver: SettingsResolver | None = None,
    ) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))
        self._resolver = resolver or SettingsResolver()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> EffectiveSettings:
        """Resolve defaults, the persisted block, *overrides* and environment variables."""

        payload = self._read_payload()
        persisted = payload.get(CONFIG_ROOT_KEY) if payload else None
        if persisted is not None and not isinstance(persisted, Mapping):
            LOGGER.warning("Settings file %s has a malformed %s block", self._path, CONFIG_ROOT_KEY)
            persisted = None
        file_layer = self._decrypt_layer(persisted) if persisted else None
        return self._resolver.resolve(file_layer, overrides, self._env_layer())

    def save(self, settings: EffectiveSettings) -> Path:
        """Persist settings with an atomic write, keeping unrelated top-level keys."""

        document = self._read_payload()
        block = settings_to_payload(settings)
        provider = dict(block["provider"])
        api_key = provider.pop("apiKey", "") or ""
        if api_key:
            provider[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        block["provider"] = provider
        document[CONFIG_ROOT_KEY] = block
        document["version"] = _SETTINGS_VERSION
        body = json.dumps(document, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def active_env_overrides(self) -> list[str]:
        names = list(_ENV_OVERRIDES) + list(_PROVIDER_ENV_OVERRIDES)
        return sorted(name for name in names if name in os.environ)

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        except ValueError as exc:
            LOGGER.warning("Settings file %s could not be decoded: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            LOGGER.warning("Settings file %s does not contain a JSON object", self._path)
            return {}
        return data

    def _decrypt_layer(self, persisted: Mapping[str, Any]) -> Dict[str, Any]:
        layer = dict(persisted)
        provider = layer.get("provider")
        if not isinstance(provider, Mapping):
            return layer
        provider = dict(provider)
        ciphertext = provider.pop(_API_KEY_FIELD, None)
        if ciphertext and not provider.get("apiKey"):
            try:
                provider["apiKey"] = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt provider API key: %s", exc)
        layer["provider"] = provider
        return layer

    @staticmethod
    def _env_layer() -> Dict[str, Any] | None:
        layer: Dict[str, Any] = {}
        for env_name, key in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                layer[key] = value
        provider: Dict[str, Any] = {}
        for env_name, key in _PROVIDER_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                provider[key] = value
        if provider:
            layer["provider"] = provider
        if layer:
            LOGGER.debug("Applying environment settings overrides: %s", sorted(layer))
        return layer or None


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"

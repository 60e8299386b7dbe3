"""Settings dataclass and persistence helpers.

Precedence, lowest first: dataclass defaults, the JSON settings file, the
``overrides`` mapping passed to :meth:`SettingsStore.load`, and finally
``QUERYPILOT_*`` environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Mapping

from ..ai.client import ClientSettings
from ..ai.orchestration.engine import EngineConfig

__all__ = ["Settings", "SettingsStore", "redact_secret"]

LOGGER = logging.getLogger(__name__)

SETTINGS_VERSION = 1
DEFAULT_SETTINGS_PATH = Path.home() / ".querypilot" / "settings.json"

# Never written to disk; supply it through the environment or overrides.
_TRANSIENT_FIELDS = frozenset({"api_key"})


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on", "debug"}


def _as_int(raw: str) -> int:
    return int(raw, 10)


_UNSET_WORDS = frozenset({"none", "null", "unbounded", "unlimited"})


class _Unset:
    """Marker for an environment value that clears an optional field."""


_UNSET = _Unset()


def _optional(parse: Callable[[str], Any]) -> Callable[[str], Any]:
    def _parse(raw: str) -> Any:
        return _UNSET if raw.strip().lower() in _UNSET_WORDS else parse(raw)

    _parse.__name__ = f"optional {parse.__name__}"
    return _parse


_ENV_FIELDS: tuple[tuple[str, str, Callable[[str], Any]], ...] = (
    ("QUERYPILOT_API_KEY", "api_key", str),
    ("QUERYPILOT_BASE_URL", "base_url", str),
    ("QUERYPILOT_MODEL", "model", str),
    ("QUERYPILOT_ORGANIZATION", "organization", str),
    ("QUERYPILOT_TRIGGER_TOKEN", "trigger_token", str),
    ("QUERYPILOT_CONVERSATION_STORE", "conversation_store_path", str),
    ("QUERYPILOT_QUERY_MAPPING", "query_mapping_path", str),
    ("QUERYPILOT_RESPONSE_SCHEMAS", "response_schema_path", str),
    ("QUERYPILOT_DEFAULT_TRIGGER_PAYLOAD", "default_trigger_payload_path", str),
    ("QUERYPILOT_LOG_LEVEL", "log_level", str),
    ("QUERYPILOT_DEBUG_LOGGING", "debug_logging", _as_bool),
    ("QUERYPILOT_DEBUG_EVENT_LOGGING", "debug_event_logging", _as_bool),
    ("QUERYPILOT_PARALLEL_TOOLS", "parallel_tools", _as_bool),
    ("QUERYPILOT_REQUEST_TIMEOUT", "request_timeout", float),
    ("QUERYPILOT_TEMPERATURE", "temperature", float),
    ("QUERYPILOT_RATE_LIMIT_FLOOR_MS", "rate_limit_floor_ms", float),
    ("QUERYPILOT_RATE_LIMIT_MAX_WAIT_MS", "rate_limit_max_wait_ms", _optional(float)),
    ("QUERYPILOT_TOOL_TIMEOUT", "tool_timeout_seconds", _optional(float)),
    ("QUERYPILOT_MAX_RETRIES", "max_retries", _as_int),
    ("QUERYPILOT_MAX_TOOL_ROUNDS", "max_tool_rounds", _optional(_as_int)),
    ("QUERYPILOT_MAX_TEMPLATE_CORRECTIONS", "max_template_corrections", _as_int),
    ("QUERYPILOT_MAX_TRIGGER_COMBINATIONS", "max_trigger_combinations", _as_int),
)


@dataclass(slots=True)
class Settings:
    """Runtime configuration persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: dict[str, str] = field(default_factory=dict)
    rate_limit_floor_ms: float = 60_000.0
    rate_limit_max_wait_ms: float | None = None
    max_tool_rounds: int | None = 8
    parallel_tools: bool = False
    tool_timeout_seconds: float | None = None
    max_template_corrections: int = 1
    trigger_token: str = "MOODBOARD_RA"
    max_trigger_combinations: int = 6
    trend_anchor_heading: str = "## Trend Matrix"
    default_trigger_payload_path: str | None = None
    conversation_store_path: str | None = None
    query_mapping_path: str | None = None
    response_schema_path: str | None = None
    log_level: str = "INFO"
    debug_logging: bool = False
    debug_event_logging: bool = False

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )

    def engine_config(self, *, event_log_dir: str | None = None) -> EngineConfig:
        return EngineConfig(
            max_rounds=self.max_tool_rounds,
            parallel_tools=self.parallel_tools,
            event_logging=self.debug_event_logging,
            event_log_dir=event_log_dir,
        )


def _field_names() -> set[str]:
    return {item.name for item in fields(Settings)}


class SettingsStore:
    """Reads and writes :class:`Settings` as a versioned JSON document."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        payload = self._read_payload()
        settings = self._from_payload(payload) if payload else Settings()
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Write ``settings`` atomically; the API key is left out."""

        document = {key: value for key, value in asdict(settings).items() if key not in _TRANSIENT_FIELDS}
        document["version"] = SETTINGS_VERSION
        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _from_payload(self, payload: Mapping[str, Any]) -> Settings:
        try:
            settings = Settings(**_filter_fields(payload))
        except TypeError as exc:
            LOGGER.warning("Ignoring malformed settings in %s: %s", self._path, exc)
            return Settings()
        version = payload.get("version")
        if version != SETTINGS_VERSION:
            LOGGER.info("Upgrading settings file %s from version %s", self._path, version)
            self.save(settings)
        return settings

    def _read_payload(self) -> dict[str, Any]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if isinstance(data, dict):
            return data
        LOGGER.warning("Settings file %s does not contain a JSON object", self._path)
        return {}

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        known = _field_names()
        changes = {key: value for key, value in overrides.items() if key in known and value is not None}
        extra_headers = changes.get("default_headers")
        if isinstance(extra_headers, Mapping):
            changes["default_headers"] = {**settings.default_headers, **extra_headers}
        if not changes:
            return settings
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(changes))
        return replace(settings, **changes)

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        changes: dict[str, Any] = {}
        for env_name, field_name, parse in _ENV_FIELDS:
            raw = os.environ.get(env_name)
            if raw is None:
                continue
            try:
                changes[field_name] = parse(raw)
            except ValueError:
                LOGGER.warning("Ignoring %s=%r: expected %s", env_name, raw, getattr(parse, "__name__", "value"))
        cleared = [name for name, value in changes.items() if value is _UNSET]
        if cleared:
            LOGGER.debug("Clearing settings from environment: %s", sorted(cleared))
            settings = replace(settings, **{name: None for name in cleared})
        changes = {name: value for name, value in changes.items() if value is not _UNSET}
        return self._apply_overrides(settings, changes, source="environment") if changes else settings


def redact_secret(value: str | None) -> str:
    """Mask all but the last four characters of a secret for logging."""

    if not value:
        return ""
    visible = value[-4:] if len(value) > 4 else ""
    return "*" * (len(value) - len(visible)) + visible


def _filter_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    allowed = _field_names() - _TRANSIENT_FIELDS
    return {key: value for key, value in payload.items() if key in allowed}

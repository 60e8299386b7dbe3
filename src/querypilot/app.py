"""Application bootstrap helpers: settings, logging and engine wiring."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from .ai.client import AIClient, OpenAIChatEndpoint
from .ai.orchestration.engine import ArtifactRenderer, ConversationEngine
from .ai.orchestration.rate_limit import RateLimitGuard
from .ai.orchestration.routing import KeywordQueryRouter, ResponseSchemaCatalog
from .ai.orchestration.template_validator import TemplateValidator
from .ai.orchestration.tool_dispatcher import ToolCallDispatcher, ToolHandler
from .ai.orchestration.trigger import JsonFilePayloadSource, TriggerAdapter
from .ai.orchestration.types import ModelEndpoint
from .services.conversation_store import HistoryStore, InMemoryHistoryStore, JsonHistoryStore
from .services.settings import Settings, SettingsStore, redact_secret
from .services.telemetry import TelemetrySink
from .utils import logging as logging_utils

__all__ = ["configure_logging", "load_settings", "build_engine"]

_LOGGER = logging.getLogger(__name__)


def configure_logging(settings: Settings | None = None, *, force: bool = False) -> Path:
    """Configure structured logging for the application."""

    level: int | str = logging.INFO
    if settings is not None:
        level = logging.DEBUG if settings.debug_logging else settings.log_level
    log_path = logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s, path=%s)", level, log_path)
    return log_path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_engine(
    settings: Settings,
    tools: Mapping[str, ToolHandler],
    *,
    endpoint: ModelEndpoint | None = None,
    store: HistoryStore | None = None,
    renderer: ArtifactRenderer | None = None,
    telemetry_sink: TelemetrySink | None = None,
    event_log_dir: str | None = None,
) -> ConversationEngine:
    """Wire a :class:`ConversationEngine` from ``settings``.

    ``tools`` maps tool names to their host-supplied implementations. When no
    ``endpoint`` is given an :class:`OpenAIChatEndpoint` is built from the
    client settings, and routing/schema/trigger-payload files are only loaded
    when their paths are configured.
    """

    if endpoint is None:
        _LOGGER.info(
            "Connecting to %s with model %s (key %s)",
            settings.base_url,
            settings.model,
            redact_secret(settings.api_key) or "<unset>",
        )
        endpoint = OpenAIChatEndpoint(AIClient(settings.client_settings()), temperature=settings.temperature)

    if store is None:
        store = JsonHistoryStore(settings.conversation_store_path) if settings.conversation_store_path else InMemoryHistoryStore()

    schemas = ResponseSchemaCatalog.from_file(settings.response_schema_path) if settings.response_schema_path else None
    router = (
        KeywordQueryRouter.from_file(settings.query_mapping_path, schemas=schemas)
        if settings.query_mapping_path
        else None
    )
    default_payload = (
        JsonFilePayloadSource(settings.default_trigger_payload_path)
        if settings.default_trigger_payload_path
        else None
    )
    trigger = TriggerAdapter(
        trigger_token=settings.trigger_token,
        default_payload=default_payload,
        max_combinations=settings.max_trigger_combinations,
        anchor_heading=settings.trend_anchor_heading,
    )

    return ConversationEngine(
        endpoint,
        ToolCallDispatcher(tools, timeout_seconds=settings.tool_timeout_seconds),
        store,
        router=router,
        trigger=trigger,
        validator=TemplateValidator(max_corrections=settings.max_template_corrections),
        guard=RateLimitGuard(floor_ms=settings.rate_limit_floor_ms, max_wait_ms=settings.rate_limit_max_wait_ms),
        renderer=renderer,
        config=settings.engine_config(event_log_dir=event_log_dir),
        telemetry_sink=telemetry_sink,
    )

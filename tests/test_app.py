"""Tests covering the application bootstrap helpers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from querypilot import app
from querypilot.ai.orchestration.engine import ConversationEngine
from querypilot.services.conversation_store import InMemoryHistoryStore, JsonHistoryStore
from querypilot.services.settings import Settings, SettingsStore

from tests.helpers import ScriptedEndpoint, calls, final


class _StubAIClient:
    def __init__(self, settings: Any):
        self.settings = settings


@pytest.fixture(autouse=True)
def _stub_ai_client(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "AIClient", _StubAIClient)


def test_build_engine_uses_settings(tmp_path: Path) -> None:
    settings = Settings(
        api_key="test-key",
        max_tool_rounds=3,
        parallel_tools=True,
        rate_limit_floor_ms=5_000,
        conversation_store_path=str(tmp_path / "conversations.json"),
    )

    engine = app.build_engine(settings, {"list_tables": lambda args: ["t1"]})

    assert isinstance(engine, ConversationEngine)
    assert engine.config.max_rounds == 3
    assert engine.config.parallel_tools
    assert engine.dispatcher.tool_names == ("list_tables",)
    assert isinstance(engine._store, JsonHistoryStore)
    assert engine._guard.floor_ms == 5_000


def test_build_engine_defaults_to_in_memory_store() -> None:
    engine = app.build_engine(Settings(), {}, endpoint=ScriptedEndpoint([]))

    assert isinstance(engine._store, InMemoryHistoryStore)
    assert engine._router is None


@pytest.mark.asyncio
async def test_build_engine_loads_routing_configs(tmp_path: Path) -> None:
    mapping_path = tmp_path / "mapping.json"
    mapping_path.write_text(
        json.dumps(
            {
                "query_mappings": [
                    {"query_type": "sales", "keywords": ["sales"], "tables": [{"dataset": "nextwave", "table": "sales_daily"}]}
                ]
            }
        ),
        encoding="utf-8",
    )
    schema_path = tmp_path / "schemas.json"
    schema_path.write_text(json.dumps({"schemas": {"sales": {"required_sections": ["## Summary"]}}}), encoding="utf-8")
    settings = Settings(query_mapping_path=str(mapping_path), response_schema_path=str(schema_path))
    endpoint = ScriptedEndpoint([calls(("list_tables", {})), final("## Summary\n2 tables")])

    engine = app.build_engine(settings, {"list_tables": lambda args: ["t1", "t2"]}, endpoint=endpoint)
    result = await engine.chat("c1", "sales tables?")

    assert result.valid
    assert result.routing is not None and result.routing.query_type == "sales"
    assert "[ROUTING_HINT]" in endpoint.requests[0][-1].text


def test_load_settings_applies_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("QUERYPILOT_MODEL", raising=False)
    store = SettingsStore(tmp_path / "settings.json")
    store.save(Settings(model="saved"))

    settings = app.load_settings(store=store, overrides={"max_tool_rounds": 2})

    assert settings.model == "saved"
    assert settings.max_tool_rounds == 2

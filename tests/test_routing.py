"""Tests for keyword query routing and response schema lookup."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from querypilot.ai.orchestration.routing import (
    KeywordQueryRouter,
    ResponseSchemaCatalog,
    format_routing_hint,
    load_json_config,
)

MAPPING_CONFIG = {
    "confidence_threshold": 0.6,
    "max_tables_per_query": 2,
    "fallback_behavior": {"action": "suggest_defaults", "default_tables": ["sales_daily", "catalog", "stores"]},
    "query_mappings": [
        {
            "query_type": "sales_performance",
            "priority": 2,
            "keywords": ["sales", "revenue", "top selling"],
            "tables": [
                {"dataset": "nextwave", "table": "sales_weekly", "priority": 2, "reason": "Weekly rollup"},
                {"dataset": "nextwave", "table": "sales_daily", "priority": 1},
                {"dataset": "nextwave", "table": "returns", "priority": 3},
            ],
        },
        {
            "query_type": "inventory",
            "priority": 1,
            "keywords": ["stock", "inventory"],
            "tables": [{"dataset": "nextwave", "table": "stock_levels", "priority": 1}],
        },
    ],
}

SCHEMA_CONFIG = {
    "format_version": 2,
    "common": {"reminder": "Keep headings verbatim.", "guidelines": ["Use tables", "Cite sources"]},
    "schemas": {
        "sales_performance": {
            "required_sections": ["## Summary", "## Top Products"],
            "template_lines": ["## Summary", "...", "## Top Products", "| Product | Revenue |"],
        },
        "default": {"required_sections": ["## Answer"], "template_lines": ["## Answer"]},
    },
}


@pytest.fixture
def catalog() -> ResponseSchemaCatalog:
    return ResponseSchemaCatalog(SCHEMA_CONFIG)


@pytest.fixture
def router(catalog: ResponseSchemaCatalog) -> KeywordQueryRouter:
    return KeywordQueryRouter(MAPPING_CONFIG, schemas=catalog)


def test_routes_to_best_mapping(router: KeywordQueryRouter) -> None:
    suggestion = router.route("What were the top-selling items by revenue last week?")

    assert suggestion.query_type == "sales_performance"
    assert suggestion.confidence == pytest.approx(2 / 3)
    assert suggestion.matched_keywords == ("revenue", "top selling")
    assert not suggestion.fallback_applied
    assert [table.table for table in suggestion.tables] == ["sales_daily", "sales_weekly"]
    assert suggestion.schema is not None
    assert suggestion.schema.required_sections == ("## Summary", "## Top Products")


def test_tie_goes_to_lower_priority(router: KeywordQueryRouter) -> None:
    suggestion = router.route("sales revenue top selling stock inventory")

    assert suggestion.confidence == 1.0
    assert suggestion.query_type == "inventory"


def test_low_confidence_uses_fallback(router: KeywordQueryRouter) -> None:
    suggestion = router.route("How many sales?")

    assert suggestion.query_type is None
    assert suggestion.fallback_applied
    assert suggestion.confidence == pytest.approx(1 / 3)
    assert [table.table for table in suggestion.tables] == ["sales_daily", "catalog"]
    assert suggestion.tables[0].reason == "Fallback default table"
    assert suggestion.schema is not None
    assert suggestion.schema.key == "default"


def test_no_match_has_zero_confidence(router: KeywordQueryRouter) -> None:
    suggestion = router.route("hello there")

    assert suggestion.confidence == 0.0
    assert suggestion.matched_keywords == ()


def test_schema_resolution_falls_back_to_default(catalog: ResponseSchemaCatalog) -> None:
    assert catalog.resolve("unknown").key == "default"
    assert catalog.resolve(None).key == "default"
    assert ResponseSchemaCatalog({"schemas": {}}).resolve("x") is None


def test_schema_hint_text(catalog: ResponseSchemaCatalog) -> None:
    hint = catalog.resolve("sales_performance").hint_text

    assert hint.splitlines()[0] == 'Markdown template (version 2) for query type "sales_performance":'
    assert "- Reminder: Keep headings verbatim." in hint
    assert "  - Cite sources" in hint
    assert hint.endswith("| Product | Revenue |")


def test_format_routing_hint(router: KeywordQueryRouter) -> None:
    hint = format_routing_hint(router.route("How many sales?"))

    assert "Query type match: none" in hint
    assert "- nextwave.sales_daily (default priority) - Fallback default table" in hint
    assert "Fallback applied (suggest_defaults)" in hint
    assert format_routing_hint(None) == ""


def test_from_file(tmp_path: Path) -> None:
    mapping_path = tmp_path / "mapping.json"
    mapping_path.write_text(json.dumps(MAPPING_CONFIG), encoding="utf-8")

    router = KeywordQueryRouter.from_file(mapping_path)

    assert router.confidence_threshold == 0.6
    assert router.route("stock and inventory levels please").query_type == "inventory"


def test_load_json_config_requires_object(tmp_path: Path) -> None:
    path = tmp_path / "list.json"
    path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ValueError):
        load_json_config(path)

"""Keyword query routing and response schema lookup.

Routing is advisory: it classifies a user question into a query type,
recommends the tables most likely to answer it, and selects the markdown
template the answer must follow. Both configurations are plain JSON
documents injected at construction time.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .types import ResponseSchema

__all__ = [
    "TableRecommendation",
    "RoutingSuggestion",
    "QueryRouter",
    "KeywordQueryRouter",
    "ResponseSchemaCatalog",
    "format_routing_hint",
    "load_json_config",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.6
DEFAULT_MAX_TABLES = 3
DEFAULT_FALLBACK_DATASET = "nextwave"
_KEYWORD_DENOMINATOR_CAP = 5
_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")
_SPACE_RE = re.compile(r"\s+")


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Read a JSON object from ``path``."""
    data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object, got {type(data).__name__}")
    return data


# -----------------------------------------------------------------------------
# Routing
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TableRecommendation:
    dataset: str
    table: str
    priority: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"dataset": self.dataset, "table": self.table, "priority": self.priority, "reason": self.reason}


@dataclass(slots=True, frozen=True)
class RoutingSuggestion:
    """Outcome of routing one user question."""

    query_type: str | None
    confidence: float
    tables: tuple[TableRecommendation, ...] = ()
    matched_keywords: tuple[str, ...] = ()
    fallback_applied: bool = False
    fallback_behavior: Mapping[str, Any] = field(default_factory=dict)
    schema: ResponseSchema | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_type": self.query_type,
            "confidence": self.confidence,
            "tables": [table.to_dict() for table in self.tables],
            "matched_keywords": list(self.matched_keywords),
            "fallback_applied": self.fallback_applied,
            "schema": self.schema.key if self.schema else None,
        }


@runtime_checkable
class QueryRouter(Protocol):
    def route(self, message: str) -> RoutingSuggestion:
        ...


def _sanitize(text: str) -> str:
    return _SPACE_RE.sub(" ", _NON_WORD_RE.sub(" ", (text or "").lower())).strip()


def _keyword_matches(query_forms: Sequence[str], keyword: str) -> bool:
    sanitized = _sanitize(keyword)
    if not sanitized:
        return False
    if any(sanitized in form for form in query_forms):
        return True
    tokens = sanitized.split(" ")
    if len(tokens) == 1:
        return any(tokens[0] in form.split(" ") for form in query_forms)
    query_tokens = set(query_forms[0].split(" ")) if query_forms else set()
    return all(token in query_tokens for token in tokens)


def _priority_key(priority: Any) -> float:
    return float(priority) if isinstance(priority, (int, float)) and not isinstance(priority, bool) else math.inf


class KeywordQueryRouter:
    """Scores each configured mapping by the share of its keywords in the question.

    The score is ``matched / min(5, len(keywords))`` capped at 1. The best
    mapping wins, ties going to the lower ``priority``. Below the confidence
    threshold the fallback default tables are recommended instead.
    """

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        schemas: ResponseSchemaCatalog | None = None,
        fallback_dataset: str = DEFAULT_FALLBACK_DATASET,
    ) -> None:
        self._mappings: tuple[Mapping[str, Any], ...] = tuple(config.get("query_mappings") or ())
        threshold = config.get("confidence_threshold")
        self._threshold = float(threshold) if isinstance(threshold, (int, float)) else DEFAULT_CONFIDENCE_THRESHOLD
        self._max_tables = max(1, int(config.get("max_tables_per_query") or DEFAULT_MAX_TABLES))
        self._fallback: Mapping[str, Any] = dict(config.get("fallback_behavior") or {})
        self._fallback_dataset = fallback_dataset
        self._schemas = schemas

    @classmethod
    def from_file(cls, path: str | Path, *, schemas: ResponseSchemaCatalog | None = None) -> KeywordQueryRouter:
        return cls(load_json_config(path), schemas=schemas)

    @property
    def confidence_threshold(self) -> float:
        return self._threshold

    def route(self, message: str) -> RoutingSuggestion:
        query_forms = [_sanitize(message), (message or "").lower()]
        best: tuple[Mapping[str, Any], tuple[str, ...], float] | None = None

        for mapping in self._mappings:
            keywords = [str(keyword) for keyword in mapping.get("keywords") or ()]
            matched: list[str] = []
            for keyword in keywords:
                lowered = keyword.lower()
                if lowered not in matched and _keyword_matches(query_forms, keyword):
                    matched.append(lowered)
            if not matched:
                continue
            denominator = min(_KEYWORD_DENOMINATOR_CAP, len(keywords) or _KEYWORD_DENOMINATOR_CAP)
            score = min(1.0, len(matched) / denominator)
            if (
                best is None
                or score > best[2]
                or (score == best[2] and _priority_key(mapping.get("priority")) < _priority_key(best[0].get("priority")))
            ):
                best = (mapping, tuple(matched), score)

        if best is None or best[2] < self._threshold:
            tables = tuple(
                TableRecommendation(
                    dataset=self._fallback_dataset,
                    table=str(table_id),
                    reason="Fallback default table",
                )
                for table_id in list(self._fallback.get("default_tables") or ())[: self._max_tables]
            )
            suggestion = RoutingSuggestion(
                query_type=None,
                confidence=best[2] if best else 0.0,
                tables=tables,
                matched_keywords=best[1] if best else (),
                fallback_applied=True,
                fallback_behavior=self._fallback,
                schema=self._resolve_schema(None),
            )
        else:
            mapping, matched, score = best
            ranked = sorted(mapping.get("tables") or (), key=lambda entry: _priority_key(entry.get("priority")))
            query_type = mapping.get("query_type")
            suggestion = RoutingSuggestion(
                query_type=query_type,
                confidence=score,
                tables=tuple(_table_from_mapping(entry) for entry in ranked[: self._max_tables]),
                matched_keywords=matched,
                fallback_applied=False,
                fallback_behavior=self._fallback,
                schema=self._resolve_schema(query_type),
            )
        LOGGER.debug(
            "Routed query to %s (confidence %.2f, fallback=%s)",
            suggestion.query_type,
            suggestion.confidence,
            suggestion.fallback_applied,
        )
        return suggestion

    def _resolve_schema(self, query_type: str | None) -> ResponseSchema | None:
        if self._schemas is None:
            return None
        return self._schemas.resolve(query_type)


def _table_from_mapping(entry: Mapping[str, Any]) -> TableRecommendation:
    priority = entry.get("priority")
    return TableRecommendation(
        dataset=str(entry.get("dataset") or DEFAULT_FALLBACK_DATASET),
        table=str(entry.get("table") or ""),
        priority=int(priority) if isinstance(priority, (int, float)) and not isinstance(priority, bool) else None,
        reason=entry.get("reason"),
    )


def format_routing_hint(suggestion: RoutingSuggestion | None) -> str:
    """Render ``suggestion`` as the plain-text hint shown to the model."""
    if suggestion is None:
        return ""
    lines = [f"Query type match: {suggestion.query_type or 'none'}"]
    lines.append(f"Routing confidence: {suggestion.confidence:.2f}")
    if suggestion.tables:
        lines.append("Recommended tables (in priority order):")
        for table in suggestion.tables:
            priority_text = f"priority {table.priority}" if table.priority is not None else "default priority"
            reason_text = f" - {table.reason}" if table.reason else ""
            lines.append(f"- {table.dataset}.{table.table} ({priority_text}){reason_text}")
    if suggestion.fallback_applied:
        action = suggestion.fallback_behavior.get("action") or "unspecified action"
        lines.append(f"Fallback applied ({action})")
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Response schemas
# -----------------------------------------------------------------------------


class ResponseSchemaCatalog:
    """Resolves query types to :class:`ResponseSchema` contracts.

    Unknown or missing query types resolve to the ``default`` schema when the
    configuration defines one.
    """

    def __init__(self, config: Mapping[str, Any]) -> None:
        self._schemas: Mapping[str, Mapping[str, Any]] = dict(config.get("schemas") or {})
        self._common: Mapping[str, Any] = dict(config.get("common") or {})
        self._format_version = config.get("format_version")

    @classmethod
    def from_file(cls, path: str | Path) -> ResponseSchemaCatalog:
        return cls(load_json_config(path))

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(self._schemas)

    def resolve(self, query_type: str | None) -> ResponseSchema | None:
        key = query_type if query_type and query_type in self._schemas else "default"
        entry = self._schemas.get(key)
        if entry is None:
            return None
        return ResponseSchema(
            key=key,
            required_sections=tuple(str(section) for section in entry.get("required_sections") or ()),
            hint_text=self.format_hint(entry, query_type=entry.get("query_type") or query_type),
        )

    def format_hint(self, entry: Mapping[str, Any], *, query_type: str | None = None) -> str:
        version = entry.get("version") or self._format_version or 1
        guidelines = [str(item) for item in self._common.get("guidelines") or ()]
        reminder = self._common.get("reminder")
        lines = [f'Markdown template (version {version}) for query type "{query_type or "generic"}":']
        if reminder:
            lines.append(f"- Reminder: {reminder}")
        if guidelines:
            lines.append("- Guidelines:\n  - " + "\n  - ".join(guidelines))
        template = "\n".join(str(line) for line in entry.get("template_lines") or ())
        if template:
            lines.append(template)
        return "\n".join(lines)

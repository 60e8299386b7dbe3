"""In-band trigger handling for trend brief generation.

A message containing the trigger token switches the turn into brief mode:
the JSON payload that follows the token (or a configured default payload)
is expanded into a small set of attribute combinations and appended to the
message as an instruction block. After the turn, the trend table the model
wrote under the anchor heading is parsed into rows for artifact rendering.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .table_parser import parse_markdown_table

__all__ = [
    "PayloadSource",
    "StaticPayloadSource",
    "JsonFilePayloadSource",
    "PendingTrigger",
    "PreparedMessage",
    "TrendRow",
    "TriggerAdapter",
    "DEFAULT_TRIGGER_TOKEN",
    "DEFAULT_ANCHOR_HEADING",
    "TABLE_COLUMNS",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TRIGGER_TOKEN = "MOODBOARD_RA"
DEFAULT_ANCHOR_HEADING = "## Trend Matrix"
DEFAULT_MAX_COMBINATIONS = 6
TABLE_COLUMNS: tuple[str, ...] = ("Trend", "Lifecycle", "Momentum", "Score", "Why it fits", "Visual")

# (label, path into the payload), in enumeration order.
_AXES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("brick", ("bricks",)),
    ("color", ("colors",)),
    ("pattern", ("attributes", "pattern")),
    ("fabric", ("attributes", "fabric")),
)
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_LINK_RE = re.compile(r"!?\[[^\]]*\]\(([^)\s]+)[^)]*\)")


# -----------------------------------------------------------------------------
# Payload sources
# -----------------------------------------------------------------------------


@runtime_checkable
class PayloadSource(Protocol):
    def load(self) -> Any | None:
        """Return the fallback payload, or ``None`` when there is none."""
        ...


@dataclass(slots=True, frozen=True)
class StaticPayloadSource:
    payload: Mapping[str, Any] | None = None

    def load(self) -> Any | None:
        return self.payload


class JsonFilePayloadSource:
    """Reads the fallback payload from a JSON file on first use."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._loaded = False
        self._payload: Any | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Any | None:
        if not self._loaded:
            self._payload = self._read()
            self._loaded = True
        return self._payload

    def _read(self) -> Any | None:
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            LOGGER.warning("Default trigger payload %s does not exist", self._path)
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Unable to read default trigger payload %s: %s", self._path, exc)
        return None


# -----------------------------------------------------------------------------
# Value types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PendingTrigger:
    """Turn-scoped context carried from ``prepare`` to ``finalize``."""

    payload: Mapping[str, Any]
    combinations: tuple[Mapping[str, str], ...] = ()
    source: str = "message"


@dataclass(slots=True, frozen=True)
class PreparedMessage:
    augmented_message: str
    pending: PendingTrigger | None = None


@dataclass(slots=True, frozen=True)
class TrendRow:
    name: str
    lifecycle: str
    momentum: str
    score: float | None
    rationale: str
    visual_ref: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "lifecycle": self.lifecycle,
            "momentum": self.momentum,
            "score": self.score,
            "rationale": self.rationale,
            "visual_ref": self.visual_ref,
        }


# -----------------------------------------------------------------------------
# Adapter
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class TriggerAdapter:
    """Detects the trigger token and round-trips the trend table.

    Example:
        >>> adapter = TriggerAdapter(trigger_token="MOODBOARD_RA")
        >>> prepared = adapter.prepare('MOODBOARD_RA\\n{"brand": "Zara", "bricks": ["Jackets"]}')
        >>> prepared.pending.combinations
        ({'brick': 'Jackets'},)
    """

    trigger_token: str = DEFAULT_TRIGGER_TOKEN
    default_payload: PayloadSource | None = None
    max_combinations: int = DEFAULT_MAX_COMBINATIONS
    anchor_heading: str = DEFAULT_ANCHOR_HEADING
    _token_re: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.trigger_token.strip():
            raise ValueError("trigger_token must be a non-empty string")
        if self.max_combinations < 0:
            raise ValueError("max_combinations must be non-negative")
        self._token_re = re.compile(re.escape(self.trigger_token.strip()), re.IGNORECASE)

    def detect(self, message: str) -> bool:
        return bool(self._token_re.search(message or ""))

    def prepare(self, message: str) -> PreparedMessage:
        match = self._token_re.search(message or "")
        if match is None:
            return PreparedMessage(augmented_message=message)

        payload = self._parse_inline_payload(_payload_text(message, match.end()))
        source = "message"
        if payload is None:
            payload = self._load_default()
            source = "default"
        if payload is None:
            LOGGER.warning("Trigger %s detected but no payload is available; passing message through", self.trigger_token)
            return PreparedMessage(augmented_message=message)

        combinations = self.build_combinations(payload)
        brief = self.render_brief(payload, combinations)
        LOGGER.info(
            "Trigger %s prepared from %s payload with %d combination(s)",
            self.trigger_token,
            source,
            len(combinations),
        )
        return PreparedMessage(
            augmented_message=f"{message}\n\n{brief}",
            pending=PendingTrigger(payload=payload, combinations=combinations, source=source),
        )

    def finalize(self, text: str, pending: PendingTrigger | None) -> list[TrendRow]:
        """Parse the trend table from ``text``; malformed output yields ``[]``."""
        if pending is None:
            return []
        rows = [self._row_from_cells(cells) for cells in parse_markdown_table(text, self.anchor_heading)]
        if not rows:
            LOGGER.info("No trend table found under %r", self.anchor_heading)
        return rows

    def build_combinations(self, payload: Mapping[str, Any]) -> tuple[Mapping[str, str], ...]:
        axes: list[tuple[str, list[str]]] = []
        for label, path in _AXES:
            values = _unique_strings(_lookup(payload, path))
            if values:
                axes.append((label, values))
        if not axes or self.max_combinations == 0:
            return ()
        labels = [label for label, _ in axes]
        product = itertools.product(*(values for _, values in axes))
        return tuple(dict(zip(labels, combo)) for combo in itertools.islice(product, self.max_combinations))

    def render_brief(self, payload: Mapping[str, Any], combinations: Sequence[Mapping[str, str]]) -> str:
        lines = ["[TREND_BRIEF]"]
        lines.append(f"Brand: {payload.get('brand') or 'N/A'}")
        lines.append(f"Month: {payload.get('month') or 'N/A'}")
        if combinations:
            lines.append("Attribute combinations to cover:")
            for index, combo in enumerate(combinations, start=1):
                lines.append(f"{index}. " + ", ".join(f"{key}={value}" for key, value in combo.items()))
        else:
            lines.append("Attribute combinations to cover: none supplied; choose the strongest trends.")
        lines.append(f'End your answer with a markdown table under the heading "{self.anchor_heading}" with columns:')
        lines.append("| " + " | ".join(TABLE_COLUMNS) + " |")
        lines.append("[/TREND_BRIEF]")
        return "\n".join(lines)

    def _parse_inline_payload(self, remainder: str) -> Mapping[str, Any] | None:
        candidate = remainder.strip()
        if not candidate:
            return None
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Trigger payload is not valid JSON (%s); using default payload", exc)
            return None
        if not isinstance(payload, Mapping):
            LOGGER.warning("Trigger payload must be a JSON object, got %s; using default payload", type(payload).__name__)
            return None
        return payload

    def _load_default(self) -> Mapping[str, Any] | None:
        if self.default_payload is None:
            return None
        payload = self.default_payload.load()
        if payload is None:
            return None
        if not isinstance(payload, Mapping):
            LOGGER.warning("Default trigger payload must be a JSON object, got %s", type(payload).__name__)
            return None
        return payload

    @staticmethod
    def _row_from_cells(cells: Sequence[str]) -> TrendRow:
        return TrendRow(
            name=cells[0],
            lifecycle=cells[1],
            momentum=cells[2],
            score=_parse_score(cells[3]),
            rationale=cells[4],
            visual_ref=_extract_link(cells[5]),
        )


def _payload_text(message: str, token_end: int) -> str:
    """Text on the lines after the trigger line, else the rest of the trigger line."""
    line_end = message.find("\n", token_end)
    following = message[line_end + 1 :] if line_end != -1 else ""
    return following if following.strip() else message[token_end:]


def _lookup(payload: Mapping[str, Any], path: Sequence[str]) -> Any:
    node: Any = payload
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def _unique_strings(value: Any) -> list[str]:
    if value is None:
        return []
    items = [value] if isinstance(value, (str, int, float)) else value
    if not isinstance(items, (list, tuple)):
        return []
    seen: list[str] = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


def _parse_score(cell: str) -> float | None:
    match = _NUMBER_RE.search(cell or "")
    if match is None:
        return None
    return float(match.group(0))


def _extract_link(cell: str) -> str:
    match = _LINK_RE.search(cell or "")
    if match:
        return match.group(1)
    return (cell or "").strip()

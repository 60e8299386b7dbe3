"""Turn telemetry: an in-process event bus plus per-turn summaries.

Orchestration components call :func:`emit` with a small set of event names
(``rate_limit_retry``, ``tool_call_failed``, ``tool_loop_exhausted``,
``template_correction``, ``chat_turn_completed``). Hosts subscribe with
:func:`register_event_listener` or the :func:`listening` context manager.
"""

from __future__ import annotations

import contextlib
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Iterable, Iterator, Mapping, Protocol

__all__ = [
    "TurnSummary",
    "TurnTotals",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "summarize_turns",
    "emit",
    "listening",
    "register_event_listener",
    "unregister_event_listener",
]

LOGGER = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]

_LISTENERS: defaultdict[str, list[EventListener]] = defaultdict(list)
_LISTENERS_LOCK = Lock()


@dataclass(slots=True)
class TurnSummary:
    """Outcome of one completed chat turn."""

    conversation_id: str
    query_type: str | None
    rounds: int
    tool_names: tuple[str, ...]
    tool_errors: int
    valid: bool
    missing_sections: tuple[str, ...]
    corrections: int
    duration_ms: float
    timestamp: float

    @property
    def tool_call_count(self) -> int:
        return len(self.tool_names)


class TelemetrySink(Protocol):
    def record(self, event: TurnSummary) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Keeps the most recent turn summaries, oldest first."""

    def __init__(self, capacity: int = 200) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._summaries: deque[TurnSummary] = deque(maxlen=capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._summaries.maxlen or 0

    def record(self, event: TurnSummary) -> None:
        with self._lock:
            self._summaries.append(event)

    def tail(self, limit: int | None = None) -> list[TurnSummary]:
        with self._lock:
            summaries = list(self._summaries)
        return summaries if limit is None else summaries[-limit:] if limit > 0 else []

    def clear(self) -> None:
        with self._lock:
            self._summaries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._summaries)


@dataclass(slots=True)
class TurnTotals:
    turn_count: int = 0
    tool_calls: int = 0
    tool_errors: int = 0
    invalid_turns: int = 0
    corrections: int = 0

    def as_status_text(self) -> str:
        text = f"Turns {self.turn_count} · Tools {self.tool_calls}"
        if self.tool_errors:
            text += f" · Tool errors {self.tool_errors}"
        if self.invalid_turns:
            text += f" · Off-template {self.invalid_turns}"
        return text


def summarize_turns(summaries: Iterable[TurnSummary]) -> TurnTotals | None:
    """Fold summaries into counters; ``None`` when there were no turns."""

    totals = TurnTotals()
    for summary in summaries:
        totals.turn_count += 1
        totals.tool_calls += summary.tool_call_count
        totals.tool_errors += max(0, summary.tool_errors)
        totals.corrections += max(0, summary.corrections)
        totals.invalid_turns += 0 if summary.valid else 1
    return totals if totals.turn_count else None


# -----------------------------------------------------------------------------
# Event bus
# -----------------------------------------------------------------------------


def register_event_listener(event_name: str, callback: EventListener) -> None:
    """Call ``callback`` with the payload every time ``event_name`` is emitted."""

    if not event_name or callback is None:
        return
    with _LISTENERS_LOCK:
        listeners = _LISTENERS[event_name]
        if callback not in listeners:
            listeners.append(callback)


def unregister_event_listener(event_name: str, callback: EventListener) -> None:
    with _LISTENERS_LOCK:
        listeners = _LISTENERS.get(event_name)
        if listeners and callback in listeners:
            listeners.remove(callback)
        if not listeners:
            _LISTENERS.pop(event_name, None)


@contextlib.contextmanager
def listening(event_name: str, callback: EventListener) -> Iterator[None]:
    register_event_listener(event_name, callback)
    try:
        yield
    finally:
        unregister_event_listener(event_name, callback)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Deliver ``payload`` (tagged with ``event``) to the listeners of ``event_name``.

    Listener failures are logged and never reach the emitting component.
    """

    if not event_name:
        return
    body: dict[str, Any] = {"event": event_name, **(payload or {})}
    with _LISTENERS_LOCK:
        listeners = tuple(_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(body))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %r failed for %s", callback, event_name, exc_info=True)
    LOGGER.debug("telemetry %s %s", event_name, body)

"""Rate-limit classification and adaptive backoff for model invocations.

Provider errors are not uniformly shaped, so classification looks at several
signals: an explicit 429 status, a "too many requests" status text, or
well-known phrases in the error message. The suggested delay is read, in
priority order, from structured retry details, from a "retry in N s" phrase
in the message, and finally falls back to the configured floor. The floor is
always enforced so a degraded provider is never hot-retried.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception

from ...services import telemetry as telemetry_service
from .errors import RateLimitBudgetExceeded
from .types import TurnEvent, TurnObserver, notify

__all__ = [
    "DEFAULT_FLOOR_MS",
    "RateLimitSignal",
    "RateLimitGuard",
    "classify_rate_limit",
    "is_rate_limit_error",
    "compute_delay_ms",
    "parse_retry_delay",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FLOOR_MS = 60_000
# Bare numeric retry delays up to this value are read as seconds.
_SECONDS_HEURISTIC_LIMIT = 600
_MESSAGE_MARKERS: tuple[str, ...] = ("429", "quota exceeded", "rate limit", "too many requests")
_STATUS_ATTRS: tuple[str, ...] = ("status_code", "status", "code", "http_status")
_STATUS_TEXT_ATTRS: tuple[str, ...] = ("status_text", "statusText", "reason_phrase")
_DETAIL_ATTRS: tuple[str, ...] = ("error_details", "errorDetails", "details", "body")
_RETRY_DELAY_KEYS: tuple[str, ...] = ("retryDelay", "retry_delay")
_RETRY_TEXT_RE = re.compile(
    r"retry\s+(?:in|after)\s+(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|milliseconds?|s|secs?|seconds?)?",
    re.IGNORECASE,
)
_DURATION_RE = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s)?\s*$", re.IGNORECASE)
_MAX_DETAIL_DEPTH = 6


@dataclass(slots=True, frozen=True)
class RateLimitSignal:
    """Classification of a raw provider error."""

    is_rate_limit: bool
    suggested_delay_ms: float | None = None
    source: str | None = None


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------


def classify_rate_limit(error: BaseException) -> RateLimitSignal:
    """Classify ``error`` and extract any provider-suggested retry delay."""

    if not _looks_rate_limited(error):
        return RateLimitSignal(is_rate_limit=False)
    structured = _structured_delay_ms(error)
    if structured is not None:
        return RateLimitSignal(True, structured, "retry_delay")
    header = _header_delay_ms(error)
    if header is not None:
        return RateLimitSignal(True, header, "retry_after_header")
    textual = _message_delay_ms(_error_message(error))
    if textual is not None:
        return RateLimitSignal(True, textual, "message")
    return RateLimitSignal(True, None, None)


def is_rate_limit_error(error: BaseException) -> bool:
    return _looks_rate_limited(error)


def compute_delay_ms(signal: RateLimitSignal, floor_ms: float = DEFAULT_FLOOR_MS) -> float:
    """Return the wait before the next attempt, never below ``floor_ms``."""

    suggested = signal.suggested_delay_ms
    if suggested is None:
        return float(floor_ms)
    return float(max(floor_ms, suggested))


def parse_retry_delay(value: Any) -> float | None:
    """Convert a structured ``retryDelay`` value to milliseconds.

    Accepts a bare number (seconds when <= 600, otherwise milliseconds), a
    duration string such as ``"30s"`` or ``"1500ms"``, or a mapping with
    ``seconds`` and ``nanos``.
    """

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if value < 0:
            return None
        return float(value) * 1000 if value <= _SECONDS_HEURISTIC_LIMIT else float(value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            return None
        number = float(match.group("value"))
        unit = (match.group("unit") or "").lower()
        if unit == "ms":
            return number
        if unit == "s":
            return number * 1000
        return parse_retry_delay(number)
    if isinstance(value, Mapping):
        seconds = value.get("seconds")
        nanos = value.get("nanos")
        if seconds is None and nanos is None:
            return None
        try:
            return float(seconds or 0) * 1000 + float(nanos or 0) / 1_000_000
        except (TypeError, ValueError):
            return None
    return None


def _looks_rate_limited(error: BaseException) -> bool:
    if _status_code(error) == 429:
        return True
    if "too many requests" in _status_text(error).lower():
        return True
    message = _error_message(error).lower()
    return any(marker in message for marker in _MESSAGE_MARKERS)


def _status_code(error: BaseException) -> int | None:
    candidates: list[Any] = [getattr(error, attr, None) for attr in _STATUS_ATTRS]
    response = getattr(error, "response", None)
    if response is not None:
        candidates.append(getattr(response, "status_code", None))
    for candidate in candidates:
        if isinstance(candidate, bool):
            continue
        if isinstance(candidate, int):
            return candidate
        if isinstance(candidate, str) and candidate.strip().isdigit():
            return int(candidate.strip())
    return None


def _status_text(error: BaseException) -> str:
    texts = [getattr(error, attr, None) for attr in _STATUS_TEXT_ATTRS]
    response = getattr(error, "response", None)
    if response is not None:
        texts.append(getattr(response, "reason_phrase", None))
    return " ".join(text for text in texts if isinstance(text, str))


def _error_message(error: BaseException) -> str:
    message = str(error)
    extra = getattr(error, "message", None)
    if isinstance(extra, str) and extra and extra not in message:
        message = f"{message} {extra}".strip()
    return message


def _structured_delay_ms(error: BaseException) -> float | None:
    for attr in _DETAIL_ATTRS:
        found = _find_retry_delay(getattr(error, attr, None), depth=0)
        if found is not None:
            return found
    return None


def _find_retry_delay(node: Any, *, depth: int) -> float | None:
    if node is None or depth > _MAX_DETAIL_DEPTH:
        return None
    if isinstance(node, Mapping):
        for key in _RETRY_DELAY_KEYS:
            if key in node:
                parsed = parse_retry_delay(node[key])
                if parsed is not None:
                    return parsed
        for value in node.values():
            found = _find_retry_delay(value, depth=depth + 1)
            if found is not None:
                return found
        return None
    if isinstance(node, Sequence) and not isinstance(node, (str, bytes, bytearray)):
        for item in node:
            found = _find_retry_delay(item, depth=depth + 1)
            if found is not None:
                return found
    return None


def _header_delay_ms(error: BaseException) -> float | None:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    try:
        retry_ms = headers.get("retry-after-ms")
        retry_after = headers.get("retry-after")
    except AttributeError:
        return None
    try:
        if retry_ms is not None:
            return float(retry_ms)
        if retry_after is not None:
            return float(retry_after) * 1000
    except (TypeError, ValueError):
        return None
    return None


def _message_delay_ms(message: str) -> float | None:
    match = _RETRY_TEXT_RE.search(message or "")
    if not match:
        return None
    number = float(match.group("value"))
    unit = (match.group("unit") or "s").lower()
    if unit.startswith("m"):
        return number
    return number * 1000


# -----------------------------------------------------------------------------
# Guard
# -----------------------------------------------------------------------------


class RateLimitGuard:
    """Retries an async action for as long as the provider rate-limits it.

    The guard never returns a rate-limit failure to its caller. It either
    returns the action's result or re-raises a non-rate-limit error unchanged.
    Retrying is unbounded unless ``max_wait_ms`` is set, in which case
    :class:`RateLimitBudgetExceeded` is raised once the cumulative wait would
    exceed the budget.

    Example:
        >>> guard = RateLimitGuard(floor_ms=60_000)
        >>> response = await guard.invoke(lambda: endpoint.send(history), "chat")
    """

    def __init__(
        self,
        *,
        floor_ms: float = DEFAULT_FLOOR_MS,
        max_wait_ms: float | None = None,
        observer: TurnObserver | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if floor_ms < 0:
            raise ValueError("floor_ms must be non-negative")
        if max_wait_ms is not None and max_wait_ms < 0:
            raise ValueError("max_wait_ms must be non-negative")
        self._floor_ms = float(floor_ms)
        self._max_wait_ms = max_wait_ms
        self._observer = observer
        self._sleep = sleep

    @property
    def floor_ms(self) -> float:
        return self._floor_ms

    @property
    def max_wait_ms(self) -> float | None:
        return self._max_wait_ms

    def delay_for(self, error: BaseException) -> float:
        """Return the backoff in milliseconds that ``error`` would trigger."""
        return compute_delay_ms(classify_rate_limit(error), self._floor_ms)

    async def invoke(
        self,
        action: Callable[[], Awaitable[T]],
        context: str = "model request",
        *,
        observer: TurnObserver | None = None,
    ) -> T:
        target = observer or self._observer

        def _wait(retry_state: RetryCallState) -> float:
            return self.delay_for(_outcome_error(retry_state)) / 1000

        def _stop(retry_state: RetryCallState) -> bool:
            if self._max_wait_ms is None:
                return False
            upcoming_ms = self.delay_for(_outcome_error(retry_state))
            return retry_state.idle_for * 1000 + upcoming_ms > self._max_wait_ms

        async def _before_sleep(retry_state: RetryCallState) -> None:
            error = _outcome_error(retry_state)
            seconds = retry_state.next_action.sleep if retry_state.next_action else _wait(retry_state)
            LOGGER.warning(
                "%s rate limited (attempt %s); retrying in %.1fs: %s",
                context,
                retry_state.attempt_number,
                seconds,
                error,
            )
            payload = {
                "retry_in_seconds": seconds,
                "message": str(error),
                "attempt": retry_state.attempt_number,
                "context": context,
            }
            telemetry_service.emit("rate_limit_retry", payload)
            await notify(target, TurnEvent(type="rate_limit", payload=payload))

        retrying = AsyncRetrying(
            retry=retry_if_exception(is_rate_limit_error),
            wait=_wait,
            stop=_stop,
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await action()
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            waited_ms = (retrying.statistics.get("idle_for") or 0.0) * 1000
            raise RateLimitBudgetExceeded(
                context,
                waited_ms=waited_ms,
                budget_ms=float(self._max_wait_ms or 0),
                attempts=exc.last_attempt.attempt_number,
            ) from last_error
        return result


def _outcome_error(retry_state: RetryCallState) -> BaseException:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    if error is None:  # pragma: no cover - tenacity only waits after failures
        raise RuntimeError("rate-limit wait requested without a failed attempt")
    return error

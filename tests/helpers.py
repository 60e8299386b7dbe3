"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Iterable, Sequence

from querypilot.ai.orchestration.parts import FunctionCall, Message, Text
from querypilot.ai.orchestration.types import StreamChunk, TurnEvent


def final(text: str) -> Message:
    """Model message carrying only text."""
    return Message.model([Text(text)])


def calls(*items: tuple[str, dict[str, Any]]) -> Message:
    """Model message carrying function calls, e.g. ``calls(("list_tables", {}))``."""
    return Message.model(FunctionCall(name, args) for name, args in items)


async def stream_of(chunks: Iterable[StreamChunk]) -> AsyncIterator[StreamChunk]:
    for chunk in chunks:
        if isinstance(chunk, BaseException):
            raise chunk
        yield chunk


class ScriptedEndpoint:
    """Model endpoint that replays a fixed list of replies.

    Each reply is a :class:`Message`, a list of :class:`StreamChunk` (served
    as an async stream; an exception in the list is raised mid-stream), or
    an exception instance to raise. Every history snapshot the endpoint
    receives is recorded on ``requests``.
    """

    def __init__(self, replies: Sequence[Any]) -> None:
        self._replies = list(replies)
        self.requests: list[tuple[Message, ...]] = []

    @property
    def remaining(self) -> int:
        return len(self._replies)

    async def send(self, history: Sequence[Message]) -> Any:
        self.requests.append(tuple(history))
        if not self._replies:
            raise AssertionError("ScriptedEndpoint ran out of replies")
        reply = self._replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, list):
            return stream_of(reply)
        return reply


class RateLimitedError(Exception):
    """Provider-shaped 429 error."""

    def __init__(self, message: str = "429 Too Many Requests", *, error_details: Any = None) -> None:
        super().__init__(message)
        self.status_code = 429
        self.error_details = error_details


class RecordingSleep:
    """Async sleep replacement that records requested delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class EventRecorder:
    """Turn observer collecting every event it receives."""

    def __init__(self) -> None:
        self.events: list[TurnEvent] = []

    def __call__(self, event: TurnEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[TurnEvent]:
        return [event for event in self.events if event.type == event_type]

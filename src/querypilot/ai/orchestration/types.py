"""Core value types that flow through a chat turn.

These types are immutable where the turn does not need to mutate them and
are shared between the tool loop, the template validator and the engine.
"""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterable
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, Union, runtime_checkable

from .parts import Message, Part

__all__ = [
    "StreamChunk",
    "ToolCallRecord",
    "ResponseSchema",
    "LoopResult",
    "TurnEvent",
    "TurnObserver",
    "ModelReply",
    "ModelEndpoint",
    "notify",
]


@dataclass(slots=True, frozen=True)
class StreamChunk:
    """A partial slice of a model response.

    A logical part may be split across several chunks; for example a
    function call whose arguments arrive in pieces.
    """

    parts: tuple[Part, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.parts, tuple):
            object.__setattr__(self, "parts", tuple(self.parts))


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Observable outcome of one tool invocation.

    Attributes:
        name: Tool name requested by the model.
        args: Arguments passed to the tool.
        result: Tool return value on success, ``None`` otherwise.
        error: Failure message, ``None`` on success.
        duration_ms: Wall-clock execution time.
    """

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "args": dict(self.args),
            "result": self.result,
            "error": self.error,
        }


@dataclass(slots=True, frozen=True)
class ResponseSchema:
    """Structured-output contract for a classified query type.

    ``required_sections`` keeps configuration order so missing sections are
    reported deterministically.
    """

    key: str
    required_sections: tuple[str, ...] = ()
    hint_text: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.required_sections, tuple):
            object.__setattr__(self, "required_sections", tuple(self.required_sections))


@dataclass(slots=True, frozen=True)
class LoopResult:
    """Outcome of one pass through the tool loop."""

    text: str
    tool_calls: tuple[ToolCallRecord, ...] = ()
    rounds: int = 0


@dataclass(slots=True, frozen=True)
class TurnEvent:
    """Notification delivered to a turn observer.

    ``type`` is one of ``chunk``, ``tool_call``, ``tool_result``,
    ``rate_limit`` or ``stream_reset``. ``chunk`` carries the raw
    :class:`StreamChunk`; the other events carry their data in ``payload``.
    ``stream_reset`` precedes a rate-limit retry of a partially streamed
    reply: chunks already delivered for that request are void and the retry
    streams again from the beginning.
    """

    type: str
    chunk: StreamChunk | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)


TurnObserver = Callable[[TurnEvent], Union[Awaitable[None], None]]

# A unary response or a stream of chunks.
ModelReply = Union[Message, AsyncIterable[StreamChunk]]


@runtime_checkable
class ModelEndpoint(Protocol):
    """Contract the engine expects from a generative model provider."""

    async def send(self, history: Sequence[Message]) -> ModelReply:
        """Send the full history and return the model's next message."""
        ...


async def notify(observer: TurnObserver | None, event: TurnEvent) -> None:
    """Deliver ``event`` to ``observer``, awaiting it when it is a coroutine."""

    if observer is None:
        return
    result = observer(event)
    if inspect.isawaitable(result):
        await result

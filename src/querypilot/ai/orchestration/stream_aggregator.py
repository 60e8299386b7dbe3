"""Streaming aggregation: merge partial chunks into one model message.

The aggregated message is indistinguishable from a unary response, so the
rest of the engine never needs to know which transport mode was used.

Function calls are merged by name. At most one call per distinct name is
supported in a single aggregated response: a second ``FunctionCall`` with a
name already seen is treated as more arguments for the first one.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncIterable
from typing import Any, Awaitable, Callable, Iterable, Union

from .errors import ModelProtocolError
from .parts import FunctionCall, FunctionResponse, Message, Part, Text
from .types import StreamChunk

__all__ = ["StreamingResponseAggregator", "ChunkCallback"]

LOGGER = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], Union[Awaitable[None], None]]


class StreamingResponseAggregator:
    """Accumulates streamed parts in arrival order.

    Example:
        >>> aggregator = StreamingResponseAggregator()
        >>> message = aggregator.aggregate([
        ...     StreamChunk((Text("Hel"),)),
        ...     StreamChunk((Text("lo"),)),
        ... ])
        >>> message.text
        'Hello'
    """

    def __init__(self) -> None:
        self._entries: list[Any] = []
        self._text_index: int | None = None
        self._call_index: dict[str, int] = {}
        self._chunk_count = 0

    @property
    def chunk_count(self) -> int:
        return self._chunk_count

    def reset(self) -> None:
        self._entries = []
        self._text_index = None
        self._call_index = {}
        self._chunk_count = 0

    def feed(self, chunk: StreamChunk) -> None:
        """Merge one chunk into the accumulator."""
        self._chunk_count += 1
        for part in chunk.parts:
            if isinstance(part, Text):
                self._merge_text(part)
            elif isinstance(part, FunctionCall):
                self._merge_call(part)
            elif isinstance(part, FunctionResponse):
                raise ModelProtocolError(
                    "Model stream contained a function response part",
                    name=part.name,
                )
            else:
                raise ModelProtocolError(f"Unsupported stream part: {type(part).__name__}")

    def build(self) -> Message:
        """Return the aggregated message.

        Raises:
            ModelProtocolError: If no parts were observed.
        """
        parts: list[Part] = []
        for entry in self._entries:
            if isinstance(entry, list):
                parts.append(Text("".join(entry)))
            else:
                name, args = entry
                parts.append(FunctionCall(name=name, args=dict(args)))
        if not parts:
            raise ModelProtocolError("Model response contained no parts", chunks=self._chunk_count)
        return Message.model(parts)

    def aggregate(self, chunks: Iterable[StreamChunk]) -> Message:
        self.reset()
        for chunk in chunks:
            self.feed(chunk)
        return self.build()

    async def aggregate_stream(
        self,
        chunks: AsyncIterable[StreamChunk],
        *,
        on_chunk: ChunkCallback | None = None,
    ) -> Message:
        """Consume an async stream, forwarding each raw chunk to ``on_chunk``."""
        self.reset()
        async for chunk in chunks:
            if not isinstance(chunk, StreamChunk):
                raise ModelProtocolError(f"Expected StreamChunk, got {type(chunk).__name__}")
            if on_chunk is not None:
                result = on_chunk(chunk)
                if inspect.isawaitable(result):
                    await result
            self.feed(chunk)
        LOGGER.debug("Aggregated %s stream chunk(s)", self._chunk_count)
        return self.build()

    def _merge_text(self, part: Text) -> None:
        if not part.content:
            return
        if self._text_index is None:
            self._text_index = len(self._entries)
            self._entries.append([part.content])
        else:
            self._entries[self._text_index].append(part.content)

    def _merge_call(self, part: FunctionCall) -> None:
        index = self._call_index.get(part.name)
        if index is None:
            self._call_index[part.name] = len(self._entries)
            self._entries.append((part.name, dict(part.args or {})))
            return
        _, args = self._entries[index]
        args.update(part.args or {})

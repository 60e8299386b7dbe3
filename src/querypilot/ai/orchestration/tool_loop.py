"""Tool loop: drive model invocation and tool execution until a final answer.

The loop owns the conversation history for the duration of a turn and only
ever appends to it. A model message carrying function calls is appended
together with its matching function message, never alone, so the history is
always in a consistent state when the turn ends, even on failure.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Sequence

from ...services import telemetry as telemetry_service
from .errors import ModelProtocolError, ToolLoopExhausted, UnknownToolError
from .event_log import NullTurnEventLogRun, TurnEventLog
from .parts import FunctionCall, FunctionResponse, Message, Role, Text
from .rate_limit import RateLimitGuard
from .stream_aggregator import StreamingResponseAggregator
from .tool_dispatcher import ToolCallDispatcher
from .types import LoopResult, ModelEndpoint, StreamChunk, ToolCallRecord, TurnEvent, TurnObserver, notify

__all__ = ["LoopState", "ToolCallLoop", "DEFAULT_MAX_ROUNDS"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 8


class LoopState(str, Enum):
    AWAITING_RESPONSE = "awaiting_response"
    EXECUTING_TOOLS = "executing_tools"
    FINAL_TEXT = "final_text"


class ToolCallLoop:
    """Per-turn state machine over one conversation history.

    Example:
        >>> loop = ToolCallLoop(endpoint, dispatcher, history, guard=RateLimitGuard())
        >>> result = await loop.run("List my tables")
        >>> result.tool_calls[0].name
        'list_tables'
    """

    def __init__(
        self,
        endpoint: ModelEndpoint,
        dispatcher: ToolCallDispatcher,
        history: list[Message],
        *,
        guard: RateLimitGuard | None = None,
        aggregator_factory: Callable[[], StreamingResponseAggregator] = StreamingResponseAggregator,
        max_rounds: int | None = DEFAULT_MAX_ROUNDS,
        parallel_tools: bool = False,
        observer: TurnObserver | None = None,
        event_log: TurnEventLog | None = None,
    ) -> None:
        if max_rounds is not None and max_rounds < 0:
            raise ValueError("max_rounds must be non-negative or None")
        self._endpoint = endpoint
        self._dispatcher = dispatcher
        self._history = history
        self._guard = guard or RateLimitGuard()
        self._aggregator_factory = aggregator_factory
        self._max_rounds = max_rounds
        self._parallel_tools = parallel_tools
        self._observer = observer
        self._event_log: TurnEventLog = event_log or NullTurnEventLogRun()
        self._attempt_chunks = 0
        self._state = LoopState.AWAITING_RESPONSE

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def history(self) -> list[Message]:
        return self._history

    @property
    def max_rounds(self) -> int | None:
        return self._max_rounds

    async def run(self, message: str) -> LoopResult:
        """Append ``message`` as a user message and resolve the turn.

        Raises:
            UnknownToolError: The model requested an unregistered tool.
            ModelProtocolError: The endpoint returned an unusable response.
            ToolLoopExhausted: The model kept calling tools past ``max_rounds``.
        """
        self._history.append(Message.user(message))
        records: list[ToolCallRecord] = []
        rounds = 0

        response = await self._request(rounds)
        while response.has_function_calls:
            if self._max_rounds is not None and rounds >= self._max_rounds:
                LOGGER.warning(
                    "Tool loop reached max rounds (%d) after %d tool call(s)",
                    self._max_rounds,
                    len(records),
                )
                telemetry_service.emit(
                    "tool_loop_exhausted",
                    {"max_rounds": self._max_rounds, "tool_call_count": len(records)},
                )
                raise ToolLoopExhausted(self._max_rounds, len(records))
            rounds += 1
            batch = await self._execute_calls(response.function_calls)
            records.extend(batch)
            self._history.append(response)
            self._history.append(
                Message.function(
                    FunctionResponse(name=record.name, result=record.result, error=record.error)
                    for record in batch
                )
            )
            self._event_log.log_tool_batch(
                round_index=rounds,
                records=[record.to_dict() for record in batch],
            )
            response = await self._request(rounds)

        text = response.text
        self._history.append(Message.model([Text(text)]))
        self._state = LoopState.FINAL_TEXT
        LOGGER.debug("Turn resolved after %d tool round(s), %d tool call(s)", rounds, len(records))
        return LoopResult(text=text, tool_calls=tuple(records), rounds=rounds)

    # ------------------------------------------------------------------
    # Model invocation
    # ------------------------------------------------------------------
    async def _request(self, round_index: int) -> Message:
        self._state = LoopState.AWAITING_RESPONSE
        snapshot = tuple(self._history)

        async def _send() -> tuple[Message, bool]:
            self._attempt_chunks = 0
            reply: Any = self._endpoint.send(snapshot)
            if inspect.isawaitable(reply):
                reply = await reply
            if isinstance(reply, Message):
                return self._check_unary(reply), False
            if hasattr(reply, "__aiter__"):
                aggregator = self._aggregator_factory()
                message = await aggregator.aggregate_stream(reply, on_chunk=self._forward_chunk)
                return message, True
            raise ModelProtocolError(
                f"Model endpoint returned unsupported type {type(reply).__name__}",
                round=round_index,
            )

        message, streamed = await self._guard.invoke(
            _send,
            f"model request (round {round_index})",
            observer=self._on_rate_limit,
        )
        self._event_log.log_model_response(
            round_index=round_index,
            message=message.to_dict(),
            streamed=streamed,
        )
        return message

    @staticmethod
    def _check_unary(message: Message) -> Message:
        if message.role is not Role.MODEL:
            raise ModelProtocolError(f"Expected a model message, got role {message.role.value}")
        if not message.parts:
            raise ModelProtocolError("Model response contained no parts")
        return message

    async def _forward_chunk(self, chunk: StreamChunk) -> None:
        self._attempt_chunks += 1
        await notify(self._observer, TurnEvent(type="chunk", chunk=chunk))

    async def _on_rate_limit(self, event: TurnEvent) -> None:
        self._event_log.log_rate_limit(event.payload)
        if self._attempt_chunks:
            # The retried request streams from the start again.
            await notify(
                self._observer,
                TurnEvent(type="stream_reset", payload={"discarded_chunks": self._attempt_chunks}),
            )
            self._attempt_chunks = 0
        await notify(self._observer, event)

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------
    async def _execute_calls(self, calls: Sequence[FunctionCall]) -> list[ToolCallRecord]:
        self._state = LoopState.EXECUTING_TOOLS
        for call in calls:
            if not self._dispatcher.has_tool(call.name):
                raise UnknownToolError(call.name, available=self._dispatcher.tool_names)
        if self._parallel_tools and len(calls) > 1:
            # gather keeps results in request order.
            return list(await asyncio.gather(*(self._run_call(call) for call in calls)))
        records: list[ToolCallRecord] = []
        for call in calls:
            records.append(await self._run_call(call))
        return records

    async def _run_call(self, call: FunctionCall) -> ToolCallRecord:
        await notify(
            self._observer,
            TurnEvent(type="tool_call", payload={"name": call.name, "args": dict(call.args)}),
        )
        record = await self._dispatcher.dispatch(call)
        await notify(self._observer, TurnEvent(type="tool_result", payload=record.to_dict()))
        return record

"""Async model client and endpoint adapter for OpenAI-compatible APIs."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence, cast

import httpx
from openai import APIConnectionError, AsyncOpenAI
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from . import prompts
from .orchestration.errors import ModelProtocolError
from .orchestration.parts import FunctionCall, Message, Role, Text
from .orchestration.types import StreamChunk
from .tool_specs import BIGQUERY_TOOLS, ToolSpec

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ClientSettings",
    "AIStreamEvent",
    "AIClient",
    "OpenAIChatEndpoint",
    "history_to_chat_messages",
]

CONTENT_DELTA = "content.delta"
TOOL_CALL_DONE = "tool_calls.function.arguments.done"

# Transport failures only; 429s are left to the orchestration rate-limit guard.
_TRANSIENT_ERRORS = (APIConnectionError, httpx.TimeoutException)


@dataclass(slots=True)
class ClientSettings:
    """Connection and retry parameters for :class:`AIClient`."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """A text delta or a completed tool call from the completion stream."""

    type: str
    content: str | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    parsed: Any | None = None


def _to_stream_event(event: ChatCompletionStreamEvent[Any]) -> AIStreamEvent | None:
    kind = getattr(event, "type", None)
    if kind == CONTENT_DELTA:
        delta = getattr(event, "delta", None)
        return AIStreamEvent(type=kind, content=str(delta)) if delta else None
    if kind == TOOL_CALL_DONE:
        return AIStreamEvent(
            type=kind,
            tool_name=getattr(event, "name", None),
            tool_index=getattr(event, "index", None),
            tool_arguments=getattr(event, "arguments", None),
            parsed=getattr(event, "parsed_arguments", None),
        )
    return None


class AIClient:
    """Streams chat completions, retrying connection failures and timeouts."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=dict(settings.default_headers or {}) or None,
            max_retries=0,
        )

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None = None,
        temperature: float | None = 0.2,
        max_tokens: int | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        request = self._build_request(messages, tools=tools, temperature=temperature, max_tokens=max_tokens)
        request.update(extra_params)
        LOGGER.debug("Streaming %s message(s) to %s", len(request["messages"]), self._settings.model)
        if self._settings.debug_logging:
            self._log_prompt_payload(request)

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(multiplier=self._settings.retry_min_seconds, max=self._settings.retry_max_seconds),
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        )
        async for attempt in retrying:
            with attempt:
                async with self._client.chat.completions.stream(**request) as stream:
                    async for raw_event in stream:
                        event = _to_stream_event(raw_event)
                        if event is not None:
                            yield event
                break

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result

    def _build_request(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        chat_messages = [cast(ChatCompletionMessageParam, dict(message)) for message in messages]
        if not chat_messages:
            raise ValueError("At least one message is required to start a chat")
        request: dict[str, Any] = {"model": self._settings.model, "messages": chat_messages}
        optional = {"tools": list(tools) if tools else None, "temperature": temperature, "max_tokens": max_tokens}
        request.update({key: value for key, value in optional.items() if value is not None})
        return request

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        LOGGER.debug("AI prompt payload:\n%s", json.dumps(payload, ensure_ascii=False, indent=2, default=repr))


# -----------------------------------------------------------------------------
# Endpoint adapter
# -----------------------------------------------------------------------------


def _call_id(message_index: int, call_index: int) -> str:
    return f"call_{message_index}_{call_index}"


def _tool_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


def history_to_chat_messages(
    history: Sequence[Message],
    *,
    system_prompt: str | None = None,
) -> list[dict[str, Any]]:
    """Convert provider-neutral history into chat completion messages.

    Tool call ids are derived from message and call positions, so a function
    message always refers to the calls of the model message right before it.
    """
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for index, message in enumerate(history):
        if message.role is Role.USER:
            messages.append({"role": "user", "content": message.text})
        elif message.role is Role.MODEL:
            entry: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            calls = message.function_calls
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": _call_id(index, call_index),
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(dict(call.args), ensure_ascii=False)},
                    }
                    for call_index, call in enumerate(calls)
                ]
            messages.append(entry)
        else:
            for call_index, response in enumerate(message.function_responses):
                content = (
                    prompts.format_tool_error(response.name, response.error)
                    if response.failed
                    else _tool_content(response.result)
                )
                messages.append({"role": "tool", "tool_call_id": _call_id(index - 1, call_index), "content": content})
    return messages


class OpenAIChatEndpoint:
    """Model endpoint that streams replies from an :class:`AIClient`."""

    def __init__(
        self,
        client: AIClient,
        *,
        tools: Sequence[ToolSpec] = BIGQUERY_TOOLS,
        system_prompt: str | None = None,
        temperature: float | None = 0.2,
    ) -> None:
        self._client = client
        self._tools = tuple(tools)
        self._system_prompt = system_prompt or prompts.system_prompt(tool_names=[spec.name for spec in self._tools])
        self._temperature = temperature

    @property
    def tools(self) -> tuple[ToolSpec, ...]:
        return self._tools

    async def send(self, history: Sequence[Message]) -> AsyncIterator[StreamChunk]:
        messages = history_to_chat_messages(history, system_prompt=self._system_prompt)
        return self._stream(messages)

    async def _stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        tools = [spec.to_openai_tool() for spec in self._tools] or None
        async for event in self._client.stream_chat(messages, tools=tools, temperature=self._temperature):
            if event.type == CONTENT_DELTA and event.content:
                yield StreamChunk((Text(event.content),))
            elif event.type == TOOL_CALL_DONE and event.tool_name:
                yield StreamChunk((FunctionCall(name=event.tool_name, args=_parse_arguments(event)),))


def _parse_arguments(event: AIStreamEvent) -> dict[str, Any]:
    if isinstance(event.parsed, Mapping):
        return dict(event.parsed)
    raw = (event.tool_arguments or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ModelProtocolError(f"Invalid JSON arguments for tool {event.tool_name}", arguments=raw) from exc
    if not isinstance(parsed, dict):
        raise ModelProtocolError(f"Arguments for tool {event.tool_name} must be a JSON object", arguments=raw)
    return parsed

"""Provider-neutral message parts and conversation history.

Every component of the engine speaks in terms of these types; provider wire
formats are converted at the edges (see :mod:`querypilot.ai.client`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence, Union

from .errors import HistoryInvariantError

__all__ = [
    "Text",
    "FunctionCall",
    "FunctionResponse",
    "Part",
    "Role",
    "Message",
    "ConversationHistory",
    "part_to_dict",
    "part_from_dict",
    "history_to_payload",
    "history_from_payload",
    "validate_history",
]


# -----------------------------------------------------------------------------
# Parts
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Text:
    """Plain text emitted by the user or the model."""

    content: str


@dataclass(slots=True, frozen=True)
class FunctionCall:
    """A model request to invoke a named capability."""

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class FunctionResponse:
    """Outcome of a function call, fed back to the model.

    Exactly one of ``result`` or ``error`` is meaningful: ``error`` set means
    the call failed and ``result`` is ignored.
    """

    name: str
    result: Any = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def payload(self) -> dict[str, Any]:
        """Return the response body as seen by the model."""
        if self.error is not None:
            return {"error": self.error}
        return {"result": self.result}


Part = Union[Text, FunctionCall, FunctionResponse]


def part_to_dict(part: Part) -> dict[str, Any]:
    if isinstance(part, Text):
        return {"type": "text", "content": part.content}
    if isinstance(part, FunctionCall):
        return {"type": "function_call", "name": part.name, "args": dict(part.args)}
    if isinstance(part, FunctionResponse):
        data: dict[str, Any] = {"type": "function_response", "name": part.name}
        if part.error is not None:
            data["error"] = part.error
        else:
            data["result"] = part.result
        return data
    raise TypeError(f"Unsupported part type: {type(part).__name__}")


def part_from_dict(payload: Mapping[str, Any]) -> Part:
    kind = payload.get("type")
    if kind == "text":
        return Text(content=str(payload.get("content") or ""))
    if kind == "function_call":
        args = payload.get("args") or {}
        if not isinstance(args, Mapping):
            raise ValueError(f"function_call args must be an object, got {type(args).__name__}")
        return FunctionCall(name=str(payload["name"]), args=dict(args))
    if kind == "function_response":
        error = payload.get("error")
        return FunctionResponse(
            name=str(payload["name"]),
            result=None if error is not None else payload.get("result"),
            error=None if error is None else str(error),
        )
    raise ValueError(f"Unknown part type: {kind!r}")


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


class Role(str, Enum):
    USER = "user"
    MODEL = "model"
    FUNCTION = "function"


_ALLOWED_PARTS: dict[Role, tuple[type, ...]] = {
    Role.USER: (Text,),
    Role.MODEL: (Text, FunctionCall),
    Role.FUNCTION: (FunctionResponse,),
}


@dataclass(slots=True, frozen=True)
class Message:
    """One entry of a conversation history.

    Construction validates that the parts are legal for the role: user
    messages carry text only, function messages carry function responses
    only, and model messages never carry function responses.
    """

    role: Role
    parts: tuple[Part, ...]

    def __post_init__(self) -> None:
        if not isinstance(self.parts, tuple):
            object.__setattr__(self, "parts", tuple(self.parts))
        role = Role(self.role)
        if role is not self.role:
            object.__setattr__(self, "role", role)
        allowed = _ALLOWED_PARTS[role]
        for part in self.parts:
            if not isinstance(part, allowed):
                raise ValueError(f"{role.value} message cannot contain {type(part).__name__} parts")

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=Role.USER, parts=(Text(text),))

    @classmethod
    def model(cls, parts: Iterable[Part]) -> Message:
        return cls(role=Role.MODEL, parts=tuple(parts))

    @classmethod
    def function(cls, responses: Iterable[FunctionResponse]) -> Message:
        return cls(role=Role.FUNCTION, parts=tuple(responses))

    @property
    def text(self) -> str:
        return "".join(part.content for part in self.parts if isinstance(part, Text))

    @property
    def function_calls(self) -> tuple[FunctionCall, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionCall))

    @property
    def function_responses(self) -> tuple[FunctionResponse, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionResponse))

    @property
    def has_function_calls(self) -> bool:
        return any(isinstance(part, FunctionCall) for part in self.parts)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "parts": [part_to_dict(part) for part in self.parts]}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Message:
        raw_parts = payload.get("parts") or []
        if not isinstance(raw_parts, Sequence) or isinstance(raw_parts, (str, bytes)):
            raise ValueError("message parts must be a list")
        return cls(
            role=Role(str(payload.get("role"))),
            parts=tuple(part_from_dict(item) for item in raw_parts),
        )


# Owned by the tool loop for the duration of a turn; append-only.
ConversationHistory = list[Message]


def history_to_payload(history: Sequence[Message]) -> list[dict[str, Any]]:
    return [message.to_dict() for message in history]


def history_from_payload(payload: Any) -> ConversationHistory:
    if not payload:
        return []
    if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
        raise ValueError("history payload must be a list of messages")
    return [Message.from_dict(item) for item in payload]


def validate_history(history: Sequence[Message]) -> None:
    """Raise :class:`HistoryInvariantError` when calls and responses do not pair up."""

    for index, message in enumerate(history):
        if message.role is Role.FUNCTION:
            previous = history[index - 1] if index > 0 else None
            if previous is None or previous.role is not Role.MODEL or not previous.has_function_calls:
                raise HistoryInvariantError(
                    "Function message is not preceded by a model message with function calls",
                    index=index,
                )
            continue
        if message.role is not Role.MODEL or not message.has_function_calls:
            continue
        following = history[index + 1] if index + 1 < len(history) else None
        if following is None or following.role is not Role.FUNCTION:
            raise HistoryInvariantError(
                "Model message with function calls is not followed by a function message",
                index=index,
            )
        call_names = [call.name for call in message.function_calls]
        response_names = [response.name for response in following.function_responses]
        if call_names != response_names:
            raise HistoryInvariantError(
                "Function responses are not aligned with the preceding calls",
                index=index,
                calls=call_names,
                responses=response_names,
            )

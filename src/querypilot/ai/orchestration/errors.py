"""Error types raised by the orchestration engine.

Everything here is fatal for the current turn. Recoverable tool failures are
never raised; they are captured on :class:`~.types.ToolCallRecord` and fed back
to the model instead.
"""

from __future__ import annotations

from typing import Any, Sequence

__all__ = [
    "ErrorCode",
    "OrchestrationError",
    "UnknownToolError",
    "ModelProtocolError",
    "ToolLoopExhausted",
    "RateLimitBudgetExceeded",
    "PersistenceError",
    "HistoryInvariantError",
]


class ErrorCode:
    """Machine readable codes attached to orchestration errors."""

    UNKNOWN_TOOL = "unknown_tool"
    MODEL_PROTOCOL = "model_protocol"
    TOOL_LOOP_EXHAUSTED = "tool_loop_exhausted"
    RATE_LIMIT_BUDGET = "rate_limit_budget_exceeded"
    PERSISTENCE = "persistence_failure"
    HISTORY_INVARIANT = "history_invariant"


class OrchestrationError(Exception):
    """Base class for fatal turn failures.

    Attributes:
        code: Machine readable error code (see :class:`ErrorCode`).
        message: Human readable description.
        details: Extra structured context for logs and callers.
    """

    code: str = "orchestration_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = dict(self.details)
        return data


class UnknownToolError(OrchestrationError):
    """The model asked for a tool the dispatcher does not know."""

    code = ErrorCode.UNKNOWN_TOOL

    def __init__(self, name: str, available: Sequence[str] = ()) -> None:
        super().__init__(f"Unknown tool: {name}", tool=name, available=sorted(available))
        self.tool_name = name


class ModelProtocolError(OrchestrationError):
    """The model endpoint returned something the engine cannot interpret."""

    code = ErrorCode.MODEL_PROTOCOL


class ToolLoopExhausted(OrchestrationError):
    """The model kept requesting tools beyond the configured round cap."""

    code = ErrorCode.TOOL_LOOP_EXHAUSTED

    def __init__(self, max_rounds: int, tool_call_count: int) -> None:
        super().__init__(
            f"Tool loop exceeded {max_rounds} model/tool round(s)",
            max_rounds=max_rounds,
            tool_call_count=tool_call_count,
        )
        self.max_rounds = max_rounds


class RateLimitBudgetExceeded(OrchestrationError):
    """Rate-limit backoff would exceed the configured wait budget."""

    code = ErrorCode.RATE_LIMIT_BUDGET

    def __init__(self, context: str, waited_ms: float, budget_ms: float, attempts: int) -> None:
        super().__init__(
            f"{context}: rate limited for {waited_ms / 1000:.1f}s, wait budget is {budget_ms / 1000:.1f}s",
            context=context,
            waited_ms=waited_ms,
            budget_ms=budget_ms,
            attempts=attempts,
        )


class PersistenceError(OrchestrationError):
    """The history store could not load or save a conversation."""

    code = ErrorCode.PERSISTENCE


class HistoryInvariantError(OrchestrationError):
    """A conversation history breaks the call/response pairing rule."""

    code = ErrorCode.HISTORY_INVARIANT

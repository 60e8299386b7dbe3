"""Tool dispatch: route model function calls to registered capabilities.

The dispatcher is a thin adapter over externally supplied handlers. It draws
the line between the two failure classes of a tool call:

* an unknown tool name is a registry/schema mismatch and is fatal
  (:class:`UnknownToolError` propagates);
* anything the handler raises, including a timeout, is a recoverable
  runtime failure captured on the :class:`ToolCallRecord` so the model can
  read it and adapt.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Union

from ...services import telemetry as telemetry_service
from .errors import UnknownToolError
from .parts import FunctionCall
from .types import ToolCallRecord

__all__ = ["ToolHandler", "ToolCallDispatcher"]

LOGGER = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolCallDispatcher:
    """Executes named tool calls against an injected handler registry.

    Example:
        >>> dispatcher = ToolCallDispatcher({"list_tables": list_tables})
        >>> record = await dispatcher.dispatch(FunctionCall("list_tables", {}))
        >>> record.result
        ['t1', 't2']
    """

    def __init__(
        self,
        registry: Mapping[str, ToolHandler] | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._registry: dict[str, ToolHandler] = {}
        self._timeout_seconds = timeout_seconds
        for name, handler in (registry or {}).items():
            self.register(name, handler)

    @property
    def tool_names(self) -> tuple[str, ...]:
        return tuple(self._registry)

    @property
    def timeout_seconds(self) -> float | None:
        return self._timeout_seconds

    def register(self, name: str, handler: ToolHandler) -> None:
        if not name:
            raise ValueError("Tool name must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for tool '{name}' is not callable")
        self._registry[name] = handler

    def has_tool(self, name: str) -> bool:
        return name in self._registry

    async def execute(self, name: str, args: Mapping[str, Any] | None = None) -> Any:
        """Run the handler registered under ``name``.

        Raises:
            UnknownToolError: If no handler is registered for ``name``.
            Exception: Whatever the handler raises.
        """
        handler = self._registry.get(name)
        if handler is None:
            raise UnknownToolError(name, available=self._registry.keys())
        pending = self._invoke(handler, dict(args or {}))
        if self._timeout_seconds is not None and self._timeout_seconds > 0:
            return await asyncio.wait_for(pending, timeout=self._timeout_seconds)
        return await pending

    @staticmethod
    async def _invoke(handler: ToolHandler, args: dict[str, Any]) -> Any:
        # Sync handlers (e.g. blocking warehouse clients) run in a worker thread.
        if inspect.iscoroutinefunction(handler):
            result = handler(args)
        else:
            result = await asyncio.to_thread(handler, args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def dispatch(self, call: FunctionCall) -> ToolCallRecord:
        """Execute ``call`` and capture its outcome as a record."""
        args = dict(call.args or {})
        start_time = time.perf_counter()
        try:
            result = await self.execute(call.name, args)
        except UnknownToolError:
            LOGGER.error("Model requested unknown tool %s", call.name)
            raise
        except asyncio.TimeoutError:
            duration_ms = (time.perf_counter() - start_time) * 1000
            error = f"Tool execution timed out after {self._timeout_seconds}s"
            LOGGER.warning("Tool %s timed out after %.1fs", call.name, self._timeout_seconds or 0)
            return self._failure(call.name, args, error, duration_ms)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            error = str(exc) or type(exc).__name__
            LOGGER.warning("Tool %s failed: %s", call.name, error)
            return self._failure(call.name, args, error, duration_ms)
        duration_ms = (time.perf_counter() - start_time) * 1000
        LOGGER.debug("Tool %s completed in %.1fms", call.name, duration_ms)
        return ToolCallRecord(name=call.name, args=args, result=result, duration_ms=duration_ms)

    @staticmethod
    def _failure(name: str, args: dict[str, Any], error: str, duration_ms: float) -> ToolCallRecord:
        telemetry_service.emit(
            "tool_call_failed",
            {"tool": name, "error": error, "duration_ms": round(duration_ms, 3)},
        )
        return ToolCallRecord(name=name, args=args, error=error, duration_ms=duration_ms)

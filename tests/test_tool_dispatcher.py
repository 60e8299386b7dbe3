"""Tests for routing function calls to registered tool handlers."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any

import pytest

from querypilot.ai.orchestration.errors import UnknownToolError
from querypilot.ai.orchestration.parts import FunctionCall
from querypilot.ai.orchestration.tool_dispatcher import ToolCallDispatcher


@pytest.mark.asyncio
async def test_sync_and_async_handlers(table_tools: ToolCallDispatcher) -> None:
    sync_record = await table_tools.dispatch(FunctionCall("list_tables", {"datasetId": "d"}))
    async_record = await table_tools.dispatch(FunctionCall("run_query", {"sqlQuery": "SELECT 1"}))

    assert sync_record.success
    assert sync_record.result == ["t1", "t2"]
    assert sync_record.args == {"datasetId": "d"}
    assert async_record.result == [{"sql": "SELECT 1", "rows": 3}]


@pytest.mark.asyncio
async def test_handler_failure_is_captured(telemetry_events) -> None:
    def run_query(args: dict[str, Any]) -> Any:
        raise RuntimeError("Syntax error: Unexpected keyword FROM")

    dispatcher = ToolCallDispatcher({"run_query": run_query})
    record = await dispatcher.dispatch(FunctionCall("run_query", {"sqlQuery": "SELECT FROM"}))

    assert not record.success
    assert record.result is None
    assert record.error == "Syntax error: Unexpected keyword FROM"
    assert telemetry_events[0]["event"] == "tool_call_failed"
    assert telemetry_events[0]["tool"] == "run_query"


@pytest.mark.asyncio
async def test_empty_exception_message_uses_type_name() -> None:
    def broken(args: dict[str, Any]) -> Any:
        raise KeyError()

    record = await ToolCallDispatcher({"broken": broken}).dispatch(FunctionCall("broken"))

    assert record.error == "KeyError"


@pytest.mark.asyncio
async def test_unknown_tool_raises() -> None:
    dispatcher = ToolCallDispatcher({"list_tables": lambda args: []})

    with pytest.raises(UnknownToolError) as excinfo:
        await dispatcher.dispatch(FunctionCall("drop_table"))

    assert excinfo.value.tool_name == "drop_table"
    assert excinfo.value.details["available"] == ["list_tables"]


@pytest.mark.asyncio
async def test_timeout_becomes_recoverable_error() -> None:
    async def slow(args: dict[str, Any]) -> Any:
        await asyncio.sleep(5)

    dispatcher = ToolCallDispatcher({"slow": slow}, timeout_seconds=0.01)
    record = await dispatcher.dispatch(FunctionCall("slow"))

    assert record.error == "Tool execution timed out after 0.01s"


def test_register_validates_inputs() -> None:
    dispatcher = ToolCallDispatcher()

    with pytest.raises(ValueError):
        dispatcher.register("", lambda args: None)
    with pytest.raises(TypeError):
        dispatcher.register("x", "not callable")  # type: ignore[arg-type]

    dispatcher.register("x", lambda args: None)
    assert dispatcher.has_tool("x")
    assert dispatcher.tool_names == ("x",)


@pytest.mark.asyncio
async def test_sync_handler_runs_off_loop_and_honours_timeout() -> None:
    loop_thread = threading.get_ident()
    seen: list[int] = []

    def list_tables(args: dict[str, Any]) -> Any:
        seen.append(threading.get_ident())
        return ["t1"]

    def slow_query(args: dict[str, Any]) -> Any:
        time.sleep(0.3)

    dispatcher = ToolCallDispatcher({"list_tables": list_tables, "run_query": slow_query}, timeout_seconds=0.05)

    listed = await dispatcher.dispatch(FunctionCall("list_tables"))
    timed_out = await dispatcher.dispatch(FunctionCall("run_query", {"sqlQuery": "SELECT 1"}))

    assert listed.result == ["t1"]
    assert seen and seen[0] != loop_thread
    assert timed_out.error == "Tool execution timed out after 0.05s"

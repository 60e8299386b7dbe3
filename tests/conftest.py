"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from querypilot.ai.orchestration.rate_limit import RateLimitGuard
from querypilot.ai.orchestration.tool_dispatcher import ToolCallDispatcher
from querypilot.services import telemetry as telemetry_service

from tests.helpers import RecordingSleep


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def guard(recording_sleep: RecordingSleep) -> RateLimitGuard:
    return RateLimitGuard(floor_ms=60_000, sleep=recording_sleep)


@pytest.fixture
def table_tools() -> ToolCallDispatcher:
    def list_tables(args: dict[str, Any]) -> list[str]:
        return ["t1", "t2"]

    async def run_query(args: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"sql": args.get("sqlQuery"), "rows": 3}]

    return ToolCallDispatcher({"list_tables": list_tables, "run_query": run_query})


@pytest.fixture
def telemetry_events() -> Any:
    """Collect emitted telemetry events by name for the duration of a test."""

    captured: list[dict[str, Any]] = []
    names = (
        "rate_limit_retry",
        "tool_call_failed",
        "tool_loop_exhausted",
        "template_correction",
        "chat_turn_completed",
    )
    callbacks: list[tuple[str, Callable[[dict[str, Any]], None]]] = []
    for name in names:
        callback = captured.append
        telemetry_service.register_event_listener(name, callback)
        callbacks.append((name, callback))
    yield captured
    for name, callback in callbacks:
        telemetry_service.unregister_event_listener(name, callback)

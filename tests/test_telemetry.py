"""Tests for the services.telemetry helpers."""

from __future__ import annotations

import pytest

from querypilot.services import telemetry as telemetry_service


def _make_summary(**overrides: object) -> telemetry_service.TurnSummary:
    base: dict[str, object] = {
        "conversation_id": "c1",
        "query_type": "sales",
        "rounds": 1,
        "tool_names": ("list_tables", "run_query"),
        "tool_errors": 1,
        "valid": True,
        "missing_sections": (),
        "corrections": 0,
        "duration_ms": 12.5,
        "timestamp": 1.0,
    }
    base.update(overrides)
    return telemetry_service.TurnSummary(**base)  # type: ignore[arg-type]


def test_emit_reaches_registered_listeners() -> None:
    received: list[dict] = []
    telemetry_service.register_event_listener("rate_limit_retry", received.append)
    try:
        telemetry_service.emit("rate_limit_retry", {"attempt": 1})
        telemetry_service.emit("tool_call_failed", {"tool": "x"})
    finally:
        telemetry_service.unregister_event_listener("rate_limit_retry", received.append)

    telemetry_service.emit("rate_limit_retry", {"attempt": 2})
    assert received == [{"event": "rate_limit_retry", "attempt": 1}]


def test_listening_context_manager() -> None:
    received: list[dict] = []

    with telemetry_service.listening("template_correction", received.append):
        telemetry_service.emit("template_correction", {"schema": "sales"})
    telemetry_service.emit("template_correction", {"schema": "ignored"})

    assert [event["schema"] for event in received] == ["sales"]


def test_failing_listener_does_not_break_emit() -> None:
    received: list[dict] = []

    def _boom(payload: dict) -> None:
        raise RuntimeError("listener bug")

    with telemetry_service.listening("chat_turn_completed", _boom):
        with telemetry_service.listening("chat_turn_completed", received.append):
            telemetry_service.emit("chat_turn_completed")

    assert received == [{"event": "chat_turn_completed"}]


def test_in_memory_sink_is_bounded() -> None:
    sink = telemetry_service.InMemoryTelemetrySink(capacity=10)
    for index in range(15):
        sink.record(_make_summary(conversation_id=f"c{index}"))

    assert len(sink) == 10
    assert [event.conversation_id for event in sink.tail(2)] == ["c13", "c14"]
    assert sink.tail(0) == []
    sink.clear()
    assert len(sink) == 0


def test_in_memory_sink_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        telemetry_service.InMemoryTelemetrySink(capacity=0)


def test_summarize_turns() -> None:
    totals = telemetry_service.summarize_turns(
        [_make_summary(), _make_summary(valid=False, corrections=1, tool_errors=0)]
    )

    assert totals is not None
    assert totals.turn_count == 2
    assert totals.tool_calls == 4
    assert totals.tool_errors == 1
    assert totals.invalid_turns == 1
    assert totals.corrections == 1
    assert totals.as_status_text() == "Turns 2 · Tools 4 · Tool errors 1 · Off-template 1"
    assert telemetry_service.summarize_turns([]) is None

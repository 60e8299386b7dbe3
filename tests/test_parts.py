"""Tests for message parts, history payloads and history validation."""

from __future__ import annotations

import pytest

from querypilot.ai.orchestration.errors import HistoryInvariantError
from querypilot.ai.orchestration.parts import (
    FunctionCall,
    FunctionResponse,
    Message,
    Role,
    Text,
    history_from_payload,
    history_to_payload,
    validate_history,
)


def test_message_rejects_parts_illegal_for_role() -> None:
    with pytest.raises(ValueError):
        Message(role=Role.USER, parts=(FunctionCall("list_tables"),))
    with pytest.raises(ValueError):
        Message(role=Role.MODEL, parts=(FunctionResponse("list_tables", result=[]),))
    with pytest.raises(ValueError):
        Message(role=Role.FUNCTION, parts=(Text("hi"),))


def test_message_accessors() -> None:
    message = Message.model([Text("Checking "), FunctionCall("list_tables", {"datasetId": "d"}), Text("now")])

    assert message.text == "Checking now"
    assert message.has_function_calls
    assert [call.name for call in message.function_calls] == ["list_tables"]
    assert Message.user("hello").role is Role.USER


def test_function_response_payload_prefers_error() -> None:
    ok = FunctionResponse("run_query", result={"rows": 1})
    failed = FunctionResponse("run_query", result={"rows": 1}, error="boom")

    assert ok.payload() == {"result": {"rows": 1}}
    assert failed.failed
    assert failed.payload() == {"error": "boom"}


def test_history_payload_preserves_messages() -> None:
    history = [
        Message.user("List my tables"),
        Message.model([FunctionCall("list_tables", {})]),
        Message.function([FunctionResponse("list_tables", result=["t1", "t2"])]),
        Message.model([Text("You have 2 tables.")]),
    ]

    restored = history_from_payload(history_to_payload(history))

    assert restored == history


def test_history_from_payload_rejects_unknown_part_type() -> None:
    with pytest.raises(ValueError):
        history_from_payload([{"role": "user", "parts": [{"type": "image"}]}])


def test_history_from_payload_empty() -> None:
    assert history_from_payload(None) == []
    assert history_from_payload([]) == []


def test_validate_history_accepts_paired_calls() -> None:
    validate_history(
        [
            Message.user("q"),
            Message.model([FunctionCall("a"), FunctionCall("b")]),
            Message.function([FunctionResponse("a", result=1), FunctionResponse("b", error="x")]),
            Message.model([Text("done")]),
        ]
    )


def test_validate_history_rejects_dangling_call() -> None:
    with pytest.raises(HistoryInvariantError):
        validate_history([Message.user("q"), Message.model([FunctionCall("a")])])


def test_validate_history_rejects_misaligned_responses() -> None:
    with pytest.raises(HistoryInvariantError) as excinfo:
        validate_history(
            [
                Message.model([FunctionCall("a"), FunctionCall("b")]),
                Message.function([FunctionResponse("b", result=1), FunctionResponse("a", result=2)]),
            ]
        )
    assert excinfo.value.details["calls"] == ["a", "b"]


def test_validate_history_rejects_orphan_function_message() -> None:
    with pytest.raises(HistoryInvariantError):
        validate_history([Message.user("q"), Message.function([FunctionResponse("a", result=1)])])

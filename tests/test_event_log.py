"""Tests for the per-turn JSONL event log."""

from __future__ import annotations

import json
from pathlib import Path

from querypilot.ai.orchestration.event_log import NullTurnEventLogRun, TurnEventLogger


def _read_entries(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def test_event_logger_writes_entries(tmp_path: Path) -> None:
    logger = TurnEventLogger(enabled=True, base_dir=tmp_path)
    run = logger.start_run(conversation_id="conv/42", message="List my tables", history_length=0, metadata={"query_type": None})

    with run:
        run.log_model_response(round_index=0, message={"role": "model", "parts": []}, streamed=True)
        run.log_tool_batch(round_index=1, records=[{"name": "list_tables", "result": object()}])
        run.log_rate_limit({"retry_in_seconds": 60.0, "attempt": 1})
        run.log_completion(response_text="Done", tool_call_count=1, valid=False, missing_sections=["## B"])

    log_files = list(tmp_path.glob("turn-*-conv42.jsonl"))
    assert len(log_files) == 1
    entries = _read_entries(log_files[0])
    assert [entry["event"] for entry in entries] == ["start", "model", "tools", "rate_limit", "completion"]
    assert entries[0]["message"] == "List my tables"
    assert entries[2]["tool_records"][0]["result"].startswith("<object object")
    assert entries[-1]["status"] == "success"
    assert entries[-1]["missing_sections"] == ["## B"]


def test_event_logger_records_failure_on_exception(tmp_path: Path) -> None:
    logger = TurnEventLogger(enabled=True, base_dir=tmp_path)
    run = logger.start_run(conversation_id="c1", message="q", history_length=3)

    try:
        with run:
            raise RuntimeError("model unavailable")
    except RuntimeError:
        pass

    entries = _read_entries(next(tmp_path.glob("*.jsonl")))
    assert entries[-1]["event"] == "failure"
    assert entries[-1]["message"] == "model unavailable"


def test_event_logger_disabled_is_noop(tmp_path: Path) -> None:
    logger = TurnEventLogger(enabled=False, base_dir=tmp_path)
    run = logger.start_run(conversation_id="c1", message="q", history_length=0)

    with run:
        run.log_model_response(round_index=0, message={}, streamed=False)
        run.log_completion(response_text="", tool_call_count=0)

    assert isinstance(run, NullTurnEventLogRun)
    assert list(tmp_path.iterdir()) == []

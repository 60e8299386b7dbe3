"""Tests for conversation history stores."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from querypilot.ai.orchestration.errors import PersistenceError
from querypilot.ai.orchestration.parts import FunctionCall, FunctionResponse, Message, Text
from querypilot.services.conversation_store import HistoryStore, InMemoryHistoryStore, JsonHistoryStore

HISTORY = [
    Message.user("List my tables"),
    Message.model([FunctionCall("list_tables", {"datasetId": "nextwave"})]),
    Message.function([FunctionResponse("list_tables", result=["t1", "t2"])]),
    Message.model([Text("You have 2 tables.")]),
]


def test_in_memory_store_roundtrip() -> None:
    store = InMemoryHistoryStore()
    store.save("c1", HISTORY)

    loaded = store.load("c1")
    loaded.append(Message.user("mutating the copy"))

    assert store.load("c1") == HISTORY
    assert store.list_conversations() == ["c1"]
    store.reset("c1")
    assert store.load("c1") == []
    assert store.delete("c1")
    assert not store.delete("c1")
    assert isinstance(store, HistoryStore)


def test_json_store_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "conversations.json"
    JsonHistoryStore(path).save("c1", HISTORY)

    reopened = JsonHistoryStore(path)

    assert reopened.load("c1") == HISTORY
    assert reopened.load("unknown") == []
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert "updated_at" in payload["conversations"]["c1"]
    assert not path.with_suffix(".tmp").exists()


def test_json_store_keeps_other_conversations(tmp_path: Path) -> None:
    store = JsonHistoryStore(tmp_path / "conversations.json")
    store.save("a", HISTORY[:1])
    store.save("b", HISTORY)

    store.reset("a")

    assert store.load("a") == []
    assert store.load("b") == HISTORY
    assert store.list_conversations() == ["a", "b"]
    assert store.delete("a")
    assert store.list_conversations() == ["b"]


def test_json_store_missing_file_is_empty(tmp_path: Path) -> None:
    store = JsonHistoryStore(tmp_path / "nested" / "store.json")

    assert store.load("c1") == []
    assert store.list_conversations() == []


def test_json_store_corrupt_file_raises(tmp_path: Path) -> None:
    path = tmp_path / "store.json"
    path.write_text("{truncated", encoding="utf-8")

    with pytest.raises(PersistenceError):
        JsonHistoryStore(path).load("c1")


def test_json_store_malformed_history_raises(tmp_path: Path) -> None:
    path = tmp_path / "store.json"
    path.write_text(
        json.dumps({"version": 1, "conversations": {"c1": {"messages": [{"role": "robot", "parts": []}]}}}),
        encoding="utf-8",
    )

    with pytest.raises(PersistenceError) as excinfo:
        JsonHistoryStore(path).load("c1")
    assert excinfo.value.details["conversation_id"] == "c1"


def test_json_store_unserializable_result_raises(tmp_path: Path) -> None:
    store = JsonHistoryStore(tmp_path / "store.json")
    history = [Message.function([FunctionResponse("run_query", result=object())])]

    with pytest.raises(PersistenceError):
        store.save("c1", history)

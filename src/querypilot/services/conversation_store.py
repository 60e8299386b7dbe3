"""Conversation history persistence."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ..ai.orchestration.errors import PersistenceError
from ..ai.orchestration.parts import Message, history_from_payload, history_to_payload

__all__ = ["HistoryStore", "InMemoryHistoryStore", "JsonHistoryStore"]

LOGGER = logging.getLogger(__name__)
_STORE_VERSION = 1
_DEFAULT_STORE_PATH = Path.home() / ".querypilot" / "conversations.json"


@runtime_checkable
class HistoryStore(Protocol):
    """Load/save contract used by the conversation engine.

    Implementations may be synchronous or return awaitables.
    """

    def load(self, conversation_id: str) -> list[Message]:
        ...

    def save(self, conversation_id: str, history: Sequence[Message]) -> None:
        ...

    def reset(self, conversation_id: str) -> None:
        ...


class InMemoryHistoryStore:
    """Process-local store, mainly for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._conversations: dict[str, list[Message]] = {}
        self._lock = Lock()

    def load(self, conversation_id: str) -> list[Message]:
        with self._lock:
            return list(self._conversations.get(conversation_id, ()))

    def save(self, conversation_id: str, history: Sequence[Message]) -> None:
        with self._lock:
            self._conversations[conversation_id] = list(history)

    def reset(self, conversation_id: str) -> None:
        with self._lock:
            self._conversations[conversation_id] = []

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            return self._conversations.pop(conversation_id, None) is not None

    def list_conversations(self) -> list[str]:
        with self._lock:
            return sorted(self._conversations)


class JsonHistoryStore:
    """Stores every conversation in one versioned JSON document.

    Writes go to a temporary file that atomically replaces the target, so a
    crash mid-write never leaves a truncated store behind. Read or write
    failures raise :class:`PersistenceError`.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path).expanduser() if path else _DEFAULT_STORE_PATH
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, conversation_id: str) -> list[Message]:
        with self._lock:
            conversations = self._read_conversations()
        entry = conversations.get(conversation_id)
        if not entry:
            return []
        try:
            return history_from_payload(entry.get("messages"))
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(
                f"Stored history for {conversation_id} is malformed: {exc}",
                conversation_id=conversation_id,
                path=str(self._path),
            ) from exc

    def save(self, conversation_id: str, history: Sequence[Message]) -> None:
        with self._lock:
            conversations = self._read_conversations()
            conversations[conversation_id] = {
                "messages": history_to_payload(history),
                "updated_at": datetime.now(UTC).isoformat(),
            }
            self._write_conversations(conversations)
        LOGGER.debug("Saved %d message(s) for conversation %s", len(history), conversation_id)

    def reset(self, conversation_id: str) -> None:
        self.save(conversation_id, [])

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            conversations = self._read_conversations()
            removed = conversations.pop(conversation_id, None) is not None
            if removed:
                self._write_conversations(conversations)
        return removed

    def list_conversations(self) -> list[str]:
        with self._lock:
            return sorted(self._read_conversations())

    def _read_conversations(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Unable to read history store {self._path}: {exc}", path=str(self._path)) from exc
        if not isinstance(data, Mapping):
            raise PersistenceError(f"History store {self._path} is not a JSON object", path=str(self._path))
        version = data.get("version")
        if version not in (None, _STORE_VERSION):
            LOGGER.warning("History store %s has version %s, expected %s", self._path, version, _STORE_VERSION)
        conversations = data.get("conversations") or {}
        if not isinstance(conversations, Mapping):
            raise PersistenceError(f"History store {self._path} has invalid conversations", path=str(self._path))
        return {str(key): dict(value) for key, value in conversations.items() if isinstance(value, Mapping)}

    def _write_conversations(self, conversations: Mapping[str, Any]) -> None:
        payload = {"version": _STORE_VERSION, "conversations": dict(conversations)}
        try:
            body = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".tmp")
            tmp_path.write_text(body, encoding="utf-8")
            tmp_path.replace(self._path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Unable to write history store {self._path}: {exc}", path=str(self._path)) from exc

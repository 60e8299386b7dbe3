"""Debug event logging for chat turns, one JSONL file per turn.

Each line is a JSON object with ``event`` and ``timestamp`` keys plus the
event's fields. A run always ends with exactly one ``completion`` or
``failure`` line; values that are not JSON-serializable are written as their
``repr``.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any, Mapping, Sequence

from ...utils import logging as logging_utils

__all__ = [
    "TurnEventLog",
    "TurnEventLogger",
    "TurnEventLogRun",
    "NullTurnEventLogRun",
]

LOGGER = logging.getLogger(__name__)


class NullTurnEventLogRun:
    """Run used when event logging is disabled; every call is a no-op."""

    path: Path | None = None

    def __enter__(self) -> NullTurnEventLogRun:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False

    def log_model_response(self, **_: Any) -> None:
        pass

    def log_tool_batch(self, **_: Any) -> None:
        pass

    def log_rate_limit(self, payload: Mapping[str, Any]) -> None:
        pass

    def log_completion(self, **_: Any) -> None:
        pass

    def log_failure(self, **_: Any) -> None:
        pass


class TurnEventLogRun:
    """Append-only JSONL writer for a single turn."""

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._stream: IO[str] | None = path.open("w", encoding="utf-8")
        self._write("start", context)

    @property
    def closed(self) -> bool:
        return self._stream is None

    def __enter__(self) -> TurnEventLogRun:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self.closed:
            reason = (str(exc) or type(exc).__name__) if exc is not None else "turn ended without completion"
            self.log_failure(message=reason)
        return False

    def log_model_response(self, *, round_index: int, message: Mapping[str, Any], streamed: bool) -> None:
        self._write("model", {"round": round_index, "message": message, "streamed": streamed})

    def log_tool_batch(self, *, round_index: int, records: Sequence[Mapping[str, Any]]) -> None:
        if records:
            self._write("tools", {"round": round_index, "tool_records": list(records)})

    def log_rate_limit(self, payload: Mapping[str, Any]) -> None:
        self._write("rate_limit", payload)

    def log_completion(
        self,
        *,
        response_text: str,
        tool_call_count: int,
        valid: bool = True,
        missing_sections: Sequence[str] = (),
    ) -> None:
        self._finish(
            "completion",
            {
                "status": "success",
                "response_text": response_text,
                "tool_call_count": tool_call_count,
                "valid": valid,
                "missing_sections": list(missing_sections),
            },
        )

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        fields: dict[str, Any] = {"status": "failure", "message": message}
        if details:
            fields["details"] = dict(details)
        self._finish("failure", fields)

    def _finish(self, event: str, fields: Mapping[str, Any]) -> None:
        if self._stream is None:
            return
        self._write(event, fields)
        stream, self._stream = self._stream, None
        try:
            stream.close()
        except OSError:  # pragma: no cover - best effort close
            LOGGER.debug("Failed to close event log %s", self.path, exc_info=True)

    def _write(self, event: str, fields: Mapping[str, Any]) -> None:
        if self._stream is None:
            return
        entry = {"event": event, "timestamp": time.time(), **{str(key): value for key, value in fields.items()}}
        self._stream.write(json.dumps(entry, ensure_ascii=False, default=repr) + "\n")
        self._stream.flush()


TurnEventLog = TurnEventLogRun | NullTurnEventLogRun


class TurnEventLogger:
    """Creates per-turn event logs under ``base_dir`` when enabled.

    The default directory is ``events/`` next to the configured log file.
    """

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir).expanduser() if base_dir else None

    @property
    def base_dir(self) -> Path:
        if self._base_dir is not None:
            return self._base_dir
        log_path = logging_utils.get_log_path()
        root = log_path.parent if log_path is not None else Path.home() / ".querypilot" / "logs"
        return root / "events"

    def start_run(
        self,
        *,
        conversation_id: str,
        message: str,
        history_length: int,
        metadata: Mapping[str, Any] | None = None,
    ) -> TurnEventLog:
        if not self.enabled:
            return NullTurnEventLogRun()
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S-%f")
        slug = "".join(ch for ch in conversation_id if ch.isalnum())[:12] or "turn"
        path = self.base_dir / f"turn-{stamp}-{slug}.jsonl"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            run = TurnEventLogRun(
                path,
                context={
                    "conversation_id": conversation_id,
                    "message": message,
                    "history_length": history_length,
                    "metadata": dict(metadata or {}),
                },
            )
        except OSError:
            LOGGER.warning("Unable to open turn event log at %s", path, exc_info=True)
            return NullTurnEventLogRun()
        LOGGER.debug("Turn event log started: %s", path)
        return run

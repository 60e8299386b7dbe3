"""Conversation engine: the public entry point for chat turns.

One turn is: load history, prepare the trigger brief, attach routing hints,
run the tool loop under template enforcement, parse the trend table, render
the artifact, and persist history. Turns on the same conversation are
serialized; turns on different conversations share nothing mutable.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Protocol, Sequence, runtime_checkable

from ...services import telemetry as telemetry_service
from .. import prompts
from .errors import PersistenceError
from .event_log import TurnEventLogger
from .parts import Message
from .rate_limit import RateLimitGuard
from .routing import QueryRouter, RoutingSuggestion, format_routing_hint
from .template_validator import TemplateOutcome, TemplateValidator
from .tool_dispatcher import ToolCallDispatcher
from .tool_loop import DEFAULT_MAX_ROUNDS, ToolCallLoop
from .trigger import PreparedMessage, TrendRow, TriggerAdapter
from .types import ModelEndpoint, ToolCallRecord, TurnObserver

if TYPE_CHECKING:
    from ...services.conversation_store import HistoryStore

__all__ = ["EngineConfig", "ChatResult", "ArtifactRenderer", "ConversationEngine"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class EngineConfig:
    """Immutable runtime options for :class:`ConversationEngine`."""

    max_rounds: int | None = DEFAULT_MAX_ROUNDS
    parallel_tools: bool = False
    event_logging: bool = False
    event_log_dir: str | None = None


@runtime_checkable
class ArtifactRenderer(Protocol):
    """Turns a parsed trend table into a downstream artifact (e.g. a PDF)."""

    def render(self, rows: Sequence[TrendRow], payload: Mapping[str, Any]) -> Any:
        ...


@dataclass(slots=True, frozen=True)
class ChatResult:
    """Everything a caller learns from one turn."""

    text: str
    tool_calls: tuple[ToolCallRecord, ...] = ()
    valid: bool = True
    missing_sections: tuple[str, ...] = ()
    structured_table: list[TrendRow] | None = None
    routing: RoutingSuggestion | None = None
    artifact: Any = None
    rounds: int = 0
    corrections: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "tool_calls": [record.to_dict() for record in self.tool_calls],
            "valid": self.valid,
            "missing_sections": list(self.missing_sections),
            "structured_table": (
                [row.to_dict() for row in self.structured_table] if self.structured_table is not None else None
            ),
            "routing": self.routing.to_dict() if self.routing else None,
        }


class ConversationEngine:
    """Runs chat turns against a model endpoint, a tool registry and a history store.

    Example:
        >>> engine = ConversationEngine(endpoint, dispatcher, InMemoryHistoryStore())
        >>> result = await engine.chat("c1", "List my tables")
        >>> result.text
        'You have 2 tables: t1, t2.'
    """

    def __init__(
        self,
        endpoint: ModelEndpoint,
        dispatcher: ToolCallDispatcher,
        store: HistoryStore,
        *,
        router: QueryRouter | None = None,
        trigger: TriggerAdapter | None = None,
        validator: TemplateValidator | None = None,
        guard: RateLimitGuard | None = None,
        renderer: ArtifactRenderer | None = None,
        config: EngineConfig | None = None,
        telemetry_sink: telemetry_service.TelemetrySink | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._dispatcher = dispatcher
        self._store = store
        self._router = router
        self._trigger = trigger
        self._validator = validator or TemplateValidator()
        self._guard = guard or RateLimitGuard()
        self._renderer = renderer
        self._config = config or EngineConfig()
        self._telemetry_sink = telemetry_sink
        self._event_logger = TurnEventLogger(
            enabled=self._config.event_logging,
            base_dir=self._config.event_log_dir,
        )
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def dispatcher(self) -> ToolCallDispatcher:
        return self._dispatcher

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def chat(
        self,
        conversation_id: str,
        message: str,
        *,
        observer: TurnObserver | None = None,
    ) -> ChatResult:
        """Run one turn for ``conversation_id``.

        History is saved whether the turn succeeds or fails. Fatal turn
        errors and :class:`PersistenceError` propagate to the caller.
        """
        lock = self._lock_for(conversation_id)
        async with lock:
            return await self._run_turn(conversation_id, message, observer)

    async def reset(self, conversation_id: str) -> None:
        async with self._lock_for(conversation_id):
            await self._call_store("reset", conversation_id)
        LOGGER.info("Conversation %s reset", conversation_id)

    async def history(self, conversation_id: str) -> list[Message]:
        async with self._lock_for(conversation_id):
            return await self._load(conversation_id)

    # ------------------------------------------------------------------
    # Turn pipeline
    # ------------------------------------------------------------------
    async def _run_turn(
        self,
        conversation_id: str,
        message: str,
        observer: TurnObserver | None,
    ) -> ChatResult:
        started = time.perf_counter()
        history = await self._load(conversation_id)

        prepared = self._trigger.prepare(message) if self._trigger else PreparedMessage(message)
        routing = self._router.route(message) if self._router else None
        schema = routing.schema if routing else None
        turn_message = prompts.routing_block(
            prepared.augmented_message,
            format_routing_hint(routing),
            schema.hint_text if schema else "",
        )

        event_log = self._event_logger.start_run(
            conversation_id=conversation_id,
            message=turn_message,
            history_length=len(history),
            metadata={
                "query_type": routing.query_type if routing else None,
                "trigger": prepared.pending.source if prepared.pending else None,
            },
        )
        loop = ToolCallLoop(
            self._endpoint,
            self._dispatcher,
            history,
            guard=self._guard,
            max_rounds=self._config.max_rounds,
            parallel_tools=self._config.parallel_tools,
            observer=observer,
            event_log=event_log,
        )
        try:
            with event_log:
                outcome = await self._validator.enforce(loop.run, turn_message, schema)
                event_log.log_completion(
                    response_text=outcome.text,
                    tool_call_count=len(outcome.tool_calls),
                    valid=outcome.valid,
                    missing_sections=outcome.missing_sections,
                )
        finally:
            await self._save(conversation_id, history)

        table: list[TrendRow] | None = None
        artifact: Any = None
        if self._trigger is not None and prepared.pending is not None:
            table = self._trigger.finalize(outcome.text, prepared.pending)
            artifact = await self._render(table, prepared.pending.payload)

        duration_ms = (time.perf_counter() - started) * 1000
        self._record_turn(conversation_id, routing, outcome, duration_ms)
        return ChatResult(
            text=outcome.text,
            tool_calls=outcome.tool_calls,
            valid=outcome.valid,
            missing_sections=outcome.missing_sections,
            structured_table=table,
            routing=routing,
            artifact=artifact,
            rounds=outcome.rounds,
            corrections=outcome.corrections,
        )

    async def _render(self, rows: list[TrendRow], payload: Mapping[str, Any]) -> Any:
        if self._renderer is None or not rows:
            return None
        try:
            result = self._renderer.render(rows, payload)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            LOGGER.exception("Artifact rendering failed for %d trend row(s)", len(rows))
            return None
        return result

    def _record_turn(
        self,
        conversation_id: str,
        routing: RoutingSuggestion | None,
        outcome: TemplateOutcome,
        duration_ms: float,
    ) -> None:
        summary = telemetry_service.TurnSummary(
            conversation_id=conversation_id,
            query_type=routing.query_type if routing else None,
            rounds=outcome.rounds,
            tool_names=tuple(record.name for record in outcome.tool_calls),
            tool_errors=sum(1 for record in outcome.tool_calls if not record.success),
            valid=outcome.valid,
            missing_sections=tuple(outcome.missing_sections),
            corrections=outcome.corrections,
            duration_ms=round(duration_ms, 3),
            timestamp=time.time(),
        )
        if self._telemetry_sink is not None:
            self._telemetry_sink.record(summary)
        telemetry_service.emit(
            "chat_turn_completed",
            {
                "conversation_id": conversation_id,
                "query_type": summary.query_type,
                "tool_call_count": len(summary.tool_names),
                "valid": summary.valid,
                "duration_ms": summary.duration_ms,
            },
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    async def _load(self, conversation_id: str) -> list[Message]:
        history = await self._call_store("load", conversation_id)
        return list(history or [])

    async def _save(self, conversation_id: str, history: list[Message]) -> None:
        await self._call_store("save", conversation_id, list(history))

    async def _call_store(self, operation: str, *args: Any) -> Any:
        try:
            method = getattr(self._store, operation)
            if inspect.iscoroutinefunction(method):
                result = await method(*args)
            else:
                # File-backed stores block; keep them off the event loop.
                result = await asyncio.to_thread(method, *args)
                if inspect.isawaitable(result):
                    result = await result
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                f"History store {operation} failed: {exc}",
                operation=operation,
                conversation_id=args[0] if args else None,
            ) from exc
        return result

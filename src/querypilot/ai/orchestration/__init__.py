"""Conversation orchestration: tool loop, streaming, rate limits and templates."""

from .errors import (
    ErrorCode,
    HistoryInvariantError,
    ModelProtocolError,
    OrchestrationError,
    PersistenceError,
    RateLimitBudgetExceeded,
    ToolLoopExhausted,
    UnknownToolError,
)
from .parts import (
    FunctionCall,
    FunctionResponse,
    Message,
    Role,
    Text,
    history_from_payload,
    history_to_payload,
    validate_history,
)
from .types import (
    LoopResult,
    ModelEndpoint,
    ResponseSchema,
    StreamChunk,
    ToolCallRecord,
    TurnEvent,
    TurnObserver,
)
from .stream_aggregator import StreamingResponseAggregator
from .rate_limit import RateLimitGuard, classify_rate_limit
from .tool_dispatcher import ToolCallDispatcher
from .tool_loop import LoopState, ToolCallLoop
from .template_validator import TemplateOutcome, TemplateValidator
from .trigger import PendingTrigger, PreparedMessage, TrendRow, TriggerAdapter
from .routing import KeywordQueryRouter, ResponseSchemaCatalog, RoutingSuggestion

# Engine facade
from .engine import ArtifactRenderer, ChatResult, ConversationEngine, EngineConfig

__all__ = [
    # Errors
    "ErrorCode",
    "OrchestrationError",
    "UnknownToolError",
    "ModelProtocolError",
    "ToolLoopExhausted",
    "RateLimitBudgetExceeded",
    "PersistenceError",
    "HistoryInvariantError",
    # Parts
    "Text",
    "FunctionCall",
    "FunctionResponse",
    "Role",
    "Message",
    "history_to_payload",
    "history_from_payload",
    "validate_history",
    # Types
    "StreamChunk",
    "ToolCallRecord",
    "ResponseSchema",
    "LoopResult",
    "TurnEvent",
    "TurnObserver",
    "ModelEndpoint",
    # Components
    "StreamingResponseAggregator",
    "RateLimitGuard",
    "classify_rate_limit",
    "ToolCallDispatcher",
    "LoopState",
    "ToolCallLoop",
    "TemplateValidator",
    "TemplateOutcome",
    "TriggerAdapter",
    "PendingTrigger",
    "PreparedMessage",
    "TrendRow",
    "KeywordQueryRouter",
    "ResponseSchemaCatalog",
    "RoutingSuggestion",
    # Engine
    "ConversationEngine",
    "EngineConfig",
    "ChatResult",
    "ArtifactRenderer",
]

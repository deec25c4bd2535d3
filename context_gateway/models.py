"""Core data records: context chunks, windows, usage, rate limits, continuation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


# --- Enums ---


class SourceKind(str, Enum):
    DOCUMENT = "document"
    USER = "user"
    ASSISTANT = "assistant"

    @property
    def is_conversation(self) -> bool:
        return self is not SourceKind.DOCUMENT


class StreamState(str, Enum):
    """Lifecycle of one generation call.

    IDLE -> STREAMING -> COMPLETED | TRUNCATED | FAILED | CANCELLED
    TRUNCATED -> STREAMING (continuation)
    """

    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TRUNCATED = "truncated"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StopKind(str, Enum):
    NATURAL = "natural"
    MAX_OUTPUT = "max_output"


# Provider stop reasons, litellm/OpenAI and Anthropic spellings
_MAX_OUTPUT_REASONS = frozenset({"length", "max_tokens", "max_output_tokens"})
_NATURAL_REASONS = frozenset({
    "stop", "end_turn", "stop_sequence", "tool_use", "tool_calls",
    "function_call", "content_filter",
})


def classify_stop_reason(reason: str | None) -> StopKind:
    """Map a provider stop reason to natural completion or output truncation."""
    if reason is None:
        return StopKind.NATURAL
    normalized = reason.strip().lower()
    if normalized in _MAX_OUTPUT_REASONS:
        return StopKind.MAX_OUTPUT
    if normalized not in _NATURAL_REASONS:
        logger.warning("Unrecognized stop reason %r, treating as natural completion", reason)
    return StopKind.NATURAL


# --- Records ---


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ContextChunk:
    """One unit of context. Never mutated; compressed variants are new values."""

    id: str
    source_kind: SourceKind
    content: str
    estimated_tokens: int
    sequence: int
    relevance: float = 1.0
    created_at: datetime = field(default_factory=_utcnow)
    metadata: dict = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class ContextWindow:
    """Result of context assembly. estimated_tokens <= requested budget."""

    text: str
    included_chunk_ids: frozenset[str]
    estimated_tokens: int
    budget_tokens: int
    excluded_chunk_ids: frozenset[str] = frozenset()
    compressed_chunk_ids: frozenset[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.text


@dataclass
class RateLimitEntry:
    client_key: str
    window_start: float
    count: int


@dataclass(frozen=True)
class UsageRecord:
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    timestamp: datetime
    thread_id: str | None = None
    client_key: str | None = None
    stop_reason: str | None = None
    status: str = "ok"           # ok | error | cancelled
    latency_ms: int | None = None
    pricing_fallback: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cost": self.cost,
            "timestamp": self.timestamp.isoformat(),
            "thread_id": self.thread_id,
            "client_key": self.client_key,
            "stop_reason": self.stop_reason,
            "status": self.status,
            "latency_ms": self.latency_ms,
            "pricing_fallback": self.pricing_fallback,
        }


@dataclass(frozen=True)
class UsageTotals:
    """Authoritative cumulative usage, computed server-side from records."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    request_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cost": round(self.cost, 6),
            "request_count": self.request_count,
        }


@dataclass
class ContinuationState:
    """Lives while a multi-call generation is in progress for a thread."""

    thread_id: str
    continuation_count: int = 0
    cumulative_cost: float = 0.0
    last_stop_reason: str | None = None
    max_continuations: int = 20
    # Assistant text generated so far across the chained calls
    accumulated_text: str = ""
    model: str | None = None
    max_output_tokens: int | None = None

    @property
    def limit_reached(self) -> bool:
        return self.continuation_count > self.max_continuations

"""Prometheus metrics for the gateway, exposed at GET /metrics."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ── Requests ────────────────────────────────────────────────────────────

chat_requests_total = Counter(
    "context_gateway_chat_requests_total",
    "Chat stream requests received",
    ["kind"],  # initial | continuation
)

rate_limited_total = Counter(
    "context_gateway_rate_limited_total",
    "Requests rejected by the rate limiter",
)

# ── Streams ─────────────────────────────────────────────────────────────

stream_outcomes_total = Counter(
    "context_gateway_stream_outcomes_total",
    "Terminal stream states",
    ["state"],  # completed | truncated | failed | cancelled
)

continuation_limit_total = Counter(
    "context_gateway_continuation_limit_total",
    "Truncated responses that hit the continuation cap",
)

stream_duration = Histogram(
    "context_gateway_stream_duration_seconds",
    "Duration of one generation call",
    ["state"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 300],
)

# ── Usage ───────────────────────────────────────────────────────────────

tokens_total = Counter(
    "context_gateway_tokens_total",
    "Provider-reported tokens",
    ["model", "direction"],  # input | output
)

cost_usd_total = Counter(
    "context_gateway_cost_usd_total",
    "Accumulated cost in USD",
    ["model"],
)

# ── Context assembly ────────────────────────────────────────────────────

context_tokens = Histogram(
    "context_gateway_context_tokens",
    "Estimated tokens of assembled context windows",
    buckets=[100, 500, 1000, 2000, 4000, 8000, 16000, 32000],
)

context_chunks_compressed_total = Counter(
    "context_gateway_context_chunks_compressed_total",
    "Chunks included in compressed form",
)

context_chunks_excluded_total = Counter(
    "context_gateway_context_chunks_excluded_total",
    "Chunks left out of a context window",
)

# ── Response cache ──────────────────────────────────────────────────────

response_cache_hits_total = Counter(
    "context_gateway_response_cache_hits_total",
    "Chat requests served from the response cache",
)

"""Rate limiting — per-client windowed admission with pluggable entry store."""

from context_gateway.limits.rate_limiter import (
    InMemoryRateLimitStore,
    RateLimitDecision,
    RateLimiter,
    RateLimitStore,
)

__all__ = [
    "InMemoryRateLimitStore",
    "RateLimitDecision",
    "RateLimiter",
    "RateLimitStore",
]

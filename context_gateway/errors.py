"""Exception taxonomy for the gateway.

Only conditions that stop a request are exceptions. Degenerate compression,
unknown model pricing and the continuation limit are normal outcomes and are
reported through return values instead.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for gateway errors."""


class ChatValidationError(GatewayError):
    """Missing or malformed input. Raised before any provider call."""


class RateLimitExceeded(GatewayError):
    """Client exceeded its windowed request allowance."""

    def __init__(self, client_key: str, retry_after: float = 0.0, limit: int = 0):
        self.client_key = client_key
        self.retry_after = max(0.0, retry_after)
        self.limit = limit
        super().__init__(
            f"Rate limit exceeded ({limit} requests per window). "
            f"Please try again in {int(self.retry_after) + 1}s."
        )


class ProviderError(GatewayError):
    """LLM provider failed while generating. Never retried internally."""


class UnknownThreadError(GatewayError):
    """No state exists for the requested thread."""

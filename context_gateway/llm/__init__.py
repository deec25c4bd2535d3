"""LLM provider abstraction (litellm streaming)."""

from context_gateway.llm.provider import (
    HeartbeatTimeoutError,
    LLMProvider,
    Provider,
    ProviderChunk,
    ProviderUsage,
)

__all__ = [
    "HeartbeatTimeoutError",
    "LLMProvider",
    "Provider",
    "ProviderChunk",
    "ProviderUsage",
]

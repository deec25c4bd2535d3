"""Response cache: serves repeated common questions without a provider call."""

from context_gateway.cache.response_cache import (
    CachedResponse,
    ResponseCache,
    cache_key,
    is_frequently_asked,
)

__all__ = ["CachedResponse", "ResponseCache", "cache_key", "is_frequently_asked"]

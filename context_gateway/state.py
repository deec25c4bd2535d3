"""GatewayState — explicitly constructed container for all shared state.

Owns the rate limiter, usage tracker, chunk stores, continuation registry,
response cache and the stream coordinator. Created once in main.py's lifespan and stored on
`app.state.gateway`; tests build their own and call reset() between cases.

With settings.mongodb_url set, rate-limit entries and usage/messages go to
MongoDB so several instances share one view. Otherwise everything is
in-memory.
"""

from __future__ import annotations

import logging
import time

from fastapi import Request

from context_gateway.cache import ResponseCache
from context_gateway.chat.continuation import ContinuationRegistry
from context_gateway.chat.coordinator import StreamCoordinator
from context_gateway.config import settings as default_settings
from context_gateway.context import ChunkStoreRegistry, ContextAssembler
from context_gateway.limits import InMemoryRateLimitStore, RateLimiter
from context_gateway.llm import LLMProvider, Provider
from context_gateway.persistence import InMemoryPersistence, MongoPersistence
from context_gateway.usage import PricingTable, UsageTracker

logger = logging.getLogger(__name__)


class GatewayState:
    def __init__(
        self,
        settings=default_settings,
        provider: Provider | None = None,
        rate_limit_store=None,
        persistence=None,
        rate_limit_clock=None,
    ):
        self.settings = settings
        use_mongo = bool(settings.mongodb_url)

        if persistence is None:
            persistence = MongoPersistence() if use_mongo else InMemoryPersistence()
        if rate_limit_store is None:
            if use_mongo:
                from context_gateway.limits.mongo_store import MongoRateLimitStore
                rate_limit_store = MongoRateLimitStore()
            else:
                rate_limit_store = InMemoryRateLimitStore()
        if rate_limit_clock is None:
            # Pods sharing Mongo entries must agree on the clock
            rate_limit_clock = time.time if use_mongo else time.monotonic

        self.persistence = persistence
        self.rate_limit_store = rate_limit_store
        self.rate_limiter = RateLimiter(
            limit=settings.rate_limit,
            window_seconds=settings.rate_limit_window_seconds,
            store=rate_limit_store,
            clock=rate_limit_clock,
        )
        self.pricing = PricingTable(default_model=settings.default_pricing_model)
        self.usage_tracker = UsageTracker(self.pricing, sink=persistence)
        self.chunk_stores = ChunkStoreRegistry(max_chunks=settings.context_max_chunks)
        self.assembler = ContextAssembler(min_compressed_chars=settings.min_compressed_chars)
        self.continuations = ContinuationRegistry(settings.max_continuations)
        self.provider = provider or LLMProvider(
            heartbeat_seconds=settings.provider_heartbeat_seconds,
            temperature=settings.temperature,
        )
        self.response_cache = None
        if settings.response_cache_enabled:
            self.response_cache = ResponseCache(
                max_entries=settings.response_cache_max_entries,
                max_age_seconds=settings.response_cache_max_age_seconds,
            )
        self.coordinator = StreamCoordinator(
            provider=self.provider,
            usage_tracker=self.usage_tracker,
            rate_limiter=self.rate_limiter,
            assembler=self.assembler,
            chunk_stores=self.chunk_stores,
            continuations=self.continuations,
            persistence=persistence,
            settings=settings,
            response_cache=self.response_cache,
        )

    async def init(self) -> None:
        init = getattr(self.persistence, "init", None)
        if init is not None:
            await init()
        store_init = getattr(self.rate_limit_store, "init", None)
        if store_init is not None:
            await store_init()
        await self.usage_tracker.init()
        if self.settings.rate_limit_sweep_seconds > 0:
            self.rate_limiter.start_sweeper(self.settings.rate_limit_sweep_seconds)
        logger.info(
            "Gateway state ready (store=%s, rate_limit=%d/%ss)",
            "mongodb" if self.settings.mongodb_url else "memory",
            self.settings.rate_limit, self.settings.rate_limit_window_seconds,
        )

    async def reset(self) -> None:
        """Drop all per-process state: streams, chunks, usage, rate limits, cached answers."""
        self.coordinator.reset()
        self.chunk_stores.clear()
        await self.usage_tracker.reset()
        await self.rate_limiter.reset()

    async def close(self) -> None:
        await self.coordinator.drain()
        await self.rate_limiter.stop_sweeper()
        for resource in (self.rate_limit_store, self.persistence):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()
        logger.info("Gateway state closed")


def get_state(request: Request) -> GatewayState:
    """FastAPI dependency: the GatewayState created by the app lifespan."""
    return request.app.state.gateway

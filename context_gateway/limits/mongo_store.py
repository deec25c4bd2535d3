"""MongoDB-backed rate-limit entries for multi-instance deployments.

One document per client key in collection `rate_limits`:
    {_id: client_key, window_start: float, count: int, admitted: bool}

Every hit is a single atomic find_one_and_update with an aggregation
pipeline, so concurrent pods can't lose increments. The clock passed by the
RateLimiter must be wall-clock (time.time) so that pods agree.
"""

from __future__ import annotations

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ReturnDocument

from context_gateway.config import settings
from context_gateway.limits.rate_limiter import RateLimitDecision

logger = logging.getLogger(__name__)

RATE_LIMIT_COLLECTION = "rate_limits"


def _hit_pipeline(now: float, window_seconds: float, limit: int) -> list[dict]:
    expired = {"$or": [
        {"$eq": [{"$type": "$window_start"}, "missing"]},
        {"$gt": [now, {"$add": ["$window_start", window_seconds]}]},
    ]}
    under_limit = {"$lt": ["$count", limit]}
    return [
        {"$set": {"_expired": expired}},
        {"$set": {
            "window_start": {"$cond": ["$_expired", now, "$window_start"]},
            "count": {"$cond": [
                "$_expired", 1,
                {"$cond": [under_limit, {"$add": ["$count", 1]}, "$count"]},
            ]},
            "admitted": {"$cond": ["$_expired", True, under_limit]},
        }},
        {"$unset": "_expired"},
    ]


class MongoRateLimitStore:
    """Shared RateLimitStore implementation.

    Usage:
        store = MongoRateLimitStore()
        await store.init()
        limiter = RateLimiter(store=store, clock=time.time)
    """

    def __init__(self, mongodb_url: str | None = None, database: str | None = None):
        self._url = mongodb_url or settings.mongodb_url
        self._database = database or settings.mongodb_database
        self._client: AsyncIOMotorClient | None = None
        self._collection: AsyncIOMotorCollection | None = None

    async def init(self) -> None:
        self._client = AsyncIOMotorClient(self._url)
        self._collection = self._client[self._database][RATE_LIMIT_COLLECTION]
        await self._collection.create_index([("window_start", 1)])
        logger.info("Mongo rate-limit store initialized (db=%s)", self._database)

    async def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
            self._collection = None

    @property
    def collection(self) -> AsyncIOMotorCollection:
        if self._collection is None:
            raise RuntimeError("Rate-limit store not initialized.")
        return self._collection

    async def hit(
        self, client_key: str, now: float, window_seconds: float, limit: int,
    ) -> RateLimitDecision:
        doc = await self.collection.find_one_and_update(
            {"_id": client_key},
            _hit_pipeline(now, window_seconds, limit),
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        window_start = float(doc["window_start"])
        allowed = bool(doc.get("admitted", False))
        retry_after = 0.0 if allowed else window_start + window_seconds - now
        return RateLimitDecision(
            allowed, client_key, int(doc["count"]), limit, window_start, retry_after,
        )

    async def sweep(self, older_than: float) -> int:
        result = await self.collection.delete_many({"window_start": {"$lt": older_than}})
        return result.deleted_count

    async def reset(self) -> None:
        await self.collection.delete_many({})

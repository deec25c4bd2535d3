"""Persistence collaborator for messages and usage.

The streaming core calls these as side effects at terminal transitions
(completed / truncated / cancelled). Failures are logged by the caller and
never break a stream.

- InMemoryPersistence: default, process-local
- MongoPersistence: motor async driver, collections chat_messages + usage_events
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from context_gateway.config import settings
from context_gateway.models import UsageRecord

logger = logging.getLogger(__name__)

_TTL_DAYS = 90  # usage events kept for 90 days


class PersistenceStore(Protocol):
    async def append_messages(self, thread_id: str, messages: list[dict]) -> None: ...

    async def record_usage(self, record: UsageRecord) -> None: ...

    async def query_usage(self, filters: dict) -> list[dict]: ...


def _match(doc: dict, filters: dict) -> bool:
    for key in ("model", "thread_id", "client_key", "status"):
        value = filters.get(key)
        if value and doc.get(key) != value:
            return False
    since = filters.get("since")
    if since and doc["timestamp"] < since.isoformat():
        return False
    until = filters.get("until")
    if until and doc["timestamp"] > until.isoformat():
        return False
    return True


class InMemoryPersistence:
    def __init__(self) -> None:
        self.messages: dict[str, list[dict]] = {}
        self.usage: list[dict] = []

    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def append_messages(self, thread_id: str, messages: list[dict]) -> None:
        self.messages.setdefault(thread_id, []).extend(dict(m) for m in messages)

    async def record_usage(self, record: UsageRecord) -> None:
        self.usage.append(record.to_dict())

    async def query_usage(self, filters: dict) -> list[dict]:
        return [doc for doc in self.usage if _match(doc, filters or {})]


class MongoPersistence:
    """MongoDB-backed persistence.

    Usage:
        store = MongoPersistence()
        await store.init()
        await store.append_messages("thread-1", [{"role": "user", "content": "..."}])
        await store.close()
    """

    def __init__(self, mongodb_url: str | None = None, database: str | None = None):
        self._url = mongodb_url or settings.mongodb_url
        self._database = database or settings.mongodb_database
        self._client: AsyncIOMotorClient | None = None
        self._db: AsyncIOMotorDatabase | None = None

    async def init(self) -> None:
        self._client = AsyncIOMotorClient(self._url)
        self._db = self._client[self._database]
        await self._db["chat_messages"].create_index([("thread_id", 1), ("created_at", 1)])
        await self._db["usage_events"].create_index([("timestamp", -1)])
        await self._db["usage_events"].create_index([("thread_id", 1)])
        await self._db["usage_events"].create_index([("model", 1), ("timestamp", -1)])
        await self._db["usage_events"].create_index(
            [("created_at", 1)], expireAfterSeconds=_TTL_DAYS * 86400,
        )
        logger.info("Mongo persistence initialized (db=%s, usage ttl=%dd)", self._database, _TTL_DAYS)

    async def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
            self._db = None

    @property
    def db(self) -> AsyncIOMotorDatabase:
        if self._db is None:
            raise RuntimeError("Mongo persistence not initialized.")
        return self._db

    async def append_messages(self, thread_id: str, messages: list[dict]) -> None:
        if not messages:
            return
        now = datetime.now(timezone.utc)
        docs = [
            {
                "thread_id": thread_id,
                "role": m.get("role"),
                "content": m.get("content", ""),
                "metadata": m.get("metadata", {}),
                "created_at": now,
            }
            for m in messages
        ]
        await self.db["chat_messages"].insert_many(docs)

    async def record_usage(self, record: UsageRecord) -> None:
        doc = record.to_dict()
        doc["created_at"] = datetime.now(timezone.utc)
        await self.db["usage_events"].insert_one(doc)

    async def query_usage(self, filters: dict) -> list[dict]:
        filters = filters or {}
        query: dict = {
            key: filters[key]
            for key in ("model", "thread_id", "client_key", "status")
            if filters.get(key)
        }
        time_range = {}
        if filters.get("since"):
            time_range["$gte"] = filters["since"].isoformat()
        if filters.get("until"):
            time_range["$lte"] = filters["until"].isoformat()
        if time_range:
            query["timestamp"] = time_range

        cursor = self.db["usage_events"].find(query, {"_id": 0}).sort("timestamp", 1)
        return await cursor.to_list(length=filters.get("limit", 1000))

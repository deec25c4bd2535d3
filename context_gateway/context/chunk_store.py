"""Per-thread ordered store of context chunks (documents + conversation turns).

Chunks are immutable and kept in insertion order. Conversation turns are
append-only and chronological. Documents keep insertion order for display;
the assembler re-ranks them by relevance on read without touching the store.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone

from context_gateway.compression import estimate_tokens
from context_gateway.models import ContextChunk, SourceKind

logger = logging.getLogger(__name__)

_ROLE_KINDS = {
    "user": SourceKind.USER,
    "assistant": SourceKind.ASSISTANT,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _field(item, name: str, default=None):
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)


class ChunkStore:
    """Ordered chunk collection for one conversation thread.

    Mutations for a thread that can receive concurrent requests must run
    under `store.lock`.
    """

    def __init__(
        self,
        thread_id: str = "default",
        max_chunks: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.thread_id = thread_id
        self.max_chunks = max_chunks
        self.lock = asyncio.Lock()
        self._clock = clock
        self._chunks: list[ContextChunk] = []
        self._sequence = 0
        # Turns ever appended, including ones later dropped by cleanup
        self.turn_count = 0

    def _new_chunk(
        self, kind: SourceKind, content: str, relevance: float, metadata: dict | None,
    ) -> ContextChunk:
        self._sequence += 1
        prefix = "doc" if kind is SourceKind.DOCUMENT else "ctx"
        return ContextChunk(
            id=f"{prefix}_{self._sequence}_{uuid.uuid4().hex[:8]}",
            source_kind=kind,
            content=content,
            estimated_tokens=estimate_tokens(content),
            sequence=self._sequence,
            relevance=relevance,
            created_at=self._clock(),
            metadata=dict(metadata or {}),
        )

    def add_document_chunks(self, chunks: Iterable) -> list[ContextChunk]:
        """Append document excerpts. Items: mappings or objects with content/relevance/metadata."""
        added: list[ContextChunk] = []
        for item in chunks or ():
            content = _field(item, "content")
            if not isinstance(content, str) or not content.strip():
                continue
            relevance = _field(item, "relevance")
            try:
                relevance = 1.0 if relevance is None else float(relevance)
            except (TypeError, ValueError):
                relevance = 1.0
            chunk = self._new_chunk(
                SourceKind.DOCUMENT, content.strip(), relevance, _field(item, "metadata"),
            )
            self._chunks.append(chunk)
            added.append(chunk)
        if added:
            self._cleanup()
        return added

    def add_conversation_chunk(
        self, content: str, role, metadata: dict | None = None,
    ) -> ContextChunk | None:
        """Append a user/assistant turn. Blank content is ignored."""
        kind = role if isinstance(role, SourceKind) else _ROLE_KINDS.get(str(role).lower())
        if kind is None or kind is SourceKind.DOCUMENT:
            raise ValueError(f"Conversation role must be user or assistant, got {role!r}")
        if not isinstance(content, str) or not content.strip():
            return None
        chunk = self._new_chunk(kind, content.strip(), 1.0, metadata)
        self._chunks.append(chunk)
        self.turn_count += 1
        self._cleanup()
        return chunk

    def chunks(self) -> tuple[ContextChunk, ...]:
        """Immutable snapshot in insertion order."""
        return tuple(self._chunks)

    def documents(self) -> tuple[ContextChunk, ...]:
        return tuple(c for c in self._chunks if c.source_kind is SourceKind.DOCUMENT)

    def conversation(self) -> tuple[ContextChunk, ...]:
        return tuple(c for c in self._chunks if c.source_kind.is_conversation)

    def clear(self) -> None:
        self._chunks = []
        self.turn_count = 0

    def _cleanup(self) -> None:
        """Enforce max_chunks: oldest turns go first, then least relevant documents."""
        if not self.max_chunks or len(self._chunks) <= self.max_chunks:
            return
        excess = len(self._chunks) - self.max_chunks
        drop: set[str] = set()

        for chunk in self._chunks:
            if len(drop) >= excess:
                break
            if chunk.source_kind.is_conversation:
                drop.add(chunk.id)

        if len(drop) < excess:
            docs = sorted(self.documents(), key=lambda c: (c.relevance, c.sequence))
            for chunk in docs[: excess - len(drop)]:
                drop.add(chunk.id)

        self._chunks = [c for c in self._chunks if c.id not in drop]
        logger.debug("ChunkStore %s: dropped %d chunks (max=%d)", self.thread_id, len(drop), self.max_chunks)

    def __len__(self) -> int:
        return len(self._chunks)


class ChunkStoreRegistry:
    """Thread id -> ChunkStore. Explicitly constructed and injected, no globals."""

    def __init__(self, max_chunks: int | None = None):
        self.max_chunks = max_chunks
        self._stores: dict[str, ChunkStore] = {}

    def get(self, thread_id: str) -> ChunkStore:
        store = self._stores.get(thread_id)
        if store is None:
            store = ChunkStore(thread_id, max_chunks=self.max_chunks)
            self._stores[thread_id] = store
        return store

    def drop(self, thread_id: str) -> None:
        self._stores.pop(thread_id, None)

    def clear(self) -> None:
        self._stores.clear()

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._stores

    def __len__(self) -> int:
        return len(self._stores)

"""Response cache for frequently asked prompts.

Only prompts that look like common questions ("how to", "what is",
"explain", ...) are cached. The key is a SHA-256 over model, system prompt
and messages, so the same question with a different context window is a
different entry. Entries expire after max_age_seconds; when full, the least
recently used entry is evicted.

Not thread-safe; designed for single-threaded asyncio event loop.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60

_FREQUENTLY_ASKED = re.compile(
    r"how\s+to|what\s+is|explain|difference\s+between|example\s+of|how\s+do\s+i|tutorial|guide",
    re.IGNORECASE,
)


def is_frequently_asked(message: str | None) -> bool:
    return bool(message) and _FREQUENTLY_ASKED.search(message) is not None


def cache_key(model: str, system_prompt: str, messages: list[dict]) -> str:
    content = "|".join(f"{m['role']}:{m['content']}" for m in messages)
    raw = f"{model}:{system_prompt}:{content}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class CachedResponse:
    text: str
    model: str
    stop_reason: str | None
    created_at: float
    hit_count: int = 0


class ResponseCache:
    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._data: OrderedDict[str, CachedResponse] = OrderedDict()
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self.misses = 0

    def get(
        self, model: str, system_prompt: str, messages: list[dict],
    ) -> CachedResponse | None:
        if not is_frequently_asked(messages[-1]["content"] if messages else None):
            return None
        key = cache_key(model, system_prompt, messages)
        entry = self._data.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() - entry.created_at > self.max_age_seconds:
            del self._data[key]
            self.misses += 1
            return None
        self._data.move_to_end(key)
        entry.hit_count += 1
        logger.info("CACHE_HIT | key=%s... | hits=%d", key[:8], entry.hit_count)
        return entry

    def put(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict],
        text: str,
        stop_reason: str | None = None,
    ) -> bool:
        """Store a finished answer. False when the prompt is not cacheable."""
        if not text.strip():
            return False
        if not is_frequently_asked(messages[-1]["content"] if messages else None):
            return False
        key = cache_key(model, system_prompt, messages)
        if key in self._data:
            self._data.move_to_end(key)
        elif len(self._data) >= self.max_entries:
            self._data.popitem(last=False)
        self._data[key] = CachedResponse(
            text=text, model=model, stop_reason=stop_reason, created_at=self._clock(),
        )
        logger.debug("Cached response %s... (size=%d)", key[:8], len(self._data))
        return True

    def stats(self) -> dict:
        hits = sum(e.hit_count for e in self._data.values())
        lookups = hits + self.misses
        return {
            "size": len(self._data),
            "max_entries": self.max_entries,
            "max_age_seconds": self.max_age_seconds,
            "total_hits": hits,
            "misses": self.misses,
            "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
        }

    def clear(self) -> None:
        self._data.clear()
        self.misses = 0

    def __len__(self) -> int:
        return len(self._data)

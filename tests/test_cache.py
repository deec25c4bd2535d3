"""Tests for the response cache (cache/response_cache.py)."""

from __future__ import annotations

import pytest

from context_gateway.cache import ResponseCache, cache_key, is_frequently_asked


def ask(content: str) -> list[dict]:
    return [{"role": "user", "content": content}]


class TestFrequentlyAsked:
    @pytest.mark.parametrize("message", [
        "How to reverse a list?",
        "what is a monad",
        "Explain closures",
        "Difference between TCP and UDP",
        "how do I rebase",
    ])
    def test_common_questions(self, message):
        assert is_frequently_asked(message)

    def test_other_messages(self):
        assert not is_frequently_asked("Fix the failing build on my branch")
        assert not is_frequently_asked("")
        assert not is_frequently_asked(None)


class TestResponseCache:
    def test_put_then_get(self, clock):
        cache = ResponseCache(clock=clock)
        assert cache.put("m", "sys", ask("What is Python?"), "A language.", "end_turn")

        entry = cache.get("m", "sys", ask("What is Python?"))
        assert entry.text == "A language."
        assert entry.stop_reason == "end_turn"
        assert entry.hit_count == 1

    def test_uncommon_prompt_not_cached(self, clock):
        cache = ResponseCache(clock=clock)
        assert not cache.put("m", "sys", ask("Fix my build"), "Done.")
        assert cache.get("m", "sys", ask("Fix my build")) is None
        assert len(cache) == 0

    def test_empty_answer_not_cached(self, clock):
        cache = ResponseCache(clock=clock)
        assert not cache.put("m", "sys", ask("What is Python?"), "  ")

    def test_key_covers_model_and_context(self, clock):
        cache = ResponseCache(clock=clock)
        cache.put("m", "sys", ask("What is Python?"), "A language.")
        assert cache.get("other", "sys", ask("What is Python?")) is None
        assert cache.get("m", "sys with context", ask("What is Python?")) is None
        assert cache_key("m", "s", ask("x")) != cache_key("m", "s", ask("y"))

    def test_entries_expire(self, clock):
        cache = ResponseCache(max_age_seconds=60, clock=clock)
        cache.put("m", "sys", ask("What is Python?"), "A language.")
        clock.advance(61)
        assert cache.get("m", "sys", ask("What is Python?")) is None
        assert len(cache) == 0

    def test_least_recently_used_evicted(self, clock):
        cache = ResponseCache(max_entries=2, clock=clock)
        cache.put("m", "", ask("What is a"), "a")
        cache.put("m", "", ask("What is b"), "b")
        cache.get("m", "", ask("What is a"))
        cache.put("m", "", ask("What is c"), "c")

        assert len(cache) == 2
        assert cache.get("m", "", ask("What is b")) is None
        assert cache.get("m", "", ask("What is a")).text == "a"

    def test_stats(self, clock):
        cache = ResponseCache(clock=clock)
        cache.put("m", "", ask("What is a"), "a")
        cache.get("m", "", ask("What is a"))
        cache.get("m", "", ask("What is a"))
        cache.get("m", "", ask("What is z"))

        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["total_hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(2 / 3, abs=1e-4)

    def test_clear(self, clock):
        cache = ResponseCache(clock=clock)
        cache.put("m", "", ask("What is a"), "a")
        cache.clear()
        assert len(cache) == 0
        assert cache.stats()["hit_rate"] == 0.0

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            ResponseCache(max_entries=0)

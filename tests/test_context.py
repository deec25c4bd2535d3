"""Tests for ChunkStore and ContextAssembler (context/)."""

from __future__ import annotations

import pytest

from context_gateway.compression import estimate_tokens
from context_gateway.context import DELIMITER, ChunkStore, ChunkStoreRegistry, ContextAssembler
from context_gateway.models import SourceKind


# ---------------------------------------------------------------------------
# ChunkStore
# ---------------------------------------------------------------------------

class TestChunkStore:
    def test_document_chunks_from_mappings(self):
        store = ChunkStore("t1")
        added = store.add_document_chunks([
            {"content": "first doc", "relevance": 0.4},
            {"content": "second doc"},
            {"content": "   "},
        ])
        assert len(added) == 2
        assert added[0].id.startswith("doc_")
        assert added[0].relevance == 0.4
        assert added[1].relevance == 1.0
        assert added[0].estimated_tokens == estimate_tokens("first doc")

    def test_document_chunks_from_objects(self):
        class Excerpt:
            content = "from an object"
            relevance = 0.7
            metadata = {"source": "wiki"}

        store = ChunkStore("t1")
        (chunk,) = store.add_document_chunks([Excerpt()])
        assert chunk.relevance == 0.7
        assert chunk.metadata == {"source": "wiki"}

    def test_conversation_turns_ordered(self):
        store = ChunkStore("t1")
        u = store.add_conversation_chunk("hello", "user")
        a = store.add_conversation_chunk("hi!", "assistant")
        assert u.source_kind is SourceKind.USER
        assert a.source_kind is SourceKind.ASSISTANT
        assert a.sequence > u.sequence
        assert [c.id for c in store.conversation()] == [u.id, a.id]
        assert store.turn_count == 2

    def test_blank_turn_ignored(self):
        store = ChunkStore("t1")
        assert store.add_conversation_chunk("  ", "user") is None
        assert len(store) == 0
        assert store.turn_count == 0

    def test_invalid_role(self):
        store = ChunkStore("t1")
        with pytest.raises(ValueError):
            store.add_conversation_chunk("x", "system")
        with pytest.raises(ValueError):
            store.add_conversation_chunk("x", SourceKind.DOCUMENT)

    def test_snapshot_is_immutable(self):
        store = ChunkStore("t1")
        store.add_conversation_chunk("hello", "user")
        snapshot = store.chunks()
        store.add_conversation_chunk("again", "user")
        assert isinstance(snapshot, tuple)
        assert len(snapshot) == 1

    def test_max_chunks_drops_oldest_turns_first(self):
        store = ChunkStore("t1", max_chunks=3)
        doc = store.add_document_chunks([{"content": "doc", "relevance": 0.1}])[0]
        first = store.add_conversation_chunk("one", "user")
        store.add_conversation_chunk("two", "assistant")
        store.add_conversation_chunk("three", "user")
        ids = {c.id for c in store.chunks()}
        assert doc.id in ids
        assert first.id not in ids
        assert len(store) == 3
        # Dropped turns still count as seen
        assert store.turn_count == 3

    def test_max_chunks_then_least_relevant_documents(self):
        store = ChunkStore("t1", max_chunks=2)
        store.add_document_chunks([
            {"content": "keep high", "relevance": 0.9},
            {"content": "drop low", "relevance": 0.1},
            {"content": "keep mid", "relevance": 0.5},
        ])
        assert [c.content for c in store.chunks()] == ["keep high", "keep mid"]

    def test_clear(self):
        store = ChunkStore("t1")
        store.add_conversation_chunk("hello", "user")
        store.clear()
        assert len(store) == 0
        assert store.turn_count == 0


class TestChunkStoreRegistry:
    def test_get_returns_same_store(self):
        registry = ChunkStoreRegistry(max_chunks=10)
        assert registry.get("a") is registry.get("a")
        assert registry.get("a").max_chunks == 10
        assert "a" in registry
        assert "b" not in registry

    def test_drop_and_clear(self):
        registry = ChunkStoreRegistry()
        registry.get("a")
        registry.get("b")
        registry.drop("a")
        assert len(registry) == 1
        registry.clear()
        assert len(registry) == 0


# ---------------------------------------------------------------------------
# ContextAssembler
# ---------------------------------------------------------------------------

class TestContextAssembler:
    def test_empty_store(self):
        window = ContextAssembler().get_optimized_context(ChunkStore("t"), 100)
        assert window.is_empty
        assert window.estimated_tokens == 0
        assert window.included_chunk_ids == frozenset()

    def test_zero_budget_excludes_everything(self):
        store = ChunkStore("t")
        store.add_document_chunks([{"content": "some document"}])
        window = ContextAssembler().get_optimized_context(store, 0)
        assert window.is_empty
        assert len(window.excluded_chunk_ids) == 1

    def test_three_documents_budget_100(self):
        store = ChunkStore("t")
        high, mid, low = store.add_document_chunks([
            {"content": "h" * 400, "relevance": 0.9},
            {"content": "m" * 400, "relevance": 0.5},
            {"content": "l" * 400, "relevance": 0.2},
        ])
        assert sum(c.estimated_tokens for c in store.chunks()) == 300

        window = ContextAssembler().get_optimized_context(store, 100)

        assert window.estimated_tokens <= 100
        assert window.included_chunk_ids == {high.id}
        assert window.compressed_chunk_ids == {high.id}
        assert window.excluded_chunk_ids == {mid.id, low.id}
        # 20% cut, hard-cut since there is no word boundary
        assert window.text == "[DOCUMENT]\n" + "h" * 320 + "..."

    def test_deterministic(self):
        store = ChunkStore("t")
        store.add_document_chunks([
            {"content": "alpha beta gamma " * 20, "relevance": 0.3},
            {"content": "delta epsilon " * 20, "relevance": 0.8},
        ])
        store.add_conversation_chunk("what is alpha?", "user")
        assembler = ContextAssembler()
        assert assembler.get_optimized_context(store, 120) == assembler.get_optimized_context(store, 120)

    def test_documents_ranked_by_relevance(self):
        store = ChunkStore("t")
        store.add_document_chunks([
            {"content": "low relevance", "relevance": 0.1},
            {"content": "high relevance", "relevance": 0.9},
        ])
        window = ContextAssembler().get_optimized_context(store, 1000)
        assert window.text == (
            "[DOCUMENT]\nhigh relevance" + DELIMITER + "[DOCUMENT]\nlow relevance"
        )

    def test_conversation_chronological_after_documents(self):
        store = ChunkStore("t")
        store.add_conversation_chunk("Hi there", "user")
        store.add_conversation_chunk("Hello", "assistant")
        store.add_document_chunks([{"content": "Doc"}])
        store.add_conversation_chunk("Q?", "user")
        window = ContextAssembler().get_optimized_context(store, 1000)
        assert window.text == DELIMITER.join([
            "[DOCUMENT]\nDoc",
            "[USER]\nHi there",
            "[ASSISTANT]\nHello",
            "[USER]\nQ?",
        ])
        assert window.estimated_tokens == estimate_tokens(window.text)

    def test_dropped_turn_drops_all_older_turns(self):
        store = ChunkStore("t")
        tiny = store.add_conversation_chunk("ok", "user")
        long_old = store.add_conversation_chunk("x" * 100, "assistant")
        recent_user = store.add_conversation_chunk("y" * 100, "user")
        recent_assistant = store.add_conversation_chunk("z" * 100, "assistant")

        assembler = ContextAssembler(reductions=(0.2,), min_compressed_chars=1000)
        window = assembler.get_optimized_context(store, 75)

        assert window.included_chunk_ids == {recent_user.id, recent_assistant.id}
        assert window.excluded_chunk_ids == {tiny.id, long_old.id}
        assert window.text == "[USER]\n" + "y" * 100 + DELIMITER + "[ASSISTANT]\n" + "z" * 100
        assert window.estimated_tokens <= 75

    def test_compressed_variant_used_when_verbatim_does_not_fit(self):
        store = ChunkStore("t")
        (doc,) = store.add_document_chunks([{"content": "alpha beta gamma " * 20}])
        window = ContextAssembler().get_optimized_context(store, 60)
        assert doc.id in window.included_chunk_ids
        assert doc.id in window.compressed_chunk_ids
        assert window.text.startswith("[DOCUMENT]\nalpha beta gamma")
        assert window.estimated_tokens <= 60
        # The store keeps the original chunk
        assert store.chunks()[0].content == "alpha beta gamma " * 20

    def test_chunk_too_large_for_any_variant_excluded(self):
        store = ChunkStore("t")
        (doc,) = store.add_document_chunks([{"content": "word " * 200}])
        window = ContextAssembler().get_optimized_context(store, 5)
        assert window.is_empty
        assert doc.id in window.excluded_chunk_ids

    @pytest.mark.parametrize("budget", [1, 10, 37, 100, 250])
    def test_budget_never_exceeded(self, budget):
        store = ChunkStore("t")
        store.add_document_chunks([
            {"content": f"document {i} " + "lorem ipsum dolor sit amet " * (i + 1), "relevance": i / 10}
            for i in range(6)
        ])
        for i in range(6):
            store.add_conversation_chunk(f"turn {i} " + "consectetur adipiscing " * 3, "user")
        window = ContextAssembler().get_optimized_context(store, budget)
        assert window.estimated_tokens <= budget

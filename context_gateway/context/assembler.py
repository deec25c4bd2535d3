"""ContextAssembler — packs chunks from a ChunkStore into a token budget.

Strategy:
1. Documents ranked by relevance (desc), ties by insertion order.
   Conversation turns ranked newest-first.
2. Greedy walk: documents by rank, then turns by recency.
3. A candidate that doesn't fit verbatim is compressed at increasing
   reduction levels, then optimize_for_context() as the last resort. If the
   smallest variant still doesn't fit it is excluded.
4. Output: documents (rank order) then conversation (chronological), each
   rendered as "[KIND]\\n<content>" and joined by DELIMITER.

The budget is checked against the estimate of the final joined text, so
ContextWindow.estimated_tokens <= budget always holds. Pure computation over
an immutable snapshot: no locking, no clock, deterministic.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from context_gateway.compression import compress, estimate_tokens, optimize_for_context
from context_gateway.compression.compressor import CHARS_PER_TOKEN
from context_gateway.context.chunk_store import ChunkStore
from context_gateway.models import ContextChunk, ContextWindow, SourceKind

logger = logging.getLogger(__name__)

DELIMITER = "\n---\n"
DEFAULT_REDUCTIONS = (0.2, 0.4, 0.6)
MIN_COMPRESSED_CHARS = 40


@dataclass(frozen=True)
class _Selected:
    chunk: ContextChunk
    rendered: str
    compressed: bool


def render_chunk(chunk: ContextChunk, content: str | None = None) -> str:
    header = f"[{chunk.source_kind.value.upper()}]"
    return f"{header}\n{chunk.content if content is None else content}"


class ContextAssembler:
    def __init__(
        self,
        reductions: tuple[float, ...] = DEFAULT_REDUCTIONS,
        min_compressed_chars: int = MIN_COMPRESSED_CHARS,
        delimiter: str = DELIMITER,
    ):
        self.reductions = tuple(sorted(reductions))
        self.min_compressed_chars = min_compressed_chars
        self.delimiter = delimiter

    def get_optimized_context(
        self, source: ChunkStore | Iterable[ContextChunk], budget_tokens: int,
    ) -> ContextWindow:
        chunks = source.chunks() if isinstance(source, ChunkStore) else tuple(source)
        budget_tokens = int(budget_tokens)

        if budget_tokens <= 0 or not chunks:
            return ContextWindow(
                text="",
                included_chunk_ids=frozenset(),
                estimated_tokens=0,
                budget_tokens=max(budget_tokens, 0),
                excluded_chunk_ids=frozenset(c.id for c in chunks),
            )

        documents = sorted(
            (c for c in chunks if c.source_kind is SourceKind.DOCUMENT),
            key=lambda c: (-c.relevance, c.sequence),
        )
        turns_newest_first = sorted(
            (c for c in chunks if c.source_kind.is_conversation),
            key=lambda c: c.sequence,
            reverse=True,
        )

        max_chars = budget_tokens * CHARS_PER_TOKEN
        used_chars = 0
        selected_docs: list[_Selected] = []
        selected_turns: list[_Selected] = []
        excluded: set[str] = set()

        def try_fit(chunk: ContextChunk) -> _Selected | None:
            nonlocal used_chars
            overhead = len(self.delimiter) if (selected_docs or selected_turns) else 0
            available = max_chars - used_chars - overhead
            picked = self._fit(chunk, available)
            if picked is not None:
                used_chars += overhead + len(picked.rendered)
            return picked

        for chunk in documents:
            picked = try_fit(chunk)
            if picked is None:
                excluded.add(chunk.id)
            else:
                selected_docs.append(picked)

        dropping = False
        for chunk in turns_newest_first:
            # Once a turn is dropped every older turn goes too
            picked = None if dropping else try_fit(chunk)
            if picked is None:
                dropping = True
                excluded.add(chunk.id)
            else:
                selected_turns.append(picked)

        selected_turns.reverse()
        pieces = [s.rendered for s in selected_docs] + [s.rendered for s in selected_turns]
        text = self.delimiter.join(pieces)
        included = [s.chunk.id for s in selected_docs + selected_turns]

        window = ContextWindow(
            text=text,
            included_chunk_ids=frozenset(included),
            estimated_tokens=estimate_tokens(text),
            budget_tokens=budget_tokens,
            excluded_chunk_ids=frozenset(excluded),
            compressed_chunk_ids=frozenset(
                s.chunk.id for s in selected_docs + selected_turns if s.compressed
            ),
        )

        logger.info(
            "CONTEXT_ASSEMBLED | docs=%d/%d | turns=%d/%d | compressed=%d | tokens=%d/%d",
            len(selected_docs), len(documents),
            len(selected_turns), len(turns_newest_first),
            len(window.compressed_chunk_ids), window.estimated_tokens, budget_tokens,
        )
        return window

    def _fit(self, chunk: ContextChunk, available_chars: int) -> _Selected | None:
        """Verbatim if it fits, else the least-compressed variant that fits."""
        if available_chars <= 0:
            return None

        rendered = render_chunk(chunk)
        if len(rendered) <= available_chars:
            return _Selected(chunk, rendered, compressed=False)

        for candidate in self._compressed_variants(chunk.content):
            if not candidate:
                break
            rendered = render_chunk(chunk, candidate)
            if len(rendered) <= available_chars:
                return _Selected(chunk, rendered, compressed=True)
            if len(candidate) < self.min_compressed_chars:
                break
        return None

    def _compressed_variants(self, content: str):
        for reduction in self.reductions:
            yield compress(content, reduction)
        yield optimize_for_context(content)

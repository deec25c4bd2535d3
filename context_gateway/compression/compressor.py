"""Deterministic, lossy text compressor used to fit content into a token budget.

Stateless module-level functions, safe to call concurrently. This is a
heuristic shortener, not a summarizer: meaning is not guaranteed to survive.

    compress(text, 0.3)          -> phrase substitution, filler removal, truncation
    optimize_for_context(text)   -> compress(text, 0.2) + aggressive clause stripping
    estimate_tokens(text)        -> ceil(len / 4)
"""

from __future__ import annotations

import logging
import math
import re

from context_gateway.compression.rules import (
    CONTEXT_RULES,
    ELLIPSIS,
    FILLER_RULES,
    PHRASE_REPLACEMENTS,
    SENTENCE_END,
    WHITESPACE_RULES,
    compile_rules,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

_PHRASES = compile_rules(PHRASE_REPLACEMENTS)
_FILLERS = compile_rules(FILLER_RULES)
_CONTEXT = compile_rules(CONTEXT_RULES)
_WHITESPACE = compile_rules(WHITESPACE_RULES)

_TRAILING_PARTIAL_WORD = re.compile(r"\s+\S*$")


def apply_rules(text: str, rules) -> str:
    """Apply ordered (compiled pattern, replacement) pairs to text."""
    for pattern, replacement in rules:
        text = pattern.sub(replacement, text)
    return text


def normalize_whitespace(text: str) -> str:
    return apply_rules(text, _WHITESPACE).strip()


def estimate_tokens(text) -> int:
    """Heuristic token count: ceil(chars / 4). Not a real tokenizer."""
    if not isinstance(text, str) or not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _truncate_at_word_boundary(text: str, target_length: int) -> str:
    cut = text[:target_length]
    if target_length < len(text) and text[target_length].isspace():
        return cut.rstrip()
    match = _TRAILING_PARTIAL_WORD.search(cut)
    if match and match.start() > 0:
        return cut[:match.start()]
    # Single long word, no boundary to snap to
    return cut


def compress(text, target_reduction: float = 0.3) -> str:
    """Shorten text by roughly target_reduction (0..1).

    Never raises. Empty or non-string input yields "". The result is never
    longer than the input.
    """
    if not isinstance(text, str) or not text:
        return ""
    try:
        reduction = min(1.0, max(0.0, float(target_reduction)))
    except (TypeError, ValueError):
        reduction = 0.0
    if math.isnan(reduction):
        reduction = 0.0

    compressed = normalize_whitespace(text)
    compressed = apply_rules(compressed, _PHRASES)
    compressed = apply_rules(compressed, _FILLERS)
    compressed = normalize_whitespace(compressed)

    target_length = math.floor(len(compressed) * (1 - reduction))
    if target_length > 0 and len(compressed) > target_length:
        compressed = _truncate_at_word_boundary(compressed, target_length)
        if not compressed.endswith(SENTENCE_END):
            if len(compressed) + len(ELLIPSIS) <= len(text):
                compressed += ELLIPSIS

    return compressed


def optimize_for_context(text) -> str:
    """compress(text, 0.2) followed by clause/intensifier/suffix stripping.

    Intentionally aggressive: the suffix rule removes any word with the
    suffix, including ones that carry meaning.
    """
    first_pass = compress(text, 0.2)
    if not first_pass:
        return ""
    return normalize_whitespace(apply_rules(first_pass, _CONTEXT))


def compression_stats(original: str, compressed: str) -> dict:
    """Size comparison used in chunk metadata and the /compress endpoint."""
    original_length = len(original or "")
    compressed_length = len(compressed or "")
    ratio = 0.0
    if original_length > 0:
        ratio = round((1 - compressed_length / original_length) * 100, 2)
    return {
        "original_length": original_length,
        "compressed_length": compressed_length,
        "original_tokens": estimate_tokens(original),
        "compressed_tokens": estimate_tokens(compressed),
        "compression_ratio": ratio,
    }

"""Substitution and removal tables for the compressor.

Every rule is plain data: an ordered (pattern, replacement) pair, applied
case-insensitively by compressor.apply_rules(). Order matters: earlier rules
see the text before later ones rewrite it.
"""

from __future__ import annotations

import re

# Longer / wordier phrase -> short form
PHRASE_REPLACEMENTS: tuple[tuple[str, str], ...] = (
    (r"\bfor example\b", "e.g."),
    (r"\bfor instance\b", "e.g."),
    (r"\bthat is\b", "i.e."),
    (r"\bhowever\b", "but"),
    (r"\btherefore\b", "so"),
    (r"\badditionally\b", "also"),
    (r"\bnevertheless\b", "still"),
    (r"\bin order to\b", "to"),
    (r"\bdue to the fact that\b", "because"),
)

# Words dropped outright (word-boundary matched)
FILLER_WORDS: tuple[str, ...] = (
    "very", "really", "quite", "somewhat", "slightly", "highly", "extremely",
    "completely", "totally", "absolutely", "utterly", "perfectly", "practically",
    "virtually", "nearly", "almost", "just", "only", "simply", "literally",
    "basically", "actually", "generally", "typically", "usually", "normally",
    "often", "frequently", "sometimes", "occasionally", "rarely", "seldom",
    "constantly", "continually", "continuously", "permanently", "temporarily",
    "initially", "finally", "eventually", "ultimately", "consequently", "thus",
    "hence", "accordingly", "furthermore", "moreover", "similarly", "likewise",
    "nonetheless", "indeed", "certainly", "definitely", "probably", "perhaps",
    "maybe", "possibly", "seem", "seems", "appear", "appears", "tend", "tends",
)

FILLER_RULES: tuple[tuple[str, str], ...] = (
    (r"\b(?:" + "|".join(FILLER_WORDS) + r")\b", ""),
)

INTENSIFIERS: tuple[str, ...] = (
    "very", "extremely", "highly", "incredibly", "remarkably", "exceptionally",
)

# Suffix stripped by optimize_for_context. Removes every word ending in it,
# meaningful ones included ("only", "apply", "family").
STRIPPED_SUFFIX = "ly"

# Aggressive second pass used when packing text into a context window
CONTEXT_RULES: tuple[tuple[str, str], ...] = (
    (r"\s*\([^)]*\)", ""),                                        # parenthetical asides
    (r",[^,]+?(?=,|$)", ""),                                      # trailing comma clauses
    (r"\b(?:" + "|".join(INTENSIFIERS) + r")\s+\w+\b", ""),       # intensifier + next word
    (r"\b\w+" + STRIPPED_SUFFIX + r"\b", ""),                     # words ending in suffix
)

# Whitespace normalisation, applied between stages
WHITESPACE_RULES: tuple[tuple[str, str], ...] = (
    (r"\s+", " "),
    (r"\s+([.,;:!?])", r"\1"),
)

SENTENCE_END = (".", "!", "?")
ELLIPSIS = "..."


def compile_rules(rules: tuple[tuple[str, str], ...]) -> tuple[tuple[re.Pattern, str], ...]:
    return tuple((re.compile(pattern, re.IGNORECASE), repl) for pattern, repl in rules)

from __future__ import annotations

import re
from typing import Dict, List, Sequence

_NON_WORD_RE = re.compile(r"[^\w\s]")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")

MIN_TOKEN_LEN = 3

STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "up", "about", "into", "through", "during",
        "is", "are", "was", "were", "be", "been", "being", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "may", "might",
        "this", "that", "these", "those", "it", "its", "they", "them", "their",
        "what", "which", "who", "whom", "when", "where", "why", "how",
        "all", "each", "every", "both", "few", "more", "most", "other", "some",
        "such", "no", "not", "only", "same", "so", "than", "too", "very",
    }
)


def tokenize(text: str) -> List[str]:
    """Lower-case, punctuation to whitespace, drop short tokens and stop words."""
    cleaned = _NON_WORD_RE.sub(" ", (text or "").lower())
    return [t for t in cleaned.split() if len(t) >= MIN_TOKEN_LEN and t not in STOP_WORDS]


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text or "") if s.strip()]


def term_frequency(tokens: Sequence[str]) -> Dict[str, float]:
    """Raw counts divided by the largest count, so values fall in (0, 1]."""
    counts: Dict[str, float] = {}
    for t in tokens:
        counts[t] = counts.get(t, 0.0) + 1.0
    if not counts:
        return counts
    max_count = max(counts.values())
    return {t: c / max_count for t, c in counts.items()}

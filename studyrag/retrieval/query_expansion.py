"""Keyword-based query expansion to improve semantic search recall."""
from __future__ import annotations

_STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "be",
    "been", "being", "have", "has", "had", "do", "does", "did", "will",
    "would", "should", "could", "may", "might", "must", "can", "this",
    "that", "these", "those", "what", "which", "who", "when", "where",
    "why", "how", "about", "into", "through", "during", "including",
})

MAX_KEY_TERMS = 5


def extract_keywords(query: str) -> list[str]:
    return [
        word
        for word in query.lower().split()
        if len(word) > 2 and word not in _STOP_WORDS
    ]


def expand_query(query: str) -> str:
    """
    Append the leading keywords to the query for emphasis.

    Short queries (two keywords or fewer) are returned unchanged.
    """
    keywords = extract_keywords(query)
    if len(keywords) <= 2:
        return query
    return f"{query} {' '.join(keywords[:MAX_KEY_TERMS])}".strip()

"""
Context Selector
-----------------
Turns raw similarity-search hits into the context window that goes into the
prompt.

Pure top-K by score lets one highly relevant document fill the whole window.
Selection is therefore two-stage:

    raw hits
        |
        v
    drop near-empty hits (trimmed text < min_chars)
        |
        v
    group by normalised source name (trim + lowercase)
        |
        v
    per group: best max_per_source hits by score
        |
        v
    merge, sort by score, keep max_total

Equal scores keep their original retrieval order.
"""
from __future__ import annotations

from loguru import logger

from studyrag.chunking.chunker import CHARS_PER_TOKEN
from studyrag.schemas import ContextWindow, SearchHit

MIN_HIT_CHARS = 50
MAX_PER_SOURCE = 3
MAX_TOTAL = 20


def normalize_source_name(name: str) -> str:
    return name.strip().lower()


def select_context(
    hits: list[SearchHit],
    max_per_source: int = MAX_PER_SOURCE,
    max_total: int = MAX_TOTAL,
    min_chars: int = MIN_HIT_CHARS,
) -> ContextWindow:
    """
    Diversify and rank hits into a ContextWindow.

    Each retained hit has its `source` replaced by the canonical display
    name of its group: the first casing seen for that normalised key.
    """
    if max_per_source <= 0 or max_total <= 0:
        return ContextWindow()

    # Position in the raw results is the tie-breaker throughout
    usable = [
        (position, hit)
        for position, hit in enumerate(hits)
        if len(hit.text.strip()) >= min_chars
    ]

    display_name: dict[str, str] = {}
    groups: dict[str, list[tuple[int, SearchHit]]] = {}
    for position, hit in usable:
        key = normalize_source_name(hit.source)
        display_name.setdefault(key, hit.source)
        groups.setdefault(key, []).append((position, hit))

    retained: list[tuple[int, SearchHit]] = []
    for key, members in groups.items():
        members.sort(key=lambda item: (-item[1].score, item[0]))
        for position, hit in members[:max_per_source]:
            canonical = display_name[key]
            if hit.source != canonical:
                hit = hit.model_copy(update={"source": canonical})
            retained.append((position, hit))

    retained.sort(key=lambda item: (-item[1].score, item[0]))
    window_hits = [hit for _, hit in retained[:max_total]]

    present = {hit.source for hit in window_hits}
    sources = [name for name in display_name.values() if name in present]

    logger.debug(
        f"[ContextSelector] {len(hits)} hits -> {len(usable)} usable -> "
        f"{len(groups)} source(s) -> {len(window_hits)} selected"
    )
    return ContextWindow(hits=window_hits, sources=sources)


class ContextSelector:
    """
    Configured wrapper around select_context().

    Usage:
        selector = ContextSelector(max_per_source=3, max_total=20)
        window = selector.select(hits)
    """

    def __init__(
        self,
        max_per_source: int = MAX_PER_SOURCE,
        max_total: int = MAX_TOTAL,
        min_chars: int = MIN_HIT_CHARS,
    ) -> None:
        self.max_per_source = max_per_source
        self.max_total = max_total
        self.min_chars = min_chars

    def select(self, hits: list[SearchHit]) -> ContextWindow:
        return select_context(
            hits,
            max_per_source=self.max_per_source,
            max_total=self.max_total,
            min_chars=self.min_chars,
        )


def fit_to_budget(window: ContextWindow, max_tokens: int) -> ContextWindow:
    """
    Drop the lowest-ranked hits until the hit texts fit in max_tokens.

    Uses the chunker's 4-chars-per-token estimate.  The top hit is always
    kept so a non-empty window never becomes empty.
    """
    budget_chars = max_tokens * CHARS_PER_TOKEN
    kept: list[SearchHit] = []
    used = 0
    for hit in window.hits:
        cost = len(hit.text)
        if kept and used + cost > budget_chars:
            break
        kept.append(hit)
        used += cost

    if len(kept) < len(window.hits):
        logger.info(
            f"[ContextSelector] Token budget {max_tokens} -> kept {len(kept)}/{len(window.hits)} hits"
        )
    present = {hit.source for hit in kept}
    return ContextWindow(hits=kept, sources=[s for s in window.sources if s in present])

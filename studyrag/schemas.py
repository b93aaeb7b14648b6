"""
Core Pydantic schemas shared by retrieval, billing and serving.

Chunk and EmbeddingVector live next to the stages that produce them
(chunking/schemas.py, embedding/schemas.py); this module holds the types
that cross stage boundaries.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# --- Enumerations ------------------------------------------------------------

class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class KeySource(str, Enum):
    """Which tier supplied the provider key. Priority: BYOK > TEAM > CREDITS."""

    BYOK = "byok"
    TEAM = "team"
    CREDITS = "credits"


# Field -> scalar (equality), {"$eq": v} or {"$in": [...]}.  All must hold.
MetadataFilter = dict[str, Any]


# --- Retrieval ---------------------------------------------------------------

class SearchHit(BaseModel):
    """One similarity-search match. Ephemeral: produced per query, never persisted."""

    id: str = ""
    text: str
    source: str
    score: float = Field(ge=0.0, le=1.0)
    source_type: str = "document"

    # Auxiliary fields carried through from index metadata when present
    chunk_index: Optional[int] = None
    document_id: Optional[str] = None
    url: Optional[str] = None
    timestamp: Optional[float] = None   # media start offset in seconds
    media_id: Optional[str] = None


class ContextWindow(BaseModel):
    """
    The diversified, ranked hits assembled into a prompt.

    `sources` lists the canonical display name of each contributing source
    in the order it was first seen in the raw retrieval results.
    """

    hits: list[SearchHit] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.hits)

    @property
    def is_empty(self) -> bool:
        return not self.hits

    def by_source(self) -> dict[str, list[SearchHit]]:
        """Group hits by their (canonical) source name, preserving rank order."""
        grouped: dict[str, list[SearchHit]] = {name: [] for name in self.sources}
        for hit in self.hits:
            grouped.setdefault(hit.source, []).append(hit)
        return {name: hits for name, hits in grouped.items() if hits}

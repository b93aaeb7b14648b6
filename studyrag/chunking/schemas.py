"""
Chunk schema - the atomic unit that gets embedded and indexed.

A Chunk traces back to its source document through `source_id`, and its
`index` gives the stable position within that source.  Chunks are frozen:
they are created at ingestion and only ever replaced wholesale when the
source is re-ingested or deleted.
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Chunk(BaseModel):
    """A bounded-size contiguous slice of one source document's text."""

    model_config = ConfigDict(frozen=True)

    text: str
    source_id: str                 # Source filename / document label
    index: int = Field(ge=0)       # Position within the source

    @field_validator("text")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("chunk text must be non-empty after trimming")
        return v

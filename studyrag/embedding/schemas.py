"""
EmbeddingVector - what gets upserted into the vector index.

The id is derived from (source, chunk_index) so re-uploading the same file
with the same chunking overwrites the previous vectors instead of adding
duplicates.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from studyrag.chunking.schemas import Chunk


def vector_id(source: str, chunk_index: int) -> str:
    return f"{source}-chunk-{chunk_index}"


class VectorMetadata(BaseModel):
    text: str
    source: str
    chunk_index: int
    document_id: Optional[str] = None
    source_type: str = "document"

    def to_index(self) -> dict[str, Any]:
        """Flat dict stored alongside the vector (None values dropped)."""
        return self.model_dump(exclude_none=True)


class EmbeddingVector(BaseModel):
    id: str
    values: list[float]
    metadata: VectorMetadata

    @property
    def dimensions(self) -> int:
        return len(self.values)

    @classmethod
    def from_chunk(
        cls,
        chunk: Chunk,
        values: list[float],
        document_id: Optional[str] = None,
    ) -> "EmbeddingVector":
        return cls(
            id=vector_id(chunk.source_id, chunk.index),
            values=values,
            metadata=VectorMetadata(
                text=chunk.text,
                source=chunk.source_id,
                chunk_index=chunk.index,
                document_id=document_id,
            ),
        )


class EmbeddingBatch(BaseModel):
    """Vectors in input order plus the provider-reported token total."""

    vectors: list[list[float]] = Field(default_factory=list)
    total_tokens: int = 0

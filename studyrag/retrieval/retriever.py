"""
Vector Retriever
-----------------
Embeds the query and runs a filtered similarity search against the vector
index.  Stateless per query.
"""
from __future__ import annotations

from typing import Optional

from langsmith import traceable
from loguru import logger

from studyrag.embedding.embedder import Embedder
from studyrag.embedding.faiss_index import VectorIndex
from studyrag.schemas import MetadataFilter, SearchHit


def build_source_filter(
    source_filenames: Optional[list[str]] = None,
    document_ids: Optional[list[str]] = None,
) -> Optional[MetadataFilter]:
    """Restrict a search to given sources; filenames win over document ids."""
    if source_filenames:
        return {"source": {"$in": list(source_filenames)}}
    if document_ids:
        return {"document_id": {"$in": list(document_ids)}}
    return None


class VectorRetriever:
    """Wraps VectorIndex.query() with automatic query embedding."""

    def __init__(self, index: VectorIndex, embedder: Embedder) -> None:
        self.index = index
        self.embedder = embedder

    @traceable(name="retrieve", run_type="retriever")
    def retrieve(
        self,
        query: str,
        top_k: int,
        filter: Optional[MetadataFilter] = None,
    ) -> list[SearchHit]:
        logger.debug(f"[Retriever] Query: {query[:80]!r} | top_k={top_k} | filter={filter}")

        query_vec = self.embedder.embed_query(query)
        hits = self.index.query(query_vec, top_k=top_k, filter=filter, include_metadata=True)

        if hits:
            logger.info(f"[Retriever] Retrieved {len(hits)} hits (top score: {hits[0].score:.4f})")
        else:
            logger.info("[Retriever] No results")
        return hits

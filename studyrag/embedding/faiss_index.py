"""
Vector Index
-------------
`VectorIndex` is the contract the core relies on: upsert vectors with
metadata, query by similarity under a metadata filter, delete.

`FAISSIndex` is the local implementation.  It wraps faiss.IndexFlatIP (inner
product == cosine similarity after L2 normalisation) and keeps, in parallel
row order:
  - the vector ids (string ids from EmbeddingVector.id)
  - the metadata dicts used for filtering and for rebuilding SearchHits

Upserts are idempotent: an id that already exists has its row replaced.
FAISS has no in-place update, so the flat index is rebuilt lazily from the
stored matrix on the next query after a mutation.

Persistence:
  - FAISS index    -> <index_dir>/faiss.index
  - Ids + metadata -> <index_dir>/records.json
  - Manifest       -> <index_dir>/index_manifest.json
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import faiss
import numpy as np
from loguru import logger

from studyrag.embedding.schemas import EmbeddingVector
from studyrag.schemas import MetadataFilter, SearchHit
from studyrag.utils.helpers import load_json, save_json

DEFAULT_DIMENSIONS = 3072


# --- Metadata filtering -------------------------------------------------------

def matches_filter(metadata: dict[str, Any], flt: Optional[MetadataFilter]) -> bool:
    """
    True when every constraint in `flt` holds for `metadata`.

    A constraint is a plain value (equality), {"$eq": value} or
    {"$in": [values]}.  An empty or missing filter matches everything.
    """
    if not flt:
        return True
    for field_name, constraint in flt.items():
        value = metadata.get(field_name)
        if isinstance(constraint, dict):
            for op, operand in constraint.items():
                if op == "$eq":
                    if value != operand:
                        return False
                elif op == "$in":
                    if value not in operand:
                        return False
                else:
                    raise ValueError(f"Unsupported filter operator: {op}")
        elif value != constraint:
            return False
    return True


def hit_from_metadata(vector_id: str, score: float, metadata: dict[str, Any]) -> SearchHit:
    return SearchHit(
        id=vector_id,
        text=metadata.get("text", ""),
        source=metadata.get("source", "Unknown"),
        score=min(1.0, max(0.0, score)),
        source_type=metadata.get("source_type", "document"),
        chunk_index=metadata.get("chunk_index"),
        document_id=metadata.get("document_id"),
        url=metadata.get("url"),
        timestamp=metadata.get("start_time"),
        media_id=metadata.get("media_id"),
    )


# --- Contract -----------------------------------------------------------------

class VectorIndex(ABC):
    """Key-value-plus-similarity storage for embedding vectors."""

    @abstractmethod
    def upsert(self, vectors: list[EmbeddingVector]) -> None:
        ...

    @abstractmethod
    def query(
        self,
        vector: list[float],
        top_k: int,
        filter: Optional[MetadataFilter] = None,
        include_metadata: bool = True,
    ) -> list[SearchHit]:
        ...

    @abstractmethod
    def delete(self, ids: list[str]) -> int:
        ...

    @abstractmethod
    def delete_where(self, filter: MetadataFilter) -> int:
        ...

    @property
    @abstractmethod
    def count(self) -> int:
        ...


# --- FAISS implementation -----------------------------------------------------

class FAISSIndex(VectorIndex):
    """
    In-process cosine-similarity index with metadata filtering.

    Build with upsert(), query with query(), persist with save() and
    restore with FAISSIndex.load().
    """

    def __init__(self, dimensions: int = DEFAULT_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.faiss_index: faiss.IndexFlatIP = faiss.IndexFlatIP(dimensions)
        self._matrix = np.empty((0, dimensions), dtype=np.float32)
        self._ids: list[str] = []
        self._metadata: list[dict[str, Any]] = []
        self._row_of: dict[str, int] = {}
        self._dirty = False
        self._lock = threading.Lock()

    # --- Mutations ----------------------------------------------------------

    def upsert(self, vectors: list[EmbeddingVector]) -> None:
        if not vectors:
            return
        for v in vectors:
            if v.dimensions != self.dimensions:
                raise ValueError(
                    f"Vector {v.id!r} has {v.dimensions} dimensions, index expects {self.dimensions}"
                )

        rows = _normalise(np.array([v.values for v in vectors], dtype=np.float32))
        inserted = replaced = 0

        with self._lock:
            new_rows: list[np.ndarray] = []
            for v, row in zip(vectors, rows):
                existing = self._row_of.get(v.id)
                if existing is not None:
                    self._matrix[existing] = row
                    self._metadata[existing] = v.metadata.to_index()
                    replaced += 1
                else:
                    self._row_of[v.id] = len(self._ids)
                    self._ids.append(v.id)
                    self._metadata.append(v.metadata.to_index())
                    new_rows.append(row)
                    inserted += 1
            if new_rows:
                self._matrix = np.vstack([self._matrix, np.stack(new_rows)])
            self._dirty = True

        logger.info(
            f"[FAISSIndex] Upserted {len(vectors)} vectors "
            f"({inserted} new, {replaced} replaced) | total={len(self._ids)}"
        )

    def delete(self, ids: list[str]) -> int:
        doomed = set(ids)
        with self._lock:
            keep = [i for i, vid in enumerate(self._ids) if vid not in doomed]
            removed = len(self._ids) - len(keep)
            if removed:
                self._retain_rows(keep)
        logger.info(f"[FAISSIndex] Deleted {removed} vector(s)")
        return removed

    def delete_where(self, filter: MetadataFilter) -> int:
        """Remove every vector whose metadata matches `filter` (no query cap)."""
        with self._lock:
            ids = [vid for vid, md in zip(self._ids, self._metadata) if matches_filter(md, filter)]
        return self.delete(ids) if ids else 0

    def _retain_rows(self, keep: list[int]) -> None:
        self._matrix = self._matrix[keep] if keep else np.empty((0, self.dimensions), dtype=np.float32)
        self._ids = [self._ids[i] for i in keep]
        self._metadata = [self._metadata[i] for i in keep]
        self._row_of = {vid: i for i, vid in enumerate(self._ids)}
        self._dirty = True

    # --- Search -------------------------------------------------------------

    def query(
        self,
        vector: list[float],
        top_k: int,
        filter: Optional[MetadataFilter] = None,
        include_metadata: bool = True,
    ) -> list[SearchHit]:
        """
        Cosine-similarity search restricted to vectors matching `filter`.

        Returns at most top_k SearchHits sorted by descending score; scores
        are clamped to [0, 1].  With include_metadata=False only ids, sources
        and scores are filled in.
        """
        if len(vector) != self.dimensions:
            raise ValueError(
                f"Query vector has {len(vector)} dimensions, index expects {self.dimensions}"
            )
        if top_k <= 0:
            return []

        with self._lock:
            if not self._ids:
                return []
            self._rebuild_if_dirty()
            qv = _normalise(np.asarray(vector, dtype=np.float32).reshape(1, -1))
            # Filtering happens after search, so search everything when filtered
            k = len(self._ids) if filter else min(top_k, len(self._ids))
            scores, indices = self.faiss_index.search(qv, k)
            ids = list(self._ids)
            metadata = list(self._metadata)

        hits: list[SearchHit] = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0:
                continue
            md = metadata[idx]
            if not matches_filter(md, filter):
                continue
            if include_metadata:
                hits.append(hit_from_metadata(ids[idx], float(score), md))
            else:
                hits.append(
                    SearchHit(
                        id=ids[idx],
                        text="",
                        source=md.get("source", "Unknown"),
                        score=min(1.0, max(0.0, float(score))),
                    )
                )
            if len(hits) >= top_k:
                break
        return hits

    def _rebuild_if_dirty(self) -> None:
        if not self._dirty:
            return
        self.faiss_index = faiss.IndexFlatIP(self.dimensions)
        if len(self._matrix):
            self.faiss_index.add(np.ascontiguousarray(self._matrix, dtype=np.float32))
        self._dirty = False

    @property
    def count(self) -> int:
        return len(self._ids)

    def sources(self) -> list[str]:
        """Distinct source names in insertion order."""
        return list(dict.fromkeys(md.get("source", "Unknown") for md in self._metadata))

    # --- Persistence --------------------------------------------------------

    def save(self, index_dir: Path) -> None:
        """Persist FAISS index + ids/metadata + manifest to disk."""
        index_dir = Path(index_dir)
        index_dir.mkdir(parents=True, exist_ok=True)

        with self._lock:
            self._rebuild_if_dirty()
            faiss.write_index(self.faiss_index, str(index_dir / "faiss.index"))
            save_json(
                {"ids": self._ids, "metadata": self._metadata},
                index_dir / "records.json",
            )
            save_json(
                {
                    "total_vectors": len(self._ids),
                    "dimensions": self.dimensions,
                    "sources": self.sources(),
                },
                index_dir / "index_manifest.json",
            )
        logger.info(f"[FAISSIndex] {len(self._ids)} vectors saved -> {index_dir}")

    @classmethod
    def load(cls, index_dir: Path, dimensions: int = DEFAULT_DIMENSIONS) -> "FAISSIndex":
        """Load a persisted index, or return an empty one when none exists yet."""
        index_dir = Path(index_dir)
        faiss_path = index_dir / "faiss.index"
        if not faiss_path.exists():
            logger.info(f"[FAISSIndex] No index at {index_dir}; starting empty")
            return cls(dimensions=dimensions)

        stored = faiss.read_index(str(faiss_path))
        instance = cls(dimensions=stored.d)
        records = load_json(index_dir / "records.json")
        instance._ids = list(records["ids"])
        instance._metadata = list(records["metadata"])
        instance._row_of = {vid: i for i, vid in enumerate(instance._ids)}
        if stored.ntotal:
            instance._matrix = stored.reconstruct_n(0, stored.ntotal).astype(np.float32)
        instance.faiss_index = stored

        logger.info(f"[FAISSIndex] Loaded: {stored.ntotal} vectors from {index_dir}")
        return instance


def _normalise(matrix: np.ndarray) -> np.ndarray:
    """L2-normalise rows so inner product == cosine similarity."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
    return (matrix / norms).astype(np.float32)

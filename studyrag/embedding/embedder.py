"""
OpenAI Embedding Client
------------------------
Wraps the OpenAI embeddings endpoint with:
  - One request per text, fanned out on a thread pool and joined in order
  - All-or-nothing semantics: one failed call fails the whole batch
  - Token usage accounting for cost reporting
  - LangSmith run tracing (no-op unless tracing is configured)

The client is injected, so the same class serves the server key, a team key
or a caller's own key without any module-level state.
"""
from __future__ import annotations

import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Any

from langsmith import traceable
from loguru import logger

from studyrag.embedding.schemas import EmbeddingBatch
from studyrag.errors import UpstreamProviderError
from studyrag.utils.helpers import redact_secrets


MODEL = "text-embedding-3-large"
MAX_WORKERS = 8

# USD per million tokens
_EMBEDDING_PRICING: dict[str, float] = {
    "text-embedding-3-large": 0.130,
    "text-embedding-3-small": 0.020,
}


class Embedder:
    """
    Turns texts into embedding vectors, one provider call per text.

    Usage:
        embedder = Embedder(OpenAI(api_key=key))
        batch = embedder.embed(["chunk one", "chunk two"])
        batch.vectors, batch.total_tokens
    """

    def __init__(self, client: Any, model: str = MODEL, max_workers: int = MAX_WORKERS) -> None:
        self._client = client
        self.model = model
        self.max_workers = max_workers
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @traceable(name="embed_texts", run_type="embedding")
    def embed(self, texts: list[str]) -> EmbeddingBatch:
        """
        Embed every text concurrently.

        Raises UpstreamProviderError if any call fails; in that case nothing
        is returned, so callers never see a partial set of vectors.
        """
        if not texts:
            return EmbeddingBatch()

        start = time.perf_counter()
        results: list[tuple[list[float], int] | None] = [None] * len(texts)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(texts))) as pool:
            futures = {pool.submit(self._embed_one, text): i for i, text in enumerate(texts)}
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)

            for future in done:
                exc = future.exception()
                if exc is not None:
                    for p in pending:
                        p.cancel()
                    position = futures[future]
                    logger.error(
                        f"[Embedder] Call {position + 1}/{len(texts)} failed: {redact_secrets(str(exc))}"
                    )
                    raise UpstreamProviderError(
                        f"Embedding request failed for chunk {position}: {exc}",
                        stage="embedding",
                        identifier=str(position),
                    ) from exc
                results[futures[future]] = future.result()

        vectors = [r[0] for r in results]  # type: ignore[index]
        tokens = sum(r[1] for r in results)  # type: ignore[index]

        dims = {len(v) for v in vectors}
        if len(dims) > 1:
            raise UpstreamProviderError(
                f"Embedding provider returned mixed dimensions: {sorted(dims)}",
                stage="embedding",
            )

        self.total_tokens_used += tokens
        self.total_api_calls += len(texts)
        logger.debug(
            f"[Embedder] {len(texts)} texts | {tokens} tokens | "
            f"{time.perf_counter() - start:.2f}s | running total {self.total_tokens_used}"
        )
        return EmbeddingBatch(vectors=vectors, total_tokens=tokens)

    def _embed_one(self, text: str) -> tuple[list[float], int]:
        """Call the embeddings API for a single input."""
        # Empty strings are rejected by the API
        safe_text = text if text.strip() else " "
        response = self._client.embeddings.create(model=self.model, input=safe_text)
        embedding = list(response.data[0].embedding)
        usage = getattr(response, "usage", None)
        tokens = usage.total_tokens if usage is not None else 0
        return embedding, tokens

    def embed_query(self, text: str) -> list[float]:
        """Embed a single query string."""
        try:
            embedding, tokens = self._embed_one(text)
        except Exception as exc:
            raise UpstreamProviderError(
                f"Query embedding failed: {exc}", stage="embedding", identifier="query"
            ) from exc
        self.total_tokens_used += tokens
        self.total_api_calls += 1
        return embedding

    def usage_summary(self) -> dict:
        rate = _EMBEDDING_PRICING.get(self.model, 0.130)
        return {
            "model": self.model,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
            "estimated_cost_usd": round(self.total_tokens_used / 1_000_000 * rate, 6),
        }

"""
Study Serving Pipeline
-----------------------
Wires the core stages into the three user-facing operations.

    ingest:     text -> resolve credits -> chunk -> embed -> upsert -> settle

    ask:        question
                    |
                    v
                resolve key / credits   (rejects before any paid call)
                    |
                    v
                embed query -> vector search (top_k=25, optional source filter)
                    |
                    v
                ContextSelector (min length, <=3 per source, <=20 total)
                    |
                    v
                numbered-context prompt -> CompletionOrchestrator
                    |
                    v
                settle credits -> AskResult

    flashcards: like ask, but a broad expanded query, up to 10 chunks per
                source, and one JSON-mode completion per source

Credits are taken only after the paid work has succeeded, and at most once
per request.  Empty context short-circuits: no completion, no deduction.
"""
from __future__ import annotations

import math
import time
import uuid
from typing import Optional

from langsmith import traceable
from loguru import logger
from pydantic import SecretStr

from studyrag.billing.actions import CreditAction
from studyrag.billing.ledger import CreditLedger
from studyrag.billing.resolver import KeyResolution, KeyResolver
from studyrag.billing.teams import TeamKeyStore
from studyrag.chunking.chunker import ParagraphChunker
from studyrag.config import Settings
from studyrag.embedding.embedder import Embedder
from studyrag.embedding.faiss_index import VectorIndex
from studyrag.embedding.schemas import EmbeddingVector
from studyrag.errors import InvalidRequestError
from studyrag.generation.orchestrator import CompletionOrchestrator
from studyrag.generation.parsing import ParseFailed, parse_json_array, require_items
from studyrag.generation.prompts import (
    FLASHCARD_QUERY,
    NO_CONTEXT_RESPONSE,
    NO_FLASHCARD_CONTENT,
    build_ask_prompt,
    build_flashcard_prompt,
)
from studyrag.generation.providers import ClientFactory
from studyrag.retrieval.context import ContextSelector, fit_to_budget, select_context
from studyrag.retrieval.query_expansion import expand_query
from studyrag.retrieval.retriever import VectorRetriever, build_source_filter
from studyrag.schemas import Provider
from studyrag.serving.schemas import (
    AnswerSource,
    AskRequest,
    AskResult,
    Flashcard,
    FlashcardRequest,
    FlashcardResult,
    IngestRequest,
    IngestResult,
)
from studyrag.utils.helpers import clean_text

# Average characters per page below which a document is probably scanned
MIN_CHARS_PER_PAGE = 100


class StudyPipeline:
    """
    End-to-end ingestion, question answering and flashcard generation.

    Usage:
        pipeline = StudyPipeline(settings, FAISSIndex.load(dir), ledger, teams)
        pipeline.ingest(IngestRequest(text=..., filename="notes.pdf", user_id="u1"))
        result = pipeline.ask(AskRequest(question="What is osmosis?", user_id="u1"))
        print(result.answer)
    """

    def __init__(
        self,
        settings: Settings,
        index: VectorIndex,
        ledger: CreditLedger,
        team_store: TeamKeyStore,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.settings = settings
        self.index = index
        self.ledger = ledger
        self.team_store = team_store
        self.client_factory = client_factory or ClientFactory()

        self.resolver = KeyResolver(settings, ledger, team_store)
        self.orchestrator = CompletionOrchestrator(self.client_factory, settings)
        self.chunker = ParagraphChunker(target_tokens=settings.chunk_target_tokens)
        self.selector = ContextSelector(
            max_per_source=settings.max_per_source,
            max_total=settings.max_total,
            min_chars=settings.min_hit_chars,
        )

    # --- Helpers ----------------------------------------------------------------

    def _embedder(self, resolution: KeyResolution) -> Embedder:
        """Embeddings are always OpenAI: the resolved key when it is one, else the server key."""
        if resolution.provider == Provider.OPENAI:
            key: SecretStr = resolution.api_key
        else:
            key = self.settings.require_openai_key()
        return Embedder(
            self.client_factory.openai(key),
            model=self.settings.embedding_model,
            max_workers=self.settings.embed_max_workers,
        )

    # --- Ingest -----------------------------------------------------------------

    @traceable(name="ingest_document", run_type="chain")
    def ingest(self, request: IngestRequest) -> IngestResult:
        filename = (request.filename or "").strip()
        text = clean_text(request.text or "")
        if not text:
            raise InvalidRequestError(
                "Document contains no extractable text. It may be a scanned document or contain only images.",
                stage="ingest",
                identifier=filename,
            )
        if not filename:
            raise InvalidRequestError("No filename provided", stage="ingest")

        page_count = request.page_count or max(
            1, math.ceil(len(text) / self.settings.chars_per_page_estimate)
        )
        word_count = request.word_count if request.word_count is not None else len(text.split())
        warning = None
        avg_chars = len(text) / page_count
        if avg_chars < MIN_CHARS_PER_PAGE:
            warning = (
                f"This document appears to be scanned or image-based (only {round(avg_chars)} "
                "characters per page detected). Text extraction may be incomplete."
            )
            logger.warning(f"[StudyPipeline] {filename}: {warning}")

        resolution = self.resolver.resolve(
            Provider.OPENAI,
            self.settings.embedding_model,
            user_id=request.user_id,
            api_key=request.api_key,
            action=CreditAction.UPLOAD_DOCUMENT_PAGE,
            quantity=page_count,
        )

        document_id = request.document_id or uuid.uuid4().hex
        chunks = self.chunker.chunk(text, filename)
        batch = self._embedder(resolution).embed([c.text for c in chunks])

        vectors = [
            EmbeddingVector.from_chunk(chunk, values, document_id=document_id)
            for chunk, values in zip(chunks, batch.vectors)
        ]
        self.index.upsert(vectors)

        remaining = self.resolver.settle(
            resolution,
            description=f"Uploaded: {filename} ({page_count} pages)",
            metadata={
                "filename": filename,
                "page_count": page_count,
                "word_count": word_count,
                "chunks": len(chunks),
            },
        )

        logger.info(
            f"[StudyPipeline] Ingested {filename!r} | {len(chunks)} chunks | "
            f"{page_count} page(s) | {batch.total_tokens} embedding tokens | via {resolution.key_source.value}"
        )
        return IngestResult(
            document_id=document_id,
            filename=filename,
            chunks=len(chunks),
            page_count=page_count,
            word_count=word_count,
            vector_ids=[v.id for v in vectors],
            embedding_tokens=batch.total_tokens,
            key_source=resolution.key_source,
            team_name=resolution.team_name,
            credits_used=resolution.cost if remaining is not None else 0,
            remaining_balance=remaining,
            warning=warning,
        )

    # --- Ask --------------------------------------------------------------------

    @traceable(name="ask", run_type="chain")
    def ask(self, request: AskRequest) -> AskResult:
        question = (request.question or "").strip()
        if not question:
            raise InvalidRequestError("No question provided", stage="ask")
        logger.info(f"[StudyPipeline] Ask: {question[:100]!r}")

        resolution = self.resolver.resolve(
            request.provider, request.model, user_id=request.user_id, api_key=request.api_key
        )

        retriever = VectorRetriever(self.index, self._embedder(resolution))
        flt = build_source_filter(request.source_filenames, request.document_ids)
        hits = retriever.retrieve(question, top_k=self.settings.ask_top_k, filter=flt)

        window = fit_to_budget(self.selector.select(hits), self.settings.max_context_tokens)
        if window.is_empty:
            logger.info("[StudyPipeline] No usable context; skipping completion")
            return AskResult(
                answer=NO_CONTEXT_RESPONSE,
                key_source=resolution.key_source,
                team_name=resolution.team_name,
                remaining_balance=resolution.balance,
                no_results=True,
            )

        prompt = build_ask_prompt(question, window.hits, window.sources)
        completion = self.orchestrator.complete(
            prompt,
            resolution.provider,
            resolution.model,
            resolution.credentials(),
            temperature=self.settings.ask_temperature,
            max_tokens=self.settings.completion_max_tokens,
        )

        sources = [
            AnswerSource(number=i, source=hit.source, relevance=round(hit.score * 100))
            for i, hit in enumerate(window.hits, start=1)
        ]
        remaining = self.resolver.settle(
            resolution,
            description=f"Asked: {question[:50]}",
            metadata={"model": completion.model, "tokens": completion.tokens_used},
        )

        return AskResult(
            answer=completion.text,
            sources=sources,
            key_source=resolution.key_source,
            team_name=resolution.team_name,
            remaining_balance=remaining,
            tokens_used=completion.tokens_used,
        )

    # --- Flashcards -------------------------------------------------------------

    @traceable(name="flashcards", run_type="chain")
    def flashcards(self, request: FlashcardRequest) -> FlashcardResult:
        names = [n.strip() for n in (request.source_filenames or []) if n and n.strip()]
        if not names:
            raise InvalidRequestError("No source files provided", stage="flashcards")
        if not 1 <= request.count <= self.settings.max_flashcards:
            raise InvalidRequestError(
                f"count must be between 1 and {self.settings.max_flashcards}",
                stage="flashcards",
                identifier=str(request.count),
            )

        resolution = self.resolver.resolve(
            request.provider, request.model, user_id=request.user_id, api_key=request.api_key
        )

        retriever = VectorRetriever(self.index, self._embedder(resolution))
        hits = retriever.retrieve(
            expand_query(FLASHCARD_QUERY),
            top_k=self.settings.flashcard_top_k,
            filter=build_source_filter(names),
        )
        window = select_context(
            hits,
            max_per_source=self.settings.flashcard_chunks_per_source,
            max_total=self.settings.flashcard_top_k,
            min_chars=self.settings.min_hit_chars,
        )
        if window.is_empty:
            return FlashcardResult(
                key_source=resolution.key_source,
                team_name=resolution.team_name,
                remaining_balance=resolution.balance,
                message=NO_FLASHCARD_CONTENT,
            )

        grouped = window.by_source()
        cards_per_source = max(3, request.count // len(grouped))
        logger.info(
            f"[StudyPipeline] Flashcards: {len(grouped)} source(s) x {cards_per_source} cards "
            f"| {resolution.provider.value}/{resolution.model}"
        )

        drafts: list[tuple[str, str, str]] = []
        failures: list[tuple[str, ParseFailed]] = []
        tokens_used = 0
        for source, source_hits in grouped.items():
            completion = self.orchestrator.complete(
                build_flashcard_prompt(source, source_hits, cards_per_source),
                resolution.provider,
                resolution.model,
                resolution.credentials(),
                json_mode=True,
                temperature=self.settings.flashcard_temperature,
                max_tokens=self.settings.completion_max_tokens,
            )
            tokens_used += completion.tokens_used
            outcome = parse_json_array(completion.text)
            if isinstance(outcome, ParseFailed):
                logger.warning(f"[StudyPipeline] Skipping {source!r}: unparseable flashcard output ({outcome.reason})")
                failures.append((source, outcome))
                continue
            items = require_items(outcome, identifier=source)
            drafts.extend(_card_fields(item, source) for item in items if _is_card(item))

        if failures and len(failures) == len(grouped):
            failed_source, failed = failures[0]
            require_items(failed, identifier=failed_source)
        skipped = {name for name, _ in failures}

        stamp = int(time.time() * 1000)
        cards = [
            Flashcard(id=f"flashcard-{stamp}-{idx}", front=front, back=back, source=source)
            for idx, (front, back, source) in enumerate(drafts[: request.count])
        ]

        remaining = self.resolver.settle(
            resolution,
            description=f"Generated {len(cards)} flashcards from {len(grouped)} source(s)",
            metadata={
                "model": resolution.model,
                "tokens": tokens_used,
                "count": len(cards),
                "sources": len(grouped),
                "failed_sources": sorted(skipped),
            },
        )

        return FlashcardResult(
            flashcards=cards,
            sources=list(dict.fromkeys(card.source for card in cards)),
            flashcards_by_source={
                source: [card for card in cards if card.source == source]
                for source in grouped
                if source not in skipped
            },
            key_source=resolution.key_source,
            team_name=resolution.team_name,
            remaining_balance=remaining,
            tokens_used=tokens_used,
        )

    # --- Maintenance ------------------------------------------------------------

    def delete_source(self, filename: str) -> int:
        """Remove every vector of a source document; returns the number removed."""
        if not filename or not filename.strip():
            raise InvalidRequestError("No filename provided", stage="delete")
        filename = filename.strip()
        removed = self.index.delete_where({"source": {"$eq": filename}})
        logger.info(f"[StudyPipeline] Deleted {removed} chunk(s) of {filename!r}")
        return removed


def _is_card(item: object) -> bool:
    if not isinstance(item, dict):
        return False
    front, back = item.get("front"), item.get("back")
    return isinstance(front, str) and isinstance(back, str) and bool(front.strip()) and bool(back.strip())


def _card_fields(item: dict, source: str) -> tuple[str, str, str]:
    # The model's own source label is ignored
    return item["front"].strip(), item["back"].strip(), source

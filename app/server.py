"""
StudyRAG - Web API Server
--------------------------
FastAPI server over the StudyPipeline.

Endpoints:
  GET  /api/health              -> status, vector count, default model
  POST /api/ask                 -> answer a question from the caller's documents
  POST /api/study/flashcards    -> generate flashcards for selected sources
  POST /api/upload/process      -> chunk, embed and index extracted document text
  POST /api/delete              -> remove every chunk of a source
  GET  /api/credits/balance     -> the signed-in caller's credit balance

The caller's identity comes from `Authorization: Bearer <token>`, checked by
the token verifier passed to create_app().  Without one every caller is
anonymous, which limits them to their own key or a team key.

Run from the project root:
    uvicorn app.server:app --reload --port 8000
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from studyrag.errors import SignInRequiredError, StudyRAGError
from studyrag.schemas import Provider
from studyrag.serving.pipeline import StudyPipeline
from studyrag.serving.schemas import AskRequest, FlashcardRequest, IngestRequest

# Maps a bearer token to a user id, or None when the token is not valid
TokenVerifier = Callable[[str], Optional[str]]


def _anonymous(token: str) -> Optional[str]:
    return None


# ---------------------------------------------------------------------------
# Request bodies (identity never comes from the body)
# ---------------------------------------------------------------------------

class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AskBody(_Body):
    question: str
    api_key: Optional[str] = Field(default=None, repr=False)
    provider: Provider = Provider.OPENAI
    model: Optional[str] = None
    source_filenames: Optional[list[str]] = None
    document_ids: Optional[list[str]] = None


class FlashcardBody(_Body):
    source_filenames: list[str] = Field(default_factory=list)
    count: int = 10
    api_key: Optional[str] = Field(default=None, repr=False)
    provider: Provider = Provider.OPENAI
    model: Optional[str] = None


class UploadBody(_Body):
    text: str
    filename: str
    api_key: Optional[str] = Field(default=None, repr=False)
    page_count: Optional[int] = Field(default=None, ge=1)
    word_count: Optional[int] = Field(default=None, ge=0)
    document_id: Optional[str] = None


class DeleteBody(_Body):
    filename: str


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def _build_default_pipeline(app: FastAPI) -> None:
    """Load settings and local stores; register a persist hook for mutations."""
    from studyrag.billing.ledger import InMemoryCreditLedger
    from studyrag.billing.teams import InMemoryTeamKeyStore
    from studyrag.config import Settings
    from studyrag.embedding.faiss_index import FAISSIndex
    from studyrag.utils.logger import setup_logger

    settings = Settings.from_env()
    setup_logger(settings.log_level, settings.log_file)
    index = FAISSIndex.load(Path(settings.index_dir), dimensions=settings.embedding_dimensions)
    ledger = InMemoryCreditLedger.load(settings.ledger_path)
    teams = InMemoryTeamKeyStore.load(settings.teams_path)

    def persist(include_index: bool = True) -> None:
        if include_index:
            index.save(Path(settings.index_dir))
        ledger.save()

    app.state.pipeline = StudyPipeline(settings, index, ledger, teams)
    app.state.persist = persist


def create_app(
    pipeline: Optional[StudyPipeline] = None,
    verify_token: Optional[TokenVerifier] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the pipeline once at startup unless one was injected."""
        if app.state.pipeline is None:
            logger.info("[Server] Loading StudyRAG pipeline...")
            _build_default_pipeline(app)
        logger.info(f"[Server] Pipeline ready | {app.state.pipeline.index.count:,} vectors")
        yield
        if app.state.persist is not None:
            await _run(app.state.persist, True)
        logger.info("[Server] Pipeline unloaded.")

    app = FastAPI(
        title="StudyRAG API",
        description="Question answering and flashcards over your own documents",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.persist = None
    app.state.verify_token = verify_token or _anonymous

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StudyRAGError)
    async def studyrag_error_handler(request: Request, exc: StudyRAGError) -> JSONResponse:
        logger.warning(f"[API] {request.url.path} -> {exc.status_code} {type(exc).__name__}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    _register_routes(app)
    return app


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def _pipeline(request: Request) -> StudyPipeline:
    return request.app.state.pipeline


def _caller_id(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    token = header[7:].strip()
    return request.app.state.verify_token(token) if token else None


async def _run(fn, *args):
    """Run a blocking pipeline call off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(fn, *args))


async def _persist(request: Request, include_index: bool) -> None:
    """Save the ledger, and the index after it changed, off the event loop."""
    persist = request.app.state.persist
    if persist is not None:
        await _run(persist, include_index)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    async def health(pipeline: StudyPipeline = Depends(_pipeline)):
        return {
            "status": "ok",
            "vectors": pipeline.index.count,
            "default_provider": pipeline.settings.default_provider.value,
            "default_model": pipeline.settings.default_model,
        }

    @app.post("/api/ask")
    async def ask(
        body: AskBody,
        request: Request,
        pipeline: StudyPipeline = Depends(_pipeline),
        user_id: Optional[str] = Depends(_caller_id),
    ):
        logger.info(f"[API] Ask | provider={body.provider.value} model={body.model} | user={user_id}")
        result = await _run(
            pipeline.ask,
            AskRequest(
                question=body.question,
                user_id=user_id,
                api_key=body.api_key,
                provider=body.provider,
                model=body.model,
                source_filenames=body.source_filenames,
                document_ids=body.document_ids,
            ),
        )
        await _persist(request, include_index=False)
        return result.model_dump(mode="json", by_alias=True)

    @app.post("/api/study/flashcards")
    async def flashcards(
        body: FlashcardBody,
        request: Request,
        pipeline: StudyPipeline = Depends(_pipeline),
        user_id: Optional[str] = Depends(_caller_id),
    ):
        result = await _run(
            pipeline.flashcards,
            FlashcardRequest(
                source_filenames=body.source_filenames,
                count=body.count,
                user_id=user_id,
                api_key=body.api_key,
                provider=body.provider,
                model=body.model,
            ),
        )
        await _persist(request, include_index=False)
        return result.model_dump(mode="json", by_alias=True)

    @app.post("/api/upload/process")
    async def upload_process(
        body: UploadBody,
        request: Request,
        pipeline: StudyPipeline = Depends(_pipeline),
        user_id: Optional[str] = Depends(_caller_id),
    ):
        result = await _run(
            pipeline.ingest,
            IngestRequest(
                text=body.text,
                filename=body.filename,
                user_id=user_id,
                api_key=body.api_key,
                page_count=body.page_count,
                word_count=body.word_count,
                document_id=body.document_id,
            ),
        )
        await _persist(request, include_index=True)
        return {"success": True, **result.model_dump(mode="json", by_alias=True)}

    @app.post("/api/delete")
    async def delete(
        body: DeleteBody,
        request: Request,
        pipeline: StudyPipeline = Depends(_pipeline),
    ):
        removed = await _run(pipeline.delete_source, body.filename)
        await _persist(request, include_index=True)
        message = (
            f"Deleted {removed} chunks from {body.filename}" if removed else "No chunks found for this file"
        )
        return {"success": True, "message": message, "deletedCount": removed}

    @app.get("/api/credits/balance")
    async def credits_balance(
        pipeline: StudyPipeline = Depends(_pipeline),
        user_id: Optional[str] = Depends(_caller_id),
    ):
        if user_id is None:
            raise SignInRequiredError()
        return {"balance": pipeline.ledger.get_balance(user_id)}


app = create_app()

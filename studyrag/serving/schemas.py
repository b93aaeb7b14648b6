"""
Request and result models for the serving pipeline.

Results serialise with camelCase aliases (`model_dump(by_alias=True)`) so
the HTTP layer returns the field names browser clients expect.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from studyrag.schemas import KeySource, Provider


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class IngestRequest(_Model):
    text: str
    filename: str
    user_id: Optional[str] = None
    api_key: Optional[str] = Field(default=None, repr=False)
    page_count: Optional[int] = Field(default=None, ge=1)
    word_count: Optional[int] = Field(default=None, ge=0)
    document_id: Optional[str] = None


class AskRequest(_Model):
    question: str
    user_id: Optional[str] = None
    api_key: Optional[str] = Field(default=None, repr=False)
    provider: Provider = Provider.OPENAI
    model: Optional[str] = None
    source_filenames: Optional[list[str]] = None
    document_ids: Optional[list[str]] = None


class FlashcardRequest(_Model):
    source_filenames: list[str]
    count: int = 10
    user_id: Optional[str] = None
    api_key: Optional[str] = Field(default=None, repr=False)
    provider: Provider = Provider.OPENAI
    model: Optional[str] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class AnswerSource(_Model):
    number: int
    source: str
    relevance: int          # score as a 0-100 percentage


class Flashcard(_Model):
    id: str
    front: str
    back: str
    source: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AskResult(_Model):
    answer: str
    sources: list[AnswerSource] = Field(default_factory=list)
    key_source: KeySource
    team_name: Optional[str] = None
    remaining_balance: Optional[int] = None
    tokens_used: int = 0
    no_results: bool = False


class FlashcardResult(_Model):
    flashcards: list[Flashcard] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    flashcards_by_source: dict[str, list[Flashcard]] = Field(default_factory=dict)
    key_source: KeySource
    team_name: Optional[str] = None
    remaining_balance: Optional[int] = None
    tokens_used: int = 0
    message: Optional[str] = None


class IngestResult(_Model):
    document_id: str
    filename: str
    chunks: int
    page_count: int
    word_count: int = 0
    vector_ids: list[str] = Field(default_factory=list)
    embedding_tokens: int = 0
    key_source: KeySource
    team_name: Optional[str] = None
    credits_used: int = 0
    remaining_balance: Optional[int] = None
    warning: Optional[str] = None

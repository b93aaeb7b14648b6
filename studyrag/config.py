"""
Runtime configuration.

Settings is built once by the process entry point (CLI command or API server
lifespan) and handed to every component that needs it.  Nothing in the core
reads the environment on its own.

Usage:
    settings = Settings.from_env()                       # .env + environment
    settings = Settings.from_env("config/studyrag.yaml") # YAML overrides on top
    settings = Settings(openai_api_key="sk-...")         # tests / notebooks
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator

from studyrag.errors import ConfigurationError
from studyrag.schemas import Provider

# Environment variable -> Settings field
_ENV_FIELDS: dict[str, str] = {
    "OPENAI_API_KEY": "openai_api_key",
    "ANTHROPIC_API_KEY": "anthropic_api_key",
    "STUDYRAG_INDEX_DIR": "index_dir",
    "STUDYRAG_LEDGER_PATH": "ledger_path",
    "STUDYRAG_TEAMS_PATH": "teams_path",
    "STUDYRAG_DEFAULT_PROVIDER": "default_provider",
    "STUDYRAG_DEFAULT_MODEL": "default_model",
    "STUDYRAG_EMBEDDING_MODEL": "embedding_model",
    "STUDYRAG_LOG_LEVEL": "log_level",
    "STUDYRAG_LOG_FILE": "log_file",
}


class Settings(BaseModel):
    """All tunables for ingestion, retrieval, generation and billing."""

    # --- Server-side provider keys (the "credits" tier) ----------------------
    openai_api_key: Optional[SecretStr] = None
    anthropic_api_key: Optional[SecretStr] = None

    # --- Models ---------------------------------------------------------------
    embedding_model: str = "text-embedding-3-large"
    embedding_dimensions: int = 3072
    default_provider: Provider = Provider.OPENAI
    default_model: str = "gpt-4o-mini"
    default_anthropic_model: str = "claude-haiku-4-5-20251001"

    # --- Storage --------------------------------------------------------------
    index_dir: str = "data/index"
    ledger_path: str = "data/credits.json"
    teams_path: str = "data/teams.json"

    # --- Ingestion ------------------------------------------------------------
    chunk_target_tokens: int = Field(default=1500, gt=0)
    embed_max_workers: int = Field(default=8, gt=0)
    chars_per_page_estimate: int = Field(default=3000, gt=0)

    # --- Retrieval & context selection ---------------------------------------
    ask_top_k: int = Field(default=25, gt=0)
    flashcard_top_k: int = Field(default=30, gt=0)
    min_hit_chars: int = Field(default=50, ge=0)
    max_per_source: int = Field(default=3, gt=0)
    max_total: int = Field(default=20, gt=0)
    flashcard_chunks_per_source: int = Field(default=10, gt=0)
    max_context_tokens: int = Field(default=12000, gt=0)

    # --- Generation -----------------------------------------------------------
    completion_max_tokens: int = Field(default=2000, gt=0)
    ask_temperature: float = 0.3
    flashcard_temperature: float = 0.7
    max_flashcards: int = Field(default=50, gt=0)

    # --- Logging --------------------------------------------------------------
    log_level: str = "INFO"
    log_file: Optional[str] = "logs/studyrag.log"

    @field_validator("index_dir", "ledger_path", "teams_path")
    @classmethod
    def _non_empty_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("storage paths must not be empty")
        return v

    # --- Construction ---------------------------------------------------------

    @classmethod
    def from_env(cls, config_path: Optional[str] = None) -> "Settings":
        """Load .env, read known environment variables, then apply YAML overrides."""
        load_dotenv()
        values: dict[str, Any] = {}
        for env_name, field_name in _ENV_FIELDS.items():
            raw = os.getenv(env_name)
            if raw:
                values[field_name] = raw

        if config_path:
            values.update(_load_yaml(config_path))

        return cls(**values)

    # --- Lookups --------------------------------------------------------------

    def server_key_for(self, provider: Provider) -> Optional[SecretStr]:
        if provider == Provider.ANTHROPIC:
            return self.anthropic_api_key
        return self.openai_api_key

    def default_model_for(self, provider: Provider) -> str:
        if provider == Provider.ANTHROPIC:
            return self.default_anthropic_model
        return self.default_model

    def require_openai_key(self) -> SecretStr:
        """The server's embedding key; raises ConfigurationError when absent."""
        if self.openai_api_key is None:
            raise ConfigurationError(
                "OPENAI_API_KEY is not configured on the server.",
                stage="configuration",
                identifier="OPENAI_API_KEY",
            )
        return self.openai_api_key


def _load_yaml(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(
            f"Config file not found: {p}", stage="configuration", identifier=str(p)
        )
    with open(p, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file must contain a mapping: {p}", stage="configuration", identifier=str(p)
        )
    return data

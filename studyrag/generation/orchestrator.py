"""
Completion Orchestrator
------------------------
Sends one prompt to the selected provider and returns a CompletionResult.

If the resolved credentials hold no key for the requested provider, the
request moves to the configured default provider and model when a key for
that exists.  Provider exceptions surface as UpstreamProviderError with any
key material redacted.  There is no retry.
"""
from __future__ import annotations

from typing import Optional

from langsmith import traceable
from loguru import logger
from pydantic import SecretStr

from studyrag.config import Settings
from studyrag.errors import NoUsableKeyError, UpstreamProviderError
from studyrag.generation.providers import ADAPTERS, ClientFactory, CompletionResult, ProviderAdapter
from studyrag.schemas import Provider


class CompletionOrchestrator:
    """
    Usage:
        orchestrator = CompletionOrchestrator(ClientFactory(), settings)
        result = orchestrator.complete(prompt, Provider.OPENAI, "gpt-4o-mini",
                                       resolution.credentials())
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        settings: Settings,
        adapters: Optional[dict[Provider, ProviderAdapter]] = None,
    ) -> None:
        self.client_factory = client_factory
        self.settings = settings
        self.adapters = adapters or ADAPTERS

    @traceable(name="complete", run_type="llm")
    def complete(
        self,
        prompt: str,
        provider: Provider,
        model: str,
        credentials: dict[Provider, SecretStr],
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        provider, model = self._route(provider, model, credentials)
        temperature = self.settings.ask_temperature if temperature is None else temperature
        max_tokens = max_tokens or self.settings.completion_max_tokens

        logger.debug(
            f"[Orchestrator] {provider.value}/{model} | json_mode={json_mode} | "
            f"prompt={len(prompt)} chars"
        )

        adapter = self.adapters[provider]
        try:
            client = self.client_factory.for_provider(provider, credentials[provider])
            return adapter.complete(client, prompt, model, json_mode, temperature, max_tokens)
        except Exception as exc:
            logger.error(f"[Orchestrator] {provider.value}/{model} call failed: {type(exc).__name__}")
            raise UpstreamProviderError(
                f"{provider.value} completion failed: {exc}",
                stage="completion",
                identifier=f"{provider.value}/{model}",
            ) from exc

    def _route(
        self,
        provider: Provider,
        model: str,
        credentials: dict[Provider, SecretStr],
    ) -> tuple[Provider, str]:
        if credentials.get(provider) is not None:
            return provider, model

        fallback = self.settings.default_provider
        if fallback != provider and credentials.get(fallback) is not None:
            fallback_model = self.settings.default_model_for(fallback)
            logger.warning(
                f"[Orchestrator] No {provider.value} key; falling back to {fallback.value}/{fallback_model}"
            )
            return fallback, fallback_model

        raise NoUsableKeyError(
            f"No API key available for {provider.value}.", stage="completion"
        )

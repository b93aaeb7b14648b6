"""
Provider adapters
------------------
Two adapters with an identical complete() interface:

  OpenAIChatAdapter         -- chat completions (gpt-4o-mini, gpt-4o, ...)
  AnthropicMessagesAdapter  -- messages API (claude-haiku-4-5, claude-sonnet-4-6)

Both normalise the provider response to a CompletionResult.  Clients are
built per request by a ClientFactory from the resolved key, so nothing
holds a provider client between requests.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import BaseModel, SecretStr

from studyrag.schemas import Provider


# ---------------------------------------------------------------------------
# Model pricing table  (input_$/M, output_$/M), used for cost logging only
# ---------------------------------------------------------------------------

_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-3.5-turbo":             (0.500,  1.500),
    "gpt-4o-mini":               (0.150,  0.600),
    "gpt-4o":                    (2.500, 10.000),
    "gpt-4-turbo":               (10.00, 30.000),
    "claude-haiku-4-5-20251001": (0.800,  4.000),
    "claude-sonnet-4-6":         (3.000, 15.000),
}


def _cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    rates = _MODEL_PRICING.get(model, (0.150, 0.600))
    return (prompt_tokens * rates[0] + completion_tokens * rates[1]) / 1_000_000


class CompletionResult(BaseModel):
    """Provider-agnostic result of one completion call."""

    text: str
    tokens_used: int
    provider: Provider
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def estimated_cost_usd(self) -> float:
        return _cost_usd(self.model, self.prompt_tokens, self.completion_tokens)


# ---------------------------------------------------------------------------
# Client construction
# ---------------------------------------------------------------------------

class ClientFactory:
    """Builds SDK clients from a resolved key.  Tests swap in fakes."""

    def openai(self, api_key: SecretStr) -> Any:
        from openai import OpenAI  # lazy import keeps import graph clean
        return OpenAI(api_key=api_key.get_secret_value())

    def anthropic(self, api_key: SecretStr) -> Any:
        from anthropic import Anthropic  # lazy import
        return Anthropic(api_key=api_key.get_secret_value())

    def for_provider(self, provider: Provider, api_key: SecretStr) -> Any:
        if provider == Provider.ANTHROPIC:
            return self.anthropic(api_key)
        return self.openai(api_key)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class ProviderAdapter(ABC):
    provider: Provider

    @abstractmethod
    def complete(
        self,
        client: Any,
        prompt: str,
        model: str,
        json_mode: bool,
        temperature: float,
        max_tokens: int,
    ) -> CompletionResult:
        ...


class OpenAIChatAdapter(ProviderAdapter):
    provider = Provider.OPENAI

    def complete(
        self,
        client: Any,
        prompt: str,
        model: str,
        json_mode: bool,
        temperature: float,
        max_tokens: int,
    ) -> CompletionResult:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = client.chat.completions.create(**kwargs)

        text = response.choices[0].message.content or ""
        usage = response.usage
        prompt_tok = usage.prompt_tokens if usage else 0
        comp_tok = usage.completion_tokens if usage else 0
        total = usage.total_tokens if usage else 0

        logger.info(
            f"[OpenAIChatAdapter] Done | {model} | prompt={prompt_tok} "
            f"completion={comp_tok} | cost=${_cost_usd(model, prompt_tok, comp_tok):.5f}"
        )
        return CompletionResult(
            text=text,
            tokens_used=total,
            provider=self.provider,
            model=model,
            prompt_tokens=prompt_tok,
            completion_tokens=comp_tok,
        )


class AnthropicMessagesAdapter(ProviderAdapter):
    """
    The messages API has no JSON response mode; json_mode relies on the
    prompt asking for JSON only.
    """

    provider = Provider.ANTHROPIC

    def complete(
        self,
        client: Any,
        prompt: str,
        model: str,
        json_mode: bool,
        temperature: float,
        max_tokens: int,
    ) -> CompletionResult:
        response = client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )

        text = "".join(
            block.text for block in (response.content or []) if getattr(block, "type", "text") == "text"
        )
        # Anthropic usage: input_tokens / output_tokens
        prompt_tok = response.usage.input_tokens
        comp_tok = response.usage.output_tokens

        logger.info(
            f"[AnthropicMessagesAdapter] Done | {model} | input={prompt_tok} "
            f"output={comp_tok} | cost=${_cost_usd(model, prompt_tok, comp_tok):.5f}"
        )
        return CompletionResult(
            text=text,
            tokens_used=prompt_tok + comp_tok,
            provider=self.provider,
            model=model,
            prompt_tokens=prompt_tok,
            completion_tokens=comp_tok,
        )


ADAPTERS: dict[Provider, ProviderAdapter] = {
    Provider.OPENAI: OpenAIChatAdapter(),
    Provider.ANTHROPIC: AnthropicMessagesAdapter(),
}

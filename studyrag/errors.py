"""
Error taxonomy for the StudyRAG core.

Every error carries the pipeline stage it came from and, where useful, the
identifier it concerns (a chunk position, a source name, a user id).  Messages
are passed through redact_secrets() so provider keys never reach a log line or
an HTTP response body.

Status codes follow the HTTP signal the API server returns for each class.
"""
from __future__ import annotations

from typing import Any, Optional

from studyrag.utils.helpers import redact_secrets


class StudyRAGError(Exception):
    """Base class for every error the core raises on purpose."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> None:
        self.message = redact_secrets(message)
        self.stage = stage
        self.identifier = identifier
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.stage:
            body["stage"] = self.stage
        if self.identifier:
            body["identifier"] = self.identifier
        return body


# --- Configuration --------------------------------------------------------------

class ConfigurationError(StudyRAGError):
    """A required credential or setting is missing."""

    status_code = 400


class NoUsableKeyError(ConfigurationError):
    """No tier (BYOK, team, server credits) produced a provider key."""

    status_code = 401

    def __init__(self, message: Optional[str] = None, stage: str = "key_resolution") -> None:
        super().__init__(
            message
            or (
                "No API key available. Add your own API key, join a team with a "
                "shared key, or sign in to use credits."
            ),
            stage=stage,
        )


class SignInRequiredError(ConfigurationError):
    """Server credits were needed but the caller is anonymous."""

    status_code = 401

    def __init__(self) -> None:
        super().__init__(
            "Please sign in to use credits, add your own API key, or join a team.",
            stage="key_resolution",
        )


class InvalidRequestError(StudyRAGError):
    """The caller's input cannot be processed (empty text, no sources, ...)."""

    status_code = 400


# --- Billing --------------------------------------------------------------------

class InsufficientCreditsError(StudyRAGError):
    """Balance is below the cost of the requested action."""

    status_code = 402

    def __init__(self, cost: int, balance: int, action: Optional[str] = None) -> None:
        self.cost = cost
        self.balance = balance
        self.action = action
        super().__init__(
            f"Insufficient credits. Need {cost} credits but only have {balance}. "
            "Buy more credits or add your own API key.",
            stage="key_resolution",
            identifier=action,
        )

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["required"] = self.cost
        body["balance"] = self.balance
        return body


# --- Upstream -------------------------------------------------------------------

class UpstreamProviderError(StudyRAGError):
    """An embedding or completion call failed."""

    status_code = 502


class ParseError(StudyRAGError):
    """Structured output could not be recovered by the strict or fallback parser."""

    status_code = 502

    def __init__(self, reason: str, excerpt: str, identifier: Optional[str] = None) -> None:
        self.excerpt = redact_secrets(excerpt)
        super().__init__(
            f"Could not parse model output ({reason}). Response began: {self.excerpt!r}",
            stage="parse",
            identifier=identifier,
        )

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["excerpt"] = self.excerpt
        return body

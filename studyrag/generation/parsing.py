"""
Structured-output parsing for model responses that should contain a JSON array.

Two paths, and the result says which one produced it:

  StrictParse    the whole response (code fences stripped) is JSON: either a
                 bare array or an object holding the array under a known field
  FallbackParse  the first [...] span inside the response parsed as an array
  ParseFailed    neither worked; carries the reason and a 200-char excerpt

Fallback success is logged at WARNING so degraded model output stays visible.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from loguru import logger

from studyrag.errors import ParseError

EXCERPT_CHARS = 200
DEFAULT_FIELDS = ("flashcards", "cards")

_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_DECODER = json.JSONDecoder()


@dataclass
class StrictParse:
    items: list[Any] = field(default_factory=list)


@dataclass
class FallbackParse:
    items: list[Any] = field(default_factory=list)


@dataclass
class ParseFailed:
    reason: str
    excerpt: str


ParseOutcome = Union[StrictParse, FallbackParse, ParseFailed]


def _strip_fences(raw: str) -> str:
    return _FENCE.sub("", raw.strip()).strip()


def _extract_array(data: Any, fields: tuple[str, ...]) -> Optional[list[Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for name in fields:
            value = data.get(name)
            if isinstance(value, list):
                return value
    return None


def _first_embedded_array(text: str) -> Optional[list[Any]]:
    """First `[` position that decodes to a complete JSON array; trailing text is ignored."""
    start = text.find("[")
    while start != -1:
        try:
            value, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, list):
            return value
        start = text.find("[", start + 1)
    return None


def parse_json_array(raw: str, fields: tuple[str, ...] = DEFAULT_FIELDS) -> ParseOutcome:
    """Recover a JSON array from a model response."""
    text = _strip_fences(raw or "")

    try:
        items = _extract_array(json.loads(text), fields)
        if items is not None:
            return StrictParse(items=items)
        strict_reason = f"JSON has no array or {'/'.join(fields)} field"
    except json.JSONDecodeError as exc:
        strict_reason = f"invalid JSON: {exc.msg}"

    candidate = _first_embedded_array(text)
    if candidate is not None:
        logger.warning(
            f"[Parser] Strict parse failed ({strict_reason}); recovered "
            f"{len(candidate)} item(s) from embedded array"
        )
        return FallbackParse(items=candidate)

    return ParseFailed(reason=strict_reason, excerpt=(raw or "")[:EXCERPT_CHARS])


def require_items(outcome: ParseOutcome, identifier: Optional[str] = None) -> list[Any]:
    """Items of a successful parse; ParseError for ParseFailed."""
    if isinstance(outcome, ParseFailed):
        logger.error(f"[Parser] Unrecoverable output ({outcome.reason}) for {identifier or 'response'}")
        raise ParseError(outcome.reason, outcome.excerpt, identifier=identifier)
    return outcome.items

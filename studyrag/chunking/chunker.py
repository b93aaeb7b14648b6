"""
StudyRAG - Paragraph Chunker
-----------------------------
Splits extracted document text into bounded-size chunks that follow the
document's own structure wherever it has any.

Strategy:
  - PARAGRAPH  -- paragraphs (blank-line separated) are packed into a running
      buffer until the next one would push it past the character limit, then
      the buffer is flushed.  Keeps related paragraphs together.

  - SENTENCE   -- a paragraph that is over the limit on its own is packed
      sentence by sentence with the same rule.  A single sentence longer than
      the limit is sliced by characters.

  - FIXED      -- text with no blank lines at all has no structure to follow,
      so it is sliced into fixed-length character windows.

Token size is approximated at 4 characters per token, which is close enough
for English prose and avoids a tokenizer round-trip on every paragraph.
"""
from __future__ import annotations

import re

from loguru import logger

from studyrag.chunking.schemas import Chunk


# ── Constants ─────────────────────────────────────────────────────────────────

CHARS_PER_TOKEN = 4
DEFAULT_TARGET_TOKENS = 1500

PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")

PARAGRAPH_JOINER = "\n\n"
SENTENCE_JOINER = " "


def char_limit(target_token_size: int) -> int:
    """Character budget for one chunk."""
    if target_token_size <= 0:
        raise ValueError(f"target_token_size must be positive, got {target_token_size}")
    return target_token_size * CHARS_PER_TOKEN


def estimate_tokens(text: str) -> int:
    """Approximate token count using the same ratio the chunker packs with."""
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def split_sentences(text: str) -> list[str]:
    """Split on terminal punctuation followed by whitespace."""
    return [s.strip() for s in SENTENCE_BREAK.split(text) if s.strip()]


# ── Packing helpers ───────────────────────────────────────────────────────────

def _slice(text: str, limit: int) -> list[str]:
    pieces = (text[i: i + limit].strip() for i in range(0, len(text), limit))
    return [p for p in pieces if p]


def _pack(pieces: list[str], limit: int, joiner: str) -> list[str]:
    """
    Accumulate pieces into buffers of at most `limit` characters.

    A piece that is too large on its own is handed to _split_oversized and
    its parts are emitted directly.
    """
    chunks: list[str] = []
    buffer = ""

    for piece in pieces:
        if len(piece) > limit:
            if buffer:
                chunks.append(buffer)
                buffer = ""
            chunks.extend(_split_oversized(piece, limit, joiner))
            continue

        if not buffer:
            buffer = piece
        elif len(buffer) + len(joiner) + len(piece) <= limit:
            buffer = f"{buffer}{joiner}{piece}"
        else:
            chunks.append(buffer)
            buffer = piece

    if buffer:
        chunks.append(buffer)
    return chunks


def _split_oversized(piece: str, limit: int, joiner: str) -> list[str]:
    # paragraph -> sentences; a sentence (or unsplittable paragraph) -> slices
    if joiner == PARAGRAPH_JOINER:
        sentences = split_sentences(piece)
        if len(sentences) > 1:
            return _pack(sentences, limit, SENTENCE_JOINER)
    return _slice(piece, limit)


# ── Public API ────────────────────────────────────────────────────────────────

def chunk_text(text: str, target_token_size: int = DEFAULT_TARGET_TOKENS) -> list[str]:
    """
    Split raw text into chunk strings of at most target_token_size * 4 characters.

    Every returned string is non-empty after trimming, order follows the
    input, and no non-whitespace character is dropped.
    """
    limit = char_limit(target_token_size)
    if not text or not text.strip():
        return []

    stripped = text.strip()
    if not PARAGRAPH_BREAK.search(stripped):
        return _slice(stripped, limit)

    paragraphs = [p.strip() for p in PARAGRAPH_BREAK.split(stripped) if p.strip()]
    return _pack(paragraphs, limit, PARAGRAPH_JOINER)


class ParagraphChunker:
    """
    Produces Chunk objects for one source document.

    Usage:
        chunker = ParagraphChunker(target_tokens=1500)
        chunks = chunker.chunk(text, source_id="lecture-notes.pdf")
    """

    def __init__(self, target_tokens: int = DEFAULT_TARGET_TOKENS) -> None:
        self.target_tokens = target_tokens
        self.limit = char_limit(target_tokens)

    def chunk(self, text: str, source_id: str) -> list[Chunk]:
        pieces = chunk_text(text, self.target_tokens)
        chunks = [
            Chunk(text=piece, source_id=source_id, index=i)
            for i, piece in enumerate(pieces)
        ]
        logger.debug(
            f"[Chunker] {source_id} | {len(text)} chars | limit={self.limit} "
            f"-> {len(chunks)} chunk(s)"
        )
        return chunks

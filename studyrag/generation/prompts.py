"""
Prompt templates for question answering and flashcard generation.

Keeping templates in a separate module makes them easy to iterate on
without touching generation logic.
"""

# ---------------------------------------------------------------------------
# Question answering
# ---------------------------------------------------------------------------

ASK_PROMPT = """\
You are an expert research assistant. Analyze the provided context and give a \
comprehensive, well-structured answer to the question.

{source_list}
INSTRUCTIONS:
- Provide a detailed, comprehensive answer that synthesizes information from the context
- Use clear structure: introduction, main points, and conclusion
- Always cite your sources using [1], [2], etc. when referencing specific information
- If the question asks about specific aspects, address each one thoroughly
- Include relevant details, examples, and explanations from the context
- If information is missing or unclear, acknowledge it
- Write in a clear, professional tone

CONTEXT FROM DOCUMENTS:
{context}

QUESTION: {question}

Provide a comprehensive answer:"""

MULTI_SOURCE_LINE = "You have context from {count} different documents: {names}. "

# One numbered block per context hit
CONTEXT_ENTRY_TEMPLATE = "[{index}] From {source}:\n{text}"

# ---------------------------------------------------------------------------
# Flashcards
# ---------------------------------------------------------------------------

FLASHCARD_PROMPT = """\
You are an expert educational content creator. Based on the provided context \
from a single document, generate {count} high-quality flashcards.

Each flashcard should:
- Have a clear, concise question or term on the front
- Have a comprehensive, accurate answer on the back
- Cover important concepts, definitions, facts, or key information from this document
- Be suitable for active recall learning
- Be based ONLY on the provided context from this document

Return your response as a JSON object with this exact structure:
{{
  "flashcards": [
    {{
      "front": "Question or term",
      "back": "Answer or definition",
      "source": "{source}"
    }}
  ]
}}

CONTEXT FROM DOCUMENT "{source}":
{context}

Generate exactly {count} flashcards from this document. Return ONLY the JSON object, no other text."""

# Broad query used to pull a spread of material for study tools
FLASHCARD_QUERY = "key concepts important information main points definitions facts"

# ---------------------------------------------------------------------------
# Fallback when no context is retrieved
# ---------------------------------------------------------------------------

NO_CONTEXT_RESPONSE = (
    "No relevant content found in your documents. Try rephrasing your question "
    "or uploading more documents."
)

NO_FLASHCARD_CONTENT = "No content found in selected sources. Try uploading documents first."


def build_context_block(hits) -> str:
    """Number hits [1]..[N] in rank order, each labelled with its source."""
    return "\n\n".join(
        CONTEXT_ENTRY_TEMPLATE.format(index=i, source=hit.source, text=hit.text)
        for i, hit in enumerate(hits, start=1)
    )


def build_ask_prompt(question: str, hits, sources: list[str]) -> str:
    source_list = (
        MULTI_SOURCE_LINE.format(count=len(sources), names=", ".join(sources))
        if len(sources) > 1
        else ""
    )
    return ASK_PROMPT.format(
        source_list=source_list,
        context=build_context_block(hits),
        question=question,
    )


def build_flashcard_prompt(source: str, hits, count: int) -> str:
    context = "\n\n".join(f"[{i}] {hit.text}" for i, hit in enumerate(hits, start=1))
    return FLASHCARD_PROMPT.format(count=count, source=source, context=context)

"""
Prompt templates for the RAG serving pipeline.

Keeping templates in a separate module makes them easy to iterate on
without touching orchestration logic.
"""
from __future__ import annotations

from typing import Sequence

from ragcore.schemas import ContextChunk

# ---------------------------------------------------------------------------
# Grounded system prompt (knowledge base matched)
# ---------------------------------------------------------------------------

RAG_SYSTEM_PROMPT = """\
{system_prompt}

Answer the user's question using the retrieved context below. \
Cite every factual claim with its source number, e.g. [1].

RULES:
- Prefer the retrieved context over general knowledge.
- If the context lacks enough information, say so directly -- do not guess.
- End the response with a "Sources" section listing each [N] reference used.

RETRIEVED CONTEXT:
{context}
"""

# ---------------------------------------------------------------------------
# No knowledge base match: answer from general knowledge
# ---------------------------------------------------------------------------

NO_CONTEXT_SYSTEM_PROMPT = """\
{system_prompt}

No documents in the knowledge base matched this question. Answer from \
general knowledge, and say briefly that no internal sources were found.
"""

CITATION_TEMPLATE = "[{index}] document {document_id} | chunk {chunk_id} | relevance {score:.4f}"

# ---------------------------------------------------------------------------
# User-facing fixed answers
# ---------------------------------------------------------------------------

FAILURE_ANSWER = "I'm unable to generate a response right now. Please try again shortly."

MODERATION_REFUSAL = (
    "I can't help with that request because it was flagged by the content filter."
)

NOT_SAVED_NOTICE = (
    "Your answer was generated, but this exchange could not be saved to the conversation history."
)


def build_context(chunks: Sequence[ContextChunk]) -> tuple[str, list[dict]]:
    """
    Number each chunk [1]..[N], format it for the system prompt, and
    produce a parallel list of citation dicts.
    """
    parts: list[str] = []
    citations: list[dict] = []
    for i, chunk in enumerate(chunks, start=1):
        citation_line = CITATION_TEMPLATE.format(
            index=i,
            document_id=chunk.document_id,
            chunk_id=chunk.id,
            score=chunk.score,
        )
        parts.append(f"[{i}] {chunk.text}\nSource: {citation_line}")
        citations.append(
            {
                "index": i,
                "chunk_id": chunk.id,
                "document_id": chunk.document_id,
                "relevance_score": round(chunk.score, 4),
            }
        )
    return "\n\n---\n\n".join(parts), citations


def build_system_prompt(base_prompt: str, chunks: Sequence[ContextChunk]) -> tuple[str, list[dict]]:
    if not chunks:
        return NO_CONTEXT_SYSTEM_PROMPT.format(system_prompt=base_prompt).strip(), []
    context, citations = build_context(chunks)
    return RAG_SYSTEM_PROMPT.format(system_prompt=base_prompt, context=context).strip(), citations

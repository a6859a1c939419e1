"""
Prompt templates for the DocAssist pipeline.

Keeping templates in a separate module makes them easy to iterate on
without touching retrieval, memory or generation logic.
"""
from __future__ import annotations

from typing import Iterable

from docassist.schemas import ConversationTurn, Role

# ---------------------------------------------------------------------------
# Answer generation
# ---------------------------------------------------------------------------

NOT_FOUND_ANSWER = "I couldn't find information about that in your documents."

SYSTEM_PROMPT = (
    "You are a knowledgeable document assistant called DocAssist. "
    "Answer questions based ONLY on the provided context from the user's "
    "uploaded documents. If the context doesn't contain enough information, "
    f'say "{NOT_FOUND_ANSWER}" '
    "Be conversational but accurate. Do not make things up. "
    "Format your responses with markdown when helpful."
)

ANSWER_USER_TEMPLATE = """\
Context from uploaded documents:
---
{context}
---

Conversation summary: {summary}

Recent messages:
{recent}

Question: {question}"""

# Used in place of an empty context so the model always gets an explicit signal
NO_CONTEXT_FOUND = "No relevant context found in the uploaded documents."

CONTEXT_DELIMITER = "\n\n---\n\n"

# ---------------------------------------------------------------------------
# Query reformulation
# ---------------------------------------------------------------------------

REFORMULATE_SYSTEM = (
    "Rewrite the user's latest message as a standalone question that can be "
    "understood WITHOUT any conversation history. Resolve all pronouns "
    "(he/she/it/they/that/this). Do NOT answer the question, only rewrite it. "
    "If it's already standalone, return it as-is. Return ONLY the rewritten "
    "question, nothing else."
)

REFORMULATE_USER_TEMPLATE = """\
Conversation summary: {summary}

Recent messages:
{recent}

User's latest message: {question}

Standalone question:"""

# ---------------------------------------------------------------------------
# Running summary
# ---------------------------------------------------------------------------

SUMMARY_SYSTEM_TEMPLATE = (
    "Summarize this conversation concisely. Capture key topics, facts "
    "discussed, and any conclusions. Keep it under {max_words} words."
)

SUMMARY_USER_TEMPLATE = """\
Previous summary: {summary}

New messages:
{transcript}

Updated summary:"""


def format_transcript(turns: Iterable[ConversationTurn]) -> str:
    """Render turns as 'Human: ...' / 'AI: ...' lines."""
    return "\n".join(
        f"{'Human' if turn.role == Role.USER else 'AI'}: {turn.content}"
        for turn in turns
    )

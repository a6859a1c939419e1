"""
Query Reformulator
-------------------
Follow-up questions ("what about its budget?") embed poorly on their own.
One deterministic LLM call rewrites the latest message into a standalone
question using the running summary and recent turns.

Skipped entirely (zero tokens, zero round trips) for the first question of a
conversation.  Falls back to the original question if the LLM call fails,
times out, or returns nothing: reformulation can degrade retrieval quality
but never fail a request.
"""
from __future__ import annotations

import asyncio
from typing import Sequence

from langsmith import traceable
from loguru import logger

from docassist.generation.llm import ChatClient
from docassist.generation.prompts import (
    REFORMULATE_SYSTEM,
    REFORMULATE_USER_TEMPLATE,
    format_transcript,
)
from docassist.schemas import ConversationTurn, TokenUsage
from docassist.utils.helpers import truncate_text


class QueryReformulator:
    def __init__(
        self,
        client: ChatClient,
        max_tokens: int = 200,
        timeout: float = 60.0,
    ) -> None:
        self.client = client
        self.max_tokens = max_tokens
        self.timeout = timeout

    @traceable(name="reformulate", run_type="chain")
    async def reformulate(
        self,
        question: str,
        summary: str,
        recent_turns: Sequence[ConversationTurn],
    ) -> tuple[str, TokenUsage]:
        """
        Returns:
            (standalone_query, tokens_spent)
        """
        if not summary and not recent_turns:
            return question, TokenUsage()

        messages = [
            {"role": "system", "content": REFORMULATE_SYSTEM},
            {
                "role": "user",
                "content": REFORMULATE_USER_TEMPLATE.format(
                    summary=summary or "No previous conversation.",
                    recent=format_transcript(recent_turns) or "No recent messages.",
                    question=question,
                ),
            },
        ]

        try:
            completion = await asyncio.wait_for(
                self.client.complete(messages, max_tokens=self.max_tokens, temperature=0),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.warning(f"[Reformulator] Falling back to original query: {exc!r}")
            return question, TokenUsage()

        reformulated = completion.text or question
        logger.info(
            f"[Reformulator] {truncate_text(question)!r} -> {truncate_text(reformulated)!r} "
            f"({completion.usage.prompt_tokens}+{completion.usage.completion_tokens} tokens)"
        )
        return reformulated, completion.usage

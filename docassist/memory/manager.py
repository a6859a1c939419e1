"""
Conversational Memory
----------------------
Keeps prompt size bounded as a conversation grows without forgetting what
was said early on.  History is split into three contiguous regions:

    [0, summarized_through)              already folded into the summary
    [summarized_through, len - window)   overflow: summarise now
    [len - window, len)                  recent window, sent verbatim

The split is recomputed every turn from a single watermark
(`MemoryState.summarized_through`), so each turn is summarised exactly once.
History is treated as append-only; retroactive edits are not detected.

If the summarisation call fails the watermark does not move, and the same
overflow is retried on the next turn.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Sequence

from langsmith import traceable
from loguru import logger

from docassist.generation.llm import ChatClient
from docassist.generation.prompts import (
    SUMMARY_SYSTEM_TEMPLATE,
    SUMMARY_USER_TEMPLATE,
    format_transcript,
)
from docassist.schemas import ConversationTurn, MemoryState, TokenUsage

RECENT_WINDOW = 6          # 3 user/assistant pairs kept verbatim


@dataclass
class HistorySplit:
    overflow: list[ConversationTurn]
    recent: list[ConversationTurn]
    # Watermark value once `overflow` is summarised
    boundary: int


@dataclass
class MemoryAdvance:
    memory: MemoryState
    recent_turns: list[ConversationTurn]
    usage: TokenUsage = field(default_factory=TokenUsage)


def split_history(
    prior_turns: Sequence[ConversationTurn],
    memory: MemoryState,
    recent_window: int,
) -> HistorySplit:
    """
    Partition prior turns (excluding the in-flight message) into overflow
    and recent window.  Pure; makes no calls.
    """
    if recent_window < 0:
        raise ValueError(f"recent_window must be >= 0, got {recent_window}")

    if len(prior_turns) <= recent_window:
        return HistorySplit(
            overflow=[],
            recent=list(prior_turns),
            boundary=memory.summarized_through,
        )

    boundary = len(prior_turns) - recent_window
    return HistorySplit(
        overflow=list(prior_turns[memory.summarized_through:boundary]),
        recent=list(prior_turns[boundary:]),
        boundary=boundary,
    )


class ConversationMemory:
    """
    Incremental running-summary manager.

    Usage:
        memory = ConversationMemory(chat_client)
        advance = await memory.advance(turns[:-1], state)
        # advance.memory is the state to persist; advance.recent_turns go
        # into the prompt verbatim
    """

    def __init__(
        self,
        client: ChatClient,
        recent_window: int = RECENT_WINDOW,
        summary_max_words: int = 200,
        summary_max_tokens: int = 300,
        timeout: float = 60.0,
    ) -> None:
        if recent_window < 0:
            raise ValueError(f"recent_window must be >= 0, got {recent_window}")
        self.client = client
        self.recent_window = recent_window
        self.summary_max_words = summary_max_words
        self.summary_max_tokens = summary_max_tokens
        self.timeout = timeout

    @traceable(name="advance_memory", run_type="chain")
    async def advance(
        self,
        prior_turns: Sequence[ConversationTurn],
        memory: MemoryState,
    ) -> MemoryAdvance:
        """
        Fold any new overflow into the running summary.

        Returns the (possibly unchanged) MemoryState, the turns to include
        verbatim, and the tokens spent.  Never raises on LLM failure.
        """
        split = split_history(prior_turns, memory, self.recent_window)
        if not split.overflow:
            return MemoryAdvance(memory=memory, recent_turns=split.recent)

        logger.info(
            f"[Memory] Summarizing {len(split.overflow)} overflow turns "
            f"({memory.summarized_through} already summarized)"
        )

        messages = [
            {
                "role": "system",
                "content": SUMMARY_SYSTEM_TEMPLATE.format(max_words=self.summary_max_words),
            },
            {
                "role": "user",
                "content": SUMMARY_USER_TEMPLATE.format(
                    summary=memory.summary or "No previous summary.",
                    transcript=format_transcript(split.overflow),
                ),
            },
        ]

        try:
            completion = await asyncio.wait_for(
                self.client.complete(
                    messages, max_tokens=self.summary_max_tokens, temperature=0
                ),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.warning(f"[Memory] Summarization failed, keeping previous summary: {exc!r}")
            return MemoryAdvance(memory=memory, recent_turns=split.recent)

        if not completion.text:
            logger.warning("[Memory] Summarization returned no text, keeping previous summary")
            return MemoryAdvance(memory=memory, recent_turns=split.recent, usage=completion.usage)

        updated = MemoryState(summary=completion.text, summarized_through=split.boundary)
        logger.info(
            f"[Memory] Summary updated ({len(updated.summary)} chars, "
            f"{completion.usage.prompt_tokens}+{completion.usage.completion_tokens} tokens) | "
            f"summarized_through={updated.summarized_through}"
        )
        return MemoryAdvance(memory=updated, recent_turns=split.recent, usage=completion.usage)

"""
Answer Generator
-----------------
One streamed completion per question, grounded on the assembled context:

    system:  SYSTEM_PROMPT (answer only from context, fixed not-found phrase)
    user:    context + running summary + recent transcript + question

Yields AnswerEvents: TOKEN events as text arrives from the provider, then
exactly one USAGE event for the answer call.  Providers that report no usage
on the stream get a tiktoken estimate instead.

Failure semantics:
  - before the first token: GenerationError with empty partial_output; the
    caller must not present anything as an answer
  - after some tokens:      GenerationError with partial_output set; no USAGE
    event follows, which is how downstream consumers recognise truncation
  - consumer closes early:  the provider stream is closed, nothing else is
    emitted
"""
from __future__ import annotations

from contextlib import aclosing
from typing import AsyncIterator, Optional, Sequence

from loguru import logger

from docassist.exceptions import GenerationError
from docassist.generation.llm import ChatClient, ChatMessage, count_tokens
from docassist.generation.prompts import (
    ANSWER_USER_TEMPLATE,
    SYSTEM_PROMPT,
    format_transcript,
)
from docassist.schemas import AnswerEvent, ConversationTurn, MemoryState, TokenUsage


def build_answer_messages(
    context: str,
    memory: MemoryState,
    recent_turns: Sequence[ConversationTurn],
    question: str,
) -> list[ChatMessage]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": ANSWER_USER_TEMPLATE.format(
                context=context,
                summary=memory.summary or "None yet.",
                recent=format_transcript(recent_turns) or "None.",
                question=question,
            ),
        },
    ]


def _estimate_usage(messages: list[ChatMessage], answer: str) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=sum(count_tokens(m["content"]) for m in messages),
        completion_tokens=count_tokens(answer) if answer else 0,
    )


class AnswerGenerator:
    """
    Grounded answer synthesis over any ChatClient.

    Usage:
        generator = AnswerGenerator(make_chat_client("openai", "gpt-4o-mini"))
        async for event in generator.stream(context, memory, recent, question):
            ...
    """

    def __init__(
        self,
        client: ChatClient,
        max_tokens: int = 1024,
        temperature: float = 0.2,
    ) -> None:
        self.client = client
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    def model(self) -> str:
        return self.client.model

    async def stream(
        self,
        context: str,
        memory: MemoryState,
        recent_turns: Sequence[ConversationTurn],
        question: str,
    ) -> AsyncIterator[AnswerEvent]:
        messages = build_answer_messages(context, memory, recent_turns, question)
        logger.debug(
            f"[Generator] {self.model} | context={len(context)} chars | "
            f"recent={len(recent_turns)} turns"
        )

        emitted: list[str] = []
        reported: Optional[TokenUsage] = None
        try:
            async with aclosing(
                self.client.stream(
                    messages, max_tokens=self.max_tokens, temperature=self.temperature
                )
            ) as chunks:
                async for chunk in chunks:
                    if chunk.usage is not None:
                        reported = chunk.usage
                    if chunk.text:
                        emitted.append(chunk.text)
                        yield AnswerEvent.token(chunk.text)
        except Exception as exc:
            partial = "".join(emitted)
            if partial:
                logger.error(f"[Generator] Stream failed after {len(partial)} chars: {exc!r}")
            else:
                logger.error(f"[Generator] Completion failed before first token: {exc!r}")
            raise GenerationError(f"Answer generation failed: {exc!r}", partial_output=partial) from exc

        answer = "".join(emitted)
        usage = reported if reported is not None else _estimate_usage(messages, answer)
        logger.info(
            f"[Generator] Done | {len(answer)} chars | prompt={usage.prompt_tokens} "
            f"completion={usage.completion_tokens} | "
            f"cost=${usage.estimated_cost_usd(self.model):.5f}"
        )
        yield AnswerEvent.for_usage(usage)

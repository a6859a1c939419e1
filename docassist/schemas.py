"""
Core Pydantic schemas for the DocAssist pipeline.

Conversation state (turns, MemoryState) is owned by the caller and passed
through on every request; nothing here is persisted server-side.  Vector
records carry everything the query path needs (child text for search,
parent text for context) so retrieval never has to join back to a document
store.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Pricing -----------------------------------------------------------------

# (input_$/M, output_$/M)
_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini":               (0.150,  0.600),
    "gpt-4o":                    (2.500, 10.000),
    "claude-haiku-4-5-20251001": (0.800,  4.000),
    "claude-sonnet-4-6":         (3.000, 15.000),
}


def cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Compute estimated cost in USD for a given model and token counts."""
    rates = _MODEL_PRICING.get(model, _MODEL_PRICING["gpt-4o-mini"])
    return (prompt_tokens * rates[0] + completion_tokens * rates[1]) / 1_000_000


# --- Conversation ------------------------------------------------------------

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConversationTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class MemoryState(BaseModel):
    """
    Running summary plus the watermark of how much history it covers.

    `summarized_through` counts prior turns (never the in-flight message)
    already folded into `summary`.  It only ever moves forward, and never
    past `len(prior_turns) - recent_window`, so every turn is either in the
    summary or in the verbatim window once summarisation has caught up.
    """

    model_config = ConfigDict(frozen=True)

    summary: str = ""
    summarized_through: int = Field(default=0, ge=0)


class TokenUsage(BaseModel):
    """Token counts accumulated across the LLM calls of a single request."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )

    def estimated_cost_usd(self, model: str) -> float:
        return cost_usd(model, self.prompt_tokens, self.completion_tokens)


# --- Vector records ----------------------------------------------------------

class VectorMetadata(BaseModel):
    """Payload stored next to every child embedding."""

    child_text: str
    parent_text: str
    parent_id: str
    child_index: int
    source_name: str                     # Display filename, used by source filters
    chunk_index: int                     # ChildSpan.global_index
    document_id: str


class IndexedVector(BaseModel):
    id: str                              # "{document_id}-c{chunk_index}"
    embedding: list[float]
    metadata: VectorMetadata


class SearchMatch(BaseModel):
    id: str
    score: float
    metadata: VectorMetadata


# --- Ingestion ---------------------------------------------------------------

class IngestResult(BaseModel):
    document_id: str
    source_name: str
    parent_count: int
    child_count: int
    file_size: int


# --- Query -------------------------------------------------------------------

class QueryRequest(BaseModel):
    """
    One conversational turn to answer.

    `turns` holds the whole conversation including the latest user message;
    `memory` is the MemoryState the caller persisted after the previous turn.
    """

    namespace: str
    turns: list[ConversationTurn]
    memory: MemoryState = Field(default_factory=MemoryState)
    sources: Optional[list[str]] = None
    conversation_id: str = "default"


class AnswerEventType(str, Enum):
    TOKEN = "token"
    USAGE = "usage"
    MEMORY = "memory"


class AnswerEvent(BaseModel):
    """
    One item of the structured answer stream.

    TOKEN events carry answer text in generation order.  A successful stream
    ends with exactly one USAGE event, optionally followed by one MEMORY event
    when the running summary changed during the request.
    """

    type: AnswerEventType
    text: str = ""
    usage: Optional[TokenUsage] = None
    memory: Optional[MemoryState] = None

    @classmethod
    def token(cls, text: str) -> "AnswerEvent":
        return cls(type=AnswerEventType.TOKEN, text=text)

    @classmethod
    def for_usage(cls, usage: TokenUsage) -> "AnswerEvent":
        return cls(type=AnswerEventType.USAGE, usage=usage)

    @classmethod
    def for_memory(cls, memory: MemoryState) -> "AnswerEvent":
        return cls(type=AnswerEventType.MEMORY, memory=memory)

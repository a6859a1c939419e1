"""
Context Retriever
------------------
Turns one conversational turn into grounding context:

    question + summary + recent turns
        |
        v
    QueryReformulator (standalone question, may be a no-op)
        |
        v
    Embedder.embed_query
        |
        v
    VectorStore.query (session namespace, top_k children, optional
                       any-of filter on source_name)
        |
        v
    assemble_context (first hit per parent wins, parent texts joined)

Children are what gets searched; parents are what the model reads.  Several
children of one parent often match the same question, so hits are
deduplicated by parent id before assembly.

Embedding and search failures raise RetrievalError: answering from no
context or stale context is worse than failing the request.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional, Sequence

from langsmith import traceable
from loguru import logger

from docassist.embedding.embedder import Embedder
from docassist.embedding.vector_store import VectorStore
from docassist.exceptions import RetrievalError
from docassist.generation.prompts import CONTEXT_DELIMITER, NO_CONTEXT_FOUND
from docassist.retrieval.reformulator import QueryReformulator
from docassist.schemas import ConversationTurn, MemoryState, SearchMatch, TokenUsage
from docassist.utils.helpers import truncate_text


@dataclass
class RetrievalResult:
    context: str
    search_query: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    # One match per parent, in context order
    matches: list[SearchMatch] = field(default_factory=list)


def assemble_context(matches: Sequence[SearchMatch]) -> tuple[str, list[SearchMatch]]:
    """
    Deduplicate matches by parent and join the parent texts.

    Matches are sorted by descending score first (stable, so equal scores
    keep index order); the first match seen for a parent id wins and later
    ones are dropped regardless of score.

    Returns:
        (context, kept_matches).  Context is NO_CONTEXT_FOUND when there are
        no matches.
    """
    ranked = sorted(matches, key=lambda m: m.score, reverse=True)
    seen: set[str] = set()
    kept: list[SearchMatch] = []
    for match in ranked:
        parent_id = match.metadata.parent_id
        if parent_id in seen:
            continue
        seen.add(parent_id)
        kept.append(match)

    if not kept:
        return NO_CONTEXT_FOUND, []
    return CONTEXT_DELIMITER.join(m.metadata.parent_text for m in kept), kept


class ContextRetriever:
    """
    Stateless per query: call retrieve() as many times as you like from the
    same instance, for any namespace.
    """

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        reformulator: QueryReformulator,
        top_k: int = 10,
        embed_timeout: float = 30.0,
        search_timeout: float = 10.0,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.reformulator = reformulator
        self.top_k = top_k
        self.embed_timeout = embed_timeout
        self.search_timeout = search_timeout

    @traceable(name="retrieve", run_type="retriever")
    async def retrieve(
        self,
        namespace: str,
        question: str,
        memory: MemoryState,
        recent_turns: Sequence[ConversationTurn],
        sources: Optional[Sequence[str]] = None,
    ) -> RetrievalResult:
        """
        Args:
            namespace:    Session namespace to search.
            question:     The latest user message, verbatim.
            memory:       Memory state after this turn's summarisation.
            recent_turns: Verbatim recent window.
            sources:      Restrict hits to these source names (any-of).
                          None or empty searches every document.

        Raises:
            RetrievalError: embedding or search failed or timed out.
        """
        search_query, usage = await self.reformulator.reformulate(
            question, memory.summary, recent_turns
        )

        logger.debug(f"[Retriever] Embedding: {truncate_text(search_query)!r}")
        try:
            query_vec = await asyncio.wait_for(
                self.embedder.embed_query(search_query), timeout=self.embed_timeout
            )
        except Exception as exc:
            raise RetrievalError(f"Query embedding failed: {exc!r}") from exc

        metadata_filter = {"source_name": list(sources)} if sources else None
        try:
            results = await asyncio.wait_for(
                self.store.query(namespace, query_vec, self.top_k, metadata_filter),
                timeout=self.search_timeout,
            )
        except Exception as exc:
            raise RetrievalError(f"Vector search failed: {exc!r}") from exc

        context, kept = assemble_context(results)
        logger.info(
            f"[Retriever] namespace={namespace} | {len(results)} hits -> "
            f"{len(kept)} parent(s)"
            + (f" | top score: {kept[0].score:.4f}" if kept else "")
        )
        return RetrievalResult(
            context=context,
            search_query=search_query,
            usage=usage,
            matches=kept,
        )

"""
RAG Serving Pipeline
---------------------
Orchestrates the query lifecycle for one conversational turn:

    QueryRequest (turns + MemoryState from the caller)
        |
        v
    ConversationMemory (fold overflow into the running summary)
        |
        v
    ContextRetriever (reformulate -> embed -> search -> dedupe by parent)
        |
        v
    AnswerGenerator (stream tokens)
        |
        v
    USAGE event (cumulative over every LLM call of the request)
    MEMORY event (only when the summary changed)

Conversation state is owned by the caller: the pipeline never stores turns
or summaries, it only returns the updated MemoryState for the caller to
persist.  Requests for the same (namespace, conversation_id) are serialised
so two concurrent turns can never summarise the same overflow twice.
"""
from __future__ import annotations

import asyncio
import weakref
from contextlib import aclosing
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from loguru import logger

from docassist.chunking.chunker import HierarchicalChunker
from docassist.config import Settings
from docassist.embedding.embedder import Embedder
from docassist.embedding.vector_store import FAISSVectorStore, VectorStore
from docassist.exceptions import InputValidationError
from docassist.generation.generator import AnswerGenerator
from docassist.generation.llm import make_chat_client
from docassist.ingestion.pipeline import DocumentIngestor
from docassist.memory.manager import ConversationMemory
from docassist.retrieval.reformulator import QueryReformulator
from docassist.retrieval.retriever import ContextRetriever
from docassist.schemas import (
    AnswerEvent,
    AnswerEventType,
    IngestResult,
    QueryRequest,
    Role,
)
from docassist.utils.helpers import truncate_text


class RAGPipeline:
    """
    End-to-end document Q&A pipeline.

    Usage:
        pipeline = RAGPipeline.from_settings(load_settings())
        await pipeline.ingest(data, "handbook.md", namespace=session_id)
        async for event in pipeline.stream_query(request):
            ...
        await pipeline.end_session(session_id)
    """

    def __init__(
        self,
        ingestor: DocumentIngestor,
        memory: ConversationMemory,
        retriever: ContextRetriever,
        generator: AnswerGenerator,
        store: VectorStore,
        index_dir: Optional[Path] = None,
    ) -> None:
        self.ingestor = ingestor
        self.memory = memory
        self.retriever = retriever
        self.generator = generator
        self.store = store
        # When set, the store is saved here after every write
        self.index_dir = index_dir
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._persist_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RAGPipeline":
        """Wire the real collaborators (OpenAI/Anthropic, FAISS) from config."""
        gen = settings.generation
        timeouts = settings.timeouts

        answer_client = make_chat_client(gen.provider, gen.model, timeouts.completion)
        aux_client = make_chat_client(
            gen.auxiliary_provider, gen.auxiliary_model, timeouts.completion
        )

        embedder = Embedder(
            model=settings.embedding.model,
            dimensions=settings.embedding.dimensions,
            batch_size=settings.embedding.batch_size,
            max_attempts=settings.embedding.max_attempts,
            timeout=timeouts.embedding,
        )
        index_dir = Path(settings.index.dir)
        store = FAISSVectorStore.load(index_dir)

        chunker = HierarchicalChunker(
            parent_size=settings.chunking.parent_size,
            parent_overlap=settings.chunking.parent_overlap,
            child_size=settings.chunking.child_size,
            child_overlap=settings.chunking.child_overlap,
        )
        reformulator = QueryReformulator(
            aux_client,
            max_tokens=settings.retrieval.reformulation_max_tokens,
            timeout=timeouts.completion,
        )

        pipeline = cls(
            ingestor=DocumentIngestor(chunker, embedder, store),
            memory=ConversationMemory(
                aux_client,
                recent_window=settings.memory.recent_window,
                summary_max_words=settings.memory.summary_max_words,
                summary_max_tokens=settings.memory.summary_max_tokens,
                timeout=timeouts.completion,
            ),
            retriever=ContextRetriever(
                embedder,
                store,
                reformulator,
                top_k=settings.retrieval.top_k,
                embed_timeout=timeouts.embedding,
                search_timeout=timeouts.search,
            ),
            generator=AnswerGenerator(
                answer_client, max_tokens=gen.max_tokens, temperature=gen.temperature
            ),
            store=store,
            index_dir=index_dir,
        )
        logger.info(
            f"[RAGPipeline] Ready | model={gen.provider}/{gen.model} | "
            f"aux={gen.auxiliary_provider}/{gen.auxiliary_model} | index={index_dir}"
        )
        return pipeline

    # --- Ingestion --------------------------------------------------------------

    async def ingest(self, data: bytes, filename: str, namespace: str) -> IngestResult:
        result = await self.ingestor.ingest(data, filename, namespace)
        await self._persist()
        return result

    async def end_session(self, namespace: str) -> None:
        """Delete every vector of a session. Idempotent."""
        if not namespace or not namespace.strip():
            raise InputValidationError("Missing sessionId")
        await self.store.delete_namespace(namespace)
        await self._persist()

    async def _persist(self) -> None:
        if self.index_dir is None or not isinstance(self.store, FAISSVectorStore):
            return
        # Snapshot on the loop so concurrent writes cannot change it mid-save
        async with self._persist_lock:
            snapshot = self.store.snapshot()
            await asyncio.to_thread(FAISSVectorStore.write_snapshot, snapshot, self.index_dir)

    def session_info(self, namespace: str) -> dict[str, Any]:
        """Documents and vector count indexed under a session."""
        if not isinstance(self.store, FAISSVectorStore):
            return {"documents": [], "vectors": 0}
        return {
            "documents": self.store.sources(namespace),
            "vectors": self.store.count(namespace),
        }

    # --- Query ------------------------------------------------------------------

    def _lock_for(self, namespace: str, conversation_id: str) -> asyncio.Lock:
        key = (namespace, conversation_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @staticmethod
    def _validate(request: QueryRequest) -> None:
        if not request.namespace or not request.namespace.strip():
            raise InputValidationError("Missing sessionId")
        if not request.turns or request.turns[-1].role != Role.USER:
            raise InputValidationError("No user message found")
        if not request.turns[-1].content.strip():
            raise InputValidationError("The latest user message is empty")

    async def stream_query(self, request: QueryRequest) -> AsyncIterator[AnswerEvent]:
        """
        Answer the latest user turn of `request`.

        Yields TOKEN events, then one USAGE event, then a MEMORY event if the
        summary was updated.  Closing the iterator early cancels generation
        and releases the conversation lock; no USAGE event is emitted.

        Raises:
            InputValidationError: before anything else happens.
            RetrievalError:       before the first event.
            GenerationError:      before or during the token stream.
        """
        self._validate(request)
        question = request.turns[-1].content
        prior_turns = request.turns[:-1]

        lock = self._lock_for(request.namespace, request.conversation_id)
        async with lock:
            logger.info(
                f"[RAGPipeline] Query | namespace={request.namespace} "
                f"conversation={request.conversation_id} | {truncate_text(question, 100)!r}"
            )

            advance = await self.memory.advance(prior_turns, request.memory)
            usage = advance.usage

            retrieval = await self.retriever.retrieve(
                request.namespace,
                question,
                advance.memory,
                advance.recent_turns,
                request.sources,
            )
            usage = usage + retrieval.usage

            async with aclosing(
                self.generator.stream(
                    retrieval.context, advance.memory, advance.recent_turns, question
                )
            ) as events:
                async for event in events:
                    if event.type == AnswerEventType.USAGE and event.usage is not None:
                        usage = usage + event.usage
                        continue
                    yield event

            logger.info(
                f"[RAGPipeline] Complete | tokens={usage.total_tokens} "
                f"(prompt={usage.prompt_tokens} completion={usage.completion_tokens}) | "
                f"summarized_through={advance.memory.summarized_through}"
            )
            yield AnswerEvent.for_usage(usage)
            if advance.memory != request.memory:
                yield AnswerEvent.for_memory(advance.memory)

    # --- Introspection ----------------------------------------------------------

    def describe(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "model": self.generator.model,
            "auxiliary_model": self.memory.client.model,
            "embedding_model": getattr(self.retriever.embedder, "model", ""),
        }
        if isinstance(self.store, FAISSVectorStore):
            info["vectors"] = self.store.total_vectors
        usage_summary = getattr(self.retriever.embedder, "usage_summary", None)
        if usage_summary is not None:
            info["embedding_usage"] = usage_summary()
        return info

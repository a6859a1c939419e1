"""
Test suite for the end-to-end RAG pipeline.

Covers: the ingest -> query flow, cumulative usage, memory events only on
change, request validation, per-conversation serialisation, cancellation,
session deletion and index persistence.
"""
from __future__ import annotations

import asyncio
import random
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from docassist.embedding.embedder import Embedder
from docassist.embedding.vector_store import FAISSVectorStore
from docassist.exceptions import GenerationError, InputValidationError, RetrievalError
from docassist.generation.llm import ChatChunk
from docassist.generation.prompts import NO_CONTEXT_FOUND
from docassist.schemas import (
    AnswerEventType,
    ConversationTurn,
    MemoryState,
    QueryRequest,
    Role,
    TokenUsage,
)
from docassist.serving.pipeline import RAGPipeline
from doubles import (
    FakeChatClient,
    KeywordEmbedder,
    build_turns,
    completion,
    make_pipeline,
    token_script,
)

HANDBOOK = (
    b"Project Orion launches in May.\n\n"
    b"The Orion budget is two million dollars.\n\n"
    b"Travel must be booked through the internal portal."
)
ANSWER_USAGE = TokenUsage(prompt_tokens=1000, completion_tokens=40)


def _request(turns, memory=None, namespace="session-1", **kwargs) -> QueryRequest:
    return QueryRequest(
        namespace=namespace,
        turns=turns,
        memory=memory or MemoryState(),
        **kwargs,
    )


def _ask(question: str, prior=()) -> list[ConversationTurn]:
    return [*prior, ConversationTurn(role=Role.USER, content=question)]


async def _collect(stream):
    return [event async for event in stream]


class TestStreamQuery:
    """Test suite for RAGPipeline.stream_query()."""

    @pytest.mark.asyncio
    async def test_first_question_streams_tokens_then_usage(self) -> None:
        """Test a fresh conversation answers without memory or reformulation calls."""
        # Arrange
        aux = FakeChatClient()
        answer = FakeChatClient(stream_script=token_script("Orion ", "launches in May.", usage=ANSWER_USAGE))
        pipeline = make_pipeline(aux, answer)
        await pipeline.ingest(HANDBOOK, "handbook.md", "session-1")

        # Act
        events = await _collect(pipeline.stream_query(_request(_ask("When does Orion launch?"))))

        # Assert
        types = [e.type for e in events]
        assert types == [AnswerEventType.TOKEN, AnswerEventType.TOKEN, AnswerEventType.USAGE]
        assert events[-1].usage == ANSWER_USAGE
        assert aux.complete_calls == []
        prompt = answer.stream_calls[0]["messages"][1]["content"]
        assert "Project Orion launches in May." in prompt

    @pytest.mark.asyncio
    async def test_usage_is_cumulative_across_calls(self) -> None:
        """Test summarisation, reformulation and answer tokens are summed."""
        # Arrange
        aux = FakeChatClient(
            completions=[
                completion("User asked about Orion.", 300, 20),      # summarisation
                completion("What is the Orion budget?", 80, 10),     # reformulation
            ]
        )
        answer = FakeChatClient(stream_script=token_script("Two million.", usage=ANSWER_USAGE))
        pipeline = make_pipeline(aux, answer)
        await pipeline.ingest(HANDBOOK, "handbook.md", "session-1")

        # Act
        events = await _collect(
            pipeline.stream_query(_request(_ask("And its budget?", build_turns(8))))
        )

        # Assert
        usage_events = [e for e in events if e.type == AnswerEventType.USAGE]
        assert len(usage_events) == 1
        assert usage_events[0].usage == TokenUsage(prompt_tokens=1380, completion_tokens=70)
        assert events[-1].type == AnswerEventType.MEMORY
        assert events[-1].memory == MemoryState(summary="User asked about Orion.", summarized_through=2)

    @pytest.mark.asyncio
    async def test_no_memory_event_when_summary_unchanged(self) -> None:
        """Test a conversation inside the recent window reports no memory update."""
        aux = FakeChatClient(completions=[completion("Orion budget", 30, 5)])
        answer = FakeChatClient(stream_script=token_script("Two million.", usage=ANSWER_USAGE))
        pipeline = make_pipeline(aux, answer)

        events = await _collect(pipeline.stream_query(_request(_ask("And its budget?", build_turns(4)))))

        assert events[-1].type == AnswerEventType.USAGE
        assert all(e.type != AnswerEventType.MEMORY for e in events)

    @pytest.mark.asyncio
    async def test_failed_summarisation_keeps_watermark(self) -> None:
        """Test a summariser failure still answers and leaves memory untouched."""
        # Arrange
        memory = MemoryState(summary="Earlier talk.", summarized_through=0)
        aux = FakeChatClient(completions=[ConnectionError("down"), completion("Orion budget", 30, 5)])
        answer = FakeChatClient(stream_script=token_script("Two million.", usage=ANSWER_USAGE))
        pipeline = make_pipeline(aux, answer)

        # Act
        events = await _collect(
            pipeline.stream_query(_request(_ask("And its budget?", build_turns(8)), memory=memory))
        )

        # Assert
        assert [e.type for e in events][-1] == AnswerEventType.USAGE
        assert events[-1].usage == ANSWER_USAGE + TokenUsage(prompt_tokens=30, completion_tokens=5)

    @pytest.mark.asyncio
    async def test_empty_session_still_answers_with_sentinel(self) -> None:
        """Test a namespace with no documents reaches the model with the no-context signal."""
        answer = FakeChatClient(stream_script=token_script("I could not find that.", usage=ANSWER_USAGE))
        pipeline = make_pipeline(FakeChatClient(), answer)

        await _collect(pipeline.stream_query(_request(_ask("Anything?"))))

        assert NO_CONTEXT_FOUND in answer.stream_calls[0]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_source_selection_restricts_context(self) -> None:
        """Test only selected documents contribute context."""
        # Arrange
        answer = FakeChatClient(stream_script=token_script("ok", usage=ANSWER_USAGE))
        pipeline = make_pipeline(FakeChatClient(), answer)
        await pipeline.ingest(b"Orion launches in May.", "orion.md", "session-1")
        await pipeline.ingest(b"Orion is cancelled.", "rumours.md", "session-1")

        # Act
        await _collect(
            pipeline.stream_query(_request(_ask("Orion status?"), sources=["orion.md"]))
        )

        # Assert
        prompt = answer.stream_calls[0]["messages"][1]["content"]
        assert "Orion launches in May." in prompt
        assert "cancelled" not in prompt


class TestValidationAndFailures:
    """Test suite for stream_query() error paths."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "request_kwargs",
        [
            {"namespace": "", "turns": _ask("hi")},
            {"namespace": "s", "turns": []},
            {"namespace": "s", "turns": build_turns(2)},
            {"namespace": "s", "turns": _ask("   ")},
        ],
    )
    async def test_invalid_requests_fail_before_any_call(self, request_kwargs) -> None:
        """Test validation errors surface before memory, retrieval or generation."""
        aux = FakeChatClient()
        answer = FakeChatClient()
        pipeline = make_pipeline(aux, answer)

        with pytest.raises(InputValidationError):
            await _collect(pipeline.stream_query(QueryRequest(**request_kwargs)))

        assert aux.complete_calls == []
        assert answer.stream_calls == []

    @pytest.mark.asyncio
    async def test_retrieval_failure_happens_before_any_token(self) -> None:
        """Test a failing embedder aborts the request with no output."""

        class BrokenEmbedder(KeywordEmbedder):
            async def embed_query(self, text):
                raise RuntimeError("quota exceeded")

        answer = FakeChatClient(stream_script=token_script("never"))
        pipeline = make_pipeline(FakeChatClient(), answer, embedder=BrokenEmbedder())

        with pytest.raises(RetrievalError):
            await _collect(pipeline.stream_query(_request(_ask("q"))))

        assert answer.stream_calls == []

    @pytest.mark.asyncio
    async def test_mid_stream_failure_emits_no_usage(self) -> None:
        """Test a broken stream never produces a usage or memory event."""
        # Arrange
        answer = FakeChatClient(stream_script=[ChatChunk(text="Orion "), RuntimeError("reset")])
        pipeline = make_pipeline(FakeChatClient(), answer)
        received = []

        # Act
        with pytest.raises(GenerationError) as exc_info:
            async for event in pipeline.stream_query(_request(_ask("q"))):
                received.append(event)

        # Assert
        assert [e.type for e in received] == [AnswerEventType.TOKEN]
        assert exc_info.value.partial_output == "Orion "


class TestConcurrency:
    """Test suite for per-conversation serialisation."""

    @staticmethod
    def _track_overlap(pipeline: RAGPipeline, monkeypatch) -> dict:
        state = {"active": 0, "peak": 0}
        original = pipeline.memory.advance

        async def slow_advance(prior_turns, memory):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.02)
            state["active"] -= 1
            return await original(prior_turns, memory)

        monkeypatch.setattr(pipeline.memory, "advance", slow_advance)
        return state

    @pytest.mark.asyncio
    async def test_same_conversation_is_serialised(self, monkeypatch) -> None:
        """Test two turns of one conversation never run concurrently."""
        answer = FakeChatClient(stream_script=token_script("ok", usage=ANSWER_USAGE))
        pipeline = make_pipeline(FakeChatClient(), answer)
        state = self._track_overlap(pipeline, monkeypatch)

        await asyncio.gather(
            _collect(pipeline.stream_query(_request(_ask("one")))),
            _collect(pipeline.stream_query(_request(_ask("two")))),
        )

        assert state["peak"] == 1

    @pytest.mark.asyncio
    async def test_different_conversations_run_in_parallel(self, monkeypatch) -> None:
        """Test the lock is scoped to (namespace, conversation_id)."""
        answer = FakeChatClient(stream_script=token_script("ok", usage=ANSWER_USAGE))
        pipeline = make_pipeline(FakeChatClient(), answer)
        state = self._track_overlap(pipeline, monkeypatch)

        await asyncio.gather(
            _collect(pipeline.stream_query(_request(_ask("one"), conversation_id="a"))),
            _collect(pipeline.stream_query(_request(_ask("two"), conversation_id="b"))),
        )

        assert state["peak"] == 2

    @pytest.mark.asyncio
    async def test_closing_early_releases_lock_and_stream(self) -> None:
        """Test cancelling after the first token frees the conversation."""
        # Arrange
        answer = FakeChatClient(stream_script=token_script("a", "b", "c", usage=ANSWER_USAGE))
        pipeline = make_pipeline(FakeChatClient(), answer)
        stream = pipeline.stream_query(_request(_ask("q")))

        # Act
        first = await stream.__anext__()
        await stream.aclose()

        # Assert
        assert first.text == "a"
        assert answer.stream_closed is True
        assert not pipeline._lock_for("session-1", "default").locked()


class TestSessionLifecycle:
    """Test suite for ingest()/end_session() and persistence."""

    @pytest.mark.asyncio
    async def test_end_session_removes_vectors_and_is_idempotent(self) -> None:
        """Test ending a session twice is harmless."""
        store = FAISSVectorStore()
        pipeline = make_pipeline(FakeChatClient(), FakeChatClient(), store=store)
        await pipeline.ingest(HANDBOOK, "handbook.md", "session-1")
        await pipeline.ingest(HANDBOOK, "handbook.md", "session-2")

        await pipeline.end_session("session-1")
        await pipeline.end_session("session-1")

        assert store.count("session-1") == 0
        assert store.count("session-2") > 0

    @pytest.mark.asyncio
    async def test_end_session_requires_an_id(self) -> None:
        """Test a blank session id is rejected."""
        pipeline = make_pipeline(FakeChatClient(), FakeChatClient())

        with pytest.raises(InputValidationError):
            await pipeline.end_session(" ")

    @pytest.mark.asyncio
    async def test_writes_are_persisted_to_index_dir(self, tmp_path) -> None:
        """Test the store is saved after ingest and after end_session."""
        pipeline = make_pipeline(FakeChatClient(), FakeChatClient(), index_dir=tmp_path)

        result = await pipeline.ingest(HANDBOOK, "handbook.md", "session-1")
        assert FAISSVectorStore.load(tmp_path).count("session-1") == result.child_count

        await pipeline.end_session("session-1")
        assert FAISSVectorStore.load(tmp_path).count("session-1") == 0

    @pytest.mark.asyncio
    async def test_describe_reports_models_and_size(self) -> None:
        """Test the health summary reflects the wired collaborators."""
        pipeline = make_pipeline(FakeChatClient(model="aux-model"), FakeChatClient(model="answer-model"))
        await pipeline.ingest(HANDBOOK, "handbook.md", "s")

        info = pipeline.describe()

        assert info["model"] == "answer-model"
        assert info["auxiliary_model"] == "aux-model"
        assert info["embedding_model"] == "keyword-embedder"
        assert info["vectors"] > 0

    @pytest.mark.asyncio
    async def test_describe_reports_embedding_usage(self) -> None:
        """Test the OpenAI embedder's running usage appears in the health summary."""
        # Arrange
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(
                data=[SimpleNamespace(index=0, embedding=[1.0, 0.0])],
                usage=SimpleNamespace(total_tokens=6),
            )
        )
        embedder = Embedder(dimensions=2, client=client)
        pipeline = make_pipeline(FakeChatClient(), FakeChatClient(), embedder=embedder)

        # Act
        await pipeline.ingest(b"Orion launches in May.", "orion.md", "s")
        info = pipeline.describe()

        # Assert
        assert info["embedding_model"] == "text-embedding-3-small"
        assert info["embedding_usage"]["total_api_calls"] == 1
        assert info["embedding_usage"]["total_tokens_used"] == 6

    @pytest.mark.asyncio
    async def test_session_info_lists_documents(self) -> None:
        """Test a session's documents and vector count are reported per namespace."""
        pipeline = make_pipeline(FakeChatClient(), FakeChatClient())
        await pipeline.ingest(b"Orion launches in May.", "orion.md", "s1")
        await pipeline.ingest(b"Budget is two million.", "budget.md", "s1")
        await pipeline.ingest(b"Unrelated.", "other.md", "s2")

        assert pipeline.session_info("s1") == {"documents": ["budget.md", "orion.md"], "vectors": 2}
        assert pipeline.session_info("missing") == {"documents": [], "vectors": 0}


class JitteryEmbedder(KeywordEmbedder):
    """Sleeps a random moment per call so concurrent ingests interleave."""

    def __init__(self, seed: int = 7) -> None:
        super().__init__()
        self._rng = random.Random(seed)

    async def embed_texts(self, texts: list[str]):
        await asyncio.sleep(self._rng.uniform(0, 0.01))
        return await super().embed_texts(texts)


class TestConcurrentPersistence:
    """Test suite for saving the index while other sessions keep writing."""

    @pytest.mark.asyncio
    async def test_concurrent_ingests_into_new_sessions(self, tmp_path) -> None:
        """Test parallel uploads all succeed and all reach the saved index."""
        # Arrange
        store = FAISSVectorStore()
        pipeline = make_pipeline(
            FakeChatClient(),
            FakeChatClient(),
            store=store,
            embedder=JitteryEmbedder(),
            index_dir=tmp_path,
        )
        for i in range(30):
            await pipeline.ingest(HANDBOOK, "handbook.md", f"existing-{i}")

        # Act
        results = await asyncio.gather(
            *(pipeline.ingest(HANDBOOK, f"doc-{i}.md", f"new-{i}") for i in range(40)),
            return_exceptions=True,
        )

        # Assert
        assert [r for r in results if isinstance(r, BaseException)] == []
        loaded = FAISSVectorStore.load(tmp_path)
        assert loaded.total_vectors == store.total_vectors
        for i in range(40):
            assert loaded.sources(f"new-{i}") == [f"doc-{i}.md"]

    @pytest.mark.asyncio
    async def test_concurrent_ingest_and_end_session(self, tmp_path) -> None:
        """Test deletes racing with uploads leave the saved index matching memory."""
        store = FAISSVectorStore()
        pipeline = make_pipeline(
            FakeChatClient(),
            FakeChatClient(),
            store=store,
            embedder=JitteryEmbedder(),
            index_dir=tmp_path,
        )
        for i in range(10):
            await pipeline.ingest(HANDBOOK, "handbook.md", f"old-{i}")

        await asyncio.gather(
            *(pipeline.ingest(HANDBOOK, "handbook.md", f"new-{i}") for i in range(10)),
            *(pipeline.end_session(f"old-{i}") for i in range(10)),
        )

        loaded = FAISSVectorStore.load(tmp_path)
        assert all(loaded.count(f"old-{i}") == 0 for i in range(10))
        assert all(loaded.count(f"new-{i}") == store.count(f"new-{i}") > 0 for i in range(10))

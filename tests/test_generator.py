"""
Test suite for the streaming answer generator.

Covers: prompt construction, token forwarding, usage reporting and
estimation, failure before/after the first token and early cancellation.
"""
from __future__ import annotations

import pytest

from docassist.exceptions import GenerationError
from docassist.generation.generator import AnswerGenerator, build_answer_messages
from docassist.generation.llm import ChatChunk
from docassist.generation.prompts import NOT_FOUND_ANSWER
from docassist.schemas import AnswerEventType, MemoryState, TokenUsage
from doubles import FakeChatClient, build_turns, token_script

CONTEXT = "Orion launches in May."
MEMORY = MemoryState(summary="User is planning Orion.", summarized_through=2)


async def _collect(stream):
    return [event async for event in stream]


class TestBuildAnswerMessages:
    """Test suite for prompt construction."""

    def test_system_prompt_demands_grounding(self) -> None:
        """Test the system prompt carries the literal not-found phrase."""
        messages = build_answer_messages(CONTEXT, MEMORY, [], "When?")

        assert messages[0]["role"] == "system"
        assert NOT_FOUND_ANSWER in messages[0]["content"]

    def test_user_prompt_bundles_context_summary_recent_and_question(self) -> None:
        """Test all four inputs reach the model."""
        messages = build_answer_messages(CONTEXT, MEMORY, build_turns(2), "When does it launch?")

        user = messages[1]["content"]
        assert CONTEXT in user
        assert "Conversation summary: User is planning Orion." in user
        assert "Human: q0\nAI: a1" in user
        assert user.endswith("Question: When does it launch?")


class TestAnswerGenerator:
    """Test suite for AnswerGenerator.stream()."""

    @pytest.mark.asyncio
    async def test_tokens_then_usage(self) -> None:
        """Test tokens are forwarded in order and followed by one usage event."""
        # Arrange
        usage = TokenUsage(prompt_tokens=900, completion_tokens=7)
        client = FakeChatClient(stream_script=token_script("Orion ", "launches ", "in May.", usage=usage))
        generator = AnswerGenerator(client, max_tokens=512, temperature=0.1)

        # Act
        events = await _collect(generator.stream(CONTEXT, MEMORY, [], "When?"))

        # Assert
        assert [e.text for e in events if e.type == AnswerEventType.TOKEN] == [
            "Orion ", "launches ", "in May.",
        ]
        assert events[-1].type == AnswerEventType.USAGE
        assert events[-1].usage == usage
        assert client.stream_calls[0]["max_tokens"] == 512
        assert client.stream_calls[0]["temperature"] == 0.1

    @pytest.mark.asyncio
    async def test_missing_usage_is_estimated(self, monkeypatch) -> None:
        """Test a provider without usage reporting gets a local estimate."""
        monkeypatch.setattr(
            "docassist.generation.generator.count_tokens", lambda text: len(text.split())
        )
        client = FakeChatClient(stream_script=token_script("two words"))
        generator = AnswerGenerator(client)

        events = await _collect(generator.stream(CONTEXT, MEMORY, [], "When?"))

        usage = events[-1].usage
        assert usage.completion_tokens == 2
        assert usage.prompt_tokens > 0

    @pytest.mark.asyncio
    async def test_failure_before_first_token(self) -> None:
        """Test an immediate failure raises with no partial output."""
        client = FakeChatClient(stream_script=[ConnectionError("refused")])
        generator = AnswerGenerator(client)

        with pytest.raises(GenerationError) as exc_info:
            await _collect(generator.stream(CONTEXT, MEMORY, [], "When?"))

        assert exc_info.value.partial_output == ""
        assert exc_info.value.mid_stream is False

    @pytest.mark.asyncio
    async def test_failure_mid_stream_keeps_partial_output(self) -> None:
        """Test a failure after some tokens reports what was already sent."""
        # Arrange
        client = FakeChatClient(
            stream_script=[ChatChunk(text="Orion "), ChatChunk(text="launches"), RuntimeError("reset")]
        )
        generator = AnswerGenerator(client)
        received = []

        # Act
        with pytest.raises(GenerationError) as exc_info:
            async for event in generator.stream(CONTEXT, MEMORY, [], "When?"):
                received.append(event)

        # Assert
        assert [e.text for e in received] == ["Orion ", "launches"]
        assert all(e.type == AnswerEventType.TOKEN for e in received)
        assert exc_info.value.partial_output == "Orion launches"
        assert exc_info.value.mid_stream is True

    @pytest.mark.asyncio
    async def test_closing_early_closes_provider_stream(self) -> None:
        """Test consumer cancellation stops the upstream completion."""
        client = FakeChatClient(stream_script=token_script("a", "b", "c", usage=TokenUsage()))
        generator = AnswerGenerator(client)
        stream = generator.stream(CONTEXT, MEMORY, [], "When?")

        first = await stream.__anext__()
        await stream.aclose()

        assert first.text == "a"
        assert client.stream_closed is True

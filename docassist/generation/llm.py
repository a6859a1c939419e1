"""
Chat Completion Clients
------------------------
Two provider implementations with an identical async interface:

  OpenAIChatClient    -- OpenAI (gpt-4o-mini, gpt-4o)
  AnthropicChatClient -- Anthropic (claude-haiku-4-5, claude-sonnet-4-6)

Both expose:
  complete(messages, ...) -> ChatCompletion      one-shot, with usage
  stream(messages, ...)   -> AsyncIterator[ChatChunk]
                             text fragments as produced, then one usage chunk

`messages` are OpenAI-style role-tagged dicts.  A leading "system" message is
moved to Anthropic's separate `system` parameter transparently.

Closing a stream early (aclose / breaking out of `async for`) closes the
underlying HTTP response, so a cancelled answer stops consuming tokens.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, AsyncIterator, Optional, Protocol

import tiktoken
from langsmith import traceable
from loguru import logger
from openai import AsyncOpenAI

from docassist.schemas import TokenUsage

ChatMessage = dict[str, str]


@dataclass
class ChatCompletion:
    text: str
    usage: TokenUsage


@dataclass
class ChatChunk:
    """A streamed text fragment, or (text empty) the final usage report."""

    text: str = ""
    usage: Optional[TokenUsage] = None


class ChatClient(Protocol):
    model: str

    async def complete(
        self,
        messages: list[ChatMessage],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> ChatCompletion: ...

    def stream(
        self,
        messages: list[ChatMessage],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[ChatChunk]: ...


@lru_cache(maxsize=1)
def _encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count BPE tokens using the cl100k_base encoder (GPT-3.5/4 family)."""
    return len(_encoding().encode(text))


def _optional_params(max_tokens: Optional[int], temperature: Optional[float]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if max_tokens is not None:
        params["max_tokens"] = max_tokens
    if temperature is not None:
        params["temperature"] = temperature
    return params


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class OpenAIChatClient:
    def __init__(
        self,
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self._client = client or AsyncOpenAI(timeout=timeout)

    @traceable(name="complete_openai", run_type="llm")
    async def complete(
        self,
        messages: list[ChatMessage],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> ChatCompletion:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            **_optional_params(max_tokens, temperature),
        )
        text = (response.choices[0].message.content or "") if response.choices else ""
        usage = response.usage
        return ChatCompletion(
            text=text.strip(),
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
            ),
        )

    async def stream(
        self,
        messages: list[ChatMessage],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[ChatChunk]:
        stream = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            stream=True,
            stream_options={"include_usage": True},
            **_optional_params(max_tokens, temperature),
        )
        try:
            async for chunk in stream:
                # Usage arrives on the final chunk, which has no choices
                if chunk.usage:
                    yield ChatChunk(
                        usage=TokenUsage(
                            prompt_tokens=chunk.usage.prompt_tokens,
                            completion_tokens=chunk.usage.completion_tokens,
                        )
                    )
                if chunk.choices and chunk.choices[0].delta.content:
                    yield ChatChunk(text=chunk.choices[0].delta.content)
        finally:
            await stream.close()


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

def _split_system(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    rest = [m for m in messages if m["role"] != "system"]
    return system, rest


class AnthropicChatClient:
    """
    The Anthropic SDK requires max_tokens and takes the system prompt as a
    separate parameter; both are handled here.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        timeout: float = 60.0,
        default_max_tokens: int = 1024,
        client: Optional[Any] = None,
    ) -> None:
        from anthropic import AsyncAnthropic  # lazy import keeps import graph clean
        self.model = model
        self.default_max_tokens = default_max_tokens
        self._client = client or AsyncAnthropic(timeout=timeout)

    def _params(
        self,
        messages: list[ChatMessage],
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> dict[str, Any]:
        system, convo = _split_system(messages)
        params: dict[str, Any] = {
            "model": self.model,
            "messages": convo,
            "max_tokens": max_tokens or self.default_max_tokens,
        }
        if system:
            params["system"] = system
        if temperature is not None:
            params["temperature"] = temperature
        return params

    @traceable(name="complete_anthropic", run_type="llm")
    async def complete(
        self,
        messages: list[ChatMessage],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> ChatCompletion:
        response = await self._client.messages.create(
            **self._params(messages, max_tokens, temperature)
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return ChatCompletion(
            text=text.strip(),
            usage=TokenUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            ),
        )

    async def stream(
        self,
        messages: list[ChatMessage],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[ChatChunk]:
        async with self._client.messages.stream(
            **self._params(messages, max_tokens, temperature)
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield ChatChunk(text=text)
            final = await stream.get_final_message()
            yield ChatChunk(
                usage=TokenUsage(
                    prompt_tokens=final.usage.input_tokens,
                    completion_tokens=final.usage.output_tokens,
                )
            )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def make_chat_client(provider: str, model: str, timeout: float = 60.0) -> ChatClient:
    """Instantiate the correct client class for the given provider/model."""
    logger.debug(f"[LLM] Client provider={provider} model={model}")
    if provider == "anthropic":
        return AnthropicChatClient(model=model, timeout=timeout)
    if provider == "openai":
        return OpenAIChatClient(model=model, timeout=timeout)
    raise ValueError(f"Unknown provider '{provider}'. Allowed: ['anthropic', 'openai']")

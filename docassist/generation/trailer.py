"""
Answer Trailers
----------------
Plain-text transport for the answer stream.  Metadata rides at the end of
the visible answer as HTML-comment segments, so a client that knows nothing
about them still renders a sensible (if noisy) answer:

    <answer text>\n\n<!--USAGE:{"prompt":P,"completion":C,"total":T}--><!--SUMMARY:{"text":S,"msgCount":N}-->

  USAGE    cumulative tokens for the request; always present on a completed
           answer, absent when the stream was cut off
  SUMMARY  updated MemoryState; only present when it changed

Payloads are JSON with every ">" written as \\u003e, so a payload can never
contain the closing "-->" and a non-greedy scan for it is always correct.

Decoding never raises: a malformed payload is logged and dropped, and the
visible text is still returned.
"""
from __future__ import annotations

import re
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import orjson
from loguru import logger

from docassist.schemas import AnswerEvent, AnswerEventType, MemoryState, TokenUsage

USAGE_MARKER = "USAGE"
SUMMARY_MARKER = "SUMMARY"
USAGE_SEPARATOR = "\n\n"

_TRAILER_RE = re.compile(r"<!--(USAGE|SUMMARY):([^>]*)-->\s*$")

# Anything that may begin a trailer; the decoder holds these back until it
# knows whether they are one.
_OPENERS = (
    f"{USAGE_SEPARATOR}<!--{USAGE_MARKER}:",
    f"<!--{USAGE_MARKER}:",
    f"<!--{SUMMARY_MARKER}:",
)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _payload(data: dict) -> str:
    return orjson.dumps(data).decode("utf-8").replace(">", "\\u003e")


def encode_usage(usage: TokenUsage) -> str:
    payload = _payload(
        {
            "prompt": usage.prompt_tokens,
            "completion": usage.completion_tokens,
            "total": usage.total_tokens,
        }
    )
    return f"{USAGE_SEPARATOR}<!--{USAGE_MARKER}:{payload}-->"


def encode_memory(memory: MemoryState) -> str:
    payload = _payload({"text": memory.summary, "msgCount": memory.summarized_through})
    return f"<!--{SUMMARY_MARKER}:{payload}-->"


async def render_text_stream(events: AsyncIterator[AnswerEvent]) -> AsyncIterator[str]:
    """Flatten a structured answer stream into answer text plus trailers."""
    async with aclosing(events) as stream:
        async for event in stream:
            if event.type == AnswerEventType.TOKEN:
                yield event.text
            elif event.type == AnswerEventType.USAGE and event.usage is not None:
                yield encode_usage(event.usage)
            elif event.type == AnswerEventType.MEMORY and event.memory is not None:
                yield encode_memory(event.memory)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

@dataclass
class DecodedAnswer:
    text: str
    usage: Optional[TokenUsage] = None
    memory: Optional[MemoryState] = None
    # False when no USAGE segment was found, i.e. the answer was truncated
    complete: bool = False


def _parse_usage(payload: str) -> Optional[TokenUsage]:
    try:
        data = orjson.loads(payload)
        return TokenUsage(prompt_tokens=data["prompt"], completion_tokens=data["completion"])
    except (ValueError, KeyError, TypeError) as exc:
        logger.warning(f"[Trailer] Dropping malformed usage payload: {exc!r}")
        return None


def _parse_memory(payload: str) -> Optional[MemoryState]:
    try:
        data = orjson.loads(payload)
        return MemoryState(summary=data["text"], summarized_through=data["msgCount"])
    except (ValueError, KeyError, TypeError) as exc:
        logger.warning(f"[Trailer] Dropping malformed summary payload: {exc!r}")
        return None


def decode_answer(text: str) -> DecodedAnswer:
    """
    Split a complete transported answer into visible text and metadata.

    Segments are stripped from the end, at most one of each kind.
    """
    body = text
    decoded = DecodedAnswer(text=text)
    seen: set[str] = set()

    while True:
        match = _TRAILER_RE.search(body)
        if match is None or match.group(1) in seen:
            break
        kind, payload = match.groups()
        seen.add(kind)
        body = body[: match.start()]
        if kind == USAGE_MARKER:
            decoded.complete = True
            decoded.usage = _parse_usage(payload)
            if body.endswith(USAGE_SEPARATOR):
                body = body[: -len(USAGE_SEPARATOR)]
        else:
            decoded.memory = _parse_memory(payload)

    decoded.text = body
    return decoded


def _hold_from(buffer: str) -> int:
    """Index of the earliest position that may start a trailer."""
    for i, ch in enumerate(buffer):
        if ch not in "\n<":
            continue
        rest = buffer[i:]
        for opener in _OPENERS:
            if rest.startswith(opener) or opener.startswith(rest):
                return i
    return len(buffer)


class TrailerDecoder:
    """
    Incremental decoder for reads of arbitrary size.

    feed() returns the text that is safe to display now; anything that could
    be the start of a trailer (even a lone trailing newline) is held back
    until the next read disambiguates it.  finish() decodes what was held
    and stores the remaining visible text in `tail`.

        decoder = TrailerDecoder()
        for chunk in reads:
            show(decoder.feed(chunk))
        result = decoder.finish()
        show(decoder.tail)
    """

    def __init__(self) -> None:
        self._shown: list[str] = []
        self._held = ""
        self.tail = ""

    def feed(self, chunk: str) -> str:
        self._held += chunk
        cut = _hold_from(self._held)
        visible, self._held = self._held[:cut], self._held[cut:]
        if visible:
            self._shown.append(visible)
        return visible

    def finish(self) -> DecodedAnswer:
        decoded = decode_answer(self._held)
        self.tail = decoded.text
        self._held = ""
        decoded.text = "".join(self._shown) + self.tail
        return decoded

"""
Text extraction for uploaded documents.

Only plain-text formats are supported; richer formats (PDF, DOCX, EPUB)
need an extractor registered in EXTRACTORS.
"""
from __future__ import annotations

from pathlib import PurePath
from typing import Callable

from docassist.exceptions import UnsupportedDocumentError


def _decode_utf8(data: bytes) -> str:
    # utf-8-sig drops a leading BOM; undecodable bytes become U+FFFD
    return data.decode("utf-8-sig", errors="replace")


EXTRACTORS: dict[str, Callable[[bytes], str]] = {
    ".txt": _decode_utf8,
    ".md": _decode_utf8,
    ".markdown": _decode_utf8,
}


def supported_extensions() -> list[str]:
    return sorted(EXTRACTORS)


def extract_text(data: bytes, filename: str) -> str:
    """Return the raw text of `data`, choosing an extractor by file extension."""
    ext = PurePath(filename).suffix.lower()
    extractor = EXTRACTORS.get(ext)
    if extractor is None:
        raise UnsupportedDocumentError(
            f"Unsupported file type '{ext or filename}'. "
            f"Supported: {', '.join(supported_extensions())}"
        )
    return extractor(data)

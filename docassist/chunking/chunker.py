"""
DocAssist - Hierarchical Chunker
---------------------------------
Small chunks retrieve precisely; large chunks answer well.  The chunker
produces both from one pass over the document:

  - PARENT spans (2000 chars, 200 overlap) are what the model reads as
    context.
  - CHILD spans (400 chars, 50 overlap) are cut from each parent and are the
    unit that gets embedded and searched.

Both levels use the same recursive-separator splitter.  The splitter tries
paragraph breaks first, then line breaks, sentence ends, single spaces and
finally a hard character split, so it always terminates and never emits a
piece longer than its target, even for text with no whitespace at all.

Adjacent chunks share `overlap` characters of boundary context.  The joining
space counts against that budget, so no chunk exceeds `size + overlap`.
"""
from __future__ import annotations

from typing import Optional, Sequence

from loguru import logger

from docassist.chunking.schemas import ChildSpan, ChunkingResult, ParentSpan


# ── Constants ─────────────────────────────────────────────────────────────────

PARENT_SIZE = 2000        # Characters per parent span (returned as context)
PARENT_OVERLAP = 200
CHILD_SIZE = 400          # Characters per child span (embedded for search)
CHILD_OVERLAP = 50

# Coarse to fine; "" means a hard fixed-width split.
SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", " ", "")


# ── Splitting ─────────────────────────────────────────────────────────────────

def _fixed_width(text: str, chunk_size: int) -> list[str]:
    return [text[i: i + chunk_size] for i in range(0, len(text), chunk_size)]


def _split_on(text: str, separator: str) -> tuple[list[str], str]:
    """
    Split on `separator`, keeping its visible part on the preceding piece.

    For ". " the period stays with its sentence and only the space is used
    to re-join pieces.  Whitespace-only separators are dropped entirely.
    Returns (pieces, joiner).
    """
    kept = separator.rstrip()
    joiner = separator[len(kept):]
    pieces = text.split(separator)
    if kept:
        pieces = [p + kept for p in pieces[:-1]] + pieces[-1:]
    return pieces, joiner


def _split_recursive(text: str, separators: Sequence[str], chunk_size: int) -> list[str]:
    if len(text) <= chunk_size:
        return [text]
    if not separators or separators[0] == "":
        return _fixed_width(text, chunk_size)

    pieces, joiner = _split_on(text, separators[0])
    finer = separators[1:]

    results: list[str] = []
    buffer = ""
    for piece in pieces:
        candidate = f"{buffer}{joiner}{piece}" if buffer else piece
        if len(candidate) <= chunk_size:
            buffer = candidate
            continue

        if buffer:
            results.append(buffer)
        if len(piece) > chunk_size:
            results.extend(_split_recursive(piece, finer, chunk_size))
            buffer = ""
        else:
            buffer = piece

    if buffer:
        results.append(buffer)
    return results


def _merge(pieces: list[str], chunk_size: int) -> list[str]:
    """Greedily join trimmed pieces with a single space, dropping blanks."""
    merged: list[str] = []
    current = ""
    for piece in pieces:
        piece = piece.strip()
        if not piece:
            continue
        if current and len(current) + 1 + len(piece) <= chunk_size:
            current = f"{current} {piece}"
        else:
            if current:
                merged.append(current)
            current = piece
    if current:
        merged.append(current)
    return merged


def _apply_overlap(chunks: list[str], overlap: int) -> list[str]:
    if overlap <= 0 or len(chunks) < 2:
        return chunks

    overlapped = [chunks[0]]
    for previous, chunk in zip(chunks, chunks[1:]):
        # overlap - 1 characters of tail plus the joining space
        tail = previous[-(overlap - 1):].lstrip() if overlap > 1 else ""
        overlapped.append(f"{tail} {chunk}" if tail else chunk)
    return overlapped


def split_text(text: str, chunk_size: int, overlap: int = 0) -> list[str]:
    """
    Split `text` into chunks of at most `chunk_size` characters, each chunk
    after the first prefixed with up to `overlap` characters of the one
    before it.
    """
    pieces = _split_recursive(text, SEPARATORS, chunk_size)
    return _apply_overlap(_merge(pieces, chunk_size), overlap)


# ── Main Chunker ──────────────────────────────────────────────────────────────

def _check_sizes(label: str, size: int, overlap: int) -> None:
    if size <= 0:
        raise ValueError(f"{label} size must be positive, got {size}")
    if not 0 <= overlap < size:
        raise ValueError(f"{label} overlap must be in [0, {size}), got {overlap}")


class HierarchicalChunker:
    """
    Two-level parent/child chunker.

    Usage:
        chunker = HierarchicalChunker()
        result = chunker.chunk(text, id_prefix=document_id)
        parents = result.parent_map()
        for child in result.children:
            embed(child.text); lookup parents[child.parent_id]
    """

    def __init__(
        self,
        parent_size: int = PARENT_SIZE,
        parent_overlap: int = PARENT_OVERLAP,
        child_size: int = CHILD_SIZE,
        child_overlap: int = CHILD_OVERLAP,
    ) -> None:
        _check_sizes("parent", parent_size, parent_overlap)
        _check_sizes("child", child_size, child_overlap)
        self.parent_size = parent_size
        self.parent_overlap = parent_overlap
        self.child_size = child_size
        self.child_overlap = child_overlap

    def chunk(self, text: str, id_prefix: Optional[str] = None) -> ChunkingResult:
        """
        Split a document into parents, then each parent into children.

        Args:
            text:      Full document text.
            id_prefix: Qualifies parent ids ("{prefix}:p-{n}") so spans from
                       different documents never share an id.

        Returns:
            ChunkingResult; empty for empty or whitespace-only text.
        """
        parents = [
            ParentSpan(
                id=f"{id_prefix}:p-{i}" if id_prefix else f"p-{i}",
                text=parent_text,
                sequence_index=i,
            )
            for i, parent_text in enumerate(
                split_text(text, self.parent_size, self.parent_overlap)
            )
        ]

        children: list[ChildSpan] = []
        for parent in parents:
            child_texts = split_text(parent.text, self.child_size, self.child_overlap)
            for child_index, child_text in enumerate(child_texts):
                children.append(
                    ChildSpan(
                        text=child_text,
                        global_index=len(children),
                        parent_id=parent.id,
                        child_index=child_index,
                    )
                )

        logger.debug(
            f"[Chunker] {len(text)} chars -> {len(parents)} parent(s), "
            f"{len(children)} child(ren)"
        )
        return ChunkingResult(parents=parents, children=children)

"""
Span schemas produced by the hierarchical chunker.

ChildSpans are the unit of embedding and search; ParentSpans are the unit of
context handed to the model.  Every child points at the parent it was cut
from, so a search hit on a small precise span can be widened to its
surrounding passage at query time.
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ParentSpan(BaseModel):
    """A large contiguous window of document text."""

    model_config = ConfigDict(frozen=True)

    id: str                              # "p-{n}", optionally "{prefix}:p-{n}"
    text: str
    sequence_index: int                  # Position within the document


class ChildSpan(BaseModel):
    """A small window cut from exactly one ParentSpan."""

    model_config = ConfigDict(frozen=True)

    text: str
    global_index: int                    # Running position across the whole document
    parent_id: str                       # ParentSpan.id of the same chunking run
    child_index: int                     # Position within its parent


class ChunkingResult(BaseModel):
    parents: list[ParentSpan] = Field(default_factory=list)
    children: list[ChildSpan] = Field(default_factory=list)

    def parent_map(self) -> dict[str, ParentSpan]:
        return {p.id: p for p in self.parents}

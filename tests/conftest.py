"""
Shared test fixtures.

Provides: a keyword embedder, an in-memory FAISS store
System role: Test infrastructure for the DocAssist pipeline
"""
from __future__ import annotations

import pytest

from docassist.embedding.vector_store import FAISSVectorStore
from doubles import KeywordEmbedder


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def store() -> FAISSVectorStore:
    return FAISSVectorStore()

"""
Document Ingestion
-------------------
    bytes + filename
        |
        v
    extract_text -> clean_text
        |
        v
    HierarchicalChunker (parents 2000/200, children 400/50)
        |
        v
    Embedder.embed_texts (children only)
        |
        v
    VectorStore.upsert (session namespace)

Each child vector carries its parent's full text, so queries never need a
second lookup.  Parent ids are prefixed with the document id, which keeps
them unique across documents sharing a namespace.
"""
from __future__ import annotations

import uuid

from langsmith import traceable
from loguru import logger

from docassist.chunking.chunker import HierarchicalChunker
from docassist.embedding.embedder import Embedder
from docassist.embedding.vector_store import VectorStore
from docassist.exceptions import CollaboratorError, EmptyDocumentError, InputValidationError
from docassist.ingestion.parsers import extract_text
from docassist.schemas import IndexedVector, IngestResult, VectorMetadata
from docassist.utils.helpers import clean_text


class DocumentIngestor:
    def __init__(
        self,
        chunker: HierarchicalChunker,
        embedder: Embedder,
        store: VectorStore,
    ) -> None:
        self.chunker = chunker
        self.embedder = embedder
        self.store = store

    @traceable(name="ingest_document", run_type="chain")
    async def ingest(self, data: bytes, filename: str, namespace: str) -> IngestResult:
        """
        Chunk, embed and index one uploaded document.

        Raises:
            InputValidationError: missing namespace/filename, unsupported
                                  type, or no extractable text.  Raised
                                  before any network call.
            CollaboratorError:    embedding or upsert failed.
        """
        if not namespace or not namespace.strip():
            raise InputValidationError("No session id provided")
        if not filename or not filename.strip():
            raise InputValidationError("No file name provided")

        text = clean_text(extract_text(data, filename))
        if not text:
            raise EmptyDocumentError(f"Could not extract text from {filename}")

        document_id = str(uuid.uuid4())
        chunks = self.chunker.chunk(text, id_prefix=document_id)
        parents = chunks.parent_map()
        logger.info(
            f"[Ingest] {filename}: {len(chunks.parents)} parents, "
            f"{len(chunks.children)} children"
        )

        try:
            embeddings = await self.embedder.embed_texts([c.text for c in chunks.children])
        except Exception as exc:
            raise CollaboratorError(f"Embedding failed for {filename}: {exc!r}") from exc

        vectors = [
            IndexedVector(
                id=f"{document_id}-c{child.global_index}",
                embedding=embeddings[row].tolist(),
                metadata=VectorMetadata(
                    child_text=child.text,
                    parent_text=parents[child.parent_id].text,
                    parent_id=child.parent_id,
                    child_index=child.child_index,
                    source_name=filename,
                    chunk_index=child.global_index,
                    document_id=document_id,
                ),
            )
            for row, child in enumerate(chunks.children)
        ]

        try:
            await self.store.upsert(namespace, vectors)
        except Exception as exc:
            raise CollaboratorError(f"Indexing failed for {filename}: {exc!r}") from exc

        logger.info(f"[Ingest] {filename} -> namespace={namespace} | {len(vectors)} vectors")
        return IngestResult(
            document_id=document_id,
            source_name=filename,
            parent_count=len(chunks.parents),
            child_count=len(chunks.children),
            file_size=len(data),
        )

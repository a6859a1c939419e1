"""
Namespaced FAISS Vector Store
-------------------------------
Multi-tenant vector index: one faiss.IndexFlatIP per namespace (one namespace
per chat session), so a query can never see another session's documents.

Each namespace keeps:
  - A FAISS IndexFlatIP (inner product == cosine similarity after L2
    normalisation)
  - A parallel list of vector ids and VectorMetadata records (same ordering
    as FAISS row ids)

Queries may carry an any-of metadata filter, e.g.
    {"source_name": ["report.pdf", "notes.md"]}
Flat indexes are exhaustive, so filtered queries scan every row and keep the
best top_k survivors.

Persistence (used by the CLI, whose process exits between commands):
  - <index_dir>/manifest.json              namespace -> directory map
  - <index_dir>/ns-<hash>/faiss.index      vectors
  - <index_dir>/ns-<hash>/records.json     ids + metadata
"""
from __future__ import annotations

import hashlib
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import faiss
import numpy as np
from loguru import logger

from docassist.schemas import IndexedVector, SearchMatch, VectorMetadata
from docassist.utils.helpers import ensure_dirs, load_json, save_json

MetadataFilter = dict[str, list[str]]


@dataclass
class NamespaceSnapshot:
    """Point-in-time copy of one namespace, safe to write from another thread."""

    dir_name: str
    index: faiss.Index
    ids: list[str]
    records: list[dict]


class VectorStore(Protocol):
    """What the pipeline needs from a vector index."""

    async def upsert(self, namespace: str, vectors: list[IndexedVector]) -> None: ...

    async def query(
        self,
        namespace: str,
        vector: np.ndarray,
        top_k: int = 10,
        metadata_filter: Optional[MetadataFilter] = None,
    ) -> list[SearchMatch]: ...

    async def delete_namespace(self, namespace: str) -> None: ...


def _passes(record: VectorMetadata, metadata_filter: MetadataFilter) -> bool:
    return all(
        getattr(record, field_name, None) in allowed
        for field_name, allowed in metadata_filter.items()
    )


class _Namespace:
    """Vectors and records of a single namespace."""

    def __init__(self, dimensions: int) -> None:
        self.dimensions = dimensions
        self.index = faiss.IndexFlatIP(dimensions)
        self.ids: list[str] = []
        self.records: list[VectorMetadata] = []
        self._positions: dict[str, int] = {}
        self._matrix = np.empty((0, dimensions), dtype=np.float32)

    def upsert(self, vectors: list[IndexedVector]) -> None:
        # Last write wins for ids repeated inside one batch
        batch = {v.id: v for v in vectors}
        rows: dict[str, np.ndarray] = {}
        for vec_id, vector in batch.items():
            row = np.asarray(vector.embedding, dtype=np.float32)
            if row.shape != (self.dimensions,):
                raise ValueError(
                    f"Vector {vec_id} has dimension {row.shape[-1]}, "
                    f"namespace expects {self.dimensions}"
                )
            rows[vec_id] = row

        appended: list[np.ndarray] = []
        for vec_id, vector in batch.items():
            row = rows[vec_id]
            pos = self._positions.get(vec_id)
            if pos is not None:
                self._matrix[pos] = row
                self.records[pos] = vector.metadata
                continue
            self._positions[vec_id] = len(self.ids)
            self.ids.append(vec_id)
            self.records.append(vector.metadata)
            appended.append(row)

        if appended:
            self._matrix = np.vstack([self._matrix, np.stack(appended)])
        self.index.reset()
        self.index.add(np.ascontiguousarray(self._matrix, dtype=np.float32))

    def search(
        self,
        vector: np.ndarray,
        top_k: int,
        metadata_filter: Optional[MetadataFilter],
    ) -> list[SearchMatch]:
        total = self.index.ntotal
        if total == 0:
            return []

        k = total if metadata_filter else min(top_k, total)
        qv = np.ascontiguousarray(vector.reshape(1, -1), dtype=np.float32)
        scores, indices = self.index.search(qv, k)

        matches: list[SearchMatch] = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0:
                continue
            record = self.records[idx]
            if metadata_filter and not _passes(record, metadata_filter):
                continue
            matches.append(SearchMatch(id=self.ids[idx], score=float(score), metadata=record))
            if len(matches) >= top_k:
                break
        return matches

    @classmethod
    def restore(cls, index: faiss.Index, ids: list[str], records: list[VectorMetadata]) -> "_Namespace":
        ns = cls(index.d)
        ns.index = index
        ns.ids = ids
        ns.records = records
        ns._positions = {vec_id: i for i, vec_id in enumerate(ids)}
        ns._matrix = index.reconstruct_n(0, index.ntotal) if index.ntotal else ns._matrix
        return ns


class FAISSVectorStore:
    """
    In-process VectorStore backed by FAISS.

    Add vectors via upsert(), persist with save() (or snapshot() plus
    write_snapshot() off the event loop), reload with FAISSVectorStore.load().
    """

    def __init__(self) -> None:
        self._namespaces: dict[str, _Namespace] = {}

    # --- VectorStore ------------------------------------------------------------

    async def upsert(self, namespace: str, vectors: list[IndexedVector]) -> None:
        if not vectors:
            return
        ns = self._namespaces.get(namespace)
        if ns is None:
            ns = _Namespace(len(vectors[0].embedding))
            self._namespaces[namespace] = ns
        ns.upsert(vectors)
        logger.debug(
            f"[VectorStore] Upserted {len(vectors)} vectors | "
            f"namespace={namespace} size={ns.index.ntotal}"
        )

    async def query(
        self,
        namespace: str,
        vector: np.ndarray,
        top_k: int = 10,
        metadata_filter: Optional[MetadataFilter] = None,
    ) -> list[SearchMatch]:
        """Return up to top_k matches sorted by cosine score, descending."""
        ns = self._namespaces.get(namespace)
        if ns is None:
            return []
        if vector.shape[-1] != ns.dimensions:
            raise ValueError(
                f"Query vector has dimension {vector.shape[-1]}, "
                f"namespace expects {ns.dimensions}"
            )
        return ns.search(vector, top_k, metadata_filter)

    async def delete_namespace(self, namespace: str) -> None:
        """Drop every vector in the namespace. Unknown namespaces are a no-op."""
        removed = self._namespaces.pop(namespace, None)
        logger.info(
            f"[VectorStore] Deleted namespace={namespace} "
            f"({removed.index.ntotal if removed else 0} vectors)"
        )

    # --- Introspection ----------------------------------------------------------

    def count(self, namespace: str) -> int:
        ns = self._namespaces.get(namespace)
        return ns.index.ntotal if ns else 0

    def sources(self, namespace: str) -> list[str]:
        ns = self._namespaces.get(namespace)
        if ns is None:
            return []
        return sorted({r.source_name for r in ns.records})

    @property
    def total_vectors(self) -> int:
        return sum(ns.index.ntotal for ns in self._namespaces.values())

    # --- Persistence ------------------------------------------------------------

    @staticmethod
    def _dir_name(namespace: str) -> str:
        return "ns-" + hashlib.sha256(namespace.encode("utf-8")).hexdigest()[:16]

    def snapshot(self) -> dict[str, NamespaceSnapshot]:
        """
        Copy every namespace (index, ids, records) at this instant.

        Take the snapshot on the event loop and hand it to write_snapshot()
        in a worker thread; later upserts and deletes never touch it.
        """
        return {
            namespace: NamespaceSnapshot(
                dir_name=self._dir_name(namespace),
                index=faiss.clone_index(ns.index),
                ids=list(ns.ids),
                records=[r.model_dump() for r in ns.records],
            )
            for namespace, ns in self._namespaces.items()
        }

    @staticmethod
    def write_snapshot(snapshot: dict[str, NamespaceSnapshot], index_dir: Path) -> None:
        """Write a snapshot to disk; directories of deleted namespaces are removed."""
        manifest: dict[str, str] = {}

        for namespace, snap in snapshot.items():
            ns_dir = index_dir / snap.dir_name
            ensure_dirs(ns_dir)
            faiss.write_index(snap.index, str(ns_dir / "faiss.index"))
            save_json({"ids": snap.ids, "records": snap.records}, ns_dir / "records.json")
            manifest[namespace] = snap.dir_name

        for stale in index_dir.glob("ns-*"):
            if stale.is_dir() and stale.name not in manifest.values():
                shutil.rmtree(stale)

        save_json({"namespaces": manifest}, index_dir / "manifest.json")
        logger.info(
            f"[VectorStore] Saved {len(manifest)} namespace(s), "
            f"{sum(s.index.ntotal for s in snapshot.values())} vectors -> {index_dir}"
        )

    def save(self, index_dir: Path) -> None:
        """Persist every namespace synchronously."""
        self.write_snapshot(self.snapshot(), index_dir)

    @classmethod
    def load(cls, index_dir: Path) -> "FAISSVectorStore":
        """Load a persisted store; a missing directory yields an empty store."""
        store = cls()
        manifest_path = index_dir / "manifest.json"
        if not manifest_path.exists():
            logger.info(f"[VectorStore] No index at {index_dir}, starting empty")
            return store

        manifest = load_json(manifest_path)
        for namespace, dir_name in manifest.get("namespaces", {}).items():
            ns_dir = index_dir / dir_name
            raw = load_json(ns_dir / "records.json")
            index = faiss.read_index(str(ns_dir / "faiss.index"))
            records = [VectorMetadata(**r) for r in raw["records"]]
            store._namespaces[namespace] = _Namespace.restore(index, raw["ids"], records)

        logger.info(
            f"[VectorStore] Loaded {len(store._namespaces)} namespace(s), "
            f"{store.total_vectors} vectors"
        )
        return store

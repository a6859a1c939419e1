"""
OpenAI Embedding Client with LangSmith instrumentation
---------------------------------------------------------
Wraps the OpenAI text-embedding-3-small API with:
  - Async calls (AsyncOpenAI) so ingestion and queries never block the loop
  - Batching (100 texts per API call), input order preserved
  - LangSmith run tracing for cost / latency observability
  - Tenacity retry policy, fail-fast by default (max_attempts=1)
  - Token usage logging
"""
from __future__ import annotations

import os
import time
from typing import Optional

import numpy as np
from langsmith import traceable
from loguru import logger
from openai import AsyncOpenAI
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential


MODEL = "text-embedding-3-small"
DIMENSIONS = 1536          # text-embedding-3-small native dimensions
BATCH_SIZE = 100


class Embedder:
    """
    Generates L2-normalised embeddings using text-embedding-3-small.

    Embeddings are normalised to unit length so cosine similarity ==
    inner product, which lets the vector store use IndexFlatIP.
    """

    def __init__(
        self,
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        batch_size: int = BATCH_SIZE,
        max_attempts: int = 1,
        timeout: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._client = client or AsyncOpenAI(
            api_key=os.getenv("OPENAI_API_KEY"), timeout=timeout
        )
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @traceable(name="embed_texts", run_type="embedding")
    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        """
        Embed a list of strings and return an (N, dimensions) float32 array.
        Row i is the embedding of texts[i].
        """
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        all_embeddings: list[list[float]] = []

        for i in range(0, len(texts), self.batch_size):
            batch = texts[i: i + self.batch_size]
            embeddings, tokens = await self._embed_with_policy(batch)
            all_embeddings.extend(embeddings)
            self.total_tokens_used += tokens
            self.total_api_calls += 1

            logger.debug(
                f"[Embedder] Batch {i // self.batch_size + 1} | "
                f"{len(batch)} texts | {tokens} tokens | "
                f"Running total: {self.total_tokens_used} tokens"
            )

        matrix = np.array(all_embeddings, dtype=np.float32)
        # L2-normalise so cosine sim == inner product
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
        return (matrix / norms).astype(np.float32)

    async def _embed_with_policy(self, texts: list[str]) -> tuple[list[list[float]], int]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            reraise=True,
        ):
            with attempt:
                return await self._embed_batch(texts)
        raise RuntimeError("unreachable")  # pragma: no cover

    async def _embed_batch(self, texts: list[str]) -> tuple[list[list[float]], int]:
        """Call the OpenAI Embeddings API for a single batch."""
        # Replace empty strings with a space to avoid API errors
        safe_texts = [t if t.strip() else " " for t in texts]
        start = time.perf_counter()
        response = await self._client.embeddings.create(
            model=self.model, input=safe_texts, dimensions=self.dimensions
        )
        elapsed = time.perf_counter() - start

        embeddings = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]
        tokens_used = response.usage.total_tokens
        logger.debug(f"[Embedder] API call: {len(texts)} texts, {tokens_used} tokens, {elapsed:.2f}s")
        return embeddings, tokens_used

    async def embed_query(self, text: str) -> np.ndarray:
        """Embed a single query string. Returns a (dimensions,) float32 array."""
        return (await self.embed_texts([text]))[0]

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
            # text-embedding-3-small: $0.020 per million tokens
            "estimated_cost_usd": round(self.total_tokens_used / 1_000_000 * 0.020, 6),
        }

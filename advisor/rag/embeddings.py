"""Embedding generation and vector similarity."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from advisor.llm.base import LLMProvider

LOGGER = logging.getLogger(__name__)


class EmbeddingService:
    """Batches texts through the provider's embedding endpoint."""

    def __init__(self, llm: LLMProvider, batch_size: int = 64) -> None:
        self._llm = llm
        self._batch_size = batch_size

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self._batch_size):
            batch = texts[offset : offset + self._batch_size]
            result = await self._llm.embed(batch)
            if len(result) != len(batch):
                raise ValueError(f"Embedding provider returned {len(result)} vectors for {len(batch)} texts")
            vectors.extend(result)
        LOGGER.debug("Embedded %d text(s)", len(texts))
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        (vector,) = await self.embed_texts([text])
        return vector


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def cosine_similarities(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Similarity of ``query`` against each row of ``vectors``; zero vectors score 0."""

    matrix = np.asarray(vectors, dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)

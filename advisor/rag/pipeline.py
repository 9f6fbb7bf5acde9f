"""Retrieval pipeline: ingest source documents and answer similarity queries."""

from __future__ import annotations

import logging
from typing import Any, Iterable

import numpy as np

from advisor.db import Database
from advisor.models import CrmContact, CrmNote, EmbeddingRecord, NormalizedEmail, SearchResult, SourceKind
from advisor.rag.chunking import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MIN_CHUNK_SIZE,
    TextChunk,
    chunk_contact,
    chunk_email,
    chunk_text,
)
from advisor.rag.embeddings import EmbeddingService, cosine_similarities

LOGGER = logging.getLogger(__name__)


class RagPipeline:
    """Chunks, embeds and stores documents per user; searches them by cosine similarity."""

    def __init__(
        self,
        db: Database,
        embeddings: EmbeddingService,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
        min_score: float = 0.3,
    ) -> None:
        self._db = db
        self._embeddings = embeddings
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._min_chunk_size = min_chunk_size
        self._min_score = min_score

    async def ingest_email(self, user_id: str, email: NormalizedEmail) -> int:
        chunks = chunk_email(email, self._chunk_size, self._chunk_overlap, self._min_chunk_size)
        metadata = {
            "email_id": email.id,
            "thread_id": email.thread_id,
            "from": email.sender,
            "from_name": email.sender_name,
            "to": email.to,
            "subject": email.subject,
            "date": email.date.isoformat(),
        }
        return await self._store(user_id, SourceKind.EMAIL, email.id, chunks, metadata)

    async def ingest_contact(
        self,
        user_id: str,
        contact: CrmContact,
        notes: list[CrmNote] | None = None,
    ) -> int:
        chunks = chunk_contact(contact, notes, self._chunk_size, self._chunk_overlap, self._min_chunk_size)
        metadata = {
            "contact_id": contact.id,
            "email": contact.email,
            "first_name": contact.first_name,
            "last_name": contact.last_name,
            "company": contact.company,
            "has_notes": bool(notes),
        }
        return await self._store(user_id, SourceKind.CONTACT, contact.id, chunks, metadata)

    async def ingest_document(
        self,
        user_id: str,
        source: SourceKind,
        source_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        chunks = chunk_text(text, self._chunk_size, self._chunk_overlap, self._min_chunk_size)
        return await self._store(user_id, source, source_id, chunks, metadata or {})

    async def _store(
        self,
        user_id: str,
        source: SourceKind,
        source_id: str,
        chunks: list[TextChunk],
        metadata: dict[str, Any],
    ) -> int:
        # Embed before touching storage so a provider failure leaves the old chunks in place.
        vectors = await self._embeddings.embed_texts([c.content for c in chunks]) if chunks else []
        records = [
            EmbeddingRecord(
                user_id=user_id,
                source=source,
                source_id=source_id,
                chunk_index=chunk.index,
                content=chunk.content,
                embedding=vector,
                metadata={
                    **metadata,
                    "source_id": source_id,
                    "chunk_index": chunk.index,
                    "total_chunks": len(chunks),
                },
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        self._db.replace_source_embeddings(user_id, source, source_id, records)
        LOGGER.info("Indexed %s %s for user %s (%d chunks)", source.value, source_id, user_id, len(records))
        return len(records)

    async def search(
        self,
        user_id: str,
        query: str,
        sources: Iterable[SourceKind] | None = None,
        limit: int = 5,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        """Top ``limit`` chunks with similarity at least ``min_score``, best first."""

        threshold = self._min_score if min_score is None else min_score
        records = self._db.list_embeddings(user_id, sources)
        if not records or limit <= 0:
            return []

        query_vector = await self._embeddings.embed_query(query)
        comparable = [r for r in records if len(r.embedding) == len(query_vector)]
        if len(comparable) != len(records):
            LOGGER.warning(
                "Skipping %d stored vector(s) with unexpected dimension for user %s",
                len(records) - len(comparable),
                user_id,
            )
        if not comparable:
            return []

        scores = cosine_similarities(query_vector, [r.embedding for r in comparable])
        results: list[SearchResult] = []
        for idx in np.argsort(-scores, kind="stable"):
            score = float(scores[idx])
            if score < threshold:
                break
            record = comparable[idx]
            results.append(
                SearchResult(
                    source=record.source,
                    source_id=record.source_id,
                    chunk_index=record.chunk_index,
                    content=record.content,
                    metadata=record.metadata,
                    score=score,
                )
            )
            if len(results) >= limit:
                break
        return results

    def lexical_search(
        self,
        user_id: str,
        query: str,
        sources: Iterable[SourceKind] | None = None,
        limit: int = 5,
    ) -> list[SearchResult]:
        """Substring match over stored chunks, for callers that want a fallback."""

        records = self._db.search_embedding_text(user_id, query, sources, limit)
        return [
            SearchResult(
                source=r.source,
                source_id=r.source_id,
                chunk_index=r.chunk_index,
                content=r.content,
                metadata=r.metadata,
                score=1.0,
            )
            for r in records
        ]

    def stats(self, user_id: str) -> dict[str, int]:
        counts = self._db.count_embeddings(user_id)
        email_chunks = counts.get(SourceKind.EMAIL.value, 0)
        contact_chunks = counts.get(SourceKind.CONTACT.value, 0)
        return {
            "total_embeddings": email_chunks + contact_chunks,
            "email_chunks": email_chunks,
            "contact_chunks": contact_chunks,
        }

    def clear(self, user_id: str) -> int:
        return self._db.delete_user_embeddings(user_id)

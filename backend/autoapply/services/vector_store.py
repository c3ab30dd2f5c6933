"""
Vector Store - Cached embeddings for users and jobs

Holds one fixed-length embedding per user profile and per job listing,
together with the hash of the text it was computed from, and supplies
cosine similarity.

Backends:
    - SqlVectorStore: writes the vector back to the owning row
      (profiles.embedding / jobs.embedding) with a single UPDATE
    - InMemoryVectorStore: process-local dict (tests, single-process dev)

Concurrency:
    Readers may run concurrently with the embedding refresh. Each write
    replaces the (vector, hash) pair of one entity atomically; the last
    write wins and no other isolation is provided.

Staleness:
    An embedding is stale when missing, when its hash differs from the hash
    of the current source text, or when its length differs from the active
    provider's dimensions (model change).
"""

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autoapply.models import Job, Profile

logger = logging.getLogger(__name__)

USER = "user"
JOB = "job"

_MODELS = {USER: Profile, JOB: Job}


@dataclass(frozen=True)
class StoredEmbedding:
    """An embedding and the content hash it was derived from."""

    vector: Tuple[float, ...]
    content_hash: Optional[str]

    def is_current(self, content_hash: str, dimensions: int) -> bool:
        return self.content_hash == content_hash and len(self.vector) == dimensions


def content_hash(text: str) -> str:
    """SHA-256 of the whitespace-normalized text."""
    normalized = " ".join((text or "").split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Calculate cosine similarity between two embedding vectors.

    Formula: cos(θ) = (a · b) / (||a|| × ||b||)

    Returns:
        Similarity score from -1 (opposite) to 1 (identical).
        Returns 0.0 if either vector has zero magnitude or the lengths differ.
    """
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)

    if a.shape != b.shape:
        return 0.0

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


class VectorStore:
    """Interface shared by the vector store backends."""

    async def get(self, kind: str, entity_id: str) -> Optional[StoredEmbedding]:
        raise NotImplementedError

    async def get_many(self, kind: str, entity_ids: List[str]) -> Dict[str, StoredEmbedding]:
        result = {}
        for entity_id in entity_ids:
            stored = await self.get(kind, entity_id)
            if stored is not None:
                result[entity_id] = stored
        return result

    async def put(
        self,
        kind: str,
        entity_id: str,
        vector: Sequence[float],
        content_hash: str,
    ) -> None:
        raise NotImplementedError


class InMemoryVectorStore(VectorStore):
    """Thread-safe in-process store; each put swaps one immutable tuple."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], StoredEmbedding] = {}
        self._lock = threading.Lock()

    async def get(self, kind: str, entity_id: str) -> Optional[StoredEmbedding]:
        return self._entries.get((kind, entity_id))

    async def put(
        self,
        kind: str,
        entity_id: str,
        vector: Sequence[float],
        content_hash: str,
    ) -> None:
        entry = StoredEmbedding(vector=tuple(float(v) for v in vector), content_hash=content_hash)
        with self._lock:
            self._entries[(kind, entity_id)] = entry


class SqlVectorStore(VectorStore):
    """
    Store embeddings on the owning Profile/Job rows.

    Attributes:
        session_factory: Async session factory; each call uses its own session
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get(self, kind: str, entity_id: str) -> Optional[StoredEmbedding]:
        found = await self.get_many(kind, [entity_id])
        return found.get(entity_id)

    async def get_many(self, kind: str, entity_ids: List[str]) -> Dict[str, StoredEmbedding]:
        if not entity_ids:
            return {}
        model = _MODELS[kind]
        async with self.session_factory() as session:
            result = await session.execute(
                select(model.id, model.embedding, model.embedding_hash).where(
                    model.id.in_(entity_ids)
                )
            )
            return {
                row.id: StoredEmbedding(vector=tuple(row.embedding), content_hash=row.embedding_hash)
                for row in result
                if row.embedding
            }

    async def put(
        self,
        kind: str,
        entity_id: str,
        vector: Sequence[float],
        content_hash: str,
    ) -> None:
        model = _MODELS[kind]
        async with self.session_factory() as session:
            # One UPDATE replaces vector and hash together
            await session.execute(
                update(model)
                .where(model.id == entity_id)
                .values(embedding=[float(v) for v in vector], embedding_hash=content_hash)
            )
            await session.commit()
        logger.debug(f"Stored {kind} embedding for {entity_id}")


def get_vector_store(
    backend: str = "sql",
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> VectorStore:
    """
    Factory function for vector store backends.

    Args:
        backend: "sql" or "memory"
        session_factory: Required for the sql backend

    Raises:
        ValueError: If backend is unknown or required args missing
    """
    if backend == "sql":
        if session_factory is None:
            raise ValueError("SQL vector store requires a session factory")
        return SqlVectorStore(session_factory)
    elif backend == "memory":
        return InMemoryVectorStore()
    raise ValueError(f"Unknown vector store backend: {backend}. Supported: sql, memory")

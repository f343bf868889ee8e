"""
Plan-scoped embedding store interface and an in-memory implementation.
Archiving is a soft delete; rows are never physically removed.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

import numpy as np

from .types import MemoryVector, SearchHit


class IEmbeddingStore(ABC):
    """Abstract interface for plan memory storage operations."""

    @abstractmethod
    async def find_recent_ids(self, plan_id: str, limit: int) -> List[str]:
        """Ids of the `limit` newest active vectors of the plan."""
        pass

    @abstractmethod
    async def find_eligible(self, plan_id: str, min_age_days: int,
                            exclude_ids: Iterable[str] = ()) -> List[MemoryVector]:
        """Active vectors older than min_age_days, minus exclude_ids."""
        pass

    @abstractmethod
    async def bulk_archive(self, ids: Iterable[str], actor_id: Optional[str]) -> int:
        """Archive the given active vectors and return how many changed."""
        pass

    @abstractmethod
    async def insert(self, record: MemoryVector) -> str:
        """Store a new vector and return its id."""
        pass

    @abstractmethod
    async def count_active(self, plan_id: str) -> int:
        pass

    @abstractmethod
    async def count_archived(self, plan_id: str) -> int:
        pass

    @abstractmethod
    async def search(self, plan_id: str, query_vector: np.ndarray, top_k: int = 10,
                     threshold: float = 0.0, include_deleted: bool = False) -> List[SearchHit]:
        """Active vectors of the plan at or above threshold, most similar first."""
        pass

    @abstractmethod
    async def list_active(self, plan_id: str) -> List[MemoryVector]:
        pass


class InMemoryEmbeddingStore(IEmbeddingStore):
    """Simple in-memory implementation of IEmbeddingStore using cosine similarity."""

    def __init__(self, records: Iterable[MemoryVector] = ()):
        self._vectors: Dict[str, MemoryVector] = {}
        self._index: Dict[str, np.ndarray] = {}  # record_id -> normalized vector
        for record in records:
            self._add(record)

    def _add(self, record: MemoryVector) -> None:
        self._vectors[record.id] = record

        norm = np.linalg.norm(record.vector)
        if norm > 0:
            self._index[record.id] = record.vector / norm
        else:
            self._index[record.id] = record.vector

    def get(self, record_id: str) -> Optional[MemoryVector]:
        """Return a record regardless of status."""
        return self._vectors.get(record_id)

    def _active(self, plan_id: str) -> List[MemoryVector]:
        return [v for v in self._vectors.values() if v.plan_id == plan_id and not v.is_deleted]

    async def find_recent_ids(self, plan_id: str, limit: int) -> List[str]:
        if limit <= 0:
            return []
        newest_first = sorted(self._active(plan_id), key=lambda v: (v.created_at, v.id), reverse=True)
        return [v.id for v in newest_first[:limit]]

    async def find_eligible(self, plan_id: str, min_age_days: int,
                            exclude_ids: Iterable[str] = ()) -> List[MemoryVector]:
        cutoff = datetime.now() - timedelta(days=min_age_days)
        excluded: Set[str] = set(exclude_ids)
        eligible = [
            v for v in self._active(plan_id)
            if v.created_at < cutoff and v.id not in excluded
        ]
        return sorted(eligible, key=lambda v: (v.created_at, v.id))

    async def bulk_archive(self, ids: Iterable[str], actor_id: Optional[str]) -> int:
        now = datetime.now()
        archived = 0
        for record_id in ids:
            record = self._vectors.get(record_id)
            if record is None or record.is_deleted:
                continue
            self._vectors[record_id] = record.archived(actor_id, now)
            archived += 1
        return archived

    async def insert(self, record: MemoryVector) -> str:
        if not record.id:
            record.id = str(uuid.uuid4())
        self._add(record)
        return record.id

    async def count_active(self, plan_id: str) -> int:
        return len(self._active(plan_id))

    async def count_archived(self, plan_id: str) -> int:
        return sum(1 for v in self._vectors.values() if v.plan_id == plan_id and v.is_deleted)

    async def search(self, plan_id: str, query_vector: np.ndarray, top_k: int = 10,
                     threshold: float = 0.0, include_deleted: bool = False) -> List[SearchHit]:
        query_vector = np.asarray(query_vector, dtype=np.float64)
        norm = np.linalg.norm(query_vector)
        if norm == 0:
            return []
        normalized_query = query_vector / norm

        hits = []
        if include_deleted:
            candidates = [v for v in self._vectors.values() if v.plan_id == plan_id]
        else:
            candidates = self._active(plan_id)

        for record in candidates:
            stored = self._index[record.id]
            if stored.shape != normalized_query.shape:
                continue
            similarity = float(np.dot(normalized_query, stored))
            if similarity >= threshold:
                hits.append(SearchHit(memory=record, similarity=similarity))

        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:top_k]

    async def list_active(self, plan_id: str) -> List[MemoryVector]:
        return sorted(self._active(plan_id), key=lambda v: (v.created_at, v.id))

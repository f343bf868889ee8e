"""
Memory vector records. Rows are only ever archived (soft-deleted), never removed.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional

import numpy as np

MEMORY_STATUS_ACTIVE = "active"
MEMORY_STATUS_ARCHIVED = "archived"


@dataclass
class MemoryVector:
    """A stored embedding plus its source text, scoped to one plan."""

    id: str
    """Unique identifier for the memory vector"""

    plan_id: str
    """Plan (tenant) that owns the memory"""

    vector: np.ndarray
    """Embedding of the content"""

    content: str
    """Source text the embedding was computed from"""

    ref_type: str
    """Kind of object the memory came from (message, conversation, job, compression_summary, ...)"""

    ref_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.vector, np.ndarray):
            self.vector = np.asarray(self.vector, dtype=np.float64)

    @property
    def status(self) -> str:
        return MEMORY_STATUS_ARCHIVED if self.is_deleted else MEMORY_STATUS_ACTIVE

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])

    def archived(self, actor_id: Optional[str], at: datetime) -> "MemoryVector":
        """Return an archived copy of this record."""
        return replace(self, is_deleted=True, deleted_at=at, deleted_by=actor_id, updated_at=at)


@dataclass
class SearchHit:
    """A memory vector matched by similarity search."""

    memory: MemoryVector
    similarity: float


@dataclass
class VectorCluster:
    """Group of similar vectors; the seed is the first member."""

    members: List[MemoryVector]
    similarity: float
    """Average similarity of the other members to the seed"""

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def plan_id(self) -> Optional[str]:
        return self.members[0].plan_id if self.members else None

    @property
    def member_ids(self) -> List[str]:
        return [member.id for member in self.members]

"""
Records exchanged with the plan, message and job sources, and the
results reported by memory compression.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

MESSAGE_ROLES = ("user", "assistant", "system")


@dataclass
class Plan:
    id: str
    owner_id: str
    title: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_job_activity_at: Optional[datetime] = None
    is_deleted: bool = False

    def last_activity_at(self) -> Optional[datetime]:
        """Most recent of plan update, message and job activity."""
        stamps = [ts for ts in (self.updated_at, self.last_message_at, self.last_job_activity_at) if ts]
        return max(stamps) if stamps else None


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str  # user|assistant|system
    content: str
    created_at: datetime


@dataclass
class Job:
    id: str
    plan_id: str
    type: str
    state: str
    result: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def one_line_summary(self) -> str:
        """Short summary of the job outcome suitable for a single prompt line."""
        result = self.result or {}
        summary = result.get("summary") or result.get("title") or "No summary available"
        return " ".join(str(summary).split())


@dataclass
class CompressionResult:
    """Outcome of one compress_plan_memory call."""
    plan_id: str
    mode: str
    before_count: int
    after_count: int
    compression_ratio: float
    duration_ms: int
    duplicates_removed: Optional[int] = None
    clusters_merged: Optional[int] = None
    embeddings_archived: Optional[int] = None
    clusters_failed: Optional[int] = None
    dry_run: bool = False
    skipped: bool = False
    skip_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary, dropping fields that do not apply to the mode."""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class LastCompression:
    mode: str
    before_count: int
    after_count: int
    compression_ratio: float
    timestamp: Optional[datetime] = None
    duplicates_removed: Optional[int] = None
    clusters_merged: Optional[int] = None
    embeddings_archived: Optional[int] = None
    duration_ms: Optional[int] = None

    @classmethod
    def from_job(cls, job: Job) -> Optional["LastCompression"]:
        """Read the compression result stored by a completed memory_compression job."""
        data = (job.result or {}).get("data")
        if not data:
            return None
        return cls(
            mode=data.get("mode", "light"),
            before_count=data.get("before_count", 0),
            after_count=data.get("after_count", 0),
            compression_ratio=data.get("compression_ratio", 0.0),
            timestamp=job.finished_at or job.created_at,
            duplicates_removed=data.get("duplicates_removed"),
            clusters_merged=data.get("clusters_merged"),
            embeddings_archived=data.get("embeddings_archived"),
            duration_ms=data.get("duration_ms"),
        )


@dataclass
class MemoryStats:
    plan_id: str
    total_embeddings: int
    active_embeddings: int
    archived_embeddings: int
    last_compression: Optional[LastCompression] = None


@dataclass
class CompressionDiagnostics:
    """Read-only projection of what compression would do for a plan."""
    plan_id: str
    total_embeddings: int
    eligible_embeddings: int
    preserved_embeddings: int
    duplicate_groups: int
    duplicate_count: int
    potential_clusters: int
    clusterable_embeddings: int
    estimated_compression_ratio: float
    last_compression: Optional[LastCompression] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.last_compression and self.last_compression.timestamp:
            data["last_compression"]["timestamp"] = self.last_compression.timestamp.isoformat()
        return data


@dataclass
class SweepReport:
    """Outcome of one scheduler sweep."""
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    plans_matched: int = 0
    jobs_submitted: int = 0
    failures: int = 0
    job_ids: List[str] = None
    errors: List[str] = None
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.job_ids is None:
            self.job_ids = []
        if self.errors is None:
            self.errors = []
        if self.metadata is None:
            self.metadata = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "plans_matched": self.plans_matched,
            "jobs_submitted": self.jobs_submitted,
            "failures": self.failures,
            "job_ids": self.job_ids,
            "errors": self.errors,
            "metadata": self.metadata
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        return data

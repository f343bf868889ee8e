"""
Shared fakes and vector helpers for plan memory tests.
"""

import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np
import pytest

from plan_memory.core.config import get_compression_settings, get_context_builder_settings
from plan_memory.core.errors import UpstreamError
from plan_memory.core.schema import Job, Message, Plan
from plan_memory.core.sources import JobRunner, JobsSource, MessagesSource, PlanSource
from plan_memory.llm.client import GenerationResult, ILLMClient
from plan_memory.vector.embeddings import DeterministicHashEmbedding
from plan_memory.vector.index import InMemoryEmbeddingStore
from plan_memory.vector.types import MemoryVector

DIM = 48
BASE_TIME = datetime.now() - timedelta(days=60)


def axis(i: int, dim: int = DIM) -> np.ndarray:
    v = np.zeros(dim)
    v[i] = 1.0
    return v


def blend(i: int, j: int, cos: float, dim: int = DIM) -> np.ndarray:
    """Unit vector with cosine `cos` to axis i, tilted toward axis j."""
    return cos * axis(i, dim) + math.sqrt(1 - cos * cos) * axis(j, dim)


def make_vector(record_id: str, vector, plan_id: str = "plan-1", order: int = 0, content: str = None,
                ref_type: str = "message", ref_id: Optional[str] = None, created_at: datetime = None) -> MemoryVector:
    """Memory vector created `order` minutes after BASE_TIME (60 days ago)."""
    created = created_at or BASE_TIME + timedelta(minutes=order)
    return MemoryVector(
        id=record_id,
        plan_id=plan_id,
        vector=np.asarray(vector, dtype=np.float64),
        content=content or f"memory {record_id}",
        ref_type=ref_type,
        ref_id=ref_id,
        created_at=created,
        updated_at=created,
    )


class FakePlanSource(PlanSource):
    def __init__(self, plans: List[Plan] = ()):
        self.plans: Dict[str, Plan] = {p.id: p for p in plans}

    async def get_plan(self, plan_id):
        return self.plans.get(plan_id)

    async def list_plans(self):
        return [p for p in self.plans.values() if not p.is_deleted]


class FakeMessagesSource(MessagesSource):
    def __init__(self, conversations: Dict[str, List[Message]] = None, active_refs=()):
        self.conversations = conversations or {}
        self.active_refs = set(active_refs)
        self.requested_limits = []

    async def get_recent_messages(self, conversation_id, limit):
        self.requested_limits.append(limit)
        return list(self.conversations.get(conversation_id, []))[-limit:]

    async def get_active_reference_ids(self, plan_id, since):
        return set(self.active_refs)


class FakeJobsSource(JobsSource):
    def __init__(self, jobs: List[Job] = ()):
        self.jobs = list(jobs)

    async def get_recent_completed_jobs(self, plan_id, limit):
        done = [j for j in self.jobs if j.plan_id == plan_id and j.state == "completed"]
        return done[:limit]

    async def get_last_completed_job(self, plan_id, job_type):
        for job in self.jobs:
            if job.plan_id == plan_id and job.type == job_type and job.state == "completed":
                return job
        return None


class RecordingJobRunner(JobRunner):
    def __init__(self, fail_for=()):
        self.submitted = []
        self.fail_for = set(fail_for)

    async def submit(self, plan_id, user_id, job_type, params, priority=0):
        if plan_id in self.fail_for:
            raise RuntimeError(f"queue unavailable for {plan_id}")
        job_id = f"job-{len(self.submitted) + 1}"
        self.submitted.append({
            "job_id": job_id,
            "plan_id": plan_id,
            "user_id": user_id,
            "job_type": job_type,
            "params": params,
            "priority": priority,
        })
        return job_id


class ScriptedLLM(ILLMClient):
    """Returns fixed text, or raises when `error` is set."""

    def __init__(self, text: str = "summary of related memories", error: Exception = None):
        self.text = text
        self.error = error
        self.prompts = []

    async def generate(self, prompt, temperature=0.3, max_tokens=500):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return GenerationResult(text=self.text, model_used="scripted")


class RecordingEmbedder(DeterministicHashEmbedding):
    """Hash embeddings that record calls and fail for texts containing `fail_on`."""

    def __init__(self, dimension: int = DIM, fail_on: str = None):
        super().__init__(dimension)
        self.fail_on = fail_on
        self.calls = []

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise UpstreamError("embedding backend unavailable")
        return [self.embed_text(t) for t in texts]


@pytest.fixture
def plan():
    return Plan(id="plan-1", owner_id="user-1", title="Lisbon trip", metadata={"city": "Lisbon"})


@pytest.fixture
def plan_source(plan):
    return FakePlanSource([plan])


@pytest.fixture
def store():
    return InMemoryEmbeddingStore()


@pytest.fixture
def embedder():
    return RecordingEmbedder()


@pytest.fixture
def compression_settings():
    """Defaults with the size gate and recent-protection disabled."""
    return replace(get_compression_settings(), min_embeddings_threshold=1, preserve_recent_count=0)


@pytest.fixture
def context_settings():
    return get_context_builder_settings()

"""
Plan context: title, metadata, recent completed jobs and a memory summary.
"""

import asyncio
import json
import logging
from typing import List, Optional

from util.logging import logger
from ..core.config import ContextBuilderSettings, get_context_builder_settings
from ..core.errors import ContextBuilderError, NotFoundError
from ..core.schema import Job, MemoryStats, Plan
from ..core.sources import JobsSource, PlanSource
from ..core.tokens import estimate_tokens, trim_to_token_limit
from .types import PlanContext


def format_plan_context(plan: Plan, metadata: Optional[dict] = None, jobs: Optional[List[Job]] = None,
                        stats: Optional[MemoryStats] = None) -> str:
    parts = [f"## Plan: {plan.title}", f"Plan ID: {plan.id}"]

    if metadata:
        parts.append("\n### Plan Metadata")
        parts.append(json.dumps(metadata, indent=2, default=str))

    if jobs:
        parts.append(f"\n### Recent Jobs ({len(jobs)})")
        for job in jobs:
            parts.append(f"- {job.type} ({job.state}): {job.one_line_summary()}")

    if stats:
        parts.append("\n### Memory Summary")
        parts.append(format_memory_stats(stats))

    return "\n".join(parts)


def format_memory_stats(stats: MemoryStats) -> str:
    lines = [
        f"Total embeddings: {stats.total_embeddings} "
        f"({stats.active_embeddings} active, {stats.archived_embeddings} archived)"
    ]
    if stats.last_compression:
        last = stats.last_compression
        lines.append(f"Last compression: {last.mode} mode, {last.compression_ratio * 100:.1f}% reduction")
    return "\n".join(lines)


class PlanContextBuilder:
    """
    Builds the plan block. Jobs and memory stats are optional enrichment:
    if either lookup fails the block is built without it.

    stats_provider is anything with an async get_memory_stats(plan_id),
    normally the MemoryCompressor.
    """

    def __init__(self, plan_source: PlanSource, jobs_source: Optional[JobsSource] = None,
                 stats_provider=None, settings: Optional[ContextBuilderSettings] = None):
        self.plan_source = plan_source
        self.jobs_source = jobs_source
        self.stats_provider = stats_provider
        self.settings = settings or get_context_builder_settings()

    async def build_plan_context(self, plan_id: str, include_metadata: bool = True, include_jobs: bool = True,
                                 job_limit: Optional[int] = None, include_memory_stats: bool = True,
                                 max_tokens: Optional[int] = None) -> PlanContext:
        job_limit = job_limit or self.settings.job_limit

        logger.log_context_event("plan_context.build.start", details={"plan_id": plan_id, "max_tokens": max_tokens})

        try:
            plan = await self.plan_source.get_plan(plan_id)
            if plan is None or plan.is_deleted:
                raise NotFoundError(f"Plan not found: {plan_id}", details={"plan_id": plan_id})

            jobs, stats = await asyncio.gather(
                self._get_recent_jobs(plan_id, job_limit) if include_jobs else _nothing(),
                self._get_memory_stats(plan_id) if include_memory_stats else _nothing(),
                return_exceptions=True
            )
            if isinstance(jobs, Exception):
                self._log_enrichment_failure(plan_id, "jobs", jobs)
                jobs = None
            if isinstance(stats, Exception):
                self._log_enrichment_failure(plan_id, "memory_stats", stats)
                stats = None

            metadata = plan.metadata if include_metadata else None
            formatted = format_plan_context(plan, metadata, jobs, stats)
            token_count = estimate_tokens(formatted)
            truncated = False

            # Each step builds on the previous one and re-measures
            if max_tokens is not None and token_count > max_tokens and stats:
                stats = None
                truncated = True
                formatted = format_plan_context(plan, metadata, jobs, stats)
                token_count = estimate_tokens(formatted)

            if max_tokens is not None and token_count > max_tokens and jobs:
                jobs = jobs[:max(1, job_limit // 2)]
                truncated = True
                formatted = format_plan_context(plan, metadata, jobs, stats)
                token_count = estimate_tokens(formatted)

            if max_tokens is not None and token_count > max_tokens and metadata:
                metadata = None
                truncated = True
                formatted = format_plan_context(plan, metadata, jobs, stats)
                token_count = estimate_tokens(formatted)

            if max_tokens is not None and token_count > max_tokens:
                formatted = trim_to_token_limit(formatted, max_tokens)
                token_count = estimate_tokens(formatted)
                truncated = True

            logger.log_context_event("plan_context.build.complete", details={
                "plan_id": plan_id,
                "token_count": token_count,
                "has_metadata": bool(metadata),
                "job_count": len(jobs or []),
                "has_memory_stats": stats is not None,
                "truncated": truncated
            })
            return PlanContext(formatted=formatted, token_count=token_count, truncated=truncated)

        except NotFoundError:
            logger.log_context_event("plan_context.build.error", status="failed", details={
                "plan_id": plan_id, "error": "plan not found"
            }, level=logging.ERROR)
            raise
        except Exception as e:
            logger.log_context_event("plan_context.build.error", status="failed", details={
                "plan_id": plan_id, "error": str(e)
            }, level=logging.ERROR)
            raise ContextBuilderError(
                f"Failed to build plan context: {e}",
                "PLAN_CONTEXT_BUILD_FAILED",
                {"plan_id": plan_id}
            ) from e

    async def _get_recent_jobs(self, plan_id: str, limit: int) -> Optional[List[Job]]:
        if self.jobs_source is None:
            return None
        return await self.jobs_source.get_recent_completed_jobs(plan_id, limit)

    async def _get_memory_stats(self, plan_id: str) -> Optional[MemoryStats]:
        if self.stats_provider is None:
            return None
        return await self.stats_provider.get_memory_stats(plan_id)

    @staticmethod
    def _log_enrichment_failure(plan_id: str, part: str, error: Exception):
        logger.log_context_event(f"plan_context.{part}_failed", status="degraded", details={
            "plan_id": plan_id, "error": str(error)
        }, level=logging.WARNING)


async def _nothing():
    return None

"""
Memory compression for a single plan.

light: archive near-duplicates, keeping the oldest member of each group.
full:  cluster similar vectors, write one summary vector per cluster, then
       archive the cluster members.

Rows are only ever archived. A summary vector is written before its cluster
members are archived, so a crash in between leaves the originals intact and
the run can simply be repeated.
"""

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional, Set

import numpy as np

from util.logging import logger
from ..context.prompts import CLUSTER_ITEM_SEPARATOR, cluster_summary_prompt
from ..core.config import (
    COMPRESSION_JOB_TYPE, COMPRESSION_SUMMARY_REF_TYPE, CompressionSettings, get_compression_settings
)
from ..core.errors import NotFoundError, UpstreamError, ValidationError
from ..core.requests import CompressionRequest, PlanRequest, validate_request
from ..core.schema import CompressionDiagnostics, CompressionResult, LastCompression, MemoryStats, Plan
from ..core.sources import JobsSource, MessagesSource, PlanSource
from ..llm.client import ILLMClient
from ..vector.embeddings import IEmbeddingProvider
from ..vector.index import IEmbeddingStore
from ..vector.similarity import VectorSimilarityEngine, dominant_dimension, normalize_vector
from ..vector.types import MemoryVector, VectorCluster

CONVERSATION_REF_TYPES = ("conversation", "message")


def concatenate_cluster_contents(contents: List[str]) -> str:
    """Join contents longest first so the most informative text leads."""
    ordered = sorted(contents, key=len, reverse=True)
    return CLUSTER_ITEM_SEPARATOR.join(ordered)


class MemoryCompressor:
    """Light and full memory compression over one plan's stored vectors."""

    def __init__(self, store: IEmbeddingStore, embedder: IEmbeddingProvider, llm: Optional[ILLMClient] = None,
                 plan_source: Optional[PlanSource] = None, jobs_source: Optional[JobsSource] = None,
                 messages_source: Optional[MessagesSource] = None,
                 engine: Optional[VectorSimilarityEngine] = None,
                 settings: Optional[CompressionSettings] = None):
        self.store = store
        self.embedder = embedder
        self.llm = llm
        self.plan_source = plan_source
        self.jobs_source = jobs_source
        self.messages_source = messages_source
        self.engine = engine or VectorSimilarityEngine()
        self.settings = settings or get_compression_settings()

    async def compress_plan_memory(self, plan_id: str, mode: str, user_id: Optional[str] = None,
                                   dry_run: bool = False) -> CompressionResult:
        """
        Compress a plan's memory.

        Args:
            plan_id: Plan whose vectors are compressed
            mode: "light" (dedup) or "full" (cluster and summarize)
            user_id: Caller; when given, must own the plan. Recorded as archive actor.
            dry_run: Report projected counts without any writes or model calls

        Returns:
            CompressionResult with before/after counts and per-mode statistics

        Raises:
            ValidationError: invalid mode or empty plan id
            NotFoundError: plan does not resolve for the caller
        """
        validate_request(CompressionRequest, plan_id=plan_id, mode=mode, user_id=user_id, dry_run=dry_run)
        start_time = time.time()

        logger.log_compression_event("start", plan_id, details={
            "mode": mode, "user_id": user_id, "dry_run": dry_run
        })

        await self._verify_plan(plan_id, user_id)

        before_count = await self.store.count_active(plan_id)
        logger.log_compression_event("initial_count", plan_id, details={
            "mode": mode, "embeddings_before": before_count
        })

        if before_count < self.settings.min_embeddings_threshold:
            skip_reason = (f"Embedding count ({before_count}) is below minimum threshold "
                           f"({self.settings.min_embeddings_threshold})")
            logger.log_compression_event("skipped", plan_id, status="skipped", details={
                "mode": mode, "reason": skip_reason
            }, level=logging.WARNING)
            return CompressionResult(
                plan_id=plan_id,
                mode=mode,
                before_count=before_count,
                after_count=before_count,
                compression_ratio=0.0,
                duration_ms=self._elapsed_ms(start_time),
                dry_run=dry_run,
                skipped=True,
                skip_reason=skip_reason,
            )

        duplicates_removed = clusters_merged = embeddings_archived = clusters_failed = 0

        if mode == "light":
            duplicate_groups = await self.find_redundant_vectors(plan_id)
            # Groups are in creation order; the oldest member stays
            duplicate_ids = [v.id for group in duplicate_groups for v in group[1:]]

            logger.log_compression_event("light_mode.duplicates_found", plan_id, details={
                "duplicate_groups": len(duplicate_groups),
                "duplicates_to_remove": len(duplicate_ids)
            })

            if duplicate_ids and not dry_run:
                await self.archive_vectors(duplicate_ids, user_id)
            duplicates_removed = len(duplicate_ids)
        else:
            clusters = await self.group_similar_vectors(plan_id)
            logger.log_compression_event("full_mode.clusters_found", plan_id, details={
                "clusters": len(clusters),
                "embeddings_in_clusters": sum(c.size for c in clusters)
            })

            clusters_merged, embeddings_archived, clusters_failed = await self._merge_clusters(
                plan_id, clusters, user_id, dry_run
            )

        if dry_run:
            after_count = before_count - duplicates_removed - embeddings_archived + clusters_merged
        else:
            after_count = await self.store.count_active(plan_id)

        compression_ratio = (before_count - after_count) / before_count if before_count > 0 else 0.0
        full = mode == "full"
        result = CompressionResult(
            plan_id=plan_id,
            mode=mode,
            before_count=before_count,
            after_count=after_count,
            compression_ratio=compression_ratio,
            duration_ms=self._elapsed_ms(start_time),
            duplicates_removed=None if full else duplicates_removed,
            clusters_merged=clusters_merged if full else None,
            embeddings_archived=embeddings_archived if full else None,
            clusters_failed=clusters_failed if full else None,
            dry_run=dry_run,
        )

        logger.log_compression_event("complete", plan_id, details={
            **result.to_dict(),
            "compression_percentage": f"{compression_ratio * 100:.2f}%"
        })
        return result

    async def find_redundant_vectors(self, plan_id: str) -> List[List[MemoryVector]]:
        """Duplicate groups among eligible vectors, each ordered oldest first."""
        logger.log_compression_event("find_redundant.start", plan_id)

        eligible = await self._get_eligible_vectors(plan_id)
        groups = self.engine.find_duplicate_groups(eligible, self.settings.duplicate_threshold)

        logger.log_compression_event("find_redundant.complete", plan_id, details={
            "eligible": len(eligible),
            "duplicate_groups_found": len(groups),
            "total_duplicates": sum(len(g) - 1 for g in groups)
        })
        return groups

    async def group_similar_vectors(self, plan_id: str) -> List[VectorCluster]:
        """Greedy clusters among eligible vectors."""
        logger.log_compression_event("group_similar.start", plan_id)

        eligible = await self._get_eligible_vectors(plan_id)
        clusters = self.engine.find_clusters(
            eligible,
            self.settings.similarity_threshold,
            self.settings.min_cluster_size,
            self.settings.max_cluster_size,
        )

        logger.log_compression_event("group_similar.complete", plan_id, details={
            "eligible": len(eligible),
            "clusters_found": len(clusters),
            "total_embeddings_clustered": sum(c.size for c in clusters)
        })
        return clusters

    async def merge_cluster(self, cluster: VectorCluster, dry_run: bool = False) -> Optional[MemoryVector]:
        """
        Write one summary vector for a cluster.

        Large clusters are summarized by the LLM, falling back to concatenation
        if it fails; smaller ones are concatenated directly. Embedding or
        storing the summary raises, leaving the cluster unmerged. The members
        are not archived here. In dry-run mode nothing is generated or written
        and None is returned.
        """
        if not cluster.members:
            raise ValidationError("Cannot merge an empty cluster")

        plan_id = cluster.plan_id
        logger.log_compression_event("merge_cluster.start", plan_id, details={"cluster_size": cluster.size})

        if dry_run:
            return None

        contents = [member.content for member in cluster.members]
        if self.llm is not None and cluster.size >= self.settings.summary_min_cluster_size:
            summary_text = await self._generate_cluster_summary(plan_id, contents)
        else:
            summary_text = concatenate_cluster_contents(contents)

        vectors = await self.embedder.embed([summary_text])
        if not vectors or len(vectors[0]) == 0:
            raise UpstreamError("Failed to generate summary embedding", details={"plan_id": plan_id})

        vector = np.asarray(vectors[0], dtype=np.float64)
        if self.settings.normalize_vectors:
            vector = normalize_vector(vector)

        now = datetime.now()
        summary = MemoryVector(
            id="",
            plan_id=plan_id,
            vector=vector,
            content=summary_text,
            ref_type=COMPRESSION_SUMMARY_REF_TYPE,
            created_at=now,
            updated_at=now,
        )
        summary.id = await self.store.insert(summary)

        logger.log_compression_event("merge_cluster.complete", plan_id, details={
            "cluster_size": cluster.size,
            "summary_id": summary.id
        })
        return summary

    async def archive_vectors(self, ids: List[str], user_id: Optional[str] = None) -> int:
        """Archive vectors by id; returns the number actually archived."""
        if not ids:
            return 0

        logger.log_compression_event("archive.start", details={"count": len(ids), "user_id": user_id})
        archived = await self.store.bulk_archive(ids, user_id)
        logger.log_compression_event("archive.complete", details={"archived": archived})
        return archived

    async def get_compression_diagnostics(self, plan_id: str, user_id: Optional[str] = None) -> CompressionDiagnostics:
        """Project what compression would do. Never writes."""
        validate_request(PlanRequest, plan_id=plan_id, user_id=user_id)
        await self._verify_plan(plan_id, user_id)

        total = await self.store.count_active(plan_id)
        eligible = await self._get_eligible_vectors(plan_id)
        preserved = min(total - len(eligible), self.settings.preserve_recent_count)

        duplicate_groups = self.engine.find_duplicate_groups(eligible, self.settings.duplicate_threshold)
        duplicate_count = sum(len(group) - 1 for group in duplicate_groups)

        clusters = self.engine.find_clusters(
            eligible,
            self.settings.similarity_threshold,
            self.settings.min_cluster_size,
            self.settings.max_cluster_size,
        )
        clusterable = sum(c.size for c in clusters)

        # One summary replaces each cluster
        estimated_reduction = max(duplicate_count, clusterable - len(clusters))
        diagnostics = CompressionDiagnostics(
            plan_id=plan_id,
            total_embeddings=total,
            eligible_embeddings=len(eligible),
            preserved_embeddings=max(0, preserved),
            duplicate_groups=len(duplicate_groups),
            duplicate_count=duplicate_count,
            potential_clusters=len(clusters),
            clusterable_embeddings=clusterable,
            estimated_compression_ratio=estimated_reduction / total if total > 0 else 0.0,
            last_compression=await self._last_compression(plan_id),
        )

        logger.log_compression_event("diagnostics", plan_id, details={
            "eligible": diagnostics.eligible_embeddings,
            "duplicate_groups": diagnostics.duplicate_groups,
            "potential_clusters": diagnostics.potential_clusters
        })
        return diagnostics

    async def get_memory_stats(self, plan_id: str, user_id: Optional[str] = None) -> MemoryStats:
        """Active/archived counts plus the last completed compression."""
        validate_request(PlanRequest, plan_id=plan_id, user_id=user_id)
        await self._verify_plan(plan_id, user_id)

        active = await self.store.count_active(plan_id)
        archived = await self.store.count_archived(plan_id)

        return MemoryStats(
            plan_id=plan_id,
            total_embeddings=active + archived,
            active_embeddings=active,
            archived_embeddings=archived,
            last_compression=await self._last_compression(plan_id),
        )

    async def _merge_clusters(self, plan_id: str, clusters: List[VectorCluster], user_id: Optional[str],
                              dry_run: bool):
        """Process clusters in fixed-size concurrent batches; one failure never stops the rest."""
        merged = archived = failed = 0
        batch_size = max(1, self.settings.cluster_batch_size)

        for offset in range(0, len(clusters), batch_size):
            batch = clusters[offset:offset + batch_size]
            results = await asyncio.gather(
                *(self._process_cluster(cluster, user_id, dry_run) for cluster in batch),
                return_exceptions=True
            )

            batch_merged = batch_archived = 0
            for cluster, outcome in zip(batch, results):
                if isinstance(outcome, Exception):
                    failed += 1
                    logger.log_compression_event("merge_cluster.failed", plan_id, status="failed", details={
                        "cluster_size": cluster.size,
                        "error": str(outcome)
                    }, level=logging.ERROR)
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                batch_merged += 1
                batch_archived += outcome

            merged += batch_merged
            archived += batch_archived
            logger.log_compression_event("full_mode.batch_processed", plan_id, details={
                "batch_index": offset // batch_size + 1,
                "batch_size": len(batch),
                "clusters_merged_in_batch": batch_merged,
                "embeddings_archived_in_batch": batch_archived
            })

        return merged, archived, failed

    async def _process_cluster(self, cluster: VectorCluster, user_id: Optional[str], dry_run: bool) -> int:
        await self.merge_cluster(cluster, dry_run=dry_run)
        if dry_run:
            return cluster.size
        return await self.archive_vectors(cluster.member_ids, user_id)

    async def _generate_cluster_summary(self, plan_id: str, contents: List[str]) -> str:
        try:
            result = await self.llm.generate(cluster_summary_prompt(contents), temperature=0.3, max_tokens=500)
            text = (result.text or "").strip()
            if text:
                return text
            logger.log_compression_event("generate_summary_fallback", plan_id, status="degraded", details={
                "reason": "empty summary"
            }, level=logging.WARNING)
        except Exception as e:
            logger.log_compression_event("generate_summary_fallback", plan_id, status="degraded", details={
                "reason": "LLM call failed, using concatenation",
                "error": str(e)
            }, level=logging.WARNING)
        return concatenate_cluster_contents(contents)

    async def _get_eligible_vectors(self, plan_id: str) -> List[MemoryVector]:
        """
        Compression candidates, oldest first.

        The N most recent vectors are protected before the age cutoff is
        applied; vectors tied to recently active conversations are dropped
        after it.
        """
        protected = await self.store.find_recent_ids(plan_id, self.settings.preserve_recent_count)
        eligible = await self.store.find_eligible(plan_id, self.settings.min_age_days, exclude_ids=protected)

        active_refs = await self._active_reference_ids(plan_id)
        if active_refs:
            eligible = [
                v for v in eligible
                if not (v.ref_type in CONVERSATION_REF_TYPES and v.ref_id in active_refs)
            ]

        return self._prepare_vectors(plan_id, eligible)

    def _prepare_vectors(self, plan_id: str, vectors: List[MemoryVector]) -> List[MemoryVector]:
        """Drop vectors outside the dominant dimension and normalize if configured."""
        dimension, histogram = dominant_dimension(vectors)
        if len(histogram) > 1:
            kept = [v for v in vectors if v.dimension == dimension]
            logger.log_compression_event("dimension_mismatch", plan_id, status="degraded", details={
                "dimension": dimension,
                "excluded": len(vectors) - len(kept),
                "histogram": {str(k): v for k, v in histogram.items()}
            }, level=logging.WARNING)
            vectors = kept

        if self.settings.normalize_vectors:
            vectors = [replace(v, vector=normalize_vector(v.vector)) for v in vectors]
        return vectors

    async def _active_reference_ids(self, plan_id: str) -> Set[str]:
        if self.messages_source is None:
            return set()
        since = datetime.now() - timedelta(days=self.settings.active_conversation_days)
        return set(await self.messages_source.get_active_reference_ids(plan_id, since))

    async def _verify_plan(self, plan_id: str, user_id: Optional[str]) -> Optional[Plan]:
        """Resolve the plan; a foreign owner looks the same as a missing plan."""
        if self.plan_source is None:
            return None

        plan = await self.plan_source.get_plan(plan_id)
        if plan is None or plan.is_deleted or (user_id and plan.owner_id != user_id):
            raise NotFoundError(f"Plan {plan_id} not found", details={"plan_id": plan_id})
        return plan

    async def _last_compression(self, plan_id: str) -> Optional[LastCompression]:
        if self.jobs_source is None:
            return None
        job = await self.jobs_source.get_last_completed_job(plan_id, COMPRESSION_JOB_TYPE)
        return LastCompression.from_job(job) if job else None

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.time() - start_time) * 1000)

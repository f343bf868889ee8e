"""
Selects plans that need memory compression and submits background jobs for them.
The scheduler never runs compression itself.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from util.logging import logger
from ..core import heartbeat
from ..core.config import COMPRESSION_JOB_TYPE, COMPRESSION_MODES, CompressionSettings, get_compression_settings
from ..core.errors import ValidationError
from ..core.schema import Plan, SweepReport
from ..core.sources import JobRunner, PlanSource
from ..vector.index import IEmbeddingStore

LIGHT_SWEEP_TASK = "memory_compression_light_sweep"
FULL_SWEEP_TASK = "memory_compression_full_sweep"


class CompressionScheduler:
    """Light sweep for large plans, full sweep for inactive plans, plus a manual trigger."""

    def __init__(self, plan_source: PlanSource, store: IEmbeddingStore, job_runner: JobRunner,
                 settings: Optional[CompressionSettings] = None):
        self.plan_source = plan_source
        self.store = store
        self.job_runner = job_runner
        self.settings = settings or get_compression_settings()

    async def run_light_sweep(self) -> SweepReport:
        """Submit a light compression job for every plan over the archive threshold."""
        report = SweepReport(operation="light_sweep", started_at=datetime.now())
        if not self.settings.enabled:
            return self._disabled(report)

        plans = [plan for plan, _ in await self._plans_over_threshold()]
        return await self._submit_all(report, plans, "light")

    async def run_full_sweep(self) -> SweepReport:
        """Submit a full compression job for every inactive plan that still holds live vectors."""
        report = SweepReport(operation="full_sweep", started_at=datetime.now())
        if not self.settings.enabled:
            return self._disabled(report)

        plans = await self.find_inactive_plans()
        return await self._submit_all(report, plans, "full")

    async def find_plans_needing_compression(self) -> List[Plan]:
        """Plans whose live vector count reaches the archive threshold, largest first."""
        return [plan for plan, _ in await self._plans_over_threshold()]

    async def find_inactive_plans(self) -> List[Plan]:
        cutoff = self._inactive_cutoff()
        inactive = []
        for plan in await self.plan_source.list_plans():
            if plan.is_deleted or not self._is_inactive(plan, cutoff):
                continue
            if await self.store.count_active(plan.id) > 0:
                inactive.append(plan)
        return inactive

    async def trigger_compression_for_plan(self, plan_id: str, user_id: str, mode: Optional[str] = None) -> str:
        """Submit one compression job for a plan; mode defaults to the configured mode."""
        if not plan_id:
            raise ValidationError("plan_id cannot be empty")

        compression_mode = mode or self.settings.default_mode
        if compression_mode not in COMPRESSION_MODES:
            raise ValidationError(f"mode must be one of: {list(COMPRESSION_MODES)}",
                                  details={"mode": compression_mode})

        logger.log_scheduler_event("manual_trigger", details={
            "plan_id": plan_id, "user_id": user_id, "mode": compression_mode
        })
        return await self._schedule_compression_job(plan_id, user_id, compression_mode)

    async def check_plan_needs_compression(self, plan_id: str) -> bool:
        return await self.store.count_active(plan_id) >= self.settings.archive_threshold

    async def check_plan_is_inactive(self, plan_id: str) -> bool:
        plan = await self.plan_source.get_plan(plan_id)
        if plan is None or plan.is_deleted:
            return False
        return self._is_inactive(plan, self._inactive_cutoff())

    def register_heartbeat_tasks(self) -> List[str]:
        """Register both sweeps with the heartbeat ticker."""

        def light_sweep_task():
            asyncio.run(self.run_light_sweep())

        def full_sweep_task():
            asyncio.run(self.run_full_sweep())

        heartbeat.register_task(LIGHT_SWEEP_TASK, self.settings.light_interval_sec, light_sweep_task)
        heartbeat.register_task(FULL_SWEEP_TASK, self.settings.full_interval_sec, full_sweep_task)
        return [LIGHT_SWEEP_TASK, FULL_SWEEP_TASK]

    async def _plans_over_threshold(self) -> List[Tuple[Plan, int]]:
        matched = []
        for plan in await self.plan_source.list_plans():
            if plan.is_deleted:
                continue
            count = await self.store.count_active(plan.id)
            if count >= self.settings.archive_threshold:
                matched.append((plan, count))

        matched.sort(key=lambda item: item[1], reverse=True)
        return matched

    async def _submit_all(self, report: SweepReport, plans: List[Plan], mode: str) -> SweepReport:
        report.plans_matched = len(plans)
        logger.log_scheduler_event(f"{report.operation}.start", details={"plan_count": len(plans)})

        for plan in plans:
            try:
                job_id = await self._schedule_compression_job(plan.id, plan.owner_id, mode)
                report.jobs_submitted += 1
                report.job_ids.append(job_id)
            except Exception as e:
                report.failures += 1
                report.errors.append(f"{plan.id}: {e}")
                logger.log_scheduler_event(f"{report.operation}.plan_failed", status="failed", details={
                    "plan_id": plan.id, "error": str(e)
                }, level=logging.ERROR)

        report.completed_at = datetime.now()
        logger.log_scheduler_event(f"{report.operation}.complete", details={
            "total_plans": report.plans_matched,
            "success_count": report.jobs_submitted,
            "error_count": report.failures
        })
        return report

    async def _schedule_compression_job(self, plan_id: str, user_id: str, mode: str) -> str:
        logger.log_scheduler_event("schedule_compression_job", details={
            "plan_id": plan_id, "user_id": user_id, "mode": mode
        })
        return await self.job_runner.submit(
            plan_id,
            user_id,
            COMPRESSION_JOB_TYPE,
            {"plan_id": plan_id, "mode": mode, "user_id": user_id},
            priority=1 if mode == "full" else 0,
        )

    def _disabled(self, report: SweepReport) -> SweepReport:
        report.completed_at = datetime.now()
        report.metadata["skipped"] = True
        report.metadata["reason"] = "MEMORY_COMPRESSION_ENABLED=false"
        logger.log_scheduler_event(f"{report.operation}.skipped", status="skipped",
                                   details=report.metadata, level=logging.DEBUG)
        return report

    def _inactive_cutoff(self) -> datetime:
        return datetime.now() - timedelta(days=self.settings.inactive_plan_days)

    @staticmethod
    def _is_inactive(plan: Plan, cutoff: datetime) -> bool:
        last_activity = plan.last_activity_at()
        return last_activity is None or last_activity < cutoff

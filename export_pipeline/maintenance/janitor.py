"""Stuck-job janitor — guarantees every job eventually reaches a terminal status.

Jobs left in ``processing`` past the configured timeout belonged to a runner
that crashed or hung; they are forced to ``failed``. Jobs still ``pending``
long after creation were never picked up (for example after a restart); they
are handed to the runner again, whose claim keeps this idempotent.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select

from ..models.base import utcnow
from ..models.export_job import STATUS_PENDING, STATUS_PROCESSING, ExportJob
from ..utils.logging import get_logger

logger = get_logger("maintenance.janitor")

STUCK_ERROR_CODE = "STUCK_TIMEOUT"


class StuckJobJanitor:
    def __init__(
        self,
        db_session_factory,
        job_runner,
        job_timeout_seconds: int = 1800,
        pending_redispatch_seconds: int = 600,
    ) -> None:
        self._session_factory = db_session_factory
        self._runner = job_runner
        self._job_timeout = timedelta(seconds=job_timeout_seconds)
        self._pending_grace = timedelta(seconds=pending_redispatch_seconds)

    async def sweep(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        summary = {"failed": 0, "redispatched": 0, "errors": 0}

        async with self._session_factory() as session:
            stuck = (
                await session.execute(
                    select(ExportJob.id, ExportJob.schedule_id).where(
                        ExportJob.status == STATUS_PROCESSING,
                        ExportJob.started_at < now - self._job_timeout,
                    )
                )
            ).all()

        for job_id, schedule_id in stuck:
            try:
                failed = await self._runner.state.mark_failed(
                    job_id,
                    f"Export did not finish within {int(self._job_timeout.total_seconds())} seconds",
                    STUCK_ERROR_CODE,
                    now=now,
                )
                if not failed:
                    continue
                summary["failed"] += 1
                logger.warning("stuck_job_failed", job_id=job_id)
                if schedule_id is not None:
                    await self._runner.record_schedule_run(schedule_id, job_id, now=now)
            except Exception as e:
                summary["errors"] += 1
                logger.error("stuck_job_fail_error", job_id=job_id, error=str(e))

        summary["redispatched"] = await self.redispatch_pending(older_than=self._pending_grace, now=now)

        if summary["failed"] or summary["redispatched"] or summary["errors"]:
            logger.info("janitor_sweep_complete", summary=summary)
        return summary

    async def redispatch_pending(
        self, older_than: timedelta = timedelta(0), now: Optional[datetime] = None
    ) -> int:
        """Hand pending jobs created before ``now - older_than`` back to the runner."""
        now = now or utcnow()
        async with self._session_factory() as session:
            job_ids = (
                await session.execute(
                    select(ExportJob.id)
                    .where(
                        ExportJob.status == STATUS_PENDING,
                        ExportJob.created_at <= now - older_than,
                    )
                    .order_by(ExportJob.created_at)
                )
            ).scalars().all()

        # Jobs still queued or running on this runner keep their task
        job_ids = [job_id for job_id in job_ids if not self._runner.is_dispatched(job_id)]
        for job_id in job_ids:
            self._runner.dispatch(job_id)
        if job_ids:
            logger.info("pending_jobs_redispatched", count=len(job_ids))
        return len(job_ids)

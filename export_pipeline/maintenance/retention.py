"""Retention reaper — bounds how many export artifacts persist per schedule.

For every schedule the retained set is the union of its in-flight jobs, its
``keep_count`` most recent completed jobs and every job younger than
``keep_days``. Everything else is deleted, artifact first and record second.
If an artifact cannot be removed its record stays untouched and the next pass
tries again.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import delete, or_, select

from ..models.base import utcnow
from ..models.export_job import (
    ACTIVE_STATUSES,
    STATUS_COMPLETED,
    TERMINAL_STATUSES,
    ExportJob,
)
from ..models.scheduled_export import ScheduledExport
from ..utils.logging import get_logger

logger = get_logger("maintenance.retention")


def select_retained(
    jobs: Iterable[ExportJob],
    keep_count: int,
    keep_days: int,
    now: datetime,
) -> set[int]:
    """Ids of the jobs a schedule keeps under its retention policy."""
    jobs = list(jobs)
    cutoff = now - timedelta(days=keep_days)

    retained = {j.id for j in jobs if j.status in ACTIVE_STATUSES}

    completed = sorted(
        (j for j in jobs if j.status == STATUS_COMPLETED),
        key=lambda j: j.created_at,
        reverse=True,
    )
    retained.update(j.id for j in completed[:keep_count])
    retained.update(j.id for j in jobs if j.created_at > cutoff)
    return retained


class RetentionReaper:
    """Deletes export jobs and artifacts that fall outside retention policy."""

    def __init__(self, db_session_factory, artifact_store, config) -> None:
        self._session_factory = db_session_factory
        self._store = artifact_store
        self._config = config

    async def run_cleanup(self, now: Optional[datetime] = None) -> dict:
        """Run one retention pass across every schedule and unscheduled job.

        Returns a summary dict of what was checked and deleted.
        """
        now = now or utcnow()
        summary = {
            "schedules_checked": 0,
            "jobs_deleted": 0,
            "artifacts_deleted": 0,
            "unscheduled_deleted": 0,
            "failures": 0,
        }

        async with self._session_factory() as session:
            schedules = (
                await session.execute(
                    select(ScheduledExport.id, ScheduledExport.keep_count, ScheduledExport.keep_days)
                )
            ).all()

        for schedule_id, keep_count, keep_days in schedules:
            summary["schedules_checked"] += 1
            try:
                await self._reap_schedule(schedule_id, keep_count, keep_days, now, summary)
            except Exception as e:
                summary["failures"] += 1
                logger.error("retention_schedule_failed", schedule_id=schedule_id, error=str(e))

        try:
            await self._reap_unscheduled(now, summary)
        except Exception as e:
            summary["failures"] += 1
            logger.error("retention_unscheduled_failed", error=str(e))

        logger.info("retention_cleanup_complete", summary=summary)
        return summary

    async def reap_schedule(self, schedule_id: int, now: Optional[datetime] = None) -> dict:
        """Apply retention to a single schedule (e.g. right after one of its runs)."""
        now = now or utcnow()
        summary = {"jobs_deleted": 0, "artifacts_deleted": 0, "failures": 0}
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(ScheduledExport.keep_count, ScheduledExport.keep_days).where(
                        ScheduledExport.id == schedule_id
                    )
                )
            ).one_or_none()
        if row is not None:
            await self._reap_schedule(schedule_id, row[0], row[1], now, summary)
        return summary

    async def _reap_schedule(
        self, schedule_id: int, keep_count: int, keep_days: int, now: datetime, summary: dict
    ) -> None:
        async with self._session_factory() as session:
            jobs = (
                await session.execute(
                    select(ExportJob)
                    .where(ExportJob.schedule_id == schedule_id)
                    .order_by(ExportJob.created_at.desc())
                )
            ).scalars().all()

        retained = select_retained(jobs, keep_count, keep_days, now)
        expired = [j for j in jobs if j.id not in retained]
        for job in expired:
            await self._delete_job(job, summary)

        if expired:
            logger.info(
                "retention_schedule_reaped",
                schedule_id=schedule_id,
                retained=len(retained),
                expired=len(expired),
                keep_count=keep_count,
                keep_days=keep_days,
            )

    async def _reap_unscheduled(self, now: datetime, summary: dict) -> None:
        """One-off jobs, and jobs whose schedule was deleted, expire by age alone."""
        retention_days = getattr(self._config, "retention_one_off_days", 7)
        cutoff = now - timedelta(days=retention_days)

        async with self._session_factory() as session:
            jobs = (
                await session.execute(
                    select(ExportJob).where(
                        ExportJob.status.in_(TERMINAL_STATUSES),
                        ExportJob.created_at < cutoff,
                        or_(
                            ExportJob.schedule_id.is_(None),
                            ExportJob.schedule_id.not_in(select(ScheduledExport.id)),
                        ),
                    )
                )
            ).scalars().all()

        before = summary["jobs_deleted"]
        for job in jobs:
            await self._delete_job(job, summary)
        summary["unscheduled_deleted"] += summary["jobs_deleted"] - before
        if jobs:
            logger.info(
                "retention_unscheduled_reaped",
                deleted=summary["jobs_deleted"] - before,
                cutoff_days=retention_days,
            )

    async def _delete_job(self, job: ExportJob, summary: dict) -> bool:
        """Delete the artifact, then the record. The record survives an artifact failure."""
        if job.file_path:
            try:
                self._store.delete(job.file_path)
                summary["artifacts_deleted"] += 1
            except OSError as e:
                summary["failures"] += 1
                logger.warning(
                    "retention_file_delete_failed",
                    job_id=job.id,
                    file_path=job.file_path,
                    error=str(e),
                )
                return False

        try:
            async with self._session_factory() as session:
                # In-flight rows are never deleted, whatever their age
                result = await session.execute(
                    delete(ExportJob).where(
                        ExportJob.id == job.id,
                        ExportJob.status.in_(TERMINAL_STATUSES),
                    )
                )
                await session.commit()
        except Exception as e:
            summary["failures"] += 1
            logger.error("retention_record_delete_failed", job_id=job.id, error=str(e))
            return False

        if result.rowcount:
            summary["jobs_deleted"] += 1
            return True
        return False

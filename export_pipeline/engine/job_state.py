"""Export job state machine — every transition is one conditional UPDATE.

A transition only succeeds when the row is still in an allowed source status
(and, for terminal writes by a runner, still carries that runner's claim
token). Losing a race shows up as ``False``, never as an overwrite, so the
store alone decides who wins without any in-process lock.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import case, select, update

from ..errors import InvalidTransition, NotFound
from ..models.base import utcnow
from ..models.export_job import (
    ACTIVE_STATUSES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    ExportJob,
)
from ..utils.logging import get_logger

logger = get_logger("engine.job_state")

VALID_TRANSITIONS = {
    STATUS_PENDING: [STATUS_PROCESSING, STATUS_CANCELLED],
    STATUS_PROCESSING: [STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED],
    STATUS_COMPLETED: [],
    STATUS_FAILED: [],
    STATUS_CANCELLED: [],
}


def can_transition(current: str, new: str) -> bool:
    return new in VALID_TRANSITIONS.get(current, [])


class JobStateMachine:
    """Applies status transitions to ``export_jobs`` rows."""

    def __init__(self, db_session_factory) -> None:
        self._session_factory = db_session_factory

    async def _conditional_update(self, *conditions, **values) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(ExportJob)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def get_status(self, job_id: int) -> Optional[str]:
        async with self._session_factory() as session:
            return (
                await session.execute(select(ExportJob.status).where(ExportJob.id == job_id))
            ).scalar_one_or_none()

    async def claim_for_processing(
        self, job_id: int, runner_token: str, now: Optional[datetime] = None
    ) -> bool:
        """pending -> processing. Only the caller holding ``runner_token`` may finish the job."""
        claimed = await self._conditional_update(
            ExportJob.id == job_id,
            ExportJob.status == STATUS_PENDING,
            status=STATUS_PROCESSING,
            runner_token=runner_token,
            started_at=now or utcnow(),
        )
        if claimed:
            logger.info("export_job_claimed", job_id=job_id, runner_token=runner_token)
        return claimed

    async def set_total_records(self, job_id: int, runner_token: str, total: int) -> bool:
        return await self._conditional_update(
            ExportJob.id == job_id,
            ExportJob.status == STATUS_PROCESSING,
            ExportJob.runner_token == runner_token,
            total_records=total,
        )

    async def mark_completed(
        self,
        job_id: int,
        runner_token: str,
        file_path: str,
        file_size_bytes: int,
        processing_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """processing -> completed, writing the artifact reference in the same statement."""
        return await self._conditional_update(
            ExportJob.id == job_id,
            ExportJob.status == STATUS_PROCESSING,
            ExportJob.runner_token == runner_token,
            status=STATUS_COMPLETED,
            file_path=file_path,
            file_size_bytes=file_size_bytes,
            processing_ms=processing_ms,
            completed_at=now or utcnow(),
        )

    async def mark_failed(
        self,
        job_id: int,
        message: str,
        code: str,
        runner_token: Optional[str] = None,
        processing_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """processing -> failed.

        Without ``runner_token`` any processing job may be failed; the stuck-job
        janitor uses that path for runners that died mid-flight.
        """
        conditions = [ExportJob.id == job_id, ExportJob.status == STATUS_PROCESSING]
        if runner_token is not None:
            conditions.append(ExportJob.runner_token == runner_token)
        return await self._conditional_update(
            *conditions,
            status=STATUS_FAILED,
            error_message=message,
            error_code=code,
            retry_count=ExportJob.retry_count + 1,
            processing_ms=processing_ms,
            completed_at=now or utcnow(),
        )

    async def cancel(self, job_id: int, now: Optional[datetime] = None) -> None:
        """pending|processing -> cancelled.

        Raises InvalidTransition for terminal jobs; their status is left as is.
        An in-flight runner notices the cancellation at its next status check
        and its terminal write then matches no row.
        """
        cancelled = await self._conditional_update(
            ExportJob.id == job_id,
            ExportJob.status.in_(ACTIVE_STATUSES),
            status=STATUS_CANCELLED,
            cancelled_at=now or utcnow(),
        )
        if cancelled:
            logger.info("export_job_cancelled", job_id=job_id)
            return

        current = await self.get_status(job_id)
        if current is None:
            raise NotFound("Export not found")
        raise InvalidTransition(
            f"Cannot cancel an export in status '{current}'. "
            f"Allowed from: {list(ACTIVE_STATUSES)}"
        )

    async def record_download(self, job_id: int, now: Optional[datetime] = None) -> bool:
        """Annotate a completed job as downloaded; the artifact columns are never touched."""
        now = now or utcnow()
        return await self._conditional_update(
            ExportJob.id == job_id,
            ExportJob.status == STATUS_COMPLETED,
            last_downloaded_at=case(
                (ExportJob.last_downloaded_at.is_(None), now),
                (ExportJob.last_downloaded_at < now, now),
                else_=ExportJob.last_downloaded_at,
            ),
            download_count=ExportJob.download_count + 1,
        )

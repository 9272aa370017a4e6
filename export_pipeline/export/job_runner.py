"""Job runner — executes one export job from pending to a terminal status.

Each job runs as an asyncio background task so submissions return
immediately. Blocking collaborators (record provider, serializer, artifact
writes) run in the default thread executor. The runner re-reads the job's
status after every long step and its terminal write is conditional on its own
claim token, so a cancellation that arrives mid-flight always wins.
"""

import asyncio
import time
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import case, select, update

from ..engine.job_state import JobStateMachine
from ..engine.recurrence import compute_next_run_after
from ..errors import ExecutionError
from ..models.base import utcnow
from ..models.export_job import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    ExportJob,
)
from ..models.scheduled_export import (
    LAST_STATUS_CANCELLED,
    LAST_STATUS_FAILURE,
    LAST_STATUS_SUCCESS,
    ScheduledExport,
)
from ..utils.logging import get_logger
from .artifact_store import ArtifactRef, LocalArtifactStore
from .record_provider import RecordProvider
from .serializers import get_serializer

logger = get_logger("export.job_runner")

BOOKKEEPING_ATTEMPTS = 3


def build_columns(fields: list[dict], include_related: list[str]) -> list[tuple[str, str]]:
    """Column list as (key, label): selected fields in order, then related collections."""
    columns = [(f["name"], f.get("label") or f["name"]) for f in fields]
    selected = {key for key, _ in columns}
    for flag in include_related:
        if flag not in selected:
            columns.append((flag, flag.replace("_", " ").title()))
    return columns


def project_records(records: list[dict], columns: list[tuple[str, str]]) -> list[dict]:
    return [{key: record.get(key) for key, _ in columns} for record in records]


class _Cancelled(Exception):
    pass


class JobRunner:
    """Runs export jobs against a record provider, serializer and artifact store."""

    def __init__(
        self,
        db_session_factory,
        record_provider: RecordProvider,
        artifact_store: LocalArtifactStore,
        notifier=None,
        max_concurrent_jobs: int = 4,
        schedule_timezone: str = "UTC",
    ) -> None:
        self._session_factory = db_session_factory
        self._state = JobStateMachine(db_session_factory)
        self._provider = record_provider
        self._store = artifact_store
        self._notifier = notifier
        self._semaphore = asyncio.Semaphore(max_concurrent_jobs)
        self._schedule_timezone = schedule_timezone
        self._tasks: set[asyncio.Task] = set()
        # job id -> task, while the job is queued on the semaphore or running
        self._dispatched: dict[int, asyncio.Task] = {}

    @property
    def state(self) -> JobStateMachine:
        return self._state

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ── Dispatch ───────────────────────────────────────────────────────────

    def dispatch(self, job_id: int) -> asyncio.Task:
        """Start a job in the background and return immediately.

        A job that is already queued or running keeps its existing task.
        """
        existing = self._dispatched.get(job_id)
        if existing is not None and not existing.done():
            logger.debug("export_job_already_dispatched", job_id=job_id)
            return existing
        task = asyncio.create_task(self._run_bounded(job_id), name=f"export-job-{job_id}")
        self._tasks.add(task)
        self._dispatched[job_id] = task
        task.add_done_callback(lambda t: self._forget(job_id, t))
        return task

    def _forget(self, job_id: int, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._dispatched.get(job_id) is task:
            del self._dispatched[job_id]

    def is_dispatched(self, job_id: int) -> bool:
        task = self._dispatched.get(job_id)
        return task is not None and not task.done()

    async def _run_bounded(self, job_id: int) -> Optional[str]:
        async with self._semaphore:
            try:
                return await self.run(job_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # The job stays in processing; the janitor fails it after the timeout
                logger.error("export_job_crashed", job_id=job_id, error=str(exc), exc_info=True)
                return None

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait for every dispatched job to finish."""
        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=timeout)

    async def shutdown(self, timeout: float = 5.0) -> None:
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        logger.info("job_runner_stopped", abandoned=len(still_running))

    # ── Execution ──────────────────────────────────────────────────────────

    async def _load_job(self, job_id: int) -> Optional[ExportJob]:
        async with self._session_factory() as session:
            return (
                await session.execute(select(ExportJob).where(ExportJob.id == job_id))
            ).scalar_one_or_none()

    async def _check_not_cancelled(self, job_id: int) -> None:
        if await self._state.get_status(job_id) == STATUS_CANCELLED:
            raise _Cancelled()

    async def run(self, job_id: int) -> Optional[str]:
        """Execute one job. Returns its final status, or None if another runner owns it."""
        runner_token = uuid.uuid4().hex
        if not await self._state.claim_for_processing(job_id, runner_token):
            status = await self._state.get_status(job_id)
            logger.info("export_job_not_claimable", job_id=job_id, status=status)
            if status == STATUS_CANCELLED:
                job = await self._load_job(job_id)
                if job is not None and job.schedule_id is not None:
                    await self.record_schedule_run(job.schedule_id, job_id)
            return None

        job = await self._load_job(job_id)
        loop = asyncio.get_running_loop()
        started = time.monotonic()
        artifact: Optional[ArtifactRef] = None
        stage = "prepare"
        final_status: Optional[str] = None

        try:
            columns = build_columns(job.fields, job.include_related)
            if not columns:
                raise ExecutionError("No fields selected for export", code="NO_FIELDS")
            serializer = get_serializer(job.format)

            stage = "query"
            records = await loop.run_in_executor(
                None, self._provider.fetch, job.filters, job.sort, job.include_related
            )
            await self._state.set_total_records(job_id, runner_token, len(records))
            await self._check_not_cancelled(job_id)

            stage = "serialize"
            rows = project_records(records, columns)
            data = await loop.run_in_executor(None, serializer.serialize, rows, columns)
            await self._check_not_cancelled(job_id)

            stage = "write"
            artifact = await loop.run_in_executor(None, self._store.write, job.filename, data)

            elapsed_ms = int((time.monotonic() - started) * 1000)
            if await self._state.mark_completed(
                job_id, runner_token, artifact.path, artifact.size_bytes, processing_ms=elapsed_ms
            ):
                final_status = STATUS_COMPLETED
                logger.info(
                    "export_completed",
                    job_id=job_id,
                    export_id=job.export_id,
                    format=job.format,
                    file_path=artifact.path,
                    file_size=artifact.size_bytes,
                    total_records=len(records),
                    processing_ms=elapsed_ms,
                )
            else:
                # Cancelled between the last check and the terminal write
                self._discard_artifact(artifact)
                final_status = await self._state.get_status(job_id)
                logger.info("export_result_discarded", job_id=job_id, status=final_status)

        except _Cancelled:
            self._discard_artifact(artifact)
            final_status = STATUS_CANCELLED
            logger.info("export_cancelled_mid_flight", job_id=job_id, stage=stage)

        except Exception as exc:
            self._discard_artifact(artifact)
            code = exc.code if isinstance(exc, ExecutionError) else self._error_code(stage)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.error("export_failed", job_id=job_id, stage=stage, code=code, error=str(exc))
            if await self._state.mark_failed(
                job_id, str(exc) or exc.__class__.__name__, code,
                runner_token=runner_token, processing_ms=elapsed_ms,
            ):
                final_status = STATUS_FAILED
            else:
                final_status = await self._state.get_status(job_id)

        if job.schedule_id is not None:
            await self.record_schedule_run(job.schedule_id, job_id)
        return final_status

    @staticmethod
    def _error_code(stage: str) -> str:
        return {
            "query": "QUERY_FAILED",
            "serialize": "SERIALIZATION_FAILED",
            "write": "ARTIFACT_WRITE_FAILED",
        }.get(stage, "EXECUTION_ERROR")

    def _discard_artifact(self, artifact: Optional[ArtifactRef]) -> None:
        if artifact is None:
            return
        try:
            self._store.delete(artifact.path)
        except OSError as exc:
            logger.warning("artifact_discard_failed", path=artifact.path, error=str(exc))

    # ── Schedule bookkeeping ───────────────────────────────────────────────

    async def record_schedule_run(
        self, schedule_id: int, job_id: int, now: Optional[datetime] = None
    ) -> bool:
        """Fold a finished job into its schedule's run stats and advance next_run_at.

        Retried a few times; a skipped update would leave the schedule stalled.
        """
        for attempt in range(1, BOOKKEEPING_ATTEMPTS + 1):
            try:
                return await self._record_schedule_run(schedule_id, job_id, now or utcnow())
            except Exception as exc:
                logger.error(
                    "schedule_bookkeeping_failed",
                    schedule_id=schedule_id,
                    job_id=job_id,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt < BOOKKEEPING_ATTEMPTS:
                    await asyncio.sleep(0.1 * attempt)
        return False

    async def _record_schedule_run(self, schedule_id: int, job_id: int, now: datetime) -> bool:
        async with self._session_factory() as session:
            job = (
                await session.execute(select(ExportJob).where(ExportJob.id == job_id))
            ).scalar_one_or_none()
            schedule = (
                await session.execute(
                    select(ScheduledExport).where(ScheduledExport.id == schedule_id)
                )
            ).scalar_one_or_none()
            if job is None or schedule is None:
                logger.warning(
                    "schedule_bookkeeping_skipped", schedule_id=schedule_id, job_id=job_id
                )
                return False

            values = {"last_run_at": now}
            if job.status == STATUS_COMPLETED:
                values.update(
                    run_count=ScheduledExport.run_count + 1,
                    success_count=ScheduledExport.success_count + 1,
                    last_status=LAST_STATUS_SUCCESS,
                    last_error_message=None,
                    last_error_code=None,
                    last_error_at=None,
                )
            elif job.status == STATUS_FAILED:
                values.update(
                    run_count=ScheduledExport.run_count + 1,
                    failure_count=ScheduledExport.failure_count + 1,
                    last_status=LAST_STATUS_FAILURE,
                    last_error_message=job.error_message,
                    last_error_code=job.error_code,
                    last_error_at=now,
                )
            elif job.status == STATUS_CANCELLED:
                values["last_status"] = LAST_STATUS_CANCELLED
            else:
                return False

            candidate = compute_next_run_after(
                schedule.frequency,
                schedule.cron_expression,
                job.scheduled_for or now,
                now,
                self._schedule_timezone,
                cadence_anchor=schedule.cadence_anchor_at,
            )
            # next_run_at never moves backwards
            values["next_run_at"] = case(
                (ScheduledExport.next_run_at < candidate, candidate),
                else_=ScheduledExport.next_run_at,
            )

            await session.execute(
                update(ScheduledExport)
                .where(ScheduledExport.id == schedule_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            job_dict = job.to_dict()
            job_status = job.status

        # Counters are committed; nothing below may trigger a retry
        try:
            async with self._session_factory() as session:
                schedule = (
                    await session.execute(
                        select(ScheduledExport).where(ScheduledExport.id == schedule_id)
                    )
                ).scalar_one()
                schedule_dict = schedule.to_dict()
            logger.info(
                "schedule_run_recorded",
                schedule_id=schedule_id,
                job_id=job_id,
                status=job_status,
                next_run_at=schedule_dict["next_run_at"],
            )
            if self._notifier is not None and job_status in (STATUS_COMPLETED, STATUS_FAILED):
                status = "success" if job_status == STATUS_COMPLETED else "failure"
                await self._notifier.notify(schedule_dict, job_dict, status)
        except Exception as exc:
            logger.error("schedule_notification_failed", schedule_id=schedule_id, error=str(exc))
        return True

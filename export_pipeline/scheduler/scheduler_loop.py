"""Scheduler loop — turns due schedule definitions into pending export jobs.

The durable store is the queue. A due schedule is claimed with one
conditional UPDATE that advances ``next_run_at`` only if it still holds the
value this tick observed, so concurrent ticks (or processes) cannot both win
the same due instant.
"""

import asyncio
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update

from ..engine.job_factory import new_export_job
from ..engine.recurrence import compute_next_run_after
from ..errors import StaleClaim
from ..models.base import utcnow
from ..models.scheduled_export import ScheduledExport
from ..utils.logging import get_logger

logger = get_logger("scheduler.scheduler_loop")


class SchedulerLoop:
    """Periodically claims due schedules and dispatches their jobs."""

    def __init__(
        self,
        db_session_factory,
        job_runner,
        interval_seconds: int = 60,
        schedule_timezone: str = "UTC",
        batch_size: int = 100,
    ) -> None:
        self._session_factory = db_session_factory
        self._runner = job_runner
        self._interval = interval_seconds
        self._timezone = schedule_timezone
        self._batch_size = batch_size
        self._task: Optional[asyncio.Task] = None
        self.running = False
        self.last_tick_at: Optional[datetime] = None

    # ── Lifecycle ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self.running:
            logger.info("scheduler_already_running")
            return
        self.running = True
        logger.info("scheduler_starting", interval_seconds=self._interval)
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        self.running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped")

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }

    async def _poll_loop(self) -> None:
        while self.running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_tick_error", error=str(e), exc_info=True)
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break

    # ── Tick ───────────────────────────────────────────────────────────────

    async def tick(self, now: Optional[datetime] = None) -> list[int]:
        """Claim every due schedule once and dispatch a job for each claim.

        Returns the ids of the jobs created during this tick.
        """
        now = now or utcnow()
        self.last_tick_at = now

        async with self._session_factory() as session:
            due = (
                await session.execute(
                    select(ScheduledExport)
                    .where(
                        ScheduledExport.is_active.is_(True),
                        ScheduledExport.next_run_at <= now,
                    )
                    .order_by(ScheduledExport.next_run_at)
                    .limit(self._batch_size)
                )
            ).scalars().all()

        if not due:
            return []
        logger.info("scheduler_due_schedules", count=len(due))

        job_ids = []
        for schedule in due:
            try:
                job_id = await self.fire(schedule, now)
            except StaleClaim:
                logger.debug("schedule_claim_lost", schedule_id=schedule.id)
                continue
            except Exception as e:
                logger.error("schedule_fire_failed", schedule_id=schedule.id, error=str(e))
                continue
            job_ids.append(job_id)
        return job_ids

    async def fire(self, schedule: ScheduledExport, now: datetime) -> int:
        """Claim one observed due schedule, create its job and dispatch it."""
        due_at = schedule.next_run_at
        claimed_next = await self.claim(schedule, now)
        try:
            job_id = await self._create_job(schedule, due_at)
        except Exception:
            await self.release(schedule.id, due_at, claimed_next)
            raise
        self._runner.dispatch(job_id)
        logger.info(
            "schedule_fired",
            schedule_id=schedule.id,
            job_id=job_id,
            due_at=due_at.isoformat(),
            next_run_at=claimed_next.isoformat(),
        )
        return job_id

    async def claim(self, schedule: ScheduledExport, now: datetime) -> datetime:
        """Atomically advance ``next_run_at`` past ``now``.

        Raises StaleClaim if the row no longer holds the observed value or
        was deactivated in the meantime.
        """
        observed = schedule.next_run_at
        claimed_next = compute_next_run_after(
            schedule.frequency,
            schedule.cron_expression,
            observed,
            now,
            self._timezone,
            cadence_anchor=schedule.cadence_anchor_at,
        )
        async with self._session_factory() as session:
            result = await session.execute(
                update(ScheduledExport)
                .where(
                    ScheduledExport.id == schedule.id,
                    ScheduledExport.is_active.is_(True),
                    ScheduledExport.next_run_at == observed,
                )
                .values(next_run_at=claimed_next)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            raise StaleClaim(f"Schedule {schedule.id} was already claimed")
        logger.debug(
            "schedule_claimed",
            schedule_id=schedule.id,
            observed=observed.isoformat(),
            next_run_at=claimed_next.isoformat(),
        )
        return claimed_next

    async def release(self, schedule_id: int, due_at: datetime, claimed_next: datetime) -> bool:
        """Give a claim back so the due instant fires on a later tick."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(ScheduledExport)
                    .where(
                        ScheduledExport.id == schedule_id,
                        ScheduledExport.next_run_at == claimed_next,
                    )
                    .values(next_run_at=due_at)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except Exception as e:
            logger.error("schedule_claim_release_failed", schedule_id=schedule_id, error=str(e))
            return False
        released = result.rowcount == 1
        logger.warning("schedule_claim_released", schedule_id=schedule_id, released=released)
        return released

    async def _create_job(self, schedule: ScheduledExport, scheduled_for: Optional[datetime]) -> int:
        job = new_export_job(
            owner_id=schedule.owner_id,
            fmt=schedule.format,
            fields=schedule.fields,
            include_related=schedule.include_related,
            filters=schedule.filters,
            sort=schedule.sort,
            template_id=schedule.template_id,
            schedule_id=schedule.id,
            scheduled_for=scheduled_for,
            filename_prefix=schedule.name,
        )
        async with self._session_factory() as session:
            session.add(job)
            await session.commit()
            return job.id

    async def run_now(self, schedule: ScheduledExport) -> int:
        """Create and dispatch a job for a schedule outside its cadence (manual run)."""
        job_id = await self._create_job(schedule, None)
        self._runner.dispatch(job_id)
        logger.info("schedule_run_manually", schedule_id=schedule.id, job_id=job_id)
        return job_id

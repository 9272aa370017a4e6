"""Tests for RetentionReaper — per-schedule keep_count/keep_days enforcement."""

import os
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from export_pipeline.maintenance.retention import RetentionReaper, select_retained
from export_pipeline.models.export_job import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    ExportJob,
)

NOW = datetime(2024, 6, 15, 12, 0, 0)


def _make_config(one_off_days=7):
    config = MagicMock()
    config.retention_one_off_days = one_off_days
    return config


def _job(job_id, age_days, status=STATUS_COMPLETED):
    return SimpleNamespace(id=job_id, status=status, created_at=NOW - timedelta(days=age_days))


async def _remaining_ids(session_factory):
    async with session_factory() as session:
        return set((await session.execute(select(ExportJob.id))).scalars().all())


class TestSelectRetained:
    def test_union_of_count_and_age(self):
        jobs = [_job(age, age) for age in (0, 1, 3, 10, 20)]
        assert select_retained(jobs, keep_count=2, keep_days=5, now=NOW) == {0, 1, 3}

    def test_keep_count_alone(self):
        jobs = [_job(age, age) for age in (40, 50, 60)]
        assert select_retained(jobs, keep_count=1, keep_days=30, now=NOW) == {40}

    def test_in_flight_always_retained(self):
        jobs = [_job(1, 400, STATUS_PENDING), _job(2, 400, STATUS_PROCESSING), _job(3, 400)]
        assert select_retained(jobs, keep_count=1, keep_days=1, now=NOW) == {1, 2, 3}

    def test_failed_and_cancelled_only_kept_by_age(self):
        jobs = [_job(1, 10), _job(2, 8, STATUS_FAILED), _job(3, 2, STATUS_CANCELLED)]
        assert select_retained(jobs, keep_count=5, keep_days=5, now=NOW) == {1, 3}

    def test_age_cutoff_is_exclusive(self):
        jobs = [_job(1, 5), _job(2, 100)]
        # Exactly keep_days old is expired; only keep_count holds it
        assert select_retained(jobs, keep_count=0, keep_days=5, now=NOW) == set()


class TestReaper:
    @pytest.mark.asyncio
    async def test_expired_jobs_and_artifacts_are_deleted(
        self, session_factory, artifact_store, make_job, make_schedule
    ):
        schedule = await make_schedule(keep_count=2, keep_days=5)
        jobs = {}
        for age in (0, 1, 3, 10, 20):
            ref = artifact_store.write(f"run_{age}.csv", b"id\n1\n")
            jobs[age] = await make_job(
                schedule_id=schedule.id,
                status=STATUS_COMPLETED,
                file_path=ref.path,
                file_size_bytes=ref.size_bytes,
                created_at=NOW - timedelta(days=age),
            )

        reaper = RetentionReaper(session_factory, artifact_store, _make_config())
        summary = await reaper.run_cleanup(now=NOW)

        assert summary["schedules_checked"] == 1
        assert summary["jobs_deleted"] == 2
        assert summary["artifacts_deleted"] == 2
        assert summary["failures"] == 0
        assert await _remaining_ids(session_factory) == {jobs[a].id for a in (0, 1, 3)}
        assert not os.path.exists(jobs[10].file_path)
        assert os.path.exists(jobs[0].file_path)

    @pytest.mark.asyncio
    async def test_in_flight_job_survives_any_age(self, session_factory, artifact_store, make_job, make_schedule):
        schedule = await make_schedule(keep_count=1, keep_days=1)
        stuck = await make_job(
            schedule_id=schedule.id, status=STATUS_PROCESSING, created_at=NOW - timedelta(days=90)
        )
        reaper = RetentionReaper(session_factory, artifact_store, _make_config())

        await reaper.run_cleanup(now=NOW)
        assert stuck.id in await _remaining_ids(session_factory)

    @pytest.mark.asyncio
    async def test_artifact_delete_failure_keeps_record(self, session_factory, make_job, make_schedule):
        schedule = await make_schedule(keep_count=1, keep_days=1)
        await make_job(schedule_id=schedule.id, status=STATUS_COMPLETED, file_path="/x/new.csv", created_at=NOW)
        old = await make_job(
            schedule_id=schedule.id,
            status=STATUS_COMPLETED,
            file_path="/x/old.csv",
            created_at=NOW - timedelta(days=30),
        )
        store = MagicMock()
        store.delete.side_effect = PermissionError("read-only filesystem")
        reaper = RetentionReaper(session_factory, store, _make_config())

        summary = await reaper.run_cleanup(now=NOW)

        assert summary["failures"] == 1
        assert summary["jobs_deleted"] == 0
        assert old.id in await _remaining_ids(session_factory)
        store.delete.assert_called_once_with("/x/old.csv")

        # Next pass retries once the store recovers
        store.delete.side_effect = None
        summary = await reaper.run_cleanup(now=NOW)
        assert summary["jobs_deleted"] == 1
        assert old.id not in await _remaining_ids(session_factory)

    @pytest.mark.asyncio
    async def test_unscheduled_and_orphaned_jobs_expire_by_age(
        self, session_factory, artifact_store, make_job
    ):
        old_one_off = await make_job(status=STATUS_COMPLETED, created_at=NOW - timedelta(days=10))
        recent_one_off = await make_job(status=STATUS_FAILED, created_at=NOW - timedelta(days=2))
        orphan = await make_job(schedule_id=999, status=STATUS_CANCELLED, created_at=NOW - timedelta(days=10))
        old_pending = await make_job(status=STATUS_PENDING, created_at=NOW - timedelta(days=30))

        reaper = RetentionReaper(session_factory, artifact_store, _make_config(one_off_days=7))
        summary = await reaper.run_cleanup(now=NOW)

        assert summary["unscheduled_deleted"] == 2
        remaining = await _remaining_ids(session_factory)
        assert old_one_off.id not in remaining
        assert orphan.id not in remaining
        assert recent_one_off.id in remaining
        assert old_pending.id in remaining

    @pytest.mark.asyncio
    async def test_reap_single_schedule(self, session_factory, artifact_store, make_job, make_schedule):
        schedule = await make_schedule(keep_count=1, keep_days=1)
        keep = await make_job(schedule_id=schedule.id, status=STATUS_COMPLETED, created_at=NOW)
        drop = await make_job(schedule_id=schedule.id, status=STATUS_COMPLETED, created_at=NOW - timedelta(days=3))

        reaper = RetentionReaper(session_factory, artifact_store, _make_config())
        summary = await reaper.reap_schedule(schedule.id, now=NOW)

        assert summary["jobs_deleted"] == 1
        remaining = await _remaining_ids(session_factory)
        assert keep.id in remaining and drop.id not in remaining

"""Shared test fixtures — file-backed SQLite store, row factories, fake runner."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from export_pipeline.export.artifact_store import LocalArtifactStore
from export_pipeline.models.base import Base, dump_json
from export_pipeline.models.export_job import STATUS_PENDING, ExportJob
from export_pipeline.models.scheduled_export import ScheduledExport

NOW = datetime(2024, 6, 15, 12, 0, 0)

DEFAULT_FIELDS = [{"name": "id", "label": "ID"}, {"name": "name", "label": "Name"}]


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database file per test (separate connections, real locking)."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'exports.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def artifact_store(tmp_path):
    return LocalArtifactStore(export_dir=str(tmp_path / "exports"))


@pytest.fixture
def fake_runner():
    """Stands in for JobRunner where only dispatch() is observed."""
    runner = MagicMock()
    runner.dispatch = MagicMock()
    return runner


@pytest.fixture
def make_job(session_factory):
    """Insert an export job row directly. Returns the committed ExportJob."""
    counter = {"n": 0}

    async def _make(**overrides) -> ExportJob:
        counter["n"] += 1
        values = {
            "export_id": f"job{counter['n']:04d}",
            "owner_id": "owner-1",
            "filename": f"records_export_{counter['n']}.csv",
            "format": "csv",
            "fields_json": dump_json(DEFAULT_FIELDS),
            "include_related_json": dump_json([]),
            "filters_json": dump_json({}),
            "sort_json": dump_json({}),
            "status": STATUS_PENDING,
            "retry_count": 0,
            "download_count": 0,
            "created_at": NOW,
        }
        values.update(overrides)
        job = ExportJob(**values)
        async with session_factory() as session:
            session.add(job)
            await session.commit()
        return job

    return _make


@pytest.fixture
def make_schedule(session_factory):
    """Insert a scheduled export row directly. Returns the committed ScheduledExport."""
    counter = {"n": 0}

    async def _make(**overrides) -> ScheduledExport:
        counter["n"] += 1
        values = {
            "owner_id": "owner-1",
            "name": f"Schedule {counter['n']}",
            "format": "csv",
            "fields_json": dump_json(DEFAULT_FIELDS),
            "include_related_json": dump_json([]),
            "filters_json": dump_json({}),
            "sort_json": dump_json({}),
            "frequency": "daily",
            "next_run_at": NOW,
            "is_active": True,
            "keep_count": 10,
            "keep_days": 30,
            "notifications_json": dump_json({}),
            "run_count": 0,
            "success_count": 0,
            "failure_count": 0,
            "created_at": NOW,
            "updated_at": NOW,
        }
        values.update(overrides)
        schedule = ScheduledExport(**values)
        async with session_factory() as session:
            session.add(schedule)
            await session.commit()
        return schedule

    return _make

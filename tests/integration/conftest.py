"""Integration test fixtures — app over a temporary SQLite file, async client, owner headers."""

import os
import shutil
import tempfile

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

# Force test config BEFORE any app imports
_TMP_DIR = tempfile.mkdtemp(prefix="export-pipeline-it-")
_DB_PATH = os.path.join(_TMP_DIR, "exports.db")
os.environ["DEBUG"] = "false"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["LOG_DIR"] = os.path.join(_TMP_DIR, "logs")
os.environ["EXPORT_DIR"] = os.path.join(_TMP_DIR, "exports")
os.environ["SCHEDULER_ENABLED"] = "false"

import export_pipeline.database as db_mod
import export_pipeline.dependencies as dep_mod
from export_pipeline.export.record_provider import StaticRecordProvider

SAMPLE_RECORDS = [
    {"id": 1, "name": "Ada Lovelace", "email": "ada@example.com", "status": "active"},
    {"id": 2, "name": "Alan Turing", "email": "alan@example.com", "status": "active"},
    {"id": 3, "name": "Grace Hopper", "email": "grace@example.com", "status": "inactive"},
]


def _reset_singletons():
    """Reset all module-level singletons so each test session starts clean."""
    db_mod._engine = None
    db_mod._session_factory = None
    dep_mod._config_instance = None
    dep_mod._artifact_store = None
    dep_mod._record_provider = None
    dep_mod._notifier = None
    dep_mod._job_runner = None
    dep_mod._scheduler = None
    dep_mod._retention_reaper = None
    dep_mod._janitor = None
    dep_mod._template_service = None
    dep_mod._export_service = None
    dep_mod._schedule_service = None


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def test_app():
    """Create the test app against a temporary database file."""
    _reset_singletons()

    engine = create_async_engine(
        os.environ["DATABASE_URL"],
        echo=False,
        connect_args={"timeout": 30},
    )

    # Inject into database module BEFORE app import
    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, expire_on_commit=False)

    dep_mod.get_app_config()
    dep_mod.set_record_provider(StaticRecordProvider(SAMPLE_RECORDS))

    from export_pipeline.main import app
    from export_pipeline.models.base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield app

    await dep_mod.get_job_runner().shutdown(timeout=5.0)
    await engine.dispose()
    _reset_singletons()
    shutil.rmtree(_TMP_DIR, ignore_errors=True)


@pytest_asyncio.fixture(loop_scope="session")
async def client(test_app):
    """Async HTTP client for testing."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def owner_headers():
    return {"X-Owner-ID": "owner-1"}


@pytest.fixture
def other_owner_headers():
    return {"X-Owner-ID": "owner-2"}


@pytest_asyncio.fixture(loop_scope="session")
async def wait_for_jobs(test_app):
    """Block until every dispatched export job has finished."""

    async def _wait():
        await dep_mod.get_job_runner().wait_idle(timeout=10.0)

    return _wait

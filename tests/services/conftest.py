"""Service-layer fixtures."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from export_pipeline.engine.job_state import JobStateMachine
from export_pipeline.scheduler.scheduler_loop import SchedulerLoop
from export_pipeline.services.export_service import ExportService
from export_pipeline.services.schedule_service import ScheduleService
from export_pipeline.services.template_service import TemplateService


@pytest.fixture
def service_runner(session_factory):
    runner = MagicMock()
    runner.state = JobStateMachine(session_factory)
    runner.dispatch = MagicMock()
    return runner


@pytest.fixture
def template_service(session_factory):
    return TemplateService(session_factory)


@pytest.fixture
def export_service(session_factory, service_runner, artifact_store, template_service):
    return ExportService(session_factory, service_runner, artifact_store, template_service)


@pytest.fixture
def schedule_service(session_factory, service_runner, template_service):
    config = SimpleNamespace(
        schedule_timezone="UTC",
        retention_default_keep_count=10,
        retention_default_keep_days=30,
    )
    scheduler = SchedulerLoop(session_factory, service_runner)
    return ScheduleService(session_factory, scheduler, template_service, config)

"""FastAPI dependency injection providers."""

from fastapi import Header, HTTPException, status

from .config import ExportPipelineConfig, get_config
from .database import get_session_factory
from .utils.logging import get_logger

_dep_logger = get_logger("dependencies")

_config_instance: ExportPipelineConfig | None = None
_artifact_store = None
_record_provider = None
_notifier = None
_job_runner = None
_scheduler = None
_retention_reaper = None
_janitor = None
_template_service = None
_export_service = None
_schedule_service = None


def get_app_config() -> ExportPipelineConfig:
    """Get the application config singleton."""
    global _config_instance
    if _config_instance is None:
        _config_instance = get_config()
    return _config_instance


async def get_owner_id(x_owner_id: str | None = Header(default=None)) -> str:
    """Resolve the requesting owner from the X-Owner-ID header.

    Authentication lives in front of this service; it forwards the verified
    owner identity in this header.
    """
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Owner-ID header",
        )
    return x_owner_id.strip()


def get_artifact_store():
    """Get the artifact store singleton."""
    global _artifact_store
    if _artifact_store is None:
        from .export.artifact_store import LocalArtifactStore
        config = get_app_config()
        _artifact_store = LocalArtifactStore(export_dir=config.export_dir)
    return _artifact_store


def get_record_provider():
    """Get the record provider singleton. Host applications replace it via set_record_provider()."""
    global _record_provider
    if _record_provider is None:
        from .export.record_provider import StaticRecordProvider
        _record_provider = StaticRecordProvider()
    return _record_provider


def set_record_provider(provider) -> None:
    """Install the record source exports read from. Must run before the runner is created."""
    global _record_provider
    if _job_runner is not None:
        _dep_logger.warning("record_provider_replaced_after_runner_start")
    _record_provider = provider


def get_notifier():
    """Get the export notifier singleton."""
    global _notifier
    if _notifier is None:
        from .notifications.notifier import ExportNotifier
        config = get_app_config()
        _notifier = ExportNotifier(smtp_config=config.smtp_config)
    return _notifier


def get_job_runner():
    """Get the job runner singleton."""
    global _job_runner
    if _job_runner is None:
        from .export.job_runner import JobRunner
        config = get_app_config()
        factory = get_session_factory(config)
        _job_runner = JobRunner(
            db_session_factory=factory,
            record_provider=get_record_provider(),
            artifact_store=get_artifact_store(),
            notifier=get_notifier(),
            max_concurrent_jobs=config.max_concurrent_jobs,
            schedule_timezone=config.schedule_timezone,
        )
    return _job_runner


def get_scheduler():
    """Get the scheduler loop singleton."""
    global _scheduler
    if _scheduler is None:
        from .scheduler.scheduler_loop import SchedulerLoop
        config = get_app_config()
        factory = get_session_factory(config)
        _scheduler = SchedulerLoop(
            db_session_factory=factory,
            job_runner=get_job_runner(),
            interval_seconds=config.scheduler_interval_seconds,
            schedule_timezone=config.schedule_timezone,
        )
    return _scheduler


def get_retention_reaper():
    """Get the retention reaper singleton."""
    global _retention_reaper
    if _retention_reaper is None:
        from .maintenance.retention import RetentionReaper
        config = get_app_config()
        factory = get_session_factory(config)
        _retention_reaper = RetentionReaper(
            db_session_factory=factory,
            artifact_store=get_artifact_store(),
            config=config,
        )
    return _retention_reaper


def get_janitor():
    """Get the stuck-job janitor singleton."""
    global _janitor
    if _janitor is None:
        from .maintenance.janitor import StuckJobJanitor
        config = get_app_config()
        factory = get_session_factory(config)
        _janitor = StuckJobJanitor(
            db_session_factory=factory,
            job_runner=get_job_runner(),
            job_timeout_seconds=config.job_timeout_seconds,
            pending_redispatch_seconds=config.pending_redispatch_seconds,
        )
    return _janitor


def get_template_service():
    """Get the template service singleton."""
    global _template_service
    if _template_service is None:
        from .services.template_service import TemplateService
        config = get_app_config()
        _template_service = TemplateService(db_session_factory=get_session_factory(config))
    return _template_service


def get_export_service():
    """Get the export service singleton."""
    global _export_service
    if _export_service is None:
        from .services.export_service import ExportService
        config = get_app_config()
        _export_service = ExportService(
            db_session_factory=get_session_factory(config),
            job_runner=get_job_runner(),
            artifact_store=get_artifact_store(),
            template_service=get_template_service(),
        )
    return _export_service


def get_schedule_service():
    """Get the schedule service singleton."""
    global _schedule_service
    if _schedule_service is None:
        from .services.schedule_service import ScheduleService
        config = get_app_config()
        _schedule_service = ScheduleService(
            db_session_factory=get_session_factory(config),
            scheduler=get_scheduler(),
            template_service=get_template_service(),
            config=config,
        )
    return _schedule_service

"""Export pipeline — export job lifecycle and recurring export scheduling.

FastAPI entry point with lifespan management, background loops, and CORS.
"""

import asyncio
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.router import api_router
from .config import get_config
from .database import close_engine, create_tables
from .dependencies import (
    get_janitor,
    get_job_runner,
    get_retention_reaper,
    get_scheduler,
)
from .export.serializers import supported_formats
from .middleware.error_handler import register_error_handlers
from .middleware.request_id import RequestIDMiddleware
from .utils.logging import get_logger, setup_logging

APP_VERSION = "1.0.0"

config = get_config()
setup_logging(
    debug=config.debug,
    log_dir=config.log_dir,
    log_max_bytes=config.log_max_bytes,
    log_backup_count=config.log_backup_count,
)
logger = get_logger("export_pipeline.main")

# Task registry: name -> {task, factory, restarts, max_restarts}
_task_registry: dict[str, dict] = {}

HEALTH_MONITOR_INTERVAL = 60


def _register_task(name: str, coro_factory, max_restarts: int = 3):
    """Register and start a background task with auto-restart capability."""
    task = asyncio.create_task(coro_factory())
    _task_registry[name] = {
        "task": task,
        "factory": coro_factory,
        "restarts": 0,
        "max_restarts": max_restarts,
    }
    return task


def _restart_dead_tasks() -> list[str]:
    """Recreate registered loops that exited unexpectedly, up to their restart budget."""
    restarted = []
    for name, entry in _task_registry.items():
        task = entry["task"]
        if name == "health_monitor" or not task.done() or task.cancelled():
            continue
        if entry["restarts"] >= entry["max_restarts"]:
            logger.error("task_max_restarts_exceeded", task=name)
            continue
        entry["restarts"] += 1
        entry["task"] = asyncio.create_task(entry["factory"]())
        restarted.append(name)
        logger.warning("task_auto_restart", task=name, restart_count=entry["restarts"])
    return restarted


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # --- Startup ---
    logger.info("export_pipeline_starting", host=config.host, port=config.port)

    await create_tables(config)

    runner = get_job_runner()
    janitor = get_janitor()
    reaper = get_retention_reaper()
    scheduler = get_scheduler()

    # Jobs left pending by a previous process are picked up again
    try:
        recovered = await janitor.redispatch_pending()
        if recovered:
            logger.info("pending_jobs_recovered", count=recovered)
    except Exception as e:
        logger.error("pending_job_recovery_failed", error=str(e))

    if config.scheduler_enabled:
        await scheduler.start()
    else:
        logger.info("scheduler_disabled")

    def _periodic(event: str, interval_seconds: int, action):
        async def _loop():
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await action()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(event, error=str(e))

        return _loop

    _register_task(
        "retention_cleanup",
        _periodic("retention_cleanup_error", config.retention_interval_seconds, reaper.run_cleanup),
    )
    _register_task(
        "janitor",
        _periodic("janitor_sweep_error", config.janitor_interval_seconds, janitor.sweep),
    )

    async def _health_monitor_loop():
        while True:
            try:
                await asyncio.sleep(HEALTH_MONITOR_INTERVAL)
                _restart_dead_tasks()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("health_monitor_error", error=str(e))

    _register_task("health_monitor", _health_monitor_loop)

    logger.info("export_pipeline_started", app=config.app_name)

    yield

    # --- Shutdown ---
    logger.info("export_pipeline_shutting_down")

    try:
        await asyncio.wait_for(scheduler.stop(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.error("scheduler_stop_timeout")

    for name, entry in _task_registry.items():
        task = entry["task"]
        if not task.done():
            task.cancel()

    pending = [e["task"] for e in _task_registry.values() if not e["task"].done()]
    if pending:
        await asyncio.wait(pending, timeout=3.0)
    _task_registry.clear()

    # Unfinished jobs stay in the store; the next start re-dispatches or times them out
    await runner.shutdown(timeout=5.0)

    await close_engine()
    logger.info("export_pipeline_stopped")


app = FastAPI(
    title="EXPORT-PIPELINE",
    description="Export job lifecycle and recurring export scheduling",
    version=APP_VERSION,
    lifespan=lifespan,
)

# Register standard error handlers
register_error_handlers(app)

# CORS: origins from config
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Owner-ID", "X-Request-ID"],
)

# Request ID: correlation IDs on every request (added LAST so it runs FIRST)
app.add_middleware(RequestIDMiddleware)

app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "name": config.app_name,
        "version": APP_VERSION,
        "status": "operational",
    }


@app.get("/health")
async def health():
    """Scheduler, runner and background task state."""
    tasks = {
        name: {
            "running": not entry["task"].done(),
            "restarts": entry["restarts"],
        }
        for name, entry in _task_registry.items()
    }
    return {
        "status": "healthy",
        "scheduler": get_scheduler().get_status(),
        "jobs_in_flight": get_job_runner().in_flight,
        "formats": list(supported_formats()),
        "tasks": tasks,
    }


def run() -> None:
    """Console entry point."""
    uvicorn.run(
        "export_pipeline.main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
    )


if __name__ == "__main__":
    run()

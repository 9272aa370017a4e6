"""Export pipeline configuration using Pydantic Settings."""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExportPipelineConfig(BaseSettings):
    """Main configuration class. Loads from .env file and environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "EXPORT-PIPELINE"
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: str = "http://localhost:5173"

    # Database
    database_url: str = "sqlite+aiosqlite:///./export_pipeline.db"
    db_wal_mode: bool = True
    db_busy_timeout: int = 5000  # ms
    db_synchronous: str = "NORMAL"

    # Logging
    log_dir: str = "logs"
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    # Artifacts
    export_dir: str = "data/exports"

    # Job execution
    max_concurrent_jobs: int = 4
    job_timeout_seconds: int = 1800  # processing longer than this is stuck
    pending_redispatch_seconds: int = 600  # pending longer than this is re-dispatched

    # Background loops
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 60
    retention_interval_seconds: int = 3600
    janitor_interval_seconds: int = 300

    # Scheduling
    schedule_timezone: str = "UTC"

    # Retention
    retention_default_keep_count: int = 10
    retention_default_keep_days: int = 30
    retention_one_off_days: int = 7

    # Notifications (SMTP)
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_addr: Optional[str] = None

    @field_validator("schedule_timezone")
    @classmethod
    def validate_schedule_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"schedule_timezone is not a known IANA zone: {v}")
        return v

    @field_validator("max_concurrent_jobs", "retention_one_off_days")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @property
    def base_dir(self) -> Path:
        return Path(__file__).resolve().parent.parent

    @property
    def smtp_config(self) -> dict:
        return {
            "host": self.smtp_host or "",
            "port": self.smtp_port,
            "username": self.smtp_username or "",
            "password": self.smtp_password or "",
            "from_addr": self.smtp_from_addr or self.smtp_username or "",
        }


def get_config() -> ExportPipelineConfig:
    """Factory function to create config instance."""
    return ExportPipelineConfig()

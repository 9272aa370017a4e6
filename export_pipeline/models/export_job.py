"""Export job model — one concrete export attempt (one-off or schedule-triggered)."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, iso, load_json, utcnow

EXPORT_FORMATS = ("csv", "excel", "pdf", "json")

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

JOB_STATUSES = (
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_CANCELLED,
)
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)


class ExportJob(Base):
    __tablename__ = "export_jobs"
    __table_args__ = (
        Index("ix_export_jobs_owner_created", "owner_id", "created_at"),
        Index("ix_export_jobs_schedule_created", "schedule_id", "created_at"),
        Index("ix_export_jobs_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    export_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    format: Mapped[str] = mapped_column(String(10), nullable=False)  # csv, excel, pdf, json
    fields_json: Mapped[str] = mapped_column(Text, nullable=False)
    include_related_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    filters_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sort_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=STATUS_PENDING
    )  # pending, processing, completed, failed, cancelled
    runner_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    schedule_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    template_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    file_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_size_bytes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    total_records: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processing_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_downloaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def fields(self) -> list[dict]:
        return load_json(self.fields_json, [])

    @property
    def include_related(self) -> list[str]:
        return load_json(self.include_related_json, [])

    @property
    def filters(self) -> dict:
        return load_json(self.filters_json, {})

    @property
    def sort(self) -> dict:
        return load_json(self.sort_json, {})

    def to_dict(self) -> dict:
        artifact = None
        if self.status == STATUS_COMPLETED and self.file_path:
            artifact = {"path": self.file_path, "size_bytes": self.file_size_bytes}
        error = None
        if self.status == STATUS_FAILED:
            error = {"message": self.error_message, "code": self.error_code}
        return {
            "export_id": self.export_id,
            "owner_id": self.owner_id,
            "filename": self.filename,
            "format": self.format,
            "fields": self.fields,
            "include_related": self.include_related,
            "filters": self.filters,
            "sort": self.sort,
            "status": self.status,
            "schedule_id": self.schedule_id,
            "scheduled_for": iso(self.scheduled_for),
            "template_id": self.template_id,
            "artifact": artifact,
            "error": error,
            "retry_count": self.retry_count,
            "total_records": self.total_records,
            "processing_ms": self.processing_ms,
            "download_count": self.download_count,
            "created_at": iso(self.created_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "cancelled_at": iso(self.cancelled_at),
            "last_downloaded_at": iso(self.last_downloaded_at),
        }

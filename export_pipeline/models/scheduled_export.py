"""Scheduled export model — a recurring export definition."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, iso, load_json, utcnow

FREQUENCIES = ("daily", "weekly", "monthly", "quarterly", "yearly", "custom")

LAST_STATUS_PENDING = "pending"
LAST_STATUS_SUCCESS = "success"
LAST_STATUS_FAILURE = "failure"
LAST_STATUS_CANCELLED = "cancelled"


class ScheduledExport(Base):
    __tablename__ = "scheduled_exports"
    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_scheduled_exports_owner_name"),
        Index("ix_scheduled_exports_due", "is_active", "next_run_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    format: Mapped[str] = mapped_column(String(10), nullable=False)
    fields_json: Mapped[str] = mapped_column(Text, nullable=False)
    include_related_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    filters_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sort_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    template_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    cron_expression: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # Instant the fixed-frequency cadence counts its wall-clock steps from
    cadence_anchor_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    keep_count: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    keep_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    notifications_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LAST_STATUS_PENDING
    )  # pending, success, failure, cancelled
    last_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

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

    @property
    def notifications(self) -> dict:
        return load_json(self.notifications_json, {})

    @property
    def success_rate(self) -> int:
        if not self.run_count:
            return 0
        return round(self.success_count / self.run_count * 100)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "format": self.format,
            "fields": self.fields,
            "include_related": self.include_related,
            "filters": self.filters,
            "sort": self.sort,
            "template_id": self.template_id,
            "frequency": self.frequency,
            "cron_expression": self.cron_expression,
            "next_run_at": iso(self.next_run_at),
            "last_run_at": iso(self.last_run_at),
            "is_active": self.is_active,
            "retention": {"keep_count": self.keep_count, "keep_days": self.keep_days},
            "notifications": self.notifications,
            "run_stats": {
                "run_count": self.run_count,
                "success_count": self.success_count,
                "failure_count": self.failure_count,
                "success_rate": self.success_rate,
                "last_status": self.last_status,
                "last_error": (
                    {
                        "message": self.last_error_message,
                        "code": self.last_error_code,
                        "occurred_at": iso(self.last_error_at),
                    }
                    if self.last_error_message
                    else None
                ),
            },
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

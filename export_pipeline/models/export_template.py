"""Export template model — reusable field/format preset."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, iso, load_json, utcnow


class ExportTemplate(Base):
    __tablename__ = "export_templates"
    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_export_templates_owner_name"),
        # At most one default template per owner
        Index(
            "uq_export_templates_owner_default",
            "owner_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
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
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
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
            "is_default": self.is_default,
            "is_public": self.is_public,
            "usage_count": self.usage_count,
            "last_used_at": iso(self.last_used_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

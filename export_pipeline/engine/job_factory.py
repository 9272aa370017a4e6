"""Construction of new pending export job rows."""

import re
import uuid
from datetime import datetime
from typing import Optional

from ..export.serializers import get_serializer
from ..models.base import dump_json, utcnow
from ..models.export_job import STATUS_PENDING, ExportJob

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def make_filename(prefix: str, fmt: str, export_id: str, now: Optional[datetime] = None) -> str:
    """``<prefix>_<YYYYmmdd_HHMMSS>_<short id>.<ext>`` with a filesystem-safe prefix."""
    now = now or utcnow()
    safe_prefix = _UNSAFE_FILENAME_CHARS.sub("_", prefix).strip("_") or "export"
    extension = get_serializer(fmt).extension
    return f"{safe_prefix}_{now.strftime('%Y%m%d_%H%M%S')}_{export_id[:8]}.{extension}"


def new_export_job(
    owner_id: str,
    fmt: str,
    fields: list[dict],
    include_related: list[str] | None = None,
    filters: dict | None = None,
    sort: dict | None = None,
    template_id: Optional[int] = None,
    schedule_id: Optional[int] = None,
    scheduled_for: Optional[datetime] = None,
    filename_prefix: str = "records_export",
) -> ExportJob:
    export_id = uuid.uuid4().hex
    now = utcnow()
    return ExportJob(
        export_id=export_id,
        owner_id=owner_id,
        filename=make_filename(filename_prefix, fmt, export_id, now),
        format=fmt,
        fields_json=dump_json(fields),
        include_related_json=dump_json(sorted(set(include_related or []))),
        filters_json=dump_json(filters or {}),
        sort_json=dump_json(sort or {}),
        status=STATUS_PENDING,
        template_id=template_id,
        schedule_id=schedule_id,
        scheduled_for=scheduled_for,
        retry_count=0,
        download_count=0,
        created_at=now,
    )

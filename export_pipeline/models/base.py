"""Declarative base and shared column helpers."""

import json
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Current time as naive UTC, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def dump_json(value) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def load_json(raw: str | None, default=None):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None

"""Record providers — the source of the record set an export serializes.

Query semantics belong to the host application. The runner only relies on the
``RecordProvider`` protocol; ``StaticRecordProvider`` serves an in-memory list
and is the default when nothing else is wired in.
"""

from datetime import datetime
from typing import Protocol


class RecordProvider(Protocol):
    def fetch(self, filters: dict, sort: dict, include_related: list[str]) -> list[dict]:
        """Return the records to export. Called from a worker thread."""
        ...


def _as_datetime(value):
    if isinstance(value, datetime) or value is None:
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class StaticRecordProvider:
    """Serves a fixed list of dict records with simple filter support.

    Supported filter keys:
        search: case-insensitive substring match over ``search_fields``
        date_range: {"start_date", "end_date"} applied to ``date_field``
        limit: maximum number of records returned
        any other key: equality, or membership when the value is a list
    """

    RESERVED_KEYS = {"search", "date_range", "limit"}

    def __init__(
        self,
        records: list[dict] | None = None,
        search_fields: tuple[str, ...] = ("name", "email"),
        date_field: str = "created_at",
    ) -> None:
        self._records = list(records or [])
        self._search_fields = search_fields
        self._date_field = date_field

    def set_records(self, records: list[dict]) -> None:
        self._records = list(records)

    def fetch(self, filters: dict, sort: dict, include_related: list[str]) -> list[dict]:
        filters = filters or {}
        rows = [r for r in self._records if self._matches(r, filters)]

        sort = sort or {}
        sort_field = sort.get("field")
        if sort_field:
            reverse = sort.get("order", "asc") == "desc"
            present = [r for r in rows if r.get(sort_field) is not None]
            missing = [r for r in rows if r.get(sort_field) is None]
            present.sort(key=lambda r: r[sort_field], reverse=reverse)
            rows = present + missing

        limit = filters.get("limit")
        if limit is not None:
            rows = rows[: int(limit)]
        return [dict(r) for r in rows]

    def _matches(self, record: dict, filters: dict) -> bool:
        for key, expected in filters.items():
            if key in self.RESERVED_KEYS or expected is None:
                continue
            actual = record.get(key)
            if isinstance(expected, list):
                if expected and actual not in expected:
                    return False
            elif actual != expected:
                return False

        search = filters.get("search")
        if search:
            needle = str(search).lower()
            haystack = [str(record.get(f, "")).lower() for f in self._search_fields]
            if not any(needle in value for value in haystack):
                return False

        date_range = filters.get("date_range") or {}
        if date_range:
            value = _as_datetime(record.get(self._date_field))
            start = _as_datetime(date_range.get("start_date"))
            end = _as_datetime(date_range.get("end_date"))
            if value is None and (start or end):
                return False
            if start and value < start:
                return False
            if end and value > end:
                return False
        return True

"""Request normalization shared by the export, schedule and template services."""

from typing import Any, Optional

from ..errors import ValidationError
from ..export.serializers import supported_formats
from ..models.scheduled_export import FREQUENCIES

SORT_ORDERS = ("asc", "desc")
KEEP_COUNT_RANGE = (1, 100)
KEEP_DAYS_RANGE = (1, 365)
NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500


def validate_format(fmt: Optional[str]) -> str:
    if not fmt:
        raise ValidationError("Export format is required")
    fmt = fmt.lower()
    if fmt not in supported_formats():
        raise ValidationError(f"format must be one of {supported_formats()}")
    return fmt


def normalize_fields(fields: Optional[list[Any]], required: bool = True) -> list[dict]:
    """Accept ``["name", ...]`` or ``[{"name", "label", "order"?}, ...]``.

    Returns ``[{"name", "label"}]`` ordered by ``order`` when given, else by
    position. Duplicate names are rejected.
    """
    if not fields:
        if required:
            raise ValidationError("At least one field is required")
        return []
    if not isinstance(fields, list):
        raise ValidationError("fields must be a list")

    normalized = []
    for position, field in enumerate(fields):
        if isinstance(field, str):
            name, label, order = field, field, position
        elif isinstance(field, dict):
            name = field.get("name")
            label = field.get("label") or name
            order = field.get("order", position)
        else:
            raise ValidationError("Each field must be a name or an object with a name")
        if not name or not isinstance(name, str):
            raise ValidationError("Field name is required")
        normalized.append((order, position, {"name": name.strip(), "label": str(label).strip()}))

    normalized.sort(key=lambda item: (item[0], item[1]))
    result = [item[2] for item in normalized]
    names = [f["name"] for f in result]
    if len(set(names)) != len(names):
        raise ValidationError("Field names must be unique")
    return result


def normalize_related(include_related: Any) -> list[str]:
    """Accept a list of flags or a ``{flag: bool}`` mapping; return the enabled flags."""
    if not include_related:
        return []
    if isinstance(include_related, dict):
        flags = [k for k, enabled in include_related.items() if enabled]
    elif isinstance(include_related, (list, tuple, set)):
        flags = list(include_related)
    else:
        raise ValidationError("include_related must be a list or a mapping of flags")
    if not all(isinstance(f, str) and f for f in flags):
        raise ValidationError("include_related flags must be non-empty strings")
    return sorted(set(flags))


def normalize_filters(filters: Any) -> dict:
    if filters is None:
        return {}
    if not isinstance(filters, dict):
        raise ValidationError("filters must be an object")
    return filters


def normalize_sort(sort: Any) -> dict:
    if not sort:
        return {"field": "created_at", "order": "desc"}
    if not isinstance(sort, dict) or not sort.get("field"):
        raise ValidationError("sort must be an object with a field")
    order = sort.get("order", "desc")
    if order not in SORT_ORDERS:
        raise ValidationError(f"sort order must be one of {SORT_ORDERS}")
    return {"field": sort["field"], "order": order}


def validate_name(name: Optional[str], kind: str = "Name") -> str:
    if not name or not name.strip():
        raise ValidationError(f"{kind} is required")
    name = name.strip()
    if len(name) > NAME_MAX_LENGTH:
        raise ValidationError(f"{kind} cannot exceed {NAME_MAX_LENGTH} characters")
    return name


def validate_description(description: Optional[str]) -> Optional[str]:
    if description and len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters")
    return description.strip() if description else description


def validate_frequency(frequency: Optional[str], cron_expression: Optional[str]) -> None:
    if not frequency:
        raise ValidationError("Frequency is required")
    if frequency not in FREQUENCIES:
        raise ValidationError(f"frequency must be one of {FREQUENCIES}")
    if frequency == "custom" and not (cron_expression and cron_expression.strip()):
        raise ValidationError("Cron expression is required for custom frequency")


def validate_retention(retention: Optional[dict], default_count: int, default_days: int) -> tuple[int, int]:
    retention = retention or {}
    keep_count = retention.get("keep_count", default_count)
    keep_days = retention.get("keep_days", default_days)
    for value, (low, high), label in (
        (keep_count, KEEP_COUNT_RANGE, "keep_count"),
        (keep_days, KEEP_DAYS_RANGE, "keep_days"),
    ):
        if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= high:
            raise ValidationError(f"{label} must be an integer between {low} and {high}")
    return keep_count, keep_days


def validate_notifications(notifications: Any) -> dict:
    if not notifications:
        return {}
    if not isinstance(notifications, dict):
        raise ValidationError("notifications must be an object")
    email = notifications.get("email") or {}
    if email.get("enabled") and not email.get("recipients"):
        raise ValidationError("Email notifications need at least one recipient")
    webhook = notifications.get("webhook") or {}
    if webhook.get("enabled") and not webhook.get("url"):
        raise ValidationError("Webhook notifications need a url")
    return notifications

"""Scheduled export routes — recurring export definitions and their run history."""

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from ...dependencies import get_owner_id, get_schedule_service

router = APIRouter(prefix="/schedules", tags=["schedules"])


class RetentionSettings(BaseModel):
    keep_count: int | None = None
    keep_days: int | None = None


class ScheduleCreateRequest(BaseModel):
    name: str
    description: str | None = None
    frequency: str  # daily, weekly, monthly, quarterly, yearly, custom
    cron_expression: str | None = None
    format: str | None = None
    fields: list[Any] | None = None
    template_id: int | None = None
    include_related: list[str] | dict[str, bool] | None = None
    filters: dict | None = None
    sort: dict | None = None
    retention: RetentionSettings | None = None
    notifications: dict | None = None
    is_active: bool = True


class ScheduleUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    frequency: str | None = None
    cron_expression: str | None = None
    format: str | None = None
    fields: list[Any] | None = None
    include_related: list[str] | dict[str, bool] | None = None
    filters: dict | None = None
    sort: dict | None = None
    retention: RetentionSettings | None = None
    notifications: dict | None = None
    is_active: bool | None = None


class ToggleRequest(BaseModel):
    is_active: bool | None = None


class BulkScheduleRequest(BaseModel):
    action: Literal["enable", "disable", "delete"]
    schedule_ids: list[int] = Field(min_length=1, max_length=100)


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_schedule(
    body: ScheduleCreateRequest,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_schedule_service),
):
    data = body.model_dump()
    if body.retention is not None:
        data["retention"] = body.retention.model_dump(exclude_none=True)
    return await service.create(owner_id, **data)


@router.get("/")
async def list_schedules(
    search: str | None = None,
    frequency: str | None = None,
    is_active: bool | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_schedule_service),
):
    return await service.list_schedules(
        owner_id,
        search=search,
        frequency=frequency,
        is_active=is_active,
        limit=limit,
        offset=offset,
    )


@router.post("/bulk")
async def bulk_schedules(
    body: BulkScheduleRequest,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_schedule_service),
):
    """Enable, disable or delete several schedules at once."""
    return await service.bulk(owner_id, body.action, body.schedule_ids)


@router.get("/{schedule_id}")
async def get_schedule(
    schedule_id: int,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_schedule_service),
):
    return await service.get(owner_id, schedule_id)


@router.patch("/{schedule_id}")
async def update_schedule(
    schedule_id: int,
    body: ScheduleUpdateRequest,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_schedule_service),
):
    """Partial update; only the fields present in the body change."""
    changes = body.model_dump(exclude_unset=True)
    if "retention" in changes and body.retention is not None:
        changes["retention"] = body.retention.model_dump(exclude_none=True)
    return await service.update(owner_id, schedule_id, changes)


@router.delete("/{schedule_id}")
async def delete_schedule(
    schedule_id: int,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_schedule_service),
):
    return await service.delete(owner_id, schedule_id)


@router.post("/{schedule_id}/toggle")
async def toggle_schedule(
    schedule_id: int,
    body: ToggleRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_schedule_service),
):
    """Flip is_active, or set it explicitly when the body carries a value."""
    return await service.toggle(owner_id, schedule_id, body.is_active if body else None)


@router.post("/{schedule_id}/run", status_code=status.HTTP_202_ACCEPTED)
async def run_schedule_now(
    schedule_id: int,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_schedule_service),
):
    """Run a schedule once, outside its cadence."""
    return await service.run_now(owner_id, schedule_id)


@router.get("/{schedule_id}/history")
async def schedule_history(
    schedule_id: int,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_schedule_service),
):
    return await service.history(owner_id, schedule_id, limit=limit, offset=offset)

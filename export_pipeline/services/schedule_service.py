"""Schedule service — CRUD and manual control for recurring export definitions."""

from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError

from ..engine.recurrence import compute_next_run_at
from ..errors import DuplicateName, NotFound, ValidationError
from ..models.base import dump_json, utcnow
from ..models.export_job import ACTIVE_STATUSES, ExportJob
from ..models.scheduled_export import FREQUENCIES, ScheduledExport
from ..utils.logging import get_logger
from .validation import (
    normalize_fields,
    normalize_filters,
    normalize_related,
    normalize_sort,
    validate_description,
    validate_format,
    validate_frequency,
    validate_name,
    validate_notifications,
    validate_retention,
)

logger = get_logger("services.schedule_service")

BULK_ACTIONS = ("enable", "disable", "delete")
MAX_PAGE_SIZE = 200


class ScheduleService:
    def __init__(self, db_session_factory, scheduler, template_service, config) -> None:
        self._session_factory = db_session_factory
        self._scheduler = scheduler
        self._templates = template_service
        self._config = config

    @property
    def _timezone(self) -> str:
        return self._config.schedule_timezone

    async def _get_owned(self, session, owner_id: str, schedule_id: int) -> ScheduledExport:
        schedule = (
            await session.execute(
                select(ScheduledExport).where(
                    ScheduledExport.id == schedule_id, ScheduledExport.owner_id == owner_id
                )
            )
        ).scalar_one_or_none()
        if schedule is None:
            raise NotFound("Scheduled export not found or access denied")
        return schedule

    async def _name_taken(self, session, owner_id: str, name: str, exclude_id: int | None = None) -> bool:
        query = select(func.count(ScheduledExport.id)).where(
            ScheduledExport.owner_id == owner_id, ScheduledExport.name == name
        )
        if exclude_id is not None:
            query = query.where(ScheduledExport.id != exclude_id)
        return (await session.execute(query)).scalar_one() > 0

    async def create(
        self,
        owner_id: str,
        name: str,
        frequency: str,
        format: Optional[str] = None,
        fields: Optional[list] = None,
        template_id: Optional[int] = None,
        cron_expression: Optional[str] = None,
        description: Optional[str] = None,
        include_related=None,
        filters: Optional[dict] = None,
        sort: Optional[dict] = None,
        retention: Optional[dict] = None,
        notifications: Optional[dict] = None,
        is_active: bool = True,
    ) -> dict:
        """Create a schedule. A template's settings are copied in as a snapshot."""
        name = validate_name(name, "Schedule name")
        validate_frequency(frequency, cron_expression)
        keep_count, keep_days = validate_retention(
            retention,
            self._config.retention_default_keep_count,
            self._config.retention_default_keep_days,
        )

        template = None
        if template_id is not None:
            template = await self._templates.get(owner_id, template_id)

        now = utcnow()
        schedule = ScheduledExport(
            owner_id=owner_id,
            name=name,
            description=validate_description(description),
            format=validate_format(format or (template["format"] if template else None)),
            fields_json=dump_json(normalize_fields(fields or (template["fields"] if template else None))),
            include_related_json=dump_json(
                normalize_related(
                    include_related if include_related is not None
                    else (template["include_related"] if template else None)
                )
            ),
            filters_json=dump_json(
                normalize_filters(
                    filters if filters is not None else (template["filters"] if template else None)
                )
            ),
            sort_json=dump_json(normalize_sort(sort or (template["sort"] if template else None))),
            template_id=template_id,
            frequency=frequency,
            cron_expression=cron_expression.strip() if cron_expression else None,
            next_run_at=compute_next_run_at(frequency, cron_expression, now, self._timezone),
            cadence_anchor_at=now,
            is_active=bool(is_active),
            keep_count=keep_count,
            keep_days=keep_days,
            notifications_json=dump_json(validate_notifications(notifications)),
            created_at=now,
            updated_at=now,
        )

        async with self._session_factory() as session:
            if await self._name_taken(session, owner_id, name):
                raise DuplicateName("Scheduled export with this name already exists")
            session.add(schedule)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateName("Scheduled export with this name already exists")
            result = schedule.to_dict()

        if template_id is not None:
            await self._templates.increment_usage(template_id)

        logger.info(
            "schedule_created",
            schedule_id=result["id"],
            owner_id=owner_id,
            frequency=frequency,
            next_run_at=result["next_run_at"],
        )
        return result

    async def get(self, owner_id: str, schedule_id: int) -> dict:
        async with self._session_factory() as session:
            return (await self._get_owned(session, owner_id, schedule_id)).to_dict()

    async def list_schedules(
        self,
        owner_id: str,
        search: Optional[str] = None,
        frequency: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        if frequency is not None and frequency not in FREQUENCIES:
            raise ValidationError(f"frequency must be one of {FREQUENCIES}")
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        conditions = [ScheduledExport.owner_id == owner_id]
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(ScheduledExport.name.ilike(pattern), ScheduledExport.description.ilike(pattern))
            )
        if frequency:
            conditions.append(ScheduledExport.frequency == frequency)
        if is_active is not None:
            conditions.append(ScheduledExport.is_active.is_(is_active))

        async with self._session_factory() as session:
            total = (
                await session.execute(select(func.count(ScheduledExport.id)).where(*conditions))
            ).scalar_one()
            rows = (
                await session.execute(
                    select(ScheduledExport)
                    .where(*conditions)
                    .order_by(ScheduledExport.created_at.desc(), ScheduledExport.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ).scalars().all()
            return {
                "items": [s.to_dict() for s in rows],
                "total": total,
                "limit": limit,
                "offset": offset,
            }

    async def update(self, owner_id: str, schedule_id: int, changes: dict) -> dict:
        """Apply a partial update. Cadence changes recompute next_run_at from now."""
        async with self._session_factory() as session:
            schedule = await self._get_owned(session, owner_id, schedule_id)

            if "name" in changes and changes["name"] != schedule.name:
                name = validate_name(changes["name"], "Schedule name")
                if await self._name_taken(session, owner_id, name, exclude_id=schedule_id):
                    raise DuplicateName("Scheduled export with this name already exists")
                schedule.name = name
            if "description" in changes:
                schedule.description = validate_description(changes["description"])
            if "format" in changes:
                schedule.format = validate_format(changes["format"])
            if "fields" in changes:
                schedule.fields_json = dump_json(normalize_fields(changes["fields"]))
            if "include_related" in changes:
                schedule.include_related_json = dump_json(normalize_related(changes["include_related"]))
            if "filters" in changes:
                schedule.filters_json = dump_json(normalize_filters(changes["filters"]))
            if "sort" in changes:
                schedule.sort_json = dump_json(normalize_sort(changes["sort"]))
            if "retention" in changes:
                merged = {"keep_count": schedule.keep_count, "keep_days": schedule.keep_days}
                merged.update(changes["retention"] or {})
                schedule.keep_count, schedule.keep_days = validate_retention(
                    merged, schedule.keep_count, schedule.keep_days
                )
            if "notifications" in changes:
                schedule.notifications_json = dump_json(validate_notifications(changes["notifications"]))

            cadence_changed = False
            if "frequency" in changes or "cron_expression" in changes:
                frequency = changes.get("frequency", schedule.frequency)
                cron_expression = changes.get("cron_expression", schedule.cron_expression)
                validate_frequency(frequency, cron_expression)
                schedule.frequency = frequency
                schedule.cron_expression = cron_expression.strip() if cron_expression else None
                cadence_changed = True

            reactivated = False
            if changes.get("is_active") is not None:
                reactivated = bool(changes["is_active"]) and not schedule.is_active
                schedule.is_active = bool(changes["is_active"])

            if cadence_changed or reactivated:
                restarted_at = utcnow()
                schedule.next_run_at = compute_next_run_at(
                    schedule.frequency, schedule.cron_expression, restarted_at, self._timezone
                )
                schedule.cadence_anchor_at = restarted_at

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateName("Scheduled export with this name already exists")
            await session.refresh(schedule)
            result = schedule.to_dict()

        logger.info("schedule_updated", schedule_id=schedule_id, changed=sorted(changes))
        return result

    async def delete(self, owner_id: str, schedule_id: int) -> dict:
        """Delete a schedule. Its past jobs stay and are later reaped as unscheduled."""
        async with self._session_factory() as session:
            await self._get_owned(session, owner_id, schedule_id)
            await session.execute(
                delete(ScheduledExport).where(ScheduledExport.id == schedule_id)
            )
            await session.commit()
        logger.info("schedule_deleted", schedule_id=schedule_id, owner_id=owner_id)
        return {"deleted": schedule_id}

    async def toggle(self, owner_id: str, schedule_id: int, is_active: Optional[bool] = None) -> dict:
        """Flip (or explicitly set) is_active."""
        async with self._session_factory() as session:
            schedule = await self._get_owned(session, owner_id, schedule_id)
            target = (not schedule.is_active) if is_active is None else bool(is_active)
        return await self.update(owner_id, schedule_id, {"is_active": target})

    async def run_now(self, owner_id: str, schedule_id: int) -> dict:
        """Trigger one run outside the cadence. Inactive schedules may still be run manually."""
        async with self._session_factory() as session:
            schedule = await self._get_owned(session, owner_id, schedule_id)
        job_id = await self._scheduler.run_now(schedule)
        async with self._session_factory() as session:
            job = (
                await session.execute(select(ExportJob).where(ExportJob.id == job_id))
            ).scalar_one()
            return job.to_dict()

    async def history(self, owner_id: str, schedule_id: int, limit: int = 20, offset: int = 0) -> dict:
        """Jobs produced by a schedule, newest first, with run stats."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        async with self._session_factory() as session:
            schedule = await self._get_owned(session, owner_id, schedule_id)
            conditions = (ExportJob.schedule_id == schedule_id,)
            total = (
                await session.execute(select(func.count(ExportJob.id)).where(*conditions))
            ).scalar_one()
            in_flight = (
                await session.execute(
                    select(func.count(ExportJob.id)).where(
                        *conditions, ExportJob.status.in_(ACTIVE_STATUSES)
                    )
                )
            ).scalar_one()
            rows = (
                await session.execute(
                    select(ExportJob)
                    .where(*conditions)
                    .order_by(ExportJob.created_at.desc(), ExportJob.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ).scalars().all()
            stats = schedule.to_dict()["run_stats"]

        return {
            "schedule_id": schedule_id,
            "run_stats": stats,
            "in_flight": in_flight,
            "items": [j.to_dict() for j in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    async def bulk(self, owner_id: str, action: str, schedule_ids: list[int]) -> dict:
        if action not in BULK_ACTIONS:
            raise ValidationError(f"action must be one of {BULK_ACTIONS}")
        if not schedule_ids:
            raise ValidationError("At least one schedule id is required")

        results = []
        for schedule_id in schedule_ids:
            try:
                if action == "delete":
                    await self.delete(owner_id, schedule_id)
                else:
                    await self.update(owner_id, schedule_id, {"is_active": action == "enable"})
                results.append({"id": schedule_id, "success": True})
            except NotFound as e:
                results.append({"id": schedule_id, "success": False, "error": e.to_dict()})

        succeeded = sum(1 for r in results if r["success"])
        logger.info("bulk_schedule_action", action=action, succeeded=succeeded, total=len(results))
        return {"action": action, "succeeded": succeeded, "failed": len(results) - succeeded, "results": results}

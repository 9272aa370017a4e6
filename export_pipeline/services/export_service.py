"""Export service — one-off export submission, status, download and cleanup."""

import os
from typing import Optional

from sqlalchemy import delete, func, select

from ..engine.job_factory import new_export_job
from ..errors import InvalidTransition, NotAvailable, NotFound, ValidationError
from ..export.serializers import get_serializer
from ..models.export_job import (
    ACTIVE_STATUSES,
    JOB_STATUSES,
    STATUS_COMPLETED,
    TERMINAL_STATUSES,
    ExportJob,
)
from ..utils.logging import get_logger
from .validation import (
    normalize_fields,
    normalize_filters,
    normalize_related,
    normalize_sort,
    validate_format,
)

logger = get_logger("services.export_service")

BULK_ACTIONS = ("cancel", "delete")
MAX_PAGE_SIZE = 200


class ExportService:
    def __init__(self, db_session_factory, job_runner, artifact_store, template_service) -> None:
        self._session_factory = db_session_factory
        self._runner = job_runner
        self._store = artifact_store
        self._templates = template_service

    async def _get_owned(self, session, owner_id: str, export_id: str) -> ExportJob:
        job = (
            await session.execute(
                select(ExportJob).where(
                    ExportJob.export_id == export_id, ExportJob.owner_id == owner_id
                )
            )
        ).scalar_one_or_none()
        if job is None:
            raise NotFound("Export not found")
        return job

    async def submit(
        self,
        owner_id: str,
        format: Optional[str] = None,
        fields: Optional[list] = None,
        template_id: Optional[int] = None,
        include_related=None,
        filters: Optional[dict] = None,
        sort: Optional[dict] = None,
        filename_prefix: Optional[str] = None,
    ) -> dict:
        """Validate, persist a pending job and dispatch it. Returns immediately.

        A template supplies defaults for anything the request leaves out; its
        values are copied onto the job so later template edits do not apply.
        """
        template = None
        if template_id is not None:
            template = await self._templates.get(owner_id, template_id)

        fmt = validate_format(format or (template["format"] if template else None))
        fields = normalize_fields(fields or (template["fields"] if template else None))
        related = normalize_related(
            include_related if include_related is not None
            else (template["include_related"] if template else None)
        )
        filters = normalize_filters(
            filters if filters is not None else (template["filters"] if template else None)
        )
        sort = normalize_sort(sort or (template["sort"] if template else None))

        job = new_export_job(
            owner_id=owner_id,
            fmt=fmt,
            fields=fields,
            include_related=related,
            filters=filters,
            sort=sort,
            template_id=template_id,
            filename_prefix=filename_prefix or "records_export",
        )
        async with self._session_factory() as session:
            session.add(job)
            await session.commit()
            result = job.to_dict()
            job_id = job.id

        if template_id is not None:
            await self._templates.increment_usage(template_id)

        self._runner.dispatch(job_id)
        logger.info(
            "export_submitted",
            export_id=result["export_id"],
            owner_id=owner_id,
            format=fmt,
            fields=len(fields),
            template_id=template_id,
        )
        return result

    async def get(self, owner_id: str, export_id: str) -> dict:
        async with self._session_factory() as session:
            return (await self._get_owned(session, owner_id, export_id)).to_dict()

    async def list_exports(
        self,
        owner_id: str,
        status: Optional[str] = None,
        format: Optional[str] = None,
        schedule_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        if status is not None and status not in JOB_STATUSES:
            raise ValidationError(f"status must be one of {JOB_STATUSES}")
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        conditions = [ExportJob.owner_id == owner_id]
        if status:
            conditions.append(ExportJob.status == status)
        if format:
            conditions.append(ExportJob.format == format)
        if schedule_id is not None:
            conditions.append(ExportJob.schedule_id == schedule_id)

        async with self._session_factory() as session:
            total = (
                await session.execute(select(func.count(ExportJob.id)).where(*conditions))
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
            return {
                "items": [j.to_dict() for j in rows],
                "total": total,
                "limit": limit,
                "offset": offset,
            }

    async def cancel(self, owner_id: str, export_id: str) -> dict:
        async with self._session_factory() as session:
            job = await self._get_owned(session, owner_id, export_id)
            job_id = job.id
        await self._runner.state.cancel(job_id)
        return await self.get(owner_id, export_id)

    async def delete(self, owner_id: str, export_id: str) -> dict:
        """Delete a finished export and its artifact. In-flight exports must be cancelled first."""
        async with self._session_factory() as session:
            job = await self._get_owned(session, owner_id, export_id)
            if job.status in ACTIVE_STATUSES:
                raise InvalidTransition(
                    f"Cannot delete an export in status '{job.status}'. Cancel it first."
                )
            job_id, file_path = job.id, job.file_path

        self._store.delete(file_path)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ExportJob).where(
                    ExportJob.id == job_id, ExportJob.status.in_(TERMINAL_STATUSES)
                )
            )
            await session.commit()
        if result.rowcount != 1:
            raise NotFound("Export not found")

        logger.info("export_deleted", export_id=export_id, owner_id=owner_id)
        return {"deleted": export_id}

    async def open_download(self, owner_id: str, export_id: str) -> dict:
        """Resolve a completed export's artifact and count the download.

        Returns ``{path, filename, media_type}`` for the transport layer to stream.
        """
        async with self._session_factory() as session:
            job = await self._get_owned(session, owner_id, export_id)
            if job.status != STATUS_COMPLETED or not job.file_path:
                raise NotAvailable(f"Export is not available for download (status '{job.status}')")
            job_id, path, filename, fmt = job.id, job.file_path, job.filename, job.format

        if not os.path.isfile(path):
            logger.warning("export_artifact_missing", export_id=export_id, file_path=path)
            raise NotAvailable("Export file is no longer available")

        if not await self._runner.state.record_download(job_id):
            raise NotAvailable("Export is no longer available for download")
        return {"path": path, "filename": filename, "media_type": get_serializer(fmt).media_type}

    async def bulk(self, owner_id: str, action: str, export_ids: list[str]) -> dict:
        """Apply cancel or delete to each id independently; one failure does not stop the rest."""
        if action not in BULK_ACTIONS:
            raise ValidationError(f"action must be one of {BULK_ACTIONS}")
        if not export_ids:
            raise ValidationError("At least one export id is required")

        handler = self.cancel if action == "cancel" else self.delete
        results = []
        for export_id in export_ids:
            try:
                await handler(owner_id, export_id)
                results.append({"id": export_id, "success": True})
            except (NotFound, InvalidTransition) as e:
                results.append({"id": export_id, "success": False, "error": e.to_dict()})
            except OSError as e:
                logger.error("bulk_export_action_failed", export_id=export_id, error=str(e))
                results.append(
                    {"id": export_id, "success": False, "error": {"code": "IO_ERROR", "message": str(e)}}
                )

        succeeded = sum(1 for r in results if r["success"])
        logger.info("bulk_export_action", action=action, succeeded=succeeded, total=len(results))
        return {"action": action, "succeeded": succeeded, "failed": len(results) - succeeded, "results": results}

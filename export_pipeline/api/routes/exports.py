"""Export routes — one-off export submission, status, download and cleanup."""

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from ...dependencies import get_export_service, get_owner_id
from ...export.serializers import get_serializer, supported_formats

router = APIRouter(prefix="/exports", tags=["exports"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------
class ExportRequest(BaseModel):
    format: str | None = None  # csv, excel, pdf, json; defaults to the template's
    fields: list[Any] | None = None
    template_id: int | None = None
    include_related: list[str] | dict[str, bool] | None = None
    filters: dict | None = None
    sort: dict | None = None
    filename_prefix: str | None = Field(default=None, max_length=80)


class BulkExportRequest(BaseModel):
    action: Literal["cancel", "delete"]
    export_ids: list[str] = Field(min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@router.get("/formats")
async def list_formats():
    """Supported export formats with their file extension and media type."""
    return [
        {
            "format": fmt,
            "extension": get_serializer(fmt).extension,
            "media_type": get_serializer(fmt).media_type,
        }
        for fmt in supported_formats()
    ]


@router.post("/", status_code=status.HTTP_202_ACCEPTED)
async def submit_export(
    body: ExportRequest,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_export_service),
):
    """Submit an export. Returns the pending job immediately; work happens in the background."""
    return await service.submit(owner_id, **body.model_dump())


@router.get("/")
async def list_exports(
    status_filter: str | None = Query(None, alias="status"),
    format: str | None = None,
    schedule_id: int | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_export_service),
):
    """List the caller's exports, newest first."""
    return await service.list_exports(
        owner_id,
        status=status_filter,
        format=format,
        schedule_id=schedule_id,
        limit=limit,
        offset=offset,
    )


@router.post("/bulk")
async def bulk_exports(
    body: BulkExportRequest,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_export_service),
):
    """Cancel or delete several exports; each id succeeds or fails on its own."""
    return await service.bulk(owner_id, body.action, body.export_ids)


@router.get("/{export_id}")
async def get_export(
    export_id: str,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_export_service),
):
    return await service.get(owner_id, export_id)


@router.post("/{export_id}/cancel")
async def cancel_export(
    export_id: str,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_export_service),
):
    """Cancel a pending or processing export."""
    return await service.cancel(owner_id, export_id)


@router.get("/{export_id}/download")
async def download_export(
    export_id: str,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_export_service),
):
    """Download the exported file."""
    download = await service.open_download(owner_id, export_id)
    return FileResponse(
        path=download["path"],
        media_type=download["media_type"],
        filename=download["filename"],
    )


@router.delete("/{export_id}")
async def delete_export(
    export_id: str,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_export_service),
):
    """Delete a finished export and its file."""
    return await service.delete(owner_id, export_id)

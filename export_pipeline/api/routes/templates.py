"""Export template routes — reusable field and format presets."""

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from ...dependencies import get_owner_id, get_template_service

router = APIRouter(prefix="/templates", tags=["templates"])


class TemplateCreateRequest(BaseModel):
    name: str
    description: str | None = None
    format: str
    fields: list[Any]
    include_related: list[str] | dict[str, bool] | None = None
    filters: dict | None = None
    sort: dict | None = None
    is_default: bool = False
    is_public: bool = False


class TemplateUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    format: str | None = None
    fields: list[Any] | None = None
    include_related: list[str] | dict[str, bool] | None = None
    filters: dict | None = None
    sort: dict | None = None
    is_default: bool | None = None
    is_public: bool | None = None


class TemplateDuplicateRequest(BaseModel):
    name: str | None = None


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_template(
    body: TemplateCreateRequest,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_template_service),
):
    return await service.create(owner_id, **body.model_dump())


@router.get("/")
async def list_templates(
    include_public: bool = True,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_template_service),
):
    """The caller's templates, plus public ones unless include_public is false."""
    return await service.list_templates(owner_id, include_public=include_public)


@router.get("/default")
async def get_default_template(
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_template_service),
):
    return {"template": await service.get_default(owner_id)}


@router.get("/{template_id}")
async def get_template(
    template_id: int,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_template_service),
):
    return await service.get(owner_id, template_id)


@router.patch("/{template_id}")
async def update_template(
    template_id: int,
    body: TemplateUpdateRequest,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_template_service),
):
    return await service.update(owner_id, template_id, body.model_dump(exclude_unset=True))


@router.post("/{template_id}/default")
async def set_default_template(
    template_id: int,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_template_service),
):
    """Make this the caller's default template; any previous default is cleared."""
    return await service.set_default(owner_id, template_id)


@router.post("/{template_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_template(
    template_id: int,
    body: TemplateDuplicateRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_template_service),
):
    """Copy an own or public template. The copy is private and not the default."""
    return await service.duplicate(owner_id, template_id, name=body.name if body else None)


@router.delete("/{template_id}")
async def delete_template(
    template_id: int,
    owner_id: str = Depends(get_owner_id),
    service=Depends(get_template_service),
):
    return await service.delete(owner_id, template_id)

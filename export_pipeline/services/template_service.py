"""Template service — reusable export field/format presets."""

from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import DuplicateName, NotFound
from ..models.base import dump_json, utcnow
from ..models.export_template import ExportTemplate
from ..utils.logging import get_logger
from .validation import (
    normalize_fields,
    normalize_filters,
    normalize_related,
    normalize_sort,
    validate_description,
    validate_format,
    validate_name,
)

logger = get_logger("services.template_service")


class TemplateService:
    def __init__(self, db_session_factory) -> None:
        self._session_factory = db_session_factory

    async def _name_taken(self, session, owner_id: str, name: str, exclude_id: int | None = None) -> bool:
        query = select(func.count(ExportTemplate.id)).where(
            ExportTemplate.owner_id == owner_id, ExportTemplate.name == name
        )
        if exclude_id is not None:
            query = query.where(ExportTemplate.id != exclude_id)
        return (await session.execute(query)).scalar_one() > 0

    @staticmethod
    async def _clear_default(session, owner_id: str, keep_id: int | None = None) -> None:
        query = update(ExportTemplate).where(
            ExportTemplate.owner_id == owner_id, ExportTemplate.is_default.is_(True)
        )
        if keep_id is not None:
            query = query.where(ExportTemplate.id != keep_id)
        await session.execute(query.values(is_default=False).execution_options(synchronize_session=False))

    async def _get_owned(self, session, owner_id: str, template_id: int) -> ExportTemplate:
        template = (
            await session.execute(
                select(ExportTemplate).where(
                    ExportTemplate.id == template_id, ExportTemplate.owner_id == owner_id
                )
            )
        ).scalar_one_or_none()
        if template is None:
            raise NotFound("Template not found or access denied")
        return template

    async def create(
        self,
        owner_id: str,
        name: str,
        format: str,
        fields: list,
        description: Optional[str] = None,
        include_related=None,
        filters: Optional[dict] = None,
        sort: Optional[dict] = None,
        is_default: bool = False,
        is_public: bool = False,
    ) -> dict:
        name = validate_name(name, "Template name")
        template = ExportTemplate(
            owner_id=owner_id,
            name=name,
            description=validate_description(description),
            format=validate_format(format),
            fields_json=dump_json(normalize_fields(fields)),
            include_related_json=dump_json(normalize_related(include_related)),
            filters_json=dump_json(normalize_filters(filters)),
            sort_json=dump_json(normalize_sort(sort)),
            is_default=bool(is_default),
            is_public=bool(is_public),
            usage_count=0,
        )
        async with self._session_factory() as session:
            if await self._name_taken(session, owner_id, name):
                raise DuplicateName("Template with this name already exists")
            if template.is_default:
                await self._clear_default(session, owner_id)
            session.add(template)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateName("Template with this name already exists")
            result = template.to_dict()

        logger.info("template_created", template_id=result["id"], owner_id=owner_id, name=name)
        return result

    async def get(self, owner_id: str, template_id: int) -> dict:
        """Own templates and public templates are visible."""
        async with self._session_factory() as session:
            template = (
                await session.execute(
                    select(ExportTemplate).where(
                        ExportTemplate.id == template_id,
                        or_(ExportTemplate.owner_id == owner_id, ExportTemplate.is_public.is_(True)),
                    )
                )
            ).scalar_one_or_none()
            if template is None:
                raise NotFound("Template not found")
            return template.to_dict()

    async def list_templates(self, owner_id: str, include_public: bool = True) -> list[dict]:
        condition = ExportTemplate.owner_id == owner_id
        if include_public:
            condition = or_(condition, ExportTemplate.is_public.is_(True))
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(ExportTemplate)
                    .where(condition)
                    .order_by(ExportTemplate.is_default.desc(), ExportTemplate.name)
                )
            ).scalars().all()
            return [t.to_dict() for t in rows]

    async def update(self, owner_id: str, template_id: int, changes: dict) -> dict:
        async with self._session_factory() as session:
            template = await self._get_owned(session, owner_id, template_id)

            if "name" in changes and changes["name"] != template.name:
                name = validate_name(changes["name"], "Template name")
                if await self._name_taken(session, owner_id, name, exclude_id=template_id):
                    raise DuplicateName("Template with this name already exists")
                template.name = name
            if "description" in changes:
                template.description = validate_description(changes["description"])
            if "format" in changes:
                template.format = validate_format(changes["format"])
            if "fields" in changes:
                template.fields_json = dump_json(normalize_fields(changes["fields"]))
            if "include_related" in changes:
                template.include_related_json = dump_json(normalize_related(changes["include_related"]))
            if "filters" in changes:
                template.filters_json = dump_json(normalize_filters(changes["filters"]))
            if "sort" in changes:
                template.sort_json = dump_json(normalize_sort(changes["sort"]))
            if "is_public" in changes:
                template.is_public = bool(changes["is_public"])
            if "is_default" in changes:
                if changes["is_default"]:
                    await self._clear_default(session, owner_id, keep_id=template_id)
                template.is_default = bool(changes["is_default"])

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateName("Template with this name already exists")
            await session.refresh(template)
            return template.to_dict()

    async def delete(self, owner_id: str, template_id: int) -> dict:
        """Delete a template. Schedules keep their field snapshot."""
        async with self._session_factory() as session:
            template = await self._get_owned(session, owner_id, template_id)
            await session.delete(template)
            await session.commit()
        logger.info("template_deleted", template_id=template_id, owner_id=owner_id)
        return {"deleted": template_id}

    async def set_default(self, owner_id: str, template_id: int) -> dict:
        """Make one template the owner's default: clear siblings, then set, in one transaction."""
        async with self._session_factory() as session:
            template = await self._get_owned(session, owner_id, template_id)
            await self._clear_default(session, owner_id, keep_id=template_id)
            template.is_default = True
            try:
                await session.commit()
            except IntegrityError:
                # Another default for this owner was written concurrently
                await session.rollback()
                raise DuplicateName("Another default template was set concurrently")
            await session.refresh(template)
            return template.to_dict()

    async def duplicate(self, owner_id: str, template_id: int, name: Optional[str] = None) -> dict:
        """Copy an own or public template into the caller's templates.

        The copy is private and never the default. Without a name it is
        called "<source name> (Copy)".
        """
        source = await self.get(owner_id, template_id)
        result = await self.create(
            owner_id,
            name if name is not None else f"{source['name']} (Copy)",
            source["format"],
            source["fields"],
            description=source["description"],
            include_related=source["include_related"],
            filters=source["filters"],
            sort=source["sort"],
            is_default=False,
            is_public=False,
        )
        logger.info("template_duplicated", template_id=template_id, copy_id=result["id"], owner_id=owner_id)
        return result

    async def get_default(self, owner_id: str) -> Optional[dict]:
        async with self._session_factory() as session:
            template = (
                await session.execute(
                    select(ExportTemplate).where(
                        ExportTemplate.owner_id == owner_id, ExportTemplate.is_default.is_(True)
                    )
                )
            ).scalar_one_or_none()
            return template.to_dict() if template else None

    async def increment_usage(self, template_id: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ExportTemplate)
                .where(ExportTemplate.id == template_id)
                .values(usage_count=ExportTemplate.usage_count + 1, last_used_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

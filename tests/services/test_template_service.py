"""Tests for TemplateService."""

from unittest.mock import AsyncMock

import pytest

from export_pipeline.errors import DuplicateName, NotFound, ValidationError


class TestTemplateCrud:
    @pytest.mark.asyncio
    async def test_create_normalizes_settings(self, template_service):
        result = await template_service.create(
            "owner-1",
            "  Customers  ",
            "XLSX",
            [{"name": "email", "order": 2}, {"name": "id", "label": "ID", "order": 1}],
        )
        assert result["name"] == "Customers"
        assert result["format"] == "xlsx"
        assert result["fields"] == [{"name": "id", "label": "ID"}, {"name": "email", "label": "email"}]
        assert result["usage_count"] == 0
        assert result["is_default"] is False

    @pytest.mark.asyncio
    async def test_duplicate_name_per_owner(self, template_service):
        await template_service.create("owner-1", "Customers", "csv", ["id"])
        with pytest.raises(DuplicateName):
            await template_service.create("owner-1", "Customers", "json", ["id"])
        # Another owner may reuse the name
        other = await template_service.create("owner-2", "Customers", "csv", ["id"])
        assert other["owner_id"] == "owner-2"

    @pytest.mark.asyncio
    async def test_invalid_format_rejected(self, template_service):
        with pytest.raises(ValidationError):
            await template_service.create("owner-1", "Bad", "docx", ["id"])

    @pytest.mark.asyncio
    async def test_public_templates_visible_to_others(self, template_service):
        shared = await template_service.create("owner-2", "Shared", "csv", ["id"], is_public=True)
        private = await template_service.create("owner-2", "Private", "csv", ["id"])

        assert (await template_service.get("owner-1", shared["id"]))["name"] == "Shared"
        with pytest.raises(NotFound):
            await template_service.get("owner-1", private["id"])

        names = {t["name"] for t in await template_service.list_templates("owner-1")}
        assert names == {"Shared"}
        assert await template_service.list_templates("owner-1", include_public=False) == []

    @pytest.mark.asyncio
    async def test_only_owner_may_modify(self, template_service):
        shared = await template_service.create("owner-2", "Shared", "csv", ["id"], is_public=True)
        with pytest.raises(NotFound):
            await template_service.update("owner-1", shared["id"], {"name": "Hijacked"})
        with pytest.raises(NotFound):
            await template_service.delete("owner-1", shared["id"])

    @pytest.mark.asyncio
    async def test_update_and_delete(self, template_service):
        template = await template_service.create("owner-1", "Customers", "csv", ["id"])
        await template_service.create("owner-1", "Orders", "csv", ["id"])

        updated = await template_service.update(
            "owner-1", template["id"], {"format": "pdf", "fields": ["id", "total"]}
        )
        assert updated["format"] == "pdf"
        assert [f["name"] for f in updated["fields"]] == ["id", "total"]

        with pytest.raises(DuplicateName):
            await template_service.update("owner-1", template["id"], {"name": "Orders"})

        assert await template_service.delete("owner-1", template["id"]) == {"deleted": template["id"]}
        with pytest.raises(NotFound):
            await template_service.get("owner-1", template["id"])


class TestDefaults:
    @pytest.mark.asyncio
    async def test_single_default_per_owner(self, template_service):
        first = await template_service.create("owner-1", "First", "csv", ["id"], is_default=True)
        second = await template_service.create("owner-1", "Second", "csv", ["id"], is_default=True)

        templates = {t["id"]: t for t in await template_service.list_templates("owner-1")}
        assert templates[first["id"]]["is_default"] is False
        assert templates[second["id"]]["is_default"] is True

        await template_service.set_default("owner-1", first["id"])
        defaults = [t for t in await template_service.list_templates("owner-1") if t["is_default"]]
        assert [t["id"] for t in defaults] == [first["id"]]
        assert (await template_service.get_default("owner-1"))["id"] == first["id"]

    @pytest.mark.asyncio
    async def test_default_is_scoped_to_owner(self, template_service):
        await template_service.create("owner-1", "Mine", "csv", ["id"], is_default=True)
        theirs = await template_service.create("owner-2", "Theirs", "csv", ["id"], is_default=True)

        assert (await template_service.get_default("owner-1"))["name"] == "Mine"
        assert (await template_service.get_default("owner-2"))["id"] == theirs["id"]
        assert await template_service.get_default("owner-3") is None

    @pytest.mark.asyncio
    async def test_increment_usage(self, template_service):
        template = await template_service.create("owner-1", "Customers", "csv", ["id"])
        await template_service.increment_usage(template["id"])
        await template_service.increment_usage(template["id"])

        result = await template_service.get("owner-1", template["id"])
        assert result["usage_count"] == 2
        assert result["last_used_at"] is not None


class TestDuplicate:
    @pytest.mark.asyncio
    async def test_copy_of_own_template(self, template_service):
        source = await template_service.create(
            "owner-1", "Customers", "json", ["id", "email"],
            description="All customers", include_related=["orders"],
            filters={"status": "active"}, sort={"field": "id", "order": "desc"},
            is_default=True, is_public=True,
        )

        copy = await template_service.duplicate("owner-1", source["id"])

        assert copy["id"] != source["id"]
        assert copy["name"] == "Customers (Copy)"
        assert copy["is_default"] is False
        assert copy["is_public"] is False
        assert copy["usage_count"] == 0
        for key in ("format", "fields", "description", "include_related", "filters", "sort"):
            assert copy[key] == source[key]
        # The source keeps its default flag
        assert (await template_service.get_default("owner-1"))["id"] == source["id"]

    @pytest.mark.asyncio
    async def test_copy_of_public_template_belongs_to_caller(self, template_service):
        shared = await template_service.create("owner-2", "Shared", "csv", ["id"], is_public=True)

        copy = await template_service.duplicate("owner-1", shared["id"], name="Mine")

        assert copy["owner_id"] == "owner-1"
        assert copy["name"] == "Mine"
        assert [t["name"] for t in await template_service.list_templates("owner-1", include_public=False)] == [
            "Mine"
        ]

    @pytest.mark.asyncio
    async def test_private_template_of_another_owner_is_not_found(self, template_service):
        private = await template_service.create("owner-2", "Private", "csv", ["id"])
        with pytest.raises(NotFound):
            await template_service.duplicate("owner-1", private["id"])

    @pytest.mark.asyncio
    async def test_name_collision(self, template_service):
        source = await template_service.create("owner-1", "Customers", "csv", ["id"])
        await template_service.duplicate("owner-1", source["id"])
        with pytest.raises(DuplicateName):
            await template_service.duplicate("owner-1", source["id"])
        with pytest.raises(DuplicateName):
            await template_service.duplicate("owner-1", source["id"], name="Customers")


class TestCommitConflicts:
    @pytest.mark.asyncio
    async def test_rename_losing_race_reports_duplicate_name(self, template_service, monkeypatch):
        await template_service.create("owner-1", "Customers", "csv", ["id"])
        other = await template_service.create("owner-1", "Orders", "csv", ["id"])
        # The pre-check passed before a concurrent writer took the name
        monkeypatch.setattr(template_service, "_name_taken", AsyncMock(return_value=False))

        with pytest.raises(DuplicateName):
            await template_service.update("owner-1", other["id"], {"name": "Customers"})
        assert (await template_service.get("owner-1", other["id"]))["name"] == "Orders"

    @pytest.mark.asyncio
    async def test_set_default_losing_race_reports_conflict(self, template_service, monkeypatch):
        first = await template_service.create("owner-1", "First", "csv", ["id"], is_default=True)
        second = await template_service.create("owner-1", "Second", "csv", ["id"])
        # Simulates a concurrent default written after this transaction cleared siblings
        monkeypatch.setattr(template_service, "_clear_default", AsyncMock(return_value=None))

        with pytest.raises(DuplicateName):
            await template_service.set_default("owner-1", second["id"])
        assert (await template_service.get_default("owner-1"))["id"] == first["id"]

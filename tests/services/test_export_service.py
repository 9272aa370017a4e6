"""Tests for ExportService — submission, status, cancel, delete and download."""

import os
import typing

import pytest

from export_pipeline.errors import InvalidTransition, NotAvailable, NotFound, ValidationError
from export_pipeline.models.export_job import STATUS_COMPLETED, STATUS_PROCESSING
from export_pipeline.services.export_service import ExportService


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_creates_pending_job_and_dispatches(self, export_service, service_runner):
        result = await export_service.submit(
            "owner-1",
            format="CSV",
            fields=["name", {"name": "email", "label": "E-mail"}],
            include_related={"orders": True, "notes": False},
        )

        assert result["status"] == "pending"
        assert result["format"] == "csv"
        assert result["fields"] == [
            {"name": "name", "label": "name"},
            {"name": "email", "label": "E-mail"},
        ]
        assert result["include_related"] == ["orders"]
        assert result["sort"] == {"field": "created_at", "order": "desc"}
        assert result["filename"].startswith("records_export_")
        assert result["artifact"] is None
        service_runner.dispatch.assert_called_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"format": "xml", "fields": ["name"]},
            {"format": None, "fields": ["name"]},
            {"format": "csv", "fields": []},
            {"format": "csv", "fields": ["name", "name"]},
            {"format": "csv", "fields": ["name"], "sort": {"field": "name", "order": "sideways"}},
            {"format": "csv", "fields": ["name"], "filters": ["not", "a", "dict"]},
        ],
    )
    async def test_invalid_requests_create_nothing(self, export_service, service_runner, kwargs):
        with pytest.raises(ValidationError):
            await export_service.submit("owner-1", **kwargs)
        service_runner.dispatch.assert_not_called()
        assert (await export_service.list_exports("owner-1"))["total"] == 0

    @pytest.mark.asyncio
    async def test_template_supplies_defaults_and_counts_usage(self, export_service, template_service):
        template = await template_service.create(
            "owner-1", "Customers", "json", ["id", "name"], filters={"status": "active"}
        )

        result = await export_service.submit("owner-1", template_id=template["id"])

        assert result["format"] == "json"
        assert [f["name"] for f in result["fields"]] == ["id", "name"]
        assert result["filters"] == {"status": "active"}
        assert result["template_id"] == template["id"]
        assert (await template_service.get("owner-1", template["id"]))["usage_count"] == 1

    @pytest.mark.asyncio
    async def test_private_template_of_another_owner_is_not_found(self, export_service, template_service):
        template = await template_service.create("owner-2", "Mine", "csv", ["id"])
        with pytest.raises(NotFound):
            await export_service.submit("owner-1", template_id=template["id"])


class TestQueries:
    @pytest.mark.asyncio
    async def test_owner_scoping(self, export_service, make_job):
        job = await make_job(owner_id="owner-2")
        with pytest.raises(NotFound):
            await export_service.get("owner-1", job.export_id)
        assert (await export_service.get("owner-2", job.export_id))["export_id"] == job.export_id

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, export_service, make_job):
        for _ in range(3):
            await make_job()
        await make_job(status=STATUS_COMPLETED)
        await make_job(owner_id="owner-2")

        page = await export_service.list_exports("owner-1", limit=2)
        assert page["total"] == 4
        assert len(page["items"]) == 2

        completed = await export_service.list_exports("owner-1", status="completed")
        assert completed["total"] == 1

        with pytest.raises(ValidationError):
            await export_service.list_exports("owner-1", status="bogus")


class TestCancelAndDelete:
    @pytest.mark.asyncio
    async def test_cancel(self, export_service, make_job):
        job = await make_job()
        result = await export_service.cancel("owner-1", job.export_id)
        assert result["status"] == "cancelled"
        assert result["cancelled_at"] is not None

    @pytest.mark.asyncio
    async def test_cancel_completed_is_rejected(self, export_service, make_job):
        job = await make_job(status=STATUS_COMPLETED)
        with pytest.raises(InvalidTransition):
            await export_service.cancel("owner-1", job.export_id)
        assert (await export_service.get("owner-1", job.export_id))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_delete_removes_record_and_artifact(self, export_service, artifact_store, make_job):
        ref = artifact_store.write("done.csv", b"id\n")
        job = await make_job(status=STATUS_COMPLETED, file_path=ref.path, file_size_bytes=ref.size_bytes)

        assert await export_service.delete("owner-1", job.export_id) == {"deleted": job.export_id}
        assert not os.path.exists(ref.path)
        with pytest.raises(NotFound):
            await export_service.get("owner-1", job.export_id)

    @pytest.mark.asyncio
    async def test_delete_in_flight_is_rejected(self, export_service, make_job):
        job = await make_job(status=STATUS_PROCESSING)
        with pytest.raises(InvalidTransition):
            await export_service.delete("owner-1", job.export_id)

    @pytest.mark.asyncio
    async def test_bulk_reports_each_id(self, export_service, make_job):
        pending = await make_job()
        done = await make_job(status=STATUS_COMPLETED)

        result = await export_service.bulk("owner-1", "cancel", [pending.export_id, done.export_id, "missing"])

        assert result["succeeded"] == 1
        assert result["failed"] == 2
        by_id = {r["id"]: r for r in result["results"]}
        assert by_id[pending.export_id]["success"] is True
        assert by_id[done.export_id]["error"]["code"] == "INVALID_TRANSITION"
        assert by_id["missing"]["error"]["code"] == "NOT_FOUND"

        with pytest.raises(ValidationError):
            await export_service.bulk("owner-1", "archive", [pending.export_id])


class TestDownload:
    @pytest.mark.asyncio
    async def test_download_completed(self, export_service, artifact_store, make_job):
        ref = artifact_store.write("report.json", b"[]")
        job = await make_job(status=STATUS_COMPLETED, format="json", filename="report.json", file_path=ref.path)

        download = await export_service.open_download("owner-1", job.export_id)

        assert download == {"path": ref.path, "filename": "report.json", "media_type": "application/json"}
        assert (await export_service.get("owner-1", job.export_id))["download_count"] == 1

    @pytest.mark.asyncio
    async def test_download_unavailable(self, export_service, make_job):
        pending = await make_job()
        with pytest.raises(NotAvailable):
            await export_service.open_download("owner-1", pending.export_id)

        gone = await make_job(status=STATUS_COMPLETED, file_path="/nonexistent/file.csv")
        with pytest.raises(NotAvailable):
            await export_service.open_download("owner-1", gone.export_id)


class TestSignatures:
    def test_bulk_annotation_uses_builtin_list(self):
        assert typing.get_type_hints(ExportService.bulk)["export_ids"] == list[str]
        assert not hasattr(ExportService, "list")

"""
Tests for the Document Store implementations, templates and responses.

Run tests:
    pytest tests/test_document_store.py -v
"""

import json
import sys
from pathlib import Path

import httpx
import pytest

# Ensure the repository root is in the path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from api.app_config import AppSettings
from api.document_store import (
    FileDocumentStore,
    HttpDocumentStore,
    RemoteResponseTable,
    ResponseArchive,
    TemplateStore,
    build_document_store,
    validate_key,
)
from api.errors import DocumentNotFound, MalformedDocument, StoreUnavailable
from api.schema import ResponseRecord, ResponseStorageConfig, SurveyTemplate
from factories import make_document, make_record


class TestValidateKey:

    @pytest.mark.parametrize("key", ["p1", "project-2024_01", "a.b"])
    def test_accepts_simple_ids(self, key):
        assert validate_key(key) == key

    @pytest.mark.parametrize("key", ["", ".", "..", "../etc", "a/b", "with space", "p1\x00"])
    def test_rejects_unsafe_ids(self, key):
        with pytest.raises(ValueError):
            validate_key(key)


class TestFileDocumentStore:

    @pytest.mark.asyncio
    async def test_put_then_get(self, tmp_path):
        store = FileDocumentStore(tmp_path)

        filename = await store.put(make_record("p1", document=make_document(title="Saved")))
        record = await store.get("p1")

        assert filename == "p1.json"
        assert record.survey_document.title == "Saved"
        assert record.version == "2.0"
        assert record.saved_at is not None

    @pytest.mark.asyncio
    async def test_file_layout(self, tmp_path):
        store = FileDocumentStore(tmp_path)
        await store.put(make_record("p1"))

        data = json.loads((tmp_path / "p1.json").read_text(encoding="utf-8"))

        assert set(data) >= {"project", "surveyDocument", "savedAt", "version"}
        assert data["project"]["id"] == "p1"
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_put_replaces(self, tmp_path):
        store = FileDocumentStore(tmp_path)
        await store.put(make_record("p1", document=make_document(title="First")))
        await store.put(make_record("p1", document=make_document(title="Second")))

        assert (await store.get("p1")).survey_document.title == "Second"
        assert await store.list_ids() == ["p1"]

    @pytest.mark.asyncio
    async def test_missing_document(self, tmp_path):
        with pytest.raises(DocumentNotFound) as exc_info:
            await FileDocumentStore(tmp_path).get("ghost")
        assert exc_info.value.project_id == "ghost"

    @pytest.mark.asyncio
    async def test_invalid_json_is_malformed(self, tmp_path):
        (tmp_path / "p1.json").write_text("{broken", encoding="utf-8")
        with pytest.raises(MalformedDocument):
            await FileDocumentStore(tmp_path).get("p1")

    @pytest.mark.asyncio
    async def test_schema_violation_is_malformed(self, tmp_path):
        (tmp_path / "p1.json").write_text(json.dumps({"surveyDocument": {"pages": []}}), encoding="utf-8")
        with pytest.raises(MalformedDocument):
            await FileDocumentStore(tmp_path).get("p1")

    @pytest.mark.asyncio
    async def test_legacy_file_loads(self, tmp_path):
        legacy = {
            "project": {"id": "old", "name": "Old project"},
            "surveyConfig": {"title": "Legacy", "pages": [{"name": "page1", "elements": []}]},
            "supabaseConfig": {"url": "https://db.example.org", "secretKey": "k"},
            "savedAt": "2024-01-01T00:00:00.000Z",
            "version": "2.0",
        }
        (tmp_path / "old.json").write_text(json.dumps(legacy), encoding="utf-8")

        record = await FileDocumentStore(tmp_path).get("old")

        assert record.survey_document.title == "Legacy"
        assert record.response_storage_config.secret_key == "k"

    @pytest.mark.asyncio
    async def test_lightweight_get(self, tmp_path, image_pool):
        store = FileDocumentStore(tmp_path)
        await store.put(make_record("p1", images=image_pool))

        light = await store.get("p1", lightweight=True)
        full = await store.get("p1")

        assert light.is_lightweight
        assert light.project.image_dataset_config.preloaded_images_count == 5
        assert len(full.project.preloaded_images) == 5

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        store = FileDocumentStore(tmp_path)
        await store.put(make_record("p1"))

        assert await store.delete("p1") is True
        assert await store.delete("p1") is False
        assert await store.list_ids() == []

    @pytest.mark.asyncio
    async def test_list_ids_sorted(self, tmp_path):
        store = FileDocumentStore(tmp_path)
        for project_id in ("b", "c", "a"):
            await store.put(make_record(project_id))

        assert await store.list_ids() == ["a", "b", "c"]


def store_handler(records):
    """A minimal in-memory ``/api/documents`` server."""

    def handler(request):
        parts = request.url.path.rstrip("/").split("/")
        if parts[-1] == "documents":
            return httpx.Response(200, json={"documents": sorted(records), "total": len(records)})
        project_id = parts[-1]
        if request.method == "GET":
            if project_id not in records:
                return httpx.Response(404, json={"detail": "Project not found"})
            return httpx.Response(200, json={"success": True, **records[project_id]})
        if request.method == "PUT":
            records[project_id] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "filename": f"{project_id}.json"})
        if request.method == "DELETE":
            deleted = records.pop(project_id, None) is not None
            return httpx.Response(200, json={"success": True, "deleted": deleted})
        return httpx.Response(405, json={"detail": "Method not allowed"})

    return handler


class TestHttpDocumentStore:

    @pytest.mark.asyncio
    async def test_round_trip(self):
        records = {}
        async with httpx.AsyncClient(transport=httpx.MockTransport(store_handler(records))) as client:
            store = HttpDocumentStore("http://store.test/api", client=client)

            filename = await store.put(make_record("p1", document=make_document(title="Remote")))
            record = await store.get("p1")
            ids = await store.list_ids()
            deleted = await store.delete("p1")
            deleted_again = await store.delete("p1")

        assert filename == "p1.json"
        assert record.survey_document.title == "Remote"
        assert ids == ["p1"]
        assert deleted is True
        assert deleted_again is False

    @pytest.mark.asyncio
    async def test_not_found(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(store_handler({}))) as client:
            with pytest.raises(DocumentNotFound):
                await HttpDocumentStore("http://store.test/api", client=client).get("ghost")

    @pytest.mark.asyncio
    async def test_rejected_write_carries_server_error(self):
        def handler(request):
            return httpx.Response(500, json={"success": False, "error": "disk full"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(StoreUnavailable, match="disk full"):
                await HttpDocumentStore("http://store.test/api", client=client).put(make_record("p1"))

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            store = HttpDocumentStore("http://store.test/api", client=client)
            with pytest.raises(StoreUnavailable):
                await store.get("p1")
            with pytest.raises(StoreUnavailable):
                await store.put(make_record("p1"))

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(StoreUnavailable, match="timed out"):
                await HttpDocumentStore("http://store.test/api", client=client).get("p1")

    @pytest.mark.asyncio
    async def test_lightweight_query(self):
        seen = {}

        def handler(request):
            seen["query"] = dict(request.url.params)
            return httpx.Response(200, json={"success": True, **make_record("p1").to_json_dict()})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await HttpDocumentStore("http://store.test/api", client=client).get("p1", lightweight=True)

        assert seen["query"] == {"lightweight": "true"}

    def test_factory_picks_backend(self, tmp_path):
        assert isinstance(build_document_store(AppSettings(data_dir=tmp_path)), FileDocumentStore)
        remote = build_document_store(AppSettings(data_dir=tmp_path, store_url="http://store.test/api"))
        assert isinstance(remote, HttpDocumentStore)
        assert remote.base_url == "http://store.test/api"


class TestTemplateStore:

    @pytest.mark.asyncio
    async def test_save_get_delete(self, tmp_path):
        templates = TemplateStore(tmp_path)
        template = SurveyTemplate(id="streets", name="Street survey", survey_document=make_document())

        assert await templates.save(template) == "streets.json"
        assert templates.list_files() == ["streets.json"]
        loaded = await templates.get("streets")
        assert loaded.name == "Street survey"
        assert loaded.survey_document.title == "Street perception"

        assert templates.delete("streets") is True
        assert await templates.get("streets") is None


class TestResponseArchive:

    @pytest.mark.asyncio
    async def test_append_never_overwrites(self, tmp_path):
        archive = ResponseArchive(tmp_path)
        record = ResponseRecord.model_validate({
            "participantId": "alice",
            "responses": {"q1": True},
            "displayedImages": {"q1": ["street_1.jpg"]},
            "surveyMetadata": {"projectId": "p1", "surveyVersion": "2.0-admin-p1"},
        })

        first = await archive.append(record)
        second = await archive.append(record)

        assert first != second
        assert first.startswith("response_alice_")
        assert len(list(tmp_path.glob("response_*.json"))) == 2

    @pytest.mark.asyncio
    async def test_participant_id_sanitized(self, tmp_path):
        record = ResponseRecord(participant_id="../../etc/passwd")
        filename = await ResponseArchive(tmp_path).append(record)

        assert "/" not in filename
        assert (tmp_path / filename).exists()

    @pytest.mark.asyncio
    async def test_list_records_filters_by_project(self, tmp_path):
        archive = ResponseArchive(tmp_path)
        for participant, project_id in (("a", "p1"), ("b", "p2"), ("c", "p1")):
            await archive.append(ResponseRecord.model_validate({
                "participantId": participant,
                "surveyMetadata": {"projectId": project_id},
            }))
        (tmp_path / "response_broken.json").write_text("{", encoding="utf-8")

        records = await archive.list_records("p1")

        assert sorted(record.participant_id for record in records) == ["a", "c"]
        assert len(await archive.list_records()) == 3


class TestRemoteResponseTable:

    @pytest.mark.asyncio
    async def test_insert_into_configured_table(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["prefer"] = request.headers.get("Prefer")
            return httpx.Response(201)

        config = ResponseStorageConfig(enabled=True, url="https://db.example.org/", table="street_answers")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await RemoteResponseTable(config, client=client).insert(ResponseRecord(participant_id="carol"))

        assert seen["path"] == "/rest/v1/street_answers"
        assert seen["prefer"] == "return=minimal"

    @pytest.mark.asyncio
    async def test_rejected_insert(self):
        config = ResponseStorageConfig(enabled=True, url="https://db.example.org")
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(409, text="duplicate"))) as client:
            with pytest.raises(StoreUnavailable, match="HTTP 409"):
                await RemoteResponseTable(config, client=client).insert(ResponseRecord())

    def test_missing_url(self):
        with pytest.raises(StoreUnavailable):
            RemoteResponseTable(ResponseStorageConfig(enabled=True))

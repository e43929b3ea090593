"""
Tests for the Project Reconciliation Controller.

Covers activation (cache first, store second), edits, persistence success
and failure, lightweight re-fetch, and per-project persist serialization.

Run tests:
    pytest tests/test_reconciliation.py -v
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

# Ensure the repository root is in the path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from api.document_store import FileDocumentStore
from api.errors import DocumentNotFound, StoreUnavailable
from api.reconciliation import ProjectReconciliationController
from api.schema import ImageDatasetConfig, StoredProject
from api.session_cache import MemoryMirror, SessionStateCache, documents_equal
from factories import make_document, make_project, make_record


@pytest.fixture
def store(tmp_path):
    return FileDocumentStore(tmp_path / "projects")


@pytest.fixture
def controller(store):
    return ProjectReconciliationController(store, SessionStateCache(MemoryMirror()), persist_timeout=2.0)


async def seed(store, *records):
    for record in records:
        await store.put(record)


class TestActivation:

    @pytest.mark.asyncio
    async def test_fresh_activation_seeds_clean_state(self, store, controller):
        await seed(store, make_record("p1"))

        result = await controller.activate_project("p1")

        assert result.restored is False
        assert result.is_dirty is False
        assert result.active_tab_index == 0
        assert result.document.title == "Street perception"
        assert "p1" in controller.cache
        assert controller.active_project_id == "p1"

    @pytest.mark.asyncio
    async def test_edits_survive_round_trip_through_another_project(self, store, controller):
        await seed(store, make_record("p1"), make_record("p2"))
        edited = make_document(title="Edited in session")

        await controller.activate_project("p1")
        controller.record_edit("p1", edited)
        controller.record_tab_change("p1", 2)
        await controller.activate_project("p2")
        result = await controller.activate_project("p1")

        assert result.restored is True
        assert result.is_dirty is True
        assert result.active_tab_index == 2
        assert documents_equal(result.document, edited)

    @pytest.mark.asyncio
    async def test_cache_wins_over_store(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")
        controller.record_edit("p1", make_document(title="Local"))

        # Someone else saved in the meantime.
        await store.put(make_record("p1", document=make_document(title="Remote")))
        await controller.activate_project("p1")

        assert controller.get_state("p1").draft_document.title == "Local"

    @pytest.mark.asyncio
    async def test_missing_project_raises(self, controller):
        with pytest.raises(DocumentNotFound):
            await controller.activate_project("ghost")
        assert "ghost" not in controller.cache

    @pytest.mark.asyncio
    async def test_empty_id_rejected(self, controller):
        with pytest.raises(ValueError):
            await controller.activate_project("")

    @pytest.mark.asyncio
    async def test_record_without_document_gets_default(self, store, controller):
        await seed(store, StoredProject(project=make_project("p1")))

        result = await controller.activate_project("p1")

        assert result.document.title == "Urban Streetscape Perception Survey"
        assert result.document.pages[0].name == "demographics"
        assert result.is_dirty is False

    @pytest.mark.asyncio
    async def test_lightweight_record_is_refetched_in_full(self, store, controller, image_pool):
        await seed(store, make_record("p1", images=image_pool))

        result = await controller.activate_project("p1", lightweight_first=True)

        assert len(result.project.preloaded_images) == 5
        assert not result.project.is_lightweight

    @pytest.mark.asyncio
    async def test_failed_refetch_degrades_to_lightweight(self, store, controller, image_pool):
        await seed(store, make_record("p1", images=image_pool))
        lightweight = await store.get("p1", lightweight=True)

        with patch.object(
            store,
            "get",
            AsyncMock(side_effect=[lightweight, StoreUnavailable("connection reset")]),
        ):
            result = await controller.activate_project("p1", lightweight_first=True)

        assert result.project.is_lightweight
        assert result.project.image_dataset_config.preloaded_images_count == 5


class TestEdits:

    @pytest.mark.asyncio
    async def test_edit_back_to_persisted_clears_dirty(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")

        assert controller.record_edit("p1", make_document(title="Changed")) is True
        assert controller.record_edit("p1", make_document()) is False

    @pytest.mark.asyncio
    async def test_record_edit_is_idempotent(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")
        edited = make_document(title="Changed")

        controller.record_edit("p1", edited)
        first = controller.get_state("p1").to_dict()
        controller.record_edit("p1", edited)

        assert controller.get_state("p1").to_dict() == first

    def test_edit_unknown_project(self, controller):
        with pytest.raises(LookupError):
            controller.record_edit("p1", make_document())

    @pytest.mark.asyncio
    async def test_negative_tab_rejected(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")
        with pytest.raises(ValueError):
            controller.record_tab_change("p1", -1)

    @pytest.mark.asyncio
    async def test_image_dataset_change_marks_dirty(self, store, controller, image_pool):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")

        config = ImageDatasetConfig(preloaded_images=image_pool)
        assert controller.record_image_dataset_change("p1", config) is True

        result = await controller.persist("p1")
        assert result.success is True
        assert result.is_dirty is False
        stored = await store.get("p1")
        assert len(stored.project.preloaded_images) == 5


class TestPersist:

    @pytest.mark.asyncio
    async def test_success_clears_dirty_with_a_copy(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")
        controller.record_edit("p1", make_document(title="Saved title"))

        result = await controller.persist("p1")

        assert result.success is True
        assert result.is_dirty is False
        assert result.filename == "p1.json"
        state = controller.get_state("p1")
        assert documents_equal(state.last_persisted_document, state.draft_document)
        assert state.last_persisted_document is not state.draft_document
        assert (await store.get("p1")).survey_document.title == "Saved title"

    @pytest.mark.asyncio
    async def test_failure_keeps_dirty_draft(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")
        edited = make_document(title="Not yet saved")
        controller.record_edit("p1", edited)

        with patch.object(store, "put", AsyncMock(side_effect=StoreUnavailable("store offline"))):
            result = await controller.persist("p1")

        assert result.success is False
        assert result.is_dirty is True
        assert result.error == "store offline"
        state = controller.get_state("p1")
        assert state.is_dirty is True
        assert documents_equal(state.draft_document, edited)
        assert state.last_persisted_document.title == "Street perception"

    @pytest.mark.asyncio
    async def test_timeout_keeps_dirty_draft(self, store):
        controller = ProjectReconciliationController(
            store, SessionStateCache(MemoryMirror()), persist_timeout=0.05
        )
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")
        controller.record_edit("p1", make_document(title="Slow"))

        async def hanging_put(record):
            await asyncio.sleep(5)

        with patch.object(store, "put", AsyncMock(side_effect=hanging_put)):
            result = await controller.persist("p1")

        assert result.success is False
        assert "timed out" in result.error
        assert controller.get_state("p1").is_dirty is True

    @pytest.mark.asyncio
    async def test_edit_during_flight_stays_dirty(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")
        sent = make_document(title="Sent")
        controller.record_edit("p1", sent)
        real_put = store.put

        async def put_while_editing(record):
            controller.record_edit("p1", make_document(title="Typed meanwhile"))
            return await real_put(record)

        with patch.object(store, "put", AsyncMock(side_effect=put_while_editing)):
            result = await controller.persist("p1")

        assert result.success is True
        assert result.is_dirty is True
        state = controller.get_state("p1")
        assert documents_equal(state.last_persisted_document, sent)
        assert state.draft_document.title == "Typed meanwhile"

    @pytest.mark.asyncio
    async def test_persists_for_one_project_do_not_overlap(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")
        controller.record_edit("p1", make_document(title="Concurrent"))
        in_flight = 0
        peak = 0

        async def slow_put(record):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            return "p1.json"

        with patch.object(store, "put", AsyncMock(side_effect=slow_put)):
            results = await asyncio.gather(controller.persist("p1"), controller.persist("p1"))

        assert peak == 1
        assert all(result.success for result in results)

    @pytest.mark.asyncio
    async def test_on_persisted_called(self, store):
        callback = AsyncMock()
        controller = ProjectReconciliationController(
            store, SessionStateCache(MemoryMirror()), on_persisted=callback
        )
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")

        await controller.persist("p1")

        callback.assert_awaited_once_with("p1")

    @pytest.mark.asyncio
    async def test_persist_inactive_cached_project(self, store, controller):
        await seed(store, make_record("p1"), make_record("p2"))
        await controller.activate_project("p1")
        controller.record_edit("p1", make_document(title="Background save"))
        await controller.activate_project("p2")

        result = await controller.persist("p1")

        assert result.success is True
        assert controller.summary()["p1"]["isDirty"] is False


class TestDeletion:

    @pytest.mark.asyncio
    async def test_delete_project_forgets_session_state(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")

        assert await controller.delete_project("p1") is True

        assert "p1" not in controller.cache
        assert controller.active_project_id is None
        with pytest.raises(DocumentNotFound):
            await store.get("p1")

    @pytest.mark.asyncio
    async def test_deactivate_stashes_state(self, store, controller):
        await seed(store, make_record("p1"))
        await controller.activate_project("p1")
        controller.record_edit("p1", make_document(title="Kept"))

        controller.deactivate_project()

        assert controller.active_project_id is None
        assert controller.cache.get("p1").draft_document.title == "Kept"

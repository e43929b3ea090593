"""
Editor session API routes.

An editor session is one browser tab of the admin panel. Each session owns
a ``ProjectReconciliationController`` whose Session State Cache is
mirrored to ``<data>/sessions/<sessionId>.json``, so switching projects
never loses unsaved edits and a reload of the tab resumes where it left
off.
"""

from collections import OrderedDict
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from realtime import notify_document_deleted, notify_document_saved

from .app_config import AppSettings, load_settings
from .document_store import build_document_store, validate_key
from .documents import store_http_exception
from .errors import StoreError
from .reconciliation import ProjectReconciliationController
from .schema import ImageDatasetConfig, SurveyDocument
from .session_cache import JsonFileMirror, ProjectEditingState, SessionStateCache
from .shared.logger import get_logger
from .survey_editing import duplicate_page, find_name_collisions

router = APIRouter(prefix="/editor/sessions/{session_id}", tags=["editor"])
logger = get_logger(__name__)


class ActivateRequest(BaseModel):
    lightweight_first: bool = Field(default=False, alias="lightweightFirst")

    model_config = {"populate_by_name": True}


class TabChange(BaseModel):
    index: int = Field(ge=0)


class EditorSessionRegistry:
    """One reconciliation controller per editor session.

    At most ``max_sessions`` controllers stay in memory; the least recently
    used one is dropped first. A dropped session keeps its mirror file and
    is rebuilt from it on its next request.
    """

    def __init__(self, max_sessions: Optional[int] = None):
        self.max_sessions = max_sessions
        self._controllers: "OrderedDict[str, ProjectReconciliationController]" = OrderedDict()

    def get(self, session_id: str, settings: Optional[AppSettings] = None) -> ProjectReconciliationController:
        validate_key(session_id)
        controller = self._controllers.get(session_id)
        if controller is not None:
            self._controllers.move_to_end(session_id)
            return controller

        settings = settings or load_settings()
        mirror = JsonFileMirror(settings.sessions_dir / f"{session_id}.json")
        controller = ProjectReconciliationController(
            store=build_document_store(settings),
            cache=SessionStateCache(mirror),
            persist_timeout=settings.persist_timeout,
            on_persisted=notify_document_saved,
        )
        self._controllers[session_id] = controller
        logger.debug("Editor session %s opened", session_id)
        self._evict(self.max_sessions or settings.max_sessions)
        return controller

    def _evict(self, limit: int) -> None:
        while len(self._controllers) > limit:
            session_id, _ = self._controllers.popitem(last=False)
            logger.info("Editor session %s dropped from memory, state kept in its mirror", session_id)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._controllers

    def __len__(self) -> int:
        return len(self._controllers)

    async def close(self, session_id: str) -> bool:
        """Drop a session and its mirror."""
        controller = self._controllers.pop(session_id, None)
        if controller is None:
            return False
        controller.cache.clear()
        await controller.cache.drain()
        return True

    def reset(self) -> None:
        self._controllers.clear()


editor_sessions = EditorSessionRegistry()


def _get_controller(session_id: str) -> ProjectReconciliationController:
    try:
        return editor_sessions.get(session_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _get_state(controller: ProjectReconciliationController, project_id: str) -> ProjectEditingState:
    try:
        return controller.get_state(project_id)
    except LookupError as e:
        raise HTTPException(status_code=409, detail=str(e))


def _state_payload(project_id: str, state: ProjectEditingState) -> dict:
    return {
        "projectId": project_id,
        "project": state.project.to_json_dict(),
        "document": state.draft_document.to_json_dict(),
        "activeTabIndex": state.active_tab_index,
        "isDirty": state.is_dirty,
        "nameCollisions": find_name_collisions(state.draft_document),
    }


@router.get("/state")
async def get_session_state(session_id: str):
    """Dirty flag and active tab of every project touched in this session."""
    controller = _get_controller(session_id)
    return {
        "sessionId": session_id,
        "activeProjectId": controller.active_project_id,
        "projects": controller.summary(),
    }


@router.delete("")
async def close_session(session_id: str):
    """Forget the session, unsaved drafts included."""
    _get_controller(session_id)
    return {"success": await editor_sessions.close(session_id)}


@router.post("/deactivate")
async def deactivate(session_id: str):
    controller = _get_controller(session_id)
    controller.deactivate_project()
    await controller.cache.drain()
    return {"success": True}


@router.post("/projects/{project_id}/activate")
async def activate_project(session_id: str, project_id: str, body: Optional[ActivateRequest] = None):
    """Switch the session to a project, restoring cached edits when present."""
    controller = _get_controller(session_id)
    lightweight_first = body.lightweight_first if body is not None else False
    try:
        result = await controller.activate_project(project_id, lightweight_first=lightweight_first)
    except StoreError as e:
        raise store_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "projectId": project_id,
        "project": result.project.to_json_dict(),
        "document": result.document.to_json_dict(),
        "activeTabIndex": result.active_tab_index,
        "isDirty": result.is_dirty,
        "restored": result.restored,
        "nameCollisions": find_name_collisions(result.document),
    }


@router.get("/projects/{project_id}")
async def get_project_state(session_id: str, project_id: str):
    controller = _get_controller(session_id)
    return _state_payload(project_id, _get_state(controller, project_id))


@router.put("/projects/{project_id}/draft")
async def update_draft(session_id: str, project_id: str, body: SurveyDocument):
    """Replace the project's draft. Never touches the Document Store."""
    controller = _get_controller(session_id)
    try:
        is_dirty = controller.record_edit(project_id, body)
    except LookupError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await controller.cache.drain()
    return {"isDirty": is_dirty, "nameCollisions": find_name_collisions(body)}


@router.put("/projects/{project_id}/tab")
async def change_tab(session_id: str, project_id: str, body: TabChange):
    controller = _get_controller(session_id)
    try:
        controller.record_tab_change(project_id, body.index)
    except LookupError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await controller.cache.drain()
    return {"activeTabIndex": body.index}


@router.put("/projects/{project_id}/image-dataset")
async def change_image_dataset(session_id: str, project_id: str, body: ImageDatasetConfig):
    controller = _get_controller(session_id)
    try:
        is_dirty = controller.record_image_dataset_change(project_id, body)
    except LookupError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await controller.cache.drain()
    return {"isDirty": is_dirty}


@router.post("/projects/{project_id}/pages/{page_index}/duplicate")
async def duplicate_draft_page(session_id: str, project_id: str, page_index: int):
    """Duplicate a page of the draft right after itself."""
    controller = _get_controller(session_id)
    state = _get_state(controller, project_id)
    try:
        document = duplicate_page(state.draft_document, page_index)
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    is_dirty = controller.record_edit(project_id, document)
    await controller.cache.drain()
    return {
        "document": document.to_json_dict(),
        "isDirty": is_dirty,
        "nameCollisions": find_name_collisions(document),
    }


@router.post("/projects/{project_id}/persist")
async def persist_project(session_id: str, project_id: str):
    """Flush the draft to the Document Store.

    A failed save is not an HTTP error: the draft stays in the session,
    ``success`` is false and ``isDirty`` stays true.
    """
    controller = _get_controller(session_id)
    try:
        result = await controller.persist(project_id)
    except LookupError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "success": result.success,
        "isDirty": result.is_dirty,
        "error": result.error,
        "filename": result.filename,
    }


@router.delete("/projects/{project_id}")
async def delete_project(session_id: str, project_id: str):
    """Delete a project from the Document Store and from this session."""
    controller = _get_controller(session_id)
    try:
        deleted = await controller.delete_project(project_id)
    except StoreError as e:
        raise store_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if deleted:
        await notify_document_deleted(project_id)
    return {"success": True, "deleted": deleted}

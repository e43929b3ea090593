"""
Document Store API routes.

One JSON document per project, keyed by project id. These routes are the
HTTP surface ``HttpDocumentStore`` consumes; saving or deleting a document
notifies the project's realtime channel.
"""

from datetime import datetime

from fastapi import APIRouter, HTTPException

from realtime import notify_document_deleted, notify_document_saved

from .app_config import load_settings
from .document_store import FileDocumentStore, validate_key
from .errors import DocumentNotFound, MalformedDocument, StoreError, StoreUnavailable
from .schema import StoredProject
from .shared.logger import get_logger

router = APIRouter(prefix="/documents", tags=["documents"])
logger = get_logger(__name__)


def _get_document_store() -> FileDocumentStore:
    return FileDocumentStore(load_settings().projects_dir)


def store_http_exception(error: StoreError) -> HTTPException:
    """Translate a store error into the matching HTTP error."""
    if isinstance(error, DocumentNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, MalformedDocument):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, StoreUnavailable):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def _check_id(project_id: str) -> None:
    try:
        validate_key(project_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("")
async def list_documents():
    """List stored project identifiers."""
    ids = await _get_document_store().list_ids()
    return {"documents": ids, "total": len(ids)}


@router.put("/{project_id}")
async def put_document(project_id: str, body: StoredProject):
    """Store a project document, replacing the previous version."""
    _check_id(project_id)
    if body.project.id != project_id:
        raise HTTPException(
            status_code=400,
            detail=f"Project id mismatch: path '{project_id}', body '{body.project.id}'",
        )
    record = body.model_copy(update={"saved_at": datetime.now().isoformat()})
    try:
        filename = await _get_document_store().put(record)
    except StoreError as e:
        raise store_http_exception(e)

    await notify_document_saved(project_id, record.saved_at)
    return {"success": True, "filename": filename}


@router.get("/{project_id}")
async def get_document(project_id: str, lightweight: bool = False):
    """Fetch a project document; ``lightweight`` leaves out the preloaded images."""
    _check_id(project_id)
    try:
        record = await _get_document_store().get(project_id, lightweight=lightweight)
    except StoreError as e:
        raise store_http_exception(e)
    return {"success": True, **record.to_json_dict()}


@router.delete("/{project_id}")
async def delete_document(project_id: str):
    """Delete a project document. Deleting a missing document succeeds."""
    _check_id(project_id)
    deleted = await _get_document_store().delete(project_id)
    if deleted:
        await notify_document_deleted(project_id)
    return {"success": True, "deleted": deleted}

"""
Participant response API endpoints.

Responses are write-once. A project whose ``responseStorageConfig`` is
enabled gets its responses inserted into its own database; otherwise, or
when that insert fails, each submission lands in its own local file and is
never modified afterwards.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from .app_config import AppSettings, load_settings
from .document_store import RemoteResponseTable, ResponseArchive, build_document_store
from .errors import StoreError
from .schema import ResponseRecord, ResponseStorageConfig
from .shared.logger import get_logger

router = APIRouter(prefix="/responses", tags=["responses"])
logger = get_logger(__name__)


def _get_response_archive() -> ResponseArchive:
    return ResponseArchive(load_settings().responses_dir)


def _get_remote_table(config: ResponseStorageConfig, settings: AppSettings) -> RemoteResponseTable:
    return RemoteResponseTable(config, timeout=settings.persist_timeout)


async def _project_storage_config(settings: AppSettings, project_id: Optional[str]) -> Optional[ResponseStorageConfig]:
    """The project's enabled response storage, if any."""
    if not project_id:
        return None
    try:
        record = await build_document_store(settings).get(project_id, lightweight=True)
    except (StoreError, ValueError) as e:
        logger.warning("Could not read response storage for project %s: %s", project_id, e)
        return None
    config = record.project.response_storage_config or record.response_storage_config
    if config is None or not config.enabled or not config.url:
        return None
    return config


@router.post("")
async def submit_response(body: ResponseRecord):
    """Store one participant submission, remotely when the project says so."""
    settings = load_settings()
    config = await _project_storage_config(settings, body.survey_metadata.project_id)
    if config is not None:
        try:
            await _get_remote_table(config, settings).insert(body)
            return {"success": True, "storage": "remote"}
        except StoreError as e:
            logger.warning(
                "Remote response storage failed for project %s, saving locally: %s",
                body.survey_metadata.project_id, e,
            )

    try:
        filename = await _get_response_archive().append(body)
    except (StoreError, OSError) as e:
        logger.error("Error saving response for participant %s: %s", body.participant_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to save response: {e}")
    return {"success": True, "storage": "file", "filename": filename}


@router.get("")
async def list_responses(project_id: Optional[str] = Query(None, alias="projectId")):
    """Locally stored submissions, optionally limited to one project."""
    records = await _get_response_archive().list_records(project_id)
    return {
        "responses": [record.to_json_dict() for record in records],
        "total": len(records),
    }

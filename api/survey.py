"""
Participant-facing survey endpoint.

Each request materializes the project's survey afresh, so every
participant gets an independent random draw of images. The response
carries the names of the images drawn per question; the client sends them
back in ``displayedImages`` when submitting.
"""

import httpx
from fastapi import APIRouter, HTTPException

from .app_config import load_settings
from .document_store import build_document_store, validate_key
from .documents import store_http_exception
from .errors import StoreError
from .image_sources import ImageResolver
from .materialize import materialize
from .schema import STORE_FORMAT_VERSION
from .shared.logger import get_logger

router = APIRouter(prefix="/survey", tags=["survey"])
logger = get_logger(__name__)


def survey_version(project_id: str) -> str:
    return f"{STORE_FORMAT_VERSION}-admin-{project_id}"


@router.get("/{project_id}")
async def get_runtime_survey(project_id: str):
    """Renderer-ready survey for one participant session."""
    try:
        validate_key(project_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    settings = load_settings()
    try:
        record = await build_document_store(settings).get(project_id)
    except StoreError as e:
        raise store_http_exception(e)

    document = record.survey_document
    if document is None:
        raise HTTPException(status_code=404, detail=f"Project {project_id} has no survey document")

    preloaded = document.preloaded_images or record.project.preloaded_images
    async with httpx.AsyncClient(timeout=settings.image_timeout) as client:
        resolver = ImageResolver(preloaded, client=client, timeout=settings.image_timeout)
        runtime = await materialize(document, resolver)

    return {
        "projectId": project_id,
        "surveyVersion": survey_version(project_id),
        **runtime.to_dict(),
    }

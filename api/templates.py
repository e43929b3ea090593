"""Survey template API endpoints."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ValidationError

from .app_config import load_settings
from .document_store import TemplateStore
from .schema import SurveyTemplate

router = APIRouter(prefix="/templates", tags=["templates"])


class TemplateSave(BaseModel):
    template: SurveyTemplate


def _get_template_store() -> TemplateStore:
    return TemplateStore(load_settings().templates_dir)


@router.get("")
async def list_templates():
    """List stored template files."""
    files = _get_template_store().list_files()
    return {"files": files, "total": len(files)}


@router.post("")
async def save_template(body: TemplateSave):
    """Save a template, replacing any template with the same id."""
    try:
        filename = await _get_template_store().save(body.template)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "filename": filename}


@router.get("/{template_id}")
async def get_template(template_id: str):
    try:
        template = await _get_template_store().get(template_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Template '{template_id}' is malformed: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if template is None:
        raise HTTPException(status_code=404, detail="Template not found")
    return {"success": True, "template": template.to_json_dict()}


@router.delete("/{template_id}")
async def delete_template(template_id: str):
    """Delete a template. Deleting a missing template succeeds."""
    try:
        deleted = _get_template_store().delete(template_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "deleted": deleted}

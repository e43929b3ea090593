"""
API package for the survey studio FastAPI backend.

This package provides:
- Document Store routes and clients (documents.py, document_store.py)
- Participant responses and survey templates (responses.py, templates.py)
- Runtime survey materialization (survey.py, materialize.py, image_sources.py)
- Editor sessions with project reconciliation (editor.py, reconciliation.py,
  session_cache.py, survey_editing.py)
- System health and info (system.py)
"""

from .errors import (
    DocumentNotFound,
    ImageResolutionFailure,
    MalformedCacheEntry,
    MalformedDocument,
    StoreError,
    StoreUnavailable,
    SurveyStudioError,
)

__all__ = [
    "SurveyStudioError",
    "StoreError",
    "StoreUnavailable",
    "DocumentNotFound",
    "MalformedDocument",
    "ImageResolutionFailure",
    "MalformedCacheEntry",
]

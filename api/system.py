"""
System API routes for survey studio.

Health, environment information, storage paths and a short in-memory log
of recent server errors.
"""

import platform
import sys
import traceback
from collections import deque
from datetime import datetime
from importlib import metadata
from typing import Any, Deque, Dict, List, Optional

from fastapi import APIRouter

from .app_config import load_settings
from .shared.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)

_MAX_ERRORS = 100
_recent_errors: Deque[Dict[str, Any]] = deque(maxlen=_MAX_ERRORS)


def log_error(
    endpoint: str,
    message: str,
    level: str = "error",
    details: Optional[str] = None,
    exc: Optional[BaseException] = None,
) -> None:
    """Record a server error for ``GET /system/errors`` and write it to the log."""
    entry = {
        "timestamp": datetime.now().isoformat(),
        "endpoint": endpoint,
        "message": message,
        "level": level,
        "details": details,
    }
    if exc is not None:
        entry["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    _recent_errors.append(entry)

    if level == "critical":
        logger.critical("%s: %s (%s)", endpoint, message, details, exc_info=exc)
    else:
        logger.error("%s: %s (%s)", endpoint, message, details)


def recent_errors() -> List[Dict[str, Any]]:
    return list(_recent_errors)


def _get_package_versions() -> Dict[str, str]:
    """Get versions of the packages the backend runs on."""
    packages = {}
    for name in ("fastapi", "uvicorn", "pydantic", "httpx", "aiofiles", "orjson", "platformdirs"):
        try:
            packages[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            pass
    return packages


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "message": "survey studio backend is running",
    }


@router.get("/system/info")
async def system_info():
    """Get system and environment information."""
    settings = load_settings()
    return {
        "python": {
            "version": sys.version,
            "platform": sys.platform,
            "executable": sys.executable,
        },
        "system": {
            "os": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
        },
        "packages": _get_package_versions(),
        "storage": {
            "mode": "http" if settings.store_url else "file",
            "store_url": settings.store_url,
            "persist_timeout": settings.persist_timeout,
        },
    }


@router.get("/system/paths")
async def system_paths():
    """Get the storage folders in use."""
    settings = load_settings()
    return {
        "paths": {
            "data": str(settings.data_dir),
            "projects": str(settings.projects_dir),
            "templates": str(settings.templates_dir),
            "responses": str(settings.responses_dir),
            "sessions": str(settings.sessions_dir),
        }
    }


@router.get("/system/errors")
async def system_errors():
    """Most recent server errors, oldest first."""
    errors = recent_errors()
    return {"errors": errors, "total": len(errors)}

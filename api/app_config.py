"""
Application configuration for the survey studio backend.

Settings are resolved from environment variables on every call to
``load_settings()`` so tests and the launcher can redirect storage without
restarting the interpreter.

The data folder location is determined by (in order of priority):
1. SURVEY_STUDIO_DATA_DIR environment variable
2. Portable mode: a ``.survey-studio`` folder next to the Python executable
3. Default platform-specific user data directory (platformdirs)

The data folder holds:
- projects/: one JSON document per project (the Document Store)
- templates/: reusable survey templates
- responses/: append-only participant response records
- sessions/: editor session mirrors (one JSON file per session)
"""

import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import platformdirs

APP_NAME = "survey-studio"
APP_AUTHOR = "survey-studio"
_PORTABLE_DIR_NAME = ".survey-studio"

DEFAULT_PERSIST_TIMEOUT = 30.0
DEFAULT_IMAGE_TIMEOUT = 15.0
DEFAULT_MAX_SESSIONS = 64
DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
]


@dataclass
class AppSettings:
    """Resolved runtime settings."""
    data_dir: Path
    store_url: Optional[str] = None
    persist_timeout: float = DEFAULT_PERSIST_TIMEOUT
    image_timeout: float = DEFAULT_IMAGE_TIMEOUT
    max_sessions: int = DEFAULT_MAX_SESSIONS
    allowed_origins: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    log_level: str = "INFO"

    @property
    def projects_dir(self) -> Path:
        return self.data_dir / "projects"

    @property
    def templates_dir(self) -> Path:
        return self.data_dir / "templates"

    @property
    def responses_dir(self) -> Path:
        return self.data_dir / "responses"

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    def ensure_dirs(self) -> None:
        """Create the storage folders if they do not exist yet."""
        for path in (self.projects_dir, self.templates_dir, self.responses_dir, self.sessions_dir):
            path.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["data_dir"] = str(self.data_dir)
        return data


def _get_data_dir() -> Path:
    """Get the data directory following priority order."""
    env_dir = os.environ.get("SURVEY_STUDIO_DATA_DIR")
    if env_dir:
        return Path(env_dir)

    portable = Path(sys.executable).parent / _PORTABLE_DIR_NAME
    if portable.exists():
        return portable

    return Path(platformdirs.user_data_dir(APP_NAME, APP_AUTHOR))


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _origins_env() -> List[str]:
    raw = os.environ.get("SURVEY_STUDIO_ALLOWED_ORIGINS")
    if not raw:
        return list(DEFAULT_ALLOWED_ORIGINS)
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or list(DEFAULT_ALLOWED_ORIGINS)


def load_settings() -> AppSettings:
    """Resolve settings from the environment."""
    store_url = os.environ.get("SURVEY_STUDIO_STORE_URL") or None
    return AppSettings(
        data_dir=_get_data_dir(),
        store_url=store_url.rstrip("/") if store_url else None,
        persist_timeout=_float_env("SURVEY_STUDIO_PERSIST_TIMEOUT", DEFAULT_PERSIST_TIMEOUT),
        image_timeout=_float_env("SURVEY_STUDIO_IMAGE_TIMEOUT", DEFAULT_IMAGE_TIMEOUT),
        max_sessions=_int_env("SURVEY_STUDIO_MAX_SESSIONS", DEFAULT_MAX_SESSIONS),
        allowed_origins=_origins_env(),
        log_level=os.environ.get("SURVEY_STUDIO_LOG_LEVEL", "INFO"),
    )

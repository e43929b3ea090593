"""
Session State Cache for survey editing.

Maps project id -> ``ProjectEditingState`` for one editor session. Every
write is mirrored immediately to a ``SessionMirror`` so the session can be
rebuilt after a reload. The mirror is injected: ``JsonFileMirror`` keeps
one JSON file per editor session, ``MemoryMirror`` keeps everything in
process (tests).
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .errors import MalformedCacheEntry
from .schema import Project, SurveyDocument
from .shared.logger import get_logger

logger = get_logger(__name__)

_INVALID_KEYS = {"", "null", "undefined", "None"}
# One writer thread keeps mirror writes in submission order.
_MIRROR_WRITER = ThreadPoolExecutor(max_workers=1, thread_name_prefix="session-mirror")


def documents_equal(a: Optional[SurveyDocument], b: Optional[SurveyDocument]) -> bool:
    """Structural equality on the canonical JSON form."""
    if a is None or b is None:
        return a is b
    return a.to_json_dict() == b.to_json_dict()


@dataclass
class ProjectEditingState:
    """Editing state of one project within one session."""
    project: Project
    draft_document: SurveyDocument
    last_persisted_document: SurveyDocument
    is_dirty: bool = False
    active_tab_index: int = 0
    image_dataset_dirty: bool = False

    def recompute_dirty(self) -> bool:
        self.is_dirty = (
            not documents_equal(self.draft_document, self.last_persisted_document)
            or self.image_dataset_dirty
        )
        return self.is_dirty

    def copy(self) -> "ProjectEditingState":
        return ProjectEditingState(
            project=self.project.model_copy(deep=True),
            draft_document=self.draft_document.model_copy(deep=True),
            last_persisted_document=self.last_persisted_document.model_copy(deep=True),
            is_dirty=self.is_dirty,
            active_tab_index=self.active_tab_index,
            image_dataset_dirty=self.image_dataset_dirty,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project.to_json_dict(),
            "draftDocument": self.draft_document.to_json_dict(),
            "lastPersistedDocument": self.last_persisted_document.to_json_dict(),
            "isDirty": self.is_dirty,
            "activeTabIndex": self.active_tab_index,
            "imageDatasetDirty": self.image_dataset_dirty,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectEditingState":
        if not isinstance(data, dict):
            raise MalformedCacheEntry(f"expected an object, got {type(data).__name__}")
        try:
            draft = SurveyDocument.model_validate(data["draftDocument"])
            persisted_raw = data.get("lastPersistedDocument")
            persisted = SurveyDocument.model_validate(persisted_raw) if persisted_raw is not None else draft.model_copy(deep=True)
            project = Project.model_validate(data["project"])
        except (KeyError, TypeError, ValidationError) as e:
            raise MalformedCacheEntry(str(e)) from e
        tab = data.get("activeTabIndex", 0)
        return cls(
            project=project,
            draft_document=draft,
            last_persisted_document=persisted,
            is_dirty=bool(data.get("isDirty", False)),
            active_tab_index=tab if isinstance(tab, int) and tab >= 0 else 0,
            image_dataset_dirty=bool(data.get("imageDatasetDirty", False)),
        )


# ============= Mirrors =============


class SessionMirror(ABC):
    """Persistent backing area for one session's cache."""

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """Return the raw mirrored map (may contain malformed entries)."""

    @abstractmethod
    def save(self, states: Dict[str, Any]) -> None:
        """Replace the mirrored map."""

    def clear(self) -> None:
        self.save({})

    async def drain(self) -> None:
        """Wait until every write issued so far has reached storage."""


class MemoryMirror(SessionMirror):
    """In-process mirror; holds a JSON round-tripped copy like real storage."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._raw = json.dumps(initial) if initial is not None else None

    def load(self) -> Dict[str, Any]:
        if self._raw is None:
            return {}
        return json.loads(self._raw)

    def save(self, states: Dict[str, Any]) -> None:
        self._raw = json.dumps(states)


class JsonFileMirror(SessionMirror):
    """Mirror stored as a single JSON file.

    Inside a running event loop, writes go to one background writer thread
    in submission order; ``drain()`` waits for them. Outside a loop they
    happen inline.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._pending: Optional[Future] = None

    def _submit(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            fn(*args)
            return
        self._pending = _MIRROR_WRITER.submit(fn, *args)

    def _write(self, text: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("Error saving project states to %s: %s", self.path, e)

    def _unlink(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Error removing project states %s: %s", self.path, e)

    async def drain(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None:
            await asyncio.wrap_future(pending)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Error loading project states from %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, states: Dict[str, Any]) -> None:
        self._submit(self._write, json.dumps(states, indent=2))

    def clear(self) -> None:
        self._submit(self._unlink)


# ============= Cache =============


class SessionStateCache:
    """Per-session map of project editing states, mirrored on every write."""

    def __init__(self, mirror: SessionMirror):
        self._mirror = mirror
        self._states: Dict[str, ProjectEditingState] = self._load()

    def _load(self) -> Dict[str, ProjectEditingState]:
        raw = self._mirror.load()
        states: Dict[str, ProjectEditingState] = {}
        for project_id, entry in raw.items():
            if not isinstance(project_id, str) or project_id.strip() in _INVALID_KEYS:
                logger.warning("Skipping invalid project state with key: %r", project_id)
                continue
            try:
                states[project_id] = ProjectEditingState.from_dict(entry)
            except MalformedCacheEntry as e:
                logger.warning("Skipping malformed project state for %s: %s", project_id, e)
        if states:
            logger.debug("Loaded project states: %s", list(states))
        return states

    def _flush(self) -> None:
        self._mirror.save({pid: state.to_dict() for pid, state in self._states.items()})

    def get(self, project_id: str) -> Optional[ProjectEditingState]:
        state = self._states.get(project_id)
        return state.copy() if state is not None else None

    def put(self, project_id: str, state: ProjectEditingState) -> None:
        if not project_id or project_id in _INVALID_KEYS:
            raise ValueError(f"Invalid project id: {project_id!r}")
        self._states[project_id] = state.copy()
        self._flush()

    def remove(self, project_id: str) -> bool:
        if self._states.pop(project_id, None) is None:
            return False
        self._flush()
        return True

    def clear(self) -> None:
        self._states.clear()
        self._mirror.clear()

    async def drain(self) -> None:
        await self._mirror.drain()

    def project_ids(self) -> List[str]:
        return list(self._states)

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._states

    def __len__(self) -> int:
        return len(self._states)

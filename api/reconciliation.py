"""
Project reconciliation for the survey editor.

``ProjectReconciliationController`` decides, on every project activation,
whether to resume the session's cached editing state or to load fresh from
the Document Store, keeps the Session State Cache current as edits arrive,
and flushes drafts to the store on demand.

Edits are synchronous and land in the cache immediately. Store calls are
asynchronous, bounded by a timeout, and never mutate cached state when
they fail: a failed persist leaves the project dirty with its draft intact.
Persists are serialized per project so a slow first write cannot land
after a newer one from the same session.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .app_config import DEFAULT_PERSIST_TIMEOUT
from .document_store import DocumentStore
from .errors import StoreError, StoreUnavailable
from .schema import ImageDatasetConfig, Project, StoredProject, SurveyDocument
from .session_cache import ProjectEditingState, SessionStateCache
from .shared.logger import get_logger
from .survey_editing import create_default_document

logger = get_logger(__name__)

PersistCallback = Callable[[str], Awaitable[None]]


@dataclass
class ActivationResult:
    """What the editor needs after switching to a project."""
    project: Project
    document: SurveyDocument
    active_tab_index: int
    is_dirty: bool
    restored: bool


@dataclass
class PersistResult:
    """Outcome of a persist call."""
    success: bool
    is_dirty: bool
    error: Optional[str] = None
    filename: Optional[str] = None


class ProjectReconciliationController:
    """Reconciles session-cached editing state with the Document Store."""

    def __init__(
        self,
        store: DocumentStore,
        cache: SessionStateCache,
        persist_timeout: float = DEFAULT_PERSIST_TIMEOUT,
        on_persisted: Optional[PersistCallback] = None,
    ):
        self.store = store
        self.cache = cache
        self.persist_timeout = persist_timeout
        self._on_persisted = on_persisted
        self._active_id: Optional[str] = None
        self._active_state: Optional[ProjectEditingState] = None
        self._persist_locks: Dict[str, asyncio.Lock] = {}

    @property
    def active_project_id(self) -> Optional[str]:
        return self._active_id

    # ----------------------- Internal helpers -----------------------

    async def _call_store(self, awaitable: Awaitable[Any], what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.persist_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(f"{what} timed out after {self.persist_timeout:g}s") from e

    def _stash_active(self) -> None:
        if self._active_id is not None and self._active_state is not None:
            self.cache.put(self._active_id, self._active_state)

    def _state_for(self, project_id: str) -> Optional[ProjectEditingState]:
        state = self.cache.get(project_id)
        if state is None and project_id == self._active_id and self._active_state is not None:
            state = self._active_state.copy()
        return state

    def _require_state(self, project_id: str) -> ProjectEditingState:
        state = self._state_for(project_id)
        if state is None:
            raise LookupError(f"Project {project_id} has not been activated in this session")
        return state

    def _commit(self, project_id: str, state: ProjectEditingState) -> None:
        if project_id == self._active_id:
            self._active_state = state.copy()
        self.cache.put(project_id, state)

    async def _load_fresh(self, project_id: str, lightweight_first: bool) -> ProjectEditingState:
        record: StoredProject = await self._call_store(
            self.store.get(project_id, lightweight=lightweight_first),
            f"Loading project {project_id}",
        )
        if record.is_lightweight:
            count = record.project.image_dataset_config.preloaded_images_count
            logger.info("Project %s is a lightweight version (%s images excluded), loading full data", project_id, count)
            try:
                record = await self._call_store(
                    self.store.get(project_id, lightweight=False),
                    f"Loading full project {project_id}",
                )
            except StoreError as e:
                logger.warning("Could not load full project data for %s, using lightweight version: %s", project_id, e)

        project = record.project
        if project.response_storage_config is None and record.response_storage_config is not None:
            project = project.model_copy(update={"response_storage_config": record.response_storage_config})

        document = record.survey_document
        if document is None:
            logger.info("Project %s has no survey document, starting from the default", project_id)
            document = create_default_document()

        return ProjectEditingState(
            project=project,
            draft_document=document,
            last_persisted_document=document.model_copy(deep=True),
            is_dirty=False,
            active_tab_index=0,
        )

    # ----------------------- Activation -----------------------

    async def activate_project(self, project_id: str, lightweight_first: bool = False) -> ActivationResult:
        """Switch the session to ``project_id``.

        Cached state wins over the store: a project edited earlier in this
        session comes back exactly as it was left, unsaved changes included.
        """
        if not project_id:
            raise ValueError("project_id is required")

        if self._active_id is not None and self._active_id != project_id:
            logger.debug("Saving state of %s before switching to %s", self._active_id, project_id)
            self._stash_active()

        state = self.cache.get(project_id)
        restored = state is not None
        if state is None:
            state = await self._load_fresh(project_id, lightweight_first)
            self.cache.put(project_id, state)
            logger.info("Loaded project %s from the document store", project_id)
        else:
            logger.info("Restored project %s from session (dirty=%s)", project_id, state.is_dirty)

        self._active_id = project_id
        self._active_state = state.copy()
        await self.cache.drain()
        return ActivationResult(
            project=state.project,
            document=state.draft_document,
            active_tab_index=state.active_tab_index,
            is_dirty=state.is_dirty,
            restored=restored,
        )

    def deactivate_project(self) -> None:
        """Stash the active project's state and clear the active pointer."""
        self._stash_active()
        self._active_id = None
        self._active_state = None

    def discard_project(self, project_id: str) -> None:
        """Forget a project's session state entirely (after it was deleted)."""
        self.cache.remove(project_id)
        self._persist_locks.pop(project_id, None)
        if project_id == self._active_id:
            self._active_id = None
            self._active_state = None

    async def delete_project(self, project_id: str) -> bool:
        """Delete a project from the store, then from the session."""
        deleted = await self._call_store(self.store.delete(project_id), f"Deleting project {project_id}")
        self.discard_project(project_id)
        await self.cache.drain()
        return deleted

    # ----------------------- Edits -----------------------

    def get_state(self, project_id: str) -> ProjectEditingState:
        return self._require_state(project_id)

    def record_edit(self, project_id: str, new_draft: SurveyDocument) -> bool:
        """Replace the draft and return the recomputed dirty flag."""
        state = self._require_state(project_id)
        state.draft_document = new_draft.model_copy(deep=True)
        state.recompute_dirty()
        self._commit(project_id, state)
        return state.is_dirty

    def record_tab_change(self, project_id: str, index: int) -> None:
        if index < 0:
            raise ValueError(f"Tab index must be non-negative, got {index}")
        state = self._require_state(project_id)
        state.active_tab_index = index
        self._commit(project_id, state)

    def record_image_dataset_change(self, project_id: str, config: ImageDatasetConfig) -> bool:
        """Replace the project's image dataset config; marks the project dirty."""
        state = self._require_state(project_id)
        state.project = state.project.model_copy(update={"image_dataset_config": config.model_copy(deep=True)})
        state.image_dataset_dirty = True
        state.recompute_dirty()
        self._commit(project_id, state)
        return state.is_dirty

    # ----------------------- Persistence -----------------------

    async def persist(self, project_id: str) -> PersistResult:
        """Flush the cached draft of ``project_id`` to the Document Store."""
        lock = self._persist_locks.setdefault(project_id, asyncio.Lock())
        async with lock:
            result = await self._persist_locked(project_id)
            await self.cache.drain()
            return result

    async def _persist_locked(self, project_id: str) -> PersistResult:
        state = self._require_state(project_id)
        sent_document = state.draft_document.model_copy(deep=True)
        sent_project = state.project.model_copy(deep=True)
        record = StoredProject(
            project=sent_project,
            survey_document=sent_document,
            response_storage_config=sent_project.response_storage_config,
        )

        try:
            filename = await self._call_store(self.store.put(record), f"Saving project {project_id}")
        except StoreError as e:
            logger.warning("Save failed for project %s, draft kept in session: %s", project_id, e)
            current = self._state_for(project_id)
            return PersistResult(
                success=False,
                is_dirty=current.is_dirty if current is not None else state.is_dirty,
                error=str(e),
            )

        # Edits may have landed while the write was in flight.
        current = self._state_for(project_id)
        if current is None:
            return PersistResult(success=True, is_dirty=False, filename=filename)
        current.last_persisted_document = sent_document.model_copy(deep=True)
        if current.project.to_json_dict() == sent_project.to_json_dict():
            current.image_dataset_dirty = False
        current.recompute_dirty()
        self._commit(project_id, current)
        logger.info("Project %s saved (%s)", project_id, filename)

        if self._on_persisted is not None:
            try:
                await self._on_persisted(project_id)
            except Exception as e:
                logger.warning("Post-save notification failed for %s: %s", project_id, e)

        return PersistResult(success=True, is_dirty=current.is_dirty, filename=filename)

    def summary(self) -> Dict[str, Dict[str, Any]]:
        """Dirty flag, tab and name for every project cached in this session."""
        result = {}
        for project_id in self.cache.project_ids():
            state = self._require_state(project_id)
            result[project_id] = {
                "name": state.project.name,
                "isDirty": state.is_dirty,
                "activeTabIndex": state.active_tab_index,
                "active": project_id == self._active_id,
            }
        return result

"""
Document Store implementations.

The Document Store is a key-value store of JSON documents keyed by project
identifier. Two implementations share one interface:

- ``FileDocumentStore``: one ``<projectId>.json`` file per project on local
  disk, written atomically with aiofiles. Backs the HTTP routes.
- ``HttpDocumentStore``: client for the ``/api/documents`` HTTP surface,
  used when the editor talks to a remote store.

``TemplateStore`` and ``ResponseArchive`` reuse the same JSON-directory
helper for survey templates and append-only participant responses.
``RemoteResponseTable`` inserts responses into a project's own database
when the project configures one.
"""

import json
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import aiofiles
import httpx
from pydantic import ValidationError

from .app_config import AppSettings
from .errors import DocumentNotFound, MalformedDocument, StoreUnavailable
from .schema import ResponseRecord, ResponseStorageConfig, StoredProject, SurveyTemplate
from .shared.logger import get_logger

logger = get_logger(__name__)

_KEY_PATTERN = re.compile(r"[A-Za-z0-9_.-]+")


def validate_key(key: str) -> str:
    """Reject identifiers that cannot be used as a file name."""
    if not key or key in (".", "..") or not _KEY_PATTERN.fullmatch(key):
        raise ValueError(f"Invalid document identifier: {key!r}")
    return key


def _lightweight(record: StoredProject) -> StoredProject:
    config = record.project.image_dataset_config
    if config is None or not config.preloaded_images:
        return record
    project = record.project.model_copy(update={"image_dataset_config": config.lightweight_copy()})
    return record.model_copy(update={"project": project})


class JsonDirectory:
    """A folder of JSON files addressed by key."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / f"{validate_key(key)}.json"

    async def read(self, key: str) -> Optional[Any]:
        path = self.path_for(key)
        if not path.exists():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        return json.loads(content)

    async def write(self, key: str, data: Any) -> Path:
        """Write through a temporary file so readers never see half a document."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2, ensure_ascii=False))
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return path

    async def create(self, key: str, data: Any) -> Path:
        """Write a new file; fails if the key is already taken."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        async with aiofiles.open(path, "x", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2, ensure_ascii=False))
        return path

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def keys(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.json") if not p.name.startswith("."))


# ============= Document Store interface =============


class DocumentStore(ABC):
    """Key-value store of project documents."""

    @abstractmethod
    async def get(self, project_id: str, lightweight: bool = False) -> StoredProject:
        """Fetch a project record.

        Raises:
            DocumentNotFound: nothing stored under ``project_id``
            MalformedDocument: the stored record fails validation
            StoreUnavailable: the store could not be reached
        """

    @abstractmethod
    async def put(self, record: StoredProject) -> str:
        """Store a record, replacing any previous version. Returns its filename."""

    @abstractmethod
    async def delete(self, project_id: str) -> bool:
        """Remove a record. Returns False if there was nothing to remove."""

    @abstractmethod
    async def list_ids(self) -> List[str]:
        """List stored project identifiers."""


class FileDocumentStore(DocumentStore):
    """Project documents as JSON files on local disk."""

    def __init__(self, root: Path):
        self._files = JsonDirectory(root)

    @property
    def root(self) -> Path:
        return self._files.root

    async def get(self, project_id: str, lightweight: bool = False) -> StoredProject:
        try:
            data = await self._files.read(project_id)
        except json.JSONDecodeError as e:
            raise MalformedDocument(project_id, f"invalid JSON: {e}") from e
        except OSError as e:
            raise StoreUnavailable(f"Could not read project {project_id}: {e}") from e
        if data is None:
            raise DocumentNotFound(project_id)
        try:
            record = StoredProject.model_validate(data)
        except ValidationError as e:
            raise MalformedDocument(project_id, str(e)) from e
        return _lightweight(record) if lightweight else record

    async def put(self, record: StoredProject) -> str:
        if record.saved_at is None:
            record = record.model_copy(update={"saved_at": datetime.now().isoformat()})
        try:
            path = await self._files.write(record.project.id, record.to_json_dict())
        except OSError as e:
            raise StoreUnavailable(f"Could not write project {record.project.id}: {e}") from e
        logger.info("Project '%s' saved to %s", record.project.name or record.project.id, path)
        return path.name

    async def delete(self, project_id: str) -> bool:
        deleted = self._files.delete(project_id)
        if deleted:
            logger.info("Project file %s.json deleted", project_id)
        return deleted

    async def list_ids(self) -> List[str]:
        return self._files.keys()


class HttpDocumentStore(DocumentStore):
    """Client for a remote Document Store speaking the ``/api/documents`` surface."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, self._url(path), **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, self._url(path), **kwargs)
        except httpx.TimeoutException as e:
            raise StoreUnavailable(f"Document store timed out: {e}") from e
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"Document store unreachable: {e}") from e

    @staticmethod
    def _payload(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise StoreUnavailable(f"Document store returned invalid JSON (HTTP {response.status_code})") from e
        if not isinstance(payload, dict):
            raise StoreUnavailable("Document store returned an unexpected payload")
        return payload

    async def get(self, project_id: str, lightweight: bool = False) -> StoredProject:
        params = {"lightweight": "true"} if lightweight else None
        response = await self._request("GET", f"/documents/{project_id}", params=params)
        if response.status_code == 404:
            raise DocumentNotFound(project_id)
        payload = self._payload(response)
        if response.status_code >= 400 or not payload.get("success", False):
            raise StoreUnavailable(payload.get("error") or payload.get("detail") or f"HTTP {response.status_code}")
        try:
            return StoredProject.model_validate({k: v for k, v in payload.items() if k != "success"})
        except ValidationError as e:
            raise MalformedDocument(project_id, str(e)) from e

    async def put(self, record: StoredProject) -> str:
        body = record.to_json_dict()
        response = await self._request("PUT", f"/documents/{record.project.id}", json=body)
        payload = self._payload(response)
        if response.status_code >= 400 or not payload.get("success", False):
            raise StoreUnavailable(payload.get("error") or payload.get("detail") or f"HTTP {response.status_code}")
        return payload.get("filename", f"{record.project.id}.json")

    async def delete(self, project_id: str) -> bool:
        response = await self._request("DELETE", f"/documents/{project_id}")
        payload = self._payload(response)
        if response.status_code >= 400:
            raise StoreUnavailable(payload.get("error") or payload.get("detail") or f"HTTP {response.status_code}")
        return bool(payload.get("deleted", payload.get("success", False)))

    async def list_ids(self) -> List[str]:
        response = await self._request("GET", "/documents")
        payload = self._payload(response)
        if response.status_code >= 400:
            raise StoreUnavailable(payload.get("detail") or f"HTTP {response.status_code}")
        return list(payload.get("documents", []))


# ============= Templates and responses =============


class TemplateStore:
    """Survey templates, one JSON file each."""

    def __init__(self, root: Path):
        self._files = JsonDirectory(root)

    async def save(self, template: SurveyTemplate) -> str:
        path = await self._files.write(template.id, template.to_json_dict())
        logger.info("Template '%s' saved to %s", template.name or template.id, path)
        return path.name

    async def get(self, template_id: str) -> Optional[SurveyTemplate]:
        data = await self._files.read(template_id)
        if data is None:
            return None
        return SurveyTemplate.model_validate(data)

    def delete(self, template_id: str) -> bool:
        return self._files.delete(template_id)

    def list_files(self) -> List[str]:
        return [f"{key}.json" for key in self._files.keys()]


class ResponseArchive:
    """Append-only store of participant response records."""

    def __init__(self, root: Path):
        self._files = JsonDirectory(root)

    @staticmethod
    def _safe_participant(participant_id: str) -> str:
        cleaned = re.sub(r"[^A-Za-z0-9_-]", "_", participant_id or "")
        return cleaned[:64] or "anonymous"

    async def append(self, record: ResponseRecord) -> str:
        """Store a record under a fresh key; existing records are never touched."""
        timestamp = datetime.now().isoformat().replace(":", "-").replace(".", "-")
        base = f"response_{self._safe_participant(record.participant_id)}_{timestamp}"
        key = base
        for attempt in range(1, 100):
            try:
                path = await self._files.create(key, record.to_json_dict())
            except FileExistsError:
                key = f"{base}_{attempt}"
                continue
            logger.info("Survey response saved to %s", path)
            return path.name
        raise StoreUnavailable(f"Could not allocate a response file for {base}")

    async def list_records(self, project_id: Optional[str] = None) -> List[ResponseRecord]:
        records = []
        for key in self._files.keys():
            try:
                data = await self._files.read(key)
                record = ResponseRecord.model_validate(data)
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Skipping unreadable response file %s.json: %s", key, e)
                continue
            if project_id and record.survey_metadata.project_id != project_id:
                continue
            records.append(record)
        return records


RESPONSES_TABLE = "survey_responses"


class RemoteResponseTable:
    """Inserts response records into a project's database over its REST API."""

    def __init__(
        self,
        config: ResponseStorageConfig,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        if not config.url:
            raise StoreUnavailable("Response storage URL missing")
        self.config = config
        self.table = config.table or RESPONSES_TABLE
        self.url = f"{config.url.rstrip('/')}/rest/v1/{self.table}"
        self._client = client
        self._timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Prefer": "return=minimal"}
        if self.config.secret_key:
            headers["apikey"] = self.config.secret_key
            headers["Authorization"] = f"Bearer {self.config.secret_key}"
        return headers

    async def insert(self, record: ResponseRecord) -> None:
        row = record.model_dump(mode="json", exclude_none=True)
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=row, headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self.url, json=row, headers=self._headers())
        except httpx.TimeoutException as e:
            raise StoreUnavailable(f"Response storage timed out: {e}") from e
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"Response storage unreachable: {e}") from e
        if response.status_code >= 400:
            raise StoreUnavailable(f"Response storage rejected the record (HTTP {response.status_code}): {response.text[:200]}")
        logger.info("Survey response for %s inserted into %s", record.participant_id, self.table)


def build_document_store(settings: AppSettings) -> DocumentStore:
    """Remote store when ``store_url`` is configured, local files otherwise."""
    if settings.store_url:
        return HttpDocumentStore(settings.store_url, timeout=settings.persist_timeout)
    return FileDocumentStore(settings.projects_dir)

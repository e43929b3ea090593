"""
Image sources for image-bearing survey questions.

``ImageResolver`` finds the candidate images for a question and draws a
uniform random subset from them. Candidates come from, in priority order:

1. the project's preloaded image pool, if non-empty
2. a Hugging Face dataset (``imageSource == "huggingface"``)
3. a Supabase storage bucket (``supabaseConfig`` + ``bucketPath``)

Remote sources use httpx. Any transport or decoding failure surfaces as
``ImageResolutionFailure`` so the caller can skip just that question.
"""

import random
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .app_config import DEFAULT_IMAGE_TIMEOUT
from .errors import ImageResolutionFailure
from .schema import BucketConfig, HuggingFaceConfig, ImageQuestion, ImageRef
from .shared.logger import get_logger

logger = get_logger(__name__)

HF_DATASETS_SERVER = "https://datasets-server.huggingface.co"
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp")


async def _get_json(
    client: Optional[httpx.AsyncClient],
    method: str,
    url: str,
    timeout: float,
    **kwargs,
) -> Any:
    try:
        if client is not None:
            response = await client.request(method, url, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                response = await own_client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPError as e:
        raise ImageResolutionFailure(f"{method} {url} failed: {e}") from e
    except ValueError as e:
        raise ImageResolutionFailure(f"{method} {url} returned invalid JSON") from e


class HuggingFaceDatasetSource:
    """Rows of a Hugging Face dataset, read through the datasets-server API."""

    def __init__(
        self,
        config: HuggingFaceConfig,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_IMAGE_TIMEOUT,
        length: int = 100,
        base_url: str = HF_DATASETS_SERVER,
    ):
        if not config.dataset_name:
            raise ImageResolutionFailure("Hugging Face dataset name missing")
        self.config = config
        self.client = client
        self.timeout = timeout
        self.length = length
        self.base_url = base_url.rstrip("/")

    def _image_column(self, features: Any) -> str:
        if self.config.image_column:
            return self.config.image_column
        if not isinstance(features, list):
            return "image"
        for feature in features:
            if not isinstance(feature, dict) or not isinstance(feature.get("type"), dict):
                continue
            name = feature.get("name")
            if feature["type"].get("_type") == "Image" and isinstance(name, str):
                return name
        return "image"

    def _row_name(self, row: Dict[str, Any], row_idx: Any) -> str:
        for key in ("file_name", "image_name", "name", "id"):
            value = row.get(key)
            if isinstance(value, (str, int)) and str(value):
                return str(value)
        return f"{self.config.dataset_name.replace('/', '_')}_{row_idx}"

    async def list_images(self) -> List[ImageRef]:
        headers = {}
        if self.config.hugging_face_token:
            headers["Authorization"] = f"Bearer {self.config.hugging_face_token}"
        params = {
            "dataset": self.config.dataset_name,
            "config": self.config.config_name or "default",
            "split": self.config.split or "train",
            "offset": 0,
            "length": self.length,
        }
        payload = await _get_json(
            self.client, "GET", f"{self.base_url}/rows", self.timeout, params=params, headers=headers
        )
        if not isinstance(payload, dict):
            raise ImageResolutionFailure("Unexpected datasets-server payload")

        rows = payload.get("rows", [])
        if not isinstance(rows, list):
            raise ImageResolutionFailure("Unexpected datasets-server rows")

        column = self._image_column(payload.get("features"))
        images = []
        try:
            for entry in rows:
                row = entry.get("row") if isinstance(entry, dict) else None
                if not isinstance(row, dict):
                    continue
                cell = row.get(column)
                url = cell.get("src") if isinstance(cell, dict) else cell
                if isinstance(url, str) and url:
                    images.append(ImageRef(name=self._row_name(row, entry.get("row_idx")), url=url))
        except (AttributeError, TypeError, ValueError) as e:
            raise ImageResolutionFailure(f"Unreadable datasets-server row: {e}") from e
        logger.debug("Hugging Face dataset %s: %d images", self.config.dataset_name, len(images))
        return images


class SupabaseBucketSource:
    """Objects of a Supabase storage bucket, addressed as ``bucket/prefix``."""

    def __init__(
        self,
        config: BucketConfig,
        bucket_path: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_IMAGE_TIMEOUT,
    ):
        if not bucket_path:
            raise ImageResolutionFailure("Bucket path missing")
        bucket, _, prefix = bucket_path.strip("/").partition("/")
        self.config = config
        self.bucket = bucket
        self.prefix = prefix
        self.client = client
        self.timeout = timeout
        self.base_url = config.url.rstrip("/")

    def public_url(self, object_path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{object_path}"

    async def list_images(self) -> List[ImageRef]:
        headers = {}
        if self.config.secret_key:
            headers["apikey"] = self.config.secret_key
            headers["Authorization"] = f"Bearer {self.config.secret_key}"
        body = {
            "prefix": self.prefix,
            "limit": 1000,
            "offset": 0,
            "sortBy": {"column": "name", "order": "asc"},
        }
        payload = await _get_json(
            self.client,
            "POST",
            f"{self.base_url}/storage/v1/object/list/{self.bucket}",
            self.timeout,
            json=body,
            headers=headers,
        )
        if not isinstance(payload, list):
            raise ImageResolutionFailure("Unexpected storage listing payload")

        images = []
        try:
            for item in payload:
                name = item.get("name") if isinstance(item, dict) else None
                # Folders are listed with a null id.
                if not isinstance(name, str) or item.get("id") is None:
                    continue
                if not name.lower().endswith(IMAGE_EXTENSIONS):
                    continue
                object_path = f"{self.prefix}/{name}" if self.prefix else name
                images.append(ImageRef(name=name, url=self.public_url(object_path)))
        except (AttributeError, TypeError, ValueError) as e:
            raise ImageResolutionFailure(f"Unreadable storage listing entry: {e}") from e
        return images


def unique_images(images: Iterable[ImageRef]) -> List[ImageRef]:
    seen = set()
    result = []
    for image in images:
        if image.name in seen:
            continue
        seen.add(image.name)
        result.append(image)
    return result


class ImageResolver:
    """Resolves and draws images for image-bearing questions."""

    def __init__(
        self,
        preloaded: Optional[Iterable[ImageRef]] = None,
        client: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
        timeout: float = DEFAULT_IMAGE_TIMEOUT,
    ):
        self.preloaded = list(preloaded or [])
        self.client = client
        self.rng = rng or random.Random()
        self.timeout = timeout

    async def candidates(self, question: ImageQuestion) -> Optional[List[ImageRef]]:
        """Candidate images for ``question``, or None when no source is configured."""
        if self.preloaded:
            return list(self.preloaded)
        if question.image_source == "huggingface" and question.hugging_face_config is not None:
            source = HuggingFaceDatasetSource(question.hugging_face_config, self.client, self.timeout)
            return await source.list_images()
        if question.supabase_config is not None:
            source = SupabaseBucketSource(question.supabase_config, question.bucket_path, self.client, self.timeout)
            return await source.list_images()
        return None

    def draw(self, candidates: Iterable[ImageRef], count: int) -> List[ImageRef]:
        """Uniform random subset without repeats; at most ``len(candidates)`` images."""
        pool = unique_images(candidates)
        return self.rng.sample(pool, min(max(count, 0), len(pool)))

    async def resolve(self, question: ImageQuestion) -> Optional[List[ImageRef]]:
        candidates = await self.candidates(question)
        if candidates is None:
            return None
        return self.draw(candidates, question.resolved_image_count)

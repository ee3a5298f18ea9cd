"""Resolve model and texture references to bytes, backed by a flat on-disk cache.

References are either raw bytes (uploads) or strings: a file name already present
in the cache directory, a local file path, an ``http(s)://`` or ``s3://`` URL, or
a bare model name that is joined onto the configured models base URL.
"""

import asyncio
import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import urljoin, urlparse

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from render_errors import AssetDownloadError, AssetLoadingError, NoLocalModel

logger = logging.getLogger("preview_renderer.resolver")

Reference = Union[str, bytes]

UPLOAD_PREFIX = "upload-"
MAGIC_SUFFIXES = (
    (b"glTF", ".glb"),
    (b"\x89PNG\r\n\x1a\n", ".png"),
    (b"\xff\xd8\xff", ".jpg"),
    (b"GIF8", ".gif"),
    (b"BM", ".bmp"),
)


@dataclass
class ResolvedAsset:
    """Raw asset bytes plus the cache file they live in (``None`` if the cache write failed)."""

    path: Optional[Path]
    data: bytes

    @property
    def name(self) -> str:
        return self.path.name if self.path is not None else "<memory>"


def guess_suffix(data: bytes) -> str:
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ".webp"
    for magic, suffix in MAGIC_SUFFIXES:
        if data.startswith(magic):
            return suffix
    if data.lstrip()[:1] == b"{":
        return ".gltf"
    return ".bin"


def reference_basename(reference: str) -> str:
    return os.path.basename(urlparse(reference).path)


def read_file(path: Path) -> Optional[bytes]:
    """Contents of ``path``, or ``None`` when it is not a regular file."""
    try:
        if not path.is_file():
            return None
        return path.read_bytes()
    except FileNotFoundError:
        return None


class AssetResolver:
    def __init__(
        self,
        cache_dir: Optional[str],
        *,
        client: httpx.AsyncClient,
        models_base_url: str = "",
        s3_endpoint_url: Optional[str] = None,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.models_base_url = models_base_url
        self.s3_endpoint_url = s3_endpoint_url
        self._client = client
        self._s3_client: Optional[Any] = None
        self._inflight: Dict[Tuple[str, bool], "asyncio.Future[ResolvedAsset]"] = {}

    def cached_path(self, reference: str) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        name = reference_basename(reference)
        if not name or name in {".", ".."}:
            return None
        return self.cache_dir / name

    def remote_location(self, reference: str) -> str:
        if "://" in reference:
            return reference
        if self.models_base_url:
            base = self.models_base_url if self.models_base_url.endswith("/") else f"{self.models_base_url}/"
            return urljoin(base, reference.lstrip("/"))
        raise AssetLoadingError(
            f"Cannot resolve '{reference}': not in the local cache and no models_base_url is configured."
        )

    async def resolve(self, reference: Reference, *, local_only: bool = False) -> ResolvedAsset:
        if isinstance(reference, (bytes, bytearray, memoryview)):
            return await asyncio.to_thread(self._store_upload, bytes(reference))
        if not isinstance(reference, str) or not reference.strip():
            raise AssetLoadingError("Asset reference must be non-empty bytes or a string.")

        reference = reference.strip()
        cached = self.cached_path(reference)
        key = (str(cached) if cached is not None else reference, local_only)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._lookup(reference, cached, local_only))
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            logger.info("joining in-flight lookup of %s", key[0])
        return await asyncio.shield(task)

    def _forget(self, key: Tuple[str, bool], task: "asyncio.Future[ResolvedAsset]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _lookup(self, reference: str, cached: Optional[Path], local_only: bool) -> ResolvedAsset:
        if cached is not None:
            data = await asyncio.to_thread(read_file, cached)
            if data is not None:
                logger.info("cache hit: %s", cached)
                return ResolvedAsset(cached, data)

        if local_only:
            raise NoLocalModel(str(cached) if cached is not None else reference)

        if "://" not in reference:
            local = Path(reference)
            data = await asyncio.to_thread(read_file, local)
            if data is not None:
                logger.info("loaded local file: %s", local)
                return ResolvedAsset(local, data)

        return await self._download(reference, cached)

    async def _download(self, reference: str, cache_path: Optional[Path]) -> ResolvedAsset:
        location = self.remote_location(reference)
        logger.info("fetching remote asset: %s", location)
        if location.startswith("s3://"):
            data = await asyncio.to_thread(self._download_s3, location)
        else:
            data = await self._download_http(location)

        if cache_path is None:
            return ResolvedAsset(None, data)
        return ResolvedAsset(await asyncio.to_thread(self._write_cache, cache_path, data), data)

    async def _download_http(self, url: str) -> bytes:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise AssetDownloadError(None, f"{url}: {exc}") from exc
        if not response.is_success:
            raise AssetDownloadError(response.status_code, response.text)
        return response.content

    def _get_s3_client(self):
        if self._s3_client is None:
            session = boto3.session.Session()
            self._s3_client = session.client("s3", endpoint_url=self.s3_endpoint_url)
        return self._s3_client

    def _download_s3(self, location: str) -> bytes:
        parsed = urlparse(location)
        bucket, key = parsed.netloc, parsed.path.lstrip("/")
        if not bucket or not key:
            raise AssetLoadingError(f"Invalid S3 reference '{location}'.")
        try:
            response = self._get_s3_client().get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            message = exc.response.get("Error", {}).get("Message") or str(exc)
            raise AssetDownloadError(status, message) from exc
        except BotoCoreError as exc:
            raise AssetDownloadError(None, str(exc)) from exc

    def _write_cache(self, path: Path, data: bytes) -> Optional[Path]:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            logger.warning("Failed to write %s to the asset cache: %s", path, exc)
            return None
        logger.info("cached asset: %s (%d bytes)", path, len(data))
        return path

    def _store_upload(self, data: bytes) -> ResolvedAsset:
        if not data:
            raise AssetLoadingError("Uploaded asset is empty.")
        digest = hashlib.sha256(data).hexdigest()[:16]
        directory = self.cache_dir if self.cache_dir is not None else Path(tempfile.gettempdir())
        path = directory / f"{UPLOAD_PREFIX}{digest}{guess_suffix(data)}"
        if path.is_file():
            return ResolvedAsset(path, data)
        return ResolvedAsset(self._write_cache(path, data), data)

# core/document_source.py
import asyncio
import logging
from pathlib import Path
from typing import Optional
import httpx
from config.settings import settings
from repository.blob_repository import BLOB_SCHEME, BlobRepository
from util.errors import DocumentFetchError, DocumentNotFoundError
from util.timing import timed

logger = logging.getLogger(__name__)


class DocumentSource:
    """
    Resolves a document reference to bytes.

    Supported references:
    - http(s):// URLs, fetched with httpx under FETCH_TIMEOUT_SECONDS
    - blob:<id> for uploads kept in Redis
    - local filesystem paths
    """

    def __init__(
        self,
        blobs: Optional[BlobRepository] = None,
        *,
        timeout: float = settings.FETCH_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._blobs = blobs or BlobRepository()
        self._timeout = timeout
        self._transport = transport

    async def fetch(self, ref: str) -> bytes:
        ref = (ref or "").strip()
        if not ref:
            raise DocumentNotFoundError("Empty document reference")
        if ref.startswith(("http://", "https://")):
            return await self._fetch_url(ref)
        if ref.startswith(BLOB_SCHEME):
            return await self._fetch_blob(ref[len(BLOB_SCHEME):])
        return await self._fetch_path(ref)

    async def _fetch_url(self, url: str) -> bytes:
        try:
            with timed(logger, "source.http"):
                async with httpx.AsyncClient(
                    timeout=self._timeout,
                    transport=self._transport,
                    follow_redirects=True,
                ) as client:
                    r = await client.get(url)
        except httpx.TimeoutException as exc:
            raise DocumentFetchError(f"Document fetch timed out after {self._timeout:.0f}s") from exc
        except httpx.HTTPError as exc:
            raise DocumentFetchError(f"Document fetch failed: {type(exc).__name__}") from exc

        if r.status_code == 404:
            raise DocumentNotFoundError(f"Document not found at {url}")
        if r.status_code >= 400:
            raise DocumentFetchError(f"Failed to fetch document: HTTP {r.status_code}")
        logger.info("source.http.ok status=%d bytes=%d", r.status_code, len(r.content))
        return r.content

    async def _fetch_blob(self, blob_id: str) -> bytes:
        data = await self._blobs.get(blob_id)
        if data is None:
            raise DocumentNotFoundError(f"Uploaded document {blob_id} not found")
        logger.info("source.blob.ok blob=%s bytes=%d", blob_id, len(data))
        return data

    async def _fetch_path(self, ref: str) -> bytes:
        path = Path(ref)
        if not path.is_file():
            raise DocumentNotFoundError(f"Document not found: {ref}")
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise DocumentFetchError(f"Failed to read document: {exc.strerror or exc}") from exc
        logger.info("source.file.ok bytes=%d", len(data))
        return data

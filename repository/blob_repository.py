# repository/blob_repository.py
from typing import Optional
from uuid import uuid4
from redis.asyncio import Redis
from config.cache import get_redis
from config.settings import settings
from repository.namespaces import BLOBS

BLOB_SCHEME = "blob:"


class BlobRepository:
    """
    Redis-backed byte storage for uploaded documents.

    Uploads are referenced from jobs as "blob:<id>" so the pipeline
    can fetch them the same way it fetches URLs.
    """

    def __init__(self, ttl_seconds: int = settings.PERSISTENCE_TTL_SECONDS) -> None:
        self._ttl = int(ttl_seconds)

    @staticmethod
    async def _client() -> Redis:
        return await get_redis()

    @staticmethod
    def _key(blob_id: str) -> str:
        return f"{BLOBS}:{blob_id}"

    @staticmethod
    def ref(blob_id: str) -> str:
        return f"{BLOB_SCHEME}{blob_id}"

    async def put(self, data: bytes, blob_id: Optional[str] = None) -> str:
        blob_id = blob_id or uuid4().hex
        r = await self._client()
        await r.set(self._key(blob_id), data, ex=self._ttl if self._ttl > 0 else None)
        return blob_id

    async def get(self, blob_id: str) -> Optional[bytes]:
        r = await self._client()
        raw = await r.get(self._key(blob_id))
        return bytes(raw) if raw is not None else None

    async def delete(self, blob_id: str) -> int:
        r = await self._client()
        return int(await r.delete(self._key(blob_id)))

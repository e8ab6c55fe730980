# repository/job_repository.py
import json
import logging
from typing import Any, Final, List, Optional
from pydantic import ValidationError
from redis.asyncio import Redis
from config.cache import get_redis
from config.settings import settings
from model.job import JobRecord
from repository.namespaces import JOB_INDEX, JOBS
from util.functions import utcnow

logger = logging.getLogger(__name__)

KEY_PREFIX: Final[str] = JOBS


class JobRepository:
    """
    Durable job records.

    Layout:
    - Hash per job, every field JSON-encoded so None/dicts/datetimes round-trip.
    - Sorted set of job ids scored by creation time, newest first for listings.
    - TTL 0 keeps records forever; retention is an external policy.
    """

    def __init__(self, ttl_seconds: int = settings.PERSISTENCE_TTL_SECONDS) -> None:
        self._ttl = int(ttl_seconds)

    @staticmethod
    async def _client() -> Redis:
        return await get_redis()

    @staticmethod
    def _key(job_id: str) -> str:
        return f"{KEY_PREFIX}:{job_id}"

    async def _apply_ttl(self, r: Redis, key: str) -> None:
        if self._ttl > 0:
            await r.expire(key, self._ttl)
        else:
            await r.persist(key)

    @staticmethod
    def _encode(fields: dict[str, Any]) -> dict[str, bytes]:
        return {k: json.dumps(v).encode("utf-8") for k, v in fields.items()}

    @staticmethod
    def _decode(h: dict) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for k, v in h.items():
            key = k.decode("utf-8") if isinstance(k, (bytes, bytearray)) else str(k)
            raw = v.decode("utf-8") if isinstance(v, (bytes, bytearray)) else v
            out[key] = json.loads(raw)
        return out

    # ---------------- Core CRUD ----------------

    async def put(self, record: JobRecord) -> None:
        r = await self._client()
        key = self._key(record.id)
        await r.hset(key, mapping=self._encode(record.model_dump(mode="json")))
        await r.zadd(JOB_INDEX, {record.id: record.created_at.timestamp()})
        await self._apply_ttl(r, key)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        if not job_id:
            return None
        r = await self._client()
        h = await r.hgetall(self._key(job_id))
        if not h:
            return None
        try:
            return JobRecord.model_validate(self._decode(h))
        except (ValidationError, ValueError):
            logger.error("jobs.record.corrupt job=%s", job_id)
            return None

    async def exists(self, job_id: str) -> bool:
        if not job_id:
            return False
        r = await self._client()
        return bool(await r.exists(self._key(job_id)))

    async def update(self, job_id: str, **patch: Any) -> Optional[JobRecord]:
        """
        Write only the patched fields (plus updated_at).
        Returns the updated record, or None when the id is unknown.
        """
        current = await self.get(job_id)
        if current is None:
            return None
        patch["updated_at"] = utcnow()
        updated = JobRecord.model_validate({**current.model_dump(), **patch})
        dumped = updated.model_dump(mode="json")
        r = await self._client()
        key = self._key(job_id)
        await r.hset(key, mapping=self._encode({k: dumped[k] for k in patch}))
        await self._apply_ttl(r, key)
        return updated

    async def delete(self, job_id: str) -> int:
        if not job_id:
            return 0
        r = await self._client()
        await r.zrem(JOB_INDEX, job_id)
        return int(await r.delete(self._key(job_id)))

    # ---------------- Listings ----------------

    async def list_ids(self, limit: int = 100) -> List[str]:
        r = await self._client()
        stop = -1 if limit <= 0 else limit - 1
        ids = await r.zrevrange(JOB_INDEX, 0, stop)
        return [i.decode("utf-8") if isinstance(i, (bytes, bytearray)) else str(i) for i in ids]

    async def list_active(self) -> List[JobRecord]:
        """Every record not yet in a terminal state."""
        out: List[JobRecord] = []
        for job_id in await self.list_ids(limit=0):
            record = await self.get(job_id)
            if record is not None and not record.status.terminal:
                out.append(record)
        return out

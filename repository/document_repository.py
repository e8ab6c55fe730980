# repository/document_repository.py
import json
import logging
from typing import Optional
import numpy as np
from redis.asyncio import Redis
from config.cache import get_redis
from config.settings import settings
from core.entities import EmbeddingIndex, IndexedDocument
from repository.namespaces import DOCUMENTS
from util.functions import utcnow

logger = logging.getLogger(__name__)


def _s(v) -> str:
    if v is None:
        return ""
    return v.decode("utf-8") if isinstance(v, (bytes, bytearray)) else str(v)


class DocumentRepository:
    """
    Searchable document index.

    - Hash per document: preview, concept names, chunk texts, embedding dim.
    - Embeddings stored separately as raw float32 bytes (n x dim, row-major).
    """

    def __init__(self, ttl_seconds: int = settings.PERSISTENCE_TTL_SECONDS) -> None:
        self._ttl = int(ttl_seconds)

    @staticmethod
    async def _client() -> Redis:
        return await get_redis()

    @staticmethod
    def _key(document_id: str) -> str:
        return f"{DOCUMENTS}:{document_id}"

    @staticmethod
    def _emb_key(document_id: str) -> str:
        return f"{DOCUMENTS}:{document_id}:embeddings"

    async def save(self, doc: IndexedDocument) -> None:
        r = await self._client()
        dim = 0
        if doc.embeddings is not None and doc.embeddings.embeddings.size:
            matrix = doc.embeddings.embeddings.astype(np.float32, copy=False)
            dim = int(matrix.shape[1])
            await r.set(
                self._emb_key(doc.document_id),
                matrix.tobytes(),
                ex=self._ttl if self._ttl > 0 else None,
            )
        else:
            await r.delete(self._emb_key(doc.document_id))

        await r.hset(
            self._key(doc.document_id),
            mapping={
                "preview": doc.preview,
                "concepts": json.dumps(doc.concepts),
                "chunks": json.dumps(doc.chunks),
                "dim": str(dim),
                "indexed_at": utcnow().isoformat(),
            },
        )
        if self._ttl > 0:
            await r.expire(self._key(doc.document_id), self._ttl)
        logger.info(
            "documents.saved doc=%s chunks=%d dim=%d",
            doc.document_id,
            len(doc.chunks),
            dim,
        )

    async def get(self, document_id: str) -> Optional[IndexedDocument]:
        r = await self._client()
        h = await r.hgetall(self._key(document_id))
        if not h:
            return None
        chunks = json.loads(_s(h.get(b"chunks")) or "[]")
        dim = int(_s(h.get(b"dim")) or 0)
        index: Optional[EmbeddingIndex] = None
        if dim > 0:
            raw = await r.get(self._emb_key(document_id))
            if raw:
                matrix = np.frombuffer(bytes(raw), dtype=np.float32).reshape(-1, dim)
                index = EmbeddingIndex(embeddings=matrix)
        return IndexedDocument(
            document_id=document_id,
            preview=_s(h.get(b"preview")),
            concepts=json.loads(_s(h.get(b"concepts")) or "[]"),
            chunks=chunks,
            embeddings=index,
        )

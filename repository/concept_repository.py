# repository/concept_repository.py
import logging
from typing import Iterable, List, Optional
from uuid import uuid4
from redis.asyncio import Redis
from config.cache import get_redis
from model.analysis import Concept, ConceptCandidate
from repository.namespaces import CONCEPT_NAMES, CONCEPTS, COURSES, DOCUMENTS

logger = logging.getLogger(__name__)

ALL_CONCEPTS = f"{CONCEPTS}:all"


def _s(v) -> str:
    if v is None:
        return ""
    return v.decode("utf-8") if isinstance(v, (bytes, bytearray)) else str(v)


class ConceptRepository:
    """
    Flow:
    - One hash per concept (id, name, category, description).
    - A name key (lowercased) points at the owning concept id; claiming it
      with SET NX makes creation race-safe across concurrent jobs.
    - Course and document links are plain sets of concept ids.
    """

    @staticmethod
    async def _client() -> Redis:
        return await get_redis()

    @staticmethod
    def _key(concept_id: str) -> str:
        return f"{CONCEPTS}:{concept_id}"

    @staticmethod
    def _name_key(name: str) -> str:
        return f"{CONCEPT_NAMES}:{name.strip().lower()}"

    @staticmethod
    def _course_key(course_id: str) -> str:
        return f"{COURSES}:{course_id}:concepts"

    @staticmethod
    def _document_key(document_id: str) -> str:
        return f"{DOCUMENTS}:{document_id}:concepts"

    async def get(self, concept_id: str) -> Optional[Concept]:
        r = await self._client()
        h = await r.hgetall(self._key(concept_id))
        if not h:
            return None
        return Concept(
            id=_s(h.get(b"id")) or concept_id,
            name=_s(h.get(b"name")),
            category=_s(h.get(b"category")) or "General",
            description=_s(h.get(b"description")),
        )

    async def get_many(self, concept_ids: Iterable[str]) -> List[Concept]:
        out: List[Concept] = []
        for cid in concept_ids:
            concept = await self.get(cid)
            if concept is not None:
                out.append(concept)
        return out

    async def find_by_name(self, name: str) -> Optional[Concept]:
        r = await self._client()
        cid = await r.get(self._name_key(name))
        return await self.get(_s(cid)) if cid else None

    async def snapshot(self, course_id: Optional[str] = None) -> List[Concept]:
        """Concepts linked to `course_id`, or every known concept when no course is given."""
        r = await self._client()
        key = self._course_key(course_id) if course_id else ALL_CONCEPTS
        ids = sorted(_s(m) for m in await r.smembers(key))
        return await self.get_many(ids)

    async def find_or_create(self, candidate: ConceptCandidate) -> tuple[Concept, bool]:
        """
        Return (concept, created). Concurrent callers with the same name
        converge on one id: the loser of the name claim drops its draft.
        """
        existing = await self.find_by_name(candidate.name)
        if existing is not None:
            return existing, False

        r = await self._client()
        draft = Concept(
            id=uuid4().hex,
            name=candidate.name.strip(),
            category=candidate.category or "General",
            description=candidate.description or "",
        )
        await r.hset(
            self._key(draft.id),
            mapping={
                "id": draft.id,
                "name": draft.name,
                "category": draft.category,
                "description": draft.description,
            },
        )
        claimed = await r.set(self._name_key(draft.name), draft.id, nx=True)
        if claimed:
            await r.sadd(ALL_CONCEPTS, draft.id)
            logger.info("concepts.created id=%s", draft.id)
            return draft, True

        await r.delete(self._key(draft.id))
        winner = await self.find_by_name(draft.name)
        if winner is None:
            # Name key points at a hash that no longer exists; take it over.
            await r.hset(
                self._key(draft.id),
                mapping={
                    "id": draft.id,
                    "name": draft.name,
                    "category": draft.category,
                    "description": draft.description,
                },
            )
            await r.set(self._name_key(draft.name), draft.id)
            await r.sadd(ALL_CONCEPTS, draft.id)
            return draft, True
        logger.info("concepts.create.lost_race id=%s", winner.id)
        return winner, False

    async def link(
        self,
        concept_id: str,
        *,
        course_id: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> None:
        r = await self._client()
        if course_id:
            await r.sadd(self._course_key(course_id), concept_id)
        if document_id:
            await r.sadd(self._document_key(document_id), concept_id)

    async def for_document(self, document_id: str) -> List[Concept]:
        r = await self._client()
        ids = sorted(_s(m) for m in await r.smembers(self._document_key(document_id)))
        return await self.get_many(ids)

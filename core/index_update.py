# core/index_update.py
import asyncio
import logging
import re
from typing import List, Optional, Sequence, Tuple
from config.settings import settings
from core.embeddings_retriever import Encoder, build_index, encode_texts, top_k
from core.entities import IndexedDocument
from core.pdf_text import greedy_para_split
from repository.document_repository import DocumentRepository
from util.errors import IndexUpdateError, describe
from util.functions import clip_chars

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+")

SearchHit = Tuple[int, float, str]


def keyword_hits(chunks: Sequence[str], query: str, k: int) -> List[SearchHit]:
    """Score chunks by the share of query words they contain; zero scores are dropped."""
    terms = {w.lower() for w in _WORD.findall(query)}
    if not terms:
        return []
    scored: List[SearchHit] = []
    for i, chunk in enumerate(chunks):
        words = {w.lower() for w in _WORD.findall(chunk)}
        score = len(terms & words) / len(terms)
        if score > 0:
            scored.append((i, score, chunk))
    scored.sort(key=lambda t: (-t[1], t[0]))
    return scored[: max(1, k)]


class IndexUpdater:
    """
    Stage D: make the document searchable.

    Stores a preview plus concept names, paragraph chunks and (optionally)
    their embeddings. Any failure is fatal for the attempt.
    """

    def __init__(
        self,
        documents: DocumentRepository,
        *,
        preview_chars: int = settings.INDEX_PREVIEW_CHARS,
        chunk_chars: int = settings.INDEX_CHUNK_CHARS,
        embeddings_enabled: bool = settings.INDEX_EMBEDDINGS_ENABLED,
        encoder: Encoder = encode_texts,
    ) -> None:
        self._documents = documents
        self._preview_chars = preview_chars
        self._chunk_chars = chunk_chars
        self._embeddings_enabled = embeddings_enabled
        self._encode = encoder

    async def update(self, document_id: str, content: str, concepts: Sequence[str]) -> IndexedDocument:
        try:
            chunks = greedy_para_split(content, self._chunk_chars)
            index = None
            if self._embeddings_enabled and chunks:
                index = await asyncio.to_thread(build_index, chunks, self._encode)
            doc = IndexedDocument(
                document_id=document_id,
                preview=clip_chars(content, self._preview_chars),
                concepts=[c for c in concepts if c],
                chunks=chunks,
                embeddings=index,
            )
            await self._documents.save(doc)
        except Exception as exc:
            logger.error("index.update.failed doc=%s err=%s", document_id, type(exc).__name__)
            raise IndexUpdateError(f"Index update failed: {describe(exc)}") from exc
        logger.info(
            "index.update.ok doc=%s chunks=%d concepts=%d embedded=%s",
            document_id,
            len(doc.chunks),
            len(doc.concepts),
            index is not None,
        )
        return doc

    async def search(
        self, document_id: str, query: str, k: int = 4
    ) -> Optional[Tuple[str, List[SearchHit]]]:
        """
        Returns (method, hits) or None for an unknown document.
        Cosine top-k when embeddings are stored, keyword filter otherwise.
        """
        doc = await self._documents.get(document_id)
        if doc is None:
            return None
        if doc.embeddings is not None and doc.chunks:
            ranked = await asyncio.to_thread(top_k, doc.embeddings, query, k, self._encode)
            return "embedding", [(i, score, doc.chunks[i]) for i, score in ranked]
        haystack = doc.chunks or [doc.preview]
        return "keyword", keyword_hits(haystack, query, k)

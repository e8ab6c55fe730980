# core/embeddings_retriever.py
from functools import lru_cache
from typing import TYPE_CHECKING, Callable, List, Sequence, Tuple
import numpy as np
from config.settings import settings
from core.entities import EmbeddingIndex
from util.timing import timed
import logging

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

# texts -> (n, d) float32, rows L2-normalized
Encoder = Callable[[Sequence[str]], np.ndarray]


@lru_cache(maxsize=1)
def _load_model(name: str = settings.EMBEDDING_MODEL_NAME) -> "SentenceTransformer":
    """
    Lazy-load the sentence embedding model on first use.

    Imported here so workers with INDEX_EMBEDDINGS_ENABLED=false never pay for torch.
    """
    from sentence_transformers import SentenceTransformer

    with timed(logger, "embed.model.load", model=name):
        model = SentenceTransformer(name, device="cpu")
    return model


def encode_texts(texts: Sequence[str], batch_size: int = 64) -> np.ndarray:
    model = _load_model()
    with timed(logger, "embed.encode", n=len(texts), batch=batch_size):
        vecs = model.encode(
            list(texts),
            batch_size=batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
    return vecs.astype(np.float32, copy=False)


def build_index(texts: Sequence[str], encode: Encoder = encode_texts) -> EmbeddingIndex:
    """
    Encode `texts` into an EmbeddingIndex with L2-normalized vectors.
    """
    emb = np.asarray(encode(texts), dtype=np.float32)
    logger.info("embed.index n=%d d=%d", emb.shape[0], emb.shape[1] if emb.size else 0)
    return EmbeddingIndex(embeddings=emb)


def top_k(
    index: EmbeddingIndex, query: str, k: int = 4, encode: Encoder = encode_texts
) -> List[Tuple[int, float]]:
    """
    Return top-k (index, cosine_sim) for the query against the index.
    """
    if index.embeddings.size == 0:
        return []
    with timed(logger, "embed.query", k=k):
        q = np.asarray(encode([query]), dtype=np.float32)[0]
        sims = (index.embeddings @ q).astype(float)
        kk = max(1, min(k, sims.shape[0]))
        top_idx = np.argpartition(sims, -kk)[-kk:]
        out = sorted(
            ((int(i), float(sims[int(i)])) for i in top_idx),
            key=lambda t: t[1],
            reverse=True,
        )
    logger.info("embed.topk k=%d", len(out))
    return out

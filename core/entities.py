# core/entities.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar
import numpy as np
from model.analysis import ReconciledConcept

T = TypeVar("T")


class Stage(Enum):
    """Pipeline stages with their progress band (floor, ceiling)."""

    EXTRACTION = ("extraction", 0, 40)
    QUESTIONS = ("questions", 40, 60)
    CONCEPTS = ("concepts", 60, 90)
    INDEX = ("index", 90, 100)

    def __init__(self, label: str, floor: int, ceiling: int) -> None:
        self.label = label
        self.floor = floor
        self.ceiling = ceiling

    def scaled(self, done: int, total: int) -> int:
        """Map `done/total` of this stage's work into its band."""
        if total <= 0:
            return self.floor
        span = self.ceiling - self.floor
        return self.floor + int(span * min(done, total) / total)


class StageQuality(str, Enum):
    FULL = "full"
    DEGRADED = "degraded"


@dataclass
class StageResult(Generic[T]):
    value: T
    quality: StageQuality = StageQuality.FULL
    method: str = ""
    reason: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.quality is StageQuality.DEGRADED


@dataclass
class ConceptOutcome:
    concepts: List[ReconciledConcept]
    existing: int = 0
    new: int = 0
    failures: int = 0


@dataclass
class EmbeddingIndex:
    """
    L2-normalized embedding matrix for cosine similarity search.
    """

    embeddings: np.ndarray  # (n, d) float32


@dataclass
class IndexedDocument:
    document_id: str
    preview: str
    concepts: List[str]
    chunks: List[str]
    embeddings: Optional[EmbeddingIndex] = None

# model/analysis.py
from enum import Enum
from typing import Literal, Optional
from pydantic import BaseModel, Field
from util.errors import UnsupportedContentError

_PDF_KINDS = {"pdf", "application/pdf"}
_IMAGE_KINDS = {"image", "png", "jpg", "jpeg", "gif", "webp", "bmp", "tif", "tiff"}
_TEXT_KINDS = {"text", "txt", "md", "markdown", "text/plain", "text/markdown"}


class ContentKind(str, Enum):
    PDF = "pdf"
    IMAGE = "image"
    TEXT = "text"

    @classmethod
    def parse(cls, declared: str) -> "ContentKind":
        """
        Lenient mapping from declared kinds / MIME types to a ContentKind.
        Raises UnsupportedContentError for anything else.
        """
        kind = (declared or "").strip().lower()
        if kind in _PDF_KINDS:
            return cls.PDF
        if kind in _IMAGE_KINDS or kind.startswith("image/"):
            return cls.IMAGE
        if kind in _TEXT_KINDS:
            return cls.TEXT
        raise UnsupportedContentError(f"Unsupported content kind: {declared!r}")


class Difficulty(str, Enum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"
    EXPERT = "EXPERT"

    @classmethod
    def coerce(cls, value: object) -> "Difficulty":
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return cls.MEDIUM


class ExtractedQuestion(BaseModel):
    text: str
    ordinal: int
    label: Optional[str] = None
    points: Optional[int] = None
    difficulty: Difficulty = Difficulty.MEDIUM


class ConceptCandidate(BaseModel):
    name: str
    category: str = "General"
    description: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    is_main: bool = False


class Concept(BaseModel):
    id: str
    name: str
    category: str = "General"
    description: str = ""


ConceptOrigin = Literal["existing", "new"]


class ReconciledConcept(BaseModel):
    id: str
    name: str
    category: str
    description: str = ""
    confidence: float = 0.5
    is_main: bool = False
    origin: ConceptOrigin

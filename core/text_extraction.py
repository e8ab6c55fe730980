# core/text_extraction.py
import logging
from typing import Optional
from config.settings import settings
from core.anthropic_client import AnthropicClient
from core.document_source import DocumentSource
from core.entities import StageQuality, StageResult
from core.pdf_text import extract_pages_texts
from core.text_normalizer import normalize_text
from model.analysis import ContentKind
from util.constants import Placeholders
from util.types import ProgressCallback

logger = logging.getLogger(__name__)


def sniff_image_media_type(data: bytes) -> str:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"GIF87a") or data.startswith(b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


class TextExtractor:
    """
    Stage A: bytes -> normalized text.

    PDF parse errors are fatal for the attempt. OCR errors and too-short
    text are not: they yield placeholder text flagged as degraded so the
    later stages still run.
    """

    def __init__(
        self,
        source: DocumentSource,
        ai: AnthropicClient,
        *,
        min_text_length: int = settings.MIN_TEXT_LENGTH,
        pdf_timeout: float = settings.PDF_TIMEOUT_SECONDS,
        ocr_timeout: float = settings.OCR_TIMEOUT_SECONDS,
    ) -> None:
        self._source = source
        self._ai = ai
        self._min_text_length = min_text_length
        self._pdf_timeout = pdf_timeout
        self._ocr_timeout = ocr_timeout

    async def extract(
        self,
        document_ref: str,
        content_kind: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StageResult[str]:
        kind = ContentKind.parse(content_kind)
        data = await self._source.fetch(document_ref)
        logger.info("extract.start kind=%s bytes=%d", kind.value, len(data))

        pages = 1
        if kind is ContentKind.PDF:
            page_texts = await extract_pages_texts(data, on_page=on_progress, timeout=self._pdf_timeout)
            pages = len(page_texts)
            raw = "\n\n".join(t for _, t in page_texts if t)
            method = "pdf"
        elif kind is ContentKind.IMAGE:
            method = "ocr"
            try:
                raw = await self._ai.transcribe_image(
                    data, sniff_image_media_type(data), timeout=self._ocr_timeout
                )
            except Exception as exc:
                logger.warning("extract.ocr.failed err=%s", type(exc).__name__)
                if on_progress is not None:
                    on_progress(1, 1)
                return StageResult(
                    value=Placeholders.OCR_FAILED,
                    quality=StageQuality.DEGRADED,
                    method=method,
                    reason="ocr_failed",
                    meta={"pages": 1, "characters": len(Placeholders.OCR_FAILED)},
                )
            if on_progress is not None:
                on_progress(1, 1)
        else:
            raw = data.decode("utf-8", errors="replace")
            method = "text"
            if on_progress is not None:
                on_progress(1, 1)

        text = normalize_text(raw)
        if len(text) < self._min_text_length:
            logger.warning("extract.low_text method=%s chars=%d", method, len(text))
            return StageResult(
                value=Placeholders.LOW_TEXT,
                quality=StageQuality.DEGRADED,
                method=method,
                reason="low_text",
                meta={"pages": pages, "characters": len(text)},
            )

        logger.info("extract.ok method=%s pages=%d chars=%d", method, pages, len(text))
        return StageResult(
            value=text,
            method=method,
            meta={"pages": pages, "characters": len(text)},
        )

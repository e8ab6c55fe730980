# core/pdf_text.py
import asyncio
import logging
import threading
from typing import Callable, List, Optional, Tuple
import fitz
from config.settings import settings
from util.errors import PdfParseError
from util.timing import timed
from util.types import ProgressCallback

logger = logging.getLogger(__name__)


def _parse(
    file_bytes: bytes,
    stop: threading.Event,
    report: Callable[[int, int], None],
) -> List[Tuple[int, str]]:
    # Runs in a worker thread; the document never leaves it.
    try:
        doc = fitz.open(stream=file_bytes, filetype="pdf")
    except Exception as exc:
        raise PdfParseError(f"Failed to open PDF: {type(exc).__name__}") from exc

    out: List[Tuple[int, str]] = []
    try:
        pages = doc.page_count
        for i in range(pages):
            if stop.is_set():
                break
            page = doc.load_page(i)
            out.append((i + 1, (page.get_text("text") or "").strip()))
            report(i + 1, pages)
    except Exception as exc:
        raise PdfParseError(f"Failed to parse PDF: {type(exc).__name__}") from exc
    finally:
        doc.close()
    return out


async def extract_pages_texts(
    file_bytes: bytes,
    on_page: Optional[ProgressCallback] = None,
    timeout: float = settings.PDF_TIMEOUT_SECONDS,
) -> List[Tuple[int, str]]:
    """
    Return [(page_number, page_text)] for the whole PDF.
    `on_page(done, total)` fires on the event loop after each page. Parse
    failure or timeout raises PdfParseError; there is no OCR fallback for PDFs.
    A timeout or cancel only abandons the wait: the worker thread stops at
    the next page boundary and closes the document itself.
    """
    loop = asyncio.get_running_loop()
    stop = threading.Event()

    def report(done: int, total: int) -> None:
        if on_page is not None and not stop.is_set():
            loop.call_soon_threadsafe(on_page, done, total)

    try:
        with timed(logger, "pdf.parse"):
            out = await asyncio.wait_for(
                asyncio.to_thread(_parse, file_bytes, stop, report), timeout=timeout
            )
    except asyncio.TimeoutError as exc:
        stop.set()
        raise PdfParseError(f"PDF parsing timed out after {timeout:.0f}s") from exc
    except asyncio.CancelledError:
        stop.set()
        raise
    logger.info("pdf.pages count=%d", len(out))
    return out


def greedy_para_split(text: str, max_chars: int = settings.INDEX_CHUNK_CHARS) -> List[str]:
    paras = [p.strip() for p in text.split("\n") if p.strip()]
    if not paras:
        return []
    chunks: List[str] = []
    buf: List[str] = []
    size = 0
    for p in paras:
        if size + len(p) + 1 > max_chars and buf:
            chunks.append("\n".join(buf))
            buf = [p]
            size = len(p)
        else:
            buf.append(p)
            size += len(p) + 1
    if buf:
        chunks.append("\n".join(buf))
    return chunks

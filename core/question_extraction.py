# core/question_extraction.py
import logging
import re
from typing import List, Optional, Tuple
from config.settings import settings
from core.anthropic_client import AnthropicClient
from core.entities import StageQuality, StageResult
from model.analysis import Difficulty, ExtractedQuestion
from util.errors import AIServiceError, describe

logger = logging.getLogger(__name__)

# Numbering conventions, tried in this order; the first that yields a valid segment wins.
CONVENTIONS: Tuple[Tuple[str, re.Pattern], ...] = (
    ("dot", re.compile(r"^[ \t]*(\d{1,3})\.[ \t]+", re.MULTILINE)),
    ("paren", re.compile(r"^[ \t]*(\d{1,3})\)[ \t]+", re.MULTILINE)),
    ("question", re.compile(r"^[ \t]*Question[ \t]+(\d{1,3})[ \t]*:[ \t]*", re.MULTILINE | re.IGNORECASE)),
)

BOILERPLATE = ("DEPARTMENT", "FACULTY", "UNIVERSITY", "SCHOOL OF", "TIME ALLOWED", "INSTRUCTIONS")

_MARKS = re.compile(r"\((\d{1,3})\s*marks?\)", re.IGNORECASE)


def _points(text: str) -> Optional[int]:
    m = _MARKS.search(text)
    return int(m.group(1)) if m else None


def _is_boilerplate(line: str) -> bool:
    line = line.strip()
    if not line or line != line.upper() or not any(c.isalpha() for c in line):
        return False
    return any(word in line for word in BOILERPLATE)


def _strip_boilerplate(segment: str) -> str:
    # Page headers land inside the previous question's body once pages are joined.
    return "\n".join(line for line in segment.splitlines() if not _is_boilerplate(line)).strip()


def _split(text: str, pattern: re.Pattern) -> List[Tuple[str, str]]:
    matches = list(pattern.finditer(text))
    out: List[Tuple[str, str]] = []
    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        out.append((m.group(1), text[m.end() : end].strip()))
    return out


def segment_questions(
    text: str,
    *,
    min_segment_length: int = settings.MIN_SEGMENT_LENGTH,
    min_line_length: int = settings.MIN_LINE_LENGTH,
) -> Tuple[List[ExtractedQuestion], str]:
    """
    Deterministic question segmentation.

    Returns (questions, method) where method is "pattern" when a numbering
    convention matched and "lines" when every long-enough line was taken.
    """
    for name, pattern in CONVENTIONS:
        questions: List[ExtractedQuestion] = []
        for label, body in _split(text, pattern):
            body = _strip_boilerplate(body)
            if len(body) < min_segment_length:
                continue
            questions.append(
                ExtractedQuestion(
                    text=" ".join(body.split()),
                    ordinal=len(questions) + 1,
                    label=label,
                    points=_points(body),
                    difficulty=Difficulty.MEDIUM,
                )
            )
        if questions:
            logger.info("segment.pattern convention=%s count=%d", name, len(questions))
            return questions, "pattern"

    questions = []
    for line in text.splitlines():
        line = line.strip()
        if len(line) < min_line_length or _is_boilerplate(line):
            continue
        questions.append(
            ExtractedQuestion(
                text=line,
                ordinal=len(questions) + 1,
                points=_points(line),
                difficulty=Difficulty.MEDIUM,
            )
        )
    logger.info("segment.lines count=%d", len(questions))
    return questions, "lines"


class QuestionExtractor:
    """Stage B: generative extraction first, deterministic segmentation when it raises."""

    def __init__(
        self,
        ai: AnthropicClient,
        *,
        timeout: float = settings.AI_EXTRACT_TIMEOUT_SECONDS,
        default_context: str = settings.DEFAULT_COURSE_CONTEXT,
    ) -> None:
        self._ai = ai
        self._timeout = timeout
        self._default_context = default_context

    async def extract(
        self, text: str, course_context: Optional[str] = None
    ) -> StageResult[List[ExtractedQuestion]]:
        context = course_context or self._default_context
        try:
            questions = await self._ai.extract_questions(text, context, timeout=self._timeout)
        except AIServiceError as exc:
            logger.warning("questions.fallback err=%s", type(exc).__name__)
            questions, method = segment_questions(text)
            return StageResult(
                value=questions,
                quality=StageQuality.DEGRADED,
                method=method,
                reason=describe(exc),
                meta={"count": len(questions)},
            )
        return StageResult(value=questions, method="ai", meta={"count": len(questions)})

# core/anthropic_client.py
import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional
import httpx
from config.settings import settings
from model.analysis import ConceptCandidate, Difficulty, ExtractedQuestion
from util.errors import AIServiceError
from util.timing import timed

logger = logging.getLogger(__name__)


def _strip_fences(raw: str) -> str:
    lines = [ln for ln in raw.strip().splitlines() if not ln.strip().startswith("```")]
    return "\n".join(lines).strip()


def _parse_json_object(raw: str) -> Dict[str, Any]:
    """
    Parse the first JSON object in a model reply.
    Tolerates code fences and leading/trailing prose; anything else is malformed.
    """
    text = _strip_fences(raw)
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise AIServiceError("Malformed model output: no JSON object")
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise AIServiceError("Malformed model output: invalid JSON") from exc
    if not isinstance(data, dict):
        raise AIServiceError("Malformed model output: expected an object")
    return data


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None and str(value).strip() != "" else None
    except (TypeError, ValueError):
        return None


def _as_confidence(value: Any) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.5


class AnthropicClient:
    """
    Thin Messages API client for the three generative calls the pipeline makes.
    Every failure (missing key, transport, HTTP status, timeout, malformed
    output) surfaces as AIServiceError so callers can degrade.
    """

    def __init__(
        self,
        *,
        api_key: str = settings.ANTHROPIC_API_KEY,
        api_url: str = settings.ANTHROPIC_API_URL,
        model: str = settings.ANTHROPIC_MODEL,
        version: str = settings.ANTHROPIC_VERSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url
        self._model = model
        self._version = version
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def _post_json(self, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": self._version,
            "content-type": "application/json",
        }
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            r = await client.post(self._api_url, headers=headers, json=payload)
            r.raise_for_status()
            return r.json()

    async def _complete(
        self,
        *,
        op: str,
        system: str,
        content: Any,
        max_tokens: int,
        timeout: float,
    ) -> str:
        if not self._api_key:
            raise AIServiceError("ANTHROPIC_API_KEY is not configured")
        payload = {
            "model": self._model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": content}],
            "temperature": 0.0,
        }
        try:
            with timed(logger, f"ai.{op}", model=self._model):
                data = await asyncio.wait_for(self._post_json(payload, timeout), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise AIServiceError(f"AI {op} timed out after {timeout:.0f}s") from exc
        except httpx.HTTPStatusError as exc:
            raise AIServiceError(f"AI {op} failed: HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise AIServiceError(f"AI {op} failed: {type(exc).__name__}") from exc
        except ValueError as exc:
            raise AIServiceError(f"AI {op} returned a non-JSON response") from exc

        blocks = data.get("content") if isinstance(data, dict) else None
        text = ""
        if isinstance(blocks, list):
            text = "".join(
                b.get("text") or ""
                for b in blocks
                if isinstance(b, dict) and b.get("type") == "text"
            )
        if not text.strip():
            raise AIServiceError(f"AI {op} returned no text")
        return text

    async def extract_questions(
        self,
        text: str,
        course_context: str = settings.DEFAULT_COURSE_CONTEXT,
        timeout: float = settings.AI_EXTRACT_TIMEOUT_SECONDS,
    ) -> List[ExtractedQuestion]:
        user = f"COURSE CONTEXT: {course_context}\n\nTEXT:\n{text}"
        raw = await self._complete(
            op="questions",
            system=settings.QUESTION_SYSTEM_PROMPT,
            content=user,
            max_tokens=4000,
            timeout=timeout,
        )
        items = _parse_json_object(raw).get("questions")
        if not isinstance(items, list):
            raise AIServiceError("Malformed model output: 'questions' is not a list")

        out: List[ExtractedQuestion] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            body = str(item.get("questionText") or "").strip()
            if not body:
                continue
            label = item.get("questionNumber")
            out.append(
                ExtractedQuestion(
                    text=body,
                    ordinal=len(out) + 1,
                    label=str(label).strip() if label not in (None, "") else None,
                    points=_as_int(item.get("marks")),
                    difficulty=Difficulty.coerce(item.get("difficulty")),
                )
            )
        logger.info("ai.questions.parsed count=%d", len(out))
        return out

    async def identify_concepts(
        self,
        question: str,
        course_context: str = settings.DEFAULT_COURSE_CONTEXT,
        timeout: float = settings.AI_CONCEPT_TIMEOUT_SECONDS,
    ) -> List[ConceptCandidate]:
        user = f"COURSE CONTEXT: {course_context}\n\nQUESTION:\n{question}"
        raw = await self._complete(
            op="concepts",
            system=settings.CONCEPT_SYSTEM_PROMPT,
            content=user,
            max_tokens=1000,
            timeout=timeout,
        )
        items = _parse_json_object(raw).get("concepts")
        if not isinstance(items, list):
            raise AIServiceError("Malformed model output: 'concepts' is not a list")

        out: List[ConceptCandidate] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            if not name:
                continue
            out.append(
                ConceptCandidate(
                    name=name,
                    category=str(item.get("category") or "General").strip() or "General",
                    description=str(item.get("description") or "").strip(),
                    confidence=_as_confidence(item.get("confidence")),
                    is_main=bool(item.get("isMainConcept")),
                )
            )
        return out

    async def transcribe_image(
        self,
        data: bytes,
        media_type: str,
        timeout: float = settings.OCR_TIMEOUT_SECONDS,
    ) -> str:
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": media_type,
                    "data": base64.b64encode(data).decode("ascii"),
                },
            },
            {"type": "text", "text": "Extract all text from this document image."},
        ]
        text = await self._complete(
            op="ocr",
            system=settings.OCR_SYSTEM_PROMPT,
            content=content,
            max_tokens=4000,
            timeout=timeout,
        )
        logger.info("ai.ocr.ok bytes=%d chars=%d", len(data), len(text))
        return _strip_fences(text)

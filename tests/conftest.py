"""Shared fixtures: environment, in-memory Redis, scripted model client, PDF builder."""

import os

# Settings are read at import time; seed required variables first.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ALLOWED_ORIGIN", "http://localhost:3000")
os.environ.setdefault("RATE_LIMIT_TIMES", "1000")
os.environ.setdefault("RATE_LIMIT_SECONDS", "60")
os.environ.setdefault("MAX_FILE_MB", "5")
os.environ.setdefault("TRUST_PROXY", "false")
os.environ.setdefault("ANTHROPIC_API_URL", "https://api.anthropic.test/v1/messages")
os.environ.setdefault("ANTHROPIC_MODEL", "test-model")
os.environ.setdefault("ANTHROPIC_VERSION", "2023-06-01")
os.environ.setdefault("INDEX_EMBEDDINGS_ENABLED", "false")

import asyncio  # noqa: E402
import fnmatch  # noqa: E402
from typing import Any, Callable, Dict, Iterable, List, Optional  # noqa: E402

import anyio  # noqa: E402
import fitz  # noqa: E402
import pytest  # noqa: E402

import config.cache  # noqa: E402
from core.job_queue import JobQueue  # noqa: E402
from model.analysis import ConceptCandidate, ExtractedQuestion  # noqa: E402
from util.errors import AIServiceError  # noqa: E402


def _b(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return str(value).encode("utf-8")


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the repositories, returning bytes like decode_responses=False."""

    def __init__(self) -> None:
        self.strings: Dict[bytes, bytes] = {}
        self.hashes: Dict[bytes, Dict[bytes, bytes]] = {}
        self.sets: Dict[bytes, set] = {}
        self.zsets: Dict[bytes, Dict[bytes, float]] = {}
        self.ttls: Dict[bytes, int] = {}

    def _stores(self) -> Iterable[dict]:
        return (self.strings, self.hashes, self.sets, self.zsets)

    def _has(self, key: bytes) -> bool:
        return any(key in store for store in self._stores())

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None

    async def hset(self, name, key=None, value=None, mapping=None) -> int:
        h = self.hashes.setdefault(_b(name), {})
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        added = 0
        for k, v in items.items():
            if _b(k) not in h:
                added += 1
            h[_b(k)] = _b(v)
        return added

    async def hgetall(self, name) -> Dict[bytes, bytes]:
        return dict(self.hashes.get(_b(name), {}))

    async def hget(self, name, key) -> Optional[bytes]:
        return self.hashes.get(_b(name), {}).get(_b(key))

    async def exists(self, *names) -> int:
        return sum(1 for n in names if self._has(_b(n)))

    async def expire(self, name, seconds) -> bool:
        key = _b(name)
        if not self._has(key):
            return False
        self.ttls[key] = int(seconds)
        return True

    async def persist(self, name) -> bool:
        return self.ttls.pop(_b(name), None) is not None

    async def delete(self, *names) -> int:
        removed = 0
        for n in names:
            key = _b(n)
            for store in self._stores():
                if store.pop(key, None) is not None:
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    async def set(self, name, value, ex=None, nx=False) -> Optional[bool]:
        key = _b(name)
        if nx and key in self.strings:
            return None
        self.strings[key] = _b(value)
        if ex:
            self.ttls[key] = int(ex)
        return True

    async def get(self, name) -> Optional[bytes]:
        return self.strings.get(_b(name))

    async def sadd(self, name, *values) -> int:
        s = self.sets.setdefault(_b(name), set())
        before = len(s)
        s.update(_b(v) for v in values)
        return len(s) - before

    async def smembers(self, name) -> set:
        return set(self.sets.get(_b(name), set()))

    async def zadd(self, name, mapping) -> int:
        z = self.zsets.setdefault(_b(name), {})
        added = sum(1 for m in mapping if _b(m) not in z)
        for m, score in mapping.items():
            z[_b(m)] = float(score)
        return added

    async def zrevrange(self, name, start, end) -> List[bytes]:
        z = self.zsets.get(_b(name), {})
        ordered = [m for m, _ in sorted(z.items(), key=lambda kv: (-kv[1], kv[0]))]
        stop = None if end == -1 else end + 1
        return ordered[start:stop]

    async def zrem(self, name, *values) -> int:
        z = self.zsets.get(_b(name), {})
        return sum(1 for v in values if z.pop(_b(v), None) is not None)

    def keys_matching(self, pattern: str) -> List[str]:
        names = set()
        for store in self._stores():
            names.update(k.decode("utf-8") for k in store)
        return sorted(n for n in names if fnmatch.fnmatch(n, pattern))


class ScriptedAI:
    """
    Stands in for AnthropicClient.
    Each behaviour is either a value, an exception instance to raise, or a callable.
    """

    def __init__(
        self,
        *,
        questions: Any = None,
        concepts: Any = None,
        ocr: Any = None,
    ) -> None:
        self.questions = questions if questions is not None else AIServiceError("ANTHROPIC_API_KEY is not configured")
        self.concepts = concepts if concepts is not None else AIServiceError("ANTHROPIC_API_KEY is not configured")
        self.ocr = ocr if ocr is not None else AIServiceError("ANTHROPIC_API_KEY is not configured")
        self.calls: Dict[str, int] = {"questions": 0, "concepts": 0, "ocr": 0}

    @staticmethod
    async def _resolve(behaviour: Any, *args: Any) -> Any:
        if isinstance(behaviour, BaseException):
            raise behaviour
        if callable(behaviour):
            out = behaviour(*args)
            if asyncio.iscoroutine(out):
                out = await out
            return out
        return behaviour

    async def extract_questions(self, text: str, course_context: str = "", timeout: float = 0) -> List[ExtractedQuestion]:
        self.calls["questions"] += 1
        return await self._resolve(self.questions, text)

    async def identify_concepts(self, question: str, course_context: str = "", timeout: float = 0) -> List[ConceptCandidate]:
        self.calls["concepts"] += 1
        return await self._resolve(self.concepts, question)

    async def transcribe_image(self, data: bytes, media_type: str, timeout: float = 0) -> str:
        self.calls["ocr"] += 1
        return await self._resolve(self.ocr, data)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(config.cache, "_client", fake)
    return fake


@pytest.fixture
def scripted_ai() -> Callable[..., ScriptedAI]:
    return ScriptedAI


@pytest.fixture
def make_pdf() -> Callable[[List[str]], bytes]:
    def _make(pages: List[str]) -> bytes:
        doc = fitz.open()
        for text in pages:
            page = doc.new_page()
            y = 72
            for line in text.splitlines() or [""]:
                page.insert_text((72, y), line, fontsize=11)
                y += 16
        data = doc.tobytes()
        doc.close()
        return data

    return _make


@pytest.fixture
def make_queue() -> Callable[..., JobQueue]:
    """Fast-retry queue factory; the passive ticker is parked unless a test asks for it."""

    def _make(**overrides: Any) -> JobQueue:
        opts = dict(
            concurrency=5,
            max_attempts=3,
            retry_base_seconds=0.01,
            retry_max_seconds=0.05,
            tick_seconds=60.0,
            tick_step=5,
            tick_ceiling=90,
            deadline_seconds=10.0,
        )
        opts.update(overrides)
        return JobQueue(**opts)

    return _make


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    async def _wait(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.01) -> None:
        with anyio.fail_after(timeout):
            while True:
                out = predicate()
                if asyncio.iscoroutine(out):
                    out = await out
                if out:
                    return
                await anyio.sleep(interval)

    return _wait

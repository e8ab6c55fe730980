# config/settings.py
import os
import sys
from dotenv import load_dotenv
from pydantic import ValidationError, Field
from pydantic_settings import BaseSettings
from util.enums import Environment
import logging


if os.getenv("APP_ENV", Environment.DEV) == Environment.DEV:
    load_dotenv()

_log = logging.getLogger("config.settings")


class Settings(BaseSettings):
    # App
    APP_ENV: str = Field(..., validation_alias="APP_ENV")
    REDIS_URL: str = Field(..., validation_alias="REDIS_URL")
    # 0 keeps durable records forever; retention belongs to an external policy.
    PERSISTENCE_TTL_SECONDS: int = Field(
        default=0, validation_alias="PERSISTENCE_TTL_SECONDS"
    )

    # CORS & Limits
    ALLOWED_ORIGIN: str = Field(..., validation_alias="ALLOWED_ORIGIN")
    RATE_LIMIT_TIMES: int = Field(..., validation_alias="RATE_LIMIT_TIMES")
    RATE_LIMIT_SECONDS: int = Field(..., validation_alias="RATE_LIMIT_SECONDS")
    MAX_FILE_MB: int = Field(..., validation_alias="MAX_FILE_MB")
    TRUST_PROXY: bool = Field(..., validation_alias="TRUST_PROXY")

    # Anthropic Settings
    ANTHROPIC_API_URL: str = Field(..., validation_alias="ANTHROPIC_API_URL")
    ANTHROPIC_MODEL: str = Field(..., validation_alias="ANTHROPIC_MODEL")
    ANTHROPIC_VERSION: str = Field(..., validation_alias="ANTHROPIC_VERSION")
    ANTHROPIC_API_KEY: str = Field(default="", validation_alias="ANTHROPIC_API_KEY")

    # Job queue
    QUEUE_CONCURRENCY: int = 5
    QUEUE_MAX_PENDING: int = 0
    QUEUE_MAX_ATTEMPTS: int = 3
    ANALYSIS_MAX_ATTEMPTS: int = 2
    QUEUE_RETRY_BASE_SECONDS: float = 5.0
    QUEUE_RETRY_MAX_SECONDS: float = 60.0
    QUEUE_TICK_SECONDS: float = 1.0
    QUEUE_TICK_STEP: int = 5
    QUEUE_TICK_CEILING: int = 90
    JOB_DEADLINE_SECONDS: float = 900.0

    # Stage timeouts
    FETCH_TIMEOUT_SECONDS: float = 30.0
    PDF_TIMEOUT_SECONDS: float = 60.0
    OCR_TIMEOUT_SECONDS: float = 300.0
    AI_EXTRACT_TIMEOUT_SECONDS: float = 120.0
    AI_CONCEPT_TIMEOUT_SECONDS: float = 60.0

    # Text handling
    MIN_TEXT_LENGTH: int = 100
    MIN_SEGMENT_LENGTH: int = 10
    MIN_LINE_LENGTH: int = 20
    DEFAULT_COURSE_CONTEXT: str = "General Academic"

    # Document index
    INDEX_PREVIEW_CHARS: int = 2000
    INDEX_CHUNK_CHARS: int = 1400
    INDEX_EMBEDDINGS_ENABLED: bool = True
    EMBEDDING_MODEL_NAME: str = "sentence-transformers/all-MiniLM-L6-v2"

    # Logging knobs
    LOGGER_NAME: str = "doc-analysis"
    LOG_LEVEL: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    LOG_TO_FILE: bool = Field(default=False, validation_alias="LOG_TO_FILE")
    LOG_DIR: str = Field(default="logs", validation_alias="LOG_DIR")
    LOG_FILE_NAME: str = Field(default="app.log", validation_alias="LOG_FILE_NAME")
    LOG_MAX_BYTES: int = Field(
        default=50 * 1024 * 1024, validation_alias="LOG_MAX_BYTES"
    )
    LOG_BACKUP_COUNT: int = Field(default=5, validation_alias="LOG_BACKUP_COUNT")

    # Prompts
    QUESTION_SYSTEM_PROMPT: str = (
        "You are an expert academic question extractor. The user message holds text taken from a "
        "past question paper or exam, preceded by a short course context line.\n"
        "\n"
        "OUTPUT: a single JSON object, no code fences, no commentary:\n"
        '{"questions":[{"questionNumber":"1a","questionText":"...","marks":5,"difficulty":"MEDIUM"}]}\n'
        "\n"
        "RULES:\n"
        "- Each question must be complete and self-contained.\n"
        "- Emit sub-questions as separate entries (1a, 1b, ...).\n"
        '- "questionNumber" is the label printed on the paper, or null when unclear.\n'
        '- "marks" is the integer value printed next to the question (e.g. "(5 marks)"), or null.\n'
        '- "difficulty" is one of EASY, MEDIUM, HARD, EXPERT, judged from complexity and academic level.\n'
        "- Ignore instructions, headers, institutional boilerplate and page furniture.\n"
        '- If no clear question structure is found, return {"questions":[]}.\n'
    )

    CONCEPT_SYSTEM_PROMPT: str = (
        "You are an expert academic concept analyzer. Given a COURSE CONTEXT and a QUESTION, "
        "identify the key academic concepts the question covers.\n"
        "\n"
        "OUTPUT: a single JSON object, no code fences, no commentary:\n"
        '{"concepts":[{"name":"...","category":"...","description":"...","confidence":0.9,"isMainConcept":true}]}\n'
        "\n"
        "RULES:\n"
        "- Include 3-7 concepts; mark 1-2 as main concepts.\n"
        "- confidence is between 0.0 and 1.0.\n"
        "- Use standard academic terminology for names; prefer the full name over an acronym.\n"
        "- category is a broad subject area (e.g. Mathematics, Physics, Computer Science).\n"
        "- description is one short sentence.\n"
    )

    OCR_SYSTEM_PROMPT: str = (
        "You are an expert document text extractor. Extract ALL text visible in the image, which is an "
        "academic document, exam paper or study material.\n"
        "- Keep the original structure, line breaks and numbering (1., 2), Question 3:, a), b)).\n"
        "- Keep mark allocations such as (5 marks).\n"
        "- Describe mathematical symbols plainly when they cannot be typed.\n"
        "- Return only the extracted text, without commentary or formatting.\n"
    )


try:
    settings = Settings()
except ValidationError as e:
    print("❌ Missing/invalid environment variables:", file=sys.stderr)
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", []))
        msg = err.get("msg", "")
        print(f" - {loc}: {msg}", file=sys.stderr)
    sys.exit(1)
except Exception as e:
    print(f"❌ Settings initialization failed: {e}", file=sys.stderr)
    sys.exit(1)

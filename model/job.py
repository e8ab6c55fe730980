# model/job.py
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter
from util.functions import utcnow


class JobType(str, Enum):
    EXTRACT_TEXT = "extract-text"
    EXTRACT_QUESTIONS = "extract-questions"
    IDENTIFY_CONCEPTS = "identify-concepts"
    UPDATE_INDEX = "update-index"
    ANALYZE_DOCUMENT = "analyze-document"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# ---------------- Payloads (tagged by `kind`, one per job type) ----------------


class ExtractTextPayload(BaseModel):
    kind: Literal["extract-text"] = "extract-text"
    document_ref: str
    content_kind: str


class ExtractQuestionsPayload(BaseModel):
    kind: Literal["extract-questions"] = "extract-questions"
    text: str
    course_context: Optional[str] = None


class IdentifyConceptsPayload(BaseModel):
    kind: Literal["identify-concepts"] = "identify-concepts"
    questions: list[str]
    course_id: Optional[str] = None
    document_id: Optional[str] = None
    course_context: Optional[str] = None


class UpdateIndexPayload(BaseModel):
    kind: Literal["update-index"] = "update-index"
    document_id: str
    content: str
    concepts: list[str] = Field(default_factory=list)


class AnalyzeDocumentPayload(BaseModel):
    kind: Literal["analyze-document"] = "analyze-document"
    document_ref: str
    content_kind: str
    document_id: str
    course_id: Optional[str] = None
    course_context: Optional[str] = None
    enable_ai_analysis: bool = True


JobPayload = Annotated[
    Union[
        ExtractTextPayload,
        ExtractQuestionsPayload,
        IdentifyConceptsPayload,
        UpdateIndexPayload,
        AnalyzeDocumentPayload,
    ],
    Field(discriminator="kind"),
]

payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


# ---------------- Jobs ----------------


class Job(BaseModel):
    """
    In-memory unit of work owned by the queue engine.
    Snapshots handed out by the engine are deep copies.
    """

    id: str
    type: JobType = Field(frozen=True)
    payload: JobPayload
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    attempts: int = 0
    max_attempts: int = 3
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobRecord(BaseModel):
    """
    Durable projection of a job plus the document context it was submitted with.
    `stage` names the pipeline stage most recently entered.
    """

    id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    attempts: int = 0
    max_attempts: int = 3
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    document_id: Optional[str] = None
    document_ref: Optional[str] = None
    content_kind: Optional[str] = None
    course_id: Optional[str] = None
    stage: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobRecord":
        payload = job.payload
        return cls(
            id=job.id,
            type=job.type,
            status=job.status,
            progress=job.progress,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            result=job.result,
            error=job.error,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            document_id=getattr(payload, "document_id", None),
            document_ref=getattr(payload, "document_ref", None),
            content_kind=getattr(payload, "content_kind", None),
            course_id=getattr(payload, "course_id", None),
        )

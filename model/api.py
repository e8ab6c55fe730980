# model/api.py
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field
from model.job import JobRecord, JobStatus, JobType


class SubmitAnalysisRequest(BaseModel):
    documentRef: str = Field(min_length=1)
    contentKind: str = Field(min_length=1)
    documentId: Optional[str] = None
    courseId: Optional[str] = None
    courseContext: Optional[str] = None
    enableAiAnalysis: bool = True
    maxAttempts: Optional[int] = Field(default=None, ge=1, le=10)


class SubmitAnalysisResponse(BaseModel):
    jobId: str
    status: JobStatus
    documentId: Optional[str] = None


class JobStatusResponse(BaseModel):
    jobId: str
    type: JobType
    status: JobStatus
    progress: int
    attempts: int
    maxAttempts: int
    stage: Optional[str] = None
    documentId: Optional[str] = None
    courseId: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobStatusResponse":
        return cls(
            jobId=record.id,
            type=record.type,
            status=record.status,
            progress=record.progress,
            attempts=record.attempts,
            maxAttempts=record.max_attempts,
            stage=record.stage,
            documentId=record.document_id,
            courseId=record.course_id,
            result=record.result,
            error=record.error,
            createdAt=record.created_at,
            updatedAt=record.updated_at,
            startedAt=record.started_at,
            completedAt=record.completed_at,
        )


class CancelResponse(BaseModel):
    jobId: str
    cancelled: bool


class QueueStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int


class QueueJobsResponse(BaseModel):
    jobs: list[JobStatusResponse]


class SearchHit(BaseModel):
    chunk: int
    score: float
    text: str


class SearchResponse(BaseModel):
    documentId: str
    query: str
    method: str
    hits: list[SearchHit]

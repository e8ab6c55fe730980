# service/job_status_store.py
import logging
from typing import Any, List, Optional
from core.job_queue import JobQueue
from model.job import JobRecord, JobStatus, JobType
from repository.job_repository import JobRepository
from util.functions import utcnow

logger = logging.getLogger(__name__)

ORPHAN_MESSAGE = "Job interrupted: service restarted"


class JobStatusStore:
    """
    Status lookups for callers.

    The durable record is the source of truth; the queue's in-memory job
    is the fallback for jobs that never got one (e.g. single-stage jobs).
    """

    def __init__(self, jobs: JobRepository, queue: JobQueue) -> None:
        self._jobs = jobs
        self._queue = queue

    async def create_durable(
        self,
        job_id: str,
        job_type: JobType,
        *,
        max_attempts: int,
        document_id: Optional[str] = None,
        document_ref: Optional[str] = None,
        content_kind: Optional[str] = None,
        course_id: Optional[str] = None,
    ) -> JobRecord:
        now = utcnow()
        record = JobRecord(
            id=job_id,
            type=job_type,
            status=JobStatus.PENDING,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
            document_id=document_id,
            document_ref=document_ref,
            content_kind=content_kind,
            course_id=course_id,
        )
        await self._jobs.put(record)
        logger.info("status.created job=%s type=%s", job_id, job_type.value)
        return record

    async def update_durable(self, job_id: str, **patch: Any) -> Optional[JobRecord]:
        updated = await self._jobs.update(job_id, **patch)
        if updated is None:
            logger.warning("status.update.unknown job=%s", job_id)
        return updated

    async def query_status(self, job_id: str) -> Optional[JobRecord]:
        record = await self._jobs.get(job_id)
        if record is not None:
            return record
        job = self._queue.get(job_id)
        if job is not None:
            return JobRecord.from_job(job)
        return None

    async def mark_orphans_failed(self) -> int:
        """
        Fail durable records left non-terminal by a previous process.
        Records whose job is alive in this process are left alone.
        """
        marked = 0
        records: List[JobRecord] = await self._jobs.list_active()
        for record in records:
            if self._queue.get(record.id) is not None:
                continue
            now = utcnow()
            await self._jobs.update(
                record.id,
                status=JobStatus.FAILED,
                error=ORPHAN_MESSAGE,
                completed_at=now,
            )
            marked += 1
        if marked:
            logger.warning("status.orphans.failed count=%d", marked)
        return marked

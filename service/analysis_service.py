# service/analysis_service.py
import asyncio
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4
from config.settings import settings
from core.anthropic_client import AnthropicClient
from core.concept_identification import ConceptIdentifier
from core.document_source import DocumentSource
from core.embeddings_retriever import Encoder, encode_texts
from core.entities import Stage
from core.index_update import IndexUpdater
from core.job_queue import JobHandle, JobQueue
from core.pipeline import AnalysisPipeline
from core.question_extraction import QuestionExtractor
from core.text_extraction import TextExtractor
from model.analysis import ContentKind
from model.job import AnalyzeDocumentPayload, Job, JobRecord, JobStatus, JobType
from repository.blob_repository import BlobRepository
from repository.concept_repository import ConceptRepository
from repository.document_repository import DocumentRepository
from repository.job_repository import JobRepository
from service.job_status_store import JobStatusStore
from util.enums import ErrorMessage
from util.errors import AppError, QueueClosedError, UnsupportedContentError, describe
from util.functions import new_job_id, utcnow
from util.types import QueueStats

logger = logging.getLogger(__name__)


class AnalysisService:
    """
    Entry point for document analysis.

    Owns the contract between the queue and the durable record: every
    orchestrated job ends with a durable write, whatever way it exits.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: JobStatusStore,
        pipeline: AnalysisPipeline,
        blobs: BlobRepository,
        indexer: IndexUpdater,
        *,
        analysis_max_attempts: int = settings.ANALYSIS_MAX_ATTEMPTS,
    ) -> None:
        self._queue = queue
        self._store = store
        self._pipeline = pipeline
        self._blobs = blobs
        self._indexer = indexer
        self._max_attempts = analysis_max_attempts

    def install(self) -> None:
        self._pipeline.register(self._queue)
        self._queue.register(
            JobType.ANALYZE_DOCUMENT, self._guarded_analyze, finalizer=self._settle
        )

    # ---------------- Processor ----------------

    async def _guarded_analyze(self, handle: JobHandle) -> Dict[str, Any]:
        async def on_stage(stage: Stage) -> None:
            live = self._queue.get(handle.id)
            await self._store.update_durable(
                handle.id,
                status=JobStatus.PROCESSING,
                stage=stage.label,
                progress=stage.floor,
                attempts=handle.attempt,
                started_at=live.started_at if live else utcnow(),
            )

        try:
            result = await self._pipeline.analyze(handle, on_stage)
            # A cancel during this write lands after it; the failure branch then overwrites it.
            await self._write_through(
                handle.id,
                status=JobStatus.COMPLETED,
                progress=100,
                attempts=handle.attempt,
                result=result,
                error=None,
                completed_at=utcnow(),
            )
        except (Exception, asyncio.CancelledError) as exc:
            await self._record_failure(handle, exc)
            raise
        return result

    async def _record_failure(self, handle: JobHandle, exc: BaseException) -> None:
        message = handle.interruption() if isinstance(exc, asyncio.CancelledError) else describe(exc)
        if handle.will_retry(exc):
            logger.info("analysis.retry.pending job=%s reason=%s", handle.id, message)
            await self._write_through(
                handle.id,
                status=JobStatus.PENDING,
                attempts=handle.attempt,
                error=None,
            )
            return
        await self._write_through(
            handle.id,
            status=JobStatus.FAILED,
            attempts=handle.attempt,
            error=message,
            result=None,
            completed_at=utcnow(),
        )

    async def _settle(self, job: Job) -> None:
        """Queue finalizer: mirror a cancelled or interrupted job's terminal state."""
        await self._write_through(
            job.id,
            status=job.status,
            attempts=job.attempts,
            error=job.error,
            result=job.result,
            completed_at=job.completed_at,
        )

    async def _write(self, job_id: str, **patch: Any) -> None:
        # A failing durable write must not replace the job's own outcome.
        try:
            await self._store.update_durable(job_id, **patch)
        except Exception:
            logger.exception("analysis.durable.write.error job=%s", job_id)

    async def _write_through(self, job_id: str, **patch: Any) -> None:
        """Like _write, but the write finishes even if the caller is cancelled meanwhile."""
        write = asyncio.ensure_future(self._write(job_id, **patch))
        interrupted: Optional[asyncio.CancelledError] = None
        while not write.done():
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError as exc:
                interrupted = exc
        if interrupted is not None:
            raise interrupted

    # ---------------- Operations ----------------

    async def submit_analysis(
        self,
        document_ref: str,
        content_kind: str,
        *,
        document_id: Optional[str] = None,
        course_id: Optional[str] = None,
        course_context: Optional[str] = None,
        max_attempts: Optional[int] = None,
        enable_ai_analysis: bool = True,
    ) -> JobRecord:
        kind = self._parse_kind(content_kind)
        job_id = new_job_id()
        document_id = document_id or f"doc_{uuid4().hex}"
        attempts = max_attempts or self._max_attempts

        record = await self._store.create_durable(
            job_id,
            JobType.ANALYZE_DOCUMENT,
            max_attempts=attempts,
            document_id=document_id,
            document_ref=document_ref,
            content_kind=kind.value,
            course_id=course_id,
        )
        payload = AnalyzeDocumentPayload(
            document_ref=document_ref,
            content_kind=kind.value,
            document_id=document_id,
            course_id=course_id,
            course_context=course_context,
            enable_ai_analysis=enable_ai_analysis,
        )
        try:
            await self._queue.submit(
                JobType.ANALYZE_DOCUMENT, payload, max_attempts=attempts, job_id=job_id
            )
        except Exception as exc:
            logger.error("analysis.submit.error job=%s err=%s", job_id, type(exc).__name__)
            await self._write(job_id, status=JobStatus.FAILED, error=describe(exc), completed_at=utcnow())
            if isinstance(exc, QueueClosedError):
                raise AppError.of(ErrorMessage.QUEUE_UNAVAILABLE) from exc
            raise
        logger.info("analysis.submitted job=%s doc=%s kind=%s", job_id, document_id, kind.value)
        return record

    async def submit_upload(
        self,
        data: bytes,
        content_kind: str,
        *,
        document_id: Optional[str] = None,
        course_id: Optional[str] = None,
        course_context: Optional[str] = None,
        max_attempts: Optional[int] = None,
        enable_ai_analysis: bool = True,
    ) -> JobRecord:
        self._parse_kind(content_kind)
        blob_id = await self._blobs.put(data)
        logger.info("analysis.upload.stored blob=%s bytes=%d", blob_id, len(data))
        return await self.submit_analysis(
            BlobRepository.ref(blob_id),
            content_kind,
            document_id=document_id,
            course_id=course_id,
            course_context=course_context,
            max_attempts=max_attempts,
            enable_ai_analysis=enable_ai_analysis,
        )

    async def get_status(self, job_id: str) -> JobRecord:
        record = await self._store.query_status(job_id)
        if record is None:
            raise AppError.of(ErrorMessage.JOB_NOT_FOUND)
        return record

    async def cancel(self, job_id: str) -> bool:
        if not self._queue.cancel(job_id):
            if await self._store.query_status(job_id) is None:
                raise AppError.of(ErrorMessage.JOB_NOT_FOUND)
            return False
        job = self._queue.get(job_id)
        # A PENDING job is failed synchronously and never reaches the processor.
        if job is not None and job.status is JobStatus.FAILED:
            await self._write(
                job_id,
                status=JobStatus.FAILED,
                error=job.error,
                completed_at=job.completed_at,
            )
        return True

    def queue_stats(self) -> QueueStats:
        return self._queue.stats()

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobRecord]:
        return [JobRecord.from_job(j) for j in self._queue.list(status)]

    async def search(self, document_id: str, query: str, k: int = 4):
        found = await self._indexer.search(document_id, query, k)
        if found is None:
            raise AppError.of(ErrorMessage.DOCUMENT_NOT_FOUND)
        return found

    @staticmethod
    def _parse_kind(content_kind: str) -> ContentKind:
        try:
            return ContentKind.parse(content_kind)
        except UnsupportedContentError as exc:
            raise AppError.of(ErrorMessage.UNSUPPORTED_CONTENT) from exc

    async def recover_orphans(self) -> int:
        return await self._store.mark_orphans_failed()


def build_analysis_service(
    queue: JobQueue,
    *,
    ai: Optional[AnthropicClient] = None,
    source: Optional[DocumentSource] = None,
    encoder: Optional[Encoder] = None,
) -> AnalysisService:
    """Wire repositories, stage processors and the status store around `queue`."""
    ai = ai or AnthropicClient()
    blobs = BlobRepository()
    source = source or DocumentSource(blobs)
    indexer = IndexUpdater(
        DocumentRepository(),
        embeddings_enabled=settings.INDEX_EMBEDDINGS_ENABLED if encoder is None else True,
        encoder=encoder or encode_texts,
    )
    pipeline = AnalysisPipeline(
        TextExtractor(source, ai),
        QuestionExtractor(ai),
        ConceptIdentifier(ai, ConceptRepository()),
        indexer,
    )
    store = JobStatusStore(JobRepository(), queue)
    return AnalysisService(queue, store, pipeline, blobs, indexer)

# core/job_queue.py
"""
Single-process asyncio job queue.

Lifetime: construct, register processors, `await start()`, submit work,
`await stop()`. Jobs live in memory only; durable state belongs to the
status store.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
from pydantic import BaseModel
from config.settings import settings
from model.job import Job, JobPayload, JobStatus, JobType, payload_adapter
from util.errors import (
    JobCancelledError,
    JobDeadlineExceededError,
    ProcessorNotRegisteredError,
    QueueClosedError,
    describe,
    is_retryable,
)
from util.functions import new_job_id, utcnow
from util.types import EventName, QueueStats

logger = logging.getLogger(__name__)

Processor = Callable[["JobHandle"], Awaitable[Optional[Dict[str, Any]]]]
Listener = Callable[[Job], None]
# Awaited with the terminal snapshot when an attempt is cancelled or interrupted.
Finalizer = Callable[[Job], Awaitable[None]]

CANCELLED_MESSAGE = "Job cancelled"
STOPPED_MESSAGE = "Job interrupted: queue stopped"


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Exponential backoff with equal jitter.
    d = min(cap, base * 2^(attempt-1)); result is uniform in [d/2, d].
    """
    d = min(cap, base * (2 ** max(0, attempt - 1)))
    half = d / 2
    return half + rng() * half


@dataclass
class _Entry:
    job: Job
    floor: int = 0
    ceiling: int = 90
    checkpoints: Dict[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False
    task: Optional[asyncio.Task] = None
    timer: Optional[asyncio.Task] = None


class JobHandle:
    """What a processor sees of its job while an attempt runs."""

    def __init__(self, queue: "JobQueue", entry: _Entry) -> None:
        self._queue = queue
        self._entry = entry

    @property
    def id(self) -> str:
        return self._entry.job.id

    @property
    def type(self) -> JobType:
        return self._entry.job.type

    @property
    def payload(self) -> JobPayload:
        return self._entry.job.payload

    @property
    def attempt(self) -> int:
        return self._entry.job.attempts

    @property
    def max_attempts(self) -> int:
        return self._entry.job.max_attempts

    @property
    def progress(self) -> int:
        return self._entry.job.progress

    @property
    def cancelled(self) -> bool:
        return self._entry.cancel_requested

    def set_progress(self, value: int, ceiling: Optional[int] = None) -> None:
        self._queue._set_progress(self._entry, value, ceiling)

    def checkpoint(self, stage: str, value: Any, floor: Optional[int] = None) -> None:
        """Keep `value` across attempts; a retry restarts at `floor`."""
        self._entry.checkpoints[stage] = value
        if floor is not None:
            self._entry.floor = max(self._entry.floor, min(100, int(floor)))

    def get_checkpoint(self, stage: str) -> Any:
        return self._entry.checkpoints.get(stage)

    def raise_if_cancelled(self) -> None:
        if self._entry.cancel_requested:
            raise JobCancelledError(CANCELLED_MESSAGE)

    def will_retry(self, exc: BaseException) -> bool:
        """True when a failure with `exc` right now would be retried by the queue."""
        return self._queue._will_retry(self._entry, exc)

    def interruption(self) -> str:
        """Why the running attempt was cancelled from outside."""
        if self._entry.cancel_requested:
            return CANCELLED_MESSAGE
        if self._queue._stopping:
            return STOPPED_MESSAGE
        return self._queue._deadline_message()


class JobQueue:
    def __init__(
        self,
        *,
        concurrency: int = settings.QUEUE_CONCURRENCY,
        max_pending: int = settings.QUEUE_MAX_PENDING,
        max_attempts: int = settings.QUEUE_MAX_ATTEMPTS,
        retry_base_seconds: float = settings.QUEUE_RETRY_BASE_SECONDS,
        retry_max_seconds: float = settings.QUEUE_RETRY_MAX_SECONDS,
        tick_seconds: float = settings.QUEUE_TICK_SECONDS,
        tick_step: int = settings.QUEUE_TICK_STEP,
        tick_ceiling: int = settings.QUEUE_TICK_CEILING,
        deadline_seconds: Optional[float] = settings.JOB_DEADLINE_SECONDS,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._concurrency = concurrency
        self._max_attempts = max(1, max_attempts)
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds
        self._tick_seconds = tick_seconds
        self._tick_step = tick_step
        self._tick_ceiling = tick_ceiling
        self._deadline = deadline_seconds if deadline_seconds and deadline_seconds > 0 else None

        self._pending: asyncio.Queue[str] = asyncio.Queue(maxsize=max(0, max_pending))
        self._entries: Dict[str, _Entry] = {}
        self._processors: Dict[JobType, Processor] = {}
        self._finalizers: Dict[JobType, Finalizer] = {}
        self._listeners: Dict[str, List[Listener]] = {}
        self._in_flight: Set[str] = set()
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._stopping = False

    # ---------------- Lifecycle ----------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._stopping = False
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"job-worker-{n}")
            for n in range(self._concurrency)
        ]
        logger.info("queue.started workers=%d", self._concurrency)

    async def stop(self) -> None:
        if not self._running:
            return
        self._stopping = True
        self._running = False

        for entry in self._entries.values():
            if entry.timer is not None:
                entry.timer.cancel()
                entry.timer = None

        cut = [e for e in self._entries.values() if e.task is not None]
        running = [e.task for e in cut]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        for w in self._workers:
            w.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        for entry in self._entries.values():
            if not entry.job.status.terminal:
                self._finalize_failure(entry, STOPPED_MESSAGE)
                cut.append(entry)
        for entry in cut:
            await self._finalize(entry)
        logger.info("queue.stopped interrupted=%d", len(cut))

    # ---------------- Registration & events ----------------

    def register(
        self,
        job_type: JobType,
        processor: Processor,
        *,
        finalizer: Optional[Finalizer] = None,
    ) -> None:
        """
        `finalizer` is awaited with the terminal job when an attempt ends by
        cancel or stop, including a cancel that lands before the processor runs.
        """
        if job_type in self._processors:
            logger.warning("queue.processor.replaced type=%s", job_type.value)
        self._processors[job_type] = processor
        if finalizer is not None:
            self._finalizers[job_type] = finalizer
        else:
            self._finalizers.pop(job_type, None)

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[event]

    def _emit(self, name: EventName, job: Job) -> None:
        snapshot = job.model_copy(deep=True)
        for event in (f"job:{name}", f"job:{job.id}:{name}"):
            for listener in list(self._listeners.get(event, ())):
                try:
                    listener(snapshot)
                except Exception:
                    logger.exception("queue.listener.error event=%s job=%s", event, job.id)

    # ---------------- Submission & queries ----------------

    async def submit(
        self,
        job_type: JobType,
        payload: Union[JobPayload, BaseModel, Dict[str, Any]],
        *,
        max_attempts: Optional[int] = None,
        delay: float = 0,
        job_id: Optional[str] = None,
    ) -> Job:
        """
        Create a PENDING job and hand it to the workers.
        Returns a snapshot immediately; execution happens in the background.
        """
        if self._stopping:
            raise QueueClosedError("queue stopped")
        if isinstance(payload, dict):
            payload = payload_adapter.validate_python({"kind": job_type.value, **payload})
        if getattr(payload, "kind", None) != job_type.value:
            raise ValueError(
                f"payload kind {getattr(payload, 'kind', None)!r} does not match job type {job_type.value!r}"
            )
        job_id = job_id or new_job_id()
        if job_id in self._entries:
            raise ValueError(f"duplicate job id {job_id!r}")

        job = Job(
            id=job_id,
            type=job_type,
            payload=payload,
            max_attempts=max(1, max_attempts or self._max_attempts),
        )
        entry = _Entry(job=job, ceiling=self._tick_ceiling)
        self._entries[job_id] = entry
        logger.info(
            "queue.job.added job=%s type=%s max_attempts=%d delay=%.1f",
            job_id,
            job_type.value,
            job.max_attempts,
            delay,
        )
        self._emit("added", job)

        if delay > 0:
            self._schedule(entry, delay)
        else:
            await self._pending.put(job_id)
        return job.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[Job]:
        entry = self._entries.get(job_id)
        return entry.job.model_copy(deep=True) if entry else None

    def list(self, status: Optional[JobStatus] = None) -> List[Job]:
        jobs = [
            e.job.model_copy(deep=True)
            for e in self._entries.values()
            if status is None or e.job.status is status
        ]
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    def stats(self) -> QueueStats:
        out: QueueStats = {
            "total": len(self._entries),
            "pending": 0,
            "processing": 0,
            "completed": 0,
            "failed": 0,
        }
        for entry in self._entries.values():
            out[entry.job.status.value] += 1  # type: ignore[literal-required]
        return out

    def cancel(self, job_id: str) -> bool:
        entry = self._entries.get(job_id)
        if entry is None or entry.job.status.terminal:
            return False
        entry.cancel_requested = True
        if entry.job.status is JobStatus.PENDING:
            if entry.timer is not None:
                entry.timer.cancel()
                entry.timer = None
            self._finalize_failure(entry, CANCELLED_MESSAGE)
            self._emit("cancelled", entry.job)
            logger.info("queue.job.cancelled job=%s state=pending", job_id)
            return True
        if entry.task is not None:
            entry.task.cancel()
        logger.info("queue.job.cancel.requested job=%s state=processing", job_id)
        return True

    def prune(self, older_than: datetime) -> int:
        """Drop terminal jobs last updated before `older_than`."""
        doomed = [
            job_id
            for job_id, e in self._entries.items()
            if e.job.status.terminal and e.job.updated_at < older_than
        ]
        for job_id in doomed:
            del self._entries[job_id]
        if doomed:
            logger.info("queue.pruned count=%d", len(doomed))
        return len(doomed)

    # ---------------- Execution ----------------

    def _schedule(self, entry: _Entry, delay: float) -> None:
        async def _later() -> None:
            try:
                await asyncio.sleep(delay)
                if entry.job.status is JobStatus.PENDING:
                    await self._pending.put(entry.job.id)
            finally:
                if entry.timer is asyncio.current_task():
                    entry.timer = None

        entry.timer = asyncio.create_task(_later(), name=f"job-timer-{entry.job.id}")

    async def _worker(self, n: int) -> None:
        while True:
            job_id = await self._pending.get()
            try:
                await self._run(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("queue.worker.error worker=%d job=%s", n, job_id)
            finally:
                self._pending.task_done()

    async def _run(self, job_id: str) -> None:
        entry = self._entries.get(job_id)
        if entry is None or entry.job.status is not JobStatus.PENDING:
            return
        if job_id in self._in_flight:
            return

        job = entry.job
        processor = self._processors.get(job.type)
        if processor is None:
            err = ProcessorNotRegisteredError(f"No processor registered for job type {job.type.value}")
            logger.error("queue.job.unroutable job=%s type=%s", job_id, job.type.value)
            job.attempts += 1
            self._finalize_failure(entry, describe(err))
            return

        self._in_flight.add(job_id)
        now = utcnow()
        job.status = JobStatus.PROCESSING
        job.attempts += 1
        job.started_at = job.started_at or now
        job.progress = entry.floor
        job.updated_at = now
        entry.ceiling = self._tick_ceiling
        logger.info(
            "queue.job.processing job=%s type=%s attempt=%d/%d",
            job_id,
            job.type.value,
            job.attempts,
            job.max_attempts,
        )
        self._emit("processing", job)

        handle = JobHandle(self, entry)
        entry.task = asyncio.create_task(self._invoke(processor, handle), name=f"job-{job_id}")
        ticker = asyncio.create_task(self._tick(entry), name=f"job-ticker-{job_id}")
        try:
            result = await entry.task
        except asyncio.CancelledError:
            if self._stopping:
                if not job.status.terminal:
                    self._finalize_failure(entry, STOPPED_MESSAGE)
                raise
            if entry.cancel_requested:
                self._finalize_failure(entry, CANCELLED_MESSAGE)
                self._emit("cancelled", job)
            else:
                self._on_failure(entry, JobCancelledError("Job interrupted"))
            if job.status.terminal:
                await self._finalize(entry)
        except Exception as exc:
            if entry.cancel_requested and isinstance(exc, JobCancelledError):
                self._finalize_failure(entry, describe(exc))
                self._emit("cancelled", job)
                await self._finalize(entry)
            else:
                self._on_failure(entry, exc)
        else:
            self._on_success(entry, result)
        finally:
            ticker.cancel()
            entry.task = None
            self._in_flight.discard(job_id)

    async def _finalize(self, entry: _Entry) -> None:
        finalizer = self._finalizers.get(entry.job.type)
        if finalizer is None:
            return
        try:
            await asyncio.shield(finalizer(entry.job.model_copy(deep=True)))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("queue.finalizer.error job=%s", entry.job.id)

    async def _invoke(self, processor: Processor, handle: JobHandle) -> Optional[Dict[str, Any]]:
        if self._deadline is None:
            return await processor(handle)
        try:
            return await asyncio.wait_for(processor(handle), timeout=self._deadline)
        except asyncio.TimeoutError as exc:
            raise JobDeadlineExceededError(self._deadline_message()) from exc

    def _deadline_message(self) -> str:
        return f"Job exceeded its deadline of {self._deadline or 0:.0f}s"

    async def _tick(self, entry: _Entry) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            job = entry.job
            if job.status is not JobStatus.PROCESSING:
                return
            if job.progress < entry.ceiling:
                self._apply_progress(entry, min(entry.ceiling, job.progress + self._tick_step))

    def _set_progress(self, entry: _Entry, value: int, ceiling: Optional[int]) -> None:
        if ceiling is not None:
            entry.ceiling = max(0, min(100, int(ceiling)))
        if entry.job.status is not JobStatus.PROCESSING:
            return
        self._apply_progress(entry, int(value))

    def _apply_progress(self, entry: _Entry, value: int) -> None:
        job = entry.job
        value = max(job.progress, min(100, value))
        if value == job.progress:
            return
        job.progress = value
        job.updated_at = utcnow()
        self._emit("progress", job)

    def _will_retry(self, entry: _Entry, exc: BaseException) -> bool:
        if self._stopping or entry.cancel_requested:
            return False
        return is_retryable(exc) and entry.job.attempts < entry.job.max_attempts

    def _on_success(self, entry: _Entry, result: Optional[Dict[str, Any]]) -> None:
        job = entry.job
        now = utcnow()
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.result = result if result is not None else {}
        job.error = None
        job.completed_at = now
        job.updated_at = now
        entry.checkpoints.clear()
        logger.info("queue.job.completed job=%s attempts=%d", job.id, job.attempts)
        self._emit("completed", job)

    def _on_failure(self, entry: _Entry, exc: BaseException) -> None:
        job = entry.job
        message = describe(exc)
        if not self._will_retry(entry, exc):
            logger.warning(
                "queue.job.failed job=%s attempt=%d/%d retry=false err=%s",
                job.id,
                job.attempts,
                job.max_attempts,
                type(exc).__name__,
            )
            self._finalize_failure(entry, message)
            return

        delay = backoff_delay(job.attempts, self._retry_base, self._retry_max)
        job.status = JobStatus.PENDING
        # error is reserved for FAILED
        job.error = None
        job.result = None
        job.progress = entry.floor
        job.updated_at = utcnow()
        logger.warning(
            "queue.job.failed job=%s attempt=%d/%d retry=true delay=%.2f err=%s reason=%s",
            job.id,
            job.attempts,
            job.max_attempts,
            delay,
            type(exc).__name__,
            message,
        )
        self._emit("failed", job)
        self._schedule(entry, delay)

    def _finalize_failure(self, entry: _Entry, message: str) -> None:
        job = entry.job
        now = utcnow()
        job.status = JobStatus.FAILED
        job.error = message
        job.result = None
        job.completed_at = now
        job.updated_at = now
        entry.checkpoints.clear()
        self._emit("failed", job)

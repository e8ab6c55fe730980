import anyio
import numpy as np
import pytest

from model.analysis import ConceptCandidate, ExtractedQuestion
from model.job import JobRecord, JobStatus, JobType
from repository.job_repository import JobRepository
from service.job_status_store import ORPHAN_MESSAGE
from util.constants import Placeholders
from util.errors import AIServiceError, AppError

pytestmark = pytest.mark.anyio


def _spy_durable_writes(monkeypatch):
    original = JobRepository.update
    writes = []
    patches = []

    async def spy(self, job_id, **patch):
        writes.append((patch.get("status"), patch.get("stage")))
        patches.append(patch)
        return await original(self, job_id, **patch)

    monkeypatch.setattr(JobRepository, "update", spy)
    return writes, patches


async def _settled(service, job_id):
    record = await service.get_status(job_id)
    return record.status.terminal


async def test_degraded_run_completes_with_fallbacks(harness, paper_path, wait_until):
    queue, service = await harness()
    record = await service.submit_analysis(paper_path, "text", course_id="phys101")
    assert record.status is JobStatus.PENDING
    assert record.document_id.startswith("doc_")

    await wait_until(lambda: _settled(service, record.id))
    done = await service.get_status(record.id)

    assert done.status is JobStatus.COMPLETED
    assert done.progress == 100
    assert done.error is None
    assert done.stage == "index"
    result = done.result
    assert result["documentId"] == record.document_id
    assert result["questionsExtracted"] == 3
    assert result["questionMethod"] == "pattern"
    assert result["degraded"] is True
    assert result["quality"] == {"extraction": "full", "questions": "degraded"}
    assert result["reasons"]["questions"] == "ANTHROPIC_API_KEY is not configured"
    assert result["extraction"]["method"] == "text"
    assert result["conceptsIdentified"] == 0
    assert result["conceptFailures"] == 3
    assert result["indexed"] is True
    assert result["questions"][1]["points"] == 10


async def test_durable_record_follows_each_stage(harness, paper_path, wait_until, monkeypatch, scripted_ai):
    writes, _ = _spy_durable_writes(monkeypatch)
    ai = scripted_ai(
        questions=[ExtractedQuestion(text="Define entropy.", ordinal=1, label="1")],
        concepts=[ConceptCandidate(name="Entropy", category="Physics", is_main=True)],
    )
    queue, service = await harness(ai)
    record = await service.submit_analysis(paper_path, "text", course_id="phys101")
    progress = []
    queue.on(f"job:{record.id}:progress", lambda job: progress.append(job.progress))

    await wait_until(lambda: _settled(service, record.id))

    assert writes == [
        (JobStatus.PROCESSING, "extraction"),
        (JobStatus.PROCESSING, "questions"),
        (JobStatus.PROCESSING, "concepts"),
        (JobStatus.PROCESSING, "index"),
        (JobStatus.COMPLETED, None),
    ]
    assert progress == sorted(progress)
    assert {40, 60, 90} <= set(progress)
    done = await service.get_status(record.id)
    assert done.result["degraded"] is False
    assert done.result["newConcepts"] == 1
    assert done.result["concepts"][0]["name"] == "Entropy"


async def test_retry_resumes_at_the_failed_stage(harness, paper_path, wait_until, monkeypatch, scripted_ai):
    writes, patches = _spy_durable_writes(monkeypatch)
    encode_calls = []

    def flaky_encoder(texts):
        encode_calls.append(len(texts))
        if len(encode_calls) == 1:
            raise RuntimeError("embedding backend unavailable")
        return np.ones((len(texts), 4), dtype=np.float32) / 2.0

    ai = scripted_ai()
    queue, service = await harness(ai, encoder=flaky_encoder)
    record = await service.submit_analysis(paper_path, "text")
    starts = []
    queue.on(f"job:{record.id}:processing", lambda job: starts.append(job.progress))

    await wait_until(lambda: _settled(service, record.id))
    done = await service.get_status(record.id)

    assert done.status is JobStatus.COMPLETED
    assert done.attempts == 2
    assert starts == [0, 90]
    assert ai.calls == {"questions": 1, "concepts": 3, "ocr": 0}
    assert writes == [
        (JobStatus.PROCESSING, "extraction"),
        (JobStatus.PROCESSING, "questions"),
        (JobStatus.PROCESSING, "concepts"),
        (JobStatus.PROCESSING, "index"),
        (JobStatus.PENDING, None),
        (JobStatus.PROCESSING, "index"),
        (JobStatus.COMPLETED, None),
    ]
    retry_write = patches[4]
    assert retry_write["status"] is JobStatus.PENDING
    assert retry_write["error"] is None


async def test_non_retryable_failure_is_final(harness, tmp_path, wait_until):
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"definitely not a pdf")
    queue, service = await harness()
    record = await service.submit_analysis(str(path), "application/pdf")

    await wait_until(lambda: _settled(service, record.id))
    done = await service.get_status(record.id)

    assert done.status is JobStatus.FAILED
    assert done.attempts == 1
    assert done.error.startswith("Failed to open PDF")
    assert done.result is None


async def test_exhausted_retries_leave_durable_failed(harness, wait_until):
    queue, service = await harness()
    record = await service.submit_analysis("http://127.0.0.1:9/paper.txt", "text", max_attempts=2)

    await wait_until(lambda: _settled(service, record.id))
    done = await service.get_status(record.id)

    assert done.status is JobStatus.FAILED
    assert done.attempts == 2
    assert done.error.startswith("Document fetch failed")


async def test_cancel_running_job(harness, paper_path, wait_until, scripted_ai):
    started = anyio.Event()

    async def slow_model(text):
        started.set()
        await anyio.sleep(30)

    queue, service = await harness(scripted_ai(questions=slow_model))
    record = await service.submit_analysis(paper_path, "text")
    await started.wait()

    assert await service.cancel(record.id) is True
    await wait_until(lambda: _settled(service, record.id))
    done = await service.get_status(record.id)
    assert done.status is JobStatus.FAILED
    assert done.error == "Job cancelled"
    assert await service.cancel(record.id) is False


async def test_cancel_during_completion_write_ends_failed_everywhere(harness, paper_path, wait_until, monkeypatch):
    original = JobRepository.update
    writing = anyio.Event()

    async def slow_completion(self, job_id, **patch):
        if patch.get("status") is JobStatus.COMPLETED:
            writing.set()
            await anyio.sleep(0.2)
        return await original(self, job_id, **patch)

    monkeypatch.setattr(JobRepository, "update", slow_completion)
    queue, service = await harness()
    record = await service.submit_analysis(paper_path, "text")
    await writing.wait()

    assert await service.cancel(record.id) is True
    await wait_until(lambda: queue.get(record.id).status.terminal)
    await anyio.sleep(0.05)

    live = queue.get(record.id)
    durable = await JobRepository().get(record.id)
    assert (live.status, live.error) == (JobStatus.FAILED, "Job cancelled")
    assert (durable.status, durable.error) == (JobStatus.FAILED, "Job cancelled")
    assert durable.result is None


async def test_cancel_pending_job_and_unknown_id(harness, paper_path):
    queue, service = await harness(start=False)
    record = await service.submit_analysis(paper_path, "text")

    assert await service.cancel(record.id) is True
    done = await service.get_status(record.id)
    assert done.status is JobStatus.FAILED
    assert done.error == "Job cancelled"

    with pytest.raises(AppError) as exc_info:
        await service.cancel("job_0_unknown")
    assert exc_info.value.status_code == 404


async def test_unknown_job_is_not_found(harness):
    queue, service = await harness(start=False)
    with pytest.raises(AppError) as exc_info:
        await service.get_status("job_0_missing")
    assert exc_info.value.status_code == 404


async def test_unsupported_content_is_rejected_at_submit(harness, paper_path):
    queue, service = await harness(start=False)
    with pytest.raises(AppError) as exc_info:
        await service.submit_analysis(paper_path, "application/vnd.ms-excel")
    assert exc_info.value.status_code == 415
    assert queue.stats()["total"] == 0


async def test_disabled_analysis_completes_without_stages(harness, paper_path, wait_until, scripted_ai):
    ai = scripted_ai()
    queue, service = await harness(ai)
    record = await service.submit_analysis(paper_path, "text", enable_ai_analysis=False)

    await wait_until(lambda: _settled(service, record.id))
    done = await service.get_status(record.id)

    assert done.status is JobStatus.COMPLETED
    assert done.result["message"] == Placeholders.ANALYSIS_DISABLED
    assert done.result["indexed"] is False
    assert ai.calls == {"questions": 0, "concepts": 0, "ocr": 0}


async def test_upload_is_analyzed_and_searchable(harness, wait_until):
    queue, service = await harness()
    data = (
        "1. Explain how vaccines train the adaptive immune system.\n"
        "2. Compare innate and adaptive immunity with examples.\n"
    ).encode()
    record = await service.submit_upload(data, "text/plain", document_id="doc_bio")
    assert record.document_ref.startswith("blob:")

    await wait_until(lambda: _settled(service, record.id))
    assert (await service.get_status(record.id)).status is JobStatus.COMPLETED

    method, hits = await service.search("doc_bio", "adaptive immunity", k=2)
    assert method == "keyword"
    assert hits
    with pytest.raises(AppError):
        await service.search("doc_unknown", "anything")


async def test_submit_after_stop_is_rejected_and_recorded(harness, paper_path):
    queue, service = await harness()
    await queue.stop()

    with pytest.raises(AppError) as exc_info:
        await service.submit_analysis(paper_path, "text")
    assert exc_info.value.status_code == 503

    repo = JobRepository()
    [job_id] = await repo.list_ids()
    failed = await repo.get(job_id)
    assert failed.status is JobStatus.FAILED
    assert failed.error == "queue stopped"


async def test_orphaned_records_are_failed_on_recovery(harness, paper_path):
    await JobRepository().put(
        JobRecord(id="job_1_orphan", type=JobType.ANALYZE_DOCUMENT, status=JobStatus.PROCESSING, stage="concepts")
    )
    await JobRepository().put(JobRecord(id="job_2_done", type=JobType.ANALYZE_DOCUMENT, status=JobStatus.COMPLETED))

    queue, service = await harness(start=False)
    live = await service.submit_analysis(paper_path, "text")

    assert await service.recover_orphans() == 1
    orphan = await service.get_status("job_1_orphan")
    assert orphan.status is JobStatus.FAILED
    assert orphan.error == ORPHAN_MESSAGE
    assert (await service.get_status(live.id)).status is JobStatus.PENDING
    assert (await service.get_status("job_2_done")).status is JobStatus.COMPLETED


async def test_single_stage_job_status_falls_back_to_queue(harness, wait_until):
    queue, service = await harness()
    job = await queue.submit(JobType.EXTRACT_QUESTIONS, {"text": "1. Explain photosynthesis in plants."})

    await wait_until(lambda: _settled(service, job.id))
    record = await service.get_status(job.id)

    assert record.status is JobStatus.COMPLETED
    assert record.result["method"] == "pattern"
    assert record.result["questionsExtracted"] == 1
    assert [j.id for j in service.list_jobs(JobStatus.COMPLETED)] == [job.id]


async def test_mixed_load_holds_cap_and_never_runs_an_id_twice(harness, paper_path, wait_until, scripted_ai):
    async def slow_failure(text):
        await anyio.sleep(0.01)
        raise AIServiceError("rate limited")

    queue, service = await harness(scripted_ai(questions=slow_failure), concurrency=5)
    open_ids = set()
    overlaps = []
    peak = 0

    def opened(job):
        nonlocal peak
        if job.id in open_ids:
            overlaps.append(job.id)
        open_ids.add(job.id)
        peak = max(peak, len(open_ids))

    def closed(job):
        open_ids.discard(job.id)

    queue.on("job:processing", opened)
    for name in ("completed", "failed", "cancelled"):
        queue.on(f"job:{name}", closed)

    analyses = []
    for i in range(50):
        slot = i % 5
        if slot == 0:
            analyses.append((await service.submit_analysis(paper_path, "text")).id)
        elif slot == 1:
            await queue.submit(JobType.EXTRACT_TEXT, {"document_ref": paper_path, "content_kind": "text"})
        elif slot == 2:
            await queue.submit(JobType.EXTRACT_QUESTIONS, {"text": "1. Explain the photoelectric effect in detail."})
        elif slot == 3:
            await queue.submit(JobType.IDENTIFY_CONCEPTS, {"questions": ["Define entropy."]})
        else:
            await queue.submit(
                JobType.UPDATE_INDEX, {"document_id": f"doc_load_{i}", "content": "Entropy and heat engines."}
            )

    await wait_until(lambda: queue.stats()["completed"] == 50, timeout=20)
    assert overlaps == []
    assert 1 < peak <= 5
    assert {job.type for job in queue.list(JobStatus.COMPLETED)} == set(JobType)
    for job_id in analyses:
        assert (await service.get_status(job_id)).status is JobStatus.COMPLETED


async def test_ocr_failure_still_reaches_question_stage(harness, tmp_path, wait_until, scripted_ai):
    path = tmp_path / "scan.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32)
    ai = scripted_ai(ocr=AIServiceError("AI ocr timed out after 300s"))
    queue, service = await harness(ai)
    record = await service.submit_analysis(str(path), "image/png")

    await wait_until(lambda: _settled(service, record.id))
    done = await service.get_status(record.id)

    assert done.status is JobStatus.COMPLETED
    assert done.result["extraction"]["method"] == "ocr"
    assert done.result["reasons"]["extraction"] == "ocr_failed"
    assert done.result["questionMethod"] == "lines"
    assert done.result["questions"][0]["text"] == Placeholders.OCR_FAILED
    assert ai.calls["ocr"] == 1

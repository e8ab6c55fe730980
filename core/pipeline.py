# core/pipeline.py
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from core.concept_identification import ConceptIdentifier
from core.entities import ConceptOutcome, Stage, StageResult
from core.index_update import IndexUpdater
from core.job_queue import JobHandle, JobQueue
from core.question_extraction import QuestionExtractor
from core.text_extraction import TextExtractor
from model.analysis import ExtractedQuestion
from model.job import (
    AnalyzeDocumentPayload,
    ExtractQuestionsPayload,
    ExtractTextPayload,
    IdentifyConceptsPayload,
    JobType,
    UpdateIndexPayload,
)
from util.constants import Placeholders

logger = logging.getLogger(__name__)

# Awaited before a stage starts; used for durable boundary writes.
StageHook = Callable[[Stage], Awaitable[None]]


def _band_progress(handle: JobHandle, stage: Stage) -> Callable[[int, int], None]:
    def report(done: int, total: int) -> None:
        handle.set_progress(stage.scaled(done, total))

    return report


def _fraction_progress(handle: JobHandle) -> Callable[[int, int], None]:
    def report(done: int, total: int) -> None:
        if total > 0:
            handle.set_progress(min(99, int(100 * done / total)))

    return report


def _concepts_summary(outcome: ConceptOutcome) -> Dict[str, Any]:
    return {
        "conceptsIdentified": len(outcome.concepts),
        "existingConcepts": outcome.existing,
        "newConcepts": outcome.new,
        "conceptFailures": outcome.failures,
        "concepts": [c.model_dump(mode="json") for c in outcome.concepts],
    }


def disabled_result(document_id: Optional[str]) -> Dict[str, Any]:
    return {
        "message": Placeholders.ANALYSIS_DISABLED,
        "documentId": document_id,
        "questionsExtracted": 0,
        "conceptsIdentified": 0,
        "existingConcepts": 0,
        "newConcepts": 0,
        "conceptFailures": 0,
        "indexed": False,
        "degraded": False,
        "questions": [],
        "concepts": [],
    }


class AnalysisPipeline:
    """
    Runs extraction -> questions -> concepts -> index for one document.

    Each stage is also registered as its own job type. In the orchestrated
    run, finished stage outputs are checkpointed on the job so a retry
    resumes at the stage that failed.
    """

    def __init__(
        self,
        extractor: TextExtractor,
        questions: QuestionExtractor,
        concepts: ConceptIdentifier,
        indexer: IndexUpdater,
    ) -> None:
        self._extractor = extractor
        self._questions = questions
        self._concepts = concepts
        self._indexer = indexer

    def register(self, queue: JobQueue) -> None:
        queue.register(JobType.EXTRACT_TEXT, self.extract_text_job)
        queue.register(JobType.EXTRACT_QUESTIONS, self.extract_questions_job)
        queue.register(JobType.IDENTIFY_CONCEPTS, self.identify_concepts_job)
        queue.register(JobType.UPDATE_INDEX, self.update_index_job)

    # ---------------- Single-stage jobs ----------------

    async def extract_text_job(self, handle: JobHandle) -> Dict[str, Any]:
        p: ExtractTextPayload = handle.payload  # type: ignore[assignment]
        result = await self._extractor.extract(
            p.document_ref, p.content_kind, on_progress=_fraction_progress(handle)
        )
        return {
            "text": result.value,
            "method": result.method,
            "quality": result.quality.value,
            "reason": result.reason,
            **result.meta,
        }

    async def extract_questions_job(self, handle: JobHandle) -> Dict[str, Any]:
        p: ExtractQuestionsPayload = handle.payload  # type: ignore[assignment]
        result = await self._questions.extract(p.text, p.course_context)
        return {
            "questionsExtracted": len(result.value),
            "questions": [q.model_dump(mode="json") for q in result.value],
            "method": result.method,
            "quality": result.quality.value,
            "reason": result.reason,
        }

    async def identify_concepts_job(self, handle: JobHandle) -> Dict[str, Any]:
        p: IdentifyConceptsPayload = handle.payload  # type: ignore[assignment]
        outcome = await self._concepts.identify(
            p.questions,
            course_id=p.course_id,
            document_id=p.document_id,
            course_context=p.course_context,
            on_progress=_fraction_progress(handle),
        )
        return _concepts_summary(outcome)

    async def update_index_job(self, handle: JobHandle) -> Dict[str, Any]:
        p: UpdateIndexPayload = handle.payload  # type: ignore[assignment]
        doc = await self._indexer.update(p.document_id, p.content, p.concepts)
        return {
            "documentId": doc.document_id,
            "indexed": True,
            "chunks": len(doc.chunks),
            "embedded": doc.embeddings is not None,
        }

    # ---------------- Orchestrated run ----------------

    async def analyze(self, handle: JobHandle, on_stage: Optional[StageHook] = None) -> Dict[str, Any]:
        p: AnalyzeDocumentPayload = handle.payload  # type: ignore[assignment]
        if not p.enable_ai_analysis:
            logger.info("pipeline.skipped job=%s reason=disabled", handle.id)
            return disabled_result(p.document_id)

        async def boundary(stage: Stage) -> None:
            handle.raise_if_cancelled()
            if on_stage is not None:
                await on_stage(stage)
            handle.set_progress(stage.floor, ceiling=stage.ceiling)
            logger.info("pipeline.stage job=%s stage=%s attempt=%d", handle.id, stage.label, handle.attempt)

        extraction: Optional[StageResult[str]] = handle.get_checkpoint(Stage.EXTRACTION.label)
        if extraction is None:
            await boundary(Stage.EXTRACTION)
            extraction = await self._extractor.extract(
                p.document_ref,
                p.content_kind,
                on_progress=_band_progress(handle, Stage.EXTRACTION),
            )
            handle.checkpoint(Stage.EXTRACTION.label, extraction, floor=Stage.QUESTIONS.floor)

        questions: Optional[StageResult[List[ExtractedQuestion]]] = handle.get_checkpoint(
            Stage.QUESTIONS.label
        )
        if questions is None:
            await boundary(Stage.QUESTIONS)
            questions = await self._questions.extract(extraction.value, p.course_context)
            handle.checkpoint(Stage.QUESTIONS.label, questions, floor=Stage.CONCEPTS.floor)

        outcome: Optional[ConceptOutcome] = handle.get_checkpoint(Stage.CONCEPTS.label)
        if outcome is None:
            await boundary(Stage.CONCEPTS)
            outcome = await self._concepts.identify(
                [q.text for q in questions.value],
                course_id=p.course_id,
                document_id=p.document_id,
                course_context=p.course_context,
                on_progress=_band_progress(handle, Stage.CONCEPTS),
            )
            handle.checkpoint(Stage.CONCEPTS.label, outcome, floor=Stage.INDEX.floor)

        await boundary(Stage.INDEX)
        await self._indexer.update(p.document_id, extraction.value, [c.name for c in outcome.concepts])
        handle.raise_if_cancelled()

        result: Dict[str, Any] = {
            "documentId": p.document_id,
            "questionsExtracted": len(questions.value),
            "indexed": True,
            "degraded": extraction.degraded or questions.degraded,
            "quality": {
                "extraction": extraction.quality.value,
                "questions": questions.quality.value,
            },
            "reasons": {
                "extraction": extraction.reason,
                "questions": questions.reason,
            },
            "extraction": {"method": extraction.method, **extraction.meta},
            "questionMethod": questions.method,
            "questions": [q.model_dump(mode="json") for q in questions.value],
            **_concepts_summary(outcome),
        }
        logger.info(
            "pipeline.done job=%s questions=%d concepts=%d degraded=%s",
            handle.id,
            result["questionsExtracted"],
            result["conceptsIdentified"],
            result["degraded"],
        )
        return result

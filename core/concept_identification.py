# core/concept_identification.py
import logging
from typing import List, Optional, Sequence
from config.settings import settings
from core.anthropic_client import AnthropicClient
from core.entities import ConceptOutcome
from model.analysis import Concept, ConceptCandidate, ReconciledConcept
from repository.concept_repository import ConceptRepository
from util.types import ProgressCallback

logger = logging.getLogger(__name__)


def find_match(name: str, known: Sequence[Concept]) -> Optional[Concept]:
    """
    Case-insensitive exact match first, then substring in either direction.
    Empty names never match.
    """
    needle = name.strip().lower()
    if not needle:
        return None
    for concept in known:
        if concept.name.strip().lower() == needle:
            return concept
    for concept in known:
        hay = concept.name.strip().lower()
        if hay and (needle in hay or hay in needle):
            return concept
    return None


def reconcile(candidate: ConceptCandidate, known: Sequence[Concept]) -> Optional[ReconciledConcept]:
    """Map a candidate onto a known concept; None when it is new."""
    match = find_match(candidate.name, known)
    if match is None:
        return None
    return ReconciledConcept(
        id=match.id,
        name=match.name,
        category=match.category,
        description=match.description,
        confidence=candidate.confidence,
        is_main=candidate.is_main,
        origin="existing",
    )


class ConceptIdentifier:
    """
    Stage C: per-question candidates -> reconciled, persisted concepts.

    The course snapshot is read once per run and grows as new concepts are
    created so later questions reuse them. A failing question contributes
    zero concepts and is counted, it never fails the stage.
    """

    def __init__(
        self,
        ai: AnthropicClient,
        concepts: ConceptRepository,
        *,
        timeout: float = settings.AI_CONCEPT_TIMEOUT_SECONDS,
        default_context: str = settings.DEFAULT_COURSE_CONTEXT,
    ) -> None:
        self._ai = ai
        self._concepts = concepts
        self._timeout = timeout
        self._default_context = default_context

    async def identify(
        self,
        questions: Sequence[str],
        *,
        course_id: Optional[str] = None,
        document_id: Optional[str] = None,
        course_context: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ConceptOutcome:
        context = course_context or self._default_context
        known: List[Concept] = await self._concepts.snapshot(course_id)
        logger.info(
            "concepts.start questions=%d known=%d course=%s",
            len(questions),
            len(known),
            course_id,
        )

        outcome = ConceptOutcome(concepts=[])
        seen: set[str] = set()
        total = len(questions)
        for i, question in enumerate(questions, start=1):
            try:
                candidates = await self._ai.identify_concepts(question, context, timeout=self._timeout)
                resolved = [await self._resolve(c, known) for c in candidates]
                for concept in resolved:
                    await self._concepts.link(concept.id, course_id=course_id, document_id=document_id)
            except Exception as exc:
                outcome.failures += 1
                logger.warning("concepts.question.failed index=%d err=%s", i, type(exc).__name__)
                resolved = []
            for concept in resolved:
                if concept.id in seen:
                    continue
                seen.add(concept.id)
                outcome.concepts.append(concept)
                if concept.origin == "existing":
                    outcome.existing += 1
                else:
                    outcome.new += 1
            if on_progress is not None:
                on_progress(i, total)

        logger.info(
            "concepts.done total=%d existing=%d new=%d failures=%d",
            len(outcome.concepts),
            outcome.existing,
            outcome.new,
            outcome.failures,
        )
        return outcome

    async def _resolve(self, candidate: ConceptCandidate, known: List[Concept]) -> ReconciledConcept:
        matched = reconcile(candidate, known)
        if matched is not None:
            return matched
        concept, created = await self._concepts.find_or_create(candidate)
        if not any(k.id == concept.id for k in known):
            known.append(concept)
        return ReconciledConcept(
            id=concept.id,
            name=concept.name,
            category=concept.category,
            description=concept.description,
            confidence=candidate.confidence,
            is_main=candidate.is_main,
            origin="new" if created else "existing",
        )

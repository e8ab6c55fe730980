import pytest

from core.concept_identification import ConceptIdentifier, find_match, reconcile
from model.analysis import Concept, ConceptCandidate
from repository.concept_repository import ConceptRepository
from util.errors import AIServiceError

pytestmark = pytest.mark.anyio

KNOWN = [
    Concept(id="c1", name="Thermodynamics", category="Physics"),
    Concept(id="c2", name="Second Law of Thermodynamics", category="Physics"),
    Concept(id="c3", name="Entropy", category="Physics"),
]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("entropy", "c3"),
        ("  ENTROPY ", "c3"),
        ("second law of thermodynamics", "c2"),  # exact beats the earlier substring hit
        ("Entropy change", "c3"),
        ("thermo", "c1"),
        ("Quantum tunnelling", None),
        ("", None),
        ("   ", None),
    ],
)
def test_find_match(name, expected):
    match = find_match(name, KNOWN)
    assert (match.id if match else None) == expected


def test_reconcile_keeps_known_identity_and_candidate_scores():
    out = reconcile(
        ConceptCandidate(name="entropy", category="Chemistry", confidence=0.8, is_main=True),
        KNOWN,
    )
    assert out is not None
    assert (out.id, out.name, out.category) == ("c3", "Entropy", "Physics")
    assert out.confidence == 0.8
    assert out.is_main is True
    assert out.origin == "existing"
    assert reconcile(ConceptCandidate(name="Optics"), KNOWN) is None


async def test_identify_reuses_snapshot_and_creates_once(fake_redis, scripted_ai):
    repo = ConceptRepository()
    existing, _ = await repo.find_or_create(ConceptCandidate(name="Entropy", category="Physics"))
    await repo.link(existing.id, course_id="phys101")

    answers = {
        "q1": [ConceptCandidate(name="entropy"), ConceptCandidate(name="Heat Engine", category="Physics")],
        "q2": [ConceptCandidate(name="heat engine"), ConceptCandidate(name="Carnot Cycle")],
    }
    ai = scripted_ai(concepts=lambda q: answers[q])
    progress = []

    outcome = await ConceptIdentifier(ai, repo).identify(
        ["q1", "q2"],
        course_id="phys101",
        document_id="doc1",
        on_progress=lambda done, total: progress.append((done, total)),
    )

    names = [c.name for c in outcome.concepts]
    assert names == ["Entropy", "Heat Engine", "Carnot Cycle"]
    assert (outcome.existing, outcome.new, outcome.failures) == (1, 2, 0)
    assert progress == [(1, 2), (2, 2)]
    assert {c.name for c in await repo.snapshot("phys101")} == set(names)
    assert {c.name for c in await repo.for_document("doc1")} == set(names)


async def test_failing_question_is_counted_not_fatal(fake_redis, scripted_ai):
    def answer(question):
        if question == "bad":
            raise AIServiceError("Anthropic response was not valid JSON")
        return [ConceptCandidate(name="Recursion", category="Computer Science")]

    ai = scripted_ai(concepts=answer)
    outcome = await ConceptIdentifier(ai, ConceptRepository()).identify(["good", "bad", "good again"])

    assert outcome.failures == 1
    assert [c.name for c in outcome.concepts] == ["Recursion"]
    assert (outcome.existing, outcome.new) == (0, 1)
    assert ai.calls["concepts"] == 3


async def test_every_question_failing_yields_empty_outcome(fake_redis, scripted_ai):
    outcome = await ConceptIdentifier(scripted_ai(), ConceptRepository()).identify(["a", "b"])
    assert outcome.concepts == []
    assert outcome.failures == 2


async def test_find_or_create_converges_on_one_id(fake_redis):
    repo = ConceptRepository()
    first, created_first = await repo.find_or_create(ConceptCandidate(name="Graph Theory"))
    second, created_second = await repo.find_or_create(ConceptCandidate(name="graph theory "))
    assert created_first is True
    assert created_second is False
    assert first.id == second.id
    assert [c.id for c in await repo.snapshot()] == [first.id]


async def test_find_or_create_loser_drops_its_draft(fake_redis, monkeypatch):
    repo = ConceptRepository()
    winner, _ = await repo.find_or_create(ConceptCandidate(name="Sorting"))

    # Simulate the race: our lookup misses, but the name claim is already taken.
    original = repo.find_by_name
    calls = {"n": 0}

    async def racing_lookup(name):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await original(name)

    monkeypatch.setattr(repo, "find_by_name", racing_lookup)
    concept, created = await repo.find_or_create(ConceptCandidate(name="Sorting"))

    assert created is False
    assert concept.id == winner.id
    assert fake_redis.keys_matching("docanalysis:concepts:????????????????????????????????") == [
        f"docanalysis:concepts:{winner.id}"
    ]

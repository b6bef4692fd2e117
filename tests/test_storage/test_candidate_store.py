from __future__ import annotations

import inspect
import random
from decimal import Decimal

import pytest

from saga_extraction.errors import NotFoundError, PersistenceError, StateError, ValidationError
from saga_extraction.storage.candidate_store import CandidateStore, SqlCandidateStore
from saga_extraction.storage.schemas import (
    JOB_TRANSITIONS,
    CandidateFilters,
    CandidateStatus,
    Disposition,
    DuplicateMatch,
    EntityType,
    JobStatus,
    MatchMethod,
)


def test_create_and_fetch_job(store: SqlCandidateStore, make_job) -> None:
    job = make_job(total_chunks=3)

    fetched = store.get_job(job.id)

    assert fetched.status is JobStatus.PENDING
    assert fetched.total_chunks == 3
    assert fetched.processed_chunks == 0
    assert store.list_jobs(collection_id=1)[0].id == job.id


def test_unknown_job_raises_not_found(store: SqlCandidateStore) -> None:
    with pytest.raises(NotFoundError):
        store.get_job(999)


def test_transition_follows_lifecycle(store: SqlCandidateStore, make_job) -> None:
    job = make_job()

    processing = store.transition_job(job.id, JobStatus.PROCESSING, expected=(JobStatus.PENDING,))
    assert processing.started_at is not None

    completed = store.transition_job(job.id, JobStatus.COMPLETED)
    assert completed.completed_at is not None
    assert completed.processing_time_ms is not None

    with pytest.raises(StateError):
        store.transition_job(job.id, JobStatus.CANCELLED)


def test_transition_compare_and_set(store: SqlCandidateStore, make_job) -> None:
    job = make_job(status=JobStatus.PROCESSING)
    store.transition_job(job.id, JobStatus.CANCELLED)

    with pytest.raises(StateError):
        store.transition_job(job.id, JobStatus.COMPLETED, expected=(JobStatus.PROCESSING,))
    assert store.get_job(job.id).status is JobStatus.CANCELLED


def test_terminal_job_accepts_only_audit_fields(store: SqlCandidateStore, make_job) -> None:
    job = make_job(status=JobStatus.COMPLETED)

    store.update_job(job.id, entities_created=4)
    with pytest.raises(StateError):
        store.update_job(job.id, processed_chunks=1)


def test_record_chunk_usage_accumulates(store: SqlCandidateStore, make_job) -> None:
    job = make_job(total_chunks=2, status=JobStatus.PROCESSING)

    store.record_chunk_usage(job.id, tokens=1500, cost=Decimal("0.05"), retries=1)
    store.record_chunk_usage(job.id, tokens=0, cost=Decimal("0"), processed=True)
    store.record_chunk_usage(job.id, tokens=900, cost=Decimal("0.02"), processed=True)
    store.record_chunk_usage(job.id, tokens=0, cost=Decimal("0"), processed=True)

    job = store.get_job(job.id)
    assert job.actual_tokens == 2400
    assert job.actual_cost_usd == Decimal("0.07")
    assert job.retry_count == 1
    # never exceeds total_chunks
    assert job.processed_chunks == 2


def test_chunk_writes_are_idempotent(store: SqlCandidateStore, make_job, make_draft) -> None:
    job = make_job(total_chunks=2)
    store.replace_chunk_candidates(job.id, 0, [make_draft("Jon Snow"), make_draft("Ghost")])
    store.replace_chunk_candidates(job.id, 1, [make_draft("Arya Stark", chunk_index=1)])

    store.replace_chunk_candidates(job.id, 0, [make_draft("Jon Snow")])

    names = [c.canonical_name for c in store.candidates_for_job(job.id)]
    assert names == ["Jon Snow", "Arya Stark"]


def test_chunk_write_rejects_foreign_drafts(store: SqlCandidateStore, make_job, make_draft) -> None:
    job = make_job()

    with pytest.raises(ValueError):
        store.replace_chunk_candidates(job.id, 0, [make_draft("Jon Snow", chunk_index=3)])


def test_list_candidates_filters_and_pages(
    store: SqlCandidateStore, make_job, add_candidates, make_draft
) -> None:
    job = make_job()
    add_candidates(
        job.id,
        [
            make_draft("Jon Snow", confidence=95),
            make_draft("Arya Stark", confidence=88),
            make_draft("Winterfell", entity_type=EntityType.PLACE, confidence=92),
            make_draft("Jon Arryn", confidence=60),
            make_draft("Sansa Stark", confidence=75),
        ],
    )

    first = store.list_candidates(job.id, page=1, per_page=2)
    assert first.total_count == 5
    assert first.total_pages == 3
    assert [c.canonical_name for c in first.candidates] == ["Jon Snow", "Winterfell"]

    people = store.list_candidates(
        job.id, filters=CandidateFilters(entity_type=EntityType.PERSON, min_confidence=70)
    )
    assert [c.canonical_name for c in people.candidates] == ["Jon Snow", "Arya Stark", "Sansa Stark"]

    search = store.list_candidates(job.id, filters=CandidateFilters(search="  jon "))
    assert {c.canonical_name for c in search.candidates} == {"Jon Snow", "Jon Arryn"}

    beyond = store.list_candidates(job.id, page=9, per_page=2)
    assert beyond.candidates == []
    assert beyond.total_count == 5


def test_list_candidates_validates_paging(store: SqlCandidateStore, make_job) -> None:
    job = make_job()

    with pytest.raises(ValidationError):
        store.list_candidates(job.id, page=0)
    with pytest.raises(ValidationError):
        store.list_candidates(job.id, per_page=500, max_per_page=100)


def test_status_updates_never_touch_materialized(
    store: SqlCandidateStore, make_job, add_candidates, make_draft
) -> None:
    job = make_job()
    first, second = add_candidates(job.id, [make_draft("Jon Snow"), make_draft("Ghost")])

    updated = store.update_candidate_status([first.id, second.id], CandidateStatus.APPROVED, reviewer_id=7)
    assert updated == 2
    assert store.get_candidate(first.id).reviewed_by == 7

    entity = store.add_corpus_entity(1, EntityType.PERSON, "Jon Snow")
    with store.unit_of_work() as tx:
        tx.mark_materialized(first.id, entity_id=entity.id, reviewer_id=7)

    assert store.update_candidate_status([first.id, second.id], CandidateStatus.REJECTED) == 1
    assert store.get_candidate(first.id).status is CandidateStatus.MATERIALIZED
    with pytest.raises(StateError):
        store.update_candidate_status([second.id], CandidateStatus.MATERIALIZED)


def test_get_candidates_preserves_order_and_reports_missing(
    store: SqlCandidateStore, make_job, add_candidates, make_draft
) -> None:
    job = make_job()
    a, b = add_candidates(job.id, [make_draft("A"), make_draft("B")])

    assert [c.id for c in store.get_candidates([b.id, a.id])] == [b.id, a.id]
    with pytest.raises(NotFoundError):
        store.get_candidates([a.id, 12345])


def test_save_matches_upserts_and_keeps_disposition(
    store: SqlCandidateStore, make_job, add_candidates, make_draft
) -> None:
    job = make_job()
    entity = store.add_corpus_entity(1, EntityType.PERSON, "Jon Snow")
    (candidate,) = add_candidates(job.id, [make_draft("Jon Snow")])
    match = DuplicateMatch(
        candidate_id=candidate.id,
        existing_entity_id=entity.id,
        matched_name="Jon Snow",
        similarity_score=100.0,
        match_method=MatchMethod.EXACT,
        confidence=100.0,
    )

    assert store.save_matches([match]) == 1
    store.set_match_disposition(
        candidate.id, Disposition.CONFIRMED_DUPLICATE, existing_entity_id=entity.id
    )
    store.save_matches([match.model_copy(update={"similarity_score": 99.0})])

    (saved,) = store.matches_for_candidate(candidate.id)
    assert saved.similarity_score == 99.0
    assert saved.disposition is Disposition.CONFIRMED_DUPLICATE
    assert store.has_confirmed_duplicate(candidate.id)
    assert len(store.matches_for_job(job.id)) == 1


def test_set_match_disposition_requires_single_target(
    store: SqlCandidateStore, make_job, add_candidates, make_draft
) -> None:
    job = make_job()
    (candidate,) = add_candidates(job.id, [make_draft("Jon Snow")])

    with pytest.raises(ValidationError):
        store.set_match_disposition(candidate.id, Disposition.CONFIRMED_UNIQUE)
    with pytest.raises(NotFoundError):
        store.set_match_disposition(candidate.id, Disposition.CONFIRMED_UNIQUE, existing_entity_id=42)


def test_statistics_and_collection_summary(
    store: SqlCandidateStore, make_job, add_candidates, make_draft
) -> None:
    job = make_job()
    a, b, c = add_candidates(job.id, [make_draft("A"), make_draft("B"), make_draft("C")])
    store.update_candidate_status([a.id], CandidateStatus.APPROVED)
    store.update_candidate_status([b.id], CandidateStatus.REJECTED)
    store.mark_candidate_duplicate(c.id, 77, 96.5)
    store.record_chunk_usage(job.id, tokens=100, cost=Decimal("0.01"))

    stats = store.job_statistics(job.id)
    assert (stats.total_candidates, stats.approved, stats.rejected, stats.duplicate) == (3, 1, 1, 1)

    synced = store.sync_job_statistics(job.id)
    assert synced.total_entities_found == 3
    assert synced.entities_rejected == 1

    summary = store.collection_summary(1)
    assert summary.total_jobs == 1
    assert summary.jobs_by_status == {"pending": 1}
    assert summary.total_entities_found == 3
    assert summary.total_cost_usd == Decimal("0.01")


def test_corpus_slugs_are_unique_per_collection(store: SqlCandidateStore) -> None:
    first = store.add_corpus_entity(1, EntityType.PERSON, "Jon Snow")
    second = store.add_corpus_entity(1, EntityType.PERSON, "Jon Snow")
    other = store.add_corpus_entity(2, EntityType.PERSON, "Jon Snow")

    assert (first.slug, second.slug, other.slug) == ("jon-snow", "jon-snow-2", "jon-snow")
    assert store.count_corpus_entities(1) == 2
    assert [e.id for e in store.corpus_for_collection(1)] == [first.id, second.id]

    with pytest.raises(PersistenceError):
        store.add_corpus_entity(1, EntityType.PERSON, "Jon Snow", slug="jon-snow")


def test_unit_of_work_rolls_back_on_error(store: SqlCandidateStore) -> None:
    with pytest.raises(RuntimeError):
        with store.unit_of_work() as tx:
            tx.insert_corpus_entity(
                collection_id=1, entity_type=EntityType.PLACE, canonical_name="Winterfell", slug="winterfell"
            )
            raise RuntimeError("boom")

    assert store.count_corpus_entities() == 0


def _parameters(func) -> list:
    return [(p.name, p.kind, p.default) for p in inspect.signature(func).parameters.values()]


def test_sql_store_implements_store_interface() -> None:
    methods = [
        name
        for name, member in vars(CandidateStore).items()
        if inspect.isfunction(member) and not name.startswith("_")
    ]

    assert "update_candidate_status" in methods
    for name in methods:
        assert _parameters(getattr(SqlCandidateStore, name)) == _parameters(
            getattr(CandidateStore, name)
        ), name


@pytest.mark.parametrize("seed", range(10))
def test_random_transitions_only_follow_lifecycle_edges(
    store: SqlCandidateStore, make_job, seed: int
) -> None:
    rng = random.Random(seed)
    job = make_job()
    current = JobStatus.PENDING
    observed = [current]

    for _ in range(8):
        target = rng.choice(list(JobStatus))
        if target in JOB_TRANSITIONS[current]:
            current = store.transition_job(job.id, target).status
            observed.append(current)
        else:
            with pytest.raises(StateError):
                store.transition_job(job.id, target)
        assert store.get_job(job.id).status is current

    for before, after in zip(observed, observed[1:]):
        assert after in JOB_TRANSITIONS[before]
    assert len(observed) <= 3

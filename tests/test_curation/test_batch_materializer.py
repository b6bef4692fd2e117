from __future__ import annotations

from typing import List, Tuple

import pytest

from saga_extraction.curation.audit import CurationAuditTrail
from saga_extraction.curation.batch_materializer import BatchMaterializer, importance_score
from saga_extraction.errors import PersistenceError, StateError, ValidationError
from saga_extraction.storage.candidate_store import StoreTransaction
from saga_extraction.storage.schemas import (
    CandidateAttributes,
    CandidateStatus,
    EntityType,
    ExtractedEntityCandidate,
    JobStatus,
)


@pytest.fixture
def approved(store, make_job, add_candidates, make_draft):
    """A completed job with five approved candidates."""
    job = make_job(status=JobStatus.COMPLETED)
    candidates = add_candidates(
        job.id,
        [
            make_draft("Jon Snow", description="Lord Commander", aliases=["Lord Snow"]),
            make_draft("Arya Stark"),
            make_draft("Winterfell", entity_type=EntityType.PLACE),
            make_draft("Ghost", confidence=60),
            make_draft("Longclaw", entity_type=EntityType.ARTIFACT),
        ],
    )
    store.update_candidate_status([c.id for c in candidates], CandidateStatus.APPROVED, reviewer_id=7)
    return job, candidates


def test_materializes_batch_with_unique_slugs(store, config, approved) -> None:
    job, candidates = approved
    store.add_corpus_entity(1, EntityType.PERSON, "Jon Snow")
    progress: List[Tuple[int, int]] = []
    materializer = BatchMaterializer(
        store, config, progress_callback=lambda done, total: progress.append((done, total))
    )

    result = materializer.materialize(job.id, [c.id for c in candidates], reviewer_id=9)

    assert result.ok
    assert len(result.created_entity_ids) == 5
    jon = store.get_corpus_entity(result.created_entity_ids[0])
    assert jon.slug == "jon-snow-2"
    assert jon.alternative_names == ["Lord Snow"]
    assert jon.source_candidate_id == candidates[0].id
    assert progress[-1] == (5, 5)

    for candidate, entity_id in zip(candidates, result.created_entity_ids):
        stored = store.get_candidate(candidate.id)
        assert stored.status is CandidateStatus.MATERIALIZED
        assert stored.created_entity_id == entity_id
        assert stored.reviewed_by == 9
    assert store.get_job(job.id).entities_created == 5
    assert store.count_corpus_entities(1) == 6


def test_failure_mid_batch_rolls_back_everything(
    store, config, approved, monkeypatch: pytest.MonkeyPatch
) -> None:
    job, candidates = approved
    original = StoreTransaction.insert_corpus_entity
    calls = {"count": 0}

    def flaky_insert(self, **kwargs):
        calls["count"] += 1
        if calls["count"] == 3:
            raise PersistenceError("disk full")
        return original(self, **kwargs)

    monkeypatch.setattr(StoreTransaction, "insert_corpus_entity", flaky_insert)

    result = BatchMaterializer(store, config).materialize(
        job.id, [c.id for c in candidates], reviewer_id=9
    )

    assert not result.ok
    assert result.created_entity_ids == []
    assert result.error.candidate_id == candidates[2].id
    assert "disk full" in result.error.reason
    assert store.count_corpus_entities() == 0
    assert all(store.get_candidate(c.id).status is CandidateStatus.APPROVED for c in candidates)
    assert store.get_job(job.id).entities_created == 0


def test_unapproved_candidate_fails_whole_batch(store, config, approved) -> None:
    job, candidates = approved
    store.update_candidate_status([candidates[1].id], CandidateStatus.REJECTED)

    result = BatchMaterializer(store, config).materialize(
        job.id, [c.id for c in candidates], reviewer_id=9
    )

    assert not result.ok
    assert result.error.candidate_id == candidates[1].id
    assert store.count_corpus_entities() == 0


def test_candidate_from_other_job_rejected(store, config, approved, make_job, add_candidates, make_draft) -> None:
    job, candidates = approved
    other_job = make_job(status=JobStatus.COMPLETED)
    (stranger,) = add_candidates(other_job.id, [make_draft("Bran Stark")])
    store.update_candidate_status([stranger.id], CandidateStatus.APPROVED)

    result = BatchMaterializer(store, config).materialize(
        job.id, [candidates[0].id, stranger.id], reviewer_id=9
    )

    assert not result.ok
    assert result.error.candidate_id == stranger.id


def test_unknown_candidate_named_in_error(store, config, approved) -> None:
    job, candidates = approved

    result = BatchMaterializer(store, config).materialize(job.id, [candidates[0].id, 4242], reviewer_id=9)

    assert not result.ok
    assert result.error.candidate_id == 4242


def test_preconditions_raise(store, config, make_job) -> None:
    materializer = BatchMaterializer(store, config)
    running = make_job(status=JobStatus.PROCESSING)

    with pytest.raises(ValidationError):
        materializer.materialize(running.id, [], reviewer_id=9)
    with pytest.raises(StateError):
        materializer.materialize(running.id, [1], reviewer_id=9)


def test_already_materialized_candidate_cannot_repeat(store, config, approved) -> None:
    job, candidates = approved
    materializer = BatchMaterializer(store, config)
    assert materializer.materialize(job.id, [candidates[0].id], reviewer_id=9).ok

    again = materializer.materialize(job.id, [candidates[0].id], reviewer_id=9)

    assert not again.ok
    assert store.count_corpus_entities() == 1


def test_preview_reserves_slugs_without_writing(store, config, approved) -> None:
    job, candidates = approved
    store.add_corpus_entity(1, EntityType.PERSON, "Arya Stark")

    previews = BatchMaterializer(store, config).preview(job.id, [candidates[1].id, candidates[0].id])

    assert [p.slug for p in previews] == ["arya-stark-2", "jon-snow"]
    assert store.count_corpus_entities() == 1


def test_failures_are_audited(store, config, approved, tmp_path) -> None:
    job, candidates = approved
    audit = CurationAuditTrail(tmp_path / "materialize.jsonl")

    BatchMaterializer(store, config, audit=audit).materialize(job.id, [candidates[0].id, 4242], reviewer_id=9)

    (entry,) = audit.read()
    assert entry["event"] == "materialize_failed"
    assert entry["payload"]["candidate_id"] == 4242


@pytest.mark.parametrize(
    ("confidence", "description", "aliases", "attributes", "expected"),
    [
        (95, "Bastard of Winterfell", ["Lord Snow"], {"title": "Lord Commander"}, 90),
        (75, None, [], None, 60),
        (50, None, [], None, 50),
    ],
)
def test_importance_score(confidence, description, aliases, attributes, expected) -> None:
    candidate = ExtractedEntityCandidate(
        id=1,
        job_id=1,
        entity_type=EntityType.PERSON,
        canonical_name="Jon Snow",
        alternative_names=aliases,
        description=description,
        attributes=CandidateAttributes.from_raw(EntityType.PERSON, attributes),
        confidence_score=confidence,
        chunk_index=0,
    )

    assert importance_score(candidate) == expected

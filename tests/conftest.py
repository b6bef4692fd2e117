from __future__ import annotations

from typing import Callable, List, Sequence

import pytest

from saga_extraction.extraction.models import CandidateDraft
from saga_extraction.storage.candidate_store import SqlCandidateStore
from saga_extraction.storage.schemas import (
    EntityType,
    ExtractedEntityCandidate,
    ExtractionJob,
    JobStatus,
)
from saga_extraction.utils.config import Config


@pytest.fixture
def store() -> SqlCandidateStore:
    store = SqlCandidateStore("sqlite:///:memory:")
    yield store
    store.dispose()


@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config()
    cfg.curation.audit_path = str(tmp_path / "audit.jsonl")
    cfg.logging.file = None
    return cfg


def _draft(
    name: str,
    *,
    entity_type: EntityType = EntityType.PERSON,
    chunk_index: int = 0,
    char_offset: int = 0,
    confidence: float = 90.0,
    aliases: Sequence[str] = (),
    description: str | None = None,
    context: str | None = None,
) -> CandidateDraft:
    return CandidateDraft(
        entity_type=entity_type,
        canonical_name=name,
        alternative_names=list(aliases),
        description=description,
        context_snippet=context,
        confidence_score=confidence,
        chunk_index=chunk_index,
        char_offset=char_offset,
    )


@pytest.fixture
def make_draft() -> Callable[..., CandidateDraft]:
    return _draft


@pytest.fixture
def make_job(store: SqlCandidateStore) -> Callable[..., ExtractionJob]:
    def _make(
        *,
        collection_id: int = 1,
        total_chunks: int = 1,
        status: JobStatus = JobStatus.PENDING,
    ) -> ExtractionJob:
        job = store.create_job(
            target_collection_id=collection_id,
            requester_id=7,
            source_text="Jon Snow rode north.",
            chunk_size=5000,
            total_chunks=total_chunks,
            provider="openai",
            model="gpt-4",
        )
        if status is not JobStatus.PENDING:
            job = store.transition_job(job.id, JobStatus.PROCESSING)
        if status is not JobStatus.PROCESSING and status is not JobStatus.PENDING:
            job = store.transition_job(job.id, status)
        return job

    return _make


@pytest.fixture
def add_candidates(
    store: SqlCandidateStore,
) -> Callable[[int, Sequence[CandidateDraft]], List[ExtractedEntityCandidate]]:
    """Persist drafts grouped by their chunk index."""

    def _add(job_id: int, drafts: Sequence[CandidateDraft]) -> List[ExtractedEntityCandidate]:
        created: List[ExtractedEntityCandidate] = []
        for chunk_index in sorted({d.chunk_index for d in drafts}):
            created.extend(
                store.replace_chunk_candidates(
                    job_id, chunk_index, [d for d in drafts if d.chunk_index == chunk_index]
                )
            )
        return created

    return _add

"""All-or-nothing conversion of approved candidates into permanent corpus entities."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from saga_extraction.curation.audit import CurationAuditTrail
from saga_extraction.errors import (
    ExtractionError,
    MaterializationError,
    NotFoundError,
    StateError,
    ValidationError,
)
from saga_extraction.normalization.slugs import first_available_slug, slugify
from saga_extraction.storage.candidate_store import CandidateStore
from saga_extraction.storage.schemas import (
    CandidateStatus,
    ExtractedEntityCandidate,
    JobStatus,
)
from saga_extraction.utils.config import Config

ProgressCallback = Callable[[int, int], None]


class MaterializationResult(BaseModel):
    """Entities created by one batch, or the error that rolled the batch back."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    job_id: int
    created_entity_ids: List[int] = Field(default_factory=list)
    error: Optional[MaterializationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MaterializationPreview(BaseModel):
    """What materializing a candidate would create."""

    candidate_id: int
    canonical_name: str
    slug: str
    importance_score: int


def importance_score(candidate: ExtractedEntityCandidate) -> int:
    """Initial importance of an entity created from a candidate (0-100)."""
    score = 50

    if candidate.confidence_score >= 90:
        score += 15
    elif candidate.confidence_score >= 70:
        score += 10

    quality = candidate.quality_score
    if quality >= 80:
        score += 10
    elif quality >= 60:
        score += 5

    if candidate.description:
        score += 5
    if candidate.alternative_names:
        score += 5
    if not candidate.attributes.is_empty():
        score += 5

    return max(0, min(100, score))


class BatchMaterializer:
    """Create corpus entities from approved candidates inside a single transaction.

    Example:
        >>> materializer = BatchMaterializer(store, config)
        >>> result = materializer.materialize(job_id, [11, 12, 13], reviewer_id=7)
        >>> result.created_entity_ids if result.ok else result.error.to_dict()
    """

    def __init__(
        self,
        store: CandidateStore,
        config: Config | None = None,
        *,
        audit: CurationAuditTrail | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self._audit = audit or CurationAuditTrail(
            Path(self.config.curation.audit_path),
            enabled=self.config.curation.enable_audit_trail,
        )
        self._progress = progress_callback

    def preview(self, job_id: int, candidate_ids: Sequence[int]) -> List[MaterializationPreview]:
        """Slugs and importance scores the batch would produce, without writing."""
        job = self.store.get_job(job_id)
        candidates = self.store.get_candidates(candidate_ids)
        reserved: set[str] = set()
        previews: List[MaterializationPreview] = []
        with self.store.unit_of_work() as tx:
            for candidate in candidates:
                slug = first_available_slug(
                    slugify(candidate.canonical_name),
                    lambda value: value in reserved
                    or tx.slug_exists(job.target_collection_id, value),
                )
                reserved.add(slug)
                previews.append(
                    MaterializationPreview(
                        candidate_id=candidate.id,
                        canonical_name=candidate.canonical_name,
                        slug=slug,
                        importance_score=importance_score(candidate),
                    )
                )
        return previews

    def materialize(
        self, job_id: int, candidate_ids: Sequence[int], reviewer_id: int
    ) -> MaterializationResult:
        """Materialize approved candidates; any failure rolls back the whole batch.

        Raises:
            ValidationError: If no candidate ids are given
            StateError: If the job is unknown or not completed
        """
        ids = list(dict.fromkeys(candidate_ids))
        if not ids:
            raise ValidationError("No candidate ids supplied")

        job = self.store.get_job(job_id)
        if job.status is not JobStatus.COMPLETED:
            raise StateError(
                f"Job {job_id} is {job.status.value}; only completed jobs can be materialized"
            )

        candidates: List[ExtractedEntityCandidate] = []
        for candidate_id in ids:
            try:
                candidate = self.store.get_candidate(candidate_id)
            except NotFoundError as exc:
                return self._failed(job_id, ids, MaterializationError(candidate_id, str(exc)))
            if candidate.job_id != job_id:
                return self._failed(
                    job_id,
                    ids,
                    MaterializationError(candidate_id, f"Candidate belongs to job {candidate.job_id}"),
                )
            if candidate.status is not CandidateStatus.APPROVED:
                return self._failed(
                    job_id,
                    ids,
                    MaterializationError(
                        candidate_id, f"Candidate is {candidate.status.value}, not approved"
                    ),
                )
            candidates.append(candidate)

        created: List[int] = []
        current: int | None = None
        try:
            with self.store.unit_of_work() as tx:
                for candidate in candidates:
                    current = candidate.id
                    # Re-read inside the transaction: a concurrent batch may have taken it.
                    locked = tx.get_candidate(candidate.id)
                    if locked.status is not CandidateStatus.APPROVED:
                        raise StateError(f"Candidate is {locked.status.value}, not approved")

                    slug = first_available_slug(
                        slugify(locked.canonical_name),
                        lambda value: tx.slug_exists(job.target_collection_id, value),
                    )
                    entity_id = tx.insert_corpus_entity(
                        collection_id=job.target_collection_id,
                        entity_type=locked.entity_type,
                        canonical_name=locked.canonical_name,
                        slug=slug,
                        alternative_names=locked.alternative_names,
                        description=locked.description,
                        attributes=locked.attributes,
                        importance_score=importance_score(locked),
                        source_candidate_id=locked.id,
                    )
                    tx.mark_materialized(locked.id, entity_id, reviewer_id)
                    created.append(entity_id)
                    if self._progress:
                        self._progress(len(created), len(candidates))

                current = None
                tx.increment_entities_created(job_id, len(created))
        except ExtractionError as exc:
            reason = exc.reason if isinstance(exc, MaterializationError) else str(exc)
            return self._failed(job_id, ids, MaterializationError(current, reason))

        self.store.sync_job_statistics(job_id)
        logger.success(f"Materialized {len(created)} entities for job {job_id}")
        self._audit.record(
            "materialize",
            {
                "job_id": job_id,
                "candidate_ids": ids,
                "entity_ids": created,
                "reviewer_id": reviewer_id,
            },
        )
        return MaterializationResult(job_id=job_id, created_entity_ids=created)

    def _failed(
        self, job_id: int, candidate_ids: List[int], error: MaterializationError
    ) -> MaterializationResult:
        logger.error(f"Materialization of job {job_id} rolled back: {error}")
        self._audit.record(
            "materialize_failed",
            {"job_id": job_id, "candidate_ids": candidate_ids, **error.to_dict()},
        )
        return MaterializationResult(job_id=job_id, error=error)

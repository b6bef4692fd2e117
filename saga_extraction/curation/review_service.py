"""Reviewer-facing operations: listing, approve/reject, and duplicate resolution."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

from loguru import logger

from saga_extraction.curation.audit import CurationAuditTrail
from saga_extraction.errors import StateError, ValidationError
from saga_extraction.storage.candidate_store import CandidateStore
from saga_extraction.storage.schemas import (
    CandidateFilters,
    CandidatePage,
    CandidateStatus,
    Disposition,
    DuplicateMatch,
    JobStatistics,
    ReviewDecision,
)
from saga_extraction.utils.config import Config


class ReviewService:
    """Orchestrate review actions on extracted candidates."""

    def __init__(
        self,
        store: CandidateStore,
        config: Config | None = None,
        audit_path: Path | None = None,
        audit: CurationAuditTrail | None = None,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self._audit = audit or CurationAuditTrail(
            audit_path or Path(self.config.curation.audit_path),
            enabled=self.config.curation.enable_audit_trail,
        )

    # Public API -----------------------------------------------------
    def list_candidates(
        self,
        job_id: int,
        *,
        page: int = 1,
        per_page: Optional[int] = None,
        filters: CandidateFilters | None = None,
    ) -> CandidatePage:
        """Filtered, paginated candidates of a job ordered by confidence."""
        return self.store.list_candidates(
            job_id,
            page=page,
            per_page=per_page or self.config.curation.default_per_page,
            filters=filters,
            max_per_page=self.config.curation.max_per_page,
        )

    def review_candidates(
        self,
        candidate_ids: Sequence[int],
        decision: ReviewDecision | str,
        reviewer_id: int,
    ) -> int:
        """Approve or reject a batch of candidates; returns how many changed.

        Materialized candidates are skipped. Unknown ids raise ``NotFoundError``
        before anything is written.
        """
        if not candidate_ids:
            raise ValidationError("No candidate ids supplied")
        decision = ReviewDecision(decision)

        candidates = self.store.get_candidates(candidate_ids)
        eligible = [c.id for c in candidates if not c.status.is_terminal]
        skipped = len(candidates) - len(eligible)

        updated = self.store.update_candidate_status(
            eligible, decision.target_status, reviewer_id=reviewer_id
        )
        for job_id in sorted({c.job_id for c in candidates}):
            self.store.sync_job_statistics(job_id)

        logger.info(
            "Reviewed {} candidates as {} ({} skipped as materialized)",
            updated,
            decision.target_status.value,
            skipped,
        )
        self._record_audit(
            "review_candidates",
            {
                "candidate_ids": eligible,
                "decision": decision.value,
                "reviewer_id": reviewer_id,
                "updated": updated,
                "skipped": skipped,
            },
        )
        return updated

    def get_duplicates(self, candidate_id: int) -> List[DuplicateMatch]:
        """Duplicate matches recorded for a candidate, most similar first."""
        return self.store.matches_for_candidate(candidate_id)

    def resolve_duplicate(
        self,
        candidate_id: int,
        existing_entity_id: int | None,
        disposition: Disposition | str,
        *,
        matched_candidate_id: int | None = None,
        reviewer_id: int | None = None,
    ) -> DuplicateMatch:
        """Record the reviewer's disposition for one match and update the candidate.

        ``confirmed_duplicate`` and ``merged`` mark the candidate ``duplicate``;
        ``confirmed_unique`` returns a ``duplicate`` candidate to ``pending`` once
        no other match is confirmed.
        """
        disposition = Disposition(disposition)
        if disposition is Disposition.PENDING:
            raise ValidationError("A resolution must be a final disposition, not 'pending'")

        candidate = self.store.get_candidate(candidate_id)
        if candidate.status.is_terminal:
            raise StateError(f"Candidate {candidate_id} is already materialized")

        match = self.store.set_match_disposition(
            candidate_id,
            disposition,
            existing_entity_id=existing_entity_id,
            matched_candidate_id=matched_candidate_id,
        )

        if disposition.marks_duplicate:
            target = existing_entity_id if existing_entity_id is not None else matched_candidate_id
            self.store.mark_candidate_duplicate(
                candidate_id,
                target,
                match.similarity_score,
                reviewer_id=reviewer_id,
                allowed_from=[s for s in CandidateStatus if not s.is_terminal],
            )
        elif candidate.status is CandidateStatus.DUPLICATE and not self.store.has_confirmed_duplicate(
            candidate_id
        ):
            self.store.update_candidate_status(
                [candidate_id],
                CandidateStatus.PENDING,
                reviewer_id=reviewer_id,
                allowed_from=[CandidateStatus.DUPLICATE],
            )

        self.store.sync_job_statistics(candidate.job_id)
        self._record_audit(
            "resolve_duplicate",
            {
                "candidate_id": candidate_id,
                "existing_entity_id": existing_entity_id,
                "matched_candidate_id": matched_candidate_id,
                "disposition": disposition.value,
                "reviewer_id": reviewer_id,
            },
        )
        return match

    def job_statistics(self, job_id: int) -> JobStatistics:
        return self.store.job_statistics(job_id)

    def _record_audit(self, event: str, payload: Dict[str, object]) -> None:
        self._audit.record(event, payload)

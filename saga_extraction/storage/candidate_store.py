"""Relational persistence for jobs, candidates, duplicate matches, and the entity corpus.

``CandidateStore`` is the repository interface injected into the job manager,
the review service, and the batch materializer. ``SqlCandidateStore`` implements it
on SQLAlchemy. Every public method runs in its own transaction; ``unit_of_work()``
exposes one transaction spanning several writes for all-or-nothing batches.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, ContextManager, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from loguru import logger
from sqlalchemy import create_engine, delete, event, func, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from saga_extraction.errors import NotFoundError, PersistenceError, StateError, ValidationError
from saga_extraction.extraction.models import CandidateDraft
from saga_extraction.normalization.slugs import first_available_slug, slugify
from saga_extraction.storage.orm import (
    Base,
    CandidateRow,
    CorpusEntityRow,
    DuplicateMatchRow,
    JobRow,
)
from saga_extraction.storage.schemas import (
    CandidateAttributes,
    CandidateFilters,
    CandidatePage,
    CandidateStatus,
    CollectionSummary,
    CorpusEntity,
    Disposition,
    DuplicateMatch,
    EntityType,
    ExtractedEntityCandidate,
    ExtractionJob,
    JobStatistics,
    JobStatus,
    SourceType,
    ensure_utc,
    utcnow,
)
from saga_extraction.utils.config import DatabaseConfig

# Fields a terminal job still accepts: statistics and accounting, never lifecycle.
AUDIT_FIELDS = frozenset(
    {
        "total_entities_found",
        "entities_created",
        "entities_rejected",
        "duplicates_found",
        "accuracy_score",
        "job_metadata",
    }
)

_NON_TERMINAL_CANDIDATE_STATUSES = tuple(s for s in CandidateStatus if not s.is_terminal)


class CandidateStore(Protocol):
    """Repository interface consumed by the pipeline and curation services."""

    # jobs
    def create_job(
        self,
        *,
        target_collection_id: int,
        requester_id: int,
        source_text: str,
        chunk_size: int,
        total_chunks: int,
        provider: str,
        model: str,
        source_type: SourceType = SourceType.MANUAL,
        estimated_tokens: int = 0,
        estimated_cost_usd: Decimal = Decimal("0"),
        metadata: Dict[str, Any] | None = None,
    ) -> ExtractionJob: ...

    def get_job(self, job_id: int) -> ExtractionJob: ...

    def transition_job(
        self,
        job_id: int,
        target: JobStatus,
        *,
        expected: Iterable[JobStatus] | None = None,
        **fields: Any,
    ) -> ExtractionJob: ...

    def update_job(self, job_id: int, **fields: Any) -> ExtractionJob: ...

    def record_chunk_usage(
        self,
        job_id: int,
        *,
        tokens: int,
        cost: Decimal,
        retries: int = 0,
        processed: bool = False,
    ) -> None: ...

    def job_statistics(self, job_id: int) -> JobStatistics: ...

    def sync_job_statistics(self, job_id: int) -> ExtractionJob: ...

    def collection_summary(self, collection_id: int) -> CollectionSummary: ...

    # candidates
    def replace_chunk_candidates(
        self, job_id: int, chunk_index: int, drafts: Sequence[CandidateDraft]
    ) -> List[ExtractedEntityCandidate]: ...

    def get_candidate(self, candidate_id: int) -> ExtractedEntityCandidate: ...

    def get_candidates(self, candidate_ids: Sequence[int]) -> List[ExtractedEntityCandidate]: ...

    def candidates_for_job(
        self, job_id: int, statuses: Iterable[CandidateStatus] | None = None
    ) -> List[ExtractedEntityCandidate]: ...

    def count_candidates(self, job_id: int, status: CandidateStatus | None = None) -> int: ...

    def list_candidates(
        self,
        job_id: int,
        *,
        page: int = 1,
        per_page: int = 25,
        filters: CandidateFilters | None = None,
        max_per_page: int = 100,
    ) -> CandidatePage: ...

    def update_candidate_status(
        self,
        candidate_ids: Sequence[int],
        target: CandidateStatus,
        *,
        reviewer_id: int | None = None,
        allowed_from: Iterable[CandidateStatus] | None = None,
    ) -> int: ...

    def mark_candidate_duplicate(
        self,
        candidate_id: int,
        duplicate_of: int,
        similarity: float,
        *,
        reviewer_id: int | None = None,
        allowed_from: Iterable[CandidateStatus] = (CandidateStatus.PENDING,),
    ) -> bool: ...

    # duplicate matches
    def save_matches(self, matches: Sequence[DuplicateMatch]) -> int: ...

    def matches_for_candidate(self, candidate_id: int) -> List[DuplicateMatch]: ...

    def matches_for_job(self, job_id: int) -> List[DuplicateMatch]: ...

    def set_match_disposition(
        self,
        candidate_id: int,
        disposition: Disposition,
        *,
        existing_entity_id: int | None = None,
        matched_candidate_id: int | None = None,
    ) -> DuplicateMatch: ...

    def has_confirmed_duplicate(self, candidate_id: int) -> bool: ...

    # corpus
    def corpus_for_collection(self, collection_id: int) -> List[CorpusEntity]: ...

    def unit_of_work(self) -> ContextManager[StoreTransaction]: ...


def _build_engine(database_url: str, echo: bool) -> Engine:
    url = make_url(database_url)
    kwargs: Dict[str, Any] = {"echo": echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            # One shared connection, otherwise every session sees an empty database.
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **kwargs)

    if url.get_backend_name() == "sqlite":

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def _candidate_from_row(row: CandidateRow) -> ExtractedEntityCandidate:
    return ExtractedEntityCandidate.model_validate(row)


class StoreTransaction:
    """Write operations available inside ``SqlCandidateStore.unit_of_work()``."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_candidate(self, candidate_id: int) -> ExtractedEntityCandidate:
        row = self._session.get(CandidateRow, candidate_id, with_for_update=True)
        if row is None:
            raise NotFoundError(f"Candidate {candidate_id} not found")
        return _candidate_from_row(row)

    def get_job(self, job_id: int) -> ExtractionJob:
        row = self._session.get(JobRow, job_id, with_for_update=True)
        if row is None:
            raise NotFoundError(f"Job {job_id} not found")
        return ExtractionJob.model_validate(row)

    def slug_exists(self, collection_id: int, slug: str) -> bool:
        return _slug_exists(self._session, collection_id, slug)

    def insert_corpus_entity(
        self,
        *,
        collection_id: int,
        entity_type: EntityType,
        canonical_name: str,
        slug: str,
        alternative_names: Sequence[str] = (),
        description: str | None = None,
        attributes: CandidateAttributes | None = None,
        importance_score: int = 50,
        source_candidate_id: int | None = None,
    ) -> int:
        row = CorpusEntityRow(
            collection_id=collection_id,
            entity_type=entity_type.value,
            canonical_name=canonical_name,
            slug=slug,
            alternative_names=list(alternative_names),
            description=description,
            attributes=(attributes or CandidateAttributes()).model_dump(mode="json"),
            importance_score=importance_score,
            source_candidate_id=source_candidate_id,
            created_at=utcnow(),
        )
        self._session.add(row)
        try:
            self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not insert entity '{canonical_name}': {exc}") from exc
        return row.id

    def mark_materialized(self, candidate_id: int, entity_id: int, reviewer_id: int) -> None:
        result = self._session.execute(
            update(CandidateRow)
            .where(
                CandidateRow.id == candidate_id,
                CandidateRow.status == CandidateStatus.APPROVED.value,
            )
            .values(
                status=CandidateStatus.MATERIALIZED.value,
                created_entity_id=entity_id,
                reviewed_by=reviewer_id,
                reviewed_at=utcnow(),
            )
        )
        if result.rowcount != 1:
            raise StateError(f"Candidate {candidate_id} is no longer approved")

    def increment_entities_created(self, job_id: int, count: int) -> None:
        self._session.execute(
            update(JobRow)
            .where(JobRow.id == job_id)
            .values(entities_created=JobRow.entities_created + count)
        )


def _slug_exists(session: Session, collection_id: int, slug: str) -> bool:
    found = session.scalar(
        select(CorpusEntityRow.id).where(
            CorpusEntityRow.collection_id == collection_id, CorpusEntityRow.slug == slug
        )
    )
    return found is not None


class SqlCandidateStore:
    """SQLAlchemy-backed implementation of ``CandidateStore``.

    Example:
        >>> store = SqlCandidateStore("sqlite:///:memory:")
        >>> job = store.create_job(target_collection_id=1, requester_id=7, ...)
        >>> page = store.list_candidates(job.id, page=1, per_page=25)
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        config: DatabaseConfig | None = None,
        engine: Engine | None = None,
        create_schema: bool = True,
    ) -> None:
        self.config = config or DatabaseConfig()
        self.database_url = database_url or self.config.database_url
        self.engine = engine or _build_engine(self.database_url, self.config.sql_echo)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        # SQLite allows one writer; serialize in-process access to keep transactions short-lived
        self._lock = threading.RLock()

        if create_schema:
            Base.metadata.create_all(self.engine)

        logger.info(
            "Initialized SqlCandidateStore",
            url=make_url(self.database_url).render_as_string(hide_password=True),
        )

    # -----------------------
    # Sessions
    # -----------------------
    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("Database session error: {}", exc)
                raise PersistenceError(str(exc)) from exc
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @contextmanager
    def unit_of_work(self) -> Iterator[StoreTransaction]:
        """One transaction for several writes: commit on success, roll back on any error."""
        with self._session() as session:
            yield StoreTransaction(session)

    def _job_row(self, session: Session, job_id: int, *, for_update: bool = False) -> JobRow:
        row = session.get(JobRow, job_id, with_for_update=for_update)
        if row is None:
            raise NotFoundError(f"Job {job_id} not found")
        return row

    def _candidate_row(self, session: Session, candidate_id: int) -> CandidateRow:
        row = session.get(CandidateRow, candidate_id)
        if row is None:
            raise NotFoundError(f"Candidate {candidate_id} not found")
        return row

    # -----------------------
    # Jobs
    # -----------------------
    def create_job(
        self,
        *,
        target_collection_id: int,
        requester_id: int,
        source_text: str,
        chunk_size: int,
        total_chunks: int,
        provider: str,
        model: str,
        source_type: SourceType = SourceType.MANUAL,
        estimated_tokens: int = 0,
        estimated_cost_usd: Decimal = Decimal("0"),
        metadata: Dict[str, Any] | None = None,
    ) -> ExtractionJob:
        with self._session() as session:
            row = JobRow(
                target_collection_id=target_collection_id,
                requester_id=requester_id,
                source_text=source_text,
                source_type=SourceType(source_type).value,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                processed_chunks=0,
                status=JobStatus.PENDING.value,
                provider=provider,
                model=model,
                estimated_tokens=estimated_tokens,
                actual_tokens=0,
                estimated_cost_usd=estimated_cost_usd,
                actual_cost_usd=Decimal("0"),
                retry_count=0,
                total_entities_found=0,
                entities_created=0,
                entities_rejected=0,
                duplicates_found=0,
                job_metadata=dict(metadata or {}),
                created_at=utcnow(),
            )
            session.add(row)
            session.flush()
            job = ExtractionJob.model_validate(row)

        logger.info(
            "Created extraction job {} ({} chunks, collection {})",
            job.id,
            job.total_chunks,
            job.target_collection_id,
        )
        return job

    def get_job(self, job_id: int) -> ExtractionJob:
        with self._session() as session:
            return ExtractionJob.model_validate(self._job_row(session, job_id))

    def list_jobs(
        self,
        *,
        collection_id: int | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExtractionJob]:
        query = select(JobRow)
        if collection_id is not None:
            query = query.where(JobRow.target_collection_id == collection_id)
        if status is not None:
            query = query.where(JobRow.status == JobStatus(status).value)
        query = query.order_by(JobRow.created_at.desc(), JobRow.id.desc()).offset(offset).limit(limit)
        with self._session() as session:
            return [ExtractionJob.model_validate(row) for row in session.scalars(query)]

    def transition_job(
        self,
        job_id: int,
        target: JobStatus,
        *,
        expected: Iterable[JobStatus] | None = None,
        **fields: Any,
    ) -> ExtractionJob:
        """Compare-and-set status change along the legal lifecycle edges."""
        target = JobStatus(target)
        expected_statuses = {JobStatus(s) for s in expected} if expected is not None else None
        with self._session() as session:
            row = self._job_row(session, job_id, for_update=True)
            current = JobStatus(row.status)
            if expected_statuses is not None and current not in expected_statuses:
                raise StateError(
                    f"Job {job_id} is {current.value}, expected one of "
                    f"{sorted(s.value for s in expected_statuses)}"
                )
            if not current.can_transition_to(target):
                raise StateError(
                    f"Job {job_id} cannot move from {current.value} to {target.value}"
                )

            now = utcnow()
            row.status = target.value
            if target is JobStatus.PROCESSING:
                row.started_at = now
            if target.is_terminal:
                row.completed_at = now
                started = ensure_utc(row.started_at)
                if started is not None:
                    row.processing_time_ms = int((now - started).total_seconds() * 1000)
            for key, value in fields.items():
                self._set_job_field(row, key, value)
            session.flush()
            job = ExtractionJob.model_validate(row)

        logger.debug("Job {} moved {} -> {}", job_id, current.value, target.value)
        return job

    def update_job(self, job_id: int, **fields: Any) -> ExtractionJob:
        """Update non-lifecycle fields; terminal jobs accept audit fields only."""
        with self._session() as session:
            row = self._job_row(session, job_id, for_update=True)
            if JobStatus(row.status).is_terminal:
                blocked = set(fields) - AUDIT_FIELDS
                if blocked:
                    raise StateError(
                        f"Job {job_id} is {row.status}; cannot update {sorted(blocked)}"
                    )
            for key, value in fields.items():
                self._set_job_field(row, key, value)
            session.flush()
            return ExtractionJob.model_validate(row)

    @staticmethod
    def _set_job_field(row: JobRow, key: str, value: Any) -> None:
        if key in {"id", "status"} or not hasattr(JobRow, key):
            raise ValueError(f"Unknown or protected job field: {key}")
        if isinstance(value, (JobStatus, SourceType)):
            value = value.value
        setattr(row, key, value)

    def record_chunk_usage(
        self,
        job_id: int,
        *,
        tokens: int,
        cost: Decimal,
        retries: int = 0,
        processed: bool = False,
    ) -> None:
        """Atomically add usage for one chunk and optionally count it as processed.

        Usage is recorded even for failed chunks so job cost reflects every provider call.
        """
        with self._session() as session:
            result = session.execute(
                update(JobRow)
                .where(JobRow.id == job_id)
                .values(
                    actual_tokens=JobRow.actual_tokens + tokens,
                    actual_cost_usd=JobRow.actual_cost_usd + cost,
                    retry_count=JobRow.retry_count + retries,
                )
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Job {job_id} not found")
            if processed:
                session.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id, JobRow.processed_chunks < JobRow.total_chunks)
                    .values(processed_chunks=JobRow.processed_chunks + 1)
                )

    # -----------------------
    # Candidates
    # -----------------------
    def replace_chunk_candidates(
        self, job_id: int, chunk_index: int, drafts: Sequence[CandidateDraft]
    ) -> List[ExtractedEntityCandidate]:
        """Write a chunk's candidates, replacing any earlier write for the same chunk."""
        mismatched = [d.chunk_index for d in drafts if d.chunk_index != chunk_index]
        if mismatched:
            raise ValueError(f"Drafts belong to chunks {sorted(set(mismatched))}, not {chunk_index}")

        with self._session() as session:
            self._job_row(session, job_id)
            session.execute(
                delete(CandidateRow).where(
                    CandidateRow.job_id == job_id, CandidateRow.chunk_index == chunk_index
                )
            )
            now = utcnow()
            rows = [
                CandidateRow(
                    job_id=job_id,
                    entity_type=draft.entity_type.value,
                    canonical_name=draft.canonical_name[:255],
                    alternative_names=list(draft.alternative_names),
                    description=draft.description,
                    attributes=draft.attributes.model_dump(mode="json"),
                    context_snippet=draft.context_snippet,
                    confidence_score=draft.confidence_score,
                    chunk_index=chunk_index,
                    char_offset=draft.char_offset,
                    status=CandidateStatus.PENDING.value,
                    created_at=now,
                )
                for draft in drafts
            ]
            session.add_all(rows)
            session.flush()
            return [_candidate_from_row(row) for row in rows]

    def get_candidate(self, candidate_id: int) -> ExtractedEntityCandidate:
        with self._session() as session:
            return _candidate_from_row(self._candidate_row(session, candidate_id))

    def get_candidates(self, candidate_ids: Sequence[int]) -> List[ExtractedEntityCandidate]:
        """Fetch candidates in the order given; any unknown id raises NotFoundError."""
        ids = list(dict.fromkeys(candidate_ids))
        if not ids:
            return []
        with self._session() as session:
            rows = session.scalars(select(CandidateRow).where(CandidateRow.id.in_(ids))).all()
            by_id = {row.id: _candidate_from_row(row) for row in rows}
        missing = [cid for cid in ids if cid not in by_id]
        if missing:
            raise NotFoundError(f"Candidates not found: {missing}")
        return [by_id[cid] for cid in ids]

    def candidates_for_job(
        self, job_id: int, statuses: Iterable[CandidateStatus] | None = None
    ) -> List[ExtractedEntityCandidate]:
        query = select(CandidateRow).where(CandidateRow.job_id == job_id)
        if statuses is not None:
            query = query.where(CandidateRow.status.in_([CandidateStatus(s).value for s in statuses]))
        query = query.order_by(
            CandidateRow.chunk_index, CandidateRow.char_offset, CandidateRow.id
        )
        with self._session() as session:
            return [_candidate_from_row(row) for row in session.scalars(query)]

    def count_candidates(self, job_id: int, status: CandidateStatus | None = None) -> int:
        query = select(func.count()).select_from(CandidateRow).where(CandidateRow.job_id == job_id)
        if status is not None:
            query = query.where(CandidateRow.status == CandidateStatus(status).value)
        with self._session() as session:
            return int(session.scalar(query) or 0)

    def list_candidates(
        self,
        job_id: int,
        *,
        page: int = 1,
        per_page: int = 25,
        filters: CandidateFilters | None = None,
        max_per_page: int = 100,
    ) -> CandidatePage:
        """Filtered, paginated listing ordered by confidence (highest first)."""
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        if not 1 <= per_page <= max_per_page:
            raise ValidationError(f"per_page must be between 1 and {max_per_page}, got {per_page}")
        filters = filters or CandidateFilters()

        conditions = [CandidateRow.job_id == job_id]
        if filters.entity_type is not None:
            conditions.append(CandidateRow.entity_type == filters.entity_type.value)
        if filters.status is not None:
            conditions.append(CandidateRow.status == filters.status.value)
        if filters.min_confidence is not None:
            conditions.append(CandidateRow.confidence_score >= filters.min_confidence)
        if filters.search and filters.search.strip():
            conditions.append(
                func.lower(CandidateRow.canonical_name).contains(filters.search.strip().lower())
            )

        with self._session() as session:
            self._job_row(session, job_id)
            total = session.scalar(
                select(func.count()).select_from(CandidateRow).where(*conditions)
            )
            rows = session.scalars(
                select(CandidateRow)
                .where(*conditions)
                .order_by(CandidateRow.confidence_score.desc(), CandidateRow.id.asc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            ).all()
            candidates = [_candidate_from_row(row) for row in rows]

        return CandidatePage(
            candidates=candidates, total_count=int(total or 0), page=page, per_page=per_page
        )

    def update_candidate_status(
        self,
        candidate_ids: Sequence[int],
        target: CandidateStatus,
        *,
        reviewer_id: int | None = None,
        allowed_from: Iterable[CandidateStatus] | None = None,
    ) -> int:
        """Compare-and-set status update; materialized candidates never move."""
        if not candidate_ids:
            return 0
        target = CandidateStatus(target)
        if target.is_terminal:
            raise StateError("Candidates become materialized only through batch materialization")
        allowed = [
            CandidateStatus(s).value
            for s in (allowed_from if allowed_from is not None else _NON_TERMINAL_CANDIDATE_STATUSES)
            if not CandidateStatus(s).is_terminal
        ]

        values: Dict[str, Any] = {"status": target.value}
        if reviewer_id is not None:
            values.update(reviewed_by=reviewer_id, reviewed_at=utcnow())
        if target is not CandidateStatus.DUPLICATE:
            values.update(duplicate_of=None, duplicate_similarity=None)

        with self._session() as session:
            result = session.execute(
                update(CandidateRow)
                .where(CandidateRow.id.in_(list(candidate_ids)), CandidateRow.status.in_(allowed))
                .values(**values)
            )
            return int(result.rowcount or 0)

    def mark_candidate_duplicate(
        self,
        candidate_id: int,
        duplicate_of: int,
        similarity: float,
        *,
        reviewer_id: int | None = None,
        allowed_from: Iterable[CandidateStatus] = (CandidateStatus.PENDING,),
    ) -> bool:
        values: Dict[str, Any] = {
            "status": CandidateStatus.DUPLICATE.value,
            "duplicate_of": duplicate_of,
            "duplicate_similarity": similarity,
        }
        if reviewer_id is not None:
            values.update(reviewed_by=reviewer_id, reviewed_at=utcnow())
        with self._session() as session:
            result = session.execute(
                update(CandidateRow)
                .where(
                    CandidateRow.id == candidate_id,
                    CandidateRow.status.in_([CandidateStatus(s).value for s in allowed_from]),
                )
                .values(**values)
            )
            return bool(result.rowcount)

    # -----------------------
    # Duplicate matches
    # -----------------------
    def save_matches(self, matches: Sequence[DuplicateMatch]) -> int:
        """Upsert matches keyed by (candidate, target); dispositions are preserved."""
        saved = 0
        with self._session() as session:
            for match in matches:
                candidate = self._candidate_row(session, match.candidate_id)
                if CandidateStatus(candidate.status).is_terminal:
                    continue

                query = select(DuplicateMatchRow).where(
                    DuplicateMatchRow.candidate_id == match.candidate_id
                )
                if match.existing_entity_id is not None:
                    query = query.where(
                        DuplicateMatchRow.existing_entity_id == match.existing_entity_id
                    )
                else:
                    query = query.where(
                        DuplicateMatchRow.matched_candidate_id == match.matched_candidate_id
                    )
                row = session.scalars(query).first()
                if row is None:
                    row = DuplicateMatchRow(
                        candidate_id=match.candidate_id,
                        existing_entity_id=match.existing_entity_id,
                        matched_candidate_id=match.matched_candidate_id,
                        disposition=match.disposition.value,
                        created_at=utcnow(),
                    )
                    session.add(row)

                row.matched_name = match.matched_name[:255]
                row.similarity_score = match.similarity_score
                row.match_method = match.match_method.value
                row.matched_field = match.matched_field
                row.confidence = match.confidence
                saved += 1
        return saved

    def matches_for_candidate(self, candidate_id: int) -> List[DuplicateMatch]:
        with self._session() as session:
            self._candidate_row(session, candidate_id)
            rows = session.scalars(
                select(DuplicateMatchRow)
                .where(DuplicateMatchRow.candidate_id == candidate_id)
                .order_by(DuplicateMatchRow.similarity_score.desc(), DuplicateMatchRow.id)
            )
            return [DuplicateMatch.model_validate(row) for row in rows]

    def matches_for_job(self, job_id: int) -> List[DuplicateMatch]:
        with self._session() as session:
            rows = session.scalars(
                select(DuplicateMatchRow)
                .join(CandidateRow, CandidateRow.id == DuplicateMatchRow.candidate_id)
                .where(CandidateRow.job_id == job_id)
                .order_by(DuplicateMatchRow.candidate_id, DuplicateMatchRow.id)
            )
            return [DuplicateMatch.model_validate(row) for row in rows]

    def set_match_disposition(
        self,
        candidate_id: int,
        disposition: Disposition,
        *,
        existing_entity_id: int | None = None,
        matched_candidate_id: int | None = None,
    ) -> DuplicateMatch:
        if (existing_entity_id is None) == (matched_candidate_id is None):
            raise ValidationError("Provide exactly one of existing_entity_id or matched_candidate_id")
        with self._session() as session:
            query = select(DuplicateMatchRow).where(DuplicateMatchRow.candidate_id == candidate_id)
            if existing_entity_id is not None:
                query = query.where(DuplicateMatchRow.existing_entity_id == existing_entity_id)
            else:
                query = query.where(DuplicateMatchRow.matched_candidate_id == matched_candidate_id)
            row = session.scalars(query).first()
            if row is None:
                target = existing_entity_id if existing_entity_id is not None else matched_candidate_id
                raise NotFoundError(f"No duplicate match between candidate {candidate_id} and {target}")
            row.disposition = Disposition(disposition).value
            row.reviewed_at = utcnow()
            session.flush()
            return DuplicateMatch.model_validate(row)

    def has_confirmed_duplicate(self, candidate_id: int) -> bool:
        confirmed = [d.value for d in Disposition if d.marks_duplicate]
        with self._session() as session:
            found = session.scalar(
                select(DuplicateMatchRow.id).where(
                    DuplicateMatchRow.candidate_id == candidate_id,
                    DuplicateMatchRow.disposition.in_(confirmed),
                )
            )
            return found is not None

    # -----------------------
    # Statistics
    # -----------------------
    def job_statistics(self, job_id: int) -> JobStatistics:
        with self._session() as session:
            self._job_row(session, job_id)
            counts = dict(
                session.execute(
                    select(CandidateRow.status, func.count())
                    .where(CandidateRow.job_id == job_id)
                    .group_by(CandidateRow.status)
                ).all()
            )
            with_matches = session.scalar(
                select(func.count(func.distinct(DuplicateMatchRow.candidate_id)))
                .select_from(DuplicateMatchRow)
                .join(CandidateRow, CandidateRow.id == DuplicateMatchRow.candidate_id)
                .where(CandidateRow.job_id == job_id)
            )
            pending_reviews = session.scalar(
                select(func.count())
                .select_from(DuplicateMatchRow)
                .join(CandidateRow, CandidateRow.id == DuplicateMatchRow.candidate_id)
                .where(
                    CandidateRow.job_id == job_id,
                    CandidateRow.status != CandidateStatus.MATERIALIZED.value,
                    DuplicateMatchRow.disposition == Disposition.PENDING.value,
                )
            )

        return JobStatistics(
            job_id=job_id,
            total_candidates=sum(counts.values()),
            pending=counts.get(CandidateStatus.PENDING.value, 0),
            approved=counts.get(CandidateStatus.APPROVED.value, 0),
            rejected=counts.get(CandidateStatus.REJECTED.value, 0),
            duplicate=counts.get(CandidateStatus.DUPLICATE.value, 0),
            materialized=counts.get(CandidateStatus.MATERIALIZED.value, 0),
            candidates_with_matches=int(with_matches or 0),
            pending_duplicate_reviews=int(pending_reviews or 0),
        )

    def sync_job_statistics(self, job_id: int) -> ExtractionJob:
        """Recompute the job's statistic columns from its candidates and matches."""
        stats = self.job_statistics(job_id)
        return self.update_job(
            job_id,
            total_entities_found=stats.total_candidates,
            entities_created=stats.materialized,
            entities_rejected=stats.rejected,
            duplicates_found=stats.candidates_with_matches,
        )

    def collection_summary(self, collection_id: int) -> CollectionSummary:
        with self._session() as session:
            rows = session.scalars(
                select(JobRow).where(JobRow.target_collection_id == collection_id)
            ).all()
            jobs = [ExtractionJob.model_validate(row) for row in rows]

        by_status: Dict[str, int] = {}
        for job in jobs:
            by_status[job.status.value] = by_status.get(job.status.value, 0) + 1

        found = sum(job.total_entities_found for job in jobs)
        created = sum(job.entities_created for job in jobs)
        return CollectionSummary(
            collection_id=collection_id,
            total_jobs=len(jobs),
            jobs_by_status=by_status,
            total_entities_found=found,
            total_entities_created=created,
            total_duplicates_found=sum(job.duplicates_found for job in jobs),
            total_cost_usd=sum((job.actual_cost_usd for job in jobs), Decimal("0")),
            acceptance_rate=round(created / found * 100, 2) if found else 0.0,
        )

    # -----------------------
    # Corpus
    # -----------------------
    def add_corpus_entity(
        self,
        collection_id: int,
        entity_type: EntityType,
        canonical_name: str,
        *,
        alternative_names: Sequence[str] = (),
        description: str | None = None,
        attributes: CandidateAttributes | None = None,
        importance_score: int = 50,
        slug: str | None = None,
    ) -> CorpusEntity:
        """Insert an entity directly into the corpus (imports and fixtures)."""
        with self._session() as session:
            chosen = slug or first_available_slug(
                slugify(canonical_name),
                lambda value: _slug_exists(session, collection_id, value),
            )
            tx = StoreTransaction(session)
            entity_id = tx.insert_corpus_entity(
                collection_id=collection_id,
                entity_type=EntityType(entity_type),
                canonical_name=canonical_name,
                slug=chosen,
                alternative_names=alternative_names,
                description=description,
                attributes=attributes,
                importance_score=importance_score,
            )
            return CorpusEntity.model_validate(session.get(CorpusEntityRow, entity_id))

    def get_corpus_entity(self, entity_id: int) -> CorpusEntity:
        with self._session() as session:
            row = session.get(CorpusEntityRow, entity_id)
            if row is None:
                raise NotFoundError(f"Entity {entity_id} not found")
            return CorpusEntity.model_validate(row)

    def corpus_for_collection(self, collection_id: int) -> List[CorpusEntity]:
        """Snapshot of the collection's permanent entities, ordered by id."""
        with self._session() as session:
            rows = session.scalars(
                select(CorpusEntityRow)
                .where(CorpusEntityRow.collection_id == collection_id)
                .order_by(CorpusEntityRow.id)
            )
            return [CorpusEntity.model_validate(row) for row in rows]

    def count_corpus_entities(self, collection_id: int | None = None) -> int:
        query = select(func.count()).select_from(CorpusEntityRow)
        if collection_id is not None:
            query = query.where(CorpusEntityRow.collection_id == collection_id)
        with self._session() as session:
            return int(session.scalar(query) or 0)

    def dispose(self) -> None:
        self.engine.dispose()


def open_store(config: DatabaseConfig | None = None, database_url: Optional[str] = None) -> SqlCandidateStore:
    """Create a store from configuration."""
    return SqlCandidateStore(database_url, config=config)

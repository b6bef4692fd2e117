"""SQLAlchemy table definitions for jobs, candidates, duplicate matches, and corpus entities.

Enum-valued columns are stored as their string values; the pydantic read models in
``saga_extraction.storage.schemas`` convert them back on load.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from saga_extraction.storage.schemas import utcnow


class Base(DeclarativeBase):
    pass


class JobRow(Base):
    __tablename__ = "extraction_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_collection_id: Mapped[int] = mapped_column(Integer, nullable=False)
    requester_id: Mapped[int] = mapped_column(Integer, nullable=False)
    source_text: Mapped[str] = mapped_column(Text, nullable=False)
    source_type: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)

    estimated_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), nullable=False, default=Decimal("0")
    )
    actual_cost_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), nullable=False, default=Decimal("0")
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Statistics
    total_entities_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    entities_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    entities_rejected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicates_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    accuracy_score: Mapped[Optional[float]] = mapped_column(Float)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer)

    # "metadata" is reserved on declarative classes
    job_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    candidates: Mapped[List["CandidateRow"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_jobs_collection_status", "target_collection_id", "status"),
        Index("ix_jobs_requester", "requester_id"),
        Index("ix_jobs_created_at", "created_at"),
        CheckConstraint("processed_chunks <= total_chunks", name="ck_jobs_progress"),
    )


class CandidateRow(Base):
    __tablename__ = "extracted_candidates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("extraction_jobs.id", ondelete="CASCADE"), nullable=False
    )
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    canonical_name: Mapped[str] = mapped_column(String(255), nullable=False)
    alternative_names: Mapped[List[str]] = mapped_column(JSON, default=list)
    description: Mapped[Optional[str]] = mapped_column(Text)
    attributes: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    context_snippet: Mapped[Optional[str]] = mapped_column(Text)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    char_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    duplicate_of: Mapped[Optional[int]] = mapped_column(Integer)
    duplicate_similarity: Mapped[Optional[float]] = mapped_column(Float)
    created_entity_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("saga_entities.id")
    )
    reviewed_by: Mapped[Optional[int]] = mapped_column(Integer)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    job: Mapped[JobRow] = relationship(back_populates="candidates")

    __table_args__ = (
        Index("ix_candidates_job_status", "job_id", "status"),
        Index("ix_candidates_job_chunk", "job_id", "chunk_index"),
        Index("ix_candidates_confidence", "confidence_score"),
        Index("ix_candidates_type", "entity_type"),
        Index("ix_candidates_name", "canonical_name"),
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 100", name="ck_candidates_confidence"
        ),
        CheckConstraint(
            "status != 'materialized' OR created_entity_id IS NOT NULL",
            name="ck_candidates_materialized_link",
        ),
    )


class DuplicateMatchRow(Base):
    __tablename__ = "duplicate_matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    candidate_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("extracted_candidates.id", ondelete="CASCADE"), nullable=False
    )
    existing_entity_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("saga_entities.id", ondelete="CASCADE")
    )
    matched_candidate_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("extracted_candidates.id", ondelete="CASCADE")
    )
    matched_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    match_method: Mapped[str] = mapped_column(String(20), nullable=False)
    matched_field: Mapped[str] = mapped_column(String(50), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    disposition: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("candidate_id", "existing_entity_id", name="uq_match_candidate_entity"),
        UniqueConstraint(
            "candidate_id", "matched_candidate_id", name="uq_match_candidate_candidate"
        ),
        Index("ix_matches_disposition", "disposition"),
        Index("ix_matches_similarity", "similarity_score"),
        CheckConstraint(
            "(existing_entity_id IS NULL) != (matched_candidate_id IS NULL)",
            name="ck_match_single_target",
        ),
    )


class CorpusEntityRow(Base):
    """Permanent entity records of a target collection (the corpus)."""

    __tablename__ = "saga_entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    canonical_name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    alternative_names: Mapped[List[str]] = mapped_column(JSON, default=list)
    description: Mapped[Optional[str]] = mapped_column(Text)
    attributes: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    importance_score: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    source_candidate_id: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("collection_id", "slug", name="uq_entities_collection_slug"),
        Index("ix_entities_collection_type", "collection_id", "entity_type"),
        Index("ix_entities_name", "canonical_name"),
    )

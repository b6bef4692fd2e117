"""Pydantic models for extraction jobs, candidates, duplicate matches, and corpus entities."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Mapping, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator

TEXT_ATTRIBUTE_THRESHOLD = 500


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on round-trip; treat naive timestamps as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class EntityType(str, Enum):
    """Closed set of entity types a candidate may propose."""

    PERSON = "person"
    PLACE = "place"
    EVENT = "event"
    ORGANIZATION = "organization"
    ARTIFACT = "artifact"
    CONCEPT = "concept"

    @classmethod
    def from_label(cls, label: Any) -> EntityType | None:
        """Map a provider label (including common synonyms) onto the closed set."""
        key = str(label or "").strip().lower()
        return ENTITY_TYPE_SYNONYMS.get(key)


ENTITY_TYPE_SYNONYMS: Dict[str, EntityType] = {
    "person": EntityType.PERSON,
    "character": EntityType.PERSON,
    "individual": EntityType.PERSON,
    "place": EntityType.PLACE,
    "location": EntityType.PLACE,
    "region": EntityType.PLACE,
    "event": EntityType.EVENT,
    "incident": EntityType.EVENT,
    "occurrence": EntityType.EVENT,
    "organization": EntityType.ORGANIZATION,
    "organisation": EntityType.ORGANIZATION,
    "faction": EntityType.ORGANIZATION,
    "group": EntityType.ORGANIZATION,
    "artifact": EntityType.ARTIFACT,
    "artefact": EntityType.ARTIFACT,
    "item": EntityType.ARTIFACT,
    "object": EntityType.ARTIFACT,
    "concept": EntityType.CONCEPT,
    "idea": EntityType.CONCEPT,
    "system": EntityType.CONCEPT,
}


class JobStatus(str, Enum):
    """Extraction job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES

    def can_transition_to(self, target: JobStatus) -> bool:
        return target in JOB_TRANSITIONS[self]


TERMINAL_JOB_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class CandidateStatus(str, Enum):
    """Review status of an extracted candidate."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"
    MATERIALIZED = "materialized"

    @property
    def is_terminal(self) -> bool:
        return self is CandidateStatus.MATERIALIZED


class ReviewDecision(str, Enum):
    """Reviewer decision applied to a batch of candidates."""

    APPROVE = "approve"
    REJECT = "reject"

    @property
    def target_status(self) -> CandidateStatus:
        if self is ReviewDecision.APPROVE:
            return CandidateStatus.APPROVED
        return CandidateStatus.REJECTED


class MatchMethod(str, Enum):
    """Duplicate matching strategy, declared in precedence order."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    ALIAS = "alias"
    SEMANTIC = "semantic"

    @property
    def precedence(self) -> int:
        return list(MatchMethod).index(self)

    @property
    def confidence_boost(self) -> float:
        return {
            MatchMethod.EXACT: 10.0,
            MatchMethod.ALIAS: 5.0,
            MatchMethod.FUZZY: 0.0,
            MatchMethod.SEMANTIC: -5.0,
        }[self]


class Disposition(str, Enum):
    """Reviewer disposition of a duplicate match."""

    PENDING = "pending"
    CONFIRMED_DUPLICATE = "confirmed_duplicate"
    CONFIRMED_UNIQUE = "confirmed_unique"
    MERGED = "merged"

    @property
    def marks_duplicate(self) -> bool:
        return self in (Disposition.CONFIRMED_DUPLICATE, Disposition.MERGED)


class SourceType(str, Enum):
    """Where the job's source text came from."""

    MANUAL = "manual"
    FILE_UPLOAD = "file_upload"
    API = "api"


# ---------------------------------------------------------------------------
# Structured attributes: tagged union of known kinds plus a bounded extra map.
# ---------------------------------------------------------------------------


class StringAttribute(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["string"] = "string"
    value: str = Field(..., max_length=TEXT_ATTRIBUTE_THRESHOLD)


class TextAttribute(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    value: str


class IntegerAttribute(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["integer"] = "integer"
    value: int


class NumberAttribute(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["number"] = "number"
    value: float


class BooleanAttribute(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["boolean"] = "boolean"
    value: bool


class ListAttribute(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["list"] = "list"
    value: List[str] = Field(default_factory=list)


AttributeValue = Annotated[
    Union[
        StringAttribute,
        TextAttribute,
        IntegerAttribute,
        NumberAttribute,
        BooleanAttribute,
        ListAttribute,
    ],
    Field(discriminator="kind"),
]

KNOWN_ATTRIBUTES: Dict[EntityType, FrozenSet[str]] = {
    EntityType.PERSON: frozenset(
        {"age", "gender", "occupation", "title", "affiliation", "species", "status", "born", "died"}
    ),
    EntityType.PLACE: frozenset(
        {"region", "climate", "population", "ruler", "terrain", "location_type"}
    ),
    EntityType.EVENT: frozenset({"date", "duration", "outcome", "participants", "location", "era"}),
    EntityType.ORGANIZATION: frozenset(
        {"leader", "founded", "headquarters", "members", "purpose", "allegiance"}
    ),
    EntityType.ARTIFACT: frozenset({"owner", "origin", "material", "power", "creator"}),
    EntityType.CONCEPT: frozenset({"domain", "origin", "rules", "practitioners", "category"}),
}


def coerce_attribute(value: Any) -> AttributeValue | None:
    """Wrap a raw JSON value in the matching attribute kind; None for empty values."""
    if value is None:
        return None
    if isinstance(value, bool):
        return BooleanAttribute(value=value)
    if isinstance(value, int):
        return IntegerAttribute(value=value)
    if isinstance(value, float):
        return NumberAttribute(value=value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        if len(stripped) > TEXT_ATTRIBUTE_THRESHOLD:
            return TextAttribute(value=stripped)
        return StringAttribute(value=stripped)
    if isinstance(value, (list, tuple, set, frozenset)):
        raw_items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        items = [str(item).strip() for item in raw_items if item is not None and str(item).strip()]
        return ListAttribute(value=items) if items else None
    if isinstance(value, dict):
        return TextAttribute(value=json.dumps(value, sort_keys=True, default=str))
    return StringAttribute(value=str(value)[:TEXT_ATTRIBUTE_THRESHOLD])


def _attribute_key(key: Any) -> str:
    return "_".join(str(key).strip().lower().split())


class CandidateAttributes(BaseModel):
    """Typed attributes known for the entity type, plus overflow string attributes."""

    known: Dict[str, AttributeValue] = Field(default_factory=dict)
    extra: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_raw(
        cls,
        entity_type: EntityType,
        raw: Mapping[str, Any] | None,
        *,
        max_extra: int = 20,
    ) -> CandidateAttributes:
        """Sort a provider's free-form attribute map into known and extra entries."""
        if not raw or not isinstance(raw, Mapping):
            return cls()

        allowed = KNOWN_ATTRIBUTES.get(entity_type, frozenset())
        known: Dict[str, AttributeValue] = {}
        extra: Dict[str, str] = {}
        dropped = 0

        for raw_key, raw_value in raw.items():
            key = _attribute_key(raw_key)
            if not key:
                continue
            if key in allowed:
                coerced = coerce_attribute(raw_value)
                if coerced is not None:
                    known[key] = coerced
                continue

            if raw_value is None:
                continue
            text = raw_value if isinstance(raw_value, str) else json.dumps(raw_value, default=str)
            text = text.strip()[:TEXT_ATTRIBUTE_THRESHOLD]
            if not text:
                continue
            if len(extra) >= max_extra:
                dropped += 1
                continue
            extra[key] = text

        if dropped:
            logger.debug("Dropped {} extra attribute(s) over the limit of {}", dropped, max_extra)
        return cls(known=known, extra=extra)

    def is_empty(self) -> bool:
        return not self.known and not self.extra


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class ExtractionJob(BaseModel):
    """One extraction request over a block of source text."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    target_collection_id: int
    requester_id: int
    source_text: str
    source_type: SourceType = SourceType.MANUAL
    chunk_size: int = Field(..., gt=0)
    total_chunks: int = Field(default=0, ge=0)
    processed_chunks: int = Field(default=0, ge=0)
    status: JobStatus = JobStatus.PENDING
    provider: str
    model: str
    estimated_tokens: int = 0
    actual_tokens: int = 0
    estimated_cost_usd: Decimal = Decimal("0")
    actual_cost_usd: Decimal = Decimal("0")
    error_message: Optional[str] = None
    retry_count: int = 0
    total_entities_found: int = 0
    entities_created: int = 0
    entities_rejected: int = 0
    duplicates_found: int = 0
    accuracy_score: Optional[float] = None
    processing_time_ms: Optional[int] = None
    job_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_progress(self) -> ExtractionJob:
        if self.processed_chunks > self.total_chunks:
            raise ValueError(
                f"processed_chunks ({self.processed_chunks}) exceeds "
                f"total_chunks ({self.total_chunks})"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def progress_percent(self) -> float:
        if self.total_chunks == 0:
            return 0.0
        return round(self.processed_chunks / self.total_chunks * 100, 2)

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        started = ensure_utc(self.started_at)
        if started is None:
            return 0.0
        end = ensure_utc(self.completed_at) or now or utcnow()
        return max(0.0, (end - started).total_seconds())

    @property
    def cost_per_entity(self) -> Optional[Decimal]:
        if self.entities_created == 0:
            return None
        return (self.actual_cost_usd / self.entities_created).quantize(Decimal("0.000001"))


class ExtractedEntityCandidate(BaseModel):
    """One entity proposal within a job."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: int
    entity_type: EntityType
    canonical_name: str
    alternative_names: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    attributes: CandidateAttributes = Field(default_factory=CandidateAttributes)
    context_snippet: Optional[str] = None
    confidence_score: float = Field(..., ge=0.0, le=100.0)
    chunk_index: int = Field(..., ge=0)
    char_offset: int = Field(default=0, ge=0)
    status: CandidateStatus = CandidateStatus.PENDING
    duplicate_of: Optional[int] = None
    duplicate_similarity: Optional[float] = None
    created_entity_id: Optional[int] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_materialized_link(self) -> ExtractedEntityCandidate:
        if self.status is CandidateStatus.MATERIALIZED and self.created_entity_id is None:
            raise ValueError("Materialized candidates must reference the created entity")
        return self

    @property
    def confidence_level(self) -> str:
        if self.confidence_score >= 80:
            return "high"
        if self.confidence_score >= 60:
            return "medium"
        return "low"

    @property
    def completeness(self) -> float:
        """0-100 score for how much supporting detail the candidate carries."""
        score = 0.0
        if self.description:
            score += 40
        if self.alternative_names:
            score += 20
        if not self.attributes.is_empty():
            score += 20
        if self.context_snippet:
            score += 20
        return score

    @property
    def quality_score(self) -> float:
        return round(self.confidence_score * 0.7 + self.completeness * 0.3, 2)

    @property
    def ordering_key(self) -> tuple[int, int, int]:
        return (self.chunk_index, self.char_offset, self.id)


class DuplicateMatch(BaseModel):
    """A candidate-to-entity (or candidate-to-candidate) similarity hypothesis."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    candidate_id: int
    existing_entity_id: Optional[int] = None
    matched_candidate_id: Optional[int] = None
    matched_name: str = ""
    similarity_score: float = Field(..., ge=0.0, le=100.0)
    match_method: MatchMethod
    matched_field: str = "canonical_name"
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    disposition: Disposition = Disposition.PENDING
    created_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_single_target(self) -> DuplicateMatch:
        if (self.existing_entity_id is None) == (self.matched_candidate_id is None):
            raise ValueError(
                "Exactly one of existing_entity_id or matched_candidate_id must be set"
            )
        return self

    @property
    def is_intra_job(self) -> bool:
        return self.matched_candidate_id is not None

    def is_high_confidence(self, similarity: float = 90.0, confidence: float = 80.0) -> bool:
        return self.similarity_score >= similarity and self.confidence >= confidence


class CorpusEntity(BaseModel):
    """A permanent entity in the target collection."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    collection_id: int
    entity_type: EntityType
    canonical_name: str
    slug: str
    alternative_names: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    attributes: CandidateAttributes = Field(default_factory=CandidateAttributes)
    importance_score: int = Field(default=50, ge=0, le=100)
    source_candidate_id: Optional[int] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Read models returned across the external interface
# ---------------------------------------------------------------------------


class CostEstimate(BaseModel):
    """Pre-flight estimate for a job."""

    chunks: int
    tokens: int
    cost_usd: Decimal
    estimated_entities: int
    processing_time_seconds: int
    provider: str
    model: str


class JobProgress(BaseModel):
    """Point-in-time progress snapshot of a job."""

    job_id: int
    status: JobStatus
    processed_chunks: int
    total_chunks: int
    candidates_found: int
    elapsed_seconds: float
    error_message: Optional[str] = None
    actual_tokens: int = 0
    actual_cost_usd: Decimal = Decimal("0")

    @property
    def progress_percent(self) -> float:
        if self.total_chunks == 0:
            return 0.0
        return round(self.processed_chunks / self.total_chunks * 100, 2)


class CandidateFilters(BaseModel):
    """Optional filters for candidate listing."""

    entity_type: Optional[EntityType] = None
    status: Optional[CandidateStatus] = None
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    search: Optional[str] = None


class CandidatePage(BaseModel):
    """One page of candidates plus the unpaged total."""

    candidates: List[ExtractedEntityCandidate]
    total_count: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        if self.per_page <= 0:
            return 0
        return (self.total_count + self.per_page - 1) // self.per_page


class JobStatistics(BaseModel):
    """Review-state breakdown for one job."""

    job_id: int
    total_candidates: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    duplicate: int = 0
    materialized: int = 0
    candidates_with_matches: int = 0
    pending_duplicate_reviews: int = 0


class CollectionSummary(BaseModel):
    """Aggregate extraction activity for one target collection."""

    collection_id: int
    total_jobs: int = 0
    jobs_by_status: Dict[str, int] = Field(default_factory=dict)
    total_entities_found: int = 0
    total_entities_created: int = 0
    total_duplicates_found: int = 0
    total_cost_usd: Decimal = Decimal("0")
    acceptance_rate: float = 0.0

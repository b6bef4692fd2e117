"""Data models for LLM extraction output."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from saga_extraction.errors import ChunkFailure
from saga_extraction.storage.schemas import CandidateAttributes, EntityType


class CandidateDraft(BaseModel):
    """An entity proposal parsed from one provider response, not yet persisted."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    canonical_name: str = Field(..., min_length=1)
    alternative_names: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    attributes: CandidateAttributes = Field(default_factory=CandidateAttributes)
    context_snippet: Optional[str] = None
    confidence_score: float = Field(..., ge=0.0, le=100.0)
    chunk_index: int = Field(..., ge=0)
    char_offset: int = Field(default=0, ge=0)
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)


class TokenUsage(BaseModel):
    """Provider-reported token usage."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class ProviderReply(BaseModel):
    """Raw text answer plus usage from a single provider call."""

    text: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)


class ChunkExtraction(BaseModel):
    """Outcome of extracting one chunk: candidates, usage, cost, and any chunk failure."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    chunk_index: int
    candidates: List[CandidateDraft] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: Decimal = Decimal("0")
    attempts: int = 0
    error: Optional[ChunkFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def tokens_used(self) -> int:
        return self.usage.total_tokens

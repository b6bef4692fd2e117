"""Quality metrics for the candidates produced by a job."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from pydantic import BaseModel

from saga_extraction.storage.schemas import ExtractedEntityCandidate

HIGH_CONFIDENCE = 80.0
MEDIUM_CONFIDENCE = 60.0


class QualityReport(BaseModel):
    """Confidence distribution and completeness of a candidate set."""

    total: int = 0
    high_confidence: int = 0
    medium_confidence: int = 0
    low_confidence: int = 0
    avg_confidence: float = 0.0
    high_confidence_percent: float = 0.0
    with_description_percent: float = 0.0
    with_context_percent: float = 0.0
    completeness: float = 0.0
    quality_score: float = 0.0


def assess_quality(candidates: Sequence[ExtractedEntityCandidate]) -> QualityReport:
    """Score a candidate set: half average confidence, 30% high-confidence share, 20% completeness."""
    total = len(candidates)
    if total == 0:
        return QualityReport()

    high = sum(1 for c in candidates if c.confidence_score >= HIGH_CONFIDENCE)
    medium = sum(1 for c in candidates if MEDIUM_CONFIDENCE <= c.confidence_score < HIGH_CONFIDENCE)
    with_description = sum(1 for c in candidates if c.description)
    with_context = sum(1 for c in candidates if c.context_snippet)

    avg_confidence = sum(c.confidence_score for c in candidates) / total
    high_percent = high / total * 100
    completeness = (with_description + with_context) / (total * 2) * 100
    score = avg_confidence * 0.5 + high_percent * 0.3 + completeness * 0.2

    return QualityReport(
        total=total,
        high_confidence=high,
        medium_confidence=medium,
        low_confidence=total - high - medium,
        avg_confidence=_round2(avg_confidence),
        high_confidence_percent=_round2(high_percent),
        with_description_percent=_round2(with_description / total * 100),
        with_context_percent=_round2(with_context / total * 100),
        completeness=_round2(completeness),
        quality_score=_round2(score),
    )


def _round2(value: float) -> float:
    """Round half up to two places (60.625 -> 60.63)."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

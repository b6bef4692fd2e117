"""Fuzzy string similarity for duplicate detection."""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel, ConfigDict
from rapidfuzz import fuzz
from rapidfuzz.distance import JaroWinkler, Levenshtein

from saga_extraction.normalization.string_normalizer import StringNormalizer
from saga_extraction.utils.config import DuplicateDetectionConfig


class FuzzyScore(BaseModel):
    """Component and blended similarity for one pair of names (0-100 scale)."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    source_normalized: str
    target_normalized: str
    levenshtein: float
    indel: float
    jaro_winkler: float
    score: float
    threshold: float
    passed: bool


class FuzzyMatcher:
    """RapidFuzz-based matcher blending edit-distance and Jaro-Winkler similarity.

    The blended score is a weighted sum of normalized Levenshtein similarity,
    Indel similarity (``fuzz.ratio``), and Jaro-Winkler similarity, reported on a
    0-100 scale and rounded to two decimals so results are reproducible.
    """

    def __init__(
        self,
        config: DuplicateDetectionConfig | None = None,
        normalizer: StringNormalizer | None = None,
    ) -> None:
        self.config = config or DuplicateDetectionConfig()
        self.normalizer = normalizer or StringNormalizer()
        self.weights = dict(self.config.fuzzy_weights)

        logger.debug(
            "Initialized FuzzyMatcher with threshold {:.1f} and weights {}",
            self.config.fuzzy_threshold,
            self.weights,
        )

    def similarity(self, source_norm: str, target_norm: str) -> float:
        """Blended similarity of two already-normalized strings."""
        if not source_norm or not target_norm:
            return 0.0
        if source_norm == target_norm:
            return 100.0
        return self._blend(*self._components(source_norm, target_norm))

    def match_pair(self, source: str, target: str) -> FuzzyScore:
        """Score a single pair of raw strings."""
        source_norm = self.normalizer.key(source)
        target_norm = self.normalizer.key(target)
        if source_norm and target_norm:
            levenshtein, indel, jaro_winkler = self._components(source_norm, target_norm)
        else:
            levenshtein = indel = jaro_winkler = 0.0
        score = self.similarity(source_norm, target_norm)
        threshold = self.config.fuzzy_threshold

        return FuzzyScore(
            source=source,
            target=target,
            source_normalized=source_norm,
            target_normalized=target_norm,
            levenshtein=round(levenshtein * 100, 2),
            indel=round(indel * 100, 2),
            jaro_winkler=round(jaro_winkler * 100, 2),
            score=score,
            threshold=threshold,
            passed=score >= threshold,
        )

    def _components(self, source_norm: str, target_norm: str) -> tuple[float, float, float]:
        levenshtein = Levenshtein.normalized_similarity(source_norm, target_norm)
        indel = fuzz.ratio(source_norm, target_norm) / 100.0
        jaro_winkler = JaroWinkler.similarity(source_norm, target_norm)
        return levenshtein, indel, jaro_winkler

    def _blend(self, levenshtein: float, indel: float, jaro_winkler: float) -> float:
        blended = (
            levenshtein * self.weights["levenshtein"]
            + indel * self.weights["indel"]
            + jaro_winkler * self.weights["jaro_winkler"]
        )
        return round(max(0.0, min(1.0, blended)) * 100, 2)

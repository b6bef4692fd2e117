"""Normalization package."""

from saga_extraction.normalization.duplicate_detector import DuplicateDetector, MatchTarget
from saga_extraction.normalization.fuzzy_matcher import FuzzyMatcher, FuzzyScore
from saga_extraction.normalization.string_normalizer import (
    NormalizationResult,
    NormalizationRules,
    StringNormalizer,
)

__all__ = [
    "DuplicateDetector",
    "FuzzyMatcher",
    "FuzzyScore",
    "MatchTarget",
    "NormalizationResult",
    "NormalizationRules",
    "StringNormalizer",
]

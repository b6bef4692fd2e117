"""Duplicate detection of extracted candidates against the corpus and the same job.

Four strategies are tried per (candidate, target) pair in precedence order:
exact normalized name, fuzzy name similarity, alias overlap, and an optional
semantic matcher. The first applicable strategy wins, so a pair yields at most
one match. Detection is a pure function of its inputs.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Literal, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from saga_extraction.normalization.fuzzy_matcher import FuzzyMatcher
from saga_extraction.normalization.semantic_matcher import SemanticMatcher
from saga_extraction.normalization.string_normalizer import StringNormalizer
from saga_extraction.storage.schemas import (
    CorpusEntity,
    DuplicateMatch,
    EntityType,
    ExtractedEntityCandidate,
    MatchMethod,
)
from saga_extraction.utils.config import DuplicateDetectionConfig

TargetKind = Literal["entity", "candidate"]

_KIND_ORDER = {"entity": 0, "candidate": 1}


class MatchTarget(BaseModel):
    """Something a candidate can duplicate: a corpus entity or an earlier candidate."""

    model_config = ConfigDict(frozen=True)

    kind: TargetKind
    id: int
    entity_type: EntityType
    canonical_name: str
    alternative_names: List[str] = Field(default_factory=list)
    description: Optional[str] = None

    @classmethod
    def from_entity(cls, entity: CorpusEntity) -> MatchTarget:
        return cls(
            kind="entity",
            id=entity.id,
            entity_type=entity.entity_type,
            canonical_name=entity.canonical_name,
            alternative_names=list(entity.alternative_names),
            description=entity.description,
        )

    @classmethod
    def from_candidate(cls, candidate: ExtractedEntityCandidate) -> MatchTarget:
        return cls(
            kind="candidate",
            id=candidate.id,
            entity_type=candidate.entity_type,
            canonical_name=candidate.canonical_name,
            alternative_names=list(candidate.alternative_names),
            description=candidate.description,
        )

    def semantic_text(self) -> str:
        return " ".join(piece for piece in (self.canonical_name, self.description) if piece)


class DuplicateDetector:
    """Score candidates against existing entities and earlier candidates of the same job.

    Example:
        >>> detector = DuplicateDetector()
        >>> matches = detector.find_matches(candidate, corpus, in_flight=job_candidates)
        >>> [m.match_method for m in matches]
    """

    def __init__(
        self,
        config: DuplicateDetectionConfig | None = None,
        *,
        normalizer: StringNormalizer | None = None,
        fuzzy_matcher: FuzzyMatcher | None = None,
        semantic_matcher: SemanticMatcher | None = None,
    ) -> None:
        self.config = config or DuplicateDetectionConfig()
        self.normalizer = normalizer or StringNormalizer(rules_path=self.config.rules_file)
        self.fuzzy = fuzzy_matcher or FuzzyMatcher(self.config, self.normalizer)
        self.semantic = semantic_matcher

        if self.config.enable_semantic_matching and self.semantic is None:
            from saga_extraction.normalization.semantic_matcher import EmbeddingSemanticMatcher

            self.semantic = EmbeddingSemanticMatcher()

    # -----------------------
    # Public API
    # -----------------------
    def find_matches(
        self,
        candidate: ExtractedEntityCandidate,
        corpus: Sequence[CorpusEntity],
        in_flight: Sequence[ExtractedEntityCandidate] = (),
    ) -> List[DuplicateMatch]:
        """Return the candidate's matches, best first, at most one per target."""
        targets = [MatchTarget.from_entity(entity) for entity in corpus]
        targets.extend(
            MatchTarget.from_candidate(other)
            for other in in_flight
            if other.id != candidate.id and other.ordering_key < candidate.ordering_key
        )

        matches: List[DuplicateMatch] = []
        for target in targets:
            if not self.config.match_across_types and target.entity_type != candidate.entity_type:
                continue
            match = self._match_target(candidate, target)
            if match is not None:
                matches.append(match)

        matches.sort(
            key=lambda m: (
                -m.similarity_score,
                m.match_method.precedence,
                _KIND_ORDER["candidate" if m.is_intra_job else "entity"],
                m.existing_entity_id if m.existing_entity_id is not None else m.matched_candidate_id,
            )
        )
        return matches[: self.config.max_matches_per_candidate]

    def detect_job(
        self,
        candidates: Sequence[ExtractedEntityCandidate],
        corpus: Sequence[CorpusEntity],
    ) -> Dict[int, List[DuplicateMatch]]:
        """Run detection for every candidate of a finished job against one corpus snapshot."""
        ordered = sorted(candidates, key=lambda c: c.ordering_key)
        results: Dict[int, List[DuplicateMatch]] = {}
        for candidate in ordered:
            matches = self.find_matches(candidate, corpus, in_flight=ordered)
            if matches:
                results[candidate.id] = matches

        stats = self.statistics(results.values())
        logger.info(
            "Duplicate detection: {} of {} candidates matched ({} matches, {} high confidence)",
            len(results),
            len(ordered),
            stats["total_matches"],
            stats["high_confidence"],
        )
        return results

    def auto_flag_target(self, matches: Iterable[DuplicateMatch]) -> DuplicateMatch | None:
        """Best corpus match strong enough to mark the candidate a duplicate outright."""
        for match in matches:
            if match.is_intra_job:
                continue
            if match.is_high_confidence(
                self.config.auto_flag_similarity, self.config.auto_flag_confidence
            ):
                return match
        return None

    def statistics(self, match_lists: Iterable[Sequence[DuplicateMatch]]) -> Dict[str, int]:
        """Counts per method plus high-confidence and intra-job totals."""
        stats: Dict[str, int] = {method.value: 0 for method in MatchMethod}
        stats.update(total_matches=0, high_confidence=0, intra_job=0, candidates_with_matches=0)
        for matches in match_lists:
            if matches:
                stats["candidates_with_matches"] += 1
            for match in matches:
                stats["total_matches"] += 1
                stats[match.match_method.value] += 1
                if match.is_intra_job:
                    stats["intra_job"] += 1
                if match.is_high_confidence(
                    self.config.auto_flag_similarity, self.config.auto_flag_confidence
                ):
                    stats["high_confidence"] += 1
        return stats

    # -----------------------
    # Strategies
    # -----------------------
    def _match_target(
        self, candidate: ExtractedEntityCandidate, target: MatchTarget
    ) -> DuplicateMatch | None:
        candidate_key = self.normalizer.key(candidate.canonical_name)
        target_key = self.normalizer.key(target.canonical_name)
        if not candidate_key or not target_key:
            return None

        # Exact short-circuits the remaining strategies.
        if candidate_key == target_key:
            return self._build(candidate, target, MatchMethod.EXACT, self.config.exact_score)

        fuzzy_score = self.fuzzy.similarity(candidate_key, target_key)
        if fuzzy_score >= self.config.fuzzy_threshold:
            return self._build(candidate, target, MatchMethod.FUZZY, fuzzy_score)

        if self._aliases_overlap(candidate, target, candidate_key, target_key):
            return self._build(
                candidate,
                target,
                MatchMethod.ALIAS,
                self.config.alias_score,
                matched_field="alternative_names",
            )

        if self.semantic is not None:
            source_text = " ".join(
                piece for piece in (candidate.canonical_name, candidate.description) if piece
            )
            semantic_score = self.semantic.score(source_text, target.semantic_text())
            if semantic_score is not None and semantic_score >= self.config.semantic_threshold:
                return self._build(
                    candidate,
                    target,
                    MatchMethod.SEMANTIC,
                    semantic_score,
                    matched_field="description",
                )

        return None

    def _aliases_overlap(
        self,
        candidate: ExtractedEntityCandidate,
        target: MatchTarget,
        candidate_key: str,
        target_key: str,
    ) -> bool:
        candidate_aliases = self.normalizer.key_set(candidate.alternative_names)
        target_aliases = self.normalizer.key_set(target.alternative_names)
        if candidate_aliases & (target_aliases | {target_key}):
            return True
        return candidate_key in target_aliases

    def _build(
        self,
        candidate: ExtractedEntityCandidate,
        target: MatchTarget,
        method: MatchMethod,
        score: float,
        *,
        matched_field: str = "canonical_name",
    ) -> DuplicateMatch:
        similarity = round(max(0.0, min(100.0, score)), 2)
        confidence = round(max(0.0, min(100.0, similarity + method.confidence_boost)), 2)
        return DuplicateMatch(
            candidate_id=candidate.id,
            existing_entity_id=target.id if target.kind == "entity" else None,
            matched_candidate_id=target.id if target.kind == "candidate" else None,
            matched_name=target.canonical_name,
            similarity_score=similarity,
            match_method=method,
            matched_field=matched_field,
            confidence=confidence,
        )

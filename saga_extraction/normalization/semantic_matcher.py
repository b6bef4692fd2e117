"""Pluggable meaning-level similarity for the lowest-precedence duplicate strategy."""

from __future__ import annotations

from typing import Callable, Protocol

import numpy as np
from loguru import logger

from saga_extraction.utils.embeddings import EntityEmbedder, cosine_similarity


class SemanticMatcher(Protocol):
    """Score two entity descriptions on a 0-100 scale, or None when unavailable."""

    def score(self, source_text: str, target_text: str) -> float | None: ...


class EmbeddingSemanticMatcher:
    """Cosine similarity of descriptor embeddings, scaled to 0-100.

    Any deterministic ``embed`` callable may be injected; by default a FastEmbed
    ``EntityEmbedder`` is created on first use.
    """

    def __init__(
        self,
        embedder: EntityEmbedder | None = None,
        *,
        embed: Callable[[str], np.ndarray] | None = None,
    ) -> None:
        self._embedder = embedder
        self._embed = embed

    def score(self, source_text: str, target_text: str) -> float | None:
        if not source_text.strip() or not target_text.strip():
            return None
        embed = self._resolve_embed()
        similarity = cosine_similarity(embed(source_text), embed(target_text))
        return round(max(0.0, similarity) * 100, 2)

    def _resolve_embed(self) -> Callable[[str], np.ndarray]:
        if self._embed is None:
            if self._embedder is None:
                logger.info("Creating entity embedder for semantic duplicate matching")
                self._embedder = EntityEmbedder()
            self._embed = self._embedder.embed
        return self._embed

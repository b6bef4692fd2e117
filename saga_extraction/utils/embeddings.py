"""FastEmbed vectors for entity descriptors, used by the semantic duplicate strategy.

FastEmbed ships as the optional ``semantic`` extra and is imported only when an
``EntityEmbedder`` is built without an injected model.
"""

import threading
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
from loguru import logger

from saga_extraction.utils.config import DatabaseConfig


class EntityEmbedder:
    """Embed short entity descriptors (name plus description) with a bounded cache.

    Duplicate detection compares every candidate against every corpus entity of the
    same collection, so the same descriptor is embedded many times per job.

    Example:
        >>> embedder = EntityEmbedder(config)
        >>> vector = embedder.embed("Daenerys Targaryen Mother of Dragons")
    """

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        *,
        model: Any = None,
        cache_size: int = 4096,
    ) -> None:
        self.config = config or DatabaseConfig()
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self._lock = threading.Lock()

        if model is None:
            from fastembed import TextEmbedding

            logger.info(f"Loading embedding model: {self.config.embedding_model}")
            model = TextEmbedding(model_name=self.config.embedding_model)
            logger.success(
                f"Loaded {self.config.embedding_model} ({self.config.embedding_dimension}d)"
            )
        self.model = model

    def embed(self, text: str) -> np.ndarray:
        return self.embed_many([text])[0]

    def embed_many(self, texts: Iterable[str]) -> List[np.ndarray]:
        """Vectors in input order; blank descriptors map to the zero vector."""
        keys = [_descriptor_key(text) for text in texts]
        # The cache is shared by detection threads; hold the lock through the model call.
        with self._lock:
            missing = [key for key in dict.fromkeys(keys) if key and key not in self._cache]

            fresh: Dict[str, np.ndarray] = {}
            if missing:
                self.misses += len(missing)
                vectors = self.model.embed(missing, batch_size=self.config.embedding_batch_size)
                for key, vector in zip(missing, vectors):
                    fresh[key] = np.asarray(vector, dtype=np.float32)
                    self._remember(key, fresh[key])

            results: List[np.ndarray] = []
            for key in keys:
                if not key:
                    results.append(np.zeros(self.config.embedding_dimension, dtype=np.float32))
                elif key in fresh:
                    results.append(fresh[key])
                else:
                    self.hits += 1
                    self._cache.move_to_end(key)
                    results.append(self._cache[key])
        return results

    def _remember(self, key: str, vector: np.ndarray) -> None:
        self._cache[key] = vector
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)


def _descriptor_key(text: str) -> str:
    return " ".join(text.split()).casefold()


def cosine_similarity(left: np.ndarray, right: np.ndarray) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector is all zeros."""
    left_norm = float(np.linalg.norm(left))
    right_norm = float(np.linalg.norm(right))
    if left_norm == 0.0 or right_norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / (left_norm * right_norm))

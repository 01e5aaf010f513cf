"""
Similarity Providers
====================
Pluggable text-similarity backends used by the semantic loop check.

Every provider returns a score in [0, 1]. ``JaccardSimilarity`` is the
deterministic word-overlap fallback that is always available;
``EmbeddingSimilarity`` wraps any embedding function and degrades to the
fallback whenever the embedder errors, times out or returns unusable vectors.
"""

from __future__ import annotations

import abc
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], Sequence[float]]

DEFAULT_EMBEDDING_DIM = 384


class SimilarityProvider(abc.ABC):
    """Scores how alike two texts are, in the closed interval [0, 1]."""

    @abc.abstractmethod
    def similarity(self, text1: str, text2: str) -> float:
        ...

    def close(self) -> None:
        """Release any resources held by the provider."""


class JaccardSimilarity(SimilarityProvider):
    """Word-set overlap. Never raises, for any pair of strings."""

    def similarity(self, text1: str, text2: str) -> float:
        words1 = set(str(text1 or "").lower().split())
        words2 = set(str(text2 or "").lower().split())
        if not words1 or not words2:
            return 0.0
        return len(words1 & words2) / len(words1 | words2)


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 when undefined."""
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)
    if a.shape != b.shape or a.size == 0:
        return 0.0
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))


class HashingEmbedder:
    """
    Deterministic bag-of-words embedding.

    Each lower-cased word is hashed into one of ``dim`` buckets and weighted
    by ``1 / (position + 1)``; the vector is L2-normalised. Stable across
    processes because it uses a content hash rather than ``hash()``.
    """

    def __init__(self, dim: int = DEFAULT_EMBEDDING_DIM) -> None:
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = dim

    def __call__(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=float)
        for i, word in enumerate(str(text or "").lower().split()):
            digest = hashlib.md5(word.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dim
            vector[bucket] += 1.0 / (i + 1)
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector


class EmbeddingSimilarity(SimilarityProvider):
    """
    Cosine similarity over embeddings, with a bounded wait and a fallback.

    Parameters
    ----------
    embed_fn : callable
        Maps a text to a vector. May raise; may be slow.
    timeout : float, optional
        Seconds to wait for both embeddings. ``None`` waits indefinitely.
    fallback : SimilarityProvider, optional
        Used whenever the embedding path cannot produce a score.
    """

    def __init__(
        self,
        embed_fn: Optional[EmbedFn] = None,
        timeout: Optional[float] = 2.0,
        fallback: Optional[SimilarityProvider] = None,
    ) -> None:
        self._embed_fn: EmbedFn = embed_fn or HashingEmbedder()
        self.timeout = timeout
        self._fallback = fallback or JaccardSimilarity()
        self._executor = ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="swarm-guard-embed"
        )
        self.degraded_calls = 0

    def similarity(self, text1: str, text2: str) -> float:
        try:
            future = self._executor.submit(self._embed_pair, text1, text2)
            vec1, vec2 = future.result(timeout=self.timeout)
            a = np.asarray(vec1, dtype=float)
            b = np.asarray(vec2, dtype=float)
        except FutureTimeoutError:
            future.cancel()
            return self._degrade("embedding timed out after %ss" % self.timeout, text1, text2)
        except (TypeError, ValueError) as exc:
            return self._degrade("unusable embedding vectors: %s" % exc, text1, text2)
        except Exception as exc:  # provider errors never reach the caller
            return self._degrade("embedding failed: %s" % exc, text1, text2)

        if a.ndim != 1 or a.shape != b.shape or not np.any(a) or not np.any(b):
            return self._degrade("unusable embedding vectors", text1, text2)
        return max(0.0, cosine_similarity(a, b))

    def close(self) -> None:
        """Stop the embedding worker; later calls use the fallback."""
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "EmbeddingSimilarity":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _embed_pair(self, text1: str, text2: str):
        return self._embed_fn(text1), self._embed_fn(text2)

    def _degrade(self, reason: str, text1: str, text2: str) -> float:
        self.degraded_calls += 1
        logger.info("Similarity provider degraded to fallback (%s)", reason)
        return self._fallback.similarity(text1, text2)

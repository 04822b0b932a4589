"""
Similarity Math

Pure scoring functions shared by the managed-index and fallback paths.

Scores use the same scale the managed index reports:

- cosine:      a.b / (|a| |b|), in [-1, 1]
- euclidean:   1 / (1 + |a - b|), in (0, 1]
- dotProduct:  (1 + a.b) / 2

Zero-norm policy
----------------
Cosine similarity is undefined when either vector has zero norm. Such pairs
score ZERO_NORM_SIMILARITY (0.0) instead of propagating NaN.
"""

from __future__ import annotations

from typing import Callable, Sequence

import numpy as np

from ..core.errors import DimensionMismatch
from .models import SimilarityMetric

ZERO_NORM_SIMILARITY = 0.0

Vector = Sequence[float]


def _as_arrays(a: Vector, b: Vector):
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(va.shape[0], vb.shape[0])
    return va, vb


def cosine_similarity(a: Vector, b: Vector) -> float:
    """
    Cosine similarity between two equal-length vectors.

    Raises
    ------
    DimensionMismatch
        If the vectors differ in length.
    """
    va, vb = _as_arrays(a, b)
    norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if norm == 0.0:
        return ZERO_NORM_SIMILARITY
    return float(np.dot(va, vb) / norm)


def euclidean_similarity(a: Vector, b: Vector) -> float:
    va, vb = _as_arrays(a, b)
    return float(1.0 / (1.0 + np.linalg.norm(va - vb)))


def dot_product_similarity(a: Vector, b: Vector) -> float:
    va, vb = _as_arrays(a, b)
    return float((1.0 + np.dot(va, vb)) / 2.0)


_SIMILARITY_FUNCTIONS = {
    SimilarityMetric.COSINE: cosine_similarity,
    SimilarityMetric.EUCLIDEAN: euclidean_similarity,
    SimilarityMetric.DOT_PRODUCT: dot_product_similarity,
}


def similarity_for(metric: SimilarityMetric) -> Callable[[Vector, Vector], float]:
    return _SIMILARITY_FUNCTIONS[SimilarityMetric(metric)]


# ---------------------------------------------------------------------
# Text / Hybrid Scoring
# ---------------------------------------------------------------------

def text_score(query: str, title: str, content: str) -> float:
    """
    Bounded keyword relevance in [0, 1].

    Half a point each when the lower-cased query occurs in the title and in
    the content. An empty query never matches.
    """
    needle = query.strip().lower()
    if not needle:
        return 0.0
    hits = int(needle in (title or "").lower()) + int(needle in (content or "").lower())
    return hits / 2.0


def hybrid_score(
    vector_score: float,
    text_relevance: float,
    vector_weight: float,
    text_weight: float,
) -> float:
    return vector_score * vector_weight + max(text_relevance, 0.0) * text_weight

"""
Cosine-similarity ranking over in-memory embedding matrices.
"""

from typing import List, NamedTuple, Optional, Sequence

import numpy as np

EPSILON = 1e-12


class ScoredChunk(NamedTuple):
    """A retrieval hit: chunk id, cosine score and row index in the pack."""

    id: str
    score: float
    index: int


class QaMatch(NamedTuple):
    """Best curated Q&A entry for a query: index into ``pack.qa`` and score."""

    index: int
    score: float


def _as_matrix(vectors) -> np.ndarray:
    matrix = np.asarray(vectors, dtype=np.float64)
    if matrix.ndim == 1:
        # an empty list, or a single vector passed without nesting
        matrix = matrix.reshape(0, 0) if matrix.size == 0 else matrix.reshape(1, -1)
    return matrix


def cosine_scores(query: Sequence[float], vectors) -> np.ndarray:
    """
    Cosine similarity of ``query`` against every row of ``vectors``.

    The epsilon in the denominator keeps all-zero vectors at a score of 0
    instead of dividing by zero.
    """
    matrix = _as_matrix(vectors)
    if matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)
    dots = matrix @ q
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    return dots / (norms + EPSILON)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors, in [-1, 1]."""
    return float(cosine_scores(a, [b])[0])


def top_k(query: Sequence[float], ids: Sequence[str], vectors, k: int) -> List[ScoredChunk]:
    """
    Rank ``ids`` by cosine similarity of their ``vectors`` to ``query``.

    Only the overlapping prefix of ``ids`` and ``vectors`` is ranked, so a
    partially written embeddings file still yields results. Ties keep corpus
    order.

    Args:
        query: The query embedding
        ids: Chunk id per row
        vectors: Embedding per row (list of lists or a 2-D array)
        k: Maximum number of results

    Returns:
        Up to ``k`` hits, highest score first
    """
    n = min(len(ids), len(vectors))
    if n == 0 or k <= 0:
        return []
    scores = cosine_scores(query, vectors[:n])
    order = np.argsort(-scores, kind="stable")[:k]
    return [ScoredChunk(ids[i], float(scores[i]), int(i)) for i in order]


def best_match(query: Sequence[float], vectors) -> Optional[QaMatch]:
    """Return the highest-scoring row (first one on ties), or None when there are no rows."""
    if vectors is None or len(vectors) == 0:
        return None
    scores = cosine_scores(query, vectors)
    best = int(np.argmax(scores))
    return QaMatch(best, float(scores[best]))

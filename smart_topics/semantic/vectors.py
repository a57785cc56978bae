"""
Vector helpers shared by clustering and topic matching.

All similarity in this package is cosine similarity; vectors are normalized
once up front so a dot product is the similarity.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np


def normalize(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    """Return a unit-length copy; zero or non-finite norms are returned unchanged."""
    arr = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(arr))
    if not np.isfinite(norm) or norm <= 0:
        return arr.copy()
    return arr / norm


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Normalize each row of a 2-D array."""
    arr = np.asarray(matrix, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[0] == 0:
        return arr.copy()
    norms = np.linalg.norm(arr, axis=1, keepdims=True)
    safe = np.where((norms > 0) & np.isfinite(norms), norms, 1.0)
    return arr / safe


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """
    Calculate cosine similarity between two vectors.

    Returns 0.0 when either vector has zero norm. Vectors of different length
    are compared over their common prefix.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    n = min(va.size, vb.size)
    if n == 0:
        return 0.0
    va, vb = va[:n], vb[:n]
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def similarity_matrix(vectors: np.ndarray) -> np.ndarray:
    """Pairwise cosine similarity of row vectors."""
    unit = normalize_rows(vectors)
    return unit @ unit.T


def centroid(vectors: Sequence[np.ndarray] | np.ndarray) -> np.ndarray | None:
    """
    Re-normalized mean of the normalized input vectors.

    Returns None for an empty input or zero-dimensional vectors.
    """
    rows = [np.asarray(v, dtype=np.float64) for v in vectors]
    rows = [v for v in rows if v.size > 0]
    if not rows:
        return None
    dim = rows[0].size
    rows = [v for v in rows if v.size == dim]
    stacked = normalize_rows(np.vstack(rows))
    return normalize(stacked.mean(axis=0))

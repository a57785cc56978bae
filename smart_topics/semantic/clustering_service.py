"""
Topic Clustering Service - Group note embeddings into candidate topics.

Primary algorithm is DBSCAN over cosine distance with an automatically
estimated eps, so the number of topics follows the data. When DBSCAN labels
every note as noise (typical for small or evenly spread corpora), spherical
k-means under cosine similarity is used instead.

State machine:
    NONE -> DBSCAN_ATTEMPTED -> CLUSTERED
    NONE -> DBSCAN_ATTEMPTED (all noise) -> KMEANS_FALLBACK -> CLUSTERED
    NONE -> KMEANS -> CLUSTERED              (explicit algorithm="kmeans")

References:
- DBSCAN: https://scikit-learn.org/stable/modules/clustering.html#dbscan
- Spherical k-means: Dhillon & Modha, "Concept decompositions for large sparse text data"
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

import numpy as np
from loguru import logger
from sklearn.cluster import DBSCAN
from sklearn.neighbors import NearestNeighbors

from smart_topics.core.errors import ErrorKind, TopicEngineError
from smart_topics.semantic.vectors import centroid, normalize_rows, similarity_matrix

DEFAULT_EPS = 0.18
DEFAULT_MIN_SAMPLES = 3
MAX_MIN_SAMPLES = 12
MAX_K = 12
KMEANS_MAX_ITER = 24

Algorithm = Literal["dbscan", "kmeans"]


class ClusteringState(str, Enum):
    """Stages a clustering run passes through."""

    NONE = "none"
    DBSCAN_ATTEMPTED = "dbscan_attempted"
    KMEANS_FALLBACK = "kmeans_fallback"
    KMEANS = "kmeans"
    CLUSTERED = "clustered"


@dataclass
class ClusterMember:
    """A document assigned to a cluster, with its similarity to the cluster centroid."""

    document_id: str
    score: float


@dataclass
class ClusterResult:
    """One non-empty cluster."""

    label: int
    members: list[ClusterMember]
    centroid: np.ndarray

    @property
    def document_ids(self) -> list[str]:
        return [m.document_id for m in self.members]

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def scores(self) -> dict[str, float]:
        return {m.document_id: m.score for m in self.members}


@dataclass
class ClusteringResult:
    """Partition of the input documents plus the parameters actually used."""

    clusters: list[ClusterResult]
    noise_ids: list[str]
    state: ClusteringState
    params: dict[str, Any]
    transitions: list[ClusteringState] = field(default_factory=list)

    @property
    def algorithm(self) -> str:
        return str(self.params.get("algorithm", ""))

    @property
    def assigned_count(self) -> int:
        return sum(c.size for c in self.clusters)


def choose_heuristic_k(n: int) -> int:
    """
    Pick a cluster count for k-means.

    Grows slowly with corpus size: 1 for six or fewer notes, otherwise
    round(sqrt(n / 2)) clamped to [2, 10].
    """
    if n <= 0:
        return 0
    if n <= 6:
        return 1
    k = int(round(math.sqrt(n / 2)))
    return max(2, min(10, k))


def estimate_eps(
    vectors: np.ndarray,
    sample_limit: int = 200,
    percentile: float = 0.25,
    margin: float = 1.15,
    min_eps: float = 0.06,
    max_eps: float = 0.35,
    random_state: int | None = None,
) -> float:
    """
    Rough eps estimate from the nearest-neighbour distance distribution.

    Up to ``sample_limit`` points are sampled; for each, the cosine distance to
    its nearest other point in the sample is taken. The low percentile of those
    distances, widened by ``margin``, is clamped to [min_eps, max_eps]. The
    percentile and margin are empirical tunables.
    """
    data = normalize_rows(np.asarray(vectors, dtype=np.float64))
    n = data.shape[0] if data.ndim == 2 else 0
    if n < 3:
        return DEFAULT_EPS

    limit = min(sample_limit, n) if sample_limit and sample_limit > 0 else min(200, n)
    if limit < n:
        rng = np.random.default_rng(random_state)
        idx = np.sort(rng.choice(n, size=limit, replace=False))
        sample = data[idx]
    else:
        sample = data

    nn = NearestNeighbors(n_neighbors=2, metric="cosine").fit(sample)
    distances, _ = nn.kneighbors(sample)
    nearest = distances[:, 1]
    nearest = np.sort(nearest[np.isfinite(nearest)])
    if nearest.size == 0:
        return DEFAULT_EPS

    pos = int(math.floor((nearest.size - 1) * percentile))
    base = float(max(0.0, nearest[pos]))
    return float(min(max_eps, max(min_eps, base * margin)))


def cosine_distance_matrix(vectors: np.ndarray) -> np.ndarray:
    """Pairwise cosine distances, clipped to [0, 2] with an exact zero diagonal."""
    dist = np.clip(1.0 - similarity_matrix(vectors), 0.0, 2.0)
    np.fill_diagonal(dist, 0.0)
    return dist


def dbscan_cosine(vectors: np.ndarray, eps: float, min_samples: int) -> np.ndarray:
    """
    DBSCAN labels under cosine distance.

    ``min_samples`` counts the point itself. Returns -1 for noise, otherwise
    cluster ids 0..k-1.
    """
    if len(vectors) == 0:
        return np.zeros(0, dtype=int)
    dist = cosine_distance_matrix(vectors)
    model = DBSCAN(eps=eps, min_samples=max(1, min_samples), metric="precomputed")
    return model.fit_predict(dist)


def kmeans_cosine(
    vectors: np.ndarray,
    k: int,
    max_iter: int = KMEANS_MAX_ITER,
    random_state: int | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Spherical k-means.

    Assigns each point to the centroid with the highest cosine similarity,
    recomputes centroids as re-normalized means, and re-seeds empty centroids
    with a random point. Stops at a fixed point or after ``max_iter`` rounds.

    Returns:
        Tuple of (assignments, centroids).
    """
    data = normalize_rows(np.asarray(vectors, dtype=np.float64))
    n = data.shape[0] if data.ndim == 2 else 0
    if n == 0:
        return np.zeros(0, dtype=int), np.zeros((0, 0))
    if k <= 1 or n == 1:
        return np.zeros(n, dtype=int), np.vstack([centroid(data)])

    kk = min(k, n)
    rng = np.random.default_rng(random_state)
    centroids = data[rng.choice(n, size=kk, replace=False)].copy()
    assignments = np.zeros(n, dtype=int)

    for iteration in range(max_iter):
        sims = data @ centroids.T
        new_assignments = np.argmax(sims, axis=1)
        changed = int(np.sum(new_assignments != assignments))
        assignments = new_assignments

        for c in range(kk):
            mask = assignments == c
            if not np.any(mask):
                centroids[c] = data[int(rng.integers(n))]
                continue
            centroids[c] = centroid(data[mask])

        if changed == 0:
            logger.debug(f"k-means converged after {iteration + 1} iterations")
            break

    return assignments, centroids


class ClusteringService:
    """
    Cluster note embeddings with DBSCAN and a k-means fallback.

    Example:
        >>> service = ClusteringService(random_state=42)
        >>> result = service.cluster(ids, vectors)
        >>> print(result.params)  # {'algorithm': 'dbscan', 'eps': 0.12, 'min_samples': 3}
    """

    def __init__(
        self,
        random_state: int | None = 42,
        eps_sample_limit: int = 200,
        eps_percentile: float = 0.25,
        eps_margin: float = 1.15,
    ):
        self.random_state = random_state
        self.eps_sample_limit = eps_sample_limit
        self.eps_percentile = eps_percentile
        self.eps_margin = eps_margin

    def _usable(
        self, document_ids: list[str], vectors: list[np.ndarray]
    ) -> tuple[list[str], np.ndarray]:
        ids: list[str] = []
        rows: list[np.ndarray] = []
        dim: int | None = None
        for doc_id, vector in zip(document_ids, vectors):
            arr = np.asarray(vector, dtype=np.float64)
            if arr.size == 0 or not np.all(np.isfinite(arr)) or not np.any(arr):
                continue
            if dim is None:
                dim = arr.size
            if arr.size != dim:
                logger.warning(f"Skipping note {doc_id}: embedding dimension {arr.size} != {dim}")
                continue
            ids.append(doc_id)
            rows.append(arr)
        if not rows:
            return ids, np.zeros((0, 0))
        return ids, normalize_rows(np.vstack(rows))

    def cluster(
        self,
        document_ids: list[str],
        vectors: list[np.ndarray],
        algorithm: Algorithm = "dbscan",
        eps: float | None = None,
        min_samples: int | None = None,
        k: int | None = None,
    ) -> ClusteringResult:
        """
        Partition documents into clusters.

        Args:
            document_ids: Ids aligned with ``vectors``.
            vectors: One embedding per document; empty vectors are excluded.
            algorithm: "dbscan" (with k-means fallback) or "kmeans".
            eps: Explicit DBSCAN radius; estimated when omitted.
            min_samples: DBSCAN neighbourhood size (default 3, capped at 12).
            k: Explicit k-means cluster count (capped at 12).

        Raises:
            TopicEngineError: INSUFFICIENT_DATA when fewer than two usable vectors remain.
        """
        ids, data = self._usable(document_ids, vectors)
        if len(ids) < 2:
            raise TopicEngineError(
                ErrorKind.INSUFFICIENT_DATA,
                "Not enough embeddings to cluster",
                hint="At least two notes with embeddings are needed to build topics.",
                details={"usable": len(ids)},
            )

        transitions = [ClusteringState.NONE]
        labels: np.ndarray | None = None
        params: dict[str, Any] = {}

        if algorithm != "kmeans":
            used_eps = float(eps) if eps is not None and eps > 0 else estimate_eps(
                data,
                sample_limit=self.eps_sample_limit,
                percentile=self.eps_percentile,
                margin=self.eps_margin,
                random_state=self.random_state,
            )
            used_min_samples = (
                min(int(min_samples), MAX_MIN_SAMPLES)
                if min_samples is not None and min_samples > 0
                else DEFAULT_MIN_SAMPLES
            )
            transitions.append(ClusteringState.DBSCAN_ATTEMPTED)
            labels = dbscan_cosine(data, used_eps, used_min_samples)
            params = {"algorithm": "dbscan", "eps": used_eps, "min_samples": used_min_samples}
            noise = int(np.sum(labels < 0))
            logger.info(
                f"DBSCAN eps={used_eps:.3f} min_samples={used_min_samples}: "
                f"{len(set(labels[labels >= 0].tolist()))} clusters, {noise}/{len(ids)} noise"
            )
            if not np.any(labels >= 0):
                transitions.append(ClusteringState.KMEANS_FALLBACK)
                params = {
                    "fallback_from": "dbscan",
                    "eps": used_eps,
                    "min_samples": used_min_samples,
                }
                labels = None
        else:
            transitions.append(ClusteringState.KMEANS)

        if labels is None:
            used_k = min(int(k), MAX_K) if k is not None and k > 0 else choose_heuristic_k(len(ids))
            used_k = max(1, min(used_k, len(ids)))
            labels, _ = kmeans_cosine(data, used_k, random_state=self.random_state)
            params = {"algorithm": "kmeans", "k": used_k, **params}
            logger.info(f"k-means k={used_k} over {len(ids)} notes")

        clusters = self._build_clusters(ids, data, labels)
        noise_ids = [doc_id for doc_id, label in zip(ids, labels) if label < 0]
        transitions.append(ClusteringState.CLUSTERED)

        return ClusteringResult(
            clusters=clusters,
            noise_ids=noise_ids,
            state=ClusteringState.CLUSTERED,
            params=params,
            transitions=transitions,
        )

    def _build_clusters(
        self, ids: list[str], data: np.ndarray, labels: np.ndarray
    ) -> list[ClusterResult]:
        groups: dict[int, list[int]] = {}
        for i, label in enumerate(labels.tolist()):
            if label < 0:
                continue
            groups.setdefault(int(label), []).append(i)

        ordered = sorted(groups.values(), key=lambda idxs: (-len(idxs), idxs[0]))
        clusters = []
        for position, idxs in enumerate(ordered):
            center = centroid(data[idxs])
            members = [
                ClusterMember(document_id=ids[i], score=float(np.dot(data[i], center)))
                for i in idxs
            ]
            clusters.append(ClusterResult(label=position, members=members, centroid=center))
        return clusters

"""
Topic matching - decide which new clusters continue existing topics.

A cluster inherits an existing topic (id, title, pin state, history) when
their centroids are similar enough. Pairs are assigned greedily in
descending similarity, so each cluster and each topic is used at most once.
This is not a globally optimal bipartite matching, which is acceptable for the
few dozen topics a user has.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from loguru import logger

from smart_topics.core.records import MembershipRecord, TopicRecord
from smart_topics.semantic.clustering_service import ClusterResult
from smart_topics.semantic.vectors import centroid, cosine_similarity, normalize

DEFAULT_MATCH_THRESHOLD = 0.85


def clamp_threshold(value: float | None) -> float:
    """Clamp a similarity threshold to [0, 1]; None means the default."""
    if value is None or not np.isfinite(value):
        return DEFAULT_MATCH_THRESHOLD
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class CandidatePair:
    """A (cluster, topic) pair above the threshold."""

    cluster_label: int
    topic_id: str
    similarity: float
    pinned: bool
    cluster_size: int

    def sort_key(self) -> tuple:
        return (-self.similarity, not self.pinned, -self.cluster_size, self.cluster_label, self.topic_id)


@dataclass
class TopicMatch:
    topic_id: str
    similarity: float


@dataclass
class MatchResult:
    """Outcome of matching one run's clusters against stored topics."""

    threshold: float
    matches: dict[int, TopicMatch] = field(default_factory=dict)
    unmatched_clusters: list[int] = field(default_factory=list)
    unmatched_topics: list[str] = field(default_factory=list)
    matchable_topics: int = 0
    candidates: int = 0

    def topic_for(self, cluster_label: int) -> TopicMatch | None:
        return self.matches.get(cluster_label)

    def stats(self) -> dict[str, Any]:
        return {
            "threshold": self.threshold,
            "matchable_topics": self.matchable_topics,
            "candidates": self.candidates,
            "matched": len(self.matches),
        }


def topic_centroids(
    topics: list[TopicRecord],
    memberships: list[MembershipRecord],
    vectors: Mapping[str, np.ndarray],
) -> dict[str, np.ndarray]:
    """
    Centroid of each non-archived topic's current, non-excluded members.

    Only members with a vector in this run count; topics without any such
    member get no centroid and cannot be matched.
    """
    by_topic: dict[str, list[np.ndarray]] = {}
    for member in memberships:
        if member.is_excluded:
            continue
        vector = vectors.get(member.document_id)
        if vector is None or np.asarray(vector).size == 0:
            continue
        by_topic.setdefault(member.topic_id, []).append(normalize(vector))

    centroids: dict[str, np.ndarray] = {}
    for topic in topics:
        if topic.archived:
            continue
        center = centroid(by_topic.get(topic.id, []))
        if center is not None:
            centroids[topic.id] = center
    return centroids


def cluster_centroids(
    clusters: list[ClusterResult], vectors: Mapping[str, np.ndarray]
) -> dict[int, np.ndarray]:
    """Centroid of each cluster, computed the same way as topic centroids."""
    centroids: dict[int, np.ndarray] = {}
    for cluster in clusters:
        rows = [normalize(vectors[d]) for d in cluster.document_ids if d in vectors]
        center = centroid(rows)
        if center is not None:
            centroids[cluster.label] = center
    return centroids


def match_clusters_to_topics(
    clusters: list[ClusterResult],
    topics: list[TopicRecord],
    memberships: list[MembershipRecord],
    vectors: Mapping[str, np.ndarray],
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> MatchResult:
    """
    Greedy 1:1 matching of clusters to existing topics.

    Candidates at or above ``threshold`` are ordered by similarity, then
    pinned topics first, then larger clusters; remaining ties break on cluster
    label and topic id so identical inputs always yield identical matches.
    """
    threshold = clamp_threshold(threshold)
    matchable = [t for t in topics if not t.archived]
    topic_by_id = {t.id: t for t in matchable}

    topic_centers = topic_centroids(matchable, memberships, vectors)
    cluster_centers = cluster_centroids(clusters, vectors)

    candidates: list[CandidatePair] = []
    for cluster in clusters:
        cc = cluster_centers.get(cluster.label)
        if cc is None:
            continue
        for topic_id, tc in topic_centers.items():
            sim = cosine_similarity(cc, tc)
            if np.isfinite(sim) and sim >= threshold:
                candidates.append(
                    CandidatePair(
                        cluster_label=cluster.label,
                        topic_id=topic_id,
                        similarity=sim,
                        pinned=bool(topic_by_id[topic_id].pinned),
                        cluster_size=cluster.size,
                    )
                )
    candidates.sort(key=CandidatePair.sort_key)

    result = MatchResult(threshold=threshold, matchable_topics=len(matchable), candidates=len(candidates))
    used_topics: set[str] = set()
    for pair in candidates:
        if pair.cluster_label in result.matches or pair.topic_id in used_topics:
            continue
        result.matches[pair.cluster_label] = TopicMatch(pair.topic_id, pair.similarity)
        used_topics.add(pair.topic_id)

    result.unmatched_clusters = [c.label for c in clusters if c.label not in result.matches]
    result.unmatched_topics = [t.id for t in matchable if t.id not in used_topics]

    logger.info(
        f"Topic matching: {len(clusters)} clusters, {len(matchable)} matchable topics, "
        f"{len(result.matches)} matched (threshold={threshold:.2f})"
    )
    return result

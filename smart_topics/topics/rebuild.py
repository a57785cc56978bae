"""
Topic Rebuild Orchestrator - one full rebuild of a user's topics.

Pipeline:
    notes -> embeddings (cached, batched) -> clustering -> matching against
    stored topics -> naming -> topic/member upserts -> event timelines

Each topic's row and auto members are committed together; a persistence
failure stops the run at that topic while earlier topics stay committed.
Rerunning with unchanged notes and model reproduces the same topic ids,
memberships and events.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal
from uuid import uuid4

import numpy as np
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from smart_topics.core.errors import TopicEngineError
from smart_topics.core.records import (
    Document,
    MembershipRecord,
    TopicRecord,
    ensure_utc,
    utcnow,
)
from smart_topics.semantic.batch_embedding import BatchEmbeddingProcessor
from smart_topics.semantic.clustering_service import (
    MAX_K,
    MAX_MIN_SAMPLES,
    ClusteringService,
    ClusterResult,
)
from smart_topics.semantic.embedding_service import EmbeddingProvider, default_batch_size
from smart_topics.topics.events import (
    build_topic_events,
    draft_member_events,
    drafts_from_memberships,
    events_from_memberships,
)
from smart_topics.topics.matcher import DEFAULT_MATCH_THRESHOLD, MatchResult, match_clusters_to_topics
from smart_topics.topics.naming import NamingOutcome, NamingProvider, name_topic_safely

MAX_RECENT_DAYS = 365


def _positive_capped(value: Any, cap: int) -> int | None:
    """Non-positive or missing values mean "not set"; others are floored and capped."""
    if value is None or value == "":
        return None
    number = float(value)
    if not np.isfinite(number) or number <= 0:
        return None
    return max(1, min(cap, int(number)))


class RebuildOptions(BaseModel):
    """Per-run overrides. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    recent_days: int | None = Field(
        default=None, validation_alias=AliasChoices("recent_days", "recentDays")
    )
    k: int | None = None
    algorithm: Literal["dbscan", "kmeans"] = "dbscan"
    eps: float | None = None
    min_samples: int | None = Field(
        default=None, validation_alias=AliasChoices("min_samples", "minSamples")
    )
    mark_ingested_since: datetime | None = Field(
        default=None, validation_alias=AliasChoices("mark_ingested_since", "markIngestedSince")
    )

    @field_validator("recent_days", mode="before")
    @classmethod
    def _cap_recent_days(cls, v: Any) -> int | None:
        return _positive_capped(v, MAX_RECENT_DAYS)

    @field_validator("k", mode="before")
    @classmethod
    def _cap_k(cls, v: Any) -> int | None:
        return _positive_capped(v, MAX_K)

    @field_validator("min_samples", mode="before")
    @classmethod
    def _cap_min_samples(cls, v: Any) -> int | None:
        return _positive_capped(v, MAX_MIN_SAMPLES)

    @field_validator("eps", mode="before")
    @classmethod
    def _positive_eps(cls, v: Any) -> float | None:
        if v is None or v == "":
            return None
        eps = float(v)
        return eps if np.isfinite(eps) and eps > 0 else None

    @field_validator("mark_ingested_since")
    @classmethod
    def _utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


@dataclass
class RebuildResult:
    """Outcome of one rebuild."""

    topics: list[dict[str, Any]] = field(default_factory=list)
    built_at: datetime = field(default_factory=utcnow)
    clustering: dict[str, Any] = field(default_factory=dict)
    matching: dict[str, Any] = field(default_factory=dict)
    embeddings: dict[str, Any] = field(default_factory=dict)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    message: str | None = None

    @property
    def created(self) -> int:
        return int(self.matching.get("created", 0))

    @property
    def updated(self) -> int:
        return int(self.matching.get("updated", 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "topics": self.topics,
            "built_at": self.built_at.isoformat(),
            "clustering": self.clustering,
            "matching": self.matching,
            "embeddings": self.embeddings,
            "warnings": self.warnings,
            "message": self.message,
        }


class TopicRebuilder:
    """
    Rebuild one owner's topics from their notes.

    All tunables are passed in explicitly; use ``from_settings`` at entry
    points.

    Example:
        >>> rebuilder = TopicRebuilder(store, LocalHashEmbeddingProvider())
        >>> result = await rebuilder.rebuild_topics("user-1", RebuildOptions(algorithm="kmeans", k=3))
        >>> print(result.matching)
    """

    def __init__(
        self,
        store: Any,
        embedding_provider: EmbeddingProvider,
        naming_provider: NamingProvider | None = None,
        *,
        batch_size: int = 64,
        max_chars: int = 8000,
        match_threshold: float = DEFAULT_MATCH_THRESHOLD,
        max_notes: int = 400,
        max_existing: int = 50,
        naming_concurrency: int = 4,
        naming_sample_size: int = 8,
        random_state: int | None = 42,
        embedding_base_url: str | None = None,
    ):
        self.store = store
        self.embedding_provider = embedding_provider
        self.naming_provider = naming_provider
        self.match_threshold = match_threshold
        self.max_notes = max_notes
        self.max_existing = max_existing
        self.naming_concurrency = max(1, naming_concurrency)
        self.naming_sample_size = max(1, naming_sample_size)
        self.embedding_base_url = embedding_base_url
        self.embedder = BatchEmbeddingProcessor(
            embedding_provider, store, batch_size=batch_size, max_chars=max_chars
        )
        self.clustering = ClusteringService(random_state=random_state)

    @classmethod
    def from_settings(
        cls,
        store: Any,
        settings: Any = None,
        embedding_provider: EmbeddingProvider | None = None,
        naming_provider: NamingProvider | None = None,
    ) -> TopicRebuilder:
        """Build a rebuilder with providers and tunables taken from settings."""
        from smart_topics.semantic.embedding_service import build_embedding_provider
        from smart_topics.topics.naming import build_naming_provider

        if settings is None:
            from config import get_settings

            settings = get_settings()

        embedding_provider = embedding_provider or build_embedding_provider(settings)
        if naming_provider is None:
            naming_provider = build_naming_provider(settings)
        return cls(
            store,
            embedding_provider,
            naming_provider,
            batch_size=default_batch_size(
                settings.embedding_base_url, settings.embedding_model, settings.embedding_batch_size
            ),
            max_chars=settings.embedding_max_chars,
            match_threshold=settings.topic_match_threshold,
            max_notes=settings.topic_max_notes,
            max_existing=settings.topic_max_existing,
            naming_concurrency=settings.naming_concurrency,
            naming_sample_size=settings.naming_sample_size,
            random_state=settings.clustering_random_state,
            embedding_base_url=settings.embedding_base_url,
        )

    async def close(self) -> None:
        """Release provider HTTP clients."""
        for provider in (self.embedding_provider, self.naming_provider):
            close = getattr(provider, "close", None)
            if close is not None:
                await close()

    # ========================================
    # Main entry point
    # ========================================

    async def rebuild_topics(self, owner_id: str, options: RebuildOptions | None = None) -> RebuildResult:
        """
        Rebuild topics for one owner.

        Raises:
            TopicEngineError: CONFIGURATION, PAYLOAD_TOO_LARGE or PROVIDER from
                embedding; INSUFFICIENT_DATA from clustering; PERSISTENCE from
                the store.
        """
        options = options or RebuildOptions()
        now = utcnow()
        result = RebuildResult(built_at=now)

        # 1. Documents
        since = now - timedelta(days=options.recent_days) if options.recent_days else None
        documents = await self.store.list_recent_documents(owner_id, since=since, limit=self.max_notes)
        if not documents:
            logger.info(f"No notes for owner {owner_id}; nothing to rebuild")
            result.message = "No notes to build topics from"
            return result
        doc_by_id = {d.id: d for d in documents}

        # 2. Embeddings
        run = await self.embedder.ensure_embeddings(owner_id, documents)
        result.embeddings = run.stats.to_dict()

        # 3. Clustering
        usable_ids = run.usable_ids([d.id for d in documents])
        clustering = self.clustering.cluster(
            usable_ids,
            [run.vectors[i] for i in usable_ids],
            algorithm=options.algorithm,
            eps=options.eps,
            min_samples=options.min_samples,
            k=options.k,
        )
        result.clustering = {
            **clustering.params,
            "clusters": len(clustering.clusters),
            "noise": len(clustering.noise_ids),
            "assigned": clustering.assigned_count,
        }

        # 4-5. Existing topics and matching; archived topics never match, so
        # they must not take slots of the existing-topic limit.
        existing = await self.store.list_topics(owner_id, limit=self.max_existing, include_archived=False)
        existing_by_id = {t.id: t for t in existing}
        memberships = await self.store.list_memberships(owner_id, [t.id for t in existing])
        match = match_clusters_to_topics(
            clustering.clusters, existing, memberships, run.vectors, threshold=self.match_threshold
        )

        # 6. Naming
        outcomes = await self._name_clusters(clustering.clusters, doc_by_id)

        # 7-9. Persist per cluster
        created = updated = 0
        for position, cluster in enumerate(clustering.clusters):
            topic_match = match.topic_for(cluster.label)
            current = existing_by_id.get(topic_match.topic_id) if topic_match else None
            outcome = outcomes[position]
            if not outcome.ok:
                result.warnings.append(
                    {"stage": "naming", "cluster": cluster.label, **outcome.error.to_dict()}
                )

            topic = self._topic_record(
                owner_id,
                cluster,
                current,
                outcome,
                doc_by_id,
                options,
                now,
                params=clustering.params,
                similarity=topic_match.similarity if topic_match else None,
            )
            saved = await self._persist_cluster(topic, cluster, doc_by_id, memberships, result, create=current is None)
            result.topics.append(saved.summary())
            if current is None:
                created += 1
            else:
                updated += 1

        # 10. Existing topics that no cluster continued
        cleared = 0
        for topic_id in match.unmatched_topics:
            await self._clear_topic(owner_id, topic_id, result)
            cleared += 1

        result.matching = {
            **match.stats(),
            "clusters": len(clustering.clusters),
            "created": created,
            "updated": updated,
            "cleared": cleared,
        }
        logger.info(
            f"Rebuilt topics for owner {owner_id}: {created} created, {updated} updated, "
            f"{cleared} cleared, {len(result.warnings)} warnings"
        )
        return result

    # ========================================
    # Stages
    # ========================================

    def _representatives(self, cluster: ClusterResult, doc_by_id: dict[str, Document]) -> list[Document]:
        docs = [doc_by_id[d] for d in cluster.document_ids if d in doc_by_id]
        docs.sort(key=lambda d: d.activity_at, reverse=True)
        return docs[: self.naming_sample_size]

    async def _name_clusters(
        self, clusters: list[ClusterResult], doc_by_id: dict[str, Document]
    ) -> list[NamingOutcome]:
        semaphore = asyncio.Semaphore(self.naming_concurrency)

        async def name(position: int, cluster: ClusterResult) -> NamingOutcome:
            async with semaphore:
                return await name_topic_safely(
                    self.naming_provider, self._representatives(cluster, doc_by_id), position
                )

        return list(await asyncio.gather(*(name(i, c) for i, c in enumerate(clusters))))

    def _topic_record(
        self,
        owner_id: str,
        cluster: ClusterResult,
        current: TopicRecord | None,
        outcome: NamingOutcome,
        doc_by_id: dict[str, Document],
        options: RebuildOptions,
        now: datetime,
        params: dict[str, Any],
        similarity: float | None,
    ) -> TopicRecord:
        config = {
            **params,
            "embedding_model": self.embedding_provider.model_name,
            "embedding_base_url": self.embedding_base_url,
            "naming_model": getattr(self.naming_provider, "model_name", None),
            "built_at": now.isoformat(),
            "match_threshold": self.match_threshold,
            "match_similarity": similarity,
        }
        naming = outcome.naming
        if current is None:
            return TopicRecord(
                id=str(uuid4()),
                owner_id=owner_id,
                title=naming.title,
                keywords=list(naming.keywords),
                summary_markdown=naming.report_markdown,
                last_ingested_at=now,
                config=config,
            )

        # A matched topic keeps its previous naming when no real name was produced.
        keep_naming = (self.naming_provider is None or not outcome.ok) and bool(current.title)
        since = options.mark_ingested_since
        fresh = since is None or any(
            doc_by_id[d].activity_at >= since for d in cluster.document_ids if d in doc_by_id
        )
        return dataclasses.replace(
            current,
            title=current.title if keep_naming else naming.title,
            keywords=list(current.keywords) if keep_naming else list(naming.keywords),
            summary_markdown=current.summary_markdown if keep_naming else naming.report_markdown,
            last_ingested_at=now if fresh else current.last_ingested_at,
            config=config,
        )

    async def _persist_cluster(
        self,
        topic: TopicRecord,
        cluster: ClusterResult,
        doc_by_id: dict[str, Document],
        memberships: list[MembershipRecord],
        result: RebuildResult,
        create: bool,
    ) -> TopicRecord:
        manual = [m for m in memberships if m.topic_id == topic.id and m.is_manual]
        excluded = {m.document_id for m in manual if m.is_excluded}
        docs = [doc_by_id[d] for d in cluster.document_ids if d in doc_by_id and d not in excluded]
        drafts = draft_member_events(topic.id, docs, cluster.scores)
        members = [
            MembershipRecord(
                topic_id=topic.id,
                document_id=d.document_id,
                score=d.score,
                event_time=d.event_time,
                event_fingerprint=d.fingerprint,
                evidence_rank=d.evidence_rank,
            )
            for d in drafts
        ]

        try:
            saved = await self.store.save_topic_with_members(topic, members, create=create)
        except TopicEngineError as e:
            logger.error(f"Failed to save topic {topic.id} ({topic.title}): {e.message}")
            e.details.setdefault("topic_id", topic.id)
            e.details.setdefault("topic_title", topic.title)
            raise

        # Manual rows keep their stored event time and fingerprint; together
        # with the auto drafts they form the topic's timeline.
        kept = [m for m in manual if not m.is_excluded]
        kept_ids = {m.document_id for m in kept}
        try:
            titles = {d: doc_by_id[d].title for d in kept_ids if d in doc_by_id}
            missing = sorted(kept_ids - set(titles))
            if missing:
                found = await self.store.get_documents(topic.owner_id, missing)
                titles.update({doc_id: doc.title for doc_id, doc in found.items()})
            event_drafts = [d for d in drafts if d.document_id not in kept_ids]
            event_drafts += drafts_from_memberships(topic.id, kept, titles)
            await self.store.replace_events(topic.owner_id, topic.id, build_topic_events(topic.id, event_drafts))
        except TopicEngineError as e:
            logger.warning(f"Event rebuild failed for topic {topic.id}: {e.message}")
            result.warnings.append({"stage": "events", "topic_id": topic.id, **e.to_dict()})
        return saved

    async def _clear_topic(self, owner_id: str, topic_id: str, result: RebuildResult) -> None:
        remaining = await self.store.clear_auto_members(owner_id, topic_id)
        try:
            docs = await self.store.get_documents(owner_id, [m.document_id for m in remaining])
            titles = {doc_id: doc.title for doc_id, doc in docs.items()}
            events = events_from_memberships(topic_id, remaining, titles)
            await self.store.replace_events(owner_id, topic_id, events)
        except TopicEngineError as e:
            logger.warning(f"Event rebuild failed for cleared topic {topic_id}: {e.message}")
            result.warnings.append({"stage": "events", "topic_id": topic_id, **e.to_dict()})
        logger.debug(f"Cleared auto members of unmatched topic {topic_id} ({len(remaining)} manual remain)")


async def rebuild_topics(
    owner_id: str,
    options: RebuildOptions | None = None,
    store: Any = None,
    settings: Any = None,
) -> RebuildResult:
    """Rebuild one owner's topics with providers and store built from settings."""
    if store is None:
        from smart_topics.db.database import get_async_session_factory
        from smart_topics.db.store import SqlAlchemyTopicStore

        store = SqlAlchemyTopicStore(get_async_session_factory())
    rebuilder = TopicRebuilder.from_settings(store, settings)
    try:
        return await rebuilder.rebuild_topics(owner_id, options)
    finally:
        await rebuilder.close()

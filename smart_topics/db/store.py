"""
Topic store - persistence boundary of the topic engine.

``TopicStore`` is the protocol the pipeline depends on; ``SqlAlchemyTopicStore``
implements it over the async session factory. Every call opens its own
session, so concurrent rebuilds for different owners share nothing.
Database failures surface as TopicEngineError(PERSISTENCE).
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Protocol

from loguru import logger
from sqlalchemy import delete, desc, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from smart_topics.core.errors import ErrorKind, TopicEngineError
from smart_topics.core.records import (
    MEMBER_SOURCE_AUTO,
    MEMBER_SOURCE_MANUAL,
    MANUAL_STATE_EXCLUDED,
    Document,
    EmbeddingRecord,
    MembershipRecord,
    TopicEventRecord,
    TopicRecord,
    ensure_utc,
    utcnow,
)
from smart_topics.db.models import (
    KnowledgeNoteEmbedding,
    KnowledgeTopic,
    KnowledgeTopicEvent,
    KnowledgeTopicMember,
    Note,
)

_EVENT_NAMESPACE = uuid.UUID("6f1c2b0e-5d0a-4f7e-9a43-2c1f8e6b7d15")


def event_id(topic_id: str, fingerprint: str) -> str:
    """Deterministic event id, so reruns reproduce the same rows."""
    return str(uuid.uuid5(_EVENT_NAMESPACE, f"{topic_id}:{fingerprint}"))


class TopicStore(Protocol):
    """Reads documents and reads/writes embeddings, topics, members and events."""

    async def list_recent_documents(
        self, owner_id: str, since: datetime | None = None, limit: int = 400
    ) -> list[Document]: ...

    async def get_documents(self, owner_id: str, document_ids: list[str]) -> dict[str, Document]: ...

    async def get_embeddings(self, owner_id: str, document_ids: list[str]) -> dict[str, EmbeddingRecord]: ...

    async def upsert_embeddings(self, owner_id: str, records: list[EmbeddingRecord]) -> None: ...

    async def list_topics(
        self, owner_id: str, limit: int = 50, include_archived: bool = True
    ) -> list[TopicRecord]: ...

    async def get_topic(self, owner_id: str, topic_id: str) -> TopicRecord | None: ...

    async def list_memberships(self, owner_id: str, topic_ids: list[str]) -> list[MembershipRecord]: ...

    async def save_topic_with_members(
        self, topic: TopicRecord, members: list[MembershipRecord], create: bool
    ) -> TopicRecord: ...

    async def clear_auto_members(self, owner_id: str, topic_id: str) -> list[MembershipRecord]: ...

    async def replace_events(self, owner_id: str, topic_id: str, events: list[TopicEventRecord]) -> None: ...

    async def list_events(self, owner_id: str, topic_id: str) -> list[TopicEventRecord]: ...

    async def list_active_owners(self, since: datetime, limit: int) -> list[str]: ...

    async def archive_stale_topics(self, owner_id: str, before: datetime, now: datetime | None = None) -> int: ...

    async def set_pinned(self, owner_id: str, topic_id: str, pinned: bool) -> TopicRecord: ...

    async def set_archived(self, owner_id: str, topic_id: str, archived: bool) -> TopicRecord: ...

    async def update_topic_naming(
        self,
        owner_id: str,
        topic_id: str,
        title: str | None = None,
        keywords: list[str] | None = None,
        summary_markdown: str | None = None,
    ) -> TopicRecord: ...

    async def get_member(self, owner_id: str, topic_id: str, document_id: str) -> MembershipRecord | None: ...

    async def upsert_member(
        self, owner_id: str, member: MembershipRecord, touch_ingested: bool = False
    ) -> MembershipRecord: ...

    async def delete_member(self, owner_id: str, topic_id: str, document_id: str) -> bool: ...

    async def merge_topics(
        self, owner_id: str, target_id: str, source_id: str, members: list[MembershipRecord]
    ) -> tuple[TopicRecord, int]: ...


# ========================================
# Row conversion
# ========================================


def _document(row: Note) -> Document:
    return Document(
        id=row.id,
        owner_id=row.user_id,
        title=row.title,
        excerpt=row.excerpt,
        content_text=row.content_text,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        published_at=ensure_utc(row.published_at),
    )


def _topic(row: KnowledgeTopic) -> TopicRecord:
    return TopicRecord(
        id=row.id,
        owner_id=row.user_id,
        title=row.title,
        keywords=list(row.keywords or []),
        summary_markdown=row.summary_markdown,
        member_count=row.member_count or 0,
        pinned=bool(row.pinned),
        pinned_at=ensure_utc(row.pinned_at),
        archived=bool(row.archived),
        archived_at=ensure_utc(row.archived_at),
        last_ingested_at=ensure_utc(row.last_ingested_at),
        config=dict(row.config or {}),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _membership(row: KnowledgeTopicMember) -> MembershipRecord:
    return MembershipRecord(
        topic_id=row.topic_id,
        document_id=row.note_id,
        score=row.score or 0.0,
        source=row.source or MEMBER_SOURCE_AUTO,
        manual_state=row.manual_state,
        event_time=ensure_utc(row.event_time),
        event_fingerprint=row.event_fingerprint,
        evidence_rank=row.evidence_rank,
    )


def _event(row: KnowledgeTopicEvent) -> TopicEventRecord:
    source = row.source or {}
    return TopicEventRecord(
        topic_id=row.topic_id,
        fingerprint=row.fingerprint,
        event_time=ensure_utc(row.event_time),
        title=row.title,
        importance=row.importance or 0.0,
        document_ids=list(source.get("note_ids") or []),
    )


def _not_found(topic_id: str) -> TopicEngineError:
    return TopicEngineError(
        ErrorKind.NOT_FOUND,
        "Topic not found",
        details={"topic_id": topic_id},
    )


class SqlAlchemyTopicStore:
    """TopicStore over SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self, action: str, **details: Any) -> AsyncGenerator[AsyncSession, None]:
        """Transactional scope; database errors become PERSISTENCE errors."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Store operation '{action}' failed: {e}")
                raise TopicEngineError(
                    ErrorKind.PERSISTENCE,
                    f"Database operation failed: {action}",
                    hint="Check the database connection and that the schema is initialised (smart-topics db init).",
                    details={**details, "raw": str(e)[:500]},
                ) from e
            except Exception:  # Intentionally broad - rollback on any error before re-raising
                await session.rollback()
                raise

    # ========================================
    # Documents
    # ========================================

    async def list_recent_documents(
        self, owner_id: str, since: datetime | None = None, limit: int = 400
    ) -> list[Document]:
        """Owner's notes, most recently updated first."""
        stmt = select(Note).where(Note.user_id == owner_id)
        if since is not None:
            stmt = stmt.where(Note.updated_at >= since)
        stmt = stmt.order_by(desc(Note.updated_at), Note.id).limit(limit)
        async with self._session("list documents", owner_id=owner_id) as session:
            rows = (await session.scalars(stmt)).all()
        return [_document(row) for row in rows]

    async def get_documents(self, owner_id: str, document_ids: list[str]) -> dict[str, Document]:
        if not document_ids:
            return {}
        stmt = select(Note).where(Note.user_id == owner_id, Note.id.in_(document_ids))
        async with self._session("get documents", owner_id=owner_id) as session:
            rows = (await session.scalars(stmt)).all()
        return {row.id: _document(row) for row in rows}

    # ========================================
    # Embeddings
    # ========================================

    async def get_embeddings(self, owner_id: str, document_ids: list[str]) -> dict[str, EmbeddingRecord]:
        if not document_ids:
            return {}
        stmt = select(KnowledgeNoteEmbedding).where(
            KnowledgeNoteEmbedding.user_id == owner_id,
            KnowledgeNoteEmbedding.note_id.in_(document_ids),
        )
        async with self._session("get embeddings", owner_id=owner_id) as session:
            rows = (await session.scalars(stmt)).all()
        return {
            row.note_id: EmbeddingRecord(
                document_id=row.note_id,
                model=row.model,
                content_hash=row.content_hash,
                vector=EmbeddingRecord.vector_from_bytes(row.embedding),
            )
            for row in rows
        }

    async def upsert_embeddings(self, owner_id: str, records: list[EmbeddingRecord]) -> None:
        """Insert or replace the single active embedding of each note."""
        if not records:
            return
        ids = [r.document_id for r in records]
        async with self._session("upsert embeddings", owner_id=owner_id, count=len(records)) as session:
            existing = {
                row.note_id: row
                for row in (
                    await session.scalars(
                        select(KnowledgeNoteEmbedding).where(KnowledgeNoteEmbedding.note_id.in_(ids))
                    )
                ).all()
            }
            now = utcnow()
            for record in records:
                row = existing.get(record.document_id)
                if row is None:
                    row = KnowledgeNoteEmbedding(note_id=record.document_id)
                    session.add(row)
                row.user_id = owner_id
                row.model = record.model
                row.content_hash = record.content_hash
                row.embedding = record.to_bytes()
                row.updated_at = now

    # ========================================
    # Topics & memberships
    # ========================================

    async def list_topics(
        self, owner_id: str, limit: int = 50, include_archived: bool = True
    ) -> list[TopicRecord]:
        """Owner's topics: pinned first, then most recently pinned, then most recently updated."""
        stmt = select(KnowledgeTopic).where(KnowledgeTopic.user_id == owner_id)
        if not include_archived:
            stmt = stmt.where(KnowledgeTopic.archived.is_(False))
        stmt = stmt.order_by(
            desc(KnowledgeTopic.pinned),
            KnowledgeTopic.pinned_at.desc().nulls_last(),
            desc(KnowledgeTopic.updated_at),
            KnowledgeTopic.id,
        ).limit(limit)
        async with self._session("list topics", owner_id=owner_id) as session:
            rows = (await session.scalars(stmt)).all()
        return [_topic(row) for row in rows]

    async def get_topic(self, owner_id: str, topic_id: str) -> TopicRecord | None:
        async with self._session("get topic", topic_id=topic_id) as session:
            row = await session.get(KnowledgeTopic, topic_id)
        if row is None or row.user_id != owner_id:
            return None
        return _topic(row)

    async def list_memberships(self, owner_id: str, topic_ids: list[str]) -> list[MembershipRecord]:
        if not topic_ids:
            return []
        stmt = (
            select(KnowledgeTopicMember)
            .where(
                KnowledgeTopicMember.user_id == owner_id,
                KnowledgeTopicMember.topic_id.in_(topic_ids),
            )
            .order_by(KnowledgeTopicMember.topic_id, KnowledgeTopicMember.note_id)
        )
        async with self._session("list memberships", owner_id=owner_id) as session:
            rows = (await session.scalars(stmt)).all()
        return [_membership(row) for row in rows]

    async def _count_members(self, session: AsyncSession, topic_id: str) -> int:
        stmt = select(func.count()).where(
            KnowledgeTopicMember.topic_id == topic_id,
            or_(
                KnowledgeTopicMember.manual_state.is_(None),
                KnowledgeTopicMember.manual_state != MANUAL_STATE_EXCLUDED,
            ),
        )
        return int((await session.execute(stmt)).scalar_one())

    async def save_topic_with_members(
        self, topic: TopicRecord, members: list[MembershipRecord], create: bool
    ) -> TopicRecord:
        """
        Write a topic and its new auto members in one transaction.

        Existing auto rows of the topic are replaced. Documents that already
        have a manual row in the topic (confirmed or excluded) keep it and get
        no auto row. ``member_count`` is recomputed from the stored rows.
        Pin and archive state are left alone on update.

        Raises:
            TopicEngineError: PERSISTENCE (naming the topic) or NOT_FOUND.
        """
        now = utcnow()
        async with self._session("save topic", topic_id=topic.id, title=topic.title) as session:
            if create:
                row = KnowledgeTopic(
                    id=topic.id,
                    user_id=topic.owner_id,
                    pinned=False,
                    archived=False,
                    created_at=now,
                )
                session.add(row)
            else:
                row = await session.get(KnowledgeTopic, topic.id)
                if row is None or row.user_id != topic.owner_id:
                    raise _not_found(topic.id)

            row.title = topic.title
            row.keywords = list(topic.keywords)
            row.summary_markdown = topic.summary_markdown
            row.config = dict(topic.config)
            row.last_ingested_at = topic.last_ingested_at
            row.updated_at = now
            await session.flush()

            await session.execute(
                delete(KnowledgeTopicMember).where(
                    KnowledgeTopicMember.topic_id == topic.id,
                    KnowledgeTopicMember.source == MEMBER_SOURCE_AUTO,
                )
            )
            manual_ids = set(
                (
                    await session.scalars(
                        select(KnowledgeTopicMember.note_id).where(
                            KnowledgeTopicMember.topic_id == topic.id,
                            KnowledgeTopicMember.source == MEMBER_SOURCE_MANUAL,
                        )
                    )
                ).all()
            )
            for member in members:
                if member.document_id in manual_ids:
                    continue
                session.add(
                    KnowledgeTopicMember(
                        topic_id=topic.id,
                        note_id=member.document_id,
                        user_id=topic.owner_id,
                        score=member.score,
                        source=MEMBER_SOURCE_AUTO,
                        manual_state=None,
                        event_time=member.event_time,
                        event_fingerprint=member.event_fingerprint,
                        evidence_rank=member.evidence_rank,
                    )
                )
            await session.flush()

            row.member_count = await self._count_members(session, topic.id)
            await session.flush()
            saved = _topic(row)

        logger.debug(f"Saved topic {saved.id} ({saved.member_count} members, create={create})")
        return saved

    async def clear_auto_members(self, owner_id: str, topic_id: str) -> list[MembershipRecord]:
        """Drop a topic's auto members; returns the manual members that remain."""
        async with self._session("clear auto members", topic_id=topic_id) as session:
            row = await self._owned_topic(session, owner_id, topic_id)
            await session.execute(
                delete(KnowledgeTopicMember).where(
                    KnowledgeTopicMember.topic_id == topic_id,
                    KnowledgeTopicMember.source == MEMBER_SOURCE_AUTO,
                )
            )
            row.member_count = await self._count_members(session, topic_id)
            row.updated_at = utcnow()
            remaining = (
                await session.scalars(
                    select(KnowledgeTopicMember)
                    .where(KnowledgeTopicMember.topic_id == topic_id)
                    .order_by(KnowledgeTopicMember.note_id)
                )
            ).all()
            return [_membership(m) for m in remaining]

    # ========================================
    # Events
    # ========================================

    async def replace_events(self, owner_id: str, topic_id: str, events: list[TopicEventRecord]) -> None:
        async with self._session("replace events", topic_id=topic_id) as session:
            await session.execute(delete(KnowledgeTopicEvent).where(KnowledgeTopicEvent.topic_id == topic_id))
            for event in events:
                session.add(
                    KnowledgeTopicEvent(
                        id=event_id(topic_id, event.fingerprint),
                        user_id=owner_id,
                        topic_id=topic_id,
                        fingerprint=event.fingerprint,
                        event_time=event.event_time,
                        title=event.title,
                        importance=event.importance,
                        source={"note_ids": list(event.document_ids), "count": event.count},
                    )
                )

    async def list_events(self, owner_id: str, topic_id: str) -> list[TopicEventRecord]:
        stmt = (
            select(KnowledgeTopicEvent)
            .where(KnowledgeTopicEvent.user_id == owner_id, KnowledgeTopicEvent.topic_id == topic_id)
            .order_by(KnowledgeTopicEvent.event_time, KnowledgeTopicEvent.fingerprint)
        )
        async with self._session("list events", topic_id=topic_id) as session:
            rows = (await session.scalars(stmt)).all()
        return [_event(row) for row in rows]

    # ========================================
    # Scheduling & lifecycle
    # ========================================

    async def list_active_owners(self, since: datetime, limit: int) -> list[str]:
        """Distinct owners with notes updated since ``since``, most recent activity first."""
        latest = func.max(Note.updated_at).label("latest")
        stmt = (
            select(Note.user_id, latest)
            .where(Note.updated_at >= since)
            .group_by(Note.user_id)
            .order_by(desc(latest), Note.user_id)
            .limit(limit)
        )
        async with self._session("list active owners") as session:
            rows = (await session.execute(stmt)).all()
        return [row.user_id for row in rows]

    async def archive_stale_topics(self, owner_id: str, before: datetime, now: datetime | None = None) -> int:
        """Archive non-pinned topics without ingestion since ``before``."""
        now = now or utcnow()
        stmt = (
            update(KnowledgeTopic)
            .where(
                KnowledgeTopic.user_id == owner_id,
                KnowledgeTopic.pinned.is_(False),
                KnowledgeTopic.archived.is_(False),
                or_(
                    KnowledgeTopic.last_ingested_at.is_(None),
                    KnowledgeTopic.last_ingested_at < before,
                ),
            )
            .values(archived=True, archived_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session("archive stale topics", owner_id=owner_id) as session:
            result = await session.execute(stmt)
        return int(result.rowcount or 0)

    # ========================================
    # User actions
    # ========================================

    async def _owned_topic(self, session: AsyncSession, owner_id: str, topic_id: str) -> KnowledgeTopic:
        row = await session.get(KnowledgeTopic, topic_id)
        if row is None or row.user_id != owner_id:
            raise _not_found(topic_id)
        return row

    async def _set_flag(self, owner_id: str, topic_id: str, flag: str, value: bool) -> TopicRecord:
        async with self._session(f"set {flag}", topic_id=topic_id) as session:
            row = await self._owned_topic(session, owner_id, topic_id)
            now = utcnow()
            setattr(row, flag, value)
            setattr(row, f"{flag}_at", now if value else None)
            row.updated_at = now
            await session.flush()
            return _topic(row)

    async def set_pinned(self, owner_id: str, topic_id: str, pinned: bool) -> TopicRecord:
        return await self._set_flag(owner_id, topic_id, "pinned", pinned)

    async def set_archived(self, owner_id: str, topic_id: str, archived: bool) -> TopicRecord:
        return await self._set_flag(owner_id, topic_id, "archived", archived)

    async def update_topic_naming(
        self,
        owner_id: str,
        topic_id: str,
        title: str | None = None,
        keywords: list[str] | None = None,
        summary_markdown: str | None = None,
    ) -> TopicRecord:
        """Overwrite the given naming fields; None leaves a field unchanged."""
        async with self._session("update topic naming", topic_id=topic_id) as session:
            row = await self._owned_topic(session, owner_id, topic_id)
            if title is not None:
                row.title = title
            if keywords is not None:
                row.keywords = list(keywords)
            if summary_markdown is not None:
                row.summary_markdown = summary_markdown
            row.updated_at = utcnow()
            await session.flush()
            return _topic(row)

    # ========================================
    # Member curation
    # ========================================

    async def get_member(self, owner_id: str, topic_id: str, document_id: str) -> MembershipRecord | None:
        async with self._session("get member", topic_id=topic_id, note_id=document_id) as session:
            row = await session.get(KnowledgeTopicMember, (topic_id, document_id))
        if row is None or row.user_id != owner_id:
            return None
        return _membership(row)

    async def upsert_member(
        self, owner_id: str, member: MembershipRecord, touch_ingested: bool = False
    ) -> MembershipRecord:
        """
        Insert or replace one member row and refresh the topic's ``member_count``.

        Raises:
            TopicEngineError: NOT_FOUND when the topic is not the owner's.
        """
        async with self._session("upsert member", topic_id=member.topic_id, note_id=member.document_id) as session:
            topic = await self._owned_topic(session, owner_id, member.topic_id)
            row = await session.get(KnowledgeTopicMember, (member.topic_id, member.document_id))
            if row is None:
                row = KnowledgeTopicMember(topic_id=member.topic_id, note_id=member.document_id, user_id=owner_id)
                session.add(row)
            _fill_member(row, member)
            await session.flush()

            now = utcnow()
            topic.member_count = await self._count_members(session, topic.id)
            topic.updated_at = now
            if touch_ingested:
                topic.last_ingested_at = now
            await session.flush()
            return _membership(row)

    async def delete_member(self, owner_id: str, topic_id: str, document_id: str) -> bool:
        """Delete one member row of any source; returns False when there was none."""
        async with self._session("delete member", topic_id=topic_id, note_id=document_id) as session:
            topic = await self._owned_topic(session, owner_id, topic_id)
            result = await session.execute(
                delete(KnowledgeTopicMember).where(
                    KnowledgeTopicMember.topic_id == topic_id,
                    KnowledgeTopicMember.note_id == document_id,
                )
            )
            topic.member_count = await self._count_members(session, topic_id)
            topic.updated_at = utcnow()
        return bool(result.rowcount)

    async def merge_topics(
        self, owner_id: str, target_id: str, source_id: str, members: list[MembershipRecord]
    ) -> tuple[TopicRecord, int]:
        """
        Move ``members`` into the target topic and delete the source topic.

        A manual row already in the target wins over an incoming row for the
        same document; other target rows are replaced. The source topic's
        members, events and row are deleted in the same transaction.

        Returns:
            Tuple of (updated target topic, number of rows moved).
        """
        async with self._session("merge topics", target_id=target_id, source_id=source_id) as session:
            target = await self._owned_topic(session, owner_id, target_id)
            await self._owned_topic(session, owner_id, source_id)

            existing = {
                row.note_id: row
                for row in (
                    await session.scalars(
                        select(KnowledgeTopicMember).where(KnowledgeTopicMember.topic_id == target_id)
                    )
                ).all()
            }
            moved = 0
            for member in members:
                row = existing.get(member.document_id)
                if row is not None and row.source == MEMBER_SOURCE_MANUAL:
                    continue
                if row is None:
                    row = KnowledgeTopicMember(topic_id=target_id, note_id=member.document_id, user_id=owner_id)
                    session.add(row)
                    existing[member.document_id] = row
                _fill_member(row, member)
                moved += 1

            for model in (KnowledgeTopicMember, KnowledgeTopicEvent):
                await session.execute(delete(model).where(model.topic_id == source_id))
            await session.execute(delete(KnowledgeTopic).where(KnowledgeTopic.id == source_id))
            await session.flush()

            now = utcnow()
            target.member_count = await self._count_members(session, target_id)
            target.last_ingested_at = now
            target.updated_at = now
            await session.flush()
            saved = _topic(target)

        logger.info(f"Merged topic {source_id} into {target_id} ({moved} members moved)")
        return saved, moved


def _fill_member(row: KnowledgeTopicMember, member: MembershipRecord) -> None:
    row.score = member.score
    row.source = member.source
    row.manual_state = member.manual_state
    row.event_time = member.event_time
    row.event_fingerprint = member.event_fingerprint
    row.evidence_rank = member.evidence_rank

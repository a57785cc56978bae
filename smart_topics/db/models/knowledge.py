"""
Knowledge topic tables.

``notes`` is owned by the surrounding application and only read here. The
``knowledge_*`` tables are written by topic rebuilds; embeddings are stored as
BYTEA/BLOB (serialized float32 numpy arrays).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from smart_topics.core.records import utcnow

from .base import Base


def _uuid() -> str:
    return str(uuid4())


# ========================================
# SOURCE DOCUMENTS
# ========================================


class Note(Base):
    """A saved note (read-only for the topic engine)."""

    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    title: Mapped[str | None] = mapped_column(Text)
    excerpt: Mapped[str | None] = mapped_column(Text)
    content_text: Mapped[str | None] = mapped_column(Text)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, index=True
    )


# ========================================
# TOPIC ENGINE
# ========================================


class KnowledgeNoteEmbedding(Base):
    """One active embedding per note, keyed by note id."""

    __tablename__ = "knowledge_note_embeddings"

    note_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    embedding: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class KnowledgeTopic(Base):
    """A user-facing topic whose identity survives rebuilds."""

    __tablename__ = "knowledge_topics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    title: Mapped[str | None] = mapped_column(Text)
    keywords: Mapped[list[str]] = mapped_column(JSON, default=list)
    summary_markdown: Mapped[str | None] = mapped_column(Text)
    member_count: Mapped[int] = mapped_column(Integer, default=0)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    pinned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pinned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_ingested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Relationships
    members: Mapped[list[KnowledgeTopicMember]] = relationship(
        back_populates="topic", cascade="all, delete-orphan"
    )
    events: Mapped[list[KnowledgeTopicEvent]] = relationship(
        back_populates="topic", cascade="all, delete-orphan"
    )


class KnowledgeTopicMember(Base):
    """Membership of a note in a topic (auto from clustering, or manual)."""

    __tablename__ = "knowledge_topic_members"

    topic_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_topics.id", ondelete="CASCADE"), primary_key=True
    )
    note_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    source: Mapped[str] = mapped_column(String(16), default="auto", nullable=False)
    manual_state: Mapped[str | None] = mapped_column(String(16))  # confirmed / excluded
    event_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    event_fingerprint: Mapped[str | None] = mapped_column(String(64))
    evidence_rank: Mapped[int | None] = mapped_column(Integer)

    # Relationships
    topic: Mapped[KnowledgeTopic] = relationship(back_populates="members")


class KnowledgeTopicEvent(Base):
    """A deduplicated timeline event; rebuilt per topic on every run."""

    __tablename__ = "knowledge_topic_events"
    __table_args__ = (
        UniqueConstraint("topic_id", "fingerprint", name="uq_topic_event_fingerprint"),
        Index("ix_topic_events_topic_time", "topic_id", "event_time"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    topic_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_topics.id", ondelete="CASCADE"), nullable=False
    )
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    title: Mapped[str | None] = mapped_column(Text)
    importance: Mapped[float] = mapped_column(Float, default=0.0)
    source: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)  # {"note_ids": [...], "count": n}
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Relationships
    topic: Mapped[KnowledgeTopic] = relationship(back_populates="events")

"""
Plain records passed between the pipeline stages.

The algorithmic modules work on these dataclasses only; the SQLAlchemy store
converts to and from its ORM rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import numpy as np

MEMBER_SOURCE_AUTO = "auto"
MEMBER_SOURCE_MANUAL = "manual"
MANUAL_STATE_CONFIRMED = "confirmed"
MANUAL_STATE_EXCLUDED = "excluded"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value is not None else None


def present_values(*values: str | None) -> list[str]:
    """Return the non-blank values, stripped, in priority order."""
    return [v.strip() for v in values if isinstance(v, str) and v.strip()]


def first_present(*values: str | None) -> str | None:
    """Return the first non-blank value, stripped, or None."""
    found = present_values(*values)
    return found[0] if found else None


@dataclass
class Document:
    """A saved note as read from the document store."""

    id: str
    owner_id: str
    title: str | None
    excerpt: str | None
    content_text: str | None
    created_at: datetime
    updated_at: datetime
    published_at: datetime | str | None = None

    @property
    def activity_at(self) -> datetime:
        """Timestamp used for recency ordering and ingestion windows."""
        return ensure_utc(self.updated_at or self.created_at)


@dataclass
class EmbeddingRecord:
    """Stored embedding for one document under one model and content hash."""

    document_id: str
    model: str
    content_hash: str
    vector: np.ndarray

    def is_valid_for(self, model: str, content_hash: str) -> bool:
        """An embedding is only reusable under the current model and text hash."""
        return self.model == model and self.content_hash == content_hash and self.vector.size > 0

    def to_bytes(self) -> bytes:
        """Serialize vector for LargeBinary storage."""
        return np.asarray(self.vector, dtype=np.float32).tobytes()

    @staticmethod
    def vector_from_bytes(data: bytes | None) -> np.ndarray:
        """Deserialize a vector from LargeBinary storage."""
        if not data:
            return np.zeros(0, dtype=np.float32)
        return np.frombuffer(data, dtype=np.float32).copy()


@dataclass
class TopicRecord:
    """A persisted topic."""

    id: str
    owner_id: str
    title: str | None
    keywords: list[str] = field(default_factory=list)
    summary_markdown: str | None = None
    member_count: int = 0
    pinned: bool = False
    pinned_at: datetime | None = None
    archived: bool = False
    archived_at: datetime | None = None
    last_ingested_at: datetime | None = None
    config: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def summary(self) -> dict[str, Any]:
        """Public shape returned by rebuilds."""
        return {
            "id": self.id,
            "title": self.title,
            "keywords": list(self.keywords),
            "report": self.summary_markdown,
            "member_count": self.member_count,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.summary(),
            "pinned": self.pinned,
            "pinned_at": isoformat(self.pinned_at),
            "archived": self.archived,
            "archived_at": isoformat(self.archived_at),
            "last_ingested_at": isoformat(self.last_ingested_at),
            "config": dict(self.config),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


@dataclass
class MembershipRecord:
    """A document's membership in a topic."""

    topic_id: str
    document_id: str
    score: float = 0.0
    source: str = MEMBER_SOURCE_AUTO
    manual_state: str | None = None
    event_time: datetime | None = None
    event_fingerprint: str | None = None
    evidence_rank: int | None = None

    @property
    def is_manual(self) -> bool:
        return self.source == MEMBER_SOURCE_MANUAL

    @property
    def is_excluded(self) -> bool:
        return self.manual_state == MANUAL_STATE_EXCLUDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic_id": self.topic_id,
            "note_id": self.document_id,
            "score": self.score,
            "source": self.source,
            "manual_state": self.manual_state,
            "event_time": isoformat(self.event_time),
            "event_fingerprint": self.event_fingerprint,
            "evidence_rank": self.evidence_rank,
        }


@dataclass
class TopicEventRecord:
    """A deduplicated event on a topic's timeline."""

    topic_id: str
    fingerprint: str
    event_time: datetime
    title: str | None
    importance: float
    document_ids: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.document_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "event_time": isoformat(self.event_time),
            "title": self.title,
            "importance": self.importance,
            "note_ids": list(self.document_ids),
            "count": self.count,
        }

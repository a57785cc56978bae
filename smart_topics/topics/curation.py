"""
Topic curation - user edits on top of the automatic topics.

Member actions write manual rows, which rebuilds never overwrite: ``add`` and
``confirm`` keep a note in the topic, ``exclude`` keeps it out, ``remove``
drops the row entirely and ``set_time`` moves the note on the timeline.
After every membership change the topic's events are rebuilt from its stored
rows, so the timeline always reflects the current members.

Example:
    >>> curator = TopicCurator.from_settings(store)
    >>> await curator.apply_member_action("user-1", topic_id, "add", note_id)
    >>> detail = await curator.get_topic_detail("user-1", topic_id)
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from loguru import logger

from smart_topics.core.errors import ErrorKind, TopicEngineError
from smart_topics.core.records import (
    MANUAL_STATE_CONFIRMED,
    MANUAL_STATE_EXCLUDED,
    MEMBER_SOURCE_MANUAL,
    Document,
    MembershipRecord,
    TopicEventRecord,
    TopicRecord,
    first_present,
    isoformat,
)
from smart_topics.topics.events import (
    build_event_fingerprint,
    day_key,
    document_event_time,
    events_from_memberships,
    member_fingerprint,
    parse_timestamp,
)
from smart_topics.topics.naming import NamingProvider

MEMBER_ACTIONS = ("add", "remove", "confirm", "exclude", "set_time")
REPORT_MODES = ("report_only", "full")
DEFAULT_REPORT_SAMPLE = 8
DEFAULT_REPORT_MEMBER_LIMIT = 120


def _document_dict(doc: Document | None) -> dict[str, Any] | None:
    if doc is None:
        return None
    return {
        "id": doc.id,
        "title": doc.title,
        "excerpt": doc.excerpt,
        "published_at": isoformat(parse_timestamp(doc.published_at)),
        "created_at": isoformat(doc.created_at),
    }


@dataclass
class TopicDetail:
    """A topic with its members, member timeline and events."""

    topic: TopicRecord
    members: list[MembershipRecord]
    documents: dict[str, Document]
    events: list[TopicEventRecord]

    def timeline(self) -> list[MembershipRecord]:
        """Included members ordered by event time, else published, else created time."""

        def when(m: MembershipRecord) -> str:
            doc = self.documents.get(m.document_id)
            moment = m.event_time
            if moment is None and doc is not None:
                moment = parse_timestamp(doc.published_at) or doc.created_at
            return isoformat(moment) or ""

        return sorted((m for m in self.members if not m.is_excluded), key=lambda m: (when(m), m.document_id))

    def evidence(self, event: TopicEventRecord) -> list[MembershipRecord]:
        """Members backing an event, best evidence first."""
        ids = set(event.document_ids)
        backing = [m for m in self.members if m.document_id in ids]
        return sorted(backing, key=lambda m: (m.evidence_rank if m.evidence_rank is not None else 1_000_000, -m.score))

    def _member_dict(self, member: MembershipRecord) -> dict[str, Any]:
        return {**member.to_dict(), "note": _document_dict(self.documents.get(member.document_id))}

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic.to_dict(),
            "members": [self._member_dict(m) for m in self.members],
            "timeline": [self._member_dict(m) for m in self.timeline()],
            "events": [
                {**event.to_dict(), "evidence": [self._member_dict(m) for m in self.evidence(event)]}
                for event in self.events
            ],
        }


@dataclass
class MergeResult:
    topic: TopicRecord
    merged: int
    source_id: str
    warnings: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "merged": self.merged,
            "source_id": self.source_id,
            "topic": self.topic.to_dict(),
            "warnings": self.warnings,
        }


def _invalid(message: str, **details: Any) -> TopicEngineError:
    return TopicEngineError(ErrorKind.INVALID_REQUEST, message, details=details)


def _missing(what: str, **details: Any) -> TopicEngineError:
    return TopicEngineError(ErrorKind.NOT_FOUND, f"{what} not found", details=details)


class TopicCurator:
    """
    Member curation, topic detail, merge and report regeneration for one store.

    Args:
        store: TopicStore implementation.
        naming_provider: Provider used to regenerate reports; None disables reports.
        report_sample_size: Notes handed to the naming provider per report.
        report_member_limit: Highest-scored members considered for a report.
    """

    def __init__(
        self,
        store: Any,
        naming_provider: NamingProvider | None = None,
        report_sample_size: int = DEFAULT_REPORT_SAMPLE,
        report_member_limit: int = DEFAULT_REPORT_MEMBER_LIMIT,
    ):
        self.store = store
        self.naming_provider = naming_provider
        self.report_sample_size = report_sample_size
        self.report_member_limit = report_member_limit

    @classmethod
    def from_settings(
        cls, store: Any, settings: Any = None, naming_provider: NamingProvider | None = None
    ) -> TopicCurator:
        from smart_topics.topics.naming import build_naming_provider

        if settings is None:
            from config import get_settings

            settings = get_settings()
        if naming_provider is None:
            naming_provider = build_naming_provider(settings)
        return cls(store, naming_provider, report_sample_size=settings.naming_sample_size)

    async def close(self) -> None:
        close = getattr(self.naming_provider, "close", None)
        if close is not None:
            await close()

    # ========================================
    # Reads
    # ========================================

    async def _require_topic(self, owner_id: str, topic_id: str) -> TopicRecord:
        topic = await self.store.get_topic(owner_id, topic_id)
        if topic is None:
            raise _missing("Topic", topic_id=topic_id)
        return topic

    async def get_topic_detail(self, owner_id: str, topic_id: str) -> TopicDetail:
        """
        Topic with members (highest score first), their notes and its events.

        Raises:
            TopicEngineError: NOT_FOUND when the topic is not the owner's.
        """
        topic = await self._require_topic(owner_id, topic_id)
        members = await self.store.list_memberships(owner_id, [topic_id])
        members.sort(key=lambda m: (-m.score, m.document_id))
        documents = await self.store.get_documents(owner_id, [m.document_id for m in members])
        events = await self.store.list_events(owner_id, topic_id)
        return TopicDetail(topic=topic, members=members, documents=documents, events=events)

    # ========================================
    # Member actions
    # ========================================

    async def apply_member_action(
        self,
        owner_id: str,
        topic_id: str,
        action: str,
        note_id: str,
        event_time: datetime | str | None = None,
    ) -> MembershipRecord | None:
        """
        Dispatch one member action; returns the resulting row (None after remove).

        Raises:
            TopicEngineError: INVALID_REQUEST for an unknown action or a bad time.
        """
        if not note_id:
            raise _invalid("note_id is required", action=action)
        if action == "add":
            return await self.add_member(owner_id, topic_id, note_id)
        if action == "remove":
            await self.remove_member(owner_id, topic_id, note_id)
            return None
        if action == "confirm":
            return await self.confirm_member(owner_id, topic_id, note_id)
        if action == "exclude":
            return await self.exclude_member(owner_id, topic_id, note_id)
        if action == "set_time":
            return await self.set_member_time(owner_id, topic_id, note_id, event_time)
        raise _invalid(f"Unknown member action: {action}", allowed=list(MEMBER_ACTIONS))

    async def _require_note(self, owner_id: str, note_id: str) -> Document:
        found = await self.store.get_documents(owner_id, [note_id])
        if note_id not in found:
            raise _missing("Note", note_id=note_id)
        return found[note_id]

    async def _require_member(self, owner_id: str, topic_id: str, note_id: str) -> MembershipRecord:
        member = await self.store.get_member(owner_id, topic_id, note_id)
        if member is None:
            raise _missing("Member", topic_id=topic_id, note_id=note_id)
        return member

    async def add_member(self, owner_id: str, topic_id: str, note_id: str) -> MembershipRecord:
        """Pin a note into the topic as a confirmed manual member."""
        await self._require_topic(owner_id, topic_id)
        doc = await self._require_note(owner_id, note_id)
        existing = await self.store.get_member(owner_id, topic_id, note_id)

        event_time = document_event_time(doc)
        member = MembershipRecord(
            topic_id=topic_id,
            document_id=note_id,
            score=existing.score if existing else 0.0,
            source=MEMBER_SOURCE_MANUAL,
            manual_state=MANUAL_STATE_CONFIRMED,
            event_time=event_time,
            event_fingerprint=member_fingerprint(topic_id, doc, event_time),
            evidence_rank=existing.evidence_rank if existing else None,
        )
        saved = await self.store.upsert_member(owner_id, member, touch_ingested=True)
        logger.info(f"Added note {note_id} to topic {topic_id}")
        await self.refresh_events(owner_id, topic_id)
        return saved

    async def remove_member(self, owner_id: str, topic_id: str, note_id: str) -> None:
        """Delete the member row; a later rebuild may add the note back."""
        await self._require_topic(owner_id, topic_id)
        if not await self.store.delete_member(owner_id, topic_id, note_id):
            raise _missing("Member", topic_id=topic_id, note_id=note_id)
        logger.info(f"Removed note {note_id} from topic {topic_id}")
        await self.refresh_events(owner_id, topic_id)

    async def confirm_member(self, owner_id: str, topic_id: str, note_id: str) -> MembershipRecord:
        """Turn an existing member into a confirmed manual member."""
        await self._require_topic(owner_id, topic_id)
        member = await self._require_member(owner_id, topic_id, note_id)
        saved = await self.store.upsert_member(
            owner_id,
            dataclasses.replace(member, source=MEMBER_SOURCE_MANUAL, manual_state=MANUAL_STATE_CONFIRMED),
        )
        await self.refresh_events(owner_id, topic_id)
        return saved

    async def exclude_member(self, owner_id: str, topic_id: str, note_id: str) -> MembershipRecord:
        """
        Keep a note out of the topic.

        The excluded row stays so that rebuilds do not put the note back; it
        is not counted and has no event.
        """
        await self._require_topic(owner_id, topic_id)
        existing = await self.store.get_member(owner_id, topic_id, note_id)
        if existing is None:
            await self._require_note(owner_id, note_id)
            existing = MembershipRecord(topic_id=topic_id, document_id=note_id)
        saved = await self.store.upsert_member(
            owner_id,
            dataclasses.replace(
                existing,
                source=MEMBER_SOURCE_MANUAL,
                manual_state=MANUAL_STATE_EXCLUDED,
                evidence_rank=None,
            ),
        )
        logger.info(f"Excluded note {note_id} from topic {topic_id}")
        await self.refresh_events(owner_id, topic_id)
        return saved

    async def set_member_time(
        self, owner_id: str, topic_id: str, note_id: str, event_time: datetime | str | None
    ) -> MembershipRecord:
        """
        Override a member's event time and recompute its fingerprint.

        Raises:
            TopicEngineError: INVALID_REQUEST when ``event_time`` is not an ISO-8601 time.
        """
        moment = parse_timestamp(event_time)
        if moment is None:
            raise _invalid("Invalid event time", event_time=str(event_time) if event_time is not None else None)

        await self._require_topic(owner_id, topic_id)
        member = await self._require_member(owner_id, topic_id, note_id)
        doc = await self._require_note(owner_id, note_id)
        fingerprint = build_event_fingerprint(topic_id, day_key(moment), first_present(doc.title, doc.excerpt) or "")
        saved = await self.store.upsert_member(
            owner_id,
            dataclasses.replace(
                member,
                source=MEMBER_SOURCE_MANUAL,
                manual_state=member.manual_state or MANUAL_STATE_CONFIRMED,
                event_time=moment,
                event_fingerprint=fingerprint,
            ),
        )
        await self.refresh_events(owner_id, topic_id)
        return saved

    async def refresh_events(self, owner_id: str, topic_id: str) -> list[TopicEventRecord]:
        """Rebuild a topic's events from its stored member rows."""
        members = await self.store.list_memberships(owner_id, [topic_id])
        docs = await self.store.get_documents(owner_id, [m.document_id for m in members])
        titles = {doc_id: doc.title for doc_id, doc in docs.items()}
        events = events_from_memberships(topic_id, members, titles)
        await self.store.replace_events(owner_id, topic_id, events)
        return events

    # ========================================
    # Merge & report
    # ========================================

    async def merge_topics(self, owner_id: str, target_id: str, source_id: str) -> MergeResult:
        """
        Move the source topic's members into the target and delete the source.

        Moved rows get fingerprints for the target topic. A manual row already
        in the target is kept over the incoming row.

        Raises:
            TopicEngineError: INVALID_REQUEST when both ids match; NOT_FOUND
                when either topic is missing.
        """
        if not source_id or source_id == target_id:
            raise _invalid("Source topic must differ from the target", target_id=target_id, source_id=source_id)
        target = await self.store.get_topic(owner_id, target_id)
        if target is None:
            raise _missing("Target topic", topic_id=target_id)
        if await self.store.get_topic(owner_id, source_id) is None:
            raise _missing("Source topic", topic_id=source_id)

        source_members = await self.store.list_memberships(owner_id, [source_id])
        docs = await self.store.get_documents(owner_id, [m.document_id for m in source_members])
        moved = []
        for m in source_members:
            fingerprint = m.event_fingerprint
            if m.event_time is not None:
                doc = docs.get(m.document_id)
                title = first_present(doc.title, doc.excerpt) if doc else None
                fingerprint = build_event_fingerprint(target_id, day_key(m.event_time), title or "")
            moved.append(dataclasses.replace(m, topic_id=target_id, event_fingerprint=fingerprint))

        topic, merged = await self.store.merge_topics(owner_id, target_id, source_id, moved)
        await self.refresh_events(owner_id, target_id)
        return MergeResult(topic=topic, merged=merged, source_id=source_id)

    async def regenerate_report(self, owner_id: str, topic_id: str, full: bool = False) -> TopicRecord:
        """
        Ask the naming provider for a fresh report on the topic's best members.

        With ``full`` the title and keywords are replaced too; otherwise only
        the report changes.

        Raises:
            TopicEngineError: CONFIGURATION without a naming provider,
                INSUFFICIENT_DATA for a topic without notes, NAMING on
                provider failure.
        """
        if self.naming_provider is None:
            raise TopicEngineError(
                ErrorKind.CONFIGURATION,
                "Naming provider is not configured",
                hint="Set NAMING_API_KEY (and NAMING_BASE_URL / NAMING_MODEL) to enable topic reports.",
            )
        await self._require_topic(owner_id, topic_id)
        members = [m for m in await self.store.list_memberships(owner_id, [topic_id]) if not m.is_excluded]
        members.sort(key=lambda m: (-m.score, m.document_id))
        ids = [m.document_id for m in members[: self.report_member_limit]]
        docs = await self.store.get_documents(owner_id, ids)
        sample = [docs[d] for d in ids if d in docs][: self.report_sample_size]
        if not sample:
            raise TopicEngineError(
                ErrorKind.INSUFFICIENT_DATA,
                "Topic has no notes to report on",
                details={"topic_id": topic_id},
            )

        try:
            naming = await self.naming_provider.name_topic(sample)
        except (httpx.HTTPError, ValueError) as e:
            raise TopicEngineError(ErrorKind.NAMING, "Topic report failed", details={"raw": str(e)}) from e

        logger.info(f"Regenerated report for topic {topic_id} (full={full})")
        return await self.store.update_topic_naming(
            owner_id,
            topic_id,
            title=naming.title if full else None,
            keywords=list(naming.keywords) if full else None,
            summary_markdown=naming.report_markdown,
        )

"""
Topic timelines - event times, fingerprints and deduplicated events.

Event time is a best-effort heuristic: an explicit published time, else a
date mentioned in the title or excerpt, else the note's creation time.
Notes in one topic that share a day and a normalized title collapse into a
single event.
"""

from __future__ import annotations

import hashlib
import math
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone

from smart_topics.core.records import (
    Document,
    MembershipRecord,
    TopicEventRecord,
    ensure_utc,
    first_present,
)

FINGERPRINT_TITLE_CHARS = 48

_URL_RE = re.compile(r"https?://\S+")
_WS_RE = re.compile(r"\s+")

_MONTHS = {
    name: i
    for i, names in enumerate(
        [
            ("jan", "january"),
            ("feb", "february"),
            ("mar", "march"),
            ("apr", "april"),
            ("may",),
            ("jun", "june"),
            ("jul", "july"),
            ("aug", "august"),
            ("sep", "sept", "september"),
            ("oct", "october"),
            ("nov", "november"),
            ("dec", "december"),
        ],
        start=1,
    )
    for name in names
}
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))

# (pattern, group order) in priority order
_DATE_PATTERNS: list[tuple[re.Pattern[str], tuple[str, str, str]]] = [
    (re.compile(r"(20\d{2})[-/.](\d{1,2})[-/.](\d{1,2})"), ("y", "m", "d")),
    (re.compile(r"(20\d{2})\s*年\s*(\d{1,2})\s*月\s*(\d{1,2})\s*日"), ("y", "m", "d")),
    (re.compile(r"\b(\d{1,2})\.(\d{1,2})\.(20\d{2})\b"), ("d", "m", "y")),
    (
        re.compile(rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(20\d{{2}})\b", re.IGNORECASE),
        ("m", "d", "y"),
    ),
    (
        re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_ALT})\.?,?\s+(20\d{{2}})\b", re.IGNORECASE),
        ("d", "m", "y"),
    ),
]


def _to_int(value: str, part: str) -> int:
    if part == "m" and not value.isdigit():
        return _MONTHS.get(value.lower().rstrip("."), 0)
    return int(value)


def parse_date_from_text(text: str) -> datetime | None:
    """Find the first recognizable calendar date in free text (UTC midnight)."""
    if not text:
        return None
    for pattern, order in _DATE_PATTERNS:
        for match in pattern.finditer(text):
            parts = {name: _to_int(value, name) for name, value in zip(order, match.groups())}
            try:
                return datetime(parts["y"], parts["m"], parts["d"], tzinfo=timezone.utc)
            except ValueError:
                continue
    return None


def parse_timestamp(value: datetime | str | None) -> datetime | None:
    """Parse a datetime or ISO-8601 string into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


def extract_event_time(
    published_at: datetime | str | None,
    title: str | None,
    excerpt: str | None,
    created_at: datetime | str | None,
) -> datetime | None:
    """Event time: published time > date in title/excerpt > creation time."""
    published = parse_timestamp(published_at)
    if published is not None:
        return published

    text = f"{title or ''}\n{excerpt or ''}".strip()
    mentioned = parse_date_from_text(text)
    if mentioned is not None:
        return mentioned

    return parse_timestamp(created_at)


def document_event_time(doc: Document) -> datetime | None:
    return extract_event_time(doc.published_at, doc.title, doc.excerpt, doc.created_at)


def day_key(value: datetime | None) -> str:
    """Calendar-day bucket (UTC) as YYYY-MM-DD; empty for None."""
    if value is None:
        return ""
    return ensure_utc(value).strftime("%Y-%m-%d")


def normalize_title(title: str | None) -> str:
    """Lower-case, drop URLs and punctuation, collapse whitespace, truncate."""
    text = _URL_RE.sub("", (title or "").lower())
    text = "".join(" " if unicodedata.category(ch)[0] in ("P", "S") else ch for ch in text)
    text = _WS_RE.sub(" ", text).strip()
    return text[:FINGERPRINT_TITLE_CHARS]


def build_event_fingerprint(topic_id: str | None, day: str, title: str | None) -> str:
    """Deterministic hash of topic, day bucket and normalized title."""
    payload = f"{topic_id or ''}|{day}|{normalize_title(title)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class EventDraft:
    """A member annotated with its event time and fingerprint."""

    document_id: str
    title: str | None
    score: float
    event_time: datetime | None
    fingerprint: str | None
    evidence_rank: int | None = None


def draft_member_events(
    topic_id: str, documents: list[Document], scores: dict[str, float]
) -> list[EventDraft]:
    """
    Annotate members with event time, fingerprint and evidence rank.

    Evidence rank orders members of one fingerprint group by clustering score
    (1 = highest); members without an event time get no fingerprint.
    """
    drafts = []
    for doc in documents:
        event_time = document_event_time(doc)
        fingerprint = member_fingerprint(topic_id, doc, event_time)
        drafts.append(
            EventDraft(
                document_id=doc.id,
                title=doc.title,
                score=float(scores.get(doc.id, 0.0)),
                event_time=event_time,
                fingerprint=fingerprint,
            )
        )

    for group in _group_by_fingerprint(drafts).values():
        ranked = sorted(group, key=lambda d: -d.score)
        for rank, draft in enumerate(ranked, start=1):
            draft.evidence_rank = rank
    return drafts


def _group_by_fingerprint(drafts: list[EventDraft]) -> dict[str, list[EventDraft]]:
    groups: dict[str, list[EventDraft]] = {}
    for draft in drafts:
        if draft.fingerprint:
            groups.setdefault(draft.fingerprint, []).append(draft)
    return groups


def build_topic_events(topic_id: str, drafts: list[EventDraft]) -> list[TopicEventRecord]:
    """One event per fingerprint group, in order of first appearance."""
    events = []
    for fingerprint, group in _group_by_fingerprint(drafts).items():
        times = [d.event_time for d in group if d.event_time is not None]
        if not times:
            continue
        title = next((d.title.strip() for d in group if d.title and d.title.strip()), None)
        events.append(
            TopicEventRecord(
                topic_id=topic_id,
                fingerprint=fingerprint,
                event_time=min(times),
                title=title,
                importance=math.log1p(len(group)),
                document_ids=[d.document_id for d in group],
            )
        )
    return events


def drafts_from_memberships(
    topic_id: str,
    memberships: list[MembershipRecord],
    titles: dict[str, str | None] | None = None,
) -> list[EventDraft]:
    """Drafts carrying the stored event time and fingerprint of member rows (excluded skipped)."""
    titles = titles or {}
    return [
        EventDraft(
            document_id=m.document_id,
            title=titles.get(m.document_id),
            score=m.score,
            event_time=ensure_utc(m.event_time),
            fingerprint=m.event_fingerprint,
            evidence_rank=m.evidence_rank,
        )
        for m in memberships
        if m.topic_id == topic_id and not m.is_excluded
    ]


def events_from_memberships(
    topic_id: str,
    memberships: list[MembershipRecord],
    titles: dict[str, str | None] | None = None,
) -> list[TopicEventRecord]:
    """Rebuild a topic's events from stored member rows."""
    return build_topic_events(topic_id, drafts_from_memberships(topic_id, memberships, titles))


def member_fingerprint(topic_id: str, doc: Document, event_time: datetime | None) -> str | None:
    """Fingerprint of one member at ``event_time``; None without a time."""
    day = day_key(event_time)
    if not day:
        return None
    return build_event_fingerprint(topic_id, day, first_present(doc.title, doc.excerpt) or "")

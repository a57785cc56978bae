"""
Unit tests for event time extraction, fingerprints and timeline events.
"""
import math
from datetime import datetime, timezone

import pytest

from smart_topics.core.records import Document, MembershipRecord
from smart_topics.topics.events import (
    build_event_fingerprint,
    build_topic_events,
    day_key,
    draft_member_events,
    events_from_memberships,
    extract_event_time,
    normalize_title,
    parse_date_from_text,
    parse_timestamp,
)

CREATED = datetime(2025, 2, 20, 8, 30, tzinfo=timezone.utc)


def _doc(doc_id, title, excerpt=None, published_at=None, created_at=CREATED):
    return Document(
        id=doc_id,
        owner_id="u1",
        title=title,
        excerpt=excerpt,
        content_text=None,
        created_at=created_at,
        updated_at=created_at,
        published_at=published_at,
    )


class TestDateParsing:
    """Tests for dates mentioned in titles and excerpts."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Release notes 2024-03-05", datetime(2024, 3, 5, tzinfo=timezone.utc)),
            ("Meeting 2024/3/5 recap", datetime(2024, 3, 5, tzinfo=timezone.utc)),
            ("发布会 2024年3月5日 总结", datetime(2024, 3, 5, tzinfo=timezone.utc)),
            ("Stand-up 05.03.2024", datetime(2024, 3, 5, tzinfo=timezone.utc)),
            ("Launch on March 5th, 2024", datetime(2024, 3, 5, tzinfo=timezone.utc)),
            ("Retro 5 Mar 2024", datetime(2024, 3, 5, tzinfo=timezone.utc)),
        ],
    )
    def test_recognized_formats(self, text, expected):
        assert parse_date_from_text(text) == expected

    def test_invalid_dates_are_skipped(self):
        assert parse_date_from_text("Version 2024-13-45 then 2024-01-02") == datetime(
            2024, 1, 2, tzinfo=timezone.utc
        )

    def test_no_date(self):
        assert parse_date_from_text("Nothing to see here") is None
        assert parse_date_from_text("") is None

    def test_parse_timestamp(self):
        assert parse_timestamp("2024-03-05T10:00:00Z") == datetime(2024, 3, 5, 10, tzinfo=timezone.utc)
        assert parse_timestamp(datetime(2024, 3, 5)) == datetime(2024, 3, 5, tzinfo=timezone.utc)
        assert parse_timestamp("not a date") is None
        assert parse_timestamp("  ") is None


class TestEventTime:
    """Tests for the event time priority."""

    def test_published_time_wins(self):
        published = "2024-06-01T12:00:00+00:00"
        result = extract_event_time(published, "Report 2023-01-01", None, CREATED)
        assert result == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)

    def test_date_in_text_beats_creation(self):
        result = extract_event_time(None, "Notes", "Recorded 2023-01-01", CREATED)
        assert result == datetime(2023, 1, 1, tzinfo=timezone.utc)

    def test_falls_back_to_creation(self):
        assert extract_event_time(None, "Notes", None, CREATED) == CREATED

    def test_day_key(self):
        assert day_key(CREATED) == "2025-02-20"
        assert day_key(None) == ""


class TestFingerprint:
    """Tests for title normalization and fingerprints."""

    def test_normalize_title(self):
        assert normalize_title("  Hello,   World! https://x.y/z ") == "hello world"
        assert len(normalize_title("word " * 40)) == 48
        assert normalize_title(None) == ""

    def test_fingerprint_ignores_cosmetic_differences(self):
        a = build_event_fingerprint("t1", "2025-02-20", "Big Launch!")
        b = build_event_fingerprint("t1", "2025-02-20", "big   launch")
        assert a == b

    def test_fingerprint_depends_on_topic_and_day(self):
        base = build_event_fingerprint("t1", "2025-02-20", "Launch")
        assert base != build_event_fingerprint("t2", "2025-02-20", "Launch")
        assert base != build_event_fingerprint("t1", "2025-02-21", "Launch")


class TestTopicEvents:
    """Tests for drafting and deduplicating a topic's events."""

    def test_same_day_same_title_collapse(self):
        docs = [
            _doc("n1", "Launch Day!"),
            _doc("n2", "launch day"),
            _doc("n3", "Launch day", created_at=datetime(2025, 2, 21, tzinfo=timezone.utc)),
        ]
        drafts = draft_member_events("t1", docs, {"n1": 0.8, "n2": 0.95, "n3": 0.9})

        events = build_topic_events("t1", drafts)

        assert len(events) == 2
        shared = events[0]
        assert shared.document_ids == ["n1", "n2"]
        assert shared.count == 2
        assert shared.importance == pytest.approx(math.log(3))
        assert shared.title == "Launch Day!"
        assert shared.event_time == CREATED
        assert events[1].document_ids == ["n3"]
        assert events[1].importance == pytest.approx(math.log(2))

    def test_evidence_rank_orders_by_score_within_group(self):
        docs = [_doc("n1", "Launch"), _doc("n2", "Launch"), _doc("n3", "Other")]
        drafts = {d.document_id: d for d in draft_member_events("t1", docs, {"n1": 0.5, "n2": 0.9, "n3": 0.1})}
        assert drafts["n2"].evidence_rank == 1
        assert drafts["n1"].evidence_rank == 2
        assert drafts["n3"].evidence_rank == 1

    def test_blank_title_uses_excerpt(self):
        drafts = draft_member_events("t1", [_doc("n1", " ", excerpt="Quarterly numbers")], {})
        assert drafts[0].fingerprint == build_event_fingerprint("t1", "2025-02-20", "Quarterly numbers")

    def test_events_from_memberships_skip_excluded(self):
        fp = build_event_fingerprint("t1", "2025-02-20", "Launch")
        memberships = [
            MembershipRecord("t1", "m1", 0.0, "manual", "confirmed", CREATED, fp),
            MembershipRecord("t1", "m2", 0.0, "manual", "excluded", CREATED, fp),
            MembershipRecord("t1", "m3", 0.0, "manual", "confirmed", None, None),
        ]

        events = events_from_memberships("t1", memberships, {"m1": "Launch"})

        assert len(events) == 1
        assert events[0].document_ids == ["m1"]
        assert events[0].title == "Launch"

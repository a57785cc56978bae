"""
Integration tests for topic curation over the SQLite store.
"""
from datetime import datetime, timedelta, timezone

import pytest

from smart_topics.core.errors import ErrorKind, TopicEngineError
from smart_topics.topics.curation import TopicCurator
from smart_topics.topics.events import build_event_fingerprint

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def curator(store, echo_namer):
    return TopicCurator(store, echo_namer, report_sample_size=2)


@pytest.fixture
def seeded(seed_notes, seed_topic):
    """Topic t1 with two auto members and a third note outside it."""

    async def seed():
        await seed_notes(
            "u1",
            [
                {"id": "n1", "title": "Router config", "published_at": BASE_TIME - timedelta(days=2)},
                {"id": "n2", "title": "OSPF areas", "published_at": BASE_TIME - timedelta(days=1)},
                {"id": "n3", "title": "Launch day", "published_at": BASE_TIME},
            ],
        )
        await seed_topic(
            "u1",
            "t1",
            members=[
                ("n1", "auto", None, {"score": 0.4}),
                ("n2", "auto", None, {"score": 0.9}),
            ],
        )

    return seed


class TestTopicDetail:
    """Detail view: members, timeline and events."""

    @pytest.mark.asyncio
    async def test_members_sorted_by_score_with_notes(self, curator, seeded):
        await seeded()

        detail = await curator.get_topic_detail("u1", "t1")

        assert [m.document_id for m in detail.members] == ["n2", "n1"]
        assert detail.documents["n2"].title == "OSPF areas"
        body = detail.to_dict()
        assert body["topic"]["id"] == "t1"
        assert body["members"][0]["note"]["title"] == "OSPF areas"
        # no stored event times: the timeline falls back to published time
        assert [m["note_id"] for m in body["timeline"]] == ["n1", "n2"]

    @pytest.mark.asyncio
    async def test_events_carry_evidence(self, curator, seeded):
        await seeded()
        await curator.add_member("u1", "t1", "n3")

        body = (await curator.get_topic_detail("u1", "t1")).to_dict()

        assert len(body["events"]) == 1
        event = body["events"][0]
        assert event["title"] == "Launch day"
        assert [m["note_id"] for m in event["evidence"]] == ["n3"]

    @pytest.mark.asyncio
    async def test_unknown_topic(self, curator):
        with pytest.raises(TopicEngineError) as exc:
            await curator.get_topic_detail("u1", "nope")
        assert exc.value.kind == ErrorKind.NOT_FOUND


class TestMemberActions:
    """add / remove / confirm / exclude / set_time."""

    @pytest.mark.asyncio
    async def test_add_computes_event_time_and_fingerprint(self, curator, store, seeded):
        await seeded()

        member = await curator.add_member("u1", "t1", "n3")

        assert member.is_manual and member.manual_state == "confirmed"
        assert member.event_time == BASE_TIME
        assert member.event_fingerprint == build_event_fingerprint("t1", "2025-03-01", "Launch day")
        topic = await store.get_topic("u1", "t1")
        assert topic.member_count == 3
        assert topic.last_ingested_at is not None
        events = await store.list_events("u1", "t1")
        assert [e.document_ids for e in events] == [["n3"]]

    @pytest.mark.asyncio
    async def test_add_keeps_existing_score(self, curator, seeded):
        await seeded()
        member = await curator.add_member("u1", "t1", "n2")
        assert member.score == pytest.approx(0.9)
        assert member.is_manual

    @pytest.mark.asyncio
    async def test_add_requires_owned_note(self, curator, seeded, seed_notes):
        await seeded()
        await seed_notes("u2", [("x1", "not mine")])
        with pytest.raises(TopicEngineError) as exc:
            await curator.add_member("u1", "t1", "x1")
        assert exc.value.kind == ErrorKind.NOT_FOUND
        assert exc.value.message == "Note not found"

    @pytest.mark.asyncio
    async def test_remove(self, curator, store, seeded):
        await seeded()
        await curator.add_member("u1", "t1", "n3")

        await curator.remove_member("u1", "t1", "n3")

        assert await store.get_member("u1", "t1", "n3") is None
        assert await store.list_events("u1", "t1") == []
        with pytest.raises(TopicEngineError) as exc:
            await curator.remove_member("u1", "t1", "n3")
        assert exc.value.message == "Member not found"

    @pytest.mark.asyncio
    async def test_confirm_turns_auto_into_manual(self, curator, seeded):
        await seeded()

        member = await curator.confirm_member("u1", "t1", "n1")

        assert member.source == "manual"
        assert member.manual_state == "confirmed"
        assert member.score == pytest.approx(0.4)
        with pytest.raises(TopicEngineError) as exc:
            await curator.confirm_member("u1", "t1", "n3")
        assert exc.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_exclude(self, curator, store, seeded):
        await seeded()
        await curator.add_member("u1", "t1", "n3")

        excluded = await curator.exclude_member("u1", "t1", "n3")

        assert excluded.is_excluded
        assert (await store.get_member("u1", "t1", "n3")).source == "manual"
        assert (await store.get_topic("u1", "t1")).member_count == 2
        assert await store.list_events("u1", "t1") == []

    @pytest.mark.asyncio
    async def test_exclude_note_that_was_never_a_member(self, curator, store, seeded):
        await seeded()

        await curator.exclude_member("u1", "t1", "n3")

        assert (await store.get_member("u1", "t1", "n3")).is_excluded
        with pytest.raises(TopicEngineError) as exc:
            await curator.exclude_member("u1", "t1", "missing-note")
        assert exc.value.message == "Note not found"

    @pytest.mark.asyncio
    async def test_set_time_moves_member_and_recomputes_fingerprint(self, curator, store, seeded):
        await seeded()
        moved = BASE_TIME + timedelta(days=10)

        member = await curator.set_member_time("u1", "t1", "n1", moved.isoformat().replace("+00:00", "Z"))

        assert member.event_time == moved
        assert member.event_fingerprint == build_event_fingerprint("t1", "2025-03-11", "Router config")
        assert member.source == "manual" and member.manual_state == "confirmed"
        events = await store.list_events("u1", "t1")
        assert [(e.event_time, e.document_ids) for e in events] == [(moved, ["n1"])]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [None, "", "next tuesday", "2025-13-45"])
    async def test_set_time_rejects_invalid_times(self, curator, seeded, value):
        await seeded()
        with pytest.raises(TopicEngineError) as exc:
            await curator.set_member_time("u1", "t1", "n1", value)
        assert exc.value.kind == ErrorKind.INVALID_REQUEST
        assert exc.value.http_status == 400

    @pytest.mark.asyncio
    async def test_unknown_action(self, curator, seeded):
        await seeded()
        with pytest.raises(TopicEngineError) as exc:
            await curator.apply_member_action("u1", "t1", "promote", "n1")
        assert exc.value.kind == ErrorKind.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_dispatch(self, curator, store, seeded):
        await seeded()
        assert (await curator.apply_member_action("u1", "t1", "add", "n3")).is_manual
        assert await curator.apply_member_action("u1", "t1", "remove", "n3") is None
        assert await store.get_member("u1", "t1", "n3") is None


class TestMerge:
    """Merging one topic into another."""

    @pytest.mark.asyncio
    async def test_merge_moves_members_and_rebuilds_events(self, curator, store, seeded, seed_topic):
        await seeded()
        await seed_topic(
            "u1",
            "t2",
            members=[
                ("n3", "auto", None, {
                    "score": 0.7,
                    "event_time": BASE_TIME,
                    "event_fingerprint": build_event_fingerprint("t2", "2025-03-01", "Launch day"),
                }),
            ],
        )

        result = await curator.merge_topics("u1", "t1", "t2")

        assert result.merged == 1
        assert result.topic.member_count == 3
        assert await store.get_topic("u1", "t2") is None
        moved = await store.get_member("u1", "t1", "n3")
        assert moved.event_fingerprint == build_event_fingerprint("t1", "2025-03-01", "Launch day")
        events = await store.list_events("u1", "t1")
        assert [e.document_ids for e in events] == [["n3"]]
        assert result.to_dict()["ok"] is True

    @pytest.mark.asyncio
    async def test_merge_into_itself(self, curator, seeded):
        await seeded()
        with pytest.raises(TopicEngineError) as exc:
            await curator.merge_topics("u1", "t1", "t1")
        assert exc.value.kind == ErrorKind.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_merge_missing_topics(self, curator, seeded):
        await seeded()
        with pytest.raises(TopicEngineError) as exc:
            await curator.merge_topics("u1", "t1", "gone")
        assert exc.value.message == "Source topic not found"
        with pytest.raises(TopicEngineError) as exc:
            await curator.merge_topics("u1", "gone", "t1")
        assert exc.value.message == "Target topic not found"


class TestReport:
    """Report regeneration with the naming provider."""

    @pytest.mark.asyncio
    async def test_report_only_keeps_title(self, curator, echo_namer, seeded):
        await seeded()

        topic = await curator.regenerate_report("u1", "t1")

        assert topic.title == "Existing t1"
        assert topic.summary_markdown.startswith("## Overview")
        # highest-scored members first, capped at the sample size
        assert echo_namer.calls == [["n2", "n1"]]

    @pytest.mark.asyncio
    async def test_full_mode_renames(self, curator, seeded):
        await seeded()
        topic = await curator.regenerate_report("u1", "t1", full=True)
        assert topic.title == "About OSPF areas"
        assert topic.keywords == ["OSPF", "Router"]

    @pytest.mark.asyncio
    async def test_requires_naming_provider(self, store, seeded):
        await seeded()
        with pytest.raises(TopicEngineError) as exc:
            await TopicCurator(store).regenerate_report("u1", "t1")
        assert exc.value.kind == ErrorKind.CONFIGURATION
        assert exc.value.hint

    @pytest.mark.asyncio
    async def test_empty_topic(self, curator, seed_topic):
        await seed_topic("u1", "empty")
        with pytest.raises(TopicEngineError) as exc:
            await curator.regenerate_report("u1", "empty")
        assert exc.value.kind == ErrorKind.INSUFFICIENT_DATA

    @pytest.mark.asyncio
    async def test_naming_failure_propagates(self, store, failing_namer, seeded):
        await seeded()
        with pytest.raises(TopicEngineError) as exc:
            await TopicCurator(store, failing_namer).regenerate_report("u1", "t1")
        assert exc.value.kind == ErrorKind.NAMING

"""
Topics router.

Endpoints for:
- Rebuilding a user's topics
- The scheduled nightly refresh (cron secret protected)
- Listing topics and pin/archive user actions
- Topic detail, member curation, merge and report regeneration

The caller identifies the user with the ``X-Owner-Id`` header; authentication
is the responsibility of the gateway in front of this service.
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query
from loguru import logger
from pydantic import AliasChoices, BaseModel, Field

from config import Settings, get_settings
from smart_topics.db.database import get_async_session_factory
from smart_topics.db.store import SqlAlchemyTopicStore, TopicStore
from smart_topics.topics.curation import TopicCurator
from smart_topics.topics.nightly import NightlyRefresher
from smart_topics.topics.rebuild import RebuildOptions, TopicRebuilder

router = APIRouter()


# ========================================
# Request/Response Models
# ========================================


class NightlyRefreshRequest(BaseModel):
    """Request model for the scheduled refresh."""

    hours: float | None = Field(None, description="Look-back window in hours (max 168)")
    max_users: int | None = Field(
        None,
        validation_alias=AliasChoices("max_users", "maxUsers"),
        description="Maximum owners to refresh (max 200)",
    )
    algorithm: Literal["dbscan", "kmeans"] = "dbscan"


class PinRequest(BaseModel):
    pinned: bool = True


class ArchiveRequest(BaseModel):
    archived: bool = True


class MemberActionRequest(BaseModel):
    """A member curation action on one note."""

    action: Literal["add", "remove", "confirm", "exclude", "set_time"]
    note_id: str = Field(validation_alias=AliasChoices("note_id", "noteId"))
    event_time: str | None = Field(
        None,
        validation_alias=AliasChoices("event_time", "eventTime"),
        description="ISO-8601 time, required for set_time",
    )


class MergeRequest(BaseModel):
    source_topic_id: str = Field(validation_alias=AliasChoices("source_topic_id", "sourceTopicId"))


class ReportRequest(BaseModel):
    mode: Literal["report_only", "full"] = "report_only"


class TopicResponse(BaseModel):
    """A topic as shown in lists and after user actions."""

    id: str
    title: str | None
    keywords: list[str] = Field(default_factory=list)
    member_count: int = 0
    pinned: bool = False
    archived: bool = False
    last_ingested_at: str | None = None


# ========================================
# Dependencies
# ========================================


def get_topic_store() -> TopicStore:
    """FastAPI dependency for the topic store."""
    return SqlAlchemyTopicStore(get_async_session_factory())


async def get_rebuilder(
    store: TopicStore = Depends(get_topic_store),
    settings: Settings = Depends(get_settings),
) -> AsyncGenerator[TopicRebuilder, None]:
    """FastAPI dependency yielding a rebuilder whose HTTP clients are closed afterwards."""
    rebuilder = TopicRebuilder.from_settings(store, settings)
    try:
        yield rebuilder
    finally:
        await rebuilder.close()


async def get_curator(
    store: TopicStore = Depends(get_topic_store),
    settings: Settings = Depends(get_settings),
) -> AsyncGenerator[TopicCurator, None]:
    """FastAPI dependency yielding a curator whose naming client is closed afterwards."""
    curator = TopicCurator.from_settings(store, settings)
    try:
        yield curator
    finally:
        await curator.close()


def require_owner(x_owner_id: str | None = Header(default=None)) -> str:
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return owner_id


def require_cron_secret(
    authorization: str | None = Header(default=None),
    x_cron_secret: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Accept ``Authorization: Bearer <secret>`` or ``X-Cron-Secret: <secret>``."""
    expected = settings.cron_secret.strip()
    if not expected:
        raise HTTPException(status_code=500, detail="CRON_SECRET is not configured")
    auth = (authorization or "").strip()
    token = auth[7:].strip() if auth.lower().startswith("bearer ") else (x_cron_secret or "").strip()
    if not token or token != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _topic_response(topic: Any) -> TopicResponse:
    return TopicResponse(
        id=topic.id,
        title=topic.title,
        keywords=list(topic.keywords),
        member_count=topic.member_count,
        pinned=topic.pinned,
        archived=topic.archived,
        last_ingested_at=topic.last_ingested_at.isoformat() if topic.last_ingested_at else None,
    )


# ========================================
# Rebuild Endpoints
# ========================================


@router.post("/rebuild", summary="Rebuild topics")
async def rebuild(
    options: RebuildOptions | None = Body(default=None),
    owner_id: str = Depends(require_owner),
    rebuilder: TopicRebuilder = Depends(get_rebuilder),
) -> dict[str, Any]:
    """
    Re-cluster the caller's notes and update their topics.

    Classified engine failures are returned as ``{error, kind, hint, details}``
    with a matching status code.
    """
    logger.info(f"Topic rebuild requested for owner {owner_id}")
    result = await rebuilder.rebuild_topics(owner_id, options or RebuildOptions())
    return result.to_dict()


@router.post("/nightly-refresh", summary="Scheduled refresh", dependencies=[Depends(require_cron_secret)])
async def nightly_refresh(
    request: NightlyRefreshRequest | None = Body(default=None),
    store: TopicStore = Depends(get_topic_store),
    rebuilder: TopicRebuilder = Depends(get_rebuilder),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Rebuild recently active owners and archive stale topics."""
    request = request or NightlyRefreshRequest()
    refresher = NightlyRefresher.from_settings(store, rebuilder, settings)
    result = await refresher.run(hours=request.hours, max_users=request.max_users, algorithm=request.algorithm)
    return result.to_dict()


# ========================================
# Topic Endpoints
# ========================================


@router.get("", response_model=list[TopicResponse], summary="List topics")
async def list_topics(
    include_archived: bool = Query(False, description="Include archived topics"),
    limit: int = Query(50, ge=1, le=200),
    owner_id: str = Depends(require_owner),
    store: TopicStore = Depends(get_topic_store),
) -> list[TopicResponse]:
    topics = await store.list_topics(owner_id, limit=limit, include_archived=include_archived)
    return [_topic_response(t) for t in topics]


@router.post("/{topic_id}/pin", response_model=TopicResponse, summary="Pin or unpin a topic")
async def pin_topic(
    topic_id: str,
    request: PinRequest | None = Body(default=None),
    owner_id: str = Depends(require_owner),
    store: TopicStore = Depends(get_topic_store),
) -> TopicResponse:
    pinned = (request or PinRequest()).pinned
    topic = await store.set_pinned(owner_id, topic_id, pinned)
    return _topic_response(topic)


@router.post("/{topic_id}/archive", response_model=TopicResponse, summary="Archive or restore a topic")
async def archive_topic(
    topic_id: str,
    request: ArchiveRequest | None = Body(default=None),
    owner_id: str = Depends(require_owner),
    store: TopicStore = Depends(get_topic_store),
) -> TopicResponse:
    archived = (request or ArchiveRequest()).archived
    topic = await store.set_archived(owner_id, topic_id, archived)
    return _topic_response(topic)


@router.get("/{topic_id}", summary="Topic detail")
async def get_topic(
    topic_id: str,
    owner_id: str = Depends(require_owner),
    curator: TopicCurator = Depends(get_curator),
) -> dict[str, Any]:
    """Topic with its members, member timeline and events with evidence."""
    detail = await curator.get_topic_detail(owner_id, topic_id)
    return detail.to_dict()


@router.post("/{topic_id}/members", summary="Curate a topic member")
async def curate_member(
    topic_id: str,
    request: MemberActionRequest,
    owner_id: str = Depends(require_owner),
    curator: TopicCurator = Depends(get_curator),
) -> dict[str, Any]:
    member = await curator.apply_member_action(
        owner_id, topic_id, request.action, request.note_id, event_time=request.event_time
    )
    return {"ok": True, "action": request.action, "member": member.to_dict() if member else None}


@router.post("/{topic_id}/merge", summary="Merge another topic into this one")
async def merge_topic(
    topic_id: str,
    request: MergeRequest,
    owner_id: str = Depends(require_owner),
    curator: TopicCurator = Depends(get_curator),
) -> dict[str, Any]:
    result = await curator.merge_topics(owner_id, topic_id, request.source_topic_id)
    return result.to_dict()


@router.post("/{topic_id}/report", summary="Regenerate a topic report")
async def regenerate_report(
    topic_id: str,
    request: ReportRequest | None = Body(default=None),
    owner_id: str = Depends(require_owner),
    curator: TopicCurator = Depends(get_curator),
) -> dict[str, Any]:
    """Rewrite the report; ``mode=full`` also renames the topic and replaces its keywords."""
    mode = (request or ReportRequest()).mode
    topic = await curator.regenerate_report(owner_id, topic_id, full=mode == "full")
    return {"ok": True, "mode": mode, "topic": topic.to_dict()}

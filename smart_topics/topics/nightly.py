"""
Nightly refresh - rebuild recently active owners and archive stale topics.

Owners whose notes changed inside the window are rebuilt with the window start
as ``mark_ingested_since``, so only topics that actually received new notes
get a fresh ``last_ingested_at``. Afterwards, non-pinned topics that have not
ingested anything for ``archive_after_days`` are archived. One owner's
failure is recorded and the run moves on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from smart_topics.core.errors import TopicEngineError
from smart_topics.core.records import utcnow
from smart_topics.topics.rebuild import RebuildOptions, TopicRebuilder

DEFAULT_HOURS = 24
MAX_HOURS = 24 * 7
DEFAULT_MAX_USERS = 25
MAX_USERS = 200
UNEXPECTED_KIND = "unexpected"


def clamp_hours(hours: float | None, default: int = DEFAULT_HOURS) -> float:
    if hours is None or hours <= 0:
        return float(default)
    return float(min(hours, MAX_HOURS))


def clamp_max_users(max_users: int | None, default: int = DEFAULT_MAX_USERS) -> int:
    if max_users is None or max_users <= 0:
        return default
    return int(min(int(max_users), MAX_USERS))


@dataclass
class OwnerRefresh:
    """Result of refreshing one owner."""

    owner_id: str
    ok: bool
    topics: int = 0
    archived: int = 0
    kind: str | None = None
    message: str | None = None
    warnings: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "ok": self.ok,
            "topics": self.topics,
            "archived": self.archived,
            "kind": self.kind,
            "message": self.message,
            "warnings": self.warnings,
        }


@dataclass
class NightlyResult:
    mark_since: datetime
    max_users: int
    candidates: int = 0
    refreshed_users: int = 0
    refreshed_topics: int = 0
    archived_topics: int = 0
    results: list[OwnerRefresh] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "mark_since": self.mark_since.isoformat(),
            "max_users": self.max_users,
            "candidates": self.candidates,
            "refreshed_users": self.refreshed_users,
            "refreshed_topics": self.refreshed_topics,
            "archived_topics": self.archived_topics,
            "results": [r.to_dict() for r in self.results],
        }


class NightlyRefresher:
    """
    Scheduled refresh over recently active owners.

    Example:
        >>> refresher = NightlyRefresher(store, rebuilder, archive_after_days=30)
        >>> result = await refresher.run(hours=24, max_users=25)
        >>> print(result.refreshed_users)
    """

    def __init__(
        self,
        store: Any,
        rebuilder: TopicRebuilder,
        archive_after_days: int = 30,
        default_hours: int = DEFAULT_HOURS,
        default_max_users: int = DEFAULT_MAX_USERS,
    ):
        self.store = store
        self.rebuilder = rebuilder
        self.archive_after_days = archive_after_days
        self.default_hours = default_hours
        self.default_max_users = default_max_users

    @classmethod
    def from_settings(cls, store: Any, rebuilder: TopicRebuilder, settings: Any = None) -> NightlyRefresher:
        if settings is None:
            from config import get_settings

            settings = get_settings()
        return cls(
            store,
            rebuilder,
            archive_after_days=settings.topic_archive_after_days,
            default_hours=settings.nightly_default_hours,
            default_max_users=settings.nightly_max_users,
        )

    async def run(
        self,
        hours: float | None = None,
        max_users: int | None = None,
        algorithm: str = "dbscan",
        now: datetime | None = None,
    ) -> NightlyResult:
        """
        Refresh owners with notes updated in the last ``hours`` (max 168).

        Raises:
            TopicEngineError: PERSISTENCE when active owners cannot be listed.
        """
        now = now or utcnow()
        window = clamp_hours(hours, self.default_hours)
        limit = clamp_max_users(max_users, self.default_max_users)
        mark_since = now - timedelta(hours=window)
        algorithm = "kmeans" if algorithm == "kmeans" else "dbscan"

        owners = await self.store.list_active_owners(mark_since, limit)
        result = NightlyResult(mark_since=mark_since, max_users=limit, candidates=len(owners))
        logger.info(f"Nightly refresh: {len(owners)} owners active since {mark_since.isoformat()}")

        for owner_id in owners:
            outcome = await self._refresh_owner(owner_id, algorithm, mark_since, now)
            result.results.append(outcome)
            if outcome.ok:
                result.refreshed_users += 1
                result.refreshed_topics += outcome.topics
                result.archived_topics += outcome.archived

        logger.info(
            f"Nightly refresh done: {result.refreshed_users}/{result.candidates} owners, "
            f"{result.refreshed_topics} topics, {result.archived_topics} archived"
        )
        return result

    async def _refresh_owner(
        self, owner_id: str, algorithm: str, mark_since: datetime, now: datetime
    ) -> OwnerRefresh:
        try:
            rebuilt = await self.rebuilder.rebuild_topics(
                owner_id, RebuildOptions(algorithm=algorithm, mark_ingested_since=mark_since)
            )
        except TopicEngineError as e:
            logger.warning(f"Nightly rebuild failed for owner {owner_id}: [{e.kind.value}] {e.message}")
            return OwnerRefresh(owner_id=owner_id, ok=False, kind=e.kind.value, message=e.message)
        except Exception as e:  # Intentionally broad - one owner must not stop the run
            logger.exception(f"Unexpected nightly rebuild failure for owner {owner_id}")
            return OwnerRefresh(owner_id=owner_id, ok=False, kind=UNEXPECTED_KIND, message=str(e) or type(e).__name__)

        outcome = OwnerRefresh(
            owner_id=owner_id,
            ok=True,
            topics=len(rebuilt.topics),
            message=rebuilt.message,
            warnings=list(rebuilt.warnings),
        )

        # Lifecycle: archive topics with no ingestion inside the retention window.
        before = now - timedelta(days=self.archive_after_days)
        try:
            outcome.archived = await self.store.archive_stale_topics(owner_id, before, now=now)
        except TopicEngineError as e:
            logger.warning(f"Archiving stale topics failed for owner {owner_id}: {e.message}")
            outcome.warnings.append({"stage": "archive", **e.to_dict()})
        return outcome

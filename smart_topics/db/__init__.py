"""Persistence layer: ORM models, async engine and the topic store."""

from smart_topics.db.database import async_session_scope, configure_database, get_async_session_factory, init_db
from smart_topics.db.store import SqlAlchemyTopicStore, TopicStore

__all__ = [
    "SqlAlchemyTopicStore",
    "TopicStore",
    "async_session_scope",
    "configure_database",
    "get_async_session_factory",
    "init_db",
]

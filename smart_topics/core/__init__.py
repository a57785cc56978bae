# Shared records and error types
from smart_topics.core.errors import ErrorKind, TopicEngineError
from smart_topics.core.records import (
    Document,
    EmbeddingRecord,
    MembershipRecord,
    TopicEventRecord,
    TopicRecord,
)

__all__ = [
    "ErrorKind",
    "TopicEngineError",
    "Document",
    "EmbeddingRecord",
    "MembershipRecord",
    "TopicEventRecord",
    "TopicRecord",
]

# SQLAlchemy models
from .base import Base
from .knowledge import (
    KnowledgeNoteEmbedding,
    KnowledgeTopic,
    KnowledgeTopicEvent,
    KnowledgeTopicMember,
    Note,
)

__all__ = [
    # Base
    "Base",
    # Source documents
    "Note",
    # Topic engine
    "KnowledgeNoteEmbedding",
    "KnowledgeTopic",
    "KnowledgeTopicMember",
    "KnowledgeTopicEvent",
]

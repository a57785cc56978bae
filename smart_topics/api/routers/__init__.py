"""API routers for smart-topics."""

from smart_topics.api.routers import topics_router

__all__ = ["topics_router"]

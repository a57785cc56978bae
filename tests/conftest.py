"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests:
an in-memory SQLite topic store, note seeding, and scripted embedding and
naming providers.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from smart_topics.core.errors import ErrorKind, TopicEngineError  # noqa: E402
from smart_topics.db.database import init_db  # noqa: E402
from smart_topics.db.models import KnowledgeTopic, KnowledgeTopicMember, Note  # noqa: E402
from smart_topics.db.store import SqlAlchemyTopicStore  # noqa: E402
from smart_topics.topics.naming import TopicNaming  # noqa: E402

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
DIM = 12


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (SQLite store)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


# ========================================
# Vectors
# ========================================


def basis(i: int, dim: int = DIM) -> np.ndarray:
    v = np.zeros(dim)
    v[i] = 1.0
    return v


@pytest.fixture
def two_cluster_vectors():
    """
    Ten vectors in two tight, mutually orthogonal groups of five.

    Group "a" leans on axis 0, group "b" on axis 1; each member gets a small
    private component so no two vectors are identical.
    """
    vectors = {}
    for i in range(5):
        vectors[f"a{i + 1}"] = basis(0) + 0.1 * basis(2 + i)
        vectors[f"b{i + 1}"] = basis(1) + 0.1 * basis(7 + i)
    return vectors


@pytest.fixture
def spread_vectors():
    """Five mutually orthogonal vectors (no density clusters)."""
    return {f"s{i + 1}": basis(i) for i in range(5)}


# ========================================
# Providers
# ========================================


class ScriptedEmbeddingProvider:
    """
    Embedding provider that looks vectors up by note title.

    The embedding text starts with the title, so the first paragraph is the key.
    """

    def __init__(self, table, model_name="scripted-v1", too_large_above=None):
        self.table = {k: list(np.asarray(v, dtype=float)) for k, v in table.items()}
        self.model_name = model_name
        self.too_large_above = too_large_above
        self.calls = []

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.too_large_above is not None and len(texts) > self.too_large_above:
            raise TopicEngineError(ErrorKind.PAYLOAD_TOO_LARGE, "Embedding request entity too large")
        return [self.table.get(text.split("\n\n")[0], []) for text in texts]


class EchoNamingProvider:
    """Names a topic after its most recent representative note."""

    model_name = "echo-namer"

    def __init__(self):
        self.calls = []

    async def name_topic(self, documents):
        self.calls.append([d.id for d in documents])
        first = documents[0]
        return TopicNaming(
            title=f"About {first.title}",
            keywords=sorted({d.title.split()[0] for d in documents if d.title})[:6],
            report_markdown=f"## Overview\n{len(documents)} notes [note:{first.id}]",
        )


class FailingNamingProvider:
    model_name = "broken-namer"

    async def name_topic(self, documents):
        raise TopicEngineError(ErrorKind.NAMING, "Naming API failed (500)", details={"raw": "boom"})


@pytest.fixture
def scripted_provider():
    """Factory for ScriptedEmbeddingProvider."""
    return ScriptedEmbeddingProvider


@pytest.fixture
def echo_namer():
    return EchoNamingProvider()


@pytest.fixture
def failing_namer():
    return FailingNamingProvider()


# ========================================
# Database
# ========================================


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with the topic schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory):
    """SqlAlchemyTopicStore over the in-memory database."""
    return SqlAlchemyTopicStore(session_factory)


@pytest.fixture
def seed_notes(session_factory):
    """
    Insert notes for an owner.

    Each note is (id, title) or a dict of Note columns. Notes are spaced one
    minute apart so the first one listed is the most recently updated.
    """

    async def seed(owner_id, notes, updated_at=BASE_TIME):
        async with session_factory() as session:
            for offset, note in enumerate(notes):
                if isinstance(note, tuple):
                    note = {"id": note[0], "title": note[1]}
                stamp = note.pop("updated_at", updated_at - timedelta(minutes=offset))
                session.add(
                    Note(
                        user_id=owner_id,
                        created_at=note.pop("created_at", stamp),
                        updated_at=stamp,
                        **note,
                    )
                )
            await session.commit()

    return seed


@pytest.fixture
def seed_topic(session_factory):
    """
    Insert a topic row plus member rows.

    Members are (note_id[, source[, manual_state[, extra_columns]]]).
    """

    async def seed(owner_id, topic_id, members=(), **fields):
        async with session_factory() as session:
            session.add(
                KnowledgeTopic(
                    id=topic_id,
                    user_id=owner_id,
                    title=fields.pop("title", f"Existing {topic_id}"),
                    member_count=len(members),
                    **fields,
                )
            )
            await session.flush()
            for member in members:
                note_id, source, manual_state, extra = (tuple(member) + (None, None, {}))[:4]
                session.add(
                    KnowledgeTopicMember(
                        topic_id=topic_id,
                        note_id=note_id,
                        user_id=owner_id,
                        source=source or "auto",
                        manual_state=manual_state,
                        **(extra or {}),
                    )
                )
            await session.commit()

    return seed

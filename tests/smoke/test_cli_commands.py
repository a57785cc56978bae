"""
Smoke Tests for CLI Commands.

These tests verify that CLI commands run without errors and produce output.
They don't validate correctness deeply - just that commands work end to end
against a throwaway SQLite database with local hash embeddings.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import asyncio
import os
import subprocess
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from smart_topics.core.records import utcnow
from smart_topics.db.models import KnowledgeTopic, KnowledgeTopicMember, Note

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent

NOTES = [
    ("n1", "python asyncio event loop basics"),
    ("n2", "python asyncio tasks and the event loop"),
    ("n3", "asyncio event loop debugging in python"),
    ("n4", "sourdough bread starter feeding"),
    ("n5", "sourdough bread hydration and starter"),
    ("n6", "baking sourdough bread at home"),
]


def run_cli_command(command: str, env: dict[str, str] | None = None, timeout: int = 60) -> tuple[int, str, str]:
    """
    Run a CLI command and return exit code, stdout, stderr.

    Args:
        command: The command to run (after 'python -m smart_topics.cli.main')
        env: Extra environment variables
        timeout: Maximum time to wait

    Returns:
        Tuple of (exit_code, stdout, stderr)
    """
    full_command = f"{sys.executable} -m smart_topics.cli.main {command}"

    result = subprocess.run(
        full_command,
        shell=True,
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True,
        timeout=timeout,
        env={**os.environ, **(env or {})},
    )

    return result.returncode, result.stdout, result.stderr


@pytest.fixture
def cli_env(tmp_path):
    """Environment pointing the CLI at a fresh SQLite file with local embeddings."""
    db_path = tmp_path / "smoke.db"
    return {
        "DATABASE_URL": f"sqlite:///{db_path}",
        "EMBEDDING_PROVIDER": "local",
        "NAMING_API_KEY": "",
        "LOG_LEVEL": "WARNING",
    }


def seed_notes(database_url: str, owner_id: str = "smoke-user") -> None:
    """Insert a handful of notes directly into the database."""

    async def insert():
        engine = create_async_engine(database_url.replace("sqlite://", "sqlite+aiosqlite://", 1), poolclass=NullPool)
        try:
            async with async_sessionmaker(engine)() as session:
                now = utcnow()
                session.add_all(
                    Note(id=note_id, user_id=owner_id, title=title, updated_at=now - timedelta(minutes=i))
                    for i, (note_id, title) in enumerate(NOTES)
                )
                await session.commit()
        finally:
            await engine.dispose()

    asyncio.run(insert())


def seed_topics(database_url: str, owner_id: str = "smoke-user") -> None:
    """Insert two topics over the seeded notes: asyncio (n1, n2) and bread (n4)."""

    async def insert():
        engine = create_async_engine(database_url.replace("sqlite://", "sqlite+aiosqlite://", 1), poolclass=NullPool)
        try:
            async with async_sessionmaker(engine)() as session:
                session.add_all(
                    [
                        KnowledgeTopic(id="t-async", user_id=owner_id, title="Asyncio", member_count=2),
                        KnowledgeTopic(id="t-bread", user_id=owner_id, title="Sourdough", member_count=1),
                    ]
                )
                await session.flush()
                session.add_all(
                    KnowledgeTopicMember(topic_id=topic_id, note_id=note_id, user_id=owner_id, score=0.5)
                    for topic_id, note_id in [("t-async", "n1"), ("t-async", "n2"), ("t-bread", "n4")]
                )
                await session.commit()
        finally:
            await engine.dispose()

    asyncio.run(insert())


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self):
        """Main help should display without errors."""
        code, stdout, stderr = run_cli_command("--help")

        assert code == 0, f"Help failed: {stderr}"
        assert "smart-topics" in stdout.lower()
        assert "Commands" in stdout

    @pytest.mark.parametrize(
        "command",
        [
            "db",
            "topics",
            "topics rebuild",
            "topics nightly",
            "topics list",
            "topics show",
            "topics members",
            "topics merge",
            "topics report",
        ],
    )
    def test_subcommand_help(self, command):
        """Sub-command help should work."""
        code, stdout, stderr = run_cli_command(f"{command} --help")

        assert code == 0, f"{command} help failed: {stderr}"


class TestCLIWorkflow:
    """Run the main commands against a temporary database."""

    def test_init_rebuild_list(self, cli_env):
        code, stdout, stderr = run_cli_command("db init", cli_env)
        assert code == 0, f"db init failed: {stderr}"
        assert "Database initialized" in stdout

        seed_notes(cli_env["DATABASE_URL"])

        code, stdout, stderr = run_cli_command("topics rebuild smoke-user --algorithm kmeans --k 2", cli_env)
        assert code == 0, f"rebuild failed: {stderr}"
        assert "Rebuild complete" in stdout

        code, stdout, stderr = run_cli_command("topics list smoke-user", cli_env)
        assert code == 0, f"list failed: {stderr}"
        assert "Topics for smoke-user" in stdout

    def test_rebuild_json_output(self, cli_env):
        run_cli_command("db init", cli_env)
        seed_notes(cli_env["DATABASE_URL"])

        code, stdout, stderr = run_cli_command("topics rebuild smoke-user -a kmeans --k 2 --json", cli_env)

        assert code == 0, f"rebuild failed: {stderr}"
        assert '"clustering"' in stdout

    def test_nightly_runs(self, cli_env):
        run_cli_command("db init", cli_env)
        seed_notes(cli_env["DATABASE_URL"])

        code, stdout, stderr = run_cli_command("topics nightly --hours 48 --algorithm kmeans", cli_env)

        assert code == 0, f"nightly failed: {stderr}"
        assert "Refreshed 1/1 owners" in stdout

    def test_unknown_topic_exits_with_error(self, cli_env):
        run_cli_command("db init", cli_env)

        code, stdout, stderr = run_cli_command("topics pin smoke-user missing-topic", cli_env)

        assert code == 1
        assert "Topic not found" in stdout

    def test_unknown_algorithm(self, cli_env):
        code, stdout, stderr = run_cli_command("topics rebuild smoke-user --algorithm hdbscan", cli_env)
        assert code == 2


class TestCLICuration:
    """Detail, member actions, merge and report commands."""

    @pytest.fixture
    def seeded_env(self, cli_env):
        run_cli_command("db init", cli_env)
        seed_notes(cli_env["DATABASE_URL"])
        seed_topics(cli_env["DATABASE_URL"])
        return cli_env

    def test_show(self, seeded_env):
        code, stdout, stderr = run_cli_command("topics show smoke-user t-async", seeded_env)
        assert code == 0, f"show failed: {stderr}"
        assert "Asyncio" in stdout
        assert "Members" in stdout

    def test_member_actions(self, seeded_env):
        code, stdout, stderr = run_cli_command("topics members smoke-user t-async add n3", seeded_env)
        assert code == 0, f"add failed: {stderr}"
        assert "add: n3" in stdout

        code, stdout, stderr = run_cli_command(
            "topics members smoke-user t-async set_time n3 --time 2025-01-05T10:00:00Z", seeded_env
        )
        assert code == 0, f"set_time failed: {stderr}"

        code, stdout, stderr = run_cli_command("topics show smoke-user t-async", seeded_env)
        assert "2025-01-05" in stdout

        code, stdout, stderr = run_cli_command("topics members smoke-user t-async exclude n1", seeded_env)
        assert code == 0, f"exclude failed: {stderr}"

    def test_member_errors(self, seeded_env):
        code, stdout, stderr = run_cli_command("topics members smoke-user t-async promote n1", seeded_env)
        assert code == 2

        code, stdout, stderr = run_cli_command(
            "topics members smoke-user t-async set_time n1 --time yesterday", seeded_env
        )
        assert code == 1
        assert "Invalid event time" in stdout

    def test_merge(self, seeded_env):
        code, stdout, stderr = run_cli_command("topics merge smoke-user t-async t-bread", seeded_env)
        assert code == 0, f"merge failed: {stderr}"
        assert "Merged 1 members" in stdout

        code, stdout, stderr = run_cli_command("topics show smoke-user t-bread", seeded_env)
        assert code == 1
        assert "Topic not found" in stdout

    def test_report_needs_naming_provider(self, seeded_env):
        code, stdout, stderr = run_cli_command("topics report smoke-user t-async", seeded_env)
        assert code == 1
        assert "Naming provider is not configured" in stdout

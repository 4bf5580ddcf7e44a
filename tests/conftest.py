"""Shared fixtures for SessionVault tests."""

from datetime import datetime, timedelta, timezone

import pytest
import structlog

from sessionvault.memory.models import SessionMemory, Task, TaskStatus
from sessionvault.memory.store import SessionStore


def now_ms() -> datetime:
    """Current UTC time truncated to the millisecond precision the store keeps."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def days_ago(days: float) -> datetime:
    return now_ms() - timedelta(days=days)


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    structlog.reset_defaults()


@pytest.fixture
def store(tmp_path):
    """Create a SessionStore with a temp database."""
    s = SessionStore(db_path=tmp_path / "data" / "index.db")
    yield s
    s.close()


@pytest.fixture
def make_session():
    """Factory for sessions with sensible defaults."""
    counter = {"n": 0}

    def factory(**overrides) -> SessionMemory:
        counter["n"] += 1
        started = overrides.pop("started_at", now_ms() - timedelta(hours=1))
        fields = dict(
            id=f"session_{counter['n']}",
            source_session_id="host-session-123",
            project_path="/home/user/myproject",
            started_at=started,
            ended_at=started + timedelta(hours=1),
            summary="Test session summary",
            description="Test session description",
            tasks=[
                Task(id="1", description="Write the parser", status=TaskStatus.COMPLETED, created_at=started),
                Task(id="2", description="Add tests", status=TaskStatus.PENDING, created_at=started),
            ],
            files_created=["src/parser.py"],
            files_modified=["src/main.py"],
            last_user_message="please add tests",
            last_assistant_message="tests added",
            next_steps=["Ship it"],
            key_decisions=["Use SQLite"],
            tokens_used=5000,
            messages_count=10,
            tool_calls_count=5,
            tags=["test", "python"],
            log_file="/nonexistent/log.jsonl",
        )
        fields.update(overrides)
        return SessionMemory(**fields)

    return factory

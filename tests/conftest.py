"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import UTC, datetime, timedelta
from itertools import count
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dsamaster.config import Settings
from dsamaster.core.models import Attempt, Difficulty
from dsamaster.db.memory import InMemoryStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
COURSE_ID = "dsa-101"


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (SQLite via SQLAlchemy)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")


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


@pytest.fixture
def now():
    """Fixed reference time used as 'now' by scoring and the updater clock."""
    return NOW


@pytest.fixture
def course_id():
    return COURSE_ID


@pytest.fixture
def settings():
    """Settings with defaults only (ignores any local .env)."""
    return Settings(_env_file=None, log_file=None)


@pytest.fixture
def memory_store():
    """Fresh in-memory store with the default schema."""
    return InMemoryStore()


@pytest.fixture
def make_attempt():
    """
    Factory for attempts.

    Defaults: course dsa-101, session s1, timestamp NOW, Medium difficulty,
    tagged "Trees". ``days_ago`` shifts the timestamp into the past.
    """
    ids = count(1)

    def _make(
        correct: bool = True,
        question_id: str | None = None,
        topic_tags: list[str] | None = None,
        difficulty: Difficulty | None = Difficulty.MEDIUM,
        days_ago: float = 0.0,
        session_id: str = "s1",
        course_id: str = COURSE_ID,
    ) -> Attempt:
        n = next(ids)
        return Attempt(
            attempt_id=f"a{n}",
            session_id=session_id,
            question_id=question_id or f"q{n}",
            course_id=course_id,
            answer=f"answer-{n}",
            correct=correct,
            timestamp=NOW - timedelta(days=days_ago),
            topic_tags=["Trees"] if topic_tags is None else topic_tags,
            difficulty=difficulty,
        )

    return _make

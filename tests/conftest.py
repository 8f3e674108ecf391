"""
Shared test fixtures for the scrape queue.

Provides:
- session_factory: sessionmaker bound to a fresh in-memory SQLite database
- db_session: a session from that factory
- make_queue: builds a ScrapeQueueService with zero delays
"""

import os

# Force sqlite for tests; must be set before any src imports.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.entities.base import Base
import src.entities.scrape_job  # noqa: F401
from src.services.retry_policy import RetryPolicy
from src.services.scrape_queue_service import ScrapeQueueService


@pytest.fixture
def session_factory():
    """In-memory SQLite shared by every session. Never hits a real DB."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_queue(session_factory):
    """Factory for queues that never sleep between jobs or retries."""

    def _make(scrape_fn, **kwargs):
        kwargs.setdefault(
            "retry_policy", RetryPolicy(base_delay_seconds=0, max_delay_seconds=0)
        )
        kwargs.setdefault("job_delay_seconds", 0)
        return ScrapeQueueService(session_factory, scrape_fn, **kwargs)

    return _make

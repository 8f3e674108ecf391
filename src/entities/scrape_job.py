"""
Entity for the persistent scrape job queue.

Each row is one unit of scrape work for a single BoardGameGeek game.
The table is the sole source of truth for job existence and status;
the worker's in-memory state can always be rebuilt from it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.core.config import settings
from src.entities.base import Base


class JobStatus(StrEnum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = (JobStatus.completed, JobStatus.failed, JobStatus.cancelled)
ACTIVE_STATUSES = (JobStatus.pending, JobStatus.processing)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class ScrapeJob(Base):
    """
    One queued scrape of a game's details.

    Lifecycle:  pending -> processing -> completed | failed | pending (retry)
    A pending job can also be cancelled. ``processing`` never survives a
    restart: rows found in that state at startup are reset to pending.
    """

    __tablename__ = "scrape_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    game_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    game_name: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.pending, index=True
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=lambda: settings.SCRAPE_MAX_RETRIES
    )
    batch_id: Mapped[str | None] = mapped_column(
        String(36), nullable=True, index=True
    )

    # Set when a failed attempt is requeued; the job is not claimable before it.
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<ScrapeJob {self.id} game={self.game_id} status={self.status} "
            f"retries={self.retry_count}/{self.max_retries}>"
        )

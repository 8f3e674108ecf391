"""
Repository for the scrape job queue.

All SQL for the scrape_jobs table lives here -- the queue service and
worker must call these methods rather than executing queries directly.

Concurrency note: every state transition is a single UPDATE whose WHERE
clause includes the expected current status (e.g. cancel only touches a
row that is still pending). The store therefore stays consistent when
request threads cancel jobs while the worker is moving them through
processing, without any cross-row transaction.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, List
from sqlalchemy.orm import Session
from sqlalchemy import func, or_, select

from src.core.config import settings
from src.entities.scrape_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobStatus,
    ScrapeJob,
    utcnow,
)
from src.repositories.base_repo import BaseRepository


class ScrapeJobRepository(BaseRepository[ScrapeJob]):
    """
    Repository for scrape job operations.

    Extends BaseRepository with the claim, transition and aggregation
    queries used by the queue.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session=session, model=ScrapeJob)

    def create_job(
        self,
        game_id: str,
        game_name: str,
        batch_id: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> ScrapeJob:
        """
        Create a new scrape job with pending status.

        Args:
            game_id: BGG id of the game to scrape
            game_name: Display name of the game
            batch_id: Batch this job belongs to
            max_retries: Retry ceiling (defaults to settings.SCRAPE_MAX_RETRIES)

        Returns:
            Created ScrapeJob entity
        """
        job = ScrapeJob(
            game_id=game_id,
            game_name=game_name,
            status=JobStatus.pending,
            batch_id=batch_id,
            retry_count=0,
            max_retries=(
                settings.SCRAPE_MAX_RETRIES if max_retries is None else max_retries
            ),
            created_at=utcnow(),
        )
        return self.create(job, commit=True)

    def find_active_for_game(self, game_id: str) -> Optional[ScrapeJob]:
        """Return the pending or processing job for a game, if any."""
        stmt = (
            select(ScrapeJob)
            .where(
                ScrapeJob.game_id == game_id,
                ScrapeJob.status.in_(ACTIVE_STATUSES),
            )
            .order_by(ScrapeJob.created_at)
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    # ==================== Claiming ====================

    def get_next_pending(self, now: Optional[datetime] = None) -> Optional[ScrapeJob]:
        """
        Get the oldest pending job that is due to run (FIFO by created_at).

        Jobs waiting out a retry backoff are skipped until their
        next_attempt_at has passed.
        """
        now = now or utcnow()
        stmt = (
            select(ScrapeJob)
            .where(
                ScrapeJob.status == JobStatus.pending,
                or_(
                    ScrapeJob.next_attempt_at.is_(None),
                    ScrapeJob.next_attempt_at <= now,
                ),
            )
            .order_by(ScrapeJob.created_at)
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def get_next_attempt_time(self) -> Optional[datetime]:
        """Earliest next_attempt_at among pending jobs waiting on a backoff."""
        stmt = select(func.min(ScrapeJob.next_attempt_at)).where(
            ScrapeJob.status == JobStatus.pending,
            ScrapeJob.next_attempt_at.is_not(None),
        )
        return self.session.execute(stmt).scalar_one_or_none()

    # ==================== Transitions ====================

    def mark_processing(self, job_id: str) -> bool:
        """
        Claim a pending job. Returns False if it is no longer pending
        (e.g. it was cancelled between lookup and claim).
        """
        touched = self.update_where(
            [ScrapeJob.id == job_id, ScrapeJob.status == JobStatus.pending],
            {
                "status": JobStatus.processing,
                "started_at": utcnow(),
                "next_attempt_at": None,
            },
        )
        return touched == 1

    def mark_completed(self, job_id: str) -> bool:
        touched = self.update_where(
            [ScrapeJob.id == job_id, ScrapeJob.status == JobStatus.processing],
            {
                "status": JobStatus.completed,
                "completed_at": utcnow(),
                "error": None,
            },
        )
        return touched == 1

    def mark_failed(self, job_id: str, error: str, retry_count: int) -> bool:
        """Terminal failure once retries are exhausted."""
        touched = self.update_where(
            [ScrapeJob.id == job_id, ScrapeJob.status == JobStatus.processing],
            {
                "status": JobStatus.failed,
                "error": error,
                "retry_count": retry_count,
                "completed_at": utcnow(),
            },
        )
        return touched == 1

    def schedule_retry(
        self,
        job_id: str,
        error: str,
        retry_count: int,
        next_attempt_at: datetime,
    ) -> bool:
        """Put a failed job back in the pending pool with a backoff."""
        touched = self.update_where(
            [ScrapeJob.id == job_id, ScrapeJob.status == JobStatus.processing],
            {
                "status": JobStatus.pending,
                "error": error,
                "retry_count": retry_count,
                "started_at": None,
                "next_attempt_at": next_attempt_at,
            },
        )
        return touched == 1

    def cancel_if_pending(self, job_id: str) -> bool:
        """Cancel one job, only if it has not been claimed yet."""
        touched = self.update_where(
            [ScrapeJob.id == job_id, ScrapeJob.status == JobStatus.pending],
            {"status": JobStatus.cancelled, "completed_at": utcnow()},
        )
        return touched == 1

    def cancel_all_pending(self) -> int:
        return self.update_where(
            [ScrapeJob.status == JobStatus.pending],
            {"status": JobStatus.cancelled, "completed_at": utcnow()},
        )

    def reset_processing(self) -> int:
        """
        Return interrupted jobs to the pending pool.

        retry_count is left alone: the attempt never reached a result.
        """
        return self.update_where(
            [ScrapeJob.status == JobStatus.processing],
            {"status": JobStatus.pending, "started_at": None},
        )

    def delete_terminal_before(self, cutoff: datetime) -> int:
        return self.delete_where(
            ScrapeJob.status.in_(TERMINAL_STATUSES),
            ScrapeJob.completed_at < cutoff,
        )

    # ==================== Aggregation ====================

    def count_by_status(self, status: str) -> int:
        return self.count_where(ScrapeJob.status == status)

    def count_grouped_by_status(self, batch_id: Optional[str] = None) -> dict[str, int]:
        """
        Group-count jobs by status, optionally within one batch.

        Statuses with no rows are reported as 0.
        """
        stmt = select(ScrapeJob.status, func.count()).group_by(ScrapeJob.status)
        if batch_id is not None:
            stmt = stmt.where(ScrapeJob.batch_id == batch_id)

        counts = {status.value: 0 for status in JobStatus}
        for status, count in self.session.execute(stmt).all():
            counts[status] = count
        return counts

    def find_active_batch_id(self) -> Optional[str]:
        """Batch id of the oldest pending/processing job that has one."""
        stmt = (
            select(ScrapeJob.batch_id)
            .where(
                ScrapeJob.status.in_(ACTIVE_STATUSES),
                ScrapeJob.batch_id.is_not(None),
            )
            .order_by(ScrapeJob.created_at)
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def get_recent_jobs(self, limit: int = 20) -> List[ScrapeJob]:
        """Most recently created jobs, newest first."""
        stmt = select(ScrapeJob).order_by(ScrapeJob.created_at.desc()).limit(limit)
        return list(self.session.execute(stmt).scalars().all())

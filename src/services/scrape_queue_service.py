"""
Persistent scrape queue.

Callers enqueue games to scrape; jobs are stored in the scrape_jobs table
and processed sequentially by a single background ScrapeWorker. The queue
survives restarts: resume_interrupted_jobs() repairs jobs that were
mid-flight when the previous process died and restarts the worker.

Architecture:
    ScrapeQueueService -> ScrapeJobRepository -> scrape_jobs table
    ScrapeQueueService -> ScrapeWorker        -> scrape_fn(game_id)

Job lifecycle:  pending -> processing -> completed
                                      -> pending (retry, after backoff)
                                      -> failed  (retries exhausted)
                pending -> cancelled
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy.orm import Session, sessionmaker

from src.core.config import settings
from src.dtos.scrape_job_dto import (
    CancelQueueResult,
    GameRef,
    QueueStatus,
    ScrapeJobRead,
)
from src.entities.scrape_job import JobStatus, utcnow
from src.repositories.scrape_job_repo import ScrapeJobRepository
from src.services import batch_tracker
from src.services.retry_policy import RetryPolicy
from src.services.scrape_worker import ScrapeFn, ScrapeWorker

logger = logging.getLogger(__name__)


def new_batch_id() -> str:
    return str(uuid.uuid4())


class ScrapeQueueService:
    """
    Queue controller: the public operations on the scrape queue.

    enqueue/enqueue_many are coroutines because they may start the worker
    task on the running event loop. The remaining operations only touch the
    store and read the worker's flags, so they are plain methods that are
    safe to call from request threads while the worker runs.

    Store calls in the coroutines run directly on the event loop, so the
    duplicate check and insert in enqueue cannot interleave with the worker.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        scrape_fn: ScrapeFn,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        job_delay_seconds: float = settings.SCRAPE_JOB_DELAY_SECONDS,
        retention_days: int = settings.SCRAPE_JOB_RETENTION_DAYS,
        recent_jobs_limit: int = settings.SCRAPE_RECENT_JOBS_LIMIT,
    ) -> None:
        self._session_factory = session_factory
        self.worker = ScrapeWorker(
            session_factory,
            scrape_fn,
            retry_policy=retry_policy,
            job_delay_seconds=job_delay_seconds,
        )
        self.retention_days = retention_days
        self.recent_jobs_limit = recent_jobs_limit

    # ==================== Enqueue ====================

    async def enqueue(
        self, game_id: str, game_name: str, batch_id: Optional[str] = None
    ) -> ScrapeJobRead:
        """
        Add a game to the scrape queue.

        If the game already has a pending or processing job, that job is
        returned unchanged. Otherwise a new pending job is created in
        ``batch_id``, the worker's active batch, or a fresh batch, and the
        worker is started if idle (without waiting for it).

        Raises:
            ValueError: If game_id is empty
        """
        if not game_id:
            raise ValueError("game_id cannot be empty")

        session = self._session_factory()
        try:
            repo = ScrapeJobRepository(session)
            existing = repo.find_active_for_game(game_id)
            if existing is not None:
                logger.debug("Game %s already queued as job %s", game_id, existing.id)
                return ScrapeJobRead.model_validate(existing)

            batch_id = batch_id or self.worker.active_batch_id or new_batch_id()
            job = repo.create_job(game_id, game_name, batch_id=batch_id)
            created = ScrapeJobRead.model_validate(job)
        finally:
            session.close()

        logger.info("Queued scrape: %s (%s)", game_name, game_id)
        self.worker.adopt_batch(batch_id)
        if not self.worker.start():
            self.worker.notify()
        return created

    async def enqueue_many(self, games: Iterable[GameRef]) -> list[ScrapeJobRead]:
        """
        Queue several games as one batch, in the given order.

        Games already queued keep their existing job (and batch).
        """
        games = list(games)
        if not games:
            return []

        batch_id = new_batch_id()
        jobs = []
        for game in games:
            jobs.append(await self.enqueue(game.id, game.name, batch_id=batch_id))
        logger.info("Queued batch %s with %d games", batch_id, len(jobs))
        return jobs

    # ==================== Status ====================

    def get_job(self, job_id: str) -> Optional[ScrapeJobRead]:
        session = self._session_factory()
        try:
            job = ScrapeJobRepository(session).get_by_id(job_id)
            return ScrapeJobRead.model_validate(job) if job else None
        finally:
            session.close()

    def get_queue_status(self) -> QueueStatus:
        """Snapshot of the worker flags, global counts, recent jobs and active batch."""
        worker = self.worker
        current_job_id = worker.current_job_id
        active_batch_id = worker.active_batch_id

        session = self._session_factory()
        try:
            repo = ScrapeJobRepository(session)
            counts = repo.count_grouped_by_status()
            recent = repo.get_recent_jobs(self.recent_jobs_limit)
            current = repo.get_by_id(current_job_id) if current_job_id else None

            batch_id = active_batch_id or batch_tracker.find_active_batch_id(repo)
            current_batch = None
            if batch_id is not None:
                current_batch = batch_tracker.get_batch_stats(repo, batch_id)

            return QueueStatus(
                is_processing=worker.is_running,
                is_stopping=worker.stop_requested,
                current_job=ScrapeJobRead.model_validate(current) if current else None,
                pending_count=counts[JobStatus.pending],
                completed_count=counts[JobStatus.completed],
                failed_count=counts[JobStatus.failed],
                cancelled_count=counts[JobStatus.cancelled],
                recent_jobs=[ScrapeJobRead.model_validate(j) for j in recent],
                current_batch=current_batch,
            )
        finally:
            session.close()

    # ==================== Cancellation ====================

    def cancel_queue(self) -> CancelQueueResult:
        """
        Cancel every pending job and stop the worker after its current job.

        The in-flight job is never interrupted.
        """
        session = self._session_factory()
        try:
            cancelled = ScrapeJobRepository(session).cancel_all_pending()
        finally:
            session.close()

        logger.info("Cancelled %d pending jobs", cancelled)
        stopping = self.worker.request_stop()
        return CancelQueueResult(cancelled=cancelled, stopping=stopping)

    def cancel_job(self, job_id: str) -> bool:
        """Cancel one job if it is still pending. Returns whether it was cancelled."""
        session = self._session_factory()
        try:
            cancelled = ScrapeJobRepository(session).cancel_if_pending(job_id)
        finally:
            session.close()

        if cancelled:
            logger.info("Cancelled job %s", job_id)
        return cancelled

    # ==================== Startup / maintenance ====================

    async def resume_interrupted_jobs(self) -> None:
        """
        Repair the queue after a restart. Call once at startup.

        Jobs left in processing by a dead process go back to pending
        (retry count untouched), the worker is started if anything is
        pending, then old terminal jobs are swept.
        """
        session = self._session_factory()
        try:
            repo = ScrapeJobRepository(session)
            interrupted = repo.reset_processing()
            if interrupted:
                logger.info("Reset %d interrupted jobs to pending", interrupted)
            pending = repo.count_by_status(JobStatus.pending)
        finally:
            session.close()

        if pending > 0:
            logger.info("Resuming %d pending jobs...", pending)
            self.worker.start()

        self.cleanup_old_jobs()

    def cleanup_old_jobs(self) -> int:
        """Delete terminal jobs that finished more than retention_days ago."""
        cutoff = utcnow() - timedelta(days=self.retention_days)
        session = self._session_factory()
        try:
            deleted = ScrapeJobRepository(session).delete_terminal_before(cutoff)
        finally:
            session.close()

        if deleted:
            logger.info("Cleaned up %d old jobs", deleted)
        return deleted

    async def join(self) -> None:
        await self.worker.join()

    async def shutdown(self, timeout: float = 30.0) -> None:
        await self.worker.shutdown(timeout=timeout)

"""
Background worker that drains the scrape queue.

One ScrapeWorker per process owns all in-memory queue state (running flag,
current job, stop flag, active batch) and the asyncio task that runs the
loop. Everything it knows about jobs comes from the scrape_jobs table, so
a fresh worker can pick up where a crashed one left off.

Loop, one job at a time:
    stop requested?            -> exit
    claim oldest due pending   -> none due: wait for a backoff or a wakeup, or exit
    scrape(game_id)            -> completed | pending (retry) | failed
    courtesy delay             -> loop
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from src.core.config import settings
from src.entities.scrape_job import utcnow
from src.repositories.scrape_job_repo import ScrapeJobRepository
from src.services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

ScrapeFn = Callable[[str], Awaitable[bool]]


class ScrapeWorker:
    """Single background loop that claims and executes scrape jobs."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        scrape_fn: ScrapeFn,
        retry_policy: Optional[RetryPolicy] = None,
        job_delay_seconds: float = settings.SCRAPE_JOB_DELAY_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._scrape_fn = scrape_fn
        self.retry_policy = retry_policy or RetryPolicy()
        self.job_delay_seconds = job_delay_seconds

        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self.is_running = False
        self.stop_requested = False
        self.current_job_id: Optional[str] = None
        self.active_batch_id: Optional[str] = None

    def start(self) -> bool:
        """
        Spawn the loop on the running event loop.

        No-op (returns False) while a loop is already active, so concurrent
        enqueues can never start a second worker.
        """
        if self.is_running:
            return False
        self.is_running = True
        self.stop_requested = False
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._task = self._loop.create_task(
            self._run(), name="scrape-queue-worker"
        )
        return True

    def request_stop(self) -> bool:
        """Ask the loop to exit after the in-flight job. Returns whether it was running."""
        if not self.is_running:
            return False
        self.stop_requested = True
        logger.info("Stop requested - worker will stop after current job")
        self.notify()
        return True

    def notify(self) -> None:
        """
        Wake the loop if it is waiting for a retry to become due.

        Safe to call from request threads as well as from the event loop.
        """
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wakeup.set()
        else:
            loop.call_soon_threadsafe(wakeup.set)

    def adopt_batch(self, batch_id: str) -> None:
        if self.active_batch_id is None:
            self.active_batch_id = batch_id

    async def join(self) -> None:
        """Wait for the current loop (if any) to finish."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop after the in-flight job; cancel the task if it overruns ``timeout``."""
        task = self._task
        if task is None or task.done():
            return
        self.request_stop()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Worker did not stop within %.1fs, cancelling", timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ==================== Loop ====================

    async def _run(self) -> None:
        logger.info("Scrape worker started")
        try:
            while True:
                if self.stop_requested:
                    logger.info("Stop requested, stopping worker")
                    break

                claimed = self._claim_next()
                if claimed is None:
                    wait = self._seconds_until_next_attempt()
                    if wait is None:
                        break  # queue drained
                    logger.debug("Waiting %.2fs for the next retry to become due", wait)
                    await self._wait_for_wakeup(wait)
                    continue

                await self._process(*claimed)
                self.current_job_id = None

                await asyncio.sleep(self.job_delay_seconds)
        except Exception:
            logger.exception("Scrape worker stopped on unexpected error")
        finally:
            self.is_running = False
            self.current_job_id = None
            self.stop_requested = False
            self.active_batch_id = None
            logger.info("Scrape worker idle")

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Sleep until ``timeout`` elapses, a job is enqueued, or a stop is requested."""
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    def _claim_next(self) -> Optional[tuple[str, str, str, int, int]]:
        """Move the oldest due pending job to processing and return its fields."""
        session = self._session_factory()
        try:
            repo = ScrapeJobRepository(session)
            while True:
                job = repo.get_next_pending()
                if job is None:
                    return None
                fields = (
                    job.id,
                    job.game_id,
                    job.game_name,
                    job.retry_count,
                    job.max_retries,
                )
                batch_id = job.batch_id
                if repo.mark_processing(job.id):
                    break
                # Cancelled between lookup and claim; try the next one.

            self.current_job_id = fields[0]
            if batch_id is not None and batch_id != self.active_batch_id:
                self.active_batch_id = batch_id
            return fields
        finally:
            session.close()

    def _seconds_until_next_attempt(self) -> Optional[float]:
        session = self._session_factory()
        try:
            next_at = ScrapeJobRepository(session).get_next_attempt_time()
        finally:
            session.close()
        if next_at is None:
            return None
        return max((next_at - utcnow()).total_seconds(), 0.0)

    async def _process(
        self,
        job_id: str,
        game_id: str,
        game_name: str,
        retry_count: int,
        max_retries: int,
    ) -> None:
        logger.info("Processing: %s (%s)", game_name, game_id)

        error: Optional[str] = None
        try:
            if not await self._scrape_fn(game_id):
                error = "Scrape returned false"
        except Exception as exc:
            logger.warning("Error scraping %s: %s", game_name, exc, exc_info=True)
            error = str(exc) or exc.__class__.__name__

        session = self._session_factory()
        try:
            repo = ScrapeJobRepository(session)
            if error is None:
                repo.mark_completed(job_id)
                logger.info("Completed: %s", game_name)
                return

            decision = self.retry_policy.decide(retry_count, max_retries, error)
            if decision.should_retry:
                repo.schedule_retry(
                    job_id,
                    decision.error,
                    decision.retry_count,
                    utcnow() + timedelta(seconds=decision.delay_seconds),
                )
                logger.warning(
                    "Retry %d/%d for %s in %.1fs: %s",
                    decision.retry_count,
                    max_retries,
                    game_name,
                    decision.delay_seconds,
                    error,
                )
            else:
                repo.mark_failed(job_id, decision.error, decision.retry_count)
                logger.error("Failed: %s - %s", game_name, decision.error)
        finally:
            session.close()

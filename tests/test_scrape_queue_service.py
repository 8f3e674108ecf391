"""
Tests for the scrape queue service and its background worker.

These run the real worker loop against in-memory SQLite with zero delays;
the scrape routine is a stub that records the games it was called with.
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from src.dtos.scrape_job_dto import GameRef
from src.entities.scrape_job import JobStatus, ScrapeJob, utcnow
from src.repositories.scrape_job_repo import ScrapeJobRepository
from src.services.retry_policy import RetryPolicy


class RecordingScraper:
    """Scrape stub: records calls, returns per-game outcomes, can block on a gate."""

    def __init__(self, outcomes=None, gated=()):
        self.calls = []
        self.outcomes = outcomes or {}
        self.gated = set(gated)
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def __call__(self, game_id):
        self.calls.append(game_id)
        if game_id in self.gated:
            self.started.set()
            await self.gate.wait()
        outcome = self.outcomes.get(game_id, True)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else True
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _count_rows(session_factory):
    session = session_factory()
    try:
        return ScrapeJobRepository(session).count_where()
    finally:
        session.close()


async def _wait_until(predicate, timeout=1.0):
    """Poll predicate on the event loop until it holds or timeout elapses."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _insert(session_factory, **fields):
    session = session_factory()
    try:
        job = ScrapeJob(game_name=f"Game {fields['game_id']}", **fields)
        return ScrapeJobRepository(session).create(job).id
    finally:
        session.close()


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent_while_active(self, make_queue, session_factory):
        """Enqueueing a game that is already pending returns the same job."""
        queue = make_queue(RecordingScraper())

        first = await queue.enqueue("13", "Catan")
        second = await queue.enqueue("13", "Catan")

        assert first.id == second.id
        assert first.status == JobStatus.pending
        assert _count_rows(session_factory) == 1

        await queue.join()

    @pytest.mark.asyncio
    async def test_enqueue_while_processing_returns_existing(self, make_queue, session_factory):
        scraper = RecordingScraper(gated={"13"})
        queue = make_queue(scraper)

        first = await queue.enqueue("13", "Catan")
        await asyncio.wait_for(scraper.started.wait(), timeout=1)

        again = await queue.enqueue("13", "Catan")

        assert again.id == first.id
        assert again.status == JobStatus.processing
        assert _count_rows(session_factory) == 1

        scraper.gate.set()
        await queue.join()

    @pytest.mark.asyncio
    async def test_enqueue_after_completion_creates_new_job(self, make_queue, session_factory):
        queue = make_queue(RecordingScraper())

        first = await queue.enqueue("13", "Catan")
        await queue.join()
        second = await queue.enqueue("13", "Catan")
        await queue.join()

        assert second.id != first.id
        assert _count_rows(session_factory) == 2

    @pytest.mark.asyncio
    async def test_enqueue_rejects_empty_game_id(self, make_queue):
        queue = make_queue(RecordingScraper())

        with pytest.raises(ValueError, match="game_id cannot be empty"):
            await queue.enqueue("", "Nothing")

    @pytest.mark.asyncio
    async def test_enqueue_starts_worker_in_background(self, make_queue):
        """enqueue returns before the scrape runs."""
        scraper = RecordingScraper()
        queue = make_queue(scraper)

        job = await queue.enqueue("13", "Catan")

        assert queue.worker.is_running
        assert scraper.calls == []
        assert job.status == JobStatus.pending

        await queue.join()

        assert scraper.calls == ["13"]
        assert queue.get_job(job.id).status == JobStatus.completed
        assert not queue.worker.is_running

    @pytest.mark.asyncio
    async def test_single_enqueues_share_the_active_batch(self, make_queue):
        queue = make_queue(RecordingScraper())

        first = await queue.enqueue("1", "One")
        second = await queue.enqueue("2", "Two")

        assert first.batch_id is not None
        assert second.batch_id == first.batch_id

        await queue.join()

    @pytest.mark.asyncio
    async def test_enqueue_many_empty(self, make_queue):
        queue = make_queue(RecordingScraper())

        assert await queue.enqueue_many([]) == []
        assert not queue.worker.is_running


class TestWorkerLoop:
    @pytest.mark.asyncio
    async def test_fifo_claim_order(self, make_queue):
        scraper = RecordingScraper()
        queue = make_queue(scraper)

        await queue.enqueue("A", "First")
        await queue.enqueue("B", "Second")
        await queue.join()

        assert scraper.calls == ["A", "B"]

    @pytest.mark.asyncio
    async def test_retry_bound(self, make_queue):
        """A job that always fails is retried max_retries times, then fails."""
        scraper = RecordingScraper(outcomes={"13": False})
        queue = make_queue(scraper)

        job = await queue.enqueue("13", "Catan")
        await queue.join()

        final = queue.get_job(job.id)
        assert scraper.calls == ["13"] * 4
        assert final.status == JobStatus.failed
        assert final.retry_count == final.max_retries == 3
        assert final.error == "Failed after 4 attempts: Scrape returned false"
        assert final.completed_at is not None

    @pytest.mark.asyncio
    async def test_exception_is_treated_as_failure(self, make_queue):
        scraper = RecordingScraper(outcomes={"13": [RuntimeError("BGG down")]})
        queue = make_queue(scraper)

        job = await queue.enqueue("13", "Catan")
        await queue.join()

        final = queue.get_job(job.id)
        assert final.status == JobStatus.completed
        assert final.retry_count == 1
        assert final.error is None

    @pytest.mark.asyncio
    async def test_backoff_does_not_block_other_jobs(self, make_queue):
        """While A waits out its backoff, B is processed."""
        scraper = RecordingScraper(outcomes={"A": [False, True]})
        queue = make_queue(
            scraper, retry_policy=RetryPolicy(base_delay_seconds=0.2, max_delay_seconds=1)
        )

        await queue.enqueue("A", "Slow")
        await queue.enqueue("B", "Fast")
        await queue.join()

        assert scraper.calls == ["A", "B", "A"]
        assert queue.get_queue_status().completed_count == 2

    @pytest.mark.asyncio
    async def test_new_job_runs_while_another_waits_on_backoff(self, make_queue):
        """B, enqueued during A's backoff, is scraped before A's retry is due."""
        scraper = RecordingScraper(outcomes={"A": [False, True]})
        queue = make_queue(
            scraper, retry_policy=RetryPolicy(base_delay_seconds=2, max_delay_seconds=2)
        )

        a = await queue.enqueue("A", "Slow")
        await _wait_until(lambda: queue.get_job(a.id).retry_count == 1)

        b = await queue.enqueue("B", "Fast")
        await _wait_until(lambda: queue.get_job(b.id).status == JobStatus.completed)

        assert scraper.calls == ["A", "B"]
        assert queue.get_job(a.id).status == JobStatus.pending
        assert queue.worker.is_running

        await queue.shutdown(timeout=1)

    @pytest.mark.asyncio
    async def test_start_is_noop_while_running(self, make_queue):
        queue = make_queue(RecordingScraper())
        await queue.enqueue("13", "Catan")

        assert queue.worker.start() is False

        await queue.join()

    @pytest.mark.asyncio
    async def test_store_error_ends_loop_and_clears_state(self, make_queue):
        queue = make_queue(RecordingScraper())

        with patch.object(
            ScrapeJobRepository, "get_next_pending", side_effect=RuntimeError("db down")
        ):
            assert queue.worker.start() is True
            await queue.join()

        assert not queue.worker.is_running
        assert queue.worker.current_job_id is None
        assert queue.worker.start() is True
        await queue.join()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_queue_lets_current_job_finish(self, make_queue):
        scraper = RecordingScraper(gated={"X"})
        queue = make_queue(scraper)

        x = await queue.enqueue("X", "In flight")
        y = await queue.enqueue("Y", "Waiting")
        await asyncio.wait_for(scraper.started.wait(), timeout=1)

        result = queue.cancel_queue()

        assert result.cancelled == 1
        assert result.stopping is True
        assert queue.get_job(y.id).status == JobStatus.cancelled
        assert queue.get_job(y.id).completed_at is not None
        assert queue.get_job(x.id).status == JobStatus.processing

        status = queue.get_queue_status()
        assert status.is_stopping is True
        assert status.current_job.id == x.id

        scraper.gate.set()
        await queue.join()

        assert queue.get_job(x.id).status == JobStatus.completed
        assert scraper.calls == ["X"]
        assert not queue.worker.is_running
        assert not queue.worker.stop_requested

    @pytest.mark.asyncio
    async def test_cancel_queue_stops_worker_waiting_on_backoff(self, make_queue):
        scraper = RecordingScraper(outcomes={"A": [False, True]})
        queue = make_queue(
            scraper, retry_policy=RetryPolicy(base_delay_seconds=5, max_delay_seconds=5)
        )

        a = await queue.enqueue("A", "Slow")
        await _wait_until(lambda: queue.get_job(a.id).retry_count == 1)

        result = queue.cancel_queue()

        assert result.cancelled == 1
        assert result.stopping is True
        await asyncio.wait_for(queue.join(), timeout=1)

        status = queue.get_queue_status()
        assert status.is_processing is False
        assert status.is_stopping is False
        assert queue.get_job(a.id).status == JobStatus.cancelled
        assert scraper.calls == ["A"]

    @pytest.mark.asyncio
    async def test_cancel_queue_when_idle(self, make_queue, session_factory):
        queue = make_queue(RecordingScraper())
        _insert(session_factory, game_id="1", status=JobStatus.pending, created_at=utcnow())

        result = queue.cancel_queue()

        assert result.cancelled == 1
        assert result.stopping is False

    @pytest.mark.asyncio
    async def test_cancel_job_only_when_pending(self, make_queue):
        scraper = RecordingScraper(gated={"X"})
        queue = make_queue(scraper)

        x = await queue.enqueue("X", "In flight")
        y = await queue.enqueue("Y", "Waiting")
        await asyncio.wait_for(scraper.started.wait(), timeout=1)

        assert queue.cancel_job(y.id) is True
        assert queue.cancel_job(y.id) is False
        assert queue.cancel_job(x.id) is False
        assert queue.cancel_job("missing") is False

        scraper.gate.set()
        await queue.join()

        assert scraper.calls == ["X"]
        assert queue.get_job(y.id).status == JobStatus.cancelled


class TestRecovery:
    @pytest.mark.asyncio
    async def test_resume_resets_processing_jobs(self, make_queue, session_factory):
        job_id = _insert(
            session_factory,
            game_id="13",
            status=JobStatus.processing,
            created_at=utcnow(),
            started_at=utcnow(),
            retry_count=1,
        )
        scraper = RecordingScraper()
        queue = make_queue(scraper)

        await queue.resume_interrupted_jobs()

        reset = queue.get_job(job_id)
        assert reset.status == JobStatus.pending
        assert reset.started_at is None
        assert reset.retry_count == 1
        assert queue.worker.is_running

        await queue.join()

        assert scraper.calls == ["13"]
        assert queue.get_job(job_id).status == JobStatus.completed

    @pytest.mark.asyncio
    async def test_resume_with_nothing_pending_stays_idle(self, make_queue):
        queue = make_queue(RecordingScraper())

        await queue.resume_interrupted_jobs()

        assert not queue.worker.is_running

    @pytest.mark.asyncio
    async def test_shutdown_mid_job_then_recover(self, make_queue):
        """A job cut off by shutdown is left processing and repaired on restart."""
        scraper = RecordingScraper(gated={"13"})
        queue = make_queue(scraper)

        job = await queue.enqueue("13", "Catan")
        await asyncio.wait_for(scraper.started.wait(), timeout=1)
        await queue.shutdown(timeout=0.05)

        assert not queue.worker.is_running
        assert queue.get_job(job.id).status == JobStatus.processing

        restarted_scraper = RecordingScraper()
        restarted = make_queue(restarted_scraper)
        await restarted.resume_interrupted_jobs()
        await restarted.join()

        assert restarted_scraper.calls == ["13"]
        assert restarted.get_job(job.id).status == JobStatus.completed

    @pytest.mark.asyncio
    async def test_cleanup_old_jobs(self, make_queue, session_factory):
        old = utcnow() - timedelta(days=8)
        _insert(session_factory, game_id="1", status=JobStatus.completed, created_at=old, completed_at=old)
        _insert(session_factory, game_id="2", status=JobStatus.failed, created_at=old, completed_at=utcnow())
        queue = make_queue(RecordingScraper())

        assert queue.cleanup_old_jobs() == 1
        assert _count_rows(session_factory) == 1

    @pytest.mark.asyncio
    async def test_resume_sweeps_old_terminal_jobs(self, make_queue, session_factory):
        old = utcnow() - timedelta(days=8)
        _insert(session_factory, game_id="1", status=JobStatus.completed, created_at=old, completed_at=old)
        _insert(session_factory, game_id="2", status=JobStatus.cancelled, created_at=old, completed_at=utcnow())
        queue = make_queue(RecordingScraper())

        await queue.resume_interrupted_jobs()

        assert _count_rows(session_factory) == 1
        assert not queue.worker.is_running


class TestQueueStatus:
    @pytest.mark.asyncio
    async def test_batch_aggregation(self, make_queue):
        scraper = RecordingScraper(outcomes={"g3": False}, gated={"g4"})
        queue = make_queue(scraper)

        jobs = await queue.enqueue_many(
            [GameRef(id=f"g{i}", name=f"Game {i}") for i in range(1, 6)]
        )

        assert len(jobs) == 5
        assert len({job.batch_id for job in jobs}) == 1

        await asyncio.wait_for(scraper.started.wait(), timeout=1)
        batch = queue.get_queue_status().current_batch

        assert batch.batch_id == jobs[0].batch_id
        assert batch.total == 5
        assert batch.completed == 2
        assert batch.failed == 1
        assert batch.processing == 1
        assert batch.pending == 1

        scraper.gate.set()
        await queue.join()

        assert queue.get_queue_status().current_batch is None

    @pytest.mark.asyncio
    async def test_status_counts_and_recent_jobs(self, make_queue, session_factory):
        now = utcnow()
        for minutes, game_id, status in [
            (3, "1", JobStatus.completed),
            (2, "2", JobStatus.failed),
            (1, "3", JobStatus.cancelled),
        ]:
            _insert(
                session_factory,
                game_id=game_id,
                status=status,
                created_at=now - timedelta(minutes=minutes),
                completed_at=now,
            )
        queue = make_queue(RecordingScraper(), recent_jobs_limit=2)

        status = queue.get_queue_status()

        assert status.is_processing is False
        assert status.is_stopping is False
        assert status.current_job is None
        assert status.pending_count == 0
        assert status.completed_count == 1
        assert status.failed_count == 1
        assert status.cancelled_count == 1
        assert [job.game_id for job in status.recent_jobs] == ["3", "2"]
        assert status.current_batch is None

    @pytest.mark.asyncio
    async def test_example_scenario(self, make_queue):
        """Catan succeeds; Gloomhaven throws once, is retried, then succeeds."""
        scraper = RecordingScraper(outcomes={"174430": [RuntimeError("timeout")]})
        queue = make_queue(
            scraper, retry_policy=RetryPolicy(base_delay_seconds=0.01, max_delay_seconds=1)
        )

        jobs = await queue.enqueue_many(
            [GameRef(id="13", name="Catan"), GameRef(id="174430", name="Gloomhaven")]
        )

        assert [job.status for job in jobs] == [JobStatus.pending, JobStatus.pending]
        assert jobs[0].batch_id == jobs[1].batch_id

        await queue.join()

        assert scraper.calls == ["13", "174430", "174430"]
        gloomhaven = queue.get_job(jobs[1].id)
        assert gloomhaven.status == JobStatus.completed
        assert gloomhaven.retry_count == 1

        status = queue.get_queue_status()
        assert status.completed_count >= 2
        assert status.pending_count == 0
        assert status.is_processing is False

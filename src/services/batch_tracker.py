"""
Batch progress derived from the scrape_jobs table.

There is no batch table: a batch is every job sharing a batch_id.
"""

from __future__ import annotations

from typing import Optional

from src.dtos.scrape_job_dto import BatchStats
from src.entities.scrape_job import JobStatus
from src.repositories.scrape_job_repo import ScrapeJobRepository


def get_batch_stats(repo: ScrapeJobRepository, batch_id: str) -> BatchStats:
    counts = repo.count_grouped_by_status(batch_id=batch_id)
    return BatchStats(
        batch_id=batch_id,
        total=sum(counts.values()),
        completed=counts[JobStatus.completed],
        failed=counts[JobStatus.failed],
        pending=counts[JobStatus.pending],
        processing=counts[JobStatus.processing],
        cancelled=counts[JobStatus.cancelled],
    )


def find_active_batch_id(repo: ScrapeJobRepository) -> Optional[str]:
    return repo.find_active_batch_id()

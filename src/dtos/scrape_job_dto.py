"""
DTOs for the scrape queue.

These are the plain serializable records handed to callers polling the
queue; they are built from ORM rows while the session is still open.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from src.entities.scrape_job import JobStatus


class GameRef(BaseModel):
    """A game to queue, as sent by callers."""

    id: str = Field(..., min_length=1, max_length=32, description="BGG game id")
    name: str = Field(..., min_length=1, max_length=255, description="Display name")


class EnqueueRequest(BaseModel):
    game_id: str = Field(..., min_length=1, max_length=32)
    game_name: str = Field(..., min_length=1, max_length=255)
    batch_id: str | None = Field(default=None, max_length=36)


class EnqueueManyRequest(BaseModel):
    games: list[GameRef] = Field(default_factory=list)


class ScrapeJobRead(BaseModel):
    """DTO for reading a scrape job."""

    id: str
    game_id: str
    game_name: str
    status: JobStatus
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    max_retries: int
    batch_id: str | None = None
    next_attempt_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class BatchStats(BaseModel):
    """Aggregate progress of the jobs sharing one batch id."""

    batch_id: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    processing: int = 0
    cancelled: int = 0

    @property
    def is_active(self) -> bool:
        return self.pending > 0 or self.processing > 0


class QueueStatus(BaseModel):
    is_processing: bool
    is_stopping: bool
    current_job: ScrapeJobRead | None = None
    pending_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    recent_jobs: list[ScrapeJobRead] = Field(default_factory=list)
    current_batch: BatchStats | None = None


class CancelQueueResult(BaseModel):
    cancelled: int
    stopping: bool

from fastapi import APIRouter, Depends, HTTPException, Request

from src.core.auth import verify_api_key
from src.dtos.scrape_job_dto import (
    EnqueueManyRequest,
    EnqueueRequest,
    QueueStatus,
    ScrapeJobRead,
)
from src.services.scrape_queue_service import ScrapeQueueService

router = APIRouter(prefix="/api/v1/scrape-queue", tags=["scrape-queue"])


def get_scrape_queue(request: Request) -> ScrapeQueueService:
    """The process-wide queue created by the application lifespan."""
    return request.app.state.scrape_queue


@router.get("", response_model=QueueStatus)
def get_queue_status(queue: ScrapeQueueService = Depends(get_scrape_queue)):
    return queue.get_queue_status()


@router.post("/cancel", dependencies=[Depends(verify_api_key)])
def cancel_queue(queue: ScrapeQueueService = Depends(get_scrape_queue)):
    result = queue.cancel_queue()
    message = f"Cancelled {result.cancelled} pending jobs."
    if result.stopping:
        message += " Current job will complete, then worker stops."
    return {"success": True, "message": message, **result.model_dump()}


@router.delete("", dependencies=[Depends(verify_api_key)])
def cleanup_old_jobs(queue: ScrapeQueueService = Depends(get_scrape_queue)):
    return {"success": True, "cleaned": queue.cleanup_old_jobs()}


@router.post("/jobs", response_model=ScrapeJobRead, dependencies=[Depends(verify_api_key)])
async def enqueue_job(
    body: EnqueueRequest,
    queue: ScrapeQueueService = Depends(get_scrape_queue),
):
    return await queue.enqueue(body.game_id, body.game_name, batch_id=body.batch_id)


@router.post("/batches", dependencies=[Depends(verify_api_key)])
async def enqueue_batch(
    body: EnqueueManyRequest,
    queue: ScrapeQueueService = Depends(get_scrape_queue),
):
    jobs = await queue.enqueue_many(body.games)
    batch_ids = {job.batch_id for job in jobs}
    return {
        "success": True,
        "queued": len(jobs),
        "batch_id": batch_ids.pop() if len(batch_ids) == 1 else None,
        "jobs": [job.model_dump(mode="json") for job in jobs],
    }


@router.get("/jobs/{job_id}", response_model=ScrapeJobRead)
def get_job(job_id: str, queue: ScrapeQueueService = Depends(get_scrape_queue)):
    job = queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


@router.post("/jobs/{job_id}/cancel", dependencies=[Depends(verify_api_key)])
def cancel_job(job_id: str, queue: ScrapeQueueService = Depends(get_scrape_queue)):
    if not queue.cancel_job(job_id):
        raise HTTPException(
            status_code=409, detail=f"Job {job_id} is not pending and cannot be cancelled"
        )
    return {"cancelled": True}

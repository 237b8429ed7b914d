"""
Retry queue API routes.

Lets operators inspect scheduled retries and the dead-letter list, and
requeue a dead-lettered entry.
"""
from fastapi import APIRouter, Depends, Query

from glassops.dependencies.services import get_retry_queue
from glassops.routes.transactions import retry_entry_to_response
from glassops.services.retry_queue import RetryQueueService


router = APIRouter(prefix="/api/retry-queue", tags=["retry-queue"])


@router.get("", response_model=dict)
async def list_retry_entries(
    dead_letter: bool | None = Query(None, alias="deadLetter"),
    limit: int = Query(100, ge=1, le=500),
    queue: RetryQueueService = Depends(get_retry_queue),
):
    """List retry entries, soonest first. deadLetter filters either way."""
    entries = await queue.list_entries(dead_letter=dead_letter, limit=limit)
    return {"entries": [retry_entry_to_response(entry) for entry in entries]}


@router.get("/stats", response_model=dict)
async def retry_queue_stats(queue: RetryQueueService = Depends(get_retry_queue)):
    stats = await queue.stats()
    return {
        "active": stats["active"],
        "due": stats["due"],
        "inFlight": stats["in_flight"],
        "deadLetter": stats["dead_letter"],
    }


@router.post("/{entry_id}/requeue", response_model=dict)
async def requeue_entry(
    entry_id: int,
    queue: RetryQueueService = Depends(get_retry_queue),
):
    """Give a dead-lettered entry a fresh attempt budget."""
    entry = await queue.requeue_dead_letter(entry_id)
    return {"success": True, "entry": retry_entry_to_response(entry)}

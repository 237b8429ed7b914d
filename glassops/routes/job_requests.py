"""
Job request API routes.

Create dispatch requests, record subcontractor responses and inspect or
cancel a request.
"""
from datetime import date, datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from glassops.dependencies.services import get_scheduler
from glassops.models.subcontractor import JobRequest, ResponseType, SubcontractorResponse
from glassops.services.scheduler import DispatchScheduler, SchedulingRequest


router = APIRouter(prefix="/api/job-requests", tags=["job-requests"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateJobRequest(CamelModel):
    """Request model for creating a job request."""
    customer_location: str
    service_type: str = "windshield"
    transaction_id: int | None = None
    vin: str = ""
    preferred_date: date | None = None
    preferred_time_slot: str | None = None
    special_instructions: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    vehicle: str | None = None


class SubmitResponseRequest(CamelModel):
    """Request model for a subcontractor response."""
    job_request_id: int
    subcontractor_id: int
    response: ResponseType
    proposed_slot: str | None = None
    proposed_date: datetime | None = None
    notes: str | None = None


def _iso(value):
    return value.isoformat() if value else None


def job_request_to_response(job_request: JobRequest) -> dict:
    """Convert JobRequest model to its API shape."""
    return {
        "id": job_request.id,
        "transactionId": job_request.transaction_id,
        "vin": job_request.vin,
        "customerLocation": job_request.customer_location,
        "serviceType": job_request.service_type,
        "preferredDate": _iso(job_request.preferred_date),
        "preferredTimeSlot": job_request.preferred_time_slot,
        "targetDate": _iso(job_request.target_date),
        "status": getattr(job_request.status, "value", job_request.status),
        "assignedSubcontractorId": job_request.assigned_subcontractor_id,
        "assignedDate": _iso(job_request.assigned_date),
        "estimatedDuration": job_request.estimated_duration,
        "specialInstructions": job_request.special_instructions,
        "requestedAt": _iso(job_request.requested_at),
    }


def response_to_dict(response: SubcontractorResponse) -> dict:
    return {
        "id": response.id,
        "jobRequestId": response.job_request_id,
        "subcontractorId": response.subcontractor_id,
        "response": getattr(response.response, "value", response.response),
        "availableTimeSlots": response.available_time_slots or [],
        "proposedDate": _iso(response.proposed_date),
        "notes": response.notes,
        "respondedAt": _iso(response.responded_at),
    }


@router.post("", status_code=status.HTTP_201_CREATED, response_model=dict)
async def create_job_request(
    request: CreateJobRequest,
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    """
    Create a job request and notify every eligible subcontractor.

    Returns the ranked candidate slots and the recommended one.
    """
    result = await scheduler.create_job_request(SchedulingRequest(**request.model_dump()))
    return {"success": True, **result.to_dict()}


@router.post("/responses", response_model=dict)
async def submit_response(
    request: SubmitResponseRequest,
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    """Record a subcontractor response; an "available" response may assign the job."""
    reply, job_request = await scheduler.record_response(
        request.job_request_id,
        request.subcontractor_id,
        request.response,
        available_time_slots=[request.proposed_slot] if request.proposed_slot else [],
        proposed_date=request.proposed_date,
        notes=request.notes,
    )
    return {
        "success": True,
        "response": response_to_dict(reply),
        "jobRequest": job_request_to_response(job_request),
    }


@router.get("/{job_request_id}", response_model=dict)
async def get_job_request(
    job_request_id: int,
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    """Get a job request with every response received so far."""
    summary = await scheduler.get_job_request_status(job_request_id)
    return {
        "jobRequest": job_request_to_response(summary["jobRequest"]),
        "responses": [response_to_dict(r) for r in summary["responses"]],
        "responseCount": summary["responseCount"],
        "availableCount": summary["availableCount"],
    }


@router.post("/{job_request_id}/cancel", response_model=dict)
async def cancel_job_request(
    job_request_id: int,
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    job_request = await scheduler.cancel_job_request(job_request_id)
    return {"success": True, "jobRequest": job_request_to_response(job_request)}

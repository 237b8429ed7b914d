"""
Subcontractor API routes.

Profile management and per-day availability.
"""
import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from glassops.dependencies.services import get_directory
from glassops.models.subcontractor import Subcontractor, SubcontractorAvailability
from glassops.services.directory import SubcontractorDirectory


router = APIRouter(prefix="/api/subcontractors", tags=["subcontractors"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSubcontractorRequest(CamelModel):
    """Request model for creating a subcontractor."""
    name: str = Field(min_length=1)
    email: str
    phone: str = Field(min_length=7)
    service_areas: list[str] = []
    specialties: list[str] = []
    rating: float = Field(5.0, ge=0, le=5)
    is_active: bool = True
    max_jobs_per_day: int = Field(5, ge=0)
    preferred_contact_method: str = "sms"


class UpdateSubcontractorRequest(CamelModel):
    """Partial update; omitted fields are left alone."""
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    service_areas: list[str] | None = None
    specialties: list[str] | None = None
    rating: float | None = Field(None, ge=0, le=5)
    is_active: bool | None = None
    max_jobs_per_day: int | None = Field(None, ge=0)
    preferred_contact_method: str | None = None


class AvailabilityRequest(CamelModel):
    """Request model for one day of availability."""
    date: datetime.date
    time_slots: list[str] = []
    max_jobs: int | None = Field(None, ge=0)
    is_available: bool = True
    notes: str | None = None


def subcontractor_to_response(subcontractor: Subcontractor) -> dict:
    """Convert Subcontractor model to its API shape."""
    return {
        "id": subcontractor.id,
        "name": subcontractor.name,
        "email": subcontractor.email,
        "phone": subcontractor.phone,
        "serviceAreas": subcontractor.service_areas or [],
        "specialties": subcontractor.specialties or [],
        "rating": subcontractor.rating,
        "isActive": subcontractor.is_active,
        "maxJobsPerDay": subcontractor.max_jobs_per_day,
        "preferredContactMethod": subcontractor.preferred_contact_method,
    }


def availability_to_response(availability: SubcontractorAvailability) -> dict:
    return {
        "id": availability.id,
        "subcontractorId": availability.subcontractor_id,
        "date": availability.date.isoformat(),
        "timeSlots": availability.time_slots or [],
        "maxJobs": availability.max_jobs,
        "currentJobs": availability.current_jobs,
        "isAvailable": availability.is_available,
        "notes": availability.notes,
    }


@router.get("", response_model=dict)
async def list_subcontractors(
    active_only: bool = Query(False, alias="activeOnly"),
    directory: SubcontractorDirectory = Depends(get_directory),
):
    subcontractors = await directory.list_subcontractors(active_only=active_only)
    return {"subcontractors": [subcontractor_to_response(s) for s in subcontractors]}


@router.post("", status_code=status.HTTP_201_CREATED, response_model=dict)
async def create_subcontractor(
    request: CreateSubcontractorRequest,
    directory: SubcontractorDirectory = Depends(get_directory),
):
    subcontractor = await directory.create(**request.model_dump())
    return subcontractor_to_response(subcontractor)


@router.get("/{subcontractor_id}", response_model=dict)
async def get_subcontractor(
    subcontractor_id: int,
    directory: SubcontractorDirectory = Depends(get_directory),
):
    return subcontractor_to_response(await directory.get(subcontractor_id))


@router.put("/{subcontractor_id}", response_model=dict)
async def update_subcontractor(
    subcontractor_id: int,
    request: UpdateSubcontractorRequest,
    directory: SubcontractorDirectory = Depends(get_directory),
):
    subcontractor = await directory.update(subcontractor_id, **request.model_dump(exclude_unset=True))
    return subcontractor_to_response(subcontractor)


@router.put("/{subcontractor_id}/approve", response_model=dict)
async def approve_subcontractor(
    subcontractor_id: int,
    directory: SubcontractorDirectory = Depends(get_directory),
):
    """Activate a subcontractor for dispatch."""
    return subcontractor_to_response(await directory.approve(subcontractor_id))


@router.delete("/{subcontractor_id}", response_model=dict)
async def deactivate_subcontractor(
    subcontractor_id: int,
    directory: SubcontractorDirectory = Depends(get_directory),
):
    """Deactivate; past responses and assignments keep their reference."""
    subcontractor = await directory.deactivate(subcontractor_id)
    return {"success": True, "subcontractor": subcontractor_to_response(subcontractor)}


@router.get("/{subcontractor_id}/availability", response_model=dict)
async def list_availability(
    subcontractor_id: int,
    start: datetime.date | None = None,
    directory: SubcontractorDirectory = Depends(get_directory),
):
    await directory.get(subcontractor_id)
    days = await directory.list_availability(subcontractor_id, start=start)
    return {"availability": [availability_to_response(day) for day in days]}


@router.post("/{subcontractor_id}/availability", response_model=dict)
async def set_availability(
    subcontractor_id: int,
    request: AvailabilityRequest,
    directory: SubcontractorDirectory = Depends(get_directory),
):
    """Create or replace one day of availability."""
    availability = await directory.set_availability(
        subcontractor_id,
        request.date,
        time_slots=request.time_slots,
        max_jobs=request.max_jobs,
        is_available=request.is_available,
        notes=request.notes,
    )
    return availability_to_response(availability)

"""
Subcontractor directory.

Profiles, per-day availability and capacity counters, plus the
eligibility filter used by the dispatch scheduler. No scoring here.
"""
import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from glassops.exceptions import CapacityError, NotFoundError, ValidationError
from glassops.logging_config import get_logger
from glassops.models.subcontractor import Subcontractor, SubcontractorAvailability
from glassops.routes.metrics import track_capacity_rejection

log = get_logger(component="directory")

_PROFILE_FIELDS = {
    "name",
    "email",
    "phone",
    "service_areas",
    "specialties",
    "rating",
    "is_active",
    "max_jobs_per_day",
    "preferred_contact_method",
}


def in_service_area(service_areas: list | None, customer_zip: str) -> bool:
    """Any service area whose first three digits prefix the customer zip."""
    for area in service_areas or []:
        prefix = str(area).strip()[:3]
        if prefix and customer_zip.startswith(prefix):
            return True
    return False


def has_specialty(specialties: list | None, service_type: str | None) -> bool:
    """Empty specialty list accepts anything; otherwise a case-insensitive substring match."""
    if not specialties:
        return True
    wanted = (service_type or "").lower()
    return any(wanted in str(specialty).lower() for specialty in specialties)


def _digits_only(phone: str | None) -> str:
    return "".join(ch for ch in (phone or "") if ch.isdigit())[-10:]


class SubcontractorDirectory:
    """Data access for subcontractors and their availability."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def create(self, **fields) -> Subcontractor:
        """Create a subcontractor profile."""
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown subcontractor fields: {', '.join(sorted(unknown))}")
        _check_rating(fields.get("rating"))

        subcontractor = Subcontractor(**fields)
        self.db.add(subcontractor)
        await self.db.commit()
        await self.db.refresh(subcontractor)
        log.info("subcontractor_created", subcontractor_id=subcontractor.id)
        return subcontractor

    async def get(self, subcontractor_id: int) -> Subcontractor:
        subcontractor = await self.db.get(Subcontractor, subcontractor_id, populate_existing=True)
        if subcontractor is None:
            raise NotFoundError("Subcontractor", subcontractor_id)
        return subcontractor

    async def list_subcontractors(self, active_only: bool = False) -> list[Subcontractor]:
        stmt = select(Subcontractor)
        if active_only:
            stmt = stmt.where(Subcontractor.is_active.is_(True))
        result = await self.db.execute(stmt.order_by(Subcontractor.id))
        return list(result.scalars().all())

    async def update(self, subcontractor_id: int, **fields) -> Subcontractor:
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown subcontractor fields: {', '.join(sorted(unknown))}")
        _check_rating(fields.get("rating"))

        subcontractor = await self.get(subcontractor_id)
        for key, value in fields.items():
            setattr(subcontractor, key, value)
        await self.db.commit()
        await self.db.refresh(subcontractor)
        return subcontractor

    async def approve(self, subcontractor_id: int) -> Subcontractor:
        """Activate a subcontractor so it is considered for dispatch."""
        subcontractor = await self.update(subcontractor_id, is_active=True)
        log.info("subcontractor_approved", subcontractor_id=subcontractor_id)
        return subcontractor

    async def deactivate(self, subcontractor_id: int) -> Subcontractor:
        """Deactivate instead of deleting; responses and assignments keep their reference."""
        subcontractor = await self.update(subcontractor_id, is_active=False)
        log.info("subcontractor_deactivated", subcontractor_id=subcontractor_id)
        return subcontractor

    async def find_by_phone(self, phone: str) -> Subcontractor | None:
        """Match on the last ten digits so formatting differences do not matter."""
        wanted = _digits_only(phone)
        if not wanted:
            return None
        for subcontractor in await self.list_subcontractors():
            if _digits_only(subcontractor.phone) == wanted:
                return subcontractor
        return None

    async def find_eligible(self, area_code: str, service_type: str | None) -> list[Subcontractor]:
        """
        Active subcontractors serving the area and the service type.

        Args:
            area_code: Customer zip code
            service_type: Requested glass/service type

        Returns:
            Eligible subcontractors ordered by id
        """
        return [
            sub for sub in await self.list_subcontractors(active_only=True)
            if in_service_area(sub.service_areas, area_code) and has_specialty(sub.specialties, service_type)
        ]

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def get_availability(
        self,
        subcontractor_id: int,
        day: datetime.date,
    ) -> SubcontractorAvailability | None:
        stmt = (
            select(SubcontractorAvailability)
            .where(
                SubcontractorAvailability.subcontractor_id == subcontractor_id,
                SubcontractorAvailability.date == day,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_availability(
        self,
        subcontractor_id: int,
        start: datetime.date | None = None,
    ) -> list[SubcontractorAvailability]:
        stmt = select(SubcontractorAvailability).where(
            SubcontractorAvailability.subcontractor_id == subcontractor_id
        )
        if start is not None:
            stmt = stmt.where(SubcontractorAvailability.date >= start)
        result = await self.db.execute(stmt.order_by(SubcontractorAvailability.date))
        return list(result.scalars().all())

    async def set_availability(
        self,
        subcontractor_id: int,
        day: datetime.date,
        time_slots: list[str] | None = None,
        max_jobs: int | None = None,
        is_available: bool = True,
        notes: str | None = None,
    ) -> SubcontractorAvailability:
        """
        Create or replace the availability row for one day.

        max_jobs is capped at the subcontractor's max_jobs_per_day and never
        drops below jobs already booked.
        """
        subcontractor = await self.get(subcontractor_id)
        cap = subcontractor.max_jobs_per_day
        max_jobs = cap if max_jobs is None else min(max_jobs, cap)
        if max_jobs < 0:
            raise ValidationError("max_jobs must not be negative")

        availability = await self.get_availability(subcontractor_id, day)
        if availability is None:
            availability = SubcontractorAvailability(
                subcontractor_id=subcontractor_id,
                date=day,
                current_jobs=0,
            )
            self.db.add(availability)
        else:
            max_jobs = max(max_jobs, availability.current_jobs)

        availability.time_slots = list(time_slots or [])
        availability.max_jobs = max_jobs
        availability.is_available = is_available
        availability.notes = notes
        await self.db.commit()
        await self.db.refresh(availability)
        return availability

    async def ensure_availability(self, subcontractor_id: int, day: datetime.date) -> SubcontractorAvailability:
        """
        Return the day's availability row, creating a default one if missing.

        Commits. The default row offers no time slots and the
        subcontractor's full max_jobs_per_day.
        """
        availability = await self.get_availability(subcontractor_id, day)
        if availability is not None:
            return availability
        subcontractor = await self.get(subcontractor_id)
        self.db.add(SubcontractorAvailability(
            subcontractor_id=subcontractor_id,
            date=day,
            time_slots=[],
            max_jobs=subcontractor.max_jobs_per_day,
            current_jobs=0,
            is_available=True,
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            # Created concurrently; the unique (subcontractor, date) row now exists
            await self.db.rollback()
        return await self.get_availability(subcontractor_id, day)

    async def reserve_slot(self, subcontractor_id: int, day: datetime.date) -> None:
        """
        Book one job on the subcontractor's day.

        The increment is a single conditional UPDATE, so concurrent
        reservations can never push current_jobs past max_jobs. The caller
        commits, together with the assignment it reserves for.

        Raises:
            CapacityError: day is full, marked unavailable or has no availability row
        """
        result = await self.db.execute(
            update(SubcontractorAvailability)
            .where(
                SubcontractorAvailability.subcontractor_id == subcontractor_id,
                SubcontractorAvailability.date == day,
                SubcontractorAvailability.is_available.is_(True),
                SubcontractorAvailability.current_jobs < SubcontractorAvailability.max_jobs,
            )
            .values(current_jobs=SubcontractorAvailability.current_jobs + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            track_capacity_rejection()
            log.info("capacity_rejected", subcontractor_id=subcontractor_id, date=day.isoformat())
            raise CapacityError(
                f"Subcontractor {subcontractor_id} has no capacity on {day.isoformat()}",
                details={"subcontractor_id": subcontractor_id, "date": day.isoformat()},
            )

    async def release_slot(self, subcontractor_id: int, day: datetime.date) -> None:
        """Give back one booked job. Caller commits."""
        await self.db.execute(
            update(SubcontractorAvailability)
            .where(
                SubcontractorAvailability.subcontractor_id == subcontractor_id,
                SubcontractorAvailability.date == day,
                SubcontractorAvailability.current_jobs > 0,
            )
            .values(current_jobs=SubcontractorAvailability.current_jobs - 1)
            .execution_options(synchronize_session=False)
        )


def _check_rating(rating) -> None:
    if rating is not None and not 0 <= float(rating) <= 5:
        raise ValidationError("rating must be between 0 and 5")

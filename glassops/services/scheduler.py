"""
Dispatch scheduler.

Matches a job that needs a third-party technician to a subcontractor:

1. persist a JobRequest
2. filter eligible subcontractors (service area + specialty)
3. expand each offerable availability day into candidate slots
4. score and rank the slots, pick the recommended one
5. send the dispatch SMS to every eligible subcontractor
6. collect replies; the earliest "available" reply with capacity wins
"""
import asyncio
import datetime
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from glassops.config import settings
from glassops.exceptions import (
    CapacityError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from glassops.logging_config import get_logger
from glassops.models.activity import NotificationSeverity
from glassops.models.base import utcnow
from glassops.models.subcontractor import (
    JobRequest,
    JobRequestStatus,
    ResponseType,
    Subcontractor,
    SubcontractorResponse,
)
from glassops.models.transaction import FulfillmentStatus, Transaction
from glassops.routes.metrics import track_job_assigned, track_subcontractor_notification
from glassops.services.activity_service import ActivityService
from glassops.services.directory import SubcontractorDirectory
from glassops.services.field_mapper import extract_zip
from glassops.services.sms_gateway import SmsGateway
from glassops.services.transaction_service import TransactionStateMachine

log = get_logger(component="scheduler")

# Minutes on site per glass type
ESTIMATED_DURATIONS = {
    "windshield": 180,
    "side_window": 90,
    "rear_glass": 150,
    "quarter_glass": 120,
}
DEFAULT_DURATION = 120

# Cents
BASE_PRICES = {
    "windshield": 35000,
    "side_window": 15000,
    "rear_glass": 25000,
    "quarter_glass": 18000,
}
DEFAULT_PRICE = 20000

ASSIGNMENT_ROUNDS = 3

_JOB_ID_PATTERN = re.compile(r"JOB-(\d+)", re.IGNORECASE)
_DATETIME_PATTERNS = [
    re.compile(r"(\d{1,2}/\d{1,2}/\d{2,4})\s*(\d{1,2}:\d{2}\s*(?:AM|PM)?)", re.IGNORECASE),
    re.compile(r"(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\s*(\d{1,2}:\d{2}\s*(?:AM|PM)?)", re.IGNORECASE),
    re.compile(r"(tomorrow|next week)\s*(\d{1,2}:\d{2}\s*(?:AM|PM)?)", re.IGNORECASE),
]


@dataclass
class SchedulingRequest:
    """Input to create_job_request."""
    customer_location: str
    service_type: str = "windshield"
    transaction_id: int | None = None
    vin: str = ""
    preferred_date: datetime.date | None = None
    preferred_time_slot: str | None = None
    special_instructions: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    vehicle: str | None = None


@dataclass
class AvailableSlot:
    """One offerable (subcontractor, day, start time) candidate."""
    subcontractor_id: int
    subcontractor_name: str
    available_date: datetime.date
    time_slot: str
    rating: float
    estimated_price: int
    distance: float
    specialties: list = field(default_factory=list)
    score: float = 0.0

    def to_dict(self) -> dict:
        return {
            "subcontractorId": self.subcontractor_id,
            "subcontractorName": self.subcontractor_name,
            "availableDate": self.available_date.isoformat(),
            "timeSlot": self.time_slot,
            "rating": self.rating,
            "estimatedPrice": self.estimated_price,
            "distance": self.distance,
            "specialties": self.specialties,
            "score": round(self.score, 4),
        }


@dataclass
class SchedulingResult:
    """Outcome of create_job_request."""
    job_request_id: int
    available_slots: list[AvailableSlot]
    recommended_slot: AvailableSlot | None
    estimated_response_time: int
    notified: int = 0

    def to_dict(self) -> dict:
        return {
            "jobRequestId": self.job_request_id,
            "availableSlots": [slot.to_dict() for slot in self.available_slots],
            "recommendedSlot": self.recommended_slot.to_dict() if self.recommended_slot else None,
            "estimatedResponseTime": self.estimated_response_time,
            "notified": self.notified,
        }


@dataclass
class ParsedReply:
    """An inbound subcontractor SMS reduced to its parts."""
    job_request_id: int | None
    response: ResponseType
    proposed_text: str | None = None
    proposed_date: datetime.datetime | None = None


class KeyedLock:
    """
    One asyncio.Lock per key, dropped when nobody holds or waits on it.

    Serializes work on the same key within this process only; cross-process
    safety comes from the conditional UPDATEs.
    """

    def __init__(self):
        self._locks: dict = {}
        self._users: dict = {}

    @asynccontextmanager
    async def hold(self, key):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


_assignment_locks = KeyedLock()


# ----------------------------------------------------------------------
# Scoring helpers
# ----------------------------------------------------------------------

def estimate_duration(glass_type: str | None) -> int:
    return ESTIMATED_DURATIONS.get((glass_type or "").lower(), DEFAULT_DURATION)


def estimate_price(glass_type: str | None) -> int:
    return BASE_PRICES.get((glass_type or "").lower(), DEFAULT_PRICE)


def estimate_distance(customer_zip: str, service_areas: list | None) -> float:
    """
    Coarse miles estimate from zip proximity.

    Same zip: 2 miles. Within 1000 of a served zip: 5 miles. Otherwise 25.
    """
    if not customer_zip.isdigit():
        return 25.0
    customer = int(customer_zip)
    best = 25.0
    for area in service_areas or []:
        area = str(area).strip()
        if not area.isdigit():
            continue
        gap = abs(customer - int(area))
        if gap == 0:
            return 2.0
        if gap < 1000:
            best = min(best, 5.0)
    return best


def score_slot(slot: AvailableSlot, preferred_slot: str) -> float:
    """rating * w_r + (baseline - distance) * w_d + bonus when the start time is the preferred one."""
    score = slot.rating * settings.SCORE_RATING_WEIGHT
    score += (settings.SCORE_DISTANCE_BASELINE - slot.distance) * settings.SCORE_DISTANCE_WEIGHT
    if slot.time_slot == preferred_slot:
        score += settings.SCORE_PREFERRED_SLOT_BONUS
    return score


def select_recommended(slots: list[AvailableSlot]) -> AvailableSlot | None:
    """Highest score; the first slot wins ties."""
    best = None
    for slot in slots:
        if best is None or slot.score > best.score:
            best = slot
    return best


def rank_slots(slots: list[AvailableSlot]) -> list[AvailableSlot]:
    """Presentation order: rating desc, then distance asc."""
    return sorted(slots, key=lambda slot: (-slot.rating, slot.distance))


# ----------------------------------------------------------------------
# SMS protocol
# ----------------------------------------------------------------------

def build_dispatch_message(
    job_request: JobRequest,
    customer: str,
    vehicle: str,
) -> str:
    job_id = f"JOB-{job_request.id}"
    if job_request.preferred_date and job_request.preferred_time_slot:
        preferred = f"{job_request.preferred_date.isoformat()} at {job_request.preferred_time_slot}"
    elif job_request.preferred_date:
        preferred = job_request.preferred_date.isoformat()
    else:
        preferred = "Flexible scheduling"
    hours = job_request.estimated_duration / 60
    duration = f"{hours:g} hours"

    return (
        f"NEW JOB: {job_id}\n"
        f"Customer: {customer}\n"
        f"Vehicle: {vehicle or 'Vehicle details pending'}\n"
        f"Location: {job_request.customer_location}\n"
        f"Preferred: {preferred}\n"
        f"Service: {job_request.special_instructions or job_request.service_type}\n"
        f"Duration: ~{duration}\n"
        f"\n"
        f"Reply:\n"
        f"- \"ACCEPT {job_id}\" to accept\n"
        f"- \"REJECT {job_id} [reason]\" to decline\n"
        f"- \"RESCHEDULE {job_id} [new date/time]\" to propose different time"
    )


def build_confirmation_message(response: ResponseType, job_request_id: int) -> str:
    job_id = f"JOB-{job_request_id}"
    if response == ResponseType.AVAILABLE:
        return f"Confirmed: You've ACCEPTED {job_id}. You'll receive appointment details shortly."
    if response == ResponseType.DECLINED:
        return f"Confirmed: You've DECLINED {job_id}. We'll find another contractor."
    return f"Confirmed: Your RESCHEDULE request for {job_id} has been received. We'll get back to you."


def parse_sms_reply(message: str, today: datetime.date | None = None) -> ParsedReply:
    """
    Parse "ACCEPT JOB-12", "REJECT JOB-12 busy", "RESCHEDULE JOB-12 10/24/2026 2:00 PM".

    Unclear replies count as a decline.
    """
    match = _JOB_ID_PATTERN.search(message or "")
    job_request_id = int(match.group(1)) if match else None

    lowered = (message or "").lower()
    if "accept" in lowered:
        response = ResponseType.AVAILABLE
    elif "reject" in lowered or "decline" in lowered:
        response = ResponseType.DECLINED
    elif "reschedule" in lowered or "different time" in lowered:
        response = ResponseType.COUNTER_OFFER
    else:
        response = ResponseType.DECLINED

    proposed_text = None
    proposed_date = None
    for index, pattern in enumerate(_DATETIME_PATTERNS):
        found = pattern.search(message or "")
        if not found:
            continue
        proposed_text = f"{found.group(1)} {found.group(2)}".strip()
        if index == 0:
            proposed_date = _parse_calendar_datetime(found.group(1), found.group(2))
        elif found.group(1).lower() == "tomorrow":
            day = (today or utcnow().date()) + datetime.timedelta(days=1)
            proposed_date = _combine(day, found.group(2))
        break

    return ParsedReply(job_request_id, response, proposed_text, proposed_date)


def _parse_time(text: str) -> datetime.time | None:
    text = re.sub(r"\s+", " ", text.strip().upper())
    for fmt in ("%I:%M %p", "%I:%M%p", "%H:%M"):
        try:
            return datetime.datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    return None


def _combine(day: datetime.date, time_text: str) -> datetime.datetime | None:
    parsed = _parse_time(time_text)
    return datetime.datetime.combine(day, parsed) if parsed else None


def _parse_calendar_datetime(date_text: str, time_text: str) -> datetime.datetime | None:
    for fmt in ("%m/%d/%Y", "%m/%d/%y"):
        try:
            day = datetime.datetime.strptime(date_text, fmt).date()
        except ValueError:
            continue
        return _combine(day, time_text)
    return None


class DispatchScheduler:
    """Creates job requests, notifies subcontractors and assigns the first acceptor."""

    def __init__(
        self,
        db: AsyncSession,
        sms: SmsGateway | None = None,
        activity: ActivityService | None = None,
        directory: SubcontractorDirectory | None = None,
        state_machine: TransactionStateMachine | None = None,
    ):
        self.db = db
        self.sms = sms or SmsGateway()
        self.activity = activity or ActivityService(db)
        self.directory = directory or SubcontractorDirectory(db)
        self.state_machine = state_machine or TransactionStateMachine(db, activity=self.activity)

    # ------------------------------------------------------------------
    # Job requests
    # ------------------------------------------------------------------

    async def get_job_request(self, job_request_id: int) -> JobRequest:
        stmt = (
            select(JobRequest)
            .where(JobRequest.id == job_request_id)
            .execution_options(populate_existing=True)
        )
        job_request = (await self.db.execute(stmt)).scalar_one_or_none()
        if job_request is None:
            raise NotFoundError("Job request", job_request_id)
        return job_request

    async def create_job_request(self, request: SchedulingRequest) -> SchedulingResult:
        """
        Persist a job request, rank candidate slots and notify eligible subcontractors.

        Args:
            request: Location, service type and preferences

        Returns:
            SchedulingResult with every candidate slot and the recommended one
        """
        if not (request.customer_location or "").strip():
            raise ValidationError("customer_location is required")

        target_day = request.preferred_date or utcnow().date()
        job_request = JobRequest(
            transaction_id=request.transaction_id,
            vin=request.vin or "",
            customer_location=request.customer_location,
            service_type=request.service_type or "windshield",
            preferred_date=request.preferred_date,
            preferred_time_slot=request.preferred_time_slot,
            target_date=target_day,
            status=JobRequestStatus.PENDING_CONTRACTOR,
            estimated_duration=estimate_duration(request.service_type),
            special_instructions=request.special_instructions,
            requested_at=utcnow(),
        )
        self.db.add(job_request)
        await self.db.commit()
        await self.db.refresh(job_request)
        job_log = log.bind(job_request_id=job_request.id, transaction_id=request.transaction_id)

        customer_zip = extract_zip(request.customer_location)
        eligible = await self.directory.find_eligible(customer_zip, request.service_type)
        slots = await self._candidate_slots(
            eligible,
            customer_zip,
            target_day,
            request.service_type,
            request.preferred_time_slot or settings.PREFERRED_TIME_SLOT,
        )
        ranked = rank_slots(slots)
        recommended = select_recommended(slots)

        notified = await self.notify_subcontractors(job_request, eligible, request)

        await self.activity.log(
            "job_request_created",
            f"Job request JOB-{job_request.id} created with {len(ranked)} candidate slot(s)",
            transaction_id=request.transaction_id,
            details={
                "job_request_id": job_request.id,
                "eligible": [sub.id for sub in eligible],
                "slots": len(ranked),
                "recommended_subcontractor_id": recommended.subcontractor_id if recommended else None,
            },
        )
        if request.transaction_id is not None:
            await self.state_machine.mark_fulfillment(
                request.transaction_id,
                FulfillmentStatus.PENDING_CONTRACTOR,
                job_request_id=job_request.id,
            )

        job_log.info("job_request_created", eligible=len(eligible), slots=len(ranked), notified=notified)
        return SchedulingResult(
            job_request_id=job_request.id,
            available_slots=ranked,
            recommended_slot=recommended,
            estimated_response_time=settings.ESTIMATED_RESPONSE_HOURS,
            notified=notified,
        )

    async def create_job_request_for_transaction(self, transaction_id: int) -> SchedulingResult:
        """Build the scheduling request from a processed transaction."""
        transaction = await self.state_machine.get(transaction_id)
        form_data = transaction.form_data or {}
        location = transaction.customer_address or ""
        if transaction.customer_zip and transaction.customer_zip not in location:
            location = f"{location} {transaction.customer_zip}".strip()

        preferred_date = None
        raw_date = form_data.get("preferred-date") or form_data.get("preferredDate")
        if raw_date:
            try:
                preferred_date = datetime.date.fromisoformat(str(raw_date)[:10])
            except ValueError:
                preferred_date = None

        request = SchedulingRequest(
            customer_location=location or "00000",
            service_type=form_data.get("glass-type") or form_data.get("glassType") or "windshield",
            transaction_id=transaction.id,
            vin=transaction.vehicle_vin or "",
            preferred_date=preferred_date,
            preferred_time_slot=form_data.get("preferred-time") or form_data.get("preferredTime"),
            special_instructions=transaction.damage_description,
            customer_name=transaction.customer_name,
            customer_phone=transaction.customer_phone,
            vehicle=_vehicle(transaction),
        )
        return await self.create_job_request(request)

    async def _candidate_slots(
        self,
        subcontractors: list[Subcontractor],
        customer_zip: str,
        day: datetime.date,
        glass_type: str | None,
        preferred_slot: str,
    ) -> list[AvailableSlot]:
        slots = []
        price = estimate_price(glass_type)
        for sub in subcontractors:
            availability = await self.directory.get_availability(sub.id, day)
            if availability is None or not availability.is_offerable:
                continue
            distance = estimate_distance(customer_zip, sub.service_areas)
            for time_slot in availability.time_slots or settings.DEFAULT_TIME_SLOTS:
                slot = AvailableSlot(
                    subcontractor_id=sub.id,
                    subcontractor_name=sub.name,
                    available_date=day,
                    time_slot=time_slot,
                    rating=float(sub.rating),
                    estimated_price=price,
                    distance=distance,
                    specialties=list(sub.specialties or []),
                )
                slot.score = score_slot(slot, preferred_slot)
                slots.append(slot)
        return slots

    async def notify_subcontractors(
        self,
        job_request: JobRequest,
        subcontractors: list[Subcontractor],
        request: SchedulingRequest | None = None,
    ) -> int:
        """
        Send the dispatch SMS to each subcontractor independently.

        A failed send is logged and does not affect the others.

        Returns:
            Number of successful sends
        """
        unique = list({sub.id: sub for sub in subcontractors}.values())
        if not unique:
            return 0

        customer = "Customer"
        vehicle = ""
        if request is not None:
            customer = request.customer_name or customer
            if request.customer_phone:
                customer = f"{customer} ({request.customer_phone})"
            vehicle = request.vehicle or ""
        message = build_dispatch_message(job_request, customer, vehicle)

        results = await asyncio.gather(
            *(self.sms.send(sub.phone, message) for sub in unique),
            return_exceptions=True,
        )

        sent = 0
        for sub, result in zip(unique, results):
            details = {"job_request_id": job_request.id, "subcontractor_id": sub.id}
            if isinstance(result, Exception):
                track_subcontractor_notification("failed")
                log.warning(
                    "subcontractor_notify_failed",
                    job_request_id=job_request.id,
                    subcontractor_id=sub.id,
                    error=str(result),
                )
                await self.activity.log(
                    "subcontractor_notify_failed",
                    f"Failed to send JOB-{job_request.id} to {sub.name}: {result}",
                    transaction_id=job_request.transaction_id,
                    details={**details, "error": str(result)},
                    commit=False,
                )
                continue

            sent += 1
            track_subcontractor_notification("sent")
            await self.activity.log(
                "subcontractor_notified",
                f"Job request JOB-{job_request.id} sent to {sub.name}",
                transaction_id=job_request.transaction_id,
                details={**details, "message_id": result},
                commit=False,
            )
        await self.db.commit()
        return sent

    # ------------------------------------------------------------------
    # Responses and assignment
    # ------------------------------------------------------------------

    async def record_response(
        self,
        job_request_id: int,
        subcontractor_id: int,
        response: ResponseType | str,
        available_time_slots: list[str] | None = None,
        proposed_date: datetime.datetime | None = None,
        notes: str | None = None,
        responded_at: datetime.datetime | None = None,
    ) -> tuple[SubcontractorResponse, JobRequest]:
        """
        Store a reply and, for "available", run assignment.

        Returns:
            (stored response, job request after evaluation)
        """
        response = ResponseType(response)
        if proposed_date is not None and proposed_date.tzinfo is not None:
            proposed_date = proposed_date.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        job_request = await self.get_job_request(job_request_id)
        subcontractor = await self.directory.get(subcontractor_id)

        reply = SubcontractorResponse(
            job_request_id=job_request.id,
            subcontractor_id=subcontractor.id,
            response=response,
            available_time_slots=available_time_slots,
            proposed_date=proposed_date,
            notes=notes,
            responded_at=responded_at or utcnow(),
        )
        self.db.add(reply)
        await self.activity.log(
            "subcontractor_response",
            f"{subcontractor.name} replied {response.value} to JOB-{job_request.id}",
            transaction_id=job_request.transaction_id,
            details={
                "job_request_id": job_request.id,
                "subcontractor_id": subcontractor.id,
                "response": response.value,
            },
            commit=False,
        )
        await self.db.commit()
        await self.db.refresh(reply)
        log.info(
            "subcontractor_response_recorded",
            job_request_id=job_request.id,
            subcontractor_id=subcontractor.id,
            response=response.value,
        )

        if response == ResponseType.AVAILABLE:
            job_request = await self.evaluate_assignment(job_request.id)
        return reply, job_request

    async def evaluate_assignment(self, job_request_id: int) -> JobRequest:
        """
        Assign the job to the earliest "available" responder with capacity.

        If a later responder already holds the job it is moved to the earlier
        one and the later responder's slot is released.
        """
        async with _assignment_locks.hold(job_request_id):
            for _ in range(ASSIGNMENT_ROUNDS):
                try:
                    return await self._evaluate(job_request_id)
                except ConflictError:
                    log.info("assignment_conflict", job_request_id=job_request_id)
            return await self.get_job_request(job_request_id)

    async def _evaluate(self, job_request_id: int) -> JobRequest:
        job_request = await self.get_job_request(job_request_id)
        if job_request.status not in (JobRequestStatus.PENDING_CONTRACTOR, JobRequestStatus.ASSIGNED):
            return job_request

        stmt = (
            select(SubcontractorResponse)
            .where(
                SubcontractorResponse.job_request_id == job_request_id,
                SubcontractorResponse.response == ResponseType.AVAILABLE,
            )
            .order_by(SubcontractorResponse.responded_at.asc(), SubcontractorResponse.id.asc())
        )
        responses = (await self.db.execute(stmt)).scalars().all()
        # Earliest first, one entry per subcontractor
        responders = list(dict.fromkeys(reply.subcontractor_id for reply in responses))
        day = _target_day(job_request)

        for subcontractor_id in responders:
            if (
                job_request.status == JobRequestStatus.ASSIGNED
                and job_request.assigned_subcontractor_id == subcontractor_id
            ):
                return job_request

            try:
                return await self._assign(job_request, subcontractor_id, day)
            except CapacityError:
                job_request = await self.get_job_request(job_request_id)
                continue

        if job_request.status == JobRequestStatus.PENDING_CONTRACTOR and responders:
            await self.activity.notify(
                type="capacity_exhausted",
                severity=NotificationSeverity.WARNING,
                title="No subcontractor capacity",
                message=f"JOB-{job_request_id}: every accepting subcontractor is fully booked on {day.isoformat()}",
                details={"job_request_id": job_request_id, "responders": responders},
                source="dispatch_scheduler",
                transaction_id=job_request.transaction_id,
            )
        return job_request

    async def _assign(self, job_request: JobRequest, subcontractor_id: int, day: datetime.date) -> JobRequest:
        """
        Reserve capacity and assign in one commit.

        Raises:
            CapacityError: the subcontractor's day is full
            ConflictError: the job request changed underneath us
        """
        job_request_id = job_request.id
        expected_status = job_request.status
        previous_id = job_request.assigned_subcontractor_id if expected_status == JobRequestStatus.ASSIGNED else None
        previous_day = job_request.assigned_date or day
        transaction_id = job_request.transaction_id

        await self.directory.ensure_availability(subcontractor_id, day)
        try:
            await self.directory.reserve_slot(subcontractor_id, day)

            conditions = [JobRequest.id == job_request_id, JobRequest.status == expected_status]
            if previous_id is None:
                conditions.append(JobRequest.assigned_subcontractor_id.is_(None))
            else:
                conditions.append(JobRequest.assigned_subcontractor_id == previous_id)
            result = await self.db.execute(
                update(JobRequest)
                .where(*conditions)
                .values(
                    status=JobRequestStatus.ASSIGNED,
                    assigned_subcontractor_id=subcontractor_id,
                    assigned_date=day,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Job request {job_request_id} changed during assignment")

            if previous_id is not None:
                await self.directory.release_slot(previous_id, previous_day)

            await self.activity.log(
                "job_reassigned" if previous_id is not None else "job_assigned",
                f"JOB-{job_request_id} assigned to subcontractor {subcontractor_id}",
                transaction_id=transaction_id,
                details={
                    "job_request_id": job_request_id,
                    "subcontractor_id": subcontractor_id,
                    "previous_subcontractor_id": previous_id,
                    "date": day.isoformat(),
                },
                commit=False,
            )
            await self.db.commit()
        except (CapacityError, ConflictError):
            await self.db.rollback()
            raise

        track_job_assigned()
        log.info(
            "job_assigned",
            job_request_id=job_request_id,
            subcontractor_id=subcontractor_id,
            previous_subcontractor_id=previous_id,
        )

        job_request = await self.get_job_request(job_request_id)
        if job_request.transaction_id is not None:
            await self.state_machine.mark_fulfillment(
                job_request.transaction_id,
                FulfillmentStatus.ASSIGNED,
                job_request_id=job_request_id,
                subcontractor_id=subcontractor_id,
            )
        return job_request

    async def process_sms_reply(self, phone: str, message: str) -> dict:
        """
        Handle an inbound SMS from a subcontractor.

        Returns:
            {"success": bool, ...} - unknown senders and replies without a
            job id are reported, not raised
        """
        parsed = parse_sms_reply(message)
        if parsed.job_request_id is None:
            log.info("sms_reply_without_job_id", phone=phone)
            return {"success": False, "reason": "no_job_id"}

        subcontractor = await self.directory.find_by_phone(phone)
        if subcontractor is None:
            log.info("sms_reply_unknown_sender", phone=phone)
            return {"success": False, "reason": "unknown_subcontractor"}

        reply, job_request = await self.record_response(
            parsed.job_request_id,
            subcontractor.id,
            parsed.response,
            available_time_slots=[parsed.proposed_text] if parsed.proposed_text else [],
            proposed_date=parsed.proposed_date,
            notes=message,
        )

        try:
            await self.sms.send(phone, build_confirmation_message(parsed.response, parsed.job_request_id))
        except Exception as exc:
            log.warning("sms_confirmation_failed", phone=phone, error=str(exc))

        status = JobRequestStatus(job_request.status).value
        return {
            "success": True,
            "jobRequestId": parsed.job_request_id,
            "subcontractorId": subcontractor.id,
            "response": parsed.response.value,
            "proposedDateTime": parsed.proposed_text,
            "jobStatus": status,
            "assigned": job_request.assigned_subcontractor_id == subcontractor.id,
        }

    async def get_job_request_status(self, job_request_id: int) -> dict:
        job_request = await self.get_job_request(job_request_id)
        stmt = (
            select(SubcontractorResponse)
            .where(SubcontractorResponse.job_request_id == job_request_id)
            .order_by(SubcontractorResponse.responded_at.asc(), SubcontractorResponse.id.asc())
        )
        responses = list((await self.db.execute(stmt)).scalars().all())
        return {
            "jobRequest": job_request,
            "responses": responses,
            "responseCount": len(responses),
            "availableCount": sum(1 for r in responses if r.response == ResponseType.AVAILABLE),
        }

    async def cancel_job_request(self, job_request_id: int) -> JobRequest:
        """Administrative cancel. An assigned job gives its slot back."""
        async with _assignment_locks.hold(job_request_id):
            job_request = await self.get_job_request(job_request_id)
            status = JobRequestStatus(job_request.status)
            if status in (JobRequestStatus.CANCELLED, JobRequestStatus.EXPIRED):
                raise InvalidTransitionError(f"Job request {job_request_id} is already {status.value}")

            if status == JobRequestStatus.ASSIGNED and job_request.assigned_subcontractor_id is not None:
                await self.directory.release_slot(
                    job_request.assigned_subcontractor_id,
                    job_request.assigned_date or _target_day(job_request),
                )
            job_request.status = JobRequestStatus.CANCELLED
            await self.activity.log(
                "job_request_cancelled",
                f"JOB-{job_request_id} cancelled",
                transaction_id=job_request.transaction_id,
                details={"job_request_id": job_request_id, "previous_status": status.value},
                commit=False,
            )
            await self.db.commit()
            log.info("job_request_cancelled", job_request_id=job_request_id)
            return await self.get_job_request(job_request_id)

    async def expire_stale_job_requests(self, now: datetime.datetime | None = None) -> int:
        """
        Expire pending requests nobody took within the response window.

        Returns:
            Number of job requests expired
        """
        now = now or utcnow()
        cutoff = now - datetime.timedelta(hours=settings.ESTIMATED_RESPONSE_HOURS)
        stmt = select(JobRequest).where(
            JobRequest.status == JobRequestStatus.PENDING_CONTRACTOR,
            JobRequest.requested_at <= cutoff,
        )
        stale = list((await self.db.execute(stmt)).scalars().all())

        expired = 0
        for job_request in stale:
            result = await self.db.execute(
                update(JobRequest)
                .where(
                    JobRequest.id == job_request.id,
                    JobRequest.status == JobRequestStatus.PENDING_CONTRACTOR,
                )
                .values(status=JobRequestStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            expired += 1
            await self.activity.log(
                "job_request_expired",
                f"JOB-{job_request.id} expired without an assignment",
                transaction_id=job_request.transaction_id,
                details={"job_request_id": job_request.id},
                commit=False,
            )
        await self.db.commit()
        if expired:
            log.info("job_requests_expired", count=expired)
        return expired


def _vehicle(transaction: Transaction) -> str:
    parts = (transaction.vehicle_year, transaction.vehicle_make, transaction.vehicle_model)
    return " ".join(str(part) for part in parts if part)


def _target_day(job_request: JobRequest) -> datetime.date:
    """Day the slots were offered for; older rows fall back to the preferred or request day."""
    return job_request.target_date or job_request.preferred_date or job_request.requested_at.date()

"""
Subcontractor directory and dispatch models.

Subcontractor -> SubcontractorAvailability (one row per day)
JobRequest -> SubcontractorResponse (insert-only replies)
"""
import enum
import datetime
from sqlalchemy import (
    String, Text, Integer, Float, Boolean, Date, DateTime, JSON, ForeignKey,
    CheckConstraint, UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column
from glassops.models.base import Base, TimestampMixin, utcnow


class JobRequestStatus(str, enum.Enum):
    """Dispatch status of a job request."""
    PENDING_CONTRACTOR = "pending_contractor"
    ASSIGNED = "assigned"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ResponseType(str, enum.Enum):
    """Subcontractor reply to a dispatch message."""
    AVAILABLE = "available"
    DECLINED = "declined"
    COUNTER_OFFER = "counter_offer"


class Subcontractor(Base, TimestampMixin):
    """
    Fulfillment partner.

    Deactivated rather than deleted.
    """
    __tablename__ = "subcontractors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    service_areas: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    specialties: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_jobs_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    preferred_contact_method: Mapped[str] = mapped_column(String(16), nullable=False, default="sms")

    def __repr__(self):
        return f"<Subcontractor(id={self.id}, name={self.name}, active={self.is_active})>"


class SubcontractorAvailability(Base, TimestampMixin):
    """
    Capacity for one subcontractor on one calendar day.

    current_jobs <= max_jobs always holds; only reserve_slot/release_slot
    change current_jobs.
    """
    __tablename__ = "subcontractor_availability"
    __table_args__ = (
        UniqueConstraint("subcontractor_id", "date", name="uq_availability_subcontractor_date"),
        CheckConstraint("current_jobs <= max_jobs", name="ck_availability_capacity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subcontractor_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("subcontractors.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    time_slots: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    max_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    current_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_offerable(self) -> bool:
        return bool(self.is_available) and self.current_jobs < self.max_jobs

    def __repr__(self):
        return (
            f"<SubcontractorAvailability(sub={self.subcontractor_id}, date={self.date}, "
            f"{self.current_jobs}/{self.max_jobs})>"
        )


class JobRequest(Base, TimestampMixin):
    """Work that must be fulfilled by a subcontractor."""
    __tablename__ = "job_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("transactions.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    vin: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    customer_location: Mapped[str] = mapped_column(Text, nullable=False)
    service_type: Mapped[str] = mapped_column(String(64), nullable=False, default="windshield")
    preferred_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    preferred_time_slot: Mapped[str | None] = mapped_column(String(16), nullable=True)
    # day the candidate slots were built for; capacity is reserved on this day
    target_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    status: Mapped[JobRequestStatus] = mapped_column(
        SQLEnum(JobRequestStatus, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobRequestStatus.PENDING_CONTRACTOR,
        index=True,
    )
    assigned_subcontractor_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("subcontractors.id", ondelete="SET NULL"),
        nullable=True
    )
    assigned_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    estimated_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=120)
    special_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<JobRequest(id={self.id}, status={self.status}, assigned={self.assigned_subcontractor_id})>"


class SubcontractorResponse(Base):
    """Reply to a dispatch message. Never updated after insert."""
    __tablename__ = "subcontractor_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_request_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("job_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    subcontractor_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("subcontractors.id", ondelete="CASCADE"),
        nullable=False
    )
    response: Mapped[ResponseType] = mapped_column(
        SQLEnum(ResponseType, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    available_time_slots: Mapped[list | None] = mapped_column(JSON, nullable=True)
    proposed_date: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    responded_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return (
            f"<SubcontractorResponse(job={self.job_request_id}, sub={self.subcontractor_id}, "
            f"response={self.response})>"
        )

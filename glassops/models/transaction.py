"""
Transaction model: one service request tracked end-to-end.

Status changes go through TransactionStateMachine only. The row is versioned
(version_id_col) so a status change and its history entry land together or
not at all.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from glassops.models.base import Base, TimestampMixin


class TransactionStatus(str, enum.Enum):
    """Lifecycle status of a transaction."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class FulfillmentStatus(str, enum.Enum):
    """Who performs the work once the external job exists."""
    IN_HOUSE = "in_house"
    PENDING_CONTRACTOR = "pending_contractor"
    ASSIGNED = "assigned"


# Allowed status changes. Anything else raises InvalidTransitionError.
TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.PROCESSING}),
    TransactionStatus.PROCESSING: frozenset({TransactionStatus.SUCCESS, TransactionStatus.FAILED}),
    TransactionStatus.SUCCESS: frozenset(),
    TransactionStatus.FAILED: frozenset({TransactionStatus.PENDING}),
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in TRANSITIONS[TransactionStatus(current)]


class Transaction(Base, TimestampMixin):
    """
    Service request received from the intake form.

    status_history is append-only: a list of
    {"status", "timestamp", "triggered_by"} whose last entry always matches status.
    """
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Customer contact
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="Unknown")
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_zip: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    customer_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Vehicle descriptor
    vehicle_year: Mapped[str | None] = mapped_column(String(8), nullable=True)
    vehicle_make: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vehicle_model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vehicle_vin: Mapped[str | None] = mapped_column(String(32), nullable=True)
    damage_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    service_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    source_type: Mapped[str] = mapped_column(String(32), nullable=False, default="intake")
    form_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(TransactionStatus, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )
    status_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Subcontractor dispatch outcome
    fulfillment_status: Mapped[FulfillmentStatus | None] = mapped_column(
        SQLEnum(FulfillmentStatus, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )
    job_request_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_subcontractor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Transaction(id={self.id}, status={self.status}, retry_count={self.retry_count})>"

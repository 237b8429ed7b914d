"""
Retry queue model.

Durable table of pending redrives. Dead-lettered rows are kept for audit.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, Boolean, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from glassops.models.base import Base, TimestampMixin


class RetryOperation(str, enum.Enum):
    """Pipeline step a retry entry re-runs."""
    PROCESS_TRANSACTION = "process_transaction"


class RetryQueueEntry(Base, TimestampMixin):
    """
    One pending redrive.

    Claimable iff not dead-lettered, due, and not under a live claim lease.
    is_dead_letter implies attempts >= max_attempts; a non-retryable failure
    spends the remaining budget. payload["initial_run"] marks an entry whose
    first claim is the transaction's first processing run.
    """
    __tablename__ = "retry_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    claimed_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_dead_letter: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    dead_lettered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self):
        return (
            f"<RetryQueueEntry(id={self.id}, op={self.operation}, attempts={self.attempts}/"
            f"{self.max_attempts}, dead={self.is_dead_letter})>"
        )

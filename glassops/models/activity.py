"""
Activity log and operator notifications.

Both tables are append-only from the pipeline's point of view; the only
mutation is an operator resolving a notification.
"""
import uuid
import enum
from sqlalchemy import Column, String, Text, Integer, DateTime, Boolean, JSON, Enum as SQLEnum
from glassops.models.base import Base, utcnow


class NotificationSeverity(str, enum.Enum):
    """Notification severity."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ActivityLog(Base):
    """Audit trail entry."""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(64), nullable=False, index=True)
    message = Column(Text, nullable=False)
    transaction_id = Column(Integer, nullable=True, index=True)
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return f"<ActivityLog(id={self.id}, type={self.type}, transaction_id={self.transaction_id})>"


class Notification(Base):
    """First-class alert raised for operator attention."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(64), nullable=False, index=True)  # dead_letter, configuration_error, capacity_exhausted
    severity = Column(
        SQLEnum(NotificationSeverity, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=NotificationSeverity.INFO,
    )
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    source = Column(String(64), nullable=True)
    transaction_id = Column(Integer, nullable=True, index=True)
    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        severity = self.severity.value if isinstance(self.severity, NotificationSeverity) else self.severity
        return {
            "id": self.id,
            "type": self.type,
            "severity": severity,
            "title": self.title,
            "message": self.message,
            "details": self.details,
            "source": self.source,
            "transactionId": self.transaction_id,
            "resolved": self.resolved,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolvedBy": self.resolved_by,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

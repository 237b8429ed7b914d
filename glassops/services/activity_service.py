"""
Activity / notification sink.

Append-only audit trail plus operator notifications. Notifications are
pushed to live observers through a publisher (the in-process broadcaster in
the API, the Redis bridge in workers).
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from glassops.exceptions import NotFoundError
from glassops.logging_config import get_logger
from glassops.models.activity import ActivityLog, Notification, NotificationSeverity
from glassops.models.base import utcnow
from glassops.services.broadcaster import (
    broadcaster,
    notification_frame,
    notification_update_frame,
)

log = get_logger(component="activity")


class ActivityService:
    """Writes audit entries and raises notifications."""

    def __init__(self, db: AsyncSession, publisher=None):
        self.db = db
        self.publisher = publisher if publisher is not None else broadcaster

    async def log(
        self,
        type: str,
        message: str,
        transaction_id: int | None = None,
        details: dict | None = None,
        commit: bool = True,
    ) -> ActivityLog:
        """
        Append an activity log entry.

        Args:
            type: Event type, e.g. form_received, retry_deadletter
            message: Human readable summary
            transaction_id: Owning transaction, if any
            details: Structured context
            commit: False to leave the entry in the caller's unit of work

        Returns:
            The new ActivityLog
        """
        entry = ActivityLog(
            type=type,
            message=message,
            transaction_id=transaction_id,
            details=details,
            timestamp=utcnow(),
        )
        self.db.add(entry)
        if commit:
            await self.db.commit()
        return entry

    async def notify(
        self,
        type: str,
        severity: NotificationSeverity,
        title: str,
        message: str,
        details: dict | None = None,
        source: str | None = None,
        transaction_id: int | None = None,
    ) -> Notification:
        """Persist a notification and publish it to live observers."""
        notification = Notification(
            type=type,
            severity=severity,
            title=title,
            message=message,
            details=details,
            source=source,
            transaction_id=transaction_id,
            resolved=False,
            created_at=utcnow(),
        )
        self.db.add(notification)
        await self.db.commit()

        log.info(
            "notification_raised",
            notification_type=type,
            severity=NotificationSeverity(severity).value,
            transaction_id=transaction_id,
        )
        await self.publisher.publish(notification_frame(notification.to_dict()))
        return notification

    async def resolve_notification(self, notification_id: str, resolved_by: str | None = None) -> Notification:
        """Mark a notification resolved and publish the update."""
        notification = await self.db.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError("Notification", notification_id)

        notification.resolved = True
        notification.resolved_at = utcnow()
        notification.resolved_by = resolved_by
        await self.db.commit()

        await self.publisher.publish(notification_update_frame(
            notification.id,
            {
                "resolved": True,
                "resolvedAt": notification.resolved_at.isoformat(),
                "resolvedBy": resolved_by,
            },
        ))
        return notification

    async def recent_notifications(self, limit: int = 50) -> list[Notification]:
        stmt = select(Notification).order_by(Notification.created_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def unresolved_notifications(self) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.resolved.is_(False))
            .order_by(Notification.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def recent_activity(
        self,
        limit: int = 50,
        type_prefix: str | None = None,
        transaction_id: int | None = None,
    ) -> list[ActivityLog]:
        stmt = select(ActivityLog)
        if type_prefix:
            stmt = stmt.where(ActivityLog.type.startswith(type_prefix))
        if transaction_id is not None:
            stmt = stmt.where(ActivityLog.transaction_id == transaction_id)
        stmt = stmt.order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

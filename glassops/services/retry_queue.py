"""
Retry / dead-letter queue.

RetryQueueService owns the retry_queue table. RetryQueuePoller claims due
entries and redrives them through an operation registry.

Claims are conditional UPDATEs: an entry is only returned to the poller
whose UPDATE actually changed the row, so two pollers never redrive the
same entry.
"""
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from glassops.config import settings
from glassops.exceptions import (
    GlassOpsError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    classify_error,
)
from glassops.logging_config import bind_context, get_logger
from glassops.models.activity import NotificationSeverity
from glassops.models.base import utcnow
from glassops.models.retry_queue import RetryQueueEntry
from glassops.routes.metrics import track_dead_letter, track_retry_scheduled, update_retry_queue_depth
from glassops.sentry_config import capture_message
from glassops.services.activity_service import ActivityService

log = get_logger(component="retry_queue")


def compute_backoff(attempt: int, base: int | None = None, cap: int | None = None) -> int:
    """
    Exponential back-off in seconds: base * 2**attempt, capped.

    Args:
        attempt: Zero-based attempt number (retry count so far)
        base: Base delay, defaults to RETRY_BASE_DELAY_SECONDS
        cap: Maximum delay, defaults to RETRY_MAX_DELAY_SECONDS
    """
    base = settings.RETRY_BASE_DELAY_SECONDS if base is None else base
    cap = settings.RETRY_MAX_DELAY_SECONDS if cap is None else cap
    return min(base * 2 ** max(attempt, 0), cap)


def _claimable(now: datetime):
    return (
        RetryQueueEntry.is_dead_letter.is_(False),
        RetryQueueEntry.next_attempt_at <= now,
        or_(RetryQueueEntry.claimed_until.is_(None), RetryQueueEntry.claimed_until <= now),
    )


def _without_initial_run(payload: dict | None) -> dict:
    return {key: value for key, value in (payload or {}).items() if key != "initial_run"}


class RetryQueueService:
    """Durable retry queue backed by the retry_queue table."""

    def __init__(self, db: AsyncSession, activity: ActivityService | None = None):
        self.db = db
        self.activity = activity or ActivityService(db)

    async def get(self, entry_id: int) -> RetryQueueEntry | None:
        stmt = (
            select(RetryQueueEntry)
            .where(RetryQueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active(self, operation: str, transaction_id: int) -> RetryQueueEntry | None:
        stmt = select(RetryQueueEntry).where(
            RetryQueueEntry.operation == operation,
            RetryQueueEntry.transaction_id == transaction_id,
            RetryQueueEntry.is_dead_letter.is_(False),
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def enqueue(
        self,
        operation: str,
        transaction_id: int | None = None,
        payload: dict | None = None,
        delay_seconds: int = 0,
        max_attempts: int | None = None,
        last_error: str | None = None,
    ) -> RetryQueueEntry:
        """
        Schedule a redrive.

        Only one active entry exists per (operation, transaction); when one is
        already queued it is returned unchanged.

        Args:
            operation: RetryOperation value naming the step to re-run
            transaction_id: Owning transaction
            payload: Operation arguments
            delay_seconds: Seconds until the entry becomes due
            max_attempts: Attempt budget, defaults to the configured maximum
            last_error: Error that caused the entry to be written

        Returns:
            The queued RetryQueueEntry
        """
        if transaction_id is not None:
            existing = await self.get_active(operation, transaction_id)
            if existing is not None:
                log.info("retry_already_queued", retry_entry_id=existing.id, transaction_id=transaction_id)
                return existing

        now = utcnow()
        entry = RetryQueueEntry(
            operation=operation,
            transaction_id=transaction_id,
            payload=payload or {},
            attempts=0,
            max_attempts=max_attempts or settings.retry_queue_max_attempts,
            next_attempt_at=now + timedelta(seconds=delay_seconds),
            last_error=last_error,
            is_dead_letter=False,
        )
        self.db.add(entry)
        await self.db.flush()

        await self.activity.log(
            "retry_scheduled",
            f"Retry scheduled in {delay_seconds}s for {operation}",
            transaction_id=transaction_id,
            details={
                "retry_entry_id": entry.id,
                "operation": operation,
                "delay_seconds": delay_seconds,
                "next_attempt_at": entry.next_attempt_at.isoformat(),
            },
            commit=False,
        )
        await self.db.commit()

        track_retry_scheduled(operation)
        log.info(
            "retry_scheduled",
            retry_entry_id=entry.id,
            transaction_id=transaction_id,
            operation=operation,
            delay_seconds=delay_seconds,
        )
        return entry

    async def claim_due(self, limit: int | None = None, now: datetime | None = None) -> list[RetryQueueEntry]:
        """
        Claim up to limit due entries, oldest-due first.

        Each claim increments attempts and sets a lease (claimed_until). Rows
        another poller claimed in the meantime are skipped.
        """
        limit = limit or settings.RETRY_QUEUE_BATCH_SIZE
        now = now or utcnow()
        lease_until = now + timedelta(seconds=settings.RETRY_CLAIM_LEASE_SECONDS)

        stmt = (
            select(RetryQueueEntry.id)
            .where(*_claimable(now))
            .order_by(RetryQueueEntry.next_attempt_at.asc(), RetryQueueEntry.id.asc())
            .limit(limit)
        )
        candidate_ids = list((await self.db.execute(stmt)).scalars().all())

        claimed_ids = []
        for entry_id in candidate_ids:
            result = await self.db.execute(
                update(RetryQueueEntry)
                .where(RetryQueueEntry.id == entry_id, *_claimable(now))
                .values(attempts=RetryQueueEntry.attempts + 1, claimed_until=lease_until)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(entry_id)
        await self.db.commit()

        if not claimed_ids:
            return []

        stmt = (
            select(RetryQueueEntry)
            .where(RetryQueueEntry.id.in_(claimed_ids))
            .order_by(RetryQueueEntry.next_attempt_at.asc(), RetryQueueEntry.id.asc())
            .execution_options(populate_existing=True)
        )
        entries = list((await self.db.execute(stmt)).scalars().all())
        log.info("retry_entries_claimed", count=len(entries), candidates=len(candidate_ids))
        return entries

    async def complete(self, entry: RetryQueueEntry) -> None:
        """Retire an entry whose redrive succeeded."""
        await self.db.execute(
            delete(RetryQueueEntry)
            .where(RetryQueueEntry.id == entry.id)
            .execution_options(synchronize_session=False)
        )
        await self.activity.log(
            "retry_processed",
            f"Retry succeeded for {entry.operation} after {entry.attempts} attempt(s)",
            transaction_id=entry.transaction_id,
            details={"retry_entry_id": entry.id, "attempts": entry.attempts},
            commit=False,
        )
        await self.db.commit()
        log.info("retry_processed", retry_entry_id=entry.id, transaction_id=entry.transaction_id)

    async def fail(
        self,
        entry: RetryQueueEntry,
        error: GlassOpsError | Exception | str,
        retryable: bool | None = None,
    ) -> RetryQueueEntry | None:
        """
        Record a failed redrive.

        Dead-letters the entry when its attempt budget is spent or the error is
        not retryable; otherwise reschedules it with exponential back-off.

        Returns:
            The updated entry, or None if it no longer exists
        """
        if isinstance(error, str):
            message = error
            retryable = True if retryable is None else retryable
        else:
            classified = classify_error(error)
            message = classified.message
            retryable = classified.retryable if retryable is None else retryable

        now = utcnow()
        exhausted = entry.attempts >= entry.max_attempts

        if exhausted or not retryable:
            # a dead-lettered entry has always spent its budget
            result = await self.db.execute(
                update(RetryQueueEntry)
                .where(RetryQueueEntry.id == entry.id, RetryQueueEntry.is_dead_letter.is_(False))
                .values(
                    attempts=max(entry.attempts, entry.max_attempts),
                    is_dead_letter=True,
                    dead_lettered_at=now,
                    claimed_until=None,
                    last_error=message,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await self.db.commit()
                return await self.get(entry.id)

            reason = "attempts exhausted" if exhausted else "non-retryable error"
            await self.activity.log(
                "retry_deadletter",
                f"{entry.operation} moved to dead-letter ({reason}): {message}",
                transaction_id=entry.transaction_id,
                details={
                    "retry_entry_id": entry.id,
                    "attempts": entry.attempts,
                    "max_attempts": entry.max_attempts,
                    "error": message,
                },
                commit=False,
            )
            await self.db.commit()

            track_dead_letter(entry.operation)
            log.error(
                "retry_deadletter",
                retry_entry_id=entry.id,
                transaction_id=entry.transaction_id,
                attempts=entry.attempts,
                error=message,
            )
            capture_message(
                f"Retry entry dead-lettered: {entry.operation}",
                level="error",
                retry_entry_id=entry.id,
                transaction_id=entry.transaction_id,
                error=message,
            )
            await self.activity.notify(
                type="dead_letter",
                severity=NotificationSeverity.CRITICAL,
                title="Retry exhausted",
                message=f"{entry.operation} for transaction {entry.transaction_id} needs attention: {message}",
                details={"retry_entry_id": entry.id, "attempts": entry.attempts, "error": message},
                source="retry_queue",
                transaction_id=entry.transaction_id,
            )
            return await self.get(entry.id)

        retries_used = entry.attempts - 1 if (entry.payload or {}).get("initial_run") else entry.attempts
        delay = compute_backoff(retries_used)
        next_attempt_at = now + timedelta(seconds=delay)
        await self.db.execute(
            update(RetryQueueEntry)
            .where(RetryQueueEntry.id == entry.id, RetryQueueEntry.is_dead_letter.is_(False))
            .values(next_attempt_at=next_attempt_at, claimed_until=None, last_error=message)
            .execution_options(synchronize_session=False)
        )
        await self.activity.log(
            "retry_rescheduled",
            f"{entry.operation} attempt {entry.attempts}/{entry.max_attempts} failed; next in {delay}s",
            transaction_id=entry.transaction_id,
            details={
                "retry_entry_id": entry.id,
                "attempts": entry.attempts,
                "delay_seconds": delay,
                "error": message,
            },
            commit=False,
        )
        await self.db.commit()
        track_retry_scheduled(entry.operation)
        log.info(
            "retry_rescheduled",
            retry_entry_id=entry.id,
            attempts=entry.attempts,
            delay_seconds=delay,
        )
        return await self.get(entry.id)

    async def requeue_dead_letter(self, entry_id: int) -> RetryQueueEntry:
        """
        Operator action: give a dead-lettered entry a fresh attempt budget, due now.

        The entry is marked operator-requeued, so its redrives are not held to
        the automatic retry limit.
        """
        entry = await self.get(entry_id)
        if entry is None:
            raise NotFoundError("Retry entry", entry_id)
        if not entry.is_dead_letter:
            raise InvalidTransitionError(f"Retry entry {entry_id} is not dead-lettered")

        await self.db.execute(
            update(RetryQueueEntry)
            .where(RetryQueueEntry.id == entry_id, RetryQueueEntry.is_dead_letter.is_(True))
            .values(
                payload={**_without_initial_run(entry.payload), "operator_requeued": True},
                is_dead_letter=False,
                dead_lettered_at=None,
                attempts=0,
                claimed_until=None,
                next_attempt_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.activity.log(
            "retry_requeued",
            f"Dead-lettered {entry.operation} requeued by operator",
            transaction_id=entry.transaction_id,
            details={"retry_entry_id": entry_id},
            commit=False,
        )
        await self.db.commit()
        log.info("retry_requeued", retry_entry_id=entry_id)
        return await self.get(entry_id)

    async def discard_active(self, operation: str, transaction_id: int) -> int:
        """Delete queued (not dead-lettered) entries for a transaction. Caller commits."""
        result = await self.db.execute(
            delete(RetryQueueEntry)
            .where(
                RetryQueueEntry.operation == operation,
                RetryQueueEntry.transaction_id == transaction_id,
                RetryQueueEntry.is_dead_letter.is_(False),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def list_entries(self, dead_letter: bool | None = None, limit: int = 100) -> list[RetryQueueEntry]:
        stmt = select(RetryQueueEntry)
        if dead_letter is not None:
            stmt = stmt.where(RetryQueueEntry.is_dead_letter.is_(dead_letter))
        stmt = stmt.order_by(RetryQueueEntry.next_attempt_at.asc(), RetryQueueEntry.id.asc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def stats(self) -> dict:
        """Counts of active, due, in-flight and dead-lettered entries."""
        now = utcnow()

        async def count(*conditions) -> int:
            stmt = select(func.count()).select_from(RetryQueueEntry).where(*conditions)
            return (await self.db.execute(stmt)).scalar_one()

        active = await count(RetryQueueEntry.is_dead_letter.is_(False))
        due = await count(*_claimable(now))
        in_flight = await count(
            RetryQueueEntry.is_dead_letter.is_(False),
            RetryQueueEntry.claimed_until > now,
        )
        dead = await count(RetryQueueEntry.is_dead_letter.is_(True))
        update_retry_queue_depth(active)
        return {"active": active, "due": due, "in_flight": in_flight, "dead_letter": dead}


# handler(db, entry, activity) re-runs the entry's operation and raises on failure
RetryHandler = Callable[[AsyncSession, RetryQueueEntry, ActivityService], Awaitable[Any]]


class RetryQueuePoller:
    """
    Claims due entries and redrives them.

    Each entry is redriven in its own session so one failure cannot roll back
    another entry's bookkeeping.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        handlers: dict[str, RetryHandler],
        publisher=None,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.publisher = publisher
        self.batch_size = batch_size or settings.RETRY_QUEUE_BATCH_SIZE

    async def run_once(self) -> dict:
        """
        Process one batch.

        Returns:
            Counts: claimed, succeeded, rescheduled, dead_lettered
        """
        async with self.session_factory() as db:
            service = RetryQueueService(db, ActivityService(db, self.publisher))
            entries = await service.claim_due(self.batch_size)

        summary = {"claimed": len(entries), "succeeded": 0, "rescheduled": 0, "dead_lettered": 0}
        for entry in entries:
            outcome = await self._redrive(entry)
            summary[outcome] += 1

        if entries:
            async with self.session_factory() as db:
                await RetryQueueService(db, ActivityService(db, self.publisher)).stats()
            log.info("retry_poll_completed", **summary)
        return summary

    async def _redrive(self, entry: RetryQueueEntry) -> str:
        bind_context(retry_entry_id=entry.id, transaction_id=entry.transaction_id)
        entry_log = log.bind(retry_entry_id=entry.id, transaction_id=entry.transaction_id)

        async with self.session_factory() as db:
            activity = ActivityService(db, self.publisher)
            service = RetryQueueService(db, activity)

            handler = self.handlers.get(entry.operation)
            if handler is None:
                entry_log.error("retry_unknown_operation", operation=entry.operation)
                await service.fail(
                    entry,
                    ValidationError(f"Unknown retry operation '{entry.operation}'"),
                    retryable=False,
                )
                return "dead_lettered"

            try:
                await handler(db, entry, activity)
            except Exception as exc:
                await db.rollback()
                error = classify_error(exc)
                entry_log.warning(
                    "retry_attempt_failed",
                    attempts=entry.attempts,
                    error=error.message,
                    retryable=error.retryable,
                )
                updated = await service.fail(entry, error)
                if updated is not None and updated.is_dead_letter:
                    return "dead_lettered"
                return "rescheduled"

            await service.complete(entry)
            return "succeeded"

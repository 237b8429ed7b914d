"""
Transaction state machine.

Owns the lifecycle of a transaction:

    pending -> processing -> success | failed
    failed  -> pending       (automatic redrive or manual retry)

Every transition sets status and appends one status_history entry in the
same flush. The row is versioned, so a concurrent writer fails with
ConflictError instead of overwriting.
"""
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from glassops.config import settings
from glassops.exceptions import (
    ConfigurationError,
    ConflictError,
    GlassOpsError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    classify_error,
)
from glassops.logging_config import get_logger
from glassops.models.activity import NotificationSeverity
from glassops.models.base import utcnow
from glassops.models.retry_queue import RetryOperation, RetryQueueEntry
from glassops.models.transaction import (
    FulfillmentStatus,
    Transaction,
    TransactionStatus,
    can_transition,
)
from glassops.routes.metrics import (
    track_transaction_failed,
    track_transaction_submitted,
    track_transaction_succeeded,
)
from glassops.sentry_config import capture_message
from glassops.services.activity_service import ActivityService
from glassops.services.field_mapper import FieldMapper, normalize_intake
from glassops.services.job_client import ExternalJobClient, build_job_payload
from glassops.services.retry_queue import RetryQueueService, compute_backoff

log = get_logger(component="transaction_state_machine")

# dispatch(transaction_id, retry_count) -> True when processing was enqueued
Dispatcher = Callable[[int, int], Awaitable[bool]]


async def enqueue_processing(transaction_id: int, retry_count: int) -> bool:
    """Default dispatcher: enqueue the arq process_transaction task."""
    from glassops.worker import enqueue_transaction

    return await enqueue_transaction(transaction_id, retry_count)


def requires_subcontractor(transaction: Transaction) -> bool:
    """
    True when the work must go to a third-party technician.

    Either the intake asked for it explicitly, or in-house zip prefixes are
    configured and the customer's zip matches none of them.
    """
    form_data = transaction.form_data or {}
    if str(form_data.get("fulfillment", "")).lower() == "subcontractor":
        return True
    prefixes = settings.IN_HOUSE_ZIP_PREFIXES
    if not prefixes:
        return False
    zip_code = transaction.customer_zip or ""
    return not any(zip_code.startswith(prefix) for prefix in prefixes)


def retry_budget(retry_count: int) -> int:
    """Automatic retries a transaction has left, capped by the per-entry attempt limit."""
    return max(0, min(settings.retry_queue_max_attempts, settings.MAX_RETRIES - retry_count))


class TransactionStateMachine:
    """Drives transactions through field mapping and external job creation."""

    def __init__(
        self,
        db: AsyncSession,
        job_client: ExternalJobClient | None = None,
        activity: ActivityService | None = None,
        dispatch: Dispatcher | None = None,
        retry_queue: RetryQueueService | None = None,
        field_mapper: FieldMapper | None = None,
    ):
        self.db = db
        self.job_client = job_client or ExternalJobClient()
        self.activity = activity or ActivityService(db)
        self.dispatch = dispatch or enqueue_processing
        self.retry_queue = retry_queue or RetryQueueService(db, self.activity)
        self.field_mapper = field_mapper or FieldMapper(db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, transaction_id: int) -> Transaction:
        """Load a transaction with fresh column values; raises NotFoundError."""
        stmt = (
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    async def list_transactions(
        self,
        status: TransactionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
        include_archived: bool = False,
    ) -> tuple[list[Transaction], int]:
        """Transactions newest first, with the total matching count."""
        conditions = []
        if status is not None:
            conditions.append(Transaction.status == status)
        if not include_archived:
            conditions.append(Transaction.archived_at.is_(None))

        total = (await self.db.execute(
            select(func.count()).select_from(Transaction).where(*conditions)
        )).scalar_one()
        stmt = (
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _append_history(transaction: Transaction, status: TransactionStatus, triggered_by: str) -> None:
        history = list(transaction.status_history or [])
        timestamp = utcnow()
        if history:
            last = datetime.fromisoformat(history[-1]["timestamp"])
            if timestamp <= last:
                timestamp = last + timedelta(microseconds=1)
        history.append({
            "status": status.value,
            "timestamp": timestamp.isoformat(),
            "triggered_by": triggered_by,
        })
        transaction.status = status
        transaction.status_history = history

    async def _transition(
        self,
        transaction: Transaction,
        target: TransactionStatus,
        triggered_by: str,
        **changes: Any,
    ) -> Transaction:
        """
        Apply one status change and commit it.

        Raises:
            InvalidTransitionError: target not reachable from the current status
            ConflictError: another writer changed the row first
        """
        current = TransactionStatus(transaction.status)
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"Transaction {transaction.id} cannot move from {current.value} to {target.value}"
            )

        transaction_id = transaction.id
        for key, value in changes.items():
            setattr(transaction, key, value)
        self._append_history(transaction, target, triggered_by)

        try:
            await self.db.commit()
        except StaleDataError as exc:
            await self.db.rollback()
            log.warning(
                "transaction_conflict",
                transaction_id=transaction_id,
                from_status=current.value,
                to_status=target.value,
            )
            raise ConflictError(
                f"Transaction {transaction_id} was modified concurrently",
                details={"transaction_id": transaction_id},
            ) from exc

        log.info(
            "transaction_transition",
            transaction_id=transaction_id,
            from_status=current.value,
            to_status=target.value,
            triggered_by=triggered_by,
        )
        return transaction

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def submit(self, raw_payload: dict, source_type: str = "intake") -> Transaction:
        """
        Create a pending transaction from an intake payload and dispatch processing.

        Args:
            raw_payload: Raw form body, stored as form_data
            source_type: Intake channel name

        Returns:
            The new Transaction

        Raises:
            ValidationError: payload is not a non-empty object
        """
        if not isinstance(raw_payload, dict) or not raw_payload:
            raise ValidationError("Intake payload must be a non-empty JSON object")

        transaction = Transaction(
            **normalize_intake(raw_payload),
            source_type=source_type,
            form_data=raw_payload,
            retry_count=0,
            status_history=[],
        )
        self._append_history(transaction, TransactionStatus.PENDING, source_type)
        self.db.add(transaction)
        await self.db.flush()

        await self.activity.log(
            "form_received",
            f"Form submission received from {transaction.customer_name}",
            transaction_id=transaction.id,
            details={"source_type": source_type, "customer_email": transaction.customer_email},
            commit=False,
        )
        await self.db.commit()

        track_transaction_submitted(source_type)
        log.info("transaction_submitted", transaction_id=transaction.id, source_type=source_type)

        await self._dispatch(transaction)
        return transaction

    async def _dispatch(self, transaction: Transaction) -> bool:
        """
        Hand processing to background work.

        When the dispatcher cannot enqueue, a retry entry due immediately is
        written so the retry poller picks the transaction up instead. Its
        first claim is this run, so it gets one attempt on top of the
        transaction's remaining retries.
        """
        transaction_id = transaction.id
        retry_count = transaction.retry_count
        try:
            enqueued = await self.dispatch(transaction_id, retry_count)
        except Exception as exc:
            log.warning("transaction_dispatch_failed", transaction_id=transaction_id, error=str(exc))
            enqueued = False

        if not enqueued:
            await self.retry_queue.enqueue(
                RetryOperation.PROCESS_TRANSACTION.value,
                transaction_id=transaction_id,
                payload={"transaction_id": transaction_id, "initial_run": True},
                delay_seconds=0,
                max_attempts=1 + retry_budget(retry_count),
                last_error="Background dispatch unavailable",
            )
        return bool(enqueued)

    async def process(self, transaction_id: int, schedule_retry: bool = True) -> Transaction:
        """
        Run the pipeline for a pending transaction.

        Validation and configuration errors fail the transaction terminally.
        Any other failure is transient: when schedule_retry is set and retries
        remain, a retry entry is queued with exponential back-off.

        Args:
            transaction_id: Transaction to process
            schedule_retry: False when the retry poller drives this run

        Returns:
            The transaction after the run (untouched if it was not pending)
        """
        transaction, _ = await self._run(await self.get(transaction_id), schedule_retry)
        return transaction

    async def _run(
        self,
        transaction: Transaction,
        schedule_retry: bool,
    ) -> tuple[Transaction, GlassOpsError | None]:
        transaction_id = transaction.id
        txn_log = log.bind(transaction_id=transaction_id)

        if transaction.status != TransactionStatus.PENDING:
            txn_log.info("transaction_not_pending", status=TransactionStatus(transaction.status).value)
            return transaction, None

        try:
            transaction = await self._transition(transaction, TransactionStatus.PROCESSING, "worker")
        except ConflictError:
            txn_log.info("transaction_already_claimed")
            return await self.get(transaction_id), None

        try:
            mapped, errors = await self.field_mapper.map(transaction.form_data or {})
            if errors:
                raise ValidationError(f"Validation failed: {'; '.join(errors)}", errors=errors)
            external_job_id = await self.job_client.create_job(build_job_payload(transaction, mapped))
        except Exception as exc:
            error = classify_error(exc)
            transaction = await self._record_failure(transaction, error, schedule_retry)
            return transaction, error

        await self.activity.log(
            "transaction_processed",
            f"External job {external_job_id} created",
            transaction_id=transaction_id,
            details={"external_job_id": external_job_id, "retry_count": transaction.retry_count},
            commit=False,
        )
        transaction = await self._transition(
            transaction,
            TransactionStatus.SUCCESS,
            "worker",
            external_job_id=external_job_id,
            error_message=None,
        )
        track_transaction_succeeded()
        return transaction, None

    async def _record_failure(
        self,
        transaction: Transaction,
        error: GlassOpsError,
        schedule_retry: bool,
    ) -> Transaction:
        transaction_id = transaction.id
        await self.activity.log(
            "transaction_failed",
            f"Processing failed: {error.message}",
            transaction_id=transaction_id,
            details={
                "error_code": error.code,
                "retryable": error.retryable,
                "retry_count": transaction.retry_count,
                **error.details,
            },
            commit=False,
        )
        transaction = await self._transition(
            transaction,
            TransactionStatus.FAILED,
            "worker",
            error_message=error.message,
        )
        track_transaction_failed(error.code)
        log.warning(
            "transaction_failed",
            transaction_id=transaction_id,
            error_code=error.code,
            error=error.message,
            retry_count=transaction.retry_count,
        )

        if isinstance(error, ConfigurationError):
            await self.activity.notify(
                type="configuration_error",
                severity=NotificationSeverity.ERROR,
                title="Configuration error",
                message=error.message,
                source="transaction_state_machine",
                transaction_id=transaction_id,
            )
        elif error.retryable and schedule_retry:
            if transaction.retry_count < settings.MAX_RETRIES:
                await self.retry_queue.enqueue(
                    RetryOperation.PROCESS_TRANSACTION.value,
                    transaction_id=transaction_id,
                    payload={"transaction_id": transaction_id},
                    delay_seconds=compute_backoff(transaction.retry_count),
                    max_attempts=retry_budget(transaction.retry_count),
                    last_error=error.message,
                )
            else:
                await self._raise_dead_letter(transaction, error)
        return transaction

    async def _raise_dead_letter(self, transaction: Transaction, error: GlassOpsError) -> None:
        transaction_id = transaction.id
        await self.activity.log(
            "transaction_deadletter",
            f"Retry limit reached after {transaction.retry_count} retries",
            transaction_id=transaction_id,
            details={"retry_count": transaction.retry_count, "error": error.message},
        )
        capture_message(
            "Transaction retry limit reached",
            level="error",
            transaction_id=transaction_id,
            retry_count=transaction.retry_count,
        )
        await self.activity.notify(
            type="dead_letter",
            severity=NotificationSeverity.CRITICAL,
            title="Transaction needs attention",
            message=f"Transaction {transaction_id} failed after {transaction.retry_count} retries: {error.message}",
            details={"retry_count": transaction.retry_count, "error": error.message},
            source="transaction_state_machine",
            transaction_id=transaction_id,
        )

    async def redrive(self, transaction_id: int, operator_requeued: bool = False) -> Transaction:
        """
        Automatic retry driven by the retry poller.

        Moves a failed transaction back to pending (counting the retry) and
        processes it without scheduling further retries. A transaction that is
        no longer failed or pending is left alone. Once retry_count reaches
        MAX_RETRIES the automatic step is refused, unless an operator requeued
        the entry.

        Raises:
            InvalidTransitionError: the automatic retry limit is reached
            GlassOpsError: the classified error when the run failed
        """
        transaction = await self.get(transaction_id)

        if transaction.status == TransactionStatus.FAILED:
            if transaction.retry_count >= settings.MAX_RETRIES and not operator_requeued:
                log.warning(
                    "redrive_refused",
                    transaction_id=transaction_id,
                    retry_count=transaction.retry_count,
                    max_retries=settings.MAX_RETRIES,
                )
                raise InvalidTransitionError(
                    f"Transaction {transaction_id} reached the retry limit "
                    f"({transaction.retry_count}/{settings.MAX_RETRIES})"
                )
            retry_count = transaction.retry_count + 1
            await self.activity.log(
                "retry",
                f"Automatic retry #{retry_count}",
                transaction_id=transaction_id,
                details={"automatic": True, "retry_count": retry_count},
                commit=False,
            )
            try:
                transaction = await self._transition(
                    transaction,
                    TransactionStatus.PENDING,
                    "retry_queue",
                    retry_count=retry_count,
                    last_retry_at=utcnow(),
                    error_message=None,
                )
            except ConflictError:
                return await self.get(transaction_id)
        elif transaction.status != TransactionStatus.PENDING:
            log.info(
                "redrive_skipped",
                transaction_id=transaction_id,
                status=TransactionStatus(transaction.status).value,
            )
            return transaction

        transaction, error = await self._run(transaction, schedule_retry=False)
        if error is not None:
            raise error
        return transaction

    async def retry(self, transaction_id: int) -> tuple[Transaction, bool]:
        """
        Manual retry of a failed transaction.

        Allowed regardless of the automatic retry limit. Queued automatic
        retries for the transaction are discarded.

        Returns:
            (transaction, enqueued) - enqueued is False when processing fell
            back to the retry queue

        Raises:
            InvalidTransitionError: the transaction is not failed
            ConflictError: a concurrent retry won
        """
        transaction = await self.get(transaction_id)
        status = TransactionStatus(transaction.status)
        if status != TransactionStatus.FAILED:
            raise InvalidTransitionError(
                f"Transaction {transaction_id} is {status.value}; only failed transactions can be retried"
            )

        retry_count = transaction.retry_count + 1
        await self.retry_queue.discard_active(RetryOperation.PROCESS_TRANSACTION.value, transaction_id)
        await self.activity.log(
            "retry",
            f"Manual retry #{retry_count}",
            transaction_id=transaction_id,
            details={"automatic": False, "retry_count": retry_count},
            commit=False,
        )
        transaction = await self._transition(
            transaction,
            TransactionStatus.PENDING,
            "manual_retry",
            retry_count=retry_count,
            last_retry_at=utcnow(),
            error_message=None,
        )
        enqueued = await self._dispatch(transaction)
        return transaction, enqueued

    async def mark_fulfillment(
        self,
        transaction_id: int,
        fulfillment_status: FulfillmentStatus,
        job_request_id: int | None = None,
        subcontractor_id: int | None = None,
    ) -> Transaction:
        """Record the dispatch outcome. status and status_history are not touched."""
        for attempt in range(2):
            transaction = await self.get(transaction_id)
            transaction.fulfillment_status = fulfillment_status
            if job_request_id is not None:
                transaction.job_request_id = job_request_id
            transaction.assigned_subcontractor_id = subcontractor_id
            try:
                await self.db.commit()
                return transaction
            except StaleDataError as exc:
                await self.db.rollback()
                if attempt == 1:
                    raise ConflictError(f"Transaction {transaction_id} was modified concurrently") from exc

    async def archive(self, transaction_id: int) -> Transaction:
        """Administrative soft archive."""
        transaction = await self.get(transaction_id)
        if transaction.archived_at is not None:
            return transaction
        transaction.archived_at = utcnow()
        await self.activity.log(
            "transaction_archived",
            f"Transaction {transaction_id} archived",
            transaction_id=transaction_id,
            commit=False,
        )
        try:
            await self.db.commit()
        except StaleDataError as exc:
            await self.db.rollback()
            raise ConflictError(f"Transaction {transaction_id} was modified concurrently") from exc
        return transaction

    async def active_retry_entry(self, transaction_id: int) -> RetryQueueEntry | None:
        return await self.retry_queue.get_active(RetryOperation.PROCESS_TRANSACTION.value, transaction_id)


def build_retry_handlers(
    job_client: ExternalJobClient | None = None,
    on_success: Callable[[Transaction], Awaitable[Any]] | None = None,
) -> dict:
    """
    Operation registry for RetryQueuePoller.

    Args:
        job_client: Client used for redriven runs
        on_success: Called with the transaction after a redrive succeeds
    """

    async def redrive_transaction(db: AsyncSession, entry: RetryQueueEntry, activity: ActivityService):
        transaction_id = entry.transaction_id or (entry.payload or {}).get("transaction_id")
        if transaction_id is None:
            raise ValidationError(f"Retry entry {entry.id} has no transaction")
        machine = TransactionStateMachine(db, job_client=job_client, activity=activity)
        transaction = await machine.redrive(
            int(transaction_id),
            operator_requeued=bool((entry.payload or {}).get("operator_requeued")),
        )
        if (
            on_success is not None
            and transaction.status == TransactionStatus.SUCCESS
            and transaction.fulfillment_status is None
        ):
            await on_success(transaction)
        return transaction

    return {RetryOperation.PROCESS_TRANSACTION.value: redrive_transaction}

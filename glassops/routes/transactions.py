"""
Transaction API routes.

Read access to the pipeline plus the operator actions: manual retry and
archive.
"""
from fastapi import APIRouter, Depends, Query

from glassops.dependencies.services import get_state_machine
from glassops.models.retry_queue import RetryQueueEntry
from glassops.models.transaction import Transaction, TransactionStatus
from glassops.services.transaction_service import TransactionStateMachine


router = APIRouter(prefix="/api/transactions", tags=["transactions"])


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


def _iso(value):
    return value.isoformat() if value else None


def retry_entry_to_response(entry: RetryQueueEntry) -> dict:
    return {
        "id": entry.id,
        "operation": entry.operation,
        "transactionId": entry.transaction_id,
        "attempts": entry.attempts,
        "maxAttempts": entry.max_attempts,
        "nextAttemptAt": _iso(entry.next_attempt_at),
        "lastError": entry.last_error,
        "isDeadLetter": entry.is_dead_letter,
        "deadLetteredAt": _iso(entry.dead_lettered_at),
    }


def transaction_to_response(transaction: Transaction, retry_entry: RetryQueueEntry | None = None) -> dict:
    """Convert a Transaction model to its API shape."""
    response = {
        "id": transaction.id,
        "customerName": transaction.customer_name,
        "customerEmail": transaction.customer_email,
        "customerPhone": transaction.customer_phone,
        "customerZip": transaction.customer_zip,
        "vehicleYear": transaction.vehicle_year,
        "vehicleMake": transaction.vehicle_make,
        "vehicleModel": transaction.vehicle_model,
        "vehicleVin": transaction.vehicle_vin,
        "damageDescription": transaction.damage_description,
        "sourceType": transaction.source_type,
        "status": _enum_value(transaction.status),
        "statusHistory": transaction.status_history or [],
        "retryCount": transaction.retry_count,
        "lastRetryAt": _iso(transaction.last_retry_at),
        "errorMessage": transaction.error_message,
        "externalJobId": transaction.external_job_id,
        "fulfillmentStatus": _enum_value(transaction.fulfillment_status),
        "jobRequestId": transaction.job_request_id,
        "assignedSubcontractorId": transaction.assigned_subcontractor_id,
        "archivedAt": _iso(transaction.archived_at),
        "createdAt": _iso(transaction.created_at),
        "updatedAt": _iso(transaction.updated_at),
    }
    if retry_entry is not None:
        response["retry"] = retry_entry_to_response(retry_entry)
    return response


@router.get("", response_model=dict)
async def list_transactions(
    status: TransactionStatus | None = None,
    include_archived: bool = Query(False, alias="includeArchived"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    machine: TransactionStateMachine = Depends(get_state_machine),
):
    """List transactions newest first."""
    transactions, total = await machine.list_transactions(
        status=status,
        limit=limit,
        offset=offset,
        include_archived=include_archived,
    )
    return {
        "transactions": [transaction_to_response(t) for t in transactions],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/{transaction_id}", response_model=dict)
async def get_transaction(
    transaction_id: int,
    machine: TransactionStateMachine = Depends(get_state_machine),
):
    """Get one transaction with its pending retry, if any."""
    transaction = await machine.get(transaction_id)
    retry_entry = await machine.active_retry_entry(transaction_id)
    return transaction_to_response(transaction, retry_entry)


@router.post("/{transaction_id}/retry", response_model=dict)
async def retry_transaction(
    transaction_id: int,
    machine: TransactionStateMachine = Depends(get_state_machine),
):
    """
    Manually retry a failed transaction.

    enqueued is False when the worker queue was unreachable and the retry
    poller will pick the transaction up instead.
    """
    transaction, enqueued = await machine.retry(transaction_id)
    return {
        "success": True,
        "enqueued": enqueued,
        "transaction": transaction_to_response(transaction),
    }


@router.post("/{transaction_id}/archive", response_model=dict)
async def archive_transaction(
    transaction_id: int,
    machine: TransactionStateMachine = Depends(get_state_machine),
):
    transaction = await machine.archive(transaction_id)
    return {"success": True, "transaction": transaction_to_response(transaction)}

"""
ARQ Background Worker for GlassOps.

Processes transactions, dispatches job requests and runs the retry queue
poller using the Redis queue.

Run with: arq glassops.worker.WorkerSettings
"""
import asyncio

from arq import create_pool, cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from glassops.config import settings
from glassops.database import AsyncSessionLocal
from glassops.logging_config import bind_context, configure_logging, get_logger
from glassops.models.transaction import FulfillmentStatus, Transaction, TransactionStatus
from glassops.sentry_config import capture_exception, configure_sentry
from glassops.services.activity_service import ActivityService
from glassops.services.broadcaster import RedisNotificationBridge
from glassops.services.job_client import ExternalJobClient
from glassops.services.retry_queue import RetryQueuePoller
from glassops.services.scheduler import DispatchScheduler
from glassops.services.sms_gateway import SmsGateway
from glassops.services.transaction_service import (
    TransactionStateMachine,
    build_retry_handlers,
    requires_subcontractor,
)

log = get_logger(component="worker")


async def hand_off(ctx: dict, db: AsyncSession, transaction: Transaction) -> str:
    """
    Route a successful transaction to its fulfillment path.

    In-house work is marked directly; subcontractor work is queued for the
    dispatch_job_request task.
    """
    if requires_subcontractor(transaction):
        await ctx["redis"].enqueue_job(
            "dispatch_job_request",
            transaction.id,
            _job_id=f"dispatch:{transaction.id}",
        )
        log.info("dispatch_enqueued", transaction_id=transaction.id)
        return "subcontractor"

    machine = TransactionStateMachine(db, job_client=ctx["job_client"], activity=ActivityService(db, ctx["publisher"]))
    await machine.mark_fulfillment(transaction.id, FulfillmentStatus.IN_HOUSE)
    return "in_house"


async def process_transaction(ctx: dict, transaction_id: int, retry_count: int = 0) -> dict:
    """Run the pipeline for one pending transaction."""
    bind_context(transaction_id=transaction_id, arq_job_id=ctx.get("job_id"))
    txn_log = log.bind(transaction_id=transaction_id, retry_count=retry_count, job_try=ctx.get("job_try", 1))
    txn_log.info("process_transaction_started")

    async with AsyncSessionLocal() as db:
        activity = ActivityService(db, ctx["publisher"])
        machine = TransactionStateMachine(db, job_client=ctx["job_client"], activity=activity)
        transaction = await machine.process(transaction_id)

        status = TransactionStatus(transaction.status)
        result = {"transaction_id": transaction_id, "status": status.value}
        if status == TransactionStatus.SUCCESS and transaction.fulfillment_status is None:
            result["fulfillment"] = await hand_off(ctx, db, transaction)

    txn_log.info("process_transaction_finished", status=status.value)
    return result


async def dispatch_job_request(ctx: dict, transaction_id: int) -> dict:
    """Create the job request for a transaction that needs a subcontractor."""
    bind_context(transaction_id=transaction_id, arq_job_id=ctx.get("job_id"))
    async with AsyncSessionLocal() as db:
        activity = ActivityService(db, ctx["publisher"])
        machine = TransactionStateMachine(db, job_client=ctx["job_client"], activity=activity)
        transaction = await machine.get(transaction_id)
        if transaction.job_request_id is not None:
            log.info("dispatch_already_done", transaction_id=transaction_id, job_request_id=transaction.job_request_id)
            return {"transaction_id": transaction_id, "job_request_id": transaction.job_request_id}

        scheduler = DispatchScheduler(db, sms=ctx["sms"], activity=activity, state_machine=machine)
        try:
            result = await scheduler.create_job_request_for_transaction(transaction_id)
        except Exception as exc:
            capture_exception(exc, transaction_id=transaction_id)
            log.error("dispatch_failed", transaction_id=transaction_id, error=str(exc))
            raise

    return {
        "transaction_id": transaction_id,
        "job_request_id": result.job_request_id,
        "notified": result.notified,
    }


async def poll_retry_queue(ctx: dict) -> dict:
    """Claim due retry entries and redrive them."""

    async def on_success(transaction: Transaction):
        async with AsyncSessionLocal() as db:
            await hand_off(ctx, db, transaction)

    poller = RetryQueuePoller(
        AsyncSessionLocal,
        build_retry_handlers(job_client=ctx["job_client"], on_success=on_success),
        publisher=ctx["publisher"],
    )
    return await poller.run_once()


async def expire_job_requests(ctx: dict) -> int:
    """Expire job requests nobody accepted within the response window."""
    async with AsyncSessionLocal() as db:
        scheduler = DispatchScheduler(db, sms=ctx["sms"], activity=ActivityService(db, ctx["publisher"]))
        return await scheduler.expire_stale_job_requests()


async def startup(ctx: dict):
    configure_logging()
    configure_sentry()
    ctx["publisher"] = RedisNotificationBridge()
    ctx["job_client"] = ExternalJobClient()
    ctx["sms"] = SmsGateway()
    log.info("worker_started", redis=settings.REDIS_URL)


async def shutdown(ctx: dict):
    await ctx["publisher"].close()
    log.info("worker_stopped")


# Register functions for ARQ
ARQ_FUNCTIONS = [
    process_transaction,
    dispatch_job_request,
]


def _poll_seconds() -> set[int]:
    interval = max(1, min(settings.RETRY_QUEUE_POLL_SECONDS, 60))
    return set(range(0, 60, interval))


async def enqueue_job(function: str, *args, _job_id: str | None = None) -> bool:
    """Enqueue a task for background processing using ARQ."""
    try:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
    except Exception as e:
        log.warning("enqueue_failed", function=function, error=str(e))
        return False

    try:
        job = await redis.enqueue_job(function, *args, _job_id=_job_id)
        # None means a job with this id is already queued
        log.info("job_enqueued", function=function, job_id=_job_id, duplicate=job is None)
        return True
    except Exception as e:
        log.warning("enqueue_failed", function=function, error=str(e))
        return False
    finally:
        await redis.aclose()


async def enqueue_transaction(transaction_id: int, retry_count: int = 0) -> bool:
    """Queue processing for a transaction. One job per (transaction, retry_count)."""
    return await enqueue_job(
        "process_transaction",
        transaction_id,
        retry_count,
        _job_id=f"process:{transaction_id}:{retry_count}",
    )


async def main():
    """Run the worker using arq cli."""
    print("Use: arq glassops.worker.WorkerSettings")
    print(f"Redis: {settings.REDIS_URL}")


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq glassops.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 300
    # Retries are owned by the retry queue, not by arq
    max_tries = 1
    functions = ARQ_FUNCTIONS
    cron_jobs = [
        cron(poll_retry_queue, second=_poll_seconds(), run_at_startup=True),
        cron(expire_job_requests, minute=0, second=0),
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    asyncio.run(main())

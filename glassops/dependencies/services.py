"""
Service providers for FastAPI routes.

Routes never construct external clients directly so tests can swap them
through app.dependency_overrides.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from glassops.database import get_db
from glassops.services.activity_service import ActivityService
from glassops.services.directory import SubcontractorDirectory
from glassops.services.job_client import ExternalJobClient
from glassops.services.retry_queue import RetryQueueService
from glassops.services.scheduler import DispatchScheduler
from glassops.services.sms_gateway import SmsGateway
from glassops.services.transaction_service import Dispatcher, TransactionStateMachine, enqueue_processing


def get_job_client() -> ExternalJobClient:
    return ExternalJobClient()


def get_sms_gateway() -> SmsGateway:
    return SmsGateway()


def get_dispatcher() -> Dispatcher:
    """Hands new and manually retried transactions to the arq worker."""
    return enqueue_processing


def get_activity_service(db: AsyncSession = Depends(get_db)) -> ActivityService:
    return ActivityService(db)


def get_state_machine(
    db: AsyncSession = Depends(get_db),
    job_client: ExternalJobClient = Depends(get_job_client),
    dispatch: Dispatcher = Depends(get_dispatcher),
) -> TransactionStateMachine:
    return TransactionStateMachine(db, job_client=job_client, dispatch=dispatch)


def get_retry_queue(db: AsyncSession = Depends(get_db)) -> RetryQueueService:
    return RetryQueueService(db)


def get_directory(db: AsyncSession = Depends(get_db)) -> SubcontractorDirectory:
    return SubcontractorDirectory(db)


def get_scheduler(
    db: AsyncSession = Depends(get_db),
    sms: SmsGateway = Depends(get_sms_gateway),
    state_machine: TransactionStateMachine = Depends(get_state_machine),
) -> DispatchScheduler:
    return DispatchScheduler(
        db,
        sms=sms,
        activity=state_machine.activity,
        state_machine=state_machine,
    )

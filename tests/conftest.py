import datetime
from itertools import count

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from glassops.exceptions import TransientDependencyError
from glassops.models.base import Base, utcnow
from glassops.models.retry_queue import RetryQueueEntry
from glassops.services.activity_service import ActivityService
from glassops.services.directory import SubcontractorDirectory
from glassops.services.retry_queue import RetryQueueService
from glassops.services.scheduler import DispatchScheduler
from glassops.services.transaction_service import TransactionStateMachine

# Register every table on Base.metadata
from glassops.models import activity, field_mapping, retry_queue, subcontractor, transaction  # noqa: F401


VALID_FORM = {
    "first-name": "Jane",
    "last-name": "Doe",
    "email": "Jane@Example.com",
    "mobile-phone": "(760) 555-0100",
    "location": "12 Palm Ave, Oceanside, CA 92054",
    "zip-code": "92054",
    "service-type": "Windshield Replacement",
    "which-windows-wheels": "front",
    "year": "2019",
    "make": "Honda",
    "model": "Civic",
    "vin": "1hgcm82633a004352",
}


class FakeJobClient:
    """Scripted ERP client. Each call consumes the next outcome."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []
        self._ids = count(1000)

    async def create_job(self, payload: dict) -> str:
        self.calls.append(payload)
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        return f"QO-{next(self._ids)}"


def erp_down():
    return TransientDependencyError("ERP API error (503): unavailable", service="erp", dependency_status=503)


class FakeSms:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []
        self._ids = count(1)

    async def send(self, to: str, text: str):
        if to in self.failing:
            raise TransientDependencyError("SMS API error (500)", service="sms", dependency_status=500)
        self.sent.append((to, text))
        return f"msg-{next(self._ids)}"


class FakeDispatcher:
    def __init__(self, result=True):
        self.result = result
        self.calls = []

    async def __call__(self, transaction_id: int, retry_count: int) -> bool:
        self.calls.append((transaction_id, retry_count))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class RecordingPublisher:
    def __init__(self):
        self.frames = []

    async def publish(self, frame: dict) -> None:
        self.frames.append(frame)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'glassops.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def job_client():
    return FakeJobClient()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def activity(db, publisher):
    return ActivityService(db, publisher)


@pytest.fixture
def machine(db, job_client, activity, dispatcher):
    return TransactionStateMachine(db, job_client=job_client, activity=activity, dispatch=dispatcher)


@pytest.fixture
def retry_service(db, activity):
    return RetryQueueService(db, activity)


@pytest.fixture
def directory(db):
    return SubcontractorDirectory(db)


@pytest.fixture
def scheduler(db, sms, activity, directory, machine):
    return DispatchScheduler(db, sms=sms, activity=activity, directory=directory, state_machine=machine)


async def make_all_due(session_factory):
    """Pull every queued retry forward so the next poll claims it."""
    async with session_factory() as session:
        await session.execute(
            update(RetryQueueEntry)
            .where(RetryQueueEntry.is_dead_letter.is_(False))
            .values(next_attempt_at=utcnow() - datetime.timedelta(seconds=1))
        )
        await session.commit()

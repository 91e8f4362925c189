import os

# Must be set before bulk_orchestrator.settings is imported anywhere
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CREATE_TABLES_ON_STARTUP", "false")
os.environ.setdefault("DISPATCH_PENDING_ON_STARTUP", "false")

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from bulk_orchestrator.db.session import create_tables
from bulk_orchestrator.db.models import Job, JobEventLog, OutboxEvent
from bulk_orchestrator.services.queue_manager import QueueManager
from bulk_orchestrator.services.recovery import StuckJobRecovery
from bulk_orchestrator.services.status_reporter import StatusReporter
from bulk_orchestrator.settings import Settings

from tests.helpers import FakeSignaler


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        SQLALCHEMY_DATABASE_URI=f"sqlite+aiosqlite:///{tmp_path}/jobs.db",
        MAX_BATCH_SIZE=500,
        MAX_RETRIES=3,
        STALENESS_BASE_SECONDS=120,
        STALENESS_PER_RECORD_SECONDS=0.5,
        STALENESS_MAX_SECONDS=1800,
        STORE_RETRY_BACKOFF_SECONDS=0,
        WORKER_SIGNAL_ATTEMPTS=3,
        WORKER_SIGNAL_BACKOFF_SECONDS=0,
        OPERATOR_API_KEY="operator-key",
        WORKER_SHARED_SECRET="worker-secret",
        BILLING_WEBHOOK_URL=None,
    )


@pytest.fixture
async def engine(test_settings):
    engine = create_async_engine(test_settings.SQLALCHEMY_DATABASE_URI)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def signaler():
    return FakeSignaler()


@pytest.fixture
def manager(session_factory, signaler, test_settings):
    return QueueManager(session_factory, signaler, test_settings)


@pytest.fixture
def recovery(manager):
    return StuckJobRecovery(manager)


@pytest.fixture
def reporter(session_factory):
    return StatusReporter(session_factory)


@pytest.fixture
def db(session_factory):
    """Small read helpers for assertions straight against the store."""

    class Db:
        async def job(self, job_id) -> Job:
            async with session_factory() as session:
                return await session.get(Job, job_id)

        async def events(self, job_id=None, event_type=None) -> list[JobEventLog]:
            stmt = select(JobEventLog).order_by(JobEventLog.id)
            if job_id is not None:
                stmt = stmt.where(JobEventLog.job_id == job_id)
            if event_type is not None:
                stmt = stmt.where(JobEventLog.event_type == event_type)
            async with session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())

        async def outbox(self) -> list[OutboxEvent]:
            async with session_factory() as session:
                return list((await session.execute(select(OutboxEvent).order_by(OutboxEvent.id))).scalars().all())

    return Db()

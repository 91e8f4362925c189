import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bulk_orchestrator.settings import settings
from bulk_orchestrator.api.v1.jobs import router as jobs_router
from bulk_orchestrator.api.v1.workers import router as workers_router
from bulk_orchestrator.api.v1.admin import router as admin_router
from bulk_orchestrator.api.v1.metrics import router as metrics_router

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from bulk_orchestrator.db.session import AsyncSessionLocal, engine, create_tables
    from bulk_orchestrator.scheduler.service import RecoveryScheduler
    from bulk_orchestrator.services.outbox import OutboxProcessor
    from bulk_orchestrator.services.queue_manager import QueueManager
    from bulk_orchestrator.services.recovery import StuckJobRecovery
    from bulk_orchestrator.services.signaler import WorkerSignaler
    from bulk_orchestrator.services.status_reporter import StatusReporter

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger = logging.getLogger("uvicorn")

    # 1. Schema bootstrap for dev and tests
    if settings.CREATE_TABLES_ON_STARTUP:
        await create_tables(engine)

    # 2. Services
    signaler = WorkerSignaler(settings)
    queue_manager = QueueManager(AsyncSessionLocal, signaler, settings)
    app.state.settings = settings
    app.state.queue_manager = queue_manager
    app.state.status_reporter = StatusReporter(AsyncSessionLocal)
    app.state.recovery = StuckJobRecovery(queue_manager)

    # 3. Jobs left pending by a previous process (crash between submit and dispatch)
    if settings.DISPATCH_PENDING_ON_STARTUP:
        try:
            count = await queue_manager.dispatch_pending()
            logger.info(f"Startup: dispatched {count} pending jobs")
        except Exception as e:
            logger.error(f"Startup dispatch of pending jobs failed: {e}")

    # 4. Recovery scheduler (leader-elected) and outbox
    scheduler = RecoveryScheduler(engine, queue_manager, app.state.recovery)
    await scheduler.start()

    outbox = OutboxProcessor(AsyncSessionLocal, settings)
    await outbox.start()

    yield

    # Shutdown
    await scheduler.stop()
    await outbox.stop()
    await signaler.aclose()
    await engine.dispose()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(workers_router, prefix="/api/v1/workers", tags=["workers"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}

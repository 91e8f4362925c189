from typing import Annotated

from fastapi import Depends, Request

from bulk_orchestrator.services.queue_manager import QueueManager
from bulk_orchestrator.services.recovery import StuckJobRecovery
from bulk_orchestrator.services.status_reporter import StatusReporter
from bulk_orchestrator.settings import Settings

# Services are built once in the lifespan and hung off app.state

def get_settings(request: Request) -> Settings:
    return request.app.state.settings

def get_queue_manager(request: Request) -> QueueManager:
    return request.app.state.queue_manager

def get_status_reporter(request: Request) -> StatusReporter:
    return request.app.state.status_reporter

def get_recovery(request: Request) -> StuckJobRecovery:
    return request.app.state.recovery

AppSettings = Annotated[Settings, Depends(get_settings)]
Manager = Annotated[QueueManager, Depends(get_queue_manager)]
Reporter = Annotated[StatusReporter, Depends(get_status_reporter)]
Recovery = Annotated[StuckJobRecovery, Depends(get_recovery)]

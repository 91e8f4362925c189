from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import OperationalError

from bulk_orchestrator.api.deps import Manager, Recovery
from bulk_orchestrator.api.v1.errors import to_http
from bulk_orchestrator.auth.security import require_operator

router = APIRouter(dependencies=[Depends(require_operator)])

class SweepResponse(BaseModel):
    scanned: int
    redispatched: int
    failed: int
    skipped: int
    signal_failures: int
    model_config = ConfigDict(from_attributes=True)

class QueueResponse(BaseModel):
    counts: dict[str, int]
    total: int
    oldest_processing_updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

@router.post("/recover", response_model=SweepResponse)
async def trigger_recovery(recovery: Recovery):
    """Runs one recovery sweep now, regardless of leadership."""
    try:
        return SweepResponse.model_validate(await recovery.sweep())
    except (OperationalError, OSError) as e:
        raise to_http(e)

@router.post("/dispatch_pending")
async def trigger_dispatch_pending(manager: Manager, limit: int = 100):
    try:
        return {"dispatched_count": await manager.dispatch_pending(limit=limit)}
    except (OperationalError, OSError) as e:
        raise to_http(e)

@router.get("/queue", response_model=QueueResponse)
async def queue_status(manager: Manager):
    """Counts across all owners."""
    try:
        return QueueResponse.model_validate(await manager.get_queue_status())
    except (OperationalError, OSError) as e:
        raise to_http(e)

from fastapi import HTTPException, status
from sqlalchemy.exc import OperationalError

from bulk_orchestrator.domain.errors import (
    JobError,
    ValidationError,
    JobNotFoundError,
    InvalidTransition,
    ConcurrencyConflict,
)

def to_http(exc: Exception) -> HTTPException:
    """Maps orchestrator errors onto HTTP responses."""
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if isinstance(exc, InvalidTransition):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "current": str(exc.current), "requested": str(exc.requested)},
        )
    if isinstance(exc, (ConcurrencyConflict, OperationalError, OSError)):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Store busy, retry shortly",
            headers={"Retry-After": "1"},
        )
    if isinstance(exc, JobError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")

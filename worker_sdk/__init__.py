from .client import WorkerClient
from .runner import Handler, JobRunner

__all__ = [
    "Handler",
    "JobRunner",
    "WorkerClient",
]

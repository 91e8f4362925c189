from enum import StrEnum, auto

class JobStatus(StrEnum):
    PENDING = auto()     # Submitted, waiting for dispatch
    PROCESSING = auto()  # Handed to the worker
    COMPLETED = auto()   # Worker finished every record
    FAILED = auto()      # Stopped, worker error, or retry budget exhausted
    PAUSED = auto()      # Held by the owner before dispatch

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

class JobKind(StrEnum):
    FIND = auto()
    VERIFY = auto()

class Actor(StrEnum):
    USER = auto()
    DISPATCHER = auto()
    WORKER = auto()
    RECOVERY = auto()

class JobEvent(StrEnum):
    CREATED = auto()
    DISPATCHED = auto()
    SIGNAL_FAILED = auto()
    PROGRESS = auto()
    PROGRESS_AFTER_TERMINAL = auto()
    REDISPATCHED = auto()
    STOPPED = auto()
    PAUSED = auto()
    RESUMED = auto()
    RESUBMITTED = auto()
    COMPLETED = auto()
    FAILED = auto()
    TRANSITION_REJECTED = auto()

class OutboxStatus(StrEnum):
    PENDING = auto()
    PUBLISHED = auto()

TERMINAL_EVENT_TYPE = "job.terminal"

STOPPED_BY_USER = "stopped by user"
EXCEEDED_RETRY_BUDGET = "exceeded retry budget"

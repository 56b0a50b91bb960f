"""Error types raised by the execution engine."""


class EngineError(Exception):
    """Base class for engine errors."""


class JobPayloadError(EngineError):
    """Raised when a job payload does not match its kind's schema."""


class QueueError(EngineError):
    """Raised for invalid queue operations."""


class HandlerExhaustedError(QueueError):
    """Recorded on a job whose handler failed on every allowed attempt."""

    def __init__(self, job_id: str, attempts: int, reason: str) -> None:
        super().__init__(f"Job {job_id} failed after {attempts} attempt(s): {reason}")
        self.job_id = job_id
        self.attempts = attempts
        self.reason = reason


class TestNotFoundError(EngineError):
    """Raised when a job references a test the store does not know."""

    __test__ = False


class SchedulerTaskError(EngineError):
    """Recorded when a periodic task body raises."""

    def __init__(self, task_name: str, reason: str) -> None:
        super().__init__(f"Periodic task '{task_name}' failed: {reason}")
        self.task_name = task_name
        self.reason = reason


class NotifierAuthError(EngineError):
    """Raised when a subscriber presents a missing or invalid credential."""

"""Configuration for the execution engine."""

from collections.abc import Mapping, Sequence
from typing import Literal

from pydantic import BaseModel, Field, SecretStr

EXECUTION_QUEUE = "test-execution"
MONITORING_QUEUE = "monitoring"
NOTIFICATION_QUEUE = "notifications"
ANALYTICS_QUEUE = "analytics"


class RetryPolicy(BaseModel):
    """Retry and backoff policy of a queue."""

    max_attempts: int = Field(default=1, ge=1)
    backoff: Literal["fixed", "exponential"] | None = None
    delay: float = Field(default=0.0, ge=0, description="Base delay in seconds")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retrying after the given failed attempt."""
        match self.backoff:
            case "fixed":
                return self.delay
            case "exponential":
                return self.delay * 2 ** (attempt - 1)
            case None:
                return 0.0


class QueueConfig(BaseModel):
    """Configuration of one named queue."""

    name: str
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    # Per job kind concurrency; every listed kind must have a handler
    handlers: Mapping[str, int] = Field(default_factory=dict)
    retain_completed: int = 100
    retain_failed: int = 50


def default_queues() -> Sequence[QueueConfig]:
    """Queues the engine runs with unless configured otherwise."""
    return [
        QueueConfig(
            name=EXECUTION_QUEUE,
            retry_policy=RetryPolicy(max_attempts=3, backoff="exponential", delay=2.0),
            handlers={"run-test": 5},
            retain_completed=100,
            retain_failed=50,
        ),
        QueueConfig(
            name=MONITORING_QUEUE,
            retry_policy=RetryPolicy(max_attempts=2, backoff="fixed", delay=1.0),
            handlers={"health-check": 10},
            retain_completed=50,
            retain_failed=25,
        ),
        QueueConfig(
            name=NOTIFICATION_QUEUE,
            retry_policy=RetryPolicy(max_attempts=5, backoff="exponential", delay=1.0),
            handlers={"send-notification": 3},
            retain_completed=25,
            retain_failed=10,
        ),
        QueueConfig(
            name=ANALYTICS_QUEUE,
            retry_policy=RetryPolicy(max_attempts=1),
            handlers={"calculate-metrics": 2},
            retain_completed=200,
            retain_failed=50,
        ),
    ]


class SchedulerConfig(BaseModel):
    """Cadence of the periodic tasks, in seconds."""

    due_scan_interval: float = 60
    metrics_interval: float = 300
    alert_interval: float = 120
    alert_window: float = Field(default=900, description="Lookback window in seconds")


class ExecutorConfig(BaseModel):
    """Configuration of the test executor."""

    user_agent: str = "TestFlow/1.0"
    default_region: str = "us-east-1"


class NotifierConfig(BaseModel):
    """Configuration of the real-time notifier."""

    jwt_secret: SecretStr = SecretStr("")
    jwt_algorithm: str = "HS256"
    outbound_queue_size: int = Field(default=100, ge=1)
    host: str = "127.0.0.1"
    port: int = 8080


class EngineConfig(BaseModel):
    """Top level engine configuration."""

    queues: Sequence[QueueConfig] = Field(default_factory=default_queues)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)


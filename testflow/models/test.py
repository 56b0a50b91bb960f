"""Models for test definitions and their rolling statistics."""

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Annotated, Literal

from pydantic import Field, JsonValue, SecretStr, computed_field

from testflow.models.base import Model
from testflow.values import ScalarValue

DEFAULT_REGION = "us-east-1"

type HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]
type AssertionKind = Literal[
    "status",
    "response_time",
    "body_contains",
    "header_exists",
    "json_path",
    "schema_validation",
]
type Operator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "exists",
    "not_exists",
]

INTERVALS: Mapping[str, timedelta] = {
    "1m": timedelta(minutes=1),
    "5m": timedelta(minutes=5),
    "15m": timedelta(minutes=15),
    "30m": timedelta(minutes=30),
    "1h": timedelta(hours=1),
    "4h": timedelta(hours=4),
    "12h": timedelta(hours=12),
    "24h": timedelta(hours=24),
}
DEFAULT_INTERVAL = INTERVALS["15m"]


def interval_duration(interval: str) -> timedelta:
    """Map an interval name to its duration, 15 minutes when unrecognized."""
    return INTERVALS.get(interval, DEFAULT_INTERVAL)


class NoAuth(Model):
    """Request sent without credentials."""

    type: Literal["none"] = "none"


class BearerAuth(Model):
    """Bearer token authentication."""

    type: Literal["bearer"] = "bearer"
    token: SecretStr


class BasicAuth(Model):
    """HTTP basic authentication."""

    type: Literal["basic"] = "basic"
    username: str
    password: SecretStr


class ApiKeyAuth(Model):
    """API key sent in a named header or query parameter."""

    type: Literal["apikey"] = "apikey"
    key: str
    value: SecretStr
    location: Literal["header", "query"] = "header"


type AuthConfig = Annotated[
    NoAuth | BearerAuth | BasicAuth | ApiKeyAuth, Field(discriminator="type")
]


class RequestTemplate(Model):
    """Outbound request configuration of a test."""

    method: HttpMethod = "GET"
    url: str = Field(..., description="Target URL")
    headers: Mapping[str, str] = Field(default_factory=dict)
    body: JsonValue = None
    auth: AuthConfig = Field(default_factory=NoAuth)
    timeout: int = Field(default=30000, description="Request timeout in milliseconds")
    follow_redirects: bool = True


class Assertion(Model):
    """Declarative pass/fail rule evaluated against a captured response."""

    kind: AssertionKind
    field: str | None = None
    operator: Operator = "equals"
    expected: ScalarValue = None
    description: str | None = None


class Schedule(Model):
    """Recurring schedule of a test."""

    enabled: bool = False
    interval: str = "15m"
    timezone: str = "UTC"
    last_dispatched: datetime | None = None

    @property
    def duration(self) -> timedelta:
        """Time between two runs."""
        return interval_duration(self.interval)


class Stats(Model):
    """Rolling statistics kept as raw counters."""

    total_runs: int = 0
    passed_runs: int = 0
    timed_runs: int = 0
    total_response_time: float = 0.0
    last_run: datetime | None = None
    last_status: Literal["passed", "failed"] | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float:
        """Fraction of all runs that passed."""
        if not self.total_runs:
            return 0.0
        return self.passed_runs / self.total_runs

    @computed_field  # type: ignore[prop-decorator]
    @property
    def avg_response_time(self) -> float:
        """Mean duration in milliseconds of runs with a completed round trip."""
        if not self.timed_runs:
            return 0.0
        return self.total_response_time / self.timed_runs


class Test(Model):
    """Test definition owned by a project."""

    __test__ = False

    id: str
    project_id: str
    name: str
    active: bool = True
    request: RequestTemplate
    assertions: Sequence[Assertion] = Field(default_factory=list)
    schedule: Schedule | None = None
    regions: Sequence[str] = Field(default_factory=list)
    stats: Stats = Field(default_factory=Stats)

    @property
    def target_regions(self) -> Sequence[str]:
        """Regions to run in, the default region when none are configured."""
        return list(self.regions) or [DEFAULT_REGION]

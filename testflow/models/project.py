"""Models for projects and their alert thresholds."""

from pydantic import Field

from testflow.models.base import Model


class AlertThresholds(Model):
    """Limits that raise an alert when exceeded over the lookback window."""

    error_rate: float = Field(default=0.05, description="Maximum failure fraction")
    response_time: float = Field(
        default=5000, description="Maximum mean response time in milliseconds"
    )


class Project(Model):
    """Project grouping tests under an organization."""

    id: str
    organization: str
    name: str = ""
    active: bool = True
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)

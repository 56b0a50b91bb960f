"""Real-time push of execution, alert and metrics events."""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import JsonValue

from testflow.models.execution import ExecutionRecord
from testflow.notifier.auth import TokenVerifier
from testflow.notifier.registry import (
    ConnectionRegistry,
    Subscriber,
    org_channel,
    project_channel,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Alert:
    """Alert raised for a project."""

    type: str
    severity: str
    message: str
    project_id: str
    organization: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, kw_only=True)
class RealtimeNotifier:
    """Authenticates subscribers and fans events out to their channels.

    Delivery is best effort: events go to each subscriber's bounded outbound
    queue, with no acknowledgment and no replay for late subscribers.
    """

    verifier: TokenVerifier
    registry: ConnectionRegistry = field(default_factory=ConnectionRegistry)
    queue_size: int = 100

    def connect(self, token: str | None) -> Subscriber:
        """Authenticate a new connection and join its organization channel.

        Raises:
            NotifierAuthError: If the credential is missing or invalid

        """
        identity = self.verifier.verify(token)
        subscriber = Subscriber(
            identity=identity, outbound=asyncio.Queue(maxsize=self.queue_size)
        )
        subscriber.channels.add(org_channel(identity.organization))
        self.registry.add(subscriber)
        log.info("User connected: %s", identity.user_id)
        return subscriber

    def disconnect(self, subscriber: Subscriber) -> None:
        """Remove a connection from the registry."""
        self.registry.remove(subscriber)
        subscriber.channels.clear()
        log.info("User disconnected: %s", subscriber.identity.user_id)

    def join_project(self, subscriber: Subscriber, project_id: str) -> None:
        """Subscribe a connection to a project channel."""
        subscriber.channels.add(project_channel(project_id))
        log.info("User %s joined project %s", subscriber.identity.user_id, project_id)

    def leave_project(self, subscriber: Subscriber, project_id: str) -> None:
        """Unsubscribe a connection from a project channel."""
        subscriber.channels.discard(project_channel(project_id))
        log.info("User %s left project %s", subscriber.identity.user_id, project_id)

    def emit_to_channel(self, channel: str, event: str, data: Mapping[str, Any]) -> int:
        """Push an event to every subscriber of a channel.

        Returns:
            Number of subscribers the event was queued for

        """
        delivered = 0
        for subscriber in self.registry.in_channel(channel):
            subscriber.push(event, data)
            delivered += 1
        return delivered

    def emit_to_user(self, user_id: str, event: str, data: Mapping[str, Any]) -> int:
        """Push an event to every connection of one identity."""
        subscribers = self.registry.for_user(user_id)
        for subscriber in subscribers:
            subscriber.push(event, data)
        return len(subscribers)

    def emit_to_project(self, project_id: str, event: str, data: Mapping[str, Any]) -> int:
        """Push an event to a project channel."""
        return self.emit_to_channel(project_channel(project_id), event, data)

    def emit_to_organization(
        self, organization: str, event: str, data: Mapping[str, Any]
    ) -> int:
        """Push an event to an organization channel."""
        return self.emit_to_channel(org_channel(organization), event, data)

    def emit_test_result(self, record: ExecutionRecord) -> None:
        """Push the current state of an execution record to its project."""
        self.emit_to_project(
            record.project_id,
            "test_result",
            {
                "test_id": record.test_id,
                "execution_id": record.execution_id,
                "status": record.status,
                "duration": record.duration,
                "region": record.region,
                "timestamp": record.start_time.isoformat(),
            },
        )

    def emit_alert(self, alert: Alert) -> None:
        """Push an alert to the organization of its project."""
        self.emit_to_organization(
            alert.organization,
            "alert",
            {
                "type": alert.type,
                "severity": alert.severity,
                "message": alert.message,
                "project_id": alert.project_id,
                "timestamp": alert.timestamp.isoformat(),
            },
        )

    def emit_metrics(self, project_id: str, metrics: Mapping[str, JsonValue]) -> None:
        """Push a metrics snapshot to a project."""
        self.emit_to_project(
            project_id,
            "metrics_update",
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "metrics": dict(metrics),
            },
        )

    @property
    def connected_users(self) -> list[str]:
        """Identities with an open connection."""
        return self.registry.identities

    @property
    def connection_count(self) -> int:
        """Number of open connections."""
        return self.registry.connection_count

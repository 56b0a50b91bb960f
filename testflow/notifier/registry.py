"""Registry of connected real-time subscribers."""

import asyncio
import itertools
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from testflow.notifier.auth import Identity

log = logging.getLogger(__name__)

_connection_ids = itertools.count(1)


def org_channel(organization: str) -> str:
    """Channel name of an organization."""
    return f"org:{organization}"


def project_channel(project_id: str) -> str:
    """Channel name of a project."""
    return f"project:{project_id}"


@dataclass(kw_only=True, eq=False)
class Subscriber:
    """One subscriber connection with its bounded outbound queue.

    When the queue is full the oldest pending event is dropped to make room.
    """

    identity: Identity
    outbound: asyncio.Queue[Mapping[str, Any]]
    connection_id: int = field(default_factory=lambda: next(_connection_ids))
    channels: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dropped: int = 0

    def push(self, event: str, data: Mapping[str, Any]) -> None:
        """Queue an event for delivery without waiting."""
        message = {"event": event, "data": data}
        if self.outbound.full():
            self.outbound.get_nowait()
            self.dropped += 1
            log.warning(
                "Outbound queue full for %s, dropped oldest event",
                self.identity.user_id,
            )
        self.outbound.put_nowait(message)


@dataclass(kw_only=True)
class ConnectionRegistry:
    """Connections keyed by identity, changed only on connect and disconnect."""

    _connections: dict[str, dict[int, Subscriber]] = field(default_factory=dict)

    def add(self, subscriber: Subscriber) -> None:
        """Register a new connection."""
        user_id = subscriber.identity.user_id
        self._connections.setdefault(user_id, {})[subscriber.connection_id] = subscriber

    def remove(self, subscriber: Subscriber) -> None:
        """Forget a connection."""
        user_id = subscriber.identity.user_id
        connections = self._connections.get(user_id, {})
        connections.pop(subscriber.connection_id, None)
        if not connections:
            self._connections.pop(user_id, None)

    def for_user(self, user_id: str) -> list[Subscriber]:
        """Connections of one identity."""
        return list(self._connections.get(user_id, {}).values())

    def in_channel(self, channel: str) -> Iterator[Subscriber]:
        """Connections that joined a channel."""
        for connections in self._connections.values():
            for subscriber in connections.values():
                if channel in subscriber.channels:
                    yield subscriber

    @property
    def identities(self) -> list[str]:
        """Identities with at least one connection."""
        return list(self._connections)

    @property
    def connection_count(self) -> int:
        """Total number of connections."""
        return sum(len(connections) for connections in self._connections.values())

"""Real-time notifier module."""

from testflow.notifier.auth import Identity, TokenVerifier
from testflow.notifier.notifier import Alert, RealtimeNotifier
from testflow.notifier.registry import ConnectionRegistry, Subscriber
from testflow.notifier.server import create_app

__all__ = [
    "Alert",
    "ConnectionRegistry",
    "Identity",
    "RealtimeNotifier",
    "Subscriber",
    "TokenVerifier",
    "create_app",
]

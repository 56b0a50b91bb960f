"""Test executor module."""

from testflow.executor.auth import apply_auth
from testflow.executor.executor import ResultPublisher, TestExecutor

__all__ = ["ResultPublisher", "TestExecutor", "apply_auth"]

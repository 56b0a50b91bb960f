"""Persistence interface consumed by the engine, with an in-memory implementation."""

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import Protocol

from testflow.models.execution import ExecutionRecord
from testflow.models.project import Project
from testflow.models.test import Schedule, Stats, Test

log = logging.getLogger(__name__)


class Store(Protocol):
    """Create/read/update access to tests, projects and execution records."""

    async def get_test(self, test_id: str) -> Test | None:
        """Return a test by ID."""

    async def list_scheduled_tests(self) -> Sequence[Test]:
        """Return active tests with scheduling enabled."""

    async def update_test_stats(
        self, test_id: str, update: Callable[[Stats], Stats]
    ) -> Stats:
        """Apply ``update`` to the current statistics of a test atomically."""

    async def mark_dispatched(self, test_id: str, when: datetime) -> None:
        """Record that a scheduled run of the test was enqueued."""

    async def get_project(self, project_id: str) -> Project | None:
        """Return a project by ID."""

    async def list_active_projects(self) -> Sequence[Project]:
        """Return active projects."""

    async def save_record(self, record: ExecutionRecord) -> None:
        """Create or replace an execution record."""

    async def list_records(
        self, project_id: str, since: datetime
    ) -> Sequence[ExecutionRecord]:
        """Return records of a project created at or after ``since``."""


class InMemoryStore:
    """Store keeping everything in process memory."""

    def __init__(
        self,
        tests: Iterable[Test] = (),
        projects: Iterable[Project] = (),
    ) -> None:
        self.tests: dict[str, Test] = {test.id: test for test in tests}
        self.projects: dict[str, Project] = {project.id: project for project in projects}
        self.records: dict[str, ExecutionRecord] = {}
        self._lock = asyncio.Lock()

    async def get_test(self, test_id: str) -> Test | None:
        return self.tests.get(test_id)

    async def list_scheduled_tests(self) -> Sequence[Test]:
        return [
            test
            for test in self.tests.values()
            if test.active and test.schedule is not None and test.schedule.enabled
        ]

    async def update_test_stats(
        self, test_id: str, update: Callable[[Stats], Stats]
    ) -> Stats:
        async with self._lock:
            test = self.tests.get(test_id)
            if test is None:
                raise KeyError(f"Test '{test_id}' not found")
            stats = update(test.stats)
            self.tests[test_id] = test.model_copy(update={"stats": stats})
        return stats

    async def mark_dispatched(self, test_id: str, when: datetime) -> None:
        async with self._lock:
            test = self.tests.get(test_id)
            if test is None:
                raise KeyError(f"Test '{test_id}' not found")
            schedule = test.schedule or Schedule()
            self.tests[test_id] = test.model_copy(
                update={"schedule": schedule.model_copy(update={"last_dispatched": when})}
            )

    async def get_project(self, project_id: str) -> Project | None:
        return self.projects.get(project_id)

    async def list_active_projects(self) -> Sequence[Project]:
        return [project for project in self.projects.values() if project.active]

    async def save_record(self, record: ExecutionRecord) -> None:
        self.records[record.execution_id] = record
        log.debug("Saved execution %s status=%s", record.execution_id, record.status)

    async def list_records(
        self, project_id: str, since: datetime
    ) -> Sequence[ExecutionRecord]:
        return [
            record
            for record in self.records.values()
            if record.project_id == project_id and record.created_at >= since
        ]

"""Periodic tasks that enqueue scheduled tests, metrics and alerts."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import psutil
from pydantic import JsonValue

from testflow.config import (
    ANALYTICS_QUEUE,
    EXECUTION_QUEUE,
    NOTIFICATION_QUEUE,
    SchedulerConfig,
)
from testflow.errors import EngineError, SchedulerTaskError
from testflow.models.execution import ExecutionRecord
from testflow.models.project import Project
from testflow.models.test import Test
from testflow.queue.jobs import (
    Job,
    JobKind,
    MetricsPayload,
    NotificationPayload,
    RunTestPayload,
)
from testflow.queue.manager import QueueManager
from testflow.store import Store

log = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

DUE_SCAN_TASK = "due-test-scan"
METRICS_TASK = "metrics-collection"
ALERTS_TASK = "alert-evaluation"

type TaskCallback = Callable[[], Awaitable[Any]]


def is_due(test: Test, now: datetime) -> bool:
    """Whether a recurring test should run at ``now``.

    The reference point is the later of the last completed run and the last
    time a run was enqueued, so a test is not enqueued twice while its
    previous run is still pending.
    """
    schedule = test.schedule
    if not test.active or schedule is None or not schedule.enabled:
        return False

    marks = [mark for mark in (test.stats.last_run, schedule.last_dispatched) if mark]
    reference = max(marks, default=EPOCH)
    return now - reference >= schedule.duration


@dataclass(frozen=True, kw_only=True)
class WindowMetrics:
    """Execution health of a project over the lookback window."""

    executions: int
    failure_rate: float
    avg_response_time: float


def window_metrics(records: Sequence[ExecutionRecord]) -> WindowMetrics | None:
    """Summarize records of the lookback window, None when there are none."""
    if not records:
        return None
    failed = sum(1 for record in records if record.status == "failed")
    latency = sum(
        record.response.response_time if record.response else 0.0
        for record in records
    )
    return WindowMetrics(
        executions=len(records),
        failure_rate=failed / len(records),
        avg_response_time=latency / len(records),
    )


@dataclass(kw_only=True)
class PeriodicTask:
    """A callback run on a fixed interval until cancelled."""

    name: str
    interval: float
    callback: TaskCallback
    runs: int = 0
    failures: int = 0
    last_error: SchedulerTaskError | None = None
    _task: asyncio.Task[None] | None = field(default=None, repr=False)

    def start(self) -> None:
        """Start ticking."""
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")

    async def cancel(self) -> None:
        """Stop ticking and wait for the loop to exit."""
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    @property
    def running(self) -> bool:
        """Whether the loop is active."""
        return self._task is not None and not self._task.done()

    async def tick(self) -> None:
        """Run the callback once, recording rather than raising failures."""
        self.runs += 1
        try:
            await self.callback()
        except Exception as e:
            self.failures += 1
            self.last_error = SchedulerTaskError(self.name, str(e))
            log.error("Error in periodic task %s: %s", self.name, e, exc_info=e)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()


class Scheduler:
    """Runs the due-test scan, metrics collection and alert evaluation.

    Every task has its own cadence and runs independently of the others and
    of the queue workers.
    """

    def __init__(
        self,
        queues: QueueManager,
        store: Store,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.queues = queues
        self.store = store
        self.config = config or SchedulerConfig()
        self.clock = clock
        self._tasks: dict[str, PeriodicTask] = {}
        self._started_at = time.monotonic()
        self._process = psutil.Process()
        self.is_running = False

    async def start(self) -> None:
        """Start the built-in periodic tasks."""
        if self.is_running:
            return
        await self.register_task(
            DUE_SCAN_TASK, self.config.due_scan_interval, self.scan_due_tests
        )
        await self.register_task(
            METRICS_TASK, self.config.metrics_interval, self.collect_metrics
        )
        await self.register_task(
            ALERTS_TASK, self.config.alert_interval, self.evaluate_alerts
        )
        self.is_running = True
        log.info("Scheduler started")

    async def stop(self) -> None:
        """Cancel every periodic task."""
        for task in list(self._tasks.values()):
            await task.cancel()
        self._tasks.clear()
        self.is_running = False
        log.info("Scheduler stopped")

    async def register_task(
        self, name: str, interval: float, callback: TaskCallback
    ) -> PeriodicTask:
        """Start a named periodic task, replacing any task with the same name."""
        if (previous := self._tasks.pop(name, None)) is not None:
            await previous.cancel()

        task = PeriodicTask(name=name, interval=interval, callback=callback)
        self._tasks[name] = task
        task.start()
        log.info("Periodic task scheduled: %s every %.0fs", name, interval)
        return task

    async def remove_task(self, name: str) -> bool:
        """Cancel and forget a named task."""
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        await task.cancel()
        log.info("Periodic task removed: %s", name)
        return True

    def get_task(self, name: str) -> PeriodicTask | None:
        """Return a registered task."""
        return self._tasks.get(name)

    def status(self) -> dict[str, Any]:
        """Report scheduler state."""
        return {
            "running": self.is_running,
            "tasks": list(self._tasks),
            "uptime": time.monotonic() - self._started_at,
        }

    async def scan_due_tests(self) -> list[Job]:
        """Enqueue an execution job for every recurring test that is due.

        A failure on one test is logged and the scan moves on to the next.
        """
        now = self.clock()
        jobs: list[Job] = []
        for test in await self.store.list_scheduled_tests():
            if not is_due(test, now):
                continue
            try:
                job = await self.queues.enqueue(
                    EXECUTION_QUEUE,
                    JobKind.RUN_TEST,
                    RunTestPayload(
                        test_id=test.id,
                        triggered_by="scheduled",
                        regions=list(test.regions),
                    ),
                )
                await self.store.mark_dispatched(test.id, now)
            except EngineError as e:
                log.error("Failed to queue scheduled test %s: %s", test.id, e)
                continue
            except Exception as e:
                log.error(
                    "Unexpected error scheduling test %s", test.id, exc_info=e
                )
                continue
            log.info("Scheduled test queued: %s", test.name)
            jobs.append(job)
        return jobs

    async def collect_metrics(self) -> Job:
        """Snapshot process and queue statistics for the analytics queue."""
        times = self._process.cpu_times()
        metrics: dict[str, JsonValue] = {
            "timestamp": self.clock().isoformat(),
            "system": {
                "uptime": time.monotonic() - self._started_at,
                "rss": self._process.memory_info().rss,
                "cpu_percent": self._process.cpu_percent(),
                "cpu_user": times.user,
                "cpu_system": times.system,
            },
            "queues": {
                name: dict(counts) for name, counts in self.queues.all_stats().items()
            },
        }
        return await self.queues.enqueue(
            ANALYTICS_QUEUE,
            JobKind.CALCULATE_METRICS,
            MetricsPayload(type="system", metrics=metrics),
        )

    async def evaluate_alerts(self) -> list[Job]:
        """Compare recent execution health of each project to its thresholds."""
        now = self.clock()
        since = now - timedelta(seconds=self.config.alert_window)
        jobs: list[Job] = []

        for project in await self.store.list_active_projects():
            try:
                jobs.extend(await self._evaluate_project(project, since, now))
            except Exception as e:
                log.error(
                    "Alert evaluation failed for project %s", project.id, exc_info=e
                )
        return jobs

    async def _evaluate_project(
        self, project: Project, since: datetime, now: datetime
    ) -> list[Job]:
        records = await self.store.list_records(project.id, since)
        summary = window_metrics(records)
        if summary is None:
            return []

        jobs = [
            await self.queues.enqueue(
                ANALYTICS_QUEUE,
                JobKind.CALCULATE_METRICS,
                MetricsPayload(
                    type="project",
                    project_id=project.id,
                    metrics={
                        "executions": summary.executions,
                        "failure_rate": summary.failure_rate,
                        "avg_response_time": summary.avg_response_time,
                    },
                ),
            )
        ]
        for alert in self._breaches(project, summary, now):
            jobs.append(
                await self.queues.enqueue(
                    NOTIFICATION_QUEUE, JobKind.SEND_NOTIFICATION, alert
                )
            )
        return jobs

    def _breaches(
        self, project: Project, summary: WindowMetrics, now: datetime
    ) -> list[NotificationPayload]:
        thresholds = project.alert_thresholds
        alerts: list[NotificationPayload] = []

        if summary.failure_rate > thresholds.error_rate:
            alerts.append(
                NotificationPayload(
                    type="alert",
                    project_id=project.id,
                    organization=project.organization,
                    alert_type="high_error_rate",
                    severity="critical",
                    message=(
                        f"Error rate {summary.failure_rate:.1%} exceeds "
                        f"threshold {thresholds.error_rate:.1%}"
                    ),
                    data={
                        "current_rate": summary.failure_rate,
                        "threshold": thresholds.error_rate,
                    },
                    timestamp=now,
                )
            )

        if summary.avg_response_time > thresholds.response_time:
            alerts.append(
                NotificationPayload(
                    type="alert",
                    project_id=project.id,
                    organization=project.organization,
                    alert_type="high_response_time",
                    severity="warning",
                    message=(
                        f"Average response time {summary.avg_response_time:.0f}ms "
                        f"exceeds threshold {thresholds.response_time:.0f}ms"
                    ),
                    data={
                        "current_time": summary.avg_response_time,
                        "threshold": thresholds.response_time,
                    },
                    timestamp=now,
                )
            )

        for alert in alerts:
            log.warning("Alert for project %s: %s", project.id, alert.message)
        return alerts

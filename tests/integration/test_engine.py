"""End-to-end tests of the engine with a mocked target."""

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import pytest
from aioresponses import aioresponses as aioresponses_cls
from pydantic import SecretStr

from testflow.config import (
    ANALYTICS_QUEUE,
    EXECUTION_QUEUE,
    MONITORING_QUEUE,
    NOTIFICATION_QUEUE,
    EngineConfig,
    NotifierConfig,
    QueueConfig,
    RetryPolicy,
)
from testflow.engine import Engine
from testflow.errors import HandlerExhaustedError
from testflow.models.execution import ExecutionRecord, TriggerMetadata
from testflow.queue.jobs import HealthCheckPayload, JobKind
from testflow.store import InMemoryStore
from testflow.testing.factories import (
    AssertionFactory,
    ProjectFactory,
    RequestTemplateFactory,
    ScheduleFactory,
    TestFactory,
)

TARGET_URL = "http://target.test/health"
FAST_RETRY = RetryPolicy(max_attempts=3, backoff="exponential", delay=0.01)


@pytest.fixture
def config(jwt_secret: str) -> EngineConfig:
    """Create engine configuration with fast retries."""
    return EngineConfig(
        queues=[
            QueueConfig(
                name=EXECUTION_QUEUE, retry_policy=FAST_RETRY, handlers={"run-test": 2}
            ),
            QueueConfig(
                name=MONITORING_QUEUE,
                retry_policy=RetryPolicy(max_attempts=2, backoff="fixed", delay=0.01),
                handlers={"health-check": 2},
            ),
            QueueConfig(
                name=NOTIFICATION_QUEUE,
                retry_policy=FAST_RETRY,
                handlers={"send-notification": 1},
            ),
            QueueConfig(name=ANALYTICS_QUEUE, handlers={"calculate-metrics": 1}),
        ],
        notifier=NotifierConfig(jwt_secret=SecretStr(jwt_secret)),
    )


@pytest.fixture
def store() -> InMemoryStore:
    """Create store with a project and a scheduled test."""
    test = TestFactory.build(
        id="t1",
        project_id="p1",
        request=RequestTemplateFactory.build(url=TARGET_URL),
        assertions=[AssertionFactory.build()],
        schedule=ScheduleFactory.build(),
        regions=["us-east-1", "eu-west-1"],
    )
    return InMemoryStore(
        tests=[test], projects=[ProjectFactory.build(id="p1", organization="acme")]
    )


@pytest.fixture
async def engine(
    config: EngineConfig, store: InMemoryStore, aioresponses: aioresponses_cls
) -> AsyncGenerator[Engine, None]:
    """Create a running engine without the periodic scheduler."""
    async with Engine.from_config(config, store, start_scheduler=False) as impl:
        yield impl


async def test_trigger_runs_test_in_all_regions(
    engine: Engine,
    store: InMemoryStore,
    aioresponses: aioresponses_cls,
    create_token: Callable[..., str],
) -> None:
    """A triggered test runs per region, updates stats and pushes results."""
    aioresponses.get(TARGET_URL, status=200, payload={"ok": True}, repeat=True)
    subscriber = engine.notifier.connect(create_token("user-1", "acme"))
    engine.notifier.join_project(subscriber, "p1")

    job = await engine.trigger("t1", "api")
    await job.wait(timeout=5)

    assert job.state == "completed"
    assert job.return_value == {"test_id": "t1", "results": 2, "status": "passed"}

    records = list(store.records.values())
    assert sorted(record.region for record in records) == ["eu-west-1", "us-east-1"]
    assert all(record.status == "passed" for record in records)
    assert all(record.metadata.triggered_by == "api" for record in records)

    stats = store.tests["t1"].stats
    assert stats.total_runs == 2
    assert stats.success_rate == 1.0
    assert stats.last_status == "passed"
    assert stats.last_run is not None

    statuses = []
    while not subscriber.outbound.empty():
        message = subscriber.outbound.get_nowait()
        assert message["event"] == "test_result"
        statuses.append(message["data"]["status"])
    assert sorted(statuses) == ["passed", "passed", "running", "running"]


async def test_unknown_test_exhausts_retries(engine: Engine) -> None:
    """A job for a missing test fails after every attempt is used."""
    job = await engine.trigger("missing")
    await job.wait(timeout=5)

    assert job.state == "failed"
    assert job.attempts_made == 3
    assert isinstance(job.error, HandlerExhaustedError)
    assert job.failed_reason == "Test 'missing' not found"


async def test_scheduled_scan_runs_due_tests(
    engine: Engine, store: InMemoryStore, aioresponses: aioresponses_cls
) -> None:
    """The due-test scan enqueues the scheduled test, which then runs."""
    aioresponses.get(TARGET_URL, status=500, repeat=True)

    (job,) = await engine.scheduler.scan_due_tests()
    await job.wait(timeout=5)

    assert job.state == "completed"
    stats = store.tests["t1"].stats
    assert stats.last_status == "failed"
    assert stats.total_runs == 2
    assert stats.timed_runs == 0
    assert all(record.status == "error" for record in store.records.values())
    assert await engine.scheduler.scan_due_tests() == []


async def test_alerts_reach_organization(
    engine: Engine, store: InMemoryStore, create_token: Callable[..., str]
) -> None:
    """Threshold breaches are pushed to the project's organization."""
    subscriber = engine.notifier.connect(create_token("user-1", "acme"))
    record = ExecutionRecord(
        test_id="t1",
        project_id="p1",
        region="us-east-1",
        metadata=TriggerMetadata(triggered_by="scheduled"),
    )
    await store.save_record(
        record.finalize(
            status="failed", end_time=datetime.now(timezone.utc), duration=10.0
        )
    )

    jobs = await engine.scheduler.evaluate_alerts()
    for job in jobs:
        await job.wait(timeout=5)

    assert all(job.state == "completed" for job in jobs)
    message = subscriber.outbound.get_nowait()
    assert message["event"] == "alert"
    assert message["data"]["type"] == "high_error_rate"
    assert message["data"]["severity"] == "critical"
    assert message["data"]["project_id"] == "p1"


class TestHealthCheck:
    """Tests for health check jobs."""

    async def test_healthy_target(
        self, engine: Engine, aioresponses: aioresponses_cls
    ) -> None:
        """A target answering with the expected status completes the job."""
        aioresponses.get(TARGET_URL, status=200)

        job = await engine.queues.enqueue(
            MONITORING_QUEUE, JobKind.HEALTH_CHECK, HealthCheckPayload(target=TARGET_URL)
        )
        await job.wait(timeout=5)

        assert job.state == "completed"
        assert job.return_value == {"target": TARGET_URL, "status": 200}

    async def test_unhealthy_target_is_retried(
        self, engine: Engine, aioresponses: aioresponses_cls
    ) -> None:
        """An unexpected status fails the job after its retries."""
        aioresponses.get(TARGET_URL, status=503, repeat=True)

        job = await engine.queues.enqueue(
            MONITORING_QUEUE, JobKind.HEALTH_CHECK, {"target": TARGET_URL}
        )
        await job.wait(timeout=5)

        assert job.state == "failed"
        assert job.attempts_made == 2
        assert job.failed_reason is not None
        assert "returned 503" in job.failed_reason

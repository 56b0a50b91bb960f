"""Wiring of queues, scheduler, executor and notifier into one engine."""

import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import aiohttp

from testflow.aggregator import ResultAggregator
from testflow.config import EXECUTION_QUEUE, EngineConfig
from testflow.executor.executor import TestExecutor
from testflow.handlers import JobHandlers
from testflow.models.execution import TriggerSource
from testflow.notifier.auth import TokenVerifier
from testflow.notifier.notifier import RealtimeNotifier
from testflow.queue.jobs import Job, JobKind, RunTestPayload
from testflow.queue.manager import QueueManager
from testflow.scheduler import Scheduler
from testflow.store import Store

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Engine:
    """Running execution engine."""

    config: EngineConfig
    store: Store
    queues: QueueManager
    scheduler: Scheduler
    notifier: RealtimeNotifier
    executor: TestExecutor
    handlers: JobHandlers = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls,
        config: EngineConfig,
        store: Store,
        *,
        start_scheduler: bool = True,
    ) -> AsyncGenerator["Engine", None]:
        """Create, start and finally stop an engine with managed resources."""
        notifier = RealtimeNotifier(
            verifier=TokenVerifier(
                secret=config.notifier.jwt_secret,
                algorithm=config.notifier.jwt_algorithm,
            ),
            queue_size=config.notifier.outbound_queue_size,
        )
        async with aiohttp.ClientSession() as session:
            executor = TestExecutor(
                session=session,
                store=store,
                publisher=notifier,
                config=config.executor,
            )
            queues = QueueManager()
            engine = cls(
                config=config,
                store=store,
                queues=queues,
                scheduler=Scheduler(queues, store, config.scheduler),
                notifier=notifier,
                executor=executor,
                handlers=JobHandlers(
                    store=store,
                    executor=executor,
                    aggregator=ResultAggregator(store=store),
                    notifier=notifier,
                    session=session,
                ),
            )
            await engine.start(start_scheduler=start_scheduler)
            try:
                yield engine
            finally:
                await engine.stop()

    async def start(self, *, start_scheduler: bool = True) -> None:
        """Create the configured queues, register handlers and start workers."""
        for queue_config in self.config.queues:
            self.queues.create_queue_from_config(queue_config)
            for kind_name, concurrency in queue_config.handlers.items():
                kind = JobKind(kind_name)
                self.queues.register_handler(
                    queue_config.name,
                    kind,
                    concurrency,
                    self.handlers.handler_for(kind),
                )
        self.queues.start()
        if start_scheduler:
            await self.scheduler.start()
        log.info("Engine started")

    async def stop(self) -> None:
        """Stop the scheduler and the queue workers."""
        await self.scheduler.stop()
        await self.queues.close()
        log.info("Engine stopped")

    async def trigger(
        self,
        test_id: str,
        source: TriggerSource = "manual",
        regions: Sequence[str] = (),
    ) -> Job:
        """Enqueue an execution of a test, as upstream callers do."""
        return await self.queues.enqueue(
            EXECUTION_QUEUE,
            JobKind.RUN_TEST,
            RunTestPayload(test_id=test_id, triggered_by=source, regions=list(regions)),
        )

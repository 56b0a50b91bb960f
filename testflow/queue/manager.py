"""In-process job queues with bounded concurrency and retry/backoff."""

import asyncio
import logging
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import pydantic

from testflow.config import QueueConfig, RetryPolicy
from testflow.errors import HandlerExhaustedError, JobPayloadError, QueueError
from testflow.models.base import Model
from testflow.queue.jobs import (
    PAYLOAD_MODELS,
    Job,
    JobHandler,
    JobKind,
    JobOptions,
    JobState,
)

log = logging.getLogger(__name__)

JOB_STATES: tuple[JobState, ...] = ("waiting", "active", "completed", "failed", "delayed")


@dataclass(kw_only=True)
class HandlerSlot:
    """Registered handler of one job kind and its worker pool."""

    handler: JobHandler
    concurrency: int
    pending: asyncio.Queue[Job] = field(default_factory=asyncio.Queue)
    workers: list[asyncio.Task[None]] = field(default_factory=list)


@dataclass(kw_only=True)
class Queue:
    """A named queue and its jobs."""

    name: str
    concurrency: int
    retry_policy: RetryPolicy
    expected_kinds: frozenset[JobKind] = frozenset()
    retain_completed: int = 100
    retain_failed: int = 50
    jobs: dict[str, Job] = field(default_factory=dict)
    slots: dict[JobKind, HandlerSlot] = field(default_factory=dict)
    unpaused: asyncio.Event = field(default_factory=asyncio.Event)
    next_id: int = 1

    def __post_init__(self) -> None:
        self.unpaused.set()

    @property
    def paused(self) -> bool:
        """Whether dispatching is suspended."""
        return not self.unpaused.is_set()


class QueueManager:
    """Named queues dispatching jobs to registered handlers.

    Delivery is at-least-once: a handler that raises is invoked again after the
    queue's backoff delay until the retry policy's attempts are used up, then
    the job is marked failed for good.
    """

    def __init__(self) -> None:
        self._queues: dict[str, Queue] = {}
        self._timers: set[asyncio.Task[None]] = set()
        self._started = False

    def create_queue(
        self,
        name: str,
        concurrency: int = 1,
        retry_policy: RetryPolicy | None = None,
        *,
        expected_kinds: Collection[JobKind] = (),
        retain_completed: int = 100,
        retain_failed: int = 50,
    ) -> Queue:
        """Create a named queue.

        Args:
            name: Queue name
            concurrency: Default worker count for handlers registered without one
            retry_policy: Retry policy applied to jobs of this queue
            expected_kinds: Job kinds that must have a handler before start
            retain_completed: Completed jobs kept for inspection
            retain_failed: Failed jobs kept for inspection

        """
        if name in self._queues:
            raise QueueError(f"Queue '{name}' already exists")

        queue = Queue(
            name=name,
            concurrency=concurrency,
            retry_policy=retry_policy or RetryPolicy(),
            expected_kinds=frozenset(expected_kinds),
            retain_completed=retain_completed,
            retain_failed=retain_failed,
        )
        self._queues[name] = queue
        log.info("Queue created: %s", name)
        return queue

    def create_queue_from_config(self, config: QueueConfig) -> Queue:
        """Create a queue described by configuration."""
        kinds = [JobKind(kind) for kind in config.handlers]
        return self.create_queue(
            config.name,
            max(config.handlers.values(), default=1),
            config.retry_policy,
            expected_kinds=kinds,
            retain_completed=config.retain_completed,
            retain_failed=config.retain_failed,
        )

    def get_queue(self, name: str) -> Queue:
        """Return a queue by name."""
        queue = self._queues.get(name)
        if queue is None:
            raise QueueError(f"Queue '{name}' not found")
        return queue

    @property
    def queue_names(self) -> list[str]:
        """Names of all queues."""
        return list(self._queues)

    def register_handler(
        self,
        queue_name: str,
        kind: JobKind,
        concurrency: int | None,
        handler: JobHandler,
    ) -> None:
        """Register the handler of a job kind on a queue.

        At most ``concurrency`` jobs of this kind run at the same time.
        """
        queue = self.get_queue(queue_name)
        if kind in queue.slots:
            raise QueueError(f"Handler for '{kind}' already registered on '{queue_name}'")

        slot = HandlerSlot(handler=handler, concurrency=concurrency or queue.concurrency)
        queue.slots[kind] = slot
        log.info(
            "Handler registered: queue=%s kind=%s concurrency=%d",
            queue_name,
            kind,
            slot.concurrency,
        )
        if self._started:
            self._spawn_workers(queue, kind, slot)

    def start(self) -> None:
        """Start the worker pools of every registered handler.

        Raises:
            QueueError: If a queue expects a job kind that has no handler

        """
        missing = [
            f"{queue.name}:{kind}"
            for queue in self._queues.values()
            for kind in sorted(queue.expected_kinds)
            if kind not in queue.slots
        ]
        if missing:
            raise QueueError(f"No handler registered for: {', '.join(missing)}")

        self._started = True
        for queue in self._queues.values():
            for kind, slot in queue.slots.items():
                self._spawn_workers(queue, kind, slot)
        log.info("Queue manager started with %d queue(s)", len(self._queues))

    async def close(self) -> None:
        """Stop all workers and pending retry timers."""
        tasks: list[asyncio.Task[None]] = list(self._timers)
        for queue in self._queues.values():
            for slot in queue.slots.values():
                tasks.extend(slot.workers)
                slot.workers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._started = False
        log.info("Queue manager stopped")

    async def enqueue(
        self,
        queue_name: str,
        kind: JobKind | str,
        payload: Model | Mapping[str, Any],
        options: JobOptions | None = None,
    ) -> Job:
        """Add a job to a queue.

        Raises:
            QueueError: If the queue or the job kind's handler is unknown
            JobPayloadError: If the payload does not match the kind's schema

        """
        queue = self.get_queue(queue_name)
        try:
            job_kind = JobKind(kind)
        except ValueError as e:
            raise QueueError(f"Unknown job kind '{kind}'") from e

        if job_kind not in queue.slots:
            raise QueueError(f"No handler for '{job_kind}' on queue '{queue_name}'")

        options = options or JobOptions()
        job = Job(
            id=str(queue.next_id),
            queue=queue_name,
            kind=job_kind,
            payload=self._validate_payload(job_kind, payload),
            retry_policy=options.retry_policy or queue.retry_policy,
        )
        queue.next_id += 1
        queue.jobs[job.id] = job

        if options.delay > 0:
            job.state = "delayed"
            self._schedule_readmission(queue, job, options.delay)
        else:
            queue.slots[job_kind].pending.put_nowait(job)

        log.info("Job added to queue %s: %s (%s)", queue_name, job.id, job_kind)
        return job

    def _validate_payload(
        self, kind: JobKind, payload: Model | Mapping[str, Any]
    ) -> Model:
        """Validate a payload against the schema of its job kind."""
        model_cls = PAYLOAD_MODELS[kind]
        if isinstance(payload, model_cls):
            return payload
        if isinstance(payload, Model):
            payload = payload.model_dump()
        try:
            return model_cls.model_validate(payload)
        except pydantic.ValidationError as e:
            raise JobPayloadError(f"Invalid payload for '{kind}': {e}") from e

    def get_job(self, queue_name: str, job_id: str) -> Job | None:
        """Return a job by ID if it is still tracked."""
        return self.get_queue(queue_name).jobs.get(job_id)

    def stats(self, queue_name: str) -> dict[str, int]:
        """Count jobs of a queue by state."""
        queue = self.get_queue(queue_name)
        counts = dict.fromkeys(JOB_STATES, 0)
        for job in queue.jobs.values():
            counts[job.state] += 1
        return counts

    def all_stats(self) -> dict[str, dict[str, int]]:
        """Count jobs by state for every queue."""
        return {name: self.stats(name) for name in self._queues}

    def pause(self, queue_name: str) -> None:
        """Stop dispatching jobs of a queue; new jobs still wait."""
        self.get_queue(queue_name).unpaused.clear()
        log.info("Queue paused: %s", queue_name)

    def resume(self, queue_name: str) -> None:
        """Resume dispatching jobs of a queue."""
        self.get_queue(queue_name).unpaused.set()
        log.info("Queue resumed: %s", queue_name)

    def remove_job(self, queue_name: str, job_id: str) -> bool:
        """Remove a job that is not currently running.

        Returns:
            Whether a job was removed

        Raises:
            QueueError: If the job is active

        """
        queue = self.get_queue(queue_name)
        job = queue.jobs.get(job_id)
        if job is None:
            return False
        if job.state == "active":
            raise QueueError(f"Job {job_id} is active and cannot be removed")

        del queue.jobs[job_id]
        log.info("Job removed: %s from queue %s", job_id, queue_name)
        return True

    def purge_old(self, queue_name: str, age: timedelta = timedelta(hours=24)) -> int:
        """Remove completed and failed jobs that finished more than ``age`` ago."""
        queue = self.get_queue(queue_name)
        cutoff = datetime.now(timezone.utc) - age
        stale = [
            job.id
            for job in queue.jobs.values()
            if job.is_finished and job.finished_at is not None and job.finished_at <= cutoff
        ]
        for job_id in stale:
            del queue.jobs[job_id]
        log.info("Queue cleaned: %s (%d job(s) removed)", queue_name, len(stale))
        return len(stale)

    def _spawn_workers(self, queue: Queue, kind: JobKind, slot: HandlerSlot) -> None:
        for index in range(slot.concurrency):
            slot.workers.append(
                asyncio.create_task(
                    self._worker(queue, slot),
                    name=f"{queue.name}:{kind}:{index}",
                )
            )

    async def _worker(self, queue: Queue, slot: HandlerSlot) -> None:
        """Take jobs of one kind in FIFO order and run them one at a time."""
        while True:
            job = await slot.pending.get()
            try:
                await queue.unpaused.wait()
                if queue.jobs.get(job.id) is not job or job.state != "waiting":
                    continue
                await self._process(queue, slot, job)
            finally:
                slot.pending.task_done()

    async def _process(self, queue: Queue, slot: HandlerSlot, job: Job) -> None:
        job.state = "active"
        job.attempts_made += 1
        try:
            result = await slot.handler(job)
        except Exception as e:
            self._handle_failure(queue, job, e)
        else:
            job.return_value = result
            job.mark_finished("completed")
            log.info("Job completed: %s in queue %s", job.id, queue.name)
            self._trim(queue, "completed", queue.retain_completed)

    def _handle_failure(self, queue: Queue, job: Job, error: Exception) -> None:
        policy = job.retry_policy
        if job.attempts_made < policy.max_attempts:
            delay = policy.delay_for(job.attempts_made)
            job.state = "delayed"
            log.warning(
                "Job %s in queue %s failed (attempt %d/%d), retrying in %.1fs: %s",
                job.id,
                queue.name,
                job.attempts_made,
                policy.max_attempts,
                delay,
                error,
            )
            self._schedule_readmission(queue, job, delay)
            return

        job.failed_reason = str(error)
        job.error = HandlerExhaustedError(job.id, job.attempts_made, str(error))
        job.mark_finished("failed")
        log.error(
            "Job failed: %s in queue %s after %d attempt(s)",
            job.id,
            queue.name,
            job.attempts_made,
            exc_info=error,
        )
        self._trim(queue, "failed", queue.retain_failed)

    def _schedule_readmission(self, queue: Queue, job: Job, delay: float) -> None:
        task = asyncio.create_task(self._readmit(queue, job, delay))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _readmit(self, queue: Queue, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        if queue.jobs.get(job.id) is not job or job.state != "delayed":
            return
        job.state = "waiting"
        queue.slots[job.kind].pending.put_nowait(job)

    def _trim(self, queue: Queue, state: JobState, keep: int) -> None:
        """Drop the oldest finished jobs of a state beyond the retention cap."""
        finished = sorted(
            (job for job in queue.jobs.values() if job.state == state),
            key=lambda job: job.finished_at or job.created_at,
        )
        for job in finished[: max(len(finished) - keep, 0)]:
            del queue.jobs[job.id]

"""Folding of execution batches into test statistics."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from testflow.models.execution import ExecutionRecord
from testflow.models.test import Stats, Test
from testflow.store import Store

log = logging.getLogger(__name__)

ROUND_TRIP_STATUSES = frozenset(["passed", "failed"])


def fold_batch(
    stats: Stats, batch: Sequence[ExecutionRecord], completed_at: datetime
) -> Stats:
    """Return the statistics after adding a batch of terminal records."""
    terminal = [record for record in batch if record.is_terminal]
    if not terminal:
        return stats

    passed = sum(1 for record in terminal if record.status == "passed")
    timed = [
        record.duration or 0.0
        for record in terminal
        if record.status in ROUND_TRIP_STATUSES
    ]

    return stats.model_copy(
        update={
            "total_runs": stats.total_runs + len(terminal),
            "passed_runs": stats.passed_runs + passed,
            "timed_runs": stats.timed_runs + len(timed),
            "total_response_time": stats.total_response_time + sum(timed),
            "last_run": completed_at,
            "last_status": "passed" if passed == len(terminal) else "failed",
        }
    )


@dataclass(frozen=True, kw_only=True)
class ResultAggregator:
    """Updates and persists the statistics of a test after a batch."""

    store: Store

    async def aggregate(
        self,
        test: Test,
        batch: Sequence[ExecutionRecord],
        completed_at: datetime | None = None,
    ) -> Stats:
        """Fold a completed batch into the test's current statistics and persist them.

        The fold runs against the stored statistics rather than ``test.stats`` so
        overlapping batches of the same test are each counted once.
        """
        finished = completed_at or datetime.now(timezone.utc)
        stats = await self.store.update_test_stats(
            test.id, lambda current: fold_batch(current, batch, finished)
        )

        log.info(
            "Updated stats for test %s: runs=%d success_rate=%.2f avg=%.1fms status=%s",
            test.id,
            stats.total_runs,
            stats.success_rate,
            stats.avg_response_time,
            stats.last_status,
        )
        return stats

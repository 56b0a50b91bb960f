"""Multi-region execution of a single test."""

import asyncio
import json
import logging
import time
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import aiohttp
from pydantic import JsonValue

from testflow.assertions import evaluate_all
from testflow.config import ExecutorConfig
from testflow.executor.auth import apply_auth
from testflow.models.execution import (
    CapturedResponse,
    ExecutionError,
    ExecutionRecord,
    TriggerMetadata,
    TriggerSource,
)
from testflow.models.test import Test
from testflow.store import Store

log = logging.getLogger(__name__)

BODY_METHODS = frozenset(["POST", "PUT", "PATCH"])


class ResultPublisher(Protocol):
    """Receiver of execution record updates."""

    def emit_test_result(self, record: ExecutionRecord) -> None:
        """Publish the current state of a record."""


class HttpStatusError(Exception):
    """Raised when the target answers with an error status code."""

    def __init__(self, response: CapturedResponse) -> None:
        super().__init__(f"Request failed with status code {response.status_code}")
        self.response = response
        self.code = "ERR_BAD_REQUEST" if response.status_code < 500 else "ERR_BAD_RESPONSE"


def decode_body(raw: bytes, charset: str | None) -> JsonValue:
    """Decode a response body, parsing it as JSON when possible."""
    if not raw:
        return ""
    text = raw.decode(charset or "utf-8", errors="replace")
    try:
        body: JsonValue = json.loads(text)
    except ValueError:
        return text
    return body


@dataclass(frozen=True, kw_only=True)
class TestExecutor:
    """Runs a test in every requested region concurrently."""

    __test__ = False

    session: aiohttp.ClientSession = field(repr=False)
    store: Store
    publisher: ResultPublisher
    config: ExecutorConfig = field(default_factory=ExecutorConfig)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: ExecutorConfig, store: Store, publisher: ResultPublisher
    ) -> AsyncGenerator["TestExecutor", None]:
        """Create executor with managed session lifecycle."""
        async with aiohttp.ClientSession() as session:
            yield cls(session=session, store=store, publisher=publisher, config=config)

    async def execute(
        self,
        test: Test,
        regions: Sequence[str] = (),
        trigger: TriggerSource = "manual",
        retry_count: int = 0,
    ) -> Sequence[ExecutionRecord]:
        """Execute the test in all regions and wait for every one of them.

        Args:
            test: Test to execute
            regions: Target regions, the default region when empty
            trigger: What started the execution
            retry_count: Number of earlier attempts of the triggering job

        Returns:
            One terminal record per region, in region order

        """
        regions = list(regions) or [self.config.default_region]
        metadata = TriggerMetadata(triggered_by=trigger, retry_count=retry_count)
        log.info(
            "Executing test %s in %d region(s): %s",
            test.id,
            len(regions),
            ", ".join(regions),
        )

        records = [
            ExecutionRecord(
                test_id=test.id,
                project_id=test.project_id,
                region=region,
                metadata=metadata,
            )
            for region in regions
        ]
        results = await asyncio.gather(
            *(self._execute_in_region(test, record) for record in records),
            return_exceptions=True,
        )

        return [
            await self._process_result(record, result)
            for record, result in zip(records, results, strict=True)
        ]

    async def _process_result(
        self,
        record: ExecutionRecord,
        result: ExecutionRecord | BaseException,
    ) -> ExecutionRecord:
        """Turn an unexpected region failure into a stored error record."""
        if isinstance(result, ExecutionRecord):
            log.info(
                "Execution completed: test=%s region=%s status=%s duration=%.1fms",
                result.test_id,
                result.region,
                result.status,
                result.duration or 0.0,
            )
            return result

        log.error(
            "Execution in region %s failed unexpectedly: %s",
            record.region,
            result,
            exc_info=result,
        )
        end_time = datetime.now(timezone.utc)
        failed = record.finalize(
            status="error",
            end_time=end_time,
            duration=(end_time - record.start_time).total_seconds() * 1000,
            error=ExecutionError(
                message=str(result) or type(result).__name__,
                code=type(result).__name__,
            ),
        )
        try:
            await self.store.save_record(failed)
        except Exception as e:
            log.error(
                "Failed to save execution %s", failed.execution_id, exc_info=e
            )
        self._publish(failed)
        return failed

    async def _execute_in_region(
        self, test: Test, record: ExecutionRecord
    ) -> ExecutionRecord:
        """Run the request for one region and finalize its record."""
        await self.store.save_record(record)
        self._publish(record)

        started = time.perf_counter()
        try:
            response = await self._send(test)
            duration = (time.perf_counter() - started) * 1000
            response = response.model_copy(update={"response_time": duration})
            assertion_results = evaluate_all(test.assertions, response, duration)
        except Exception as e:
            duration = (time.perf_counter() - started) * 1000
            final = self._finalize_failure(record, e, duration)
        else:
            passed = all(result.passed for result in assertion_results)
            final = record.finalize(
                status="passed" if passed else "failed",
                end_time=datetime.now(timezone.utc),
                duration=duration,
                response=response,
                assertions=assertion_results,
            )

        await self.store.save_record(final)
        self._publish(final)
        return final

    def _publish(self, record: ExecutionRecord) -> None:
        """Hand a record update to the publisher; delivery is best-effort."""
        try:
            self.publisher.emit_test_result(record)
        except Exception as e:
            log.error(
                "Failed to publish execution %s status=%s",
                record.execution_id,
                record.status,
                exc_info=e,
            )

    def _finalize_failure(
        self, record: ExecutionRecord, error: Exception, duration: float
    ) -> ExecutionRecord:
        """Classify a failed call as timeout or error."""
        end_time = datetime.now(timezone.utc)
        if isinstance(error, TimeoutError):
            return record.finalize(
                status="timeout",
                end_time=end_time,
                duration=duration,
                error=ExecutionError(message="Request timed out", code="ECONNABORTED"),
            )

        if isinstance(error, HttpStatusError):
            return record.finalize(
                status="error",
                end_time=end_time,
                duration=duration,
                response=error.response.model_copy(update={"response_time": duration}),
                error=ExecutionError(message=str(error), code=error.code),
            )

        if not isinstance(error, aiohttp.ClientError):
            log.error(
                "Unexpected error executing test %s in region %s",
                record.test_id,
                record.region,
                exc_info=error,
            )
        return record.finalize(
            status="error",
            end_time=end_time,
            duration=duration,
            error=ExecutionError(
                message=str(error) or type(error).__name__, code=type(error).__name__
            ),
        )

    async def _send(self, test: Test) -> CapturedResponse:
        """Perform the outbound call described by the test's request template."""
        template = test.request
        headers = {"User-Agent": self.config.user_agent, **template.headers}
        params: dict[str, str] = {}
        apply_auth(template.auth, headers, params)

        kwargs: dict[str, Any] = {
            "headers": headers,
            "timeout": aiohttp.ClientTimeout(total=template.timeout / 1000),
            "allow_redirects": template.follow_redirects,
        }
        if params:
            kwargs["params"] = params
        if template.method in BODY_METHODS and template.body not in (None, ""):
            if isinstance(template.body, dict | list):
                kwargs["json"] = template.body
            else:
                kwargs["data"] = str(template.body)

        async with self.session.request(template.method, template.url, **kwargs) as response:
            raw = await response.read()
            captured = CapturedResponse(
                status_code=response.status,
                headers={key.lower(): value for key, value in response.headers.items()},
                body=decode_body(raw, response.charset),
                size=len(raw),
                response_time=0.0,
            )

        if captured.status_code >= 400:
            raise HttpStatusError(captured)
        return captured

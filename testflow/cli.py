"""CLI entry point for the test execution engine."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from aiohttp import web
from pydantic import BaseModel, Field, TypeAdapter

from testflow.config import EngineConfig
from testflow.engine import Engine
from testflow.executor.executor import TestExecutor
from testflow.models.execution import ExecutionRecord
from testflow.models.project import Project
from testflow.models.test import Test
from testflow.notifier.auth import TokenVerifier
from testflow.notifier.notifier import RealtimeNotifier
from testflow.notifier.server import create_app
from testflow.store import InMemoryStore

STATUS_SYMBOLS = {
    "passed": "✅",
    "failed": "❌",
    "error": "❗",
    "timeout": "⏱️",
}

log = logging.getLogger("testflow")


class SeedData(BaseModel):
    """Projects and tests loaded into the in-memory store."""

    projects: list[Project] = Field(default_factory=list)
    tests: list[Test] = Field(default_factory=list)


def log_results_summary(
    log: logging.Logger, records: Sequence[ExecutionRecord]
) -> None:
    """Log a formatted summary of execution records."""
    log.info("=" * 80)
    log.info("Execution Results Summary:")
    log.info("=" * 80)

    for record in records:
        symbol = STATUS_SYMBOLS.get(record.status, "?")
        log.info(
            "%s %s [%s]: %s (%.2fms)",
            symbol,
            record.test_id,
            record.region,
            record.status,
            record.duration or 0.0,
        )
        if record.error:
            log.info("  Error: %s", record.error.message)
        for assertion in record.assertions:
            if not assertion.passed:
                log.info(
                    "  Assertion failed: %s expected=%r actual=%r%s",
                    assertion.description or assertion.kind,
                    assertion.expected,
                    assertion.actual,
                    f" ({assertion.error})" if assertion.error else "",
                )


def format_output(records: Sequence[ExecutionRecord]) -> dict[str, Any]:
    """Format execution records for JSON output."""
    results = [
        {
            "test": record.test_id,
            "execution_id": record.execution_id,
            "region": record.region,
            "status": record.status,
            "duration": record.duration,
            "message": record.error.message if record.error else None,
        }
        for record in records
    ]

    return {
        "total": len(results),
        "passed": sum(1 for r in results if r["status"] == "passed"),
        "failed": sum(1 for r in results if r["status"] == "failed"),
        "errors": sum(1 for r in results if r["status"] == "error"),
        "timeouts": sum(1 for r in results if r["status"] == "timeout"),
        "results": results,
    }


def load_tests(path: Path) -> list[Test]:
    """Load one test or a list of tests from a JSON file."""
    data = json.loads(path.read_text())
    if isinstance(data, dict):
        data = [data]
    return TypeAdapter(list[Test]).validate_python(data)


def load_config(path: Path | None) -> EngineConfig:
    """Load engine configuration, defaults when no file is given."""
    if path is None:
        return EngineConfig()
    return EngineConfig.model_validate_json(path.read_text())


async def execute(
    tests: Sequence[Test], regions: Sequence[str], config: EngineConfig
) -> int:
    """Execute tests once and return exit code."""
    if not tests:
        log.info("No tests to execute")
        print(json.dumps({"total": 0, "results": []}))
        return 0

    store = InMemoryStore(tests=tests)
    notifier = RealtimeNotifier(
        verifier=TokenVerifier(secret=config.notifier.jwt_secret)
    )

    log.info("Executing %d test(s)...", len(tests))
    async with TestExecutor.from_config(config.executor, store, notifier) as executor:
        batches = await asyncio.gather(
            *(executor.execute(test, regions or test.regions) for test in tests)
        )
    records = [record for batch in batches for record in batch]

    log_results_summary(log, records)
    print(json.dumps(format_output(records), indent=2))

    has_failures = any(record.status != "passed" for record in records)
    return 1 if has_failures else 0


async def serve(config: EngineConfig, seed: SeedData) -> None:
    """Run the engine and the real-time endpoint until cancelled."""
    store = InMemoryStore(tests=seed.tests, projects=seed.projects)

    async with Engine.from_config(config, store) as engine:
        runner = web.AppRunner(create_app(engine.notifier))
        await runner.setup()
        site = web.TCPSite(runner, config.notifier.host, config.notifier.port)
        await site.start()
        log.info(
            "Real-time endpoint listening on ws://%s:%d/ws",
            config.notifier.host,
            config.notifier.port,
        )
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Run endpoint tests")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to engine configuration JSON",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    execute_parser = subparsers.add_parser("execute", help="Execute tests once")
    execute_parser.add_argument(
        "--test-file",
        type=Path,
        required=True,
        help="JSON file with one test or a list of tests",
    )
    execute_parser.add_argument(
        "--region",
        action="append",
        default=[],
        help="Region to execute in (repeatable, defaults to the test's regions)",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the scheduling engine")
    serve_parser.add_argument(
        "--data",
        type=Path,
        default=None,
        help="JSON file with projects and tests to load",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    config = load_config(args.config)

    if args.command == "execute":
        exit_code = asyncio.run(execute(load_tests(args.test_file), args.region, config))
        sys.exit(exit_code)

    seed = (
        SeedData.model_validate_json(args.data.read_text()) if args.data else SeedData()
    )
    try:
        asyncio.run(serve(config, seed))
    except KeyboardInterrupt:
        log.info("Shutting down")


if __name__ == "__main__":  # pragma: no cover
    main()

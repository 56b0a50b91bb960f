"""Shared fixtures."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Generator
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from aioresponses import aioresponses as aioresponses_cls

JWT_SECRET = "test-secret-with-at-least-32-bytes!"

type Waiter = Callable[[Callable[[], bool]], Awaitable[None]]


@pytest.fixture
def aioresponses() -> Generator[aioresponses_cls, None, None]:
    """Intercept outbound aiohttp requests."""
    with aioresponses_cls() as mocked:
        yield mocked


@pytest.fixture
def jwt_secret() -> str:
    """Secret shared by token signing and verification."""
    return JWT_SECRET


@pytest.fixture
def create_token(jwt_secret: str) -> Callable[..., str]:
    """Return a function that signs subscriber tokens."""

    def _create(
        user_id: str = "user-1",
        organization: str = "acme",
        *,
        secret: str = jwt_secret,
        expires_in: timedelta = timedelta(hours=1),
    ) -> str:
        now = datetime.now(timezone.utc)
        return jwt.encode(
            {"sub": user_id, "organization": organization, "exp": now + expires_in},
            secret,
            algorithm="HS256",
        )

    return _create


@pytest.fixture
def wait_until() -> Waiter:
    """Return a coroutine function polling until a condition holds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() >= deadline:
                raise TimeoutError("Condition not met in time")
            await asyncio.sleep(0.01)

    return _wait

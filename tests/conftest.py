from __future__ import annotations

import asyncio
import contextlib
import itertools
import os

import pytest

from optisync.gateways.memory import (
    InMemoryBlobStorage,
    InMemoryDataGateway,
    InMemoryIdentityGateway,
)
from optisync.ids import SequentialTempIdGenerator
from optisync.notifications import NotificationCenter
from optisync.session import SessionContext, UserProfile, set_session
from optisync.session_store import MemorySessionStore


def pytest_sessionstart(session: pytest.Session) -> None:
    # Keep test runs independent of a developer's local backend.
    os.environ.setdefault("BACKEND_URL", "http://127.0.0.1:54321")
    os.environ.setdefault("LOG_LEVEL", "WARNING")


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


@pytest.fixture(autouse=True)
def _clear_session() -> None:
    yield
    set_session(None)


@pytest.fixture
def clock():
    ticks = itertools.count()

    def now() -> str:
        tick = next(ticks)
        return f"2024-01-01T{tick // 3600:02d}:{tick // 60 % 60:02d}:{tick % 60:02d}+00:00"

    return now


@pytest.fixture
def data(clock) -> InMemoryDataGateway:
    return InMemoryDataGateway(clock=clock)


@pytest.fixture
def blobs() -> InMemoryBlobStorage:
    return InMemoryBlobStorage()


@pytest.fixture
def identity() -> InMemoryIdentityGateway:
    return InMemoryIdentityGateway()


@pytest.fixture
def session_store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def notifications() -> NotificationCenter:
    return NotificationCenter()


@pytest.fixture
def ids() -> SequentialTempIdGenerator:
    return SequentialTempIdGenerator()


@pytest.fixture
def alice() -> SessionContext:
    return SessionContext(
        user=UserProfile(id="u-alice", email="alice@example.com", name="Alice"),
        access_token="token-alice",
    )

"""
Shared fixtures: a temporary SQLite store, a scripted fetcher and a
controllable clock.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import NullPool

from iptv_sync.database import build_engine, create_schema, create_session_factory
from iptv_sync.errors import FetchError
from iptv_sync.services.playlist_service import PlaylistService
from iptv_sync.services.store import PlaylistStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeFetcher:
    """
    Serves canned responses by URL and records every request.

    A response may be bytes, str, or an exception instance to raise. When
    `gate` is set, fetches block until it is released.
    """

    def __init__(self, responses: dict | None = None):
        self.responses = dict(responses or {})
        self.calls: list[str] = []
        self.user_agents: list[str | None] = []
        self.started = asyncio.Event()
        self.gate: asyncio.Event | None = None

    async def fetch(self, url: str, user_agent: str | None = None) -> bytes:
        self.calls.append(url)
        self.user_agents.append(user_agent)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()

        if url not in self.responses:
            raise FetchError(url, "HTTP 404")
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return response.encode("utf-8")
        return response

    def count(self, url: str) -> int:
        return self.calls.count(url)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def store(tmp_path):
    # NullPool: every asyncio.run() gets fresh connections on its own loop
    engine = build_engine(str(tmp_path / "test.db"), poolclass=NullPool)
    asyncio.run(create_schema(engine))
    yield PlaylistStore(create_session_factory(engine))
    asyncio.run(engine.dispose())


@pytest.fixture
def make_store(tmp_path):
    """Async factory for additional independent stores (e.g. restore targets)."""
    engines = []

    async def factory(name: str) -> PlaylistStore:
        engine = build_engine(str(tmp_path / f"{name}.db"), poolclass=NullPool)
        await create_schema(engine)
        engines.append(engine)
        return PlaylistStore(create_session_factory(engine))

    yield factory
    for engine in engines:
        asyncio.run(engine.dispose())


@pytest.fixture
def service(store, fetcher, clock):
    return PlaylistService(store, fetcher, clock, progress_step=2)

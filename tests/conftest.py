from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

PACKAGE_ROOT = Path(__file__).resolve().parents[1] / "python"
if str(PACKAGE_ROOT) not in sys.path:
    sys.path.insert(0, str(PACKAGE_ROOT))

from redblue.database import create_engine_for_url, create_session_factory
from redblue.errors import TransportError
from redblue.migrations import MigrationManager
from redblue.service import CounterService
from redblue.store import CounterStore


class StubTransport:
    """In-memory transport that records what the registry sends."""

    def __init__(
        self, *, fail_send: bool = False, fail_ping: bool = False, acknowledges: bool = False
    ):
        self.sent: list[dict[str, Any]] = []
        self.pings = 0
        self.closed_with: list[tuple[int, str]] = []
        self.open = True
        self.fail_send = fail_send
        self.fail_ping = fail_ping
        self.acknowledges = acknowledges
        self.on_ping = None

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, message: dict[str, Any]) -> None:
        if self.fail_send:
            raise TransportError("socket gone")
        self.sent.append(message)

    async def ping(self) -> bool:
        if self.fail_ping:
            raise TransportError("socket gone")
        self.pings += 1
        if self.on_ping is not None:
            self.on_ping()
        return self.acknowledges

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.open = False
        self.closed_with.append((code, reason))

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'counters.db'}"


@pytest.fixture
def engine(database_url):
    engine = create_engine_for_url(database_url)
    MigrationManager(engine).migrate()
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory) -> CounterStore:
    return CounterStore(session_factory)


@pytest.fixture
def service(store) -> CounterService:
    return CounterService(store)


@pytest.fixture
def make_transport():
    def factory(**kwargs: Any) -> StubTransport:
        return StubTransport(**kwargs)

    return factory

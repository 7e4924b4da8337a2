"""Shared test fixtures for cytube-bot."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
import yaml
from unittest.mock import AsyncMock, MagicMock

from cytube_bot.coin_flip import CoinFlipEngine
from cytube_bot.config import AppConfig
from cytube_bot.connection import CytubeConnection
from cytube_bot.database import EconomyDatabase
from cytube_bot.events import EventHub


# ── Minimal config dict matching AppConfig schema ────────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with fast test timings."""
    base = {
        "cytube": {"url": "https://cytu.be", "channel": "testchannel"},
        "bot": {"username": "TestBot", "password": "hunter2"},
        "connection": {
            "max_reconnect_attempts": 5,
            "reconnect_delay_seconds": 0.01,
            "rate_limit_delay_cap_seconds": 60.0,
            "max_reconnect_delay_seconds": 300.0,
            "min_time_between_attempts_seconds": 0,
            "connect_timeout_seconds": 0.5,
            "join_timeout_seconds": 0.5,
            "login_timeout_seconds": 0.5,
            "post_login_delay_seconds": 0,
        },
        "database": {"path": ":memory:"},
        "ledger": {"currency_symbol": "$"},
        "coin_flip": {"challenge_ttl_seconds": 30, "house_name": "dazza"},
        "metrics": {"enabled": False},
        "ignored_users": ["IgnoredBot"],
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> AppConfig:
    """Return a parsed AppConfig."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_bot.db")


@pytest.fixture
def config_file(tmp_path: Path, tmp_db_path: str) -> str:
    """Write a config YAML pointing at the temp database."""
    data = make_config_dict(database={"path": tmp_db_path})
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[EconomyDatabase, None]:
    """Provide an initialized database with temp file."""
    db = EconomyDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


async def seed_balance(db: EconomyDatabase, username: str, balance: int) -> None:
    """Give ``username`` an account holding exactly ``balance``."""
    await db.get_or_create_account(username)
    if balance > 0:
        await db.credit(username, balance, tx_type="test", reason="seed")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ── Transport double ─────────────────────────────────────────

class FakeTransport:
    """In-memory stand-in for SocketTransport.

    ``open()`` answers with ``connect`` (or ``connect_error``) on the next
    loop iteration. ``emit()`` records outgoing events and plays back any
    scripted ``replies`` for that event. ``fire()`` simulates a server push.
    """

    def __init__(
        self,
        auto_connect: bool = True,
        connect_error: str | None = None,
        replies: dict[str, list[tuple[str, Any]]] | None = None,
    ) -> None:
        self.events = EventHub(logging.getLogger("test.transport"))
        self.auto_connect = auto_connect
        self.connect_error = connect_error
        self.replies: dict[str, list[tuple[str, Any]]] = dict(replies or {})
        self.opened_url: str | None = None
        self.closed = False
        self.emitted: list[tuple[str, Any]] = []
        self._tasks: set[asyncio.Task] = set()

    def on(self, event, handler):
        return self.events.on(event, handler)

    def once(self, event, handler):
        return self.events.once(event, handler)

    def off(self, event, handler=None):
        self.events.off(event, handler)

    def remove_all_listeners(self):
        self.events.remove_all_listeners()

    def listener_count(self, event=None):
        return self.events.listener_count(event)

    @property
    def connected(self) -> bool:
        return self.opened_url is not None and not self.closed

    def open(self, url: str) -> None:
        self.opened_url = url
        if self.connect_error is not None:
            self._spawn(self.fire("connect_error", self.connect_error))
        elif self.auto_connect:
            self._spawn(self.fire("connect"))

    async def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))
        for reply_event, payload in self.replies.get(event, []):
            self._spawn(self.fire(reply_event, payload))

    async def fire(self, event: str, *args: Any) -> int:
        return await self.events.emit(event, *args)

    async def drop(self, reason: str = "transport close") -> int:
        return await self.fire("disconnect", reason)

    async def close(self) -> None:
        self.closed = True

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class TransportFactory:
    """Builds FakeTransports and remembers every one it built."""

    def __init__(self) -> None:
        self.created: list[FakeTransport] = []
        self.auto_connect = True
        self.connect_error: str | None = None
        self.replies: dict[str, list[tuple[str, Any]]] = {
            "joinChannel": [("rank", 1)],
            "login": [("login", {"success": True, "name": "TestBot"})],
        }

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(
            auto_connect=self.auto_connect,
            connect_error=self.connect_error,
            replies={k: list(v) for k, v in self.replies.items()},
        )
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def transport_factory() -> TransportFactory:
    return TransportFactory()


@pytest_asyncio.fixture
async def connection(
    sample_config: AppConfig, transport_factory: TransportFactory,
) -> AsyncGenerator[CytubeConnection, None]:
    """CytubeConnection wired to fake transports and a stubbed socket config."""
    conn = CytubeConnection(
        sample_config.cytube,
        sample_config.connection,
        logging.getLogger("test.connection"),
        transport_factory=transport_factory,
    )
    conn.get_socket_config = AsyncMock(return_value="https://cytu.be:8443")
    yield conn
    await conn.disconnect()


# ── Coin flip ────────────────────────────────────────────────

@pytest.fixture
def announce() -> AsyncMock:
    return AsyncMock(return_value=True)


@pytest_asyncio.fixture
async def coin_flip(
    sample_config: AppConfig, database: EconomyDatabase, announce: AsyncMock,
) -> AsyncGenerator[CoinFlipEngine, None]:
    engine = CoinFlipEngine(sample_config, database, logging.getLogger("test"), announce=announce)
    yield engine
    engine.shutdown()


@pytest.fixture
def mock_connection() -> MagicMock:
    """Connection double exposing only the outgoing message API."""
    conn = MagicMock()
    conn.send_chat_message = AsyncMock(return_value=True)
    conn.send_private_message = AsyncMock(return_value=True)
    return conn

"""Service orchestrator — BotApp.

Startup sequence:
config → DB init → connection + engines → stale challenge recovery →
register handlers → metrics → connect/join/login → scheduler → run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable

from . import __version__
from .chat_handler import ChatHandler
from .coin_flip import CoinFlipEngine
from .config import AppConfig, load_config
from .connection import ConnectionState, CytubeConnection
from .database import EconomyDatabase
from .errors import (
    AlreadyConnectedError,
    AuthenticationError,
    BotError,
    ChannelPasswordError,
    TransportError,
)
from .metrics_server import BotMetricsServer
from .scheduler import Scheduler


class BotApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config_path: str,
        transport_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("cytube_bot")
        self._transport_factory = transport_factory

        # Components (initialized in start())
        self.config: AppConfig | None = None
        self.db: EconomyDatabase | None = None
        self.connection: CytubeConnection | None = None
        self.coin_flip: CoinFlipEngine | None = None
        self.chat_handler: ChatHandler | None = None
        self.scheduler: Scheduler | None = None
        self.metrics_server: BotMetricsServer | None = None

        # State
        self._running = False
        self._ready = False
        self._start_time: float | None = None
        self._stop_event = asyncio.Event()
        self._reconnect_lock = asyncio.Lock()

        # Counters (for metrics)
        self.events_processed: int = 0
        self.reconnects_total: int = 0

    @property
    def commands_processed(self) -> int:
        return self.chat_handler.commands_processed if self.chat_handler else 0

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    @property
    def ready(self) -> bool:
        return self._ready

    # ══════════════════════════════════════════════════════════
    #  Startup
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Bring every component up and connect to the channel."""
        self.logger.info("Starting cytube-bot...")
        self._start_time = time.time()

        # 1. Load and validate config
        self.config = load_config(str(self.config_path))
        self.logger.info("Config loaded: channel %s", self.config.cytube.channel)

        # 2. Initialize database
        self.db = EconomyDatabase(
            self.config.database.path, self.logger,
            starting_balance=self.config.ledger.starting_balance,
        )
        await self.db.initialize()
        self.logger.info("Database initialized: %s", self.config.database.path)

        # 3. Connection and domain components
        self.connection = CytubeConnection(
            self.config.cytube,
            self.config.connection,
            logger=logging.getLogger("cytube_bot.connection"),
            transport_factory=self._transport_factory,
        )
        self.coin_flip = CoinFlipEngine(
            config=self.config,
            database=self.db,
            logger=self.logger,
            announce=self.connection.send_chat_message,
        )
        self.chat_handler = ChatHandler(
            config=self.config,
            coin_flip=self.coin_flip,
            connection=self.connection,
            logger=self.logger,
        )

        # 4. Refund challenges left over from the last run
        recovered = await self.coin_flip.recover_stale_challenges()
        if recovered:
            self.logger.info("Recovered %d stale coin flip challenge(s)", recovered)

        # 5. Register connection handlers BEFORE connect
        self._register_handlers()

        # 6. Start metrics server
        if self.config.metrics.enabled:
            self.metrics_server = BotMetricsServer(
                self, host=self.config.metrics.host, port=self.config.metrics.port,
                logger=self.logger,
            )
            await self.metrics_server.start()

        # 7. Connect, join, login
        self._running = True
        await self._log_connection_event("connect", {"type": "initial"})
        try:
            await self._open_session()
        except (AuthenticationError, ChannelPasswordError):
            raise
        except TransportError as e:
            self.logger.error("Initial connection failed: %s", e)
            await self._retry_after_failure(e, 0)

        # 8. Start scheduler
        self.scheduler = Scheduler(self.config, self.coin_flip, self.logger)
        await self.scheduler.start()

        self.logger.info("cytube-bot started successfully (v%s)", __version__)

    async def run(self) -> None:
        """Start and block until ``stop()`` is requested."""
        await self.start()
        await self._stop_event.wait()

    async def _open_session(self) -> None:
        cfg = self.config
        await self.connection.connect()
        await self.connection.join_channel(cfg.cytube.channel, cfg.cytube.channel_password)
        if cfg.bot.username and cfg.bot.password:
            await self.connection.login(cfg.bot.username, cfg.bot.password)
            # Let the join backlog drain before handling commands
            await asyncio.sleep(cfg.connection.post_login_delay_seconds)
        self._ready = True

    def _register_handlers(self) -> None:
        conn = self.connection
        conn.on("chatMsg", self._on_chat_msg)
        conn.on("pm", self._on_pm)
        conn.on("disconnected", self._on_disconnected)
        conn.on("reconnecting", self._handle_reconnect)
        conn.on("reconnectFailed", self._on_reconnect_failed)
        conn.on("stateChange", self._on_state_change)
        conn.on("error", self._on_error)

    # ══════════════════════════════════════════════════════════
    #  Event handlers
    # ══════════════════════════════════════════════════════════

    async def _on_chat_msg(self, data: Any) -> None:
        self.events_processed += 1
        if not self._ready:
            return
        try:
            await self.chat_handler.handle_chat(data)
        except Exception:
            self.logger.exception("chatMsg handler error for %s", _username_of(data))

    async def _on_pm(self, data: Any) -> None:
        self.events_processed += 1
        if not self._ready:
            return
        try:
            await self.chat_handler.handle_pm(data)
        except Exception:
            self.logger.exception("pm handler error for %s", _username_of(data))

    async def _on_disconnected(self, reason: str) -> None:
        self._ready = False
        await self._log_connection_event("disconnect", {"reason": reason})

    def _on_state_change(self, change: dict) -> None:
        self.logger.info("Connection state changed from %s to %s", change["from"], change["to"])

    def _on_error(self, error: Any) -> None:
        self.logger.warning("Connection reported error: %s", error)

    async def _on_reconnect_failed(self, attempts: int) -> None:
        self.logger.error("Max reconnection attempts reached (%d), giving up", attempts)
        await self._log_connection_event("reconnect_failed", {"attempts": attempts})
        self._stop_event.set()

    async def _handle_reconnect(self, attempt: int | None = None) -> None:
        """Re-open the session after the connection's backoff timer fired.

        A failed session setup counts against the reconnect budget even if
        the socket itself connected, so a channel that keeps rejecting the
        join still runs out of attempts.
        """
        if not self._running:
            return
        async with self._reconnect_lock:
            if self._stop_event.is_set():
                return
            conn = self.connection
            attempts = conn.reconnect_attempts
            self.logger.info("Reconnecting (attempt %d)", attempts)
            self._ready = False
            await self._log_connection_event("connect", {"type": "reconnect", "attempt": attempts})
            try:
                await self._open_session()
            except AlreadyConnectedError:
                self.logger.info("Reconnect skipped: %s", conn.state.value)
                return
            except BotError as e:
                self.logger.error("Reconnection failed: %s", e)
                await self._retry_after_failure(e, attempts)
                return
            except Exception as e:
                self.logger.exception("Unexpected error while reconnecting")
                await self._retry_after_failure(e, attempts)
                return

            self.reconnects_total += 1
            self.logger.info("Reconnection successful")

    async def _retry_after_failure(self, error: Exception, attempts: int) -> None:
        """Arm the next attempt after a failed session setup.

        ``attempts`` is the count from before the setup began; ``connect()``
        resets it, so it is restored here. A socket that dropped mid-setup
        has already armed its own reconnect, and that one is kept.
        """
        conn = self.connection
        await self._log_connection_event("connect_failed", {"error": str(error)})
        dropped = conn.state == ConnectionState.RECONNECTING
        if dropped and attempts < conn.max_reconnect_attempts:
            conn.reconnect_attempts = max(conn.reconnect_attempts, attempts + 1)
            return
        if conn.is_connected:
            await conn.disconnect()
        conn.reconnect_attempts = max(conn.reconnect_attempts, attempts)
        if self._running:
            await conn.schedule_reconnect()

    # ══════════════════════════════════════════════════════════
    #  Helpers
    # ══════════════════════════════════════════════════════════

    async def _log_connection_event(self, event_type: str, details: dict) -> None:
        if self.db is None:
            return
        try:
            await self.db.log_connection_event(event_type, details)
        except Exception:
            self.logger.exception("Failed to record connection event %s", event_type)

    # ══════════════════════════════════════════════════════════
    #  Shutdown
    # ══════════════════════════════════════════════════════════

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        self._stop_event.set()
        if not self._running:
            return
        self.logger.info("Shutting down cytube-bot...")
        self._running = False
        self._ready = False

        if self.scheduler:
            await self.scheduler.stop()
        if self.coin_flip:
            self.coin_flip.shutdown()
        if self.connection:
            await self.connection.disconnect()
        if self.metrics_server:
            await self.metrics_server.stop()

        self.logger.info("cytube-bot stopped.")


def _username_of(data: Any) -> str:
    if isinstance(data, dict):
        return str(data.get("username", "?"))
    return "?"

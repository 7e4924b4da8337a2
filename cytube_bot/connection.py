"""CyTube connection state machine.

``CytubeConnection`` keeps one logical link to a CyTube room. Each connect
attempt builds a fresh ``SocketTransport``; every handler the connection needs
is attached by ``setup_event_handlers()``, which strips the transport's
listeners first so repeated reconnects never double-deliver an event.

Consumers subscribe on the connection itself (``on``/``once``/``off``) and
never touch the transport.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import aiohttp

from .errors import (
    AlreadyConnectedError,
    ChannelJoinTimeoutError,
    ChannelPasswordError,
    ConnectThrottledError,
    ConnectTimeoutError,
    LoginFailedError,
    LoginTimeoutError,
    NotConnectedError,
    RateLimitedError,
    SocketConfigError,
    TransportConnectError,
    TransportError,
)
from .events import EventHub, Handler
from .transport import LOCAL_DISCONNECT_REASON, SocketTransport

if TYPE_CHECKING:
    from .config import ConnectionConfig, CytubeConfig


# ═══════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


FORWARDED_EVENTS = (
    "chatMsg",
    "userlist",
    "addUser",
    "userLeave",
    "usercount",
    "rank",
    "login",
    "loginError",
    "channelOpts",
    "channelPerms",
    "setMotd",
    "mediaUpdate",
    "changeMedia",
    "moveVideo",
    "chatCooldown",
    "noflood",
    "needPassword",
    "setAFK",
    "pm",
)

BACKOFF_FACTOR = 1.5
BACKOFF_MAX_MULTIPLIER = 10
JITTER_RATIO = 0.3


def compute_backoff_delay(
    base: float, attempts: int, jitter: float = 0.0, ceiling: float = 300.0,
) -> float:
    """Delay in seconds before reconnect attempt number ``attempts``.

    ``jitter`` is the fraction of the un-jittered delay added on top
    (the connection draws it from ``[0, 0.3]``).
    """
    step = max(attempts - 1, 0)
    delay = base * min(BACKOFF_FACTOR ** step, BACKOFF_MAX_MULTIPLIER)
    return min(delay * (1.0 + jitter), ceiling)


def is_rate_limit_error(message: str) -> bool:
    """Best-effort check of a connect_error message for a rate limit.

    The server only signals this in free text, so this is a heuristic.
    """
    return "rate limit" in message.lower()


def select_socket_server(data: Any) -> str:
    """Pick the endpoint URL from a ``/socketconfig/<channel>.json`` payload."""
    servers = data.get("servers") if isinstance(data, dict) else None
    if isinstance(servers, list):
        servers = [s for s in servers if isinstance(s, dict)]
    if not servers or not isinstance(servers, list):
        raise SocketConfigError("No socket servers available")
    secure = next((s for s in servers if s.get("secure")), None)
    chosen = secure or servers[0]
    url = chosen.get("url")
    if not url or not isinstance(url, str):
        raise SocketConfigError("Socket server entry has no url")
    return url


# ═══════════════════════════════════════════════════════════════
#  Connection
# ═══════════════════════════════════════════════════════════════

class CytubeConnection:
    """Connect/disconnect/reconnect lifecycle for one CyTube room."""

    def __init__(
        self,
        cytube: CytubeConfig,
        config: ConnectionConfig,
        logger: logging.Logger | None = None,
        transport_factory: Callable[[], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cytube = cytube
        self._config = config
        self._logger = logger or logging.getLogger("cytube_bot.connection")
        self._transport_factory = transport_factory or self._default_transport
        self._clock = clock

        self.events = EventHub(self._logger)
        self.room_id = cytube.channel

        self._state = ConnectionState.DISCONNECTED
        self._transport: Any = None
        self.authenticated = False

        self.reconnect_attempts = 0
        self.max_reconnect_attempts = config.max_reconnect_attempts
        self.reconnect_delay = config.reconnect_delay_seconds
        self.last_connection_attempt: float | None = None
        self.min_time_between_attempts = config.min_time_between_attempts_seconds

        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._reconnect_tasks: set[asyncio.Task] = set()

    def _default_transport(self) -> SocketTransport:
        return SocketTransport(
            self._logger,
            socketio_path=self._config.socketio_path,
            transports=list(self._config.transports),
            connect_wait_timeout=self._config.connect_timeout_seconds,
        )

    # ══════════════════════════════════════════════════════════
    #  Consumer subscriptions
    # ══════════════════════════════════════════════════════════

    def on(self, event: str, handler: Handler | None = None):
        return self.events.on(event, handler)

    def once(self, event: str, handler: Handler) -> Handler:
        return self.events.once(event, handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        self.events.off(event, handler)

    # ══════════════════════════════════════════════════════════
    #  State
    # ══════════════════════════════════════════════════════════

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._transport is not None

    @property
    def transport(self) -> Any:
        return self._transport

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    async def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._logger.debug("Connection state: %s -> %s", old_state.value, new_state.value)
        await self.events.emit("stateChange", {"from": old_state.value, "to": new_state.value})

    # ══════════════════════════════════════════════════════════
    #  Connect
    # ══════════════════════════════════════════════════════════

    async def get_socket_config(self) -> str:
        """Fetch the channel's socket config and return the endpoint URL."""
        url = f"{self._cytube.url.rstrip('/')}/socketconfig/{self.room_id}.json"
        timeout = aiohttp.ClientTimeout(total=self._config.socket_config_timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as resp:
                    resp.raise_for_status()
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SocketConfigError(f"Failed to fetch socket config from {url}: {e}") from e
        except ValueError as e:
            # Maintenance and challenge pages come back as HTML with a 200
            raise SocketConfigError(f"Socket config from {url} is not JSON: {e}") from e
        return select_socket_server(data)

    async def connect(self) -> None:
        """Open a new transport and wait for the server to accept it.

        Raises ``PreconditionError`` subclasses without touching any state
        when called while connecting/connected or too soon after the last
        attempt.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            raise AlreadyConnectedError(self._state.value)

        now = self._clock()
        if self.last_connection_attempt is not None:
            elapsed = now - self.last_connection_attempt
            if elapsed < self.min_time_between_attempts:
                raise ConnectThrottledError(self.min_time_between_attempts - elapsed)

        self.last_connection_attempt = now
        await self._set_state(ConnectionState.CONNECTING)

        try:
            url = await self.get_socket_config()
        except Exception:
            await self._set_state(ConnectionState.DISCONNECTED)
            raise

        await self._teardown_transport()
        transport = self._transport_factory()
        self._transport = transport
        self.setup_event_handlers()

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def on_connect(*_: Any) -> None:
            if not outcome.done():
                outcome.set_result(None)

        def on_connect_error(message: Any = None) -> None:
            if outcome.done():
                return
            text = str(message)
            if is_rate_limit_error(text):
                self.reconnect_delay = min(
                    self.reconnect_delay * 2, self._config.rate_limit_delay_cap_seconds,
                )
                self._logger.warning(
                    "Rate limited, increasing reconnect delay to %.1fs", self.reconnect_delay,
                )
                outcome.set_exception(RateLimitedError(f"Connection error: {text}"))
            else:
                outcome.set_exception(TransportConnectError(f"Connection error: {text}"))

        transport.once("connect", on_connect)
        transport.once("connect_error", on_connect_error)

        self._logger.info("Connecting to %s (channel %s)", url, self.room_id)
        transport.open(url)

        timeout = self._config.connect_timeout_seconds
        try:
            await asyncio.wait_for(outcome, timeout)
        except asyncio.TimeoutError:
            await self._abort_attempt(transport)
            raise ConnectTimeoutError(timeout) from None
        except TransportError:
            await self._abort_attempt(transport)
            raise
        finally:
            transport.off("connect", on_connect)
            transport.off("connect_error", on_connect_error)

        self.reconnect_attempts = 0
        await self._set_state(ConnectionState.CONNECTED)
        self._logger.info("Connected to %s", url)

    async def _abort_attempt(self, transport: Any) -> None:
        if transport is self._transport:
            await self._teardown_transport()
        await self._set_state(ConnectionState.DISCONNECTED)

    def setup_event_handlers(self) -> None:
        """Attach the connection's handlers to the current transport.

        Always starts from an empty listener registry.
        """
        transport = self._transport
        if transport is None:
            return
        transport.remove_all_listeners()

        transport.on("disconnect", self._handle_disconnect)
        transport.on("error", self._handle_error)
        for event in FORWARDED_EVENTS:
            transport.on(event, self._make_forwarder(event))

    def _make_forwarder(self, event: str) -> Handler:
        async def forward(*args: Any) -> None:
            await self.events.emit(event, *args)
        return forward

    async def _handle_disconnect(self, reason: str = "") -> None:
        self._logger.warning("Disconnected from server: %s", reason)
        self.authenticated = False
        await self._set_state(ConnectionState.DISCONNECTED)
        await self.events.emit("disconnected", reason)
        if reason != LOCAL_DISCONNECT_REASON:
            await self.schedule_reconnect()

    async def _handle_error(self, error: Any = None) -> None:
        self._logger.error("Socket error: %s", error)
        await self.events.emit("error", error)

    # ══════════════════════════════════════════════════════════
    #  Reconnect
    # ══════════════════════════════════════════════════════════

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    async def schedule_reconnect(self) -> None:
        """Arm the single reconnect timer, or give up once attempts run out.

        When the timer fires the connection emits ``reconnecting``; the
        consumer is expected to call ``connect``/``join_channel``/``login``.
        """
        self._cancel_reconnect_timer()

        if self.reconnect_attempts >= self.max_reconnect_attempts:
            self._logger.error(
                "Max reconnection attempts (%d) reached", self.max_reconnect_attempts,
            )
            await self.events.emit("reconnectFailed", self.reconnect_attempts)
            return

        self.reconnect_attempts += 1
        delay = compute_backoff_delay(
            self.reconnect_delay,
            self.reconnect_attempts,
            jitter=random.uniform(0, JITTER_RATIO),
            ceiling=self._config.max_reconnect_delay_seconds,
        )
        self._logger.info(
            "Scheduling reconnect attempt %d/%d in %.1fs",
            self.reconnect_attempts, self.max_reconnect_attempts, delay,
        )
        await self._set_state(ConnectionState.RECONNECTING)

        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_timer = None
        task = asyncio.create_task(self.events.emit("reconnecting", self.reconnect_attempts))
        self._reconnect_tasks.add(task)
        task.add_done_callback(self._reconnect_tasks.discard)

    # ══════════════════════════════════════════════════════════
    #  Disconnect
    # ══════════════════════════════════════════════════════════

    async def _teardown_transport(self) -> None:
        transport = self._transport
        if transport is None:
            return
        self._transport = None
        transport.remove_all_listeners()
        await transport.close()

    async def disconnect(self) -> None:
        """Close the link for good. Never schedules a reconnect."""
        self._cancel_reconnect_timer()
        await self._teardown_transport()
        self.authenticated = False
        await self._set_state(ConnectionState.DISCONNECTED)
        self._logger.info("Disconnected from %s", self.room_id)

    # ══════════════════════════════════════════════════════════
    #  Channel session
    # ══════════════════════════════════════════════════════════

    def _require_transport(self) -> Any:
        if not self.is_connected:
            raise NotConnectedError()
        return self._transport

    async def join_channel(self, channel: str | None = None, password: str | None = None) -> Any:
        """Join ``channel`` (defaults to the configured room).

        Resolves with the first ``rank`` or ``channelOpts`` payload. When the
        server asks for a password and one was given it is sent once;
        otherwise the join fails with ``ChannelPasswordError``.
        """
        name = channel or self.room_id
        transport = self._require_transport()
        timeout = self._config.join_timeout_seconds

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()
        password_sent = False

        def on_joined(data: Any = None) -> None:
            if not outcome.done():
                outcome.set_result(data)

        async def on_need_password(*_: Any) -> None:
            nonlocal password_sent
            if outcome.done():
                return
            if password and not password_sent:
                password_sent = True
                await transport.emit("channelPassword", password)
                return
            outcome.set_exception(ChannelPasswordError(name))

        listeners = [
            ("rank", on_joined),
            ("channelOpts", on_joined),
            ("needPassword", on_need_password),
        ]
        for event, handler in listeners:
            transport.on(event, handler)

        try:
            await transport.emit("joinChannel", {"name": name})
            result = await asyncio.wait_for(outcome, timeout)
        except asyncio.TimeoutError:
            raise ChannelJoinTimeoutError(name, timeout) from None
        finally:
            for event, handler in listeners:
                transport.off(event, handler)

        self._logger.info("Joined channel %s", name)
        return result

    async def login(self, username: str, password: str | None = None) -> Any:
        """Authenticate as ``username``. Resolves with the ``login`` payload."""
        transport = self._require_transport()
        timeout = self._config.login_timeout_seconds

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def on_login(data: Any = None) -> None:
            if outcome.done():
                return
            if isinstance(data, dict) and data.get("success") is False:
                outcome.set_exception(LoginFailedError(str(data.get("error", "unknown error"))))
            else:
                outcome.set_result(data)

        def on_login_error(data: Any = None) -> None:
            if outcome.done():
                return
            reason = data.get("error", data) if isinstance(data, dict) else data
            outcome.set_exception(LoginFailedError(str(reason)))

        transport.on("login", on_login)
        transport.on("loginError", on_login_error)

        payload: dict[str, Any] = {"name": username}
        if password:
            payload["pw"] = password

        try:
            await transport.emit("login", payload)
            result = await asyncio.wait_for(outcome, timeout)
        except asyncio.TimeoutError:
            raise LoginTimeoutError(timeout) from None
        finally:
            transport.off("login", on_login)
            transport.off("loginError", on_login_error)

        self.authenticated = True
        self._logger.info("Logged in as %s", username)
        return result

    # ══════════════════════════════════════════════════════════
    #  Outgoing messages
    # ══════════════════════════════════════════════════════════

    async def send_chat_message(self, message: str) -> bool:
        if not self.is_connected:
            self._logger.error("Cannot send message: not connected")
            return False
        await self._transport.emit("chatMsg", {"msg": message, "meta": {}})
        return True

    async def send_private_message(self, to: str, message: str) -> bool:
        if not self.is_connected:
            self._logger.error("Cannot send PM to %s: not connected", to)
            return False
        await self._transport.emit("pm", {"to": to, "msg": message, "meta": {}})
        return True

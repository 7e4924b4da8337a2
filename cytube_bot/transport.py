"""Socket.IO transport wrapper.

One ``SocketTransport`` owns exactly one ``socketio.AsyncClient``. Nothing
reconnects at this layer: the client is built with ``reconnection=False`` and
the connection state machine creates a fresh transport per attempt.

Every server event, plus the synthetic ``connect``, ``connect_error`` and
``disconnect`` events, is re-published on the transport's ``EventHub``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import socketio

from .events import EventHub, Handler

LOCAL_DISCONNECT_REASON = "io client disconnect"


class SocketTransport:
    """Single physical Socket.IO connection with a listener registry."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        socketio_path: str = "/socket.io",
        transports: list[str] | None = None,
        connect_wait_timeout: float = 30.0,
    ) -> None:
        self._logger = logger or logging.getLogger("cytube_bot.transport")
        self._socketio_path = socketio_path
        self._transports = transports or ["websocket"]
        self._connect_wait_timeout = connect_wait_timeout
        self.events = EventHub(self._logger)

        self._client = socketio.AsyncClient(
            reconnection=False, logger=False, engineio_logger=False,
        )
        self._client.on("connect", self._on_connect)
        self._client.on("connect_error", self._on_connect_error)
        self._client.on("disconnect", self._on_disconnect)
        self._client.on("*", self._on_any)

        self._connect_task: asyncio.Task | None = None
        self._connect_error_reported = False
        self._closing = False

    # ══════════════════════════════════════════════════════════
    #  Listener registry
    # ══════════════════════════════════════════════════════════

    def on(self, event: str, handler: Handler) -> Handler:
        return self.events.on(event, handler)

    def once(self, event: str, handler: Handler) -> Handler:
        return self.events.once(event, handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        self.events.off(event, handler)

    def remove_all_listeners(self) -> None:
        self.events.remove_all_listeners()

    def listener_count(self, event: str | None = None) -> int:
        return self.events.listener_count(event)

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    @property
    def connected(self) -> bool:
        return self._client.connected

    def open(self, url: str) -> None:
        """Start connecting in the background.

        The outcome arrives as a ``connect`` or ``connect_error`` event.
        """
        if self._connect_task is not None:
            raise RuntimeError("Transport already opened; create a new one")
        self._connect_task = asyncio.create_task(self._run_connect(url))

    async def emit(self, event: str, data: Any = None) -> None:
        await self._client.emit(event, data)

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        self._closing = True
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass
        try:
            await self._client.disconnect()
        except Exception:
            self._logger.debug("Socket disconnect raised during close", exc_info=True)

    # ══════════════════════════════════════════════════════════
    #  socketio callbacks
    # ══════════════════════════════════════════════════════════

    async def _run_connect(self, url: str) -> None:
        try:
            await self._client.connect(
                url,
                transports=self._transports,
                socketio_path=self._socketio_path,
                wait_timeout=self._connect_wait_timeout,
            )
        except socketio.exceptions.ConnectionError as exc:
            await self._report_connect_error(str(exc))

    async def _on_connect(self) -> None:
        await self.events.emit("connect")

    async def _on_connect_error(self, data: Any = None) -> None:
        if isinstance(data, dict):
            message = str(data.get("message", data))
        else:
            message = str(data)
        await self._report_connect_error(message)

    async def _report_connect_error(self, message: str) -> None:
        # socketio fires the handler and then raises from connect();
        # consumers see one connect_error per attempt
        if self._connect_error_reported:
            return
        self._connect_error_reported = True
        await self.events.emit("connect_error", message)

    async def _on_disconnect(self, *args: Any) -> None:
        if self._closing:
            reason = LOCAL_DISCONNECT_REASON
        else:
            reason = str(args[0]) if args else "transport close"
        await self.events.emit("disconnect", reason)

    async def _on_any(self, event: str, *args: Any) -> None:
        await self.events.emit(event, *args)

"""Prometheus metrics server for cytube-bot.

Serves ``/metrics`` (Prometheus text format) and ``/health`` (JSON) from an
aiohttp web application.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

from . import __version__

if TYPE_CHECKING:
    from .main import BotApp


class BotMetricsServer:
    """Bot-specific Prometheus metrics endpoint."""

    def __init__(
        self,
        app: BotApp,
        host: str = "0.0.0.0",
        port: int = 28290,
        logger: logging.Logger | None = None,
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._logger = logger or logging.getLogger("cytube_bot.metrics")
        self._runner: web.AppRunner | None = None

        self.web_app = web.Application()
        self.web_app.router.add_get("/metrics", self._handle_metrics)
        self.web_app.router.add_get("/health", self._handle_health)

    async def start(self) -> None:
        self._runner = web.AppRunner(self.web_app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        self._logger.info("Metrics server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ══════════════════════════════════════════════════════════
    #  Handlers
    # ══════════════════════════════════════════════════════════

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        lines = [
            f'cytube_bot_info{{version="{__version__}"}} 1',
            f"cytube_bot_uptime_seconds {self._app.uptime_seconds:.0f}",
        ]
        try:
            lines.extend(await self._collect_custom_metrics())
        except Exception:
            self._logger.exception("Metric collection failed")
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")

    async def _handle_health(self, request: web.Request) -> web.Response:
        connection = self._app.connection
        healthy = connection is not None and connection.is_connected
        body = {
            "status": "healthy" if healthy else "degraded",
            "version": __version__,
            "uptime_seconds": round(self._app.uptime_seconds, 1),
        }
        try:
            body.update(await self._get_health_details())
        except Exception:
            self._logger.exception("Health detail collection failed")
        return web.json_response(body, status=200 if healthy else 503)

    # ══════════════════════════════════════════════════════════
    #  Collectors
    # ══════════════════════════════════════════════════════════

    async def _collect_custom_metrics(self) -> list[str]:
        """Collect bot-specific Prometheus metrics."""
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"cytube_bot_events_processed_total {self._app.events_processed}")
        lines.append(f"cytube_bot_commands_processed_total {self._app.commands_processed}")
        lines.append(f"cytube_bot_reconnects_total {self._app.reconnects_total}")

        # ── Connection ───────────────────────────────────────
        connection = self._app.connection
        if connection is not None:
            lines.append(f"cytube_bot_connected {1 if connection.is_connected else 0}")
            lines.append(f"cytube_bot_authenticated {1 if connection.authenticated else 0}")
            lines.append(f"cytube_bot_reconnect_attempts {connection.reconnect_attempts}")
            lines.append(f"cytube_bot_reconnect_delay_seconds {connection.reconnect_delay:g}")
            lines.append(
                f'cytube_bot_connection_state{{state="{connection.state.value}"}} 1'
            )

        # ── Economy ──────────────────────────────────────────
        db = self._app.db
        if db is not None:
            lines.append(f"cytube_bot_total_circulation {await db.get_total_circulation()}")
            lines.append(f"cytube_bot_total_accounts {await db.get_account_count()}")
            lines.append(
                f"cytube_bot_pending_challenges {await db.count_challenges('pending')}"
            )

        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        connection = self._app.connection
        return {
            "database": "connected" if self._app.db else "disconnected",
            "channel": self._app.config.cytube.channel if self._app.config else None,
            "connection_state": connection.state.value if connection else "disconnected",
            "authenticated": bool(connection and connection.authenticated),
            "reconnect_attempts": connection.reconnect_attempts if connection else 0,
        }

"""Scheduler module — periodic background tasks.

Currently one job: sweep coin flip challenges whose expiry timer was lost
(process restart, cancelled timers on shutdown) and refund them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .coin_flip import CoinFlipEngine
    from .config import AppConfig


class Scheduler:
    """Owns the periodic tasks of the bot."""

    def __init__(
        self,
        config: AppConfig,
        coin_flip: CoinFlipEngine,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._coin_flip = coin_flip
        self._logger = logger or logging.getLogger("cytube_bot.scheduler")
        self._tasks: list[asyncio.Task] = []
        self.sweeps_run = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        """Start all scheduled tasks."""
        if self._config.coin_flip.enabled:
            self._tasks.append(asyncio.create_task(self._challenge_sweep_loop()))
            self._logger.info(
                "Challenge sweep task started (interval: %ss)",
                self._config.scheduler.challenge_sweep_interval_seconds,
            )

    async def stop(self) -> None:
        """Cancel all tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ══════════════════════════════════════════════════════════
    #  Challenge sweep
    # ══════════════════════════════════════════════════════════

    async def _challenge_sweep_loop(self) -> None:
        """Expire overdue pending challenges and refund challengers."""
        while True:
            await asyncio.sleep(self._config.scheduler.challenge_sweep_interval_seconds)
            try:
                await self._coin_flip.sweep_expired_challenges()
            except Exception:
                self._logger.exception("Challenge sweep failed")
            self.sweeps_run += 1

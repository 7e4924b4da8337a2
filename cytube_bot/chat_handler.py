"""Chat and PM command handling for the coin flip game.

Parses ``!coin_flip <amount> [@user]`` (and its aliases) plus
``heads``/``tails`` answers, bare or as ``!coin_flip heads``. Calls the
``CoinFlipEngine`` and routes the replies: to the channel, or by PM when
the command came in by PM or the result is private.
"""

from __future__ import annotations

import html
import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Callable

from .database import HEADS, TAILS
from .utils import normalize_username

if TYPE_CHECKING:
    from .coin_flip import CoinFlipEngine, FlipResult
    from .config import AppConfig
    from .connection import CytubeConnection


class ChatHandler:
    """Dispatches coin flip commands arriving as chatMsg / pm events."""

    def __init__(
        self,
        config: AppConfig,
        coin_flip: CoinFlipEngine,
        connection: CytubeConnection,
        logger: logging.Logger,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._coin_flip = coin_flip
        self._connection = connection
        self._logger = logger
        self._clock = clock
        self._wall_clock = wall_clock

        self._prefix = config.commands.prefix
        self._aliases = {a.lower() for a in config.coin_flip.aliases}
        self._cooldown = config.coin_flip.cooldown_seconds
        self._bot_name = normalize_username(config.bot.username)
        self._ignored_users: set[str] = {normalize_username(u) for u in config.ignored_users}

        # username → monotonic time of last accepted command
        self._cooldowns: dict[str, float] = {}
        # message ids already handled, oldest first
        self._processed: OrderedDict[str, None] = OrderedDict()

        self.commands_processed = 0

    # ══════════════════════════════════════════════════════════
    #  Entry points
    # ══════════════════════════════════════════════════════════

    async def handle_chat(self, data: Any) -> None:
        await self._handle(data, is_pm=False)

    async def handle_pm(self, data: Any) -> None:
        await self._handle(data, is_pm=True)

    async def _handle(self, data: Any, is_pm: bool) -> None:
        if not isinstance(data, dict):
            return
        username = data.get("username")
        raw = data.get("msg")
        if not username or not isinstance(raw, str):
            return

        name = normalize_username(username)
        if name == self._bot_name or name in self._ignored_users:
            return

        # CyTube replays recent chat on join; skip it
        if self._is_stale(data) or self._is_duplicate(username, raw, data, is_pm):
            return

        text = html.unescape(raw).strip()
        lowered = text.lower()

        if lowered in (HEADS, TAILS):
            await self._handle_response(username, lowered, is_pm)
            return

        if not text.startswith(self._prefix):
            return
        parts = text[len(self._prefix):].split()
        if not parts or parts[0].lower() not in self._aliases:
            return

        if self._on_cooldown(name):
            self._logger.debug("Coin flip cooldown active for %s", name)
            return

        self.commands_processed += 1
        await self._handle_command(username, parts[1:], is_pm)

    # ══════════════════════════════════════════════════════════
    #  Filters
    # ══════════════════════════════════════════════════════════

    def _is_stale(self, data: dict) -> bool:
        sent_ms = data.get("time")
        if not isinstance(sent_ms, (int, float)):
            return False
        age = self._wall_clock() - sent_ms / 1000.0
        return age > self._config.commands.stale_message_seconds

    def _is_duplicate(self, username: str, raw: str, data: dict, is_pm: bool) -> bool:
        sent_ms = data.get("time")
        if sent_ms is None:
            return False
        key = f"{'pm' if is_pm else 'chat'}:{username}:{sent_ms}:{raw[:20]}"
        if key in self._processed:
            self._logger.warning("Ignoring duplicate message from %s", username)
            return True
        self._processed[key] = None
        limit = self._config.commands.max_processed_messages
        if len(self._processed) > limit:
            for _ in range(len(self._processed) - limit // 2):
                self._processed.popitem(last=False)
        return False

    def _on_cooldown(self, name: str) -> bool:
        now = self._clock()
        last = self._cooldowns.get(name)
        if last is not None and now - last < self._cooldown:
            return True
        self._cooldowns[name] = now
        return False

    # ══════════════════════════════════════════════════════════
    #  Commands
    # ══════════════════════════════════════════════════════════

    async def _handle_command(self, username: str, args: list[str], is_pm: bool) -> None:
        if not args:
            await self._reply(
                username,
                f"Gotta bet something: {self._prefix}coin_flip <amount> [@user]",
                is_pm,
            )
            return

        if len(args) == 1 and args[0].lower() in (HEADS, TAILS):
            result = await self._coin_flip.handle_challenge_response(username, args[0].lower())
            await self._deliver(username, result, is_pm)
            return

        try:
            amount = int(args[0].lstrip("$"))
        except ValueError:
            await self._reply(username, "Invalid bet amount.", is_pm)
            return

        if len(args) >= 2:
            target = args[1].lstrip("@-")
            result = await self._coin_flip.create_challenge(username, target, amount)
        else:
            result = await self._coin_flip.flip_vs_house(username, amount)

        await self._deliver(username, result, is_pm)

    async def _handle_response(self, username: str, choice: str, is_pm: bool) -> None:
        result = await self._coin_flip.handle_challenge_response(username, choice)
        if not result.success and result.error == "no_pending_challenge":
            # Plain "heads"/"tails" in chat is not always aimed at the bot
            self._logger.debug("No pending coin flip for %s", username)
            return
        self.commands_processed += 1
        await self._deliver(username, result, is_pm)

    # ══════════════════════════════════════════════════════════
    #  Replies
    # ══════════════════════════════════════════════════════════

    async def _deliver(self, username: str, result: FlipResult, is_pm: bool) -> None:
        if result.message:
            if result.private:
                await self._connection.send_private_message(username, result.message)
            else:
                await self._reply(username, result.message, is_pm)
        if result.public_message:
            await self._connection.send_chat_message(result.public_message)

    async def _reply(self, username: str, message: str, is_pm: bool) -> None:
        if is_pm:
            await self._connection.send_private_message(username, message)
        else:
            await self._connection.send_chat_message(message)

"""Coin flip engine: house flips and two-party challenges with escrow.

All money movement happens inside ``EconomyDatabase`` transactions. The
engine validates input, picks the coin result, keeps the per-challenge
expiry timers and turns every outcome into a ``FlipResult``; nothing raises
past ``create_challenge``/``handle_challenge_response``/``flip_vs_house``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable

from .database import HEADS, TAILS, EconomyDatabase
from .utils import normalize_username, now_utc, parse_timestamp

if TYPE_CHECKING:
    from .config import AppConfig


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════

@dataclass
class FlipResult:
    """Outcome of a coin flip operation.

    ``message`` is the reply for the actor (sent by PM when ``private`` is
    set); ``public_message`` goes to the channel.
    """

    success: bool
    error: str | None = None
    message: str = ""
    public_message: str | None = None
    private: bool = False
    challenge_id: int | None = None
    amount: int = 0
    result: str | None = None
    winner: str | None = None
    loser: str | None = None
    balance: int | None = None


Announcer = Callable[[str], Awaitable[object]]

# Stakes are doubled into a SQLite INTEGER (signed 64-bit) payout
MAX_AMOUNT = (2**63 - 1) // 2


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════

class CoinFlipEngine:
    """Runs coin flips against the house and between two users."""

    def __init__(
        self,
        config: AppConfig,
        database: EconomyDatabase,
        logger: logging.Logger,
        announce: Announcer | None = None,
    ) -> None:
        self._config = config
        self._cfg = config.coin_flip
        self._db = database
        self._logger = logger
        self._announce = announce
        self._symbol = config.ledger.currency_symbol
        self._house = normalize_username(self._cfg.house_name)
        self._bot_name = normalize_username(config.bot.username)
        self._ignored_users: set[str] = {normalize_username(u) for u in config.ignored_users}

        # challenge id → expiry timer
        self._expiry_timers: dict[int, asyncio.TimerHandle] = {}
        self._expiry_tasks: set[asyncio.Task] = set()

    @property
    def pending_timer_count(self) -> int:
        return len(self._expiry_timers)

    def has_expiry_timer(self, challenge_id: int) -> bool:
        return challenge_id in self._expiry_timers

    # ══════════════════════════════════════════════════════════
    #  Validation
    # ══════════════════════════════════════════════════════════

    def _money(self, amount: int) -> str:
        return f"{self._symbol}{amount}"

    def _validate_amount(self, amount: int) -> FlipResult | None:
        if not self._cfg.enabled:
            return FlipResult(False, "disabled", "Coin flips are currently disabled.")
        if not isinstance(amount, int) or isinstance(amount, bool) or not 0 < amount <= MAX_AMOUNT:
            return FlipResult(False, "invalid_amount", "Invalid bet amount.")
        if amount < self._cfg.min_wager:
            return FlipResult(
                False, "below_min", f"Minimum wager: {self._money(self._cfg.min_wager)}.",
            )
        if self._cfg.max_wager is not None and amount > self._cfg.max_wager:
            return FlipResult(
                False, "above_max", f"Maximum wager: {self._money(self._cfg.max_wager)}.",
            )
        return None

    def is_bot(self, username: str) -> bool:
        name = normalize_username(username)
        return (
            name == self._bot_name
            or name == self._house
            or name.startswith("[")
            or name in self._ignored_users
        )

    # ══════════════════════════════════════════════════════════
    #  House flip
    # ══════════════════════════════════════════════════════════

    async def flip_vs_house(self, actor: str, amount: int) -> FlipResult:
        """Double-or-nothing against the house."""
        error = self._validate_amount(amount)
        if error:
            return error

        username = normalize_username(actor)
        call = random.choice((HEADS, TAILS))
        result = random.choice((HEADS, TAILS))
        won = call == result

        try:
            outcome = await self._db.settle_house_flip(username, amount, won, self._house)
        except Exception:
            self._logger.exception(
                "Coin flip vs house failed: user=%s amount=%d stage=settle", username, amount,
            )
            return FlipResult(
                False, "internal_error",
                "The coin rolled down a drain. Nothing was taken, try again.",
                amount=amount,
            )

        if not outcome["ok"]:
            return FlipResult(
                False, "insufficient_funds",
                f"You need {self._money(amount)} to flip, you've only got "
                f"{self._money(outcome['balance'])}.",
                amount=amount, balance=outcome["balance"],
            )

        balance = outcome["balance"]
        await self._record_stats(username, won, amount, result, pvp=False)
        await self._record_stats(self._house, not won, amount, result, pvp=False)

        if won:
            winnings = amount * 2
            message = (
                f"🪙 You called {call}, it's {result}! You WIN {self._money(winnings)}! "
                f"Balance: {self._money(balance)}"
            )
            public = None
            if amount >= self._cfg.big_win_announce_threshold:
                public = f"{actor} just won {self._money(winnings)} on a coin flip!"
        else:
            message = (
                f"🪙 You called {call}, it's {result}! You LOST {self._money(amount)}. "
                f"Balance: {self._money(balance)}"
            )
            public = None

        self._logger.info(
            "Coin flip vs house: %s %s %d (called %s, result %s)",
            username, "won" if won else "lost", amount, call, result,
        )
        return FlipResult(
            True, message=message, public_message=public, private=True,
            amount=amount, result=result,
            winner=username if won else self._house,
            loser=self._house if won else username,
            balance=balance,
        )

    # ══════════════════════════════════════════════════════════
    #  Challenge creation
    # ══════════════════════════════════════════════════════════

    async def create_challenge(self, actor: str, target: str, amount: int) -> FlipResult:
        """Escrow the actor's stake and open a challenge against ``target``."""
        error = self._validate_amount(amount)
        if error:
            return error

        challenger = normalize_username(actor)
        challenged = normalize_username(target)
        if not challenged:
            return FlipResult(False, "invalid_target", "Who are you challenging?")
        if challenger == challenged:
            return FlipResult(False, "self_challenge", "You can't flip against yourself.")
        if self.is_bot(challenged):
            return FlipResult(False, "bot_target", "Bots don't gamble, try a real person.")

        ttl = self._cfg.challenge_ttl_seconds
        try:
            outcome = await self._db.create_challenge(challenger, challenged, amount, ttl)
        except Exception:
            self._logger.exception(
                "Coin flip challenge failed: challenger=%s target=%s amount=%d stage=create",
                challenger, challenged, amount,
            )
            return FlipResult(
                False, "internal_error",
                "The challenge board broke. Nothing was taken, try again.",
                amount=amount,
            )

        if not outcome["ok"]:
            reason = outcome["reason"]
            if reason == "pending_exists":
                message = "You already have a challenge pending, wait for that one first."
            elif reason == "insufficient_challenger":
                message = (
                    f"You need {self._money(amount)} to flip, you've only got "
                    f"{self._money(outcome['challenger_balance'])}."
                )
            else:
                message = (
                    f"{target} is too broke for a {self._money(amount)} flip "
                    f"(only has {self._money(outcome['challenged_balance'])})."
                )
            return FlipResult(
                False, reason, message,
                amount=amount, balance=outcome["challenger_balance"],
            )

        challenge_id = outcome["challenge_id"]
        self._arm_expiry(challenge_id, ttl)

        self._logger.info(
            "Coin flip challenge %d: %s vs %s for %d", challenge_id, challenger, challenged, amount,
        )
        return FlipResult(
            True,
            public_message=(
                f"{actor} challenges {target} to a coin flip for {self._money(amount)}! "
                f"{target}, respond with heads or tails within {ttl:g} seconds."
            ),
            challenge_id=challenge_id,
            amount=amount,
            balance=outcome["challenger_balance"],
        )

    # ══════════════════════════════════════════════════════════
    #  Challenge response
    # ══════════════════════════════════════════════════════════

    async def handle_challenge_response(self, actor: str, choice: str) -> FlipResult:
        """Accept the latest live challenge aimed at ``actor`` and flip."""
        responder = normalize_username(actor)
        choice = choice.strip().lower()
        if choice not in (HEADS, TAILS):
            return FlipResult(False, "invalid_choice", "Pick heads or tails.")

        try:
            claimed = await self._db.claim_challenge(responder)
        except Exception:
            self._logger.exception(
                "Coin flip response failed: responder=%s stage=claim", responder,
            )
            return FlipResult(False, "internal_error", "The coin flip machine jammed, try again.")

        if claimed is None:
            return FlipResult(False, "no_pending_challenge", "No pending coin flip for you.")

        challenge_id = claimed["id"]
        amount = claimed["amount"]
        challenger = claimed["challenger"]
        self._cancel_expiry(challenge_id)

        result = random.choice((HEADS, TAILS))
        try:
            outcome = await self._db.complete_challenge(challenge_id, choice, result)
        except Exception:
            self._logger.exception(
                "Coin flip challenge %d failed: responder=%s challenger=%s amount=%d stage=resolve",
                challenge_id, responder, challenger, amount,
            )
            return await self._compensate(claimed, "error")

        if not outcome["ok"]:
            if outcome["reason"] == "insufficient_funds":
                return await self._compensate(
                    claimed, "insufficient_funds", responder_balance=outcome["balance"],
                )
            self._logger.warning(
                "Coin flip challenge %d left accepting state before resolution", challenge_id,
            )
            return FlipResult(
                False, "no_pending_challenge", "No pending coin flip for you.",
                challenge_id=challenge_id,
            )

        winner = outcome["winner"]
        loser = outcome["loser"]
        prize = outcome["prize"]

        await self._record_stats(winner, True, amount, result, pvp=True)
        await self._record_stats(loser, False, amount, result, pvp=True)

        self._logger.info(
            "Coin flip challenge %d resolved %s: %s beat %s for %d",
            challenge_id, result, winner, loser, amount,
        )
        return FlipResult(
            True,
            public_message=(
                f"🪙 COIN FLIP: {result.upper()}! {winner} takes {self._money(prize)} "
                f"from {loser}!"
            ),
            challenge_id=challenge_id,
            amount=amount,
            result=result,
            winner=winner,
            loser=loser,
            balance=outcome["challenged_balance"],
        )

    async def _compensate(
        self, claimed: dict, reason: str, responder_balance: int | None = None,
    ) -> FlipResult:
        """Cancel an accepting challenge and refund the challenger's escrow."""
        challenge_id = claimed["id"]
        amount = claimed["amount"]
        challenger = claimed["challenger"]
        responder = claimed["challenged"]

        try:
            row = await self._db.cancel_challenge(challenge_id, "accepting", reason)
        except Exception:
            self._logger.exception(
                "Coin flip challenge %d refund failed: challenger=%s amount=%d stage=compensate",
                challenge_id, challenger, amount,
            )
            return FlipResult(
                False, "internal_error",
                f"Something broke with coin flip #{challenge_id} and the refund did not "
                f"go through. A mod needs to look at it.",
                challenge_id=challenge_id, amount=amount,
            )

        if row is None:
            self._logger.warning(
                "Coin flip challenge %d was not accepting during compensation", challenge_id,
            )
            return FlipResult(
                False, "internal_error", "That coin flip is no longer open.",
                challenge_id=challenge_id, amount=amount,
            )

        if reason == "insufficient_funds":
            public = (
                f"{responder} is too broke now! Has {self._money(responder_balance or 0)}, "
                f"needs {self._money(amount)}. Refunded {challenger}."
            )
            return FlipResult(
                False, "responder_insufficient_funds", public_message=public,
                challenge_id=challenge_id, amount=amount, balance=responder_balance,
            )

        return FlipResult(
            False, "internal_error",
            public_message=(
                f"Something broke with that coin flip, refunded {challenger}'s "
                f"{self._money(amount)}."
            ),
            challenge_id=challenge_id, amount=amount,
        )

    # ══════════════════════════════════════════════════════════
    #  Expiry
    # ══════════════════════════════════════════════════════════

    def _arm_expiry(self, challenge_id: int, delay: float) -> None:
        self._cancel_expiry(challenge_id)
        loop = asyncio.get_running_loop()
        self._expiry_timers[challenge_id] = loop.call_later(
            max(delay, 0.0), self._on_expiry_timer, challenge_id,
        )

    def _cancel_expiry(self, challenge_id: int) -> None:
        handle = self._expiry_timers.pop(challenge_id, None)
        if handle is not None:
            handle.cancel()

    def _on_expiry_timer(self, challenge_id: int) -> None:
        self._expiry_timers.pop(challenge_id, None)
        task = asyncio.create_task(self.expire_challenge(challenge_id))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)

    async def expire_challenge(self, challenge_id: int, announce: bool = True) -> FlipResult:
        """Cancel a still-pending challenge and refund its escrow.

        A challenge that was already claimed or cancelled is left alone.
        """
        self._cancel_expiry(challenge_id)
        try:
            row = await self._db.cancel_challenge(challenge_id, "pending", "expired")
        except Exception:
            self._logger.exception(
                "Coin flip challenge %d expiry failed: stage=expire", challenge_id,
            )
            return FlipResult(False, "internal_error", challenge_id=challenge_id)

        if row is None:
            return FlipResult(False, "not_pending", challenge_id=challenge_id)

        message = (
            f"No response from {row['challenged']}, {row['challenger']} gets their "
            f"{self._money(row['amount'])} back."
        )
        self._logger.info("Coin flip challenge %d expired, refunded %s", challenge_id, row["challenger"])
        if announce:
            await self._send_public(message)
        return FlipResult(
            True, message=message, challenge_id=challenge_id,
            amount=row["amount"], balance=row["challenger_balance"],
        )

    async def sweep_expired_challenges(self, now: datetime | None = None) -> int:
        """Expire every overdue pending challenge. Returns how many were refunded."""
        rows = await self._db.get_challenges_by_status("pending", expired_before=now or now_utc())
        expired = 0
        for row in rows:
            result = await self.expire_challenge(row["id"])
            if result.success:
                expired += 1
        if expired:
            self._logger.info("Swept %d expired coin flip challenge(s)", expired)
        return expired

    async def recover_stale_challenges(self) -> int:
        """Clean up after a restart. Returns how many challenges were refunded.

        Overdue pending challenges and challenges stuck in ``accepting`` are
        cancelled and refunded; live pending challenges get their timers back.
        """
        recovered = 0
        now = now_utc()

        for row in await self._db.get_challenges_by_status("accepting"):
            cancelled = await self._db.cancel_challenge(row["id"], "accepting", "recovered")
            if cancelled is not None:
                recovered += 1
                self._logger.warning(
                    "Recovered coin flip challenge %d stuck in accepting, refunded %s",
                    row["id"], row["challenger"],
                )

        for row in await self._db.get_challenges_by_status("pending"):
            expires_at = parse_timestamp(row["expires_at"])
            if expires_at is None or expires_at <= now:
                result = await self.expire_challenge(row["id"], announce=False)
                if result.success:
                    recovered += 1
            else:
                self._arm_expiry(row["id"], (expires_at - now).total_seconds())

        return recovered

    def shutdown(self) -> None:
        """Cancel all expiry timers. Pending rows are swept on next start."""
        for handle in self._expiry_timers.values():
            handle.cancel()
        self._expiry_timers.clear()

    # ══════════════════════════════════════════════════════════
    #  Helpers
    # ══════════════════════════════════════════════════════════

    async def _record_stats(
        self, username: str, won: bool, amount: int, result: str, pvp: bool,
    ) -> None:
        try:
            await self._db.update_coin_flip_stats(username, won, amount, result, pvp=pvp)
        except Exception:
            self._logger.exception("Failed to update coin flip stats for %s", username)

    async def _send_public(self, message: str) -> None:
        if self._announce is None:
            return
        try:
            await self._announce(message)
        except Exception:
            self._logger.exception("Failed to announce coin flip message")



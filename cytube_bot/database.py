"""SQLite database module for cytube-bot.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

Connections run with ``isolation_level=None``: every multi-statement write
opens its own ``BEGIN IMMEDIATE`` transaction, so the write lock is taken
before any balance or challenge row is read. Balance and status changes are
conditional UPDATEs; a zero ``rowcount`` means the guard no longer held and
the whole transaction is rolled back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from .utils import db_timestamp, now_utc

HEADS = "heads"
TAILS = "tails"


def opposite_side(choice: str) -> str:
    return TAILS if choice == HEADS else HEADS


# ═══════════════════════════════════════════════════════════════
#  Row helpers (run inside an open transaction)
# ═══════════════════════════════════════════════════════════════

def _log_transaction(
    conn: sqlite3.Connection,
    username: str,
    amount: int,
    tx_type: str,
    reason: str | None,
    related_user: str | None,
) -> None:
    conn.execute(
        "INSERT INTO transactions (username, amount, type, reason, related_user, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (username, amount, tx_type, reason, related_user, db_timestamp()),
    )


def _balance_of(conn: sqlite3.Connection, username: str) -> int | None:
    row = conn.execute(
        "SELECT balance FROM accounts WHERE username = ?", (username,),
    ).fetchone()
    return row["balance"] if row else None


def _debit_row(
    conn: sqlite3.Connection,
    username: str,
    amount: int,
    tx_type: str,
    reason: str | None = None,
    related_user: str | None = None,
) -> bool:
    """Conditional debit. False when the account is missing or short."""
    cursor = conn.execute(
        "UPDATE accounts SET balance = balance - ?, updated_at = ? "
        "WHERE username = ? AND balance >= ?",
        (amount, db_timestamp(), username, amount),
    )
    if cursor.rowcount == 0:
        return False
    _log_transaction(conn, username, -amount, tx_type, reason, related_user)
    return True


def _credit_row(
    conn: sqlite3.Connection,
    username: str,
    amount: int,
    tx_type: str,
    reason: str | None = None,
    related_user: str | None = None,
) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO accounts (username, balance) VALUES (?, 0)",
        (username,),
    )
    conn.execute(
        "UPDATE accounts SET balance = balance + ?, updated_at = ? WHERE username = ?",
        (amount, db_timestamp(), username),
    )
    _log_transaction(conn, username, amount, tx_type, reason, related_user)


def _cancel_row(
    conn: sqlite3.Connection,
    challenge_id: int,
    from_status: str,
    cancel_reason: str,
) -> dict | None:
    """Claim ``from_status → cancelled`` and refund the escrow.

    Returns the cancelled row, or None when another path already moved it.
    """
    now = db_timestamp()
    cursor = conn.execute(
        "UPDATE coin_flip_challenges SET status = 'cancelled', cancel_reason = ?, completed_at = ? "
        "WHERE id = ? AND status = ?",
        (cancel_reason, now, challenge_id, from_status),
    )
    if cursor.rowcount == 0:
        return None
    row = dict(conn.execute(
        "SELECT * FROM coin_flip_challenges WHERE id = ?", (challenge_id,),
    ).fetchone())
    _credit_row(
        conn, row["challenger"], row["amount"],
        tx_type="coin_flip_refund",
        reason=f"Coin flip challenge {challenge_id} {cancel_reason}",
        related_user=row["challenged"],
    )
    row["challenger_balance"] = _balance_of(conn, row["challenger"])
    return row


class EconomyDatabase:
    """SQLite-backed persistence for balances, coin flips and connection history."""

    def __init__(
        self, db_path: str, logger: logging.Logger, starting_balance: int = 0,
    ) -> None:
        self._db_path = db_path
        self._logger = logger
        self._starting_balance = starting_balance

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    username TEXT PRIMARY KEY,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    reason TEXT,
                    related_user TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS coin_flip_challenges (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    challenger TEXT NOT NULL,
                    challenged TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    status TEXT NOT NULL DEFAULT 'pending',
                    challenger_choice TEXT,
                    challenged_choice TEXT,
                    result TEXT,
                    winner TEXT,
                    cancel_reason TEXT,
                    created_at TIMESTAMP NOT NULL,
                    expires_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS coin_flip_stats (
                    username TEXT PRIMARY KEY,
                    total_flips INTEGER DEFAULT 0,
                    heads_count INTEGER DEFAULT 0,
                    tails_count INTEGER DEFAULT 0,
                    wins INTEGER DEFAULT 0,
                    losses INTEGER DEFAULT 0,
                    total_wagered INTEGER DEFAULT 0,
                    total_won INTEGER DEFAULT 0,
                    total_lost INTEGER DEFAULT 0,
                    biggest_win INTEGER DEFAULT 0,
                    biggest_loss INTEGER DEFAULT 0,
                    current_streak INTEGER DEFAULT 0,
                    best_streak INTEGER DEFAULT 0,
                    pvp_wins INTEGER DEFAULT 0,
                    pvp_losses INTEGER DEFAULT 0,
                    last_played TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS connection_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    details TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_username "
                "ON transactions(username)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_challenges_status_expires "
                "ON coin_flip_challenges(status, expires_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_challenges_challenged "
                "ON coin_flip_challenges(challenged, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_challenges_challenger "
                "ON coin_flip_challenges(challenger, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_connection_events_created_at "
                "ON connection_events(created_at)"
            )
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Accounts
    # ══════════════════════════════════════════════════════════

    async def get_or_create_account(self, username: str) -> dict:
        """Return the account, creating it with the starting balance."""
        loop = asyncio.get_running_loop()
        starting = self._starting_balance

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO accounts (username, balance) VALUES (?, ?)",
                    (username, starting),
                )
                if cursor.rowcount == 1 and starting > 0:
                    _log_transaction(conn, username, starting, "starting_balance", None, None)
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM accounts WHERE username = ?", (username,),
                ).fetchone()
                return dict(row)
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_account(self, username: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM accounts WHERE username = ?", (username,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_balance(self, username: str) -> int:
        """Return current balance, or 0 if the account doesn't exist."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                balance = _balance_of(conn, username)
                return balance if balance is not None else 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Balance Operations
    # ══════════════════════════════════════════════════════════

    async def credit(
        self,
        username: str,
        amount: int,
        tx_type: str,
        reason: str | None = None,
        related_user: str | None = None,
    ) -> int:
        """Credit an account (creating it if needed) and log it. Returns new balance."""
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                _credit_row(conn, username, amount, tx_type, reason, related_user)
                balance = _balance_of(conn, username)
                conn.commit()
                return balance
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def debit(
        self,
        username: str,
        amount: int,
        tx_type: str,
        reason: str | None = None,
        related_user: str | None = None,
    ) -> int | None:
        """Conditionally debit and log. Returns new balance, None on insufficient funds."""
        if amount <= 0:
            raise ValueError("debit amount must be positive")
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                if not _debit_row(conn, username, amount, tx_type, reason, related_user):
                    conn.rollback()
                    return None  # Insufficient funds or account doesn't exist
                balance = _balance_of(conn, username)
                conn.commit()
                return balance
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_transactions(self, username: str, limit: int = 50) -> list[dict]:
        """Most recent ledger rows for a user, newest first."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE username = ? ORDER BY id DESC LIMIT ?",
                    (username, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_total_circulation(self) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT COALESCE(SUM(balance), 0) AS total FROM accounts").fetchone()
                return row["total"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_account_count(self) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT COUNT(*) AS n FROM accounts").fetchone()
                return row["n"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Coin Flip: house game
    # ══════════════════════════════════════════════════════════

    async def settle_house_flip(
        self, username: str, amount: int, won: bool, house: str,
    ) -> dict:
        """Take the wager and pay 2x on a win, in one transaction.

        Returns ``{"ok", "reason", "balance"}``.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                if not _debit_row(
                    conn, username, amount, "coin_flip_wager",
                    reason="Coin flip vs house", related_user=house,
                ):
                    balance = _balance_of(conn, username) or 0
                    conn.rollback()
                    return {"ok": False, "reason": "insufficient_funds", "balance": balance}
                if won:
                    _credit_row(
                        conn, username, amount * 2, "coin_flip_win",
                        reason="Coin flip vs house", related_user=house,
                    )
                balance = _balance_of(conn, username)
                conn.commit()
                return {"ok": True, "reason": None, "balance": balance}
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Coin Flip: challenges
    # ══════════════════════════════════════════════════════════

    async def create_challenge(
        self,
        challenger: str,
        challenged: str,
        amount: int,
        ttl_seconds: float,
        now: datetime | None = None,
    ) -> dict:
        """Escrow the challenger's stake and insert a pending challenge.

        Overdue pending challenges of the challenger are cancelled and
        refunded first, inside the same transaction.

        Returns ``{"ok", "reason", "challenge_id", "challenger_balance",
        "challenged_balance", "expires_at"}``. ``reason`` is one of
        ``pending_exists``, ``insufficient_challenger``,
        ``insufficient_challenged``.
        """
        loop = asyncio.get_running_loop()
        now = now or now_utc()
        now_ts = db_timestamp(now)
        expires_ts = db_timestamp(now + timedelta(seconds=ttl_seconds))

        def _sync() -> dict:
            result: dict[str, Any] = {
                "ok": False, "reason": None, "challenge_id": None,
                "challenger_balance": None, "challenged_balance": None,
                "expires_at": expires_ts,
            }
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")

                overdue = conn.execute(
                    "SELECT id FROM coin_flip_challenges "
                    "WHERE challenger = ? AND status = 'pending' AND expires_at <= ?",
                    (challenger, now_ts),
                ).fetchall()
                for row in overdue:
                    _cancel_row(conn, row["id"], "pending", "expired")

                pending = conn.execute(
                    "SELECT id FROM coin_flip_challenges "
                    "WHERE challenger = ? AND status = 'pending' LIMIT 1",
                    (challenger,),
                ).fetchone()

                challenger_balance = _balance_of(conn, challenger) or 0
                challenged_balance = _balance_of(conn, challenged) or 0
                result["challenger_balance"] = challenger_balance
                result["challenged_balance"] = challenged_balance

                if pending:
                    result["reason"] = "pending_exists"
                elif challenger_balance < amount:
                    result["reason"] = "insufficient_challenger"
                elif challenged_balance < amount:
                    result["reason"] = "insufficient_challenged"
                elif not _debit_row(
                    conn, challenger, amount, "coin_flip_escrow",
                    reason="Coin flip challenge escrow", related_user=challenged,
                ):
                    result["reason"] = "insufficient_challenger"

                if result["reason"] is not None:
                    if overdue:
                        # Keep the refunds of expired challenges
                        conn.commit()
                    else:
                        conn.rollback()
                    return result

                cursor = conn.execute(
                    "INSERT INTO coin_flip_challenges "
                    "(challenger, challenged, amount, status, created_at, expires_at) "
                    "VALUES (?, ?, ?, 'pending', ?, ?)",
                    (challenger, challenged, amount, now_ts, expires_ts),
                )
                result["challenge_id"] = cursor.lastrowid
                result["challenger_balance"] = _balance_of(conn, challenger)
                conn.commit()
                result["ok"] = True
                return result
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def claim_challenge(
        self, challenged: str, now: datetime | None = None,
    ) -> dict | None:
        """Move the responder's latest live challenge from pending to accepting.

        Returns the claimed row, or None when there is nothing to claim or a
        concurrent claim/expiry won.
        """
        loop = asyncio.get_running_loop()
        now_ts = db_timestamp(now or now_utc())

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT * FROM coin_flip_challenges "
                    "WHERE challenged = ? AND status = 'pending' AND expires_at > ? "
                    "ORDER BY id DESC LIMIT 1",
                    (challenged, now_ts),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    return None
                cursor = conn.execute(
                    "UPDATE coin_flip_challenges SET status = 'accepting' "
                    "WHERE id = ? AND status = 'pending' AND challenged = ? AND expires_at > ?",
                    (row["id"], challenged, now_ts),
                )
                if cursor.rowcount != 1:
                    conn.rollback()
                    return None
                conn.commit()
                claimed = dict(row)
                claimed["status"] = "accepting"
                return claimed
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def complete_challenge(
        self, challenge_id: int, challenged_choice: str, result: str,
    ) -> dict:
        """Debit the responder, pay the winner 2x and mark the row completed.

        Everything happens in one transaction. Returns ``{"ok", "reason", ...}``
        where ``reason`` is ``insufficient_funds`` or ``not_accepting`` on
        failure; on success the dict carries the final row plus
        ``challenger_balance`` and ``challenged_balance``.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT * FROM coin_flip_challenges WHERE id = ? AND status = 'accepting'",
                    (challenge_id,),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    return {"ok": False, "reason": "not_accepting"}

                challenger = row["challenger"]
                challenged = row["challenged"]
                amount = row["amount"]

                if not _debit_row(
                    conn, challenged, amount, "coin_flip_wager",
                    reason=f"Coin flip challenge {challenge_id}", related_user=challenger,
                ):
                    balance = _balance_of(conn, challenged) or 0
                    conn.rollback()
                    return {"ok": False, "reason": "insufficient_funds", "balance": balance}

                challenger_choice = opposite_side(challenged_choice)
                winner = challenged if challenged_choice == result else challenger
                loser = challenger if winner == challenged else challenged
                prize = amount * 2

                _credit_row(
                    conn, winner, prize, "coin_flip_win",
                    reason=f"Coin flip challenge {challenge_id}", related_user=loser,
                )
                cursor = conn.execute(
                    "UPDATE coin_flip_challenges SET status = 'completed', "
                    "challenger_choice = ?, challenged_choice = ?, result = ?, winner = ?, "
                    "completed_at = ? WHERE id = ? AND status = 'accepting'",
                    (challenger_choice, challenged_choice, result, winner,
                     db_timestamp(), challenge_id),
                )
                if cursor.rowcount != 1:
                    conn.rollback()
                    return {"ok": False, "reason": "not_accepting"}

                completed = dict(conn.execute(
                    "SELECT * FROM coin_flip_challenges WHERE id = ?", (challenge_id,),
                ).fetchone())
                completed.update(
                    ok=True,
                    reason=None,
                    loser=loser,
                    prize=prize,
                    challenger_balance=_balance_of(conn, challenger),
                    challenged_balance=_balance_of(conn, challenged),
                )
                conn.commit()
                return completed
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def cancel_challenge(
        self, challenge_id: int, from_status: str, reason: str,
    ) -> dict | None:
        """Cancel from ``from_status`` and refund the escrow exactly once.

        Returns the cancelled row (with ``challenger_balance``) or None when
        the row was no longer in ``from_status``.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = _cancel_row(conn, challenge_id, from_status, reason)
                if row is None:
                    conn.rollback()
                    return None
                conn.commit()
                return row
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_challenge(self, challenge_id: int) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM coin_flip_challenges WHERE id = ?", (challenge_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_challenges_by_status(
        self, status: str, expired_before: datetime | None = None,
    ) -> list[dict]:
        """Rows in ``status``, optionally only those with expires_at <= the cutoff."""
        loop = asyncio.get_running_loop()
        cutoff = db_timestamp(expired_before) if expired_before else None

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                if cutoff is None:
                    rows = conn.execute(
                        "SELECT * FROM coin_flip_challenges WHERE status = ? ORDER BY id",
                        (status,),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM coin_flip_challenges "
                        "WHERE status = ? AND expires_at <= ? ORDER BY id",
                        (status, cutoff),
                    ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def count_challenges(self, status: str) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM coin_flip_challenges WHERE status = ?",
                    (status,),
                ).fetchone()
                return row["n"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Coin Flip: stats
    # ══════════════════════════════════════════════════════════

    async def update_coin_flip_stats(
        self, username: str, won: bool, amount: int, result: str, pvp: bool = False,
    ) -> None:
        """Record one flip for ``username``.

        ``current_streak`` counts wins upwards and losses downwards; a flip
        against the current direction restarts it at +1 / -1.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    "INSERT OR IGNORE INTO coin_flip_stats (username) VALUES (?)",
                    (username,),
                )
                row = conn.execute(
                    "SELECT current_streak, best_streak, biggest_win, biggest_loss "
                    "FROM coin_flip_stats WHERE username = ?",
                    (username,),
                ).fetchone()

                streak = row["current_streak"]
                if won and streak >= 0:
                    streak += 1
                elif not won and streak <= 0:
                    streak -= 1
                else:
                    streak = 1 if won else -1

                conn.execute(
                    "UPDATE coin_flip_stats SET "
                    "total_flips = total_flips + 1, "
                    "heads_count = heads_count + ?, "
                    "tails_count = tails_count + ?, "
                    "wins = wins + ?, "
                    "losses = losses + ?, "
                    "total_wagered = total_wagered + ?, "
                    "total_won = total_won + ?, "
                    "total_lost = total_lost + ?, "
                    "biggest_win = ?, "
                    "biggest_loss = ?, "
                    "current_streak = ?, "
                    "best_streak = ?, "
                    "pvp_wins = pvp_wins + ?, "
                    "pvp_losses = pvp_losses + ?, "
                    "last_played = ? "
                    "WHERE username = ?",
                    (
                        1 if result == HEADS else 0,
                        1 if result == TAILS else 0,
                        1 if won else 0,
                        0 if won else 1,
                        amount,
                        amount * 2 if won else 0,
                        0 if won else amount,
                        max(row["biggest_win"], amount) if won else row["biggest_win"],
                        row["biggest_loss"] if won else max(row["biggest_loss"], amount),
                        streak,
                        max(row["best_streak"], streak),
                        1 if pvp and won else 0,
                        1 if pvp and not won else 0,
                        db_timestamp(),
                        username,
                    ),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def get_coin_flip_stats(self, username: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM coin_flip_stats WHERE username = ?", (username,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Connection events
    # ══════════════════════════════════════════════════════════

    async def log_connection_event(self, event_type: str, details: dict | None = None) -> None:
        loop = asyncio.get_running_loop()
        payload = json.dumps(details or {})

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO connection_events (event_type, details, created_at) "
                    "VALUES (?, ?, ?)",
                    (event_type, payload, db_timestamp()),
                )
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def get_connection_events(self, limit: int = 50) -> list[dict]:
        """Most recent connection events, newest first, with details decoded."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM connection_events ORDER BY id DESC LIMIT ?", (limit,),
                ).fetchall()
                events = []
                for r in rows:
                    event = dict(r)
                    event["details"] = json.loads(event["details"]) if event["details"] else {}
                    events.append(event)
                return events
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

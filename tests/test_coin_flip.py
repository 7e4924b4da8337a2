"""Tests for the coin flip engine: house flips, challenges and escrow."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from cytube_bot.coin_flip import MAX_AMOUNT, CoinFlipEngine
from cytube_bot.config import AppConfig
from cytube_bot.database import EconomyDatabase
from cytube_bot.utils import now_utc

from conftest import make_config_dict, seed_balance

CHOICE = "cytube_bot.coin_flip.random.choice"


async def _total(db: EconomyDatabase) -> int:
    return await db.get_total_circulation()


async def _escrowed(db: EconomyDatabase) -> int:
    pending = await db.get_challenges_by_status("pending")
    accepting = await db.get_challenges_by_status("accepting")
    return sum(row["amount"] for row in pending + accepting)


async def _wait_for_status(db: EconomyDatabase, challenge_id: int, status: str, timeout: float = 2.0) -> dict:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        row = await db.get_challenge(challenge_id)
        if row["status"] == status:
            return row
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"challenge {challenge_id} stuck in {row['status']}")
        await asyncio.sleep(0.02)


def _engine(database: EconomyDatabase, announce=None, **coin_flip) -> CoinFlipEngine:
    config = AppConfig(**make_config_dict(coin_flip={"house_name": "dazza", **coin_flip}))
    return CoinFlipEngine(config, database, logging.getLogger("test"), announce=announce)


# ═══════════════════════════════════════════════════════════════
#  House flips
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_house_flip_win(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    await seed_balance(database, "alice", 100)

    with patch(CHOICE, return_value="heads"):
        result = await coin_flip.flip_vs_house("Alice", 50)

    assert result.success
    assert result.private
    assert result.winner == "alice"
    assert result.balance == 150
    assert "WIN $100" in result.message
    assert result.public_message is None
    assert await database.get_balance("alice") == 150


@pytest.mark.asyncio
async def test_house_flip_loss(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    await seed_balance(database, "alice", 100)

    with patch(CHOICE, side_effect=["heads", "tails"]):
        result = await coin_flip.flip_vs_house("alice", 50)

    assert result.success
    assert result.loser == "alice"
    assert result.winner == "dazza"
    assert result.balance == 50
    assert "LOST $50" in result.message

    stats = await database.get_coin_flip_stats("alice")
    assert stats["losses"] == 1
    assert stats["tails_count"] == 1
    assert stats["current_streak"] == -1
    house = await database.get_coin_flip_stats("dazza")
    assert house["wins"] == 1
    # The house has stats but no ledger account
    assert await database.get_account("dazza") is None


@pytest.mark.asyncio
async def test_house_flip_big_win_announced(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    await seed_balance(database, "alice", 200)

    with patch(CHOICE, return_value="tails"):
        result = await coin_flip.flip_vs_house("Alice", 100)

    assert result.public_message == "Alice just won $200 on a coin flip!"
    assert result.balance == 300


@pytest.mark.asyncio
async def test_house_flip_insufficient_funds(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    await seed_balance(database, "alice", 30)

    result = await coin_flip.flip_vs_house("alice", 50)

    assert not result.success
    assert result.error == "insufficient_funds"
    assert result.balance == 30
    assert await database.get_balance("alice") == 30
    assert await database.get_coin_flip_stats("alice") is None


@pytest.mark.asyncio
async def test_house_flip_database_failure(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    await seed_balance(database, "alice", 100)

    with patch.object(database, "settle_house_flip", AsyncMock(side_effect=RuntimeError("disk"))):
        result = await coin_flip.flip_vs_house("alice", 50)

    assert result.error == "internal_error"
    assert await database.get_balance("alice") == 100


# ═══════════════════════════════════════════════════════════════
#  Validation
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
@pytest.mark.parametrize("amount,error", [(0, "invalid_amount"), (-5, "invalid_amount"), (True, "invalid_amount")])
async def test_invalid_amounts(coin_flip: CoinFlipEngine, amount, error):
    result = await coin_flip.flip_vs_house("alice", amount)
    assert result.error == error


@pytest.mark.asyncio
async def test_amount_beyond_storable_range(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    await seed_balance(database, "alice", 100)

    flip = await coin_flip.flip_vs_house("alice", 10**20)
    assert flip.error == "invalid_amount"
    assert flip.message == "Invalid bet amount."

    challenge = await coin_flip.create_challenge("alice", "bob", MAX_AMOUNT + 1)
    assert challenge.error == "invalid_amount"
    assert await database.get_balance("alice") == 100


@pytest.mark.asyncio
async def test_wager_limits(database: EconomyDatabase):
    engine = _engine(database, min_wager=10, max_wager=100)
    await seed_balance(database, "alice", 500)

    assert (await engine.flip_vs_house("alice", 5)).error == "below_min"
    assert (await engine.flip_vs_house("alice", 101)).error == "above_max"
    assert (await engine.create_challenge("alice", "bob", 500)).error == "above_max"


@pytest.mark.asyncio
async def test_disabled(database: EconomyDatabase):
    engine = _engine(database, enabled=False)
    result = await engine.flip_vs_house("alice", 10)
    assert result.error == "disabled"


@pytest.mark.asyncio
@pytest.mark.parametrize("target,error", [
    ("", "invalid_target"),
    ("ALICE", "self_challenge"),
    ("@alice", "self_challenge"),
    ("dazza", "bot_target"),
    ("TestBot", "bot_target"),
    ("[server]", "bot_target"),
    ("IgnoredBot", "bot_target"),
])
async def test_challenge_target_validation(
    coin_flip: CoinFlipEngine, database: EconomyDatabase, target, error,
):
    await seed_balance(database, "alice", 100)
    result = await coin_flip.create_challenge("alice", target, 10)
    assert result.error == error
    assert await database.get_balance("alice") == 100


# ═══════════════════════════════════════════════════════════════
#  Challenges
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_challenge_full_flow(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    """Challenger $100 stakes $50; challenged $200 calls heads and wins."""
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 200)

    created = await coin_flip.create_challenge("Alice", "Bob", 50)
    assert created.success
    assert "Alice challenges Bob" in created.public_message
    assert await database.get_balance("alice") == 50
    row = await database.get_challenge(created.challenge_id)
    assert row["status"] == "pending"
    assert coin_flip.has_expiry_timer(created.challenge_id)

    with patch(CHOICE, return_value="heads"):
        result = await coin_flip.handle_challenge_response("Bob", "heads")

    assert result.success
    assert result.winner == "bob"
    assert result.loser == "alice"
    assert result.public_message == "🪙 COIN FLIP: HEADS! bob takes $100 from alice!"
    assert await database.get_balance("alice") == 50
    assert await database.get_balance("bob") == 250
    assert not coin_flip.has_expiry_timer(created.challenge_id)

    row = await database.get_challenge(created.challenge_id)
    assert row["status"] == "completed"
    assert row["challenged_choice"] == "heads"
    assert row["challenger_choice"] == "tails"
    assert row["result"] == "heads"
    assert row["winner"] == "bob"

    bob_stats = await database.get_coin_flip_stats("bob")
    assert bob_stats["pvp_wins"] == 1
    alice_stats = await database.get_coin_flip_stats("alice")
    assert alice_stats["pvp_losses"] == 1


@pytest.mark.asyncio
async def test_challenger_wins(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 200)
    await coin_flip.create_challenge("alice", "bob", 50)

    with patch(CHOICE, return_value="tails"):
        result = await coin_flip.handle_challenge_response("bob", "heads")

    assert result.winner == "alice"
    assert await database.get_balance("alice") == 150
    assert await database.get_balance("bob") == 150


@pytest.mark.asyncio
async def test_challenge_rejected_when_challenger_short(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 30)
    await seed_balance(database, "bob", 200)

    result = await coin_flip.create_challenge("alice", "bob", 50)

    assert not result.success
    assert result.error == "insufficient_challenger"
    assert await database.get_balance("alice") == 30
    assert await database.count_challenges("pending") == 0
    assert coin_flip.pending_timer_count == 0


@pytest.mark.asyncio
async def test_challenge_rejected_when_target_short(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 10)

    result = await coin_flip.create_challenge("alice", "Bob", 50)

    assert result.error == "insufficient_challenged"
    assert "Bob is too broke" in result.message
    assert await database.get_balance("alice") == 100


@pytest.mark.asyncio
async def test_one_pending_challenge_per_challenger(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    await seed_balance(database, "carol", 100)

    first = await coin_flip.create_challenge("alice", "bob", 20)
    second = await coin_flip.create_challenge("alice", "carol", 20)

    assert first.success
    assert second.error == "pending_exists"
    assert await database.get_balance("alice") == 80


@pytest.mark.asyncio
async def test_concurrent_creates_escrow_once(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    await seed_balance(database, "carol", 100)

    results = await asyncio.gather(
        coin_flip.create_challenge("alice", "bob", 60),
        coin_flip.create_challenge("alice", "carol", 60),
    )

    assert sum(r.success for r in results) == 1
    assert await database.get_balance("alice") == 40
    assert await database.count_challenges("pending") == 1


@pytest.mark.asyncio
async def test_no_pending_challenge(coin_flip: CoinFlipEngine):
    result = await coin_flip.handle_challenge_response("bob", "tails")
    assert result.error == "no_pending_challenge"


@pytest.mark.asyncio
async def test_invalid_choice(coin_flip: CoinFlipEngine):
    result = await coin_flip.handle_challenge_response("bob", "edge")
    assert result.error == "invalid_choice"


@pytest.mark.asyncio
async def test_double_response_settles_once(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    await coin_flip.create_challenge("alice", "bob", 50)

    with patch(CHOICE, return_value="heads"):
        results = await asyncio.gather(
            coin_flip.handle_challenge_response("bob", "heads"),
            coin_flip.handle_challenge_response("bob", "tails"),
        )

    assert sum(r.success for r in results) == 1
    assert [r.error for r in results if not r.success] == ["no_pending_challenge"]
    assert await _total(database) == 200
    assert await database.count_challenges("completed") == 1


@pytest.mark.asyncio
async def test_expiry_and_accept_race_settles_once(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)

    for _ in range(5):
        created = await coin_flip.create_challenge("alice", "bob", 10)
        assert created.success
        expired, responded = await asyncio.gather(
            coin_flip.expire_challenge(created.challenge_id),
            coin_flip.handle_challenge_response("bob", "heads"),
        )
        assert expired.success != responded.success
        row = await database.get_challenge(created.challenge_id)
        assert row["status"] == ("cancelled" if expired.success else "completed")
        assert await _total(database) == 200
        assert await _escrowed(database) == 0


@pytest.mark.asyncio
async def test_balance_conserved_with_escrow(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)

    await coin_flip.create_challenge("alice", "bob", 40)
    assert await _total(database) + await _escrowed(database) == 200

    with patch(CHOICE, return_value="tails"):
        await coin_flip.handle_challenge_response("bob", "tails")
    assert await _total(database) == 200
    assert await _escrowed(database) == 0


# ═══════════════════════════════════════════════════════════════
#  Failure compensation
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_responder_spent_stake_before_accepting(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    created = await coin_flip.create_challenge("alice", "bob", 50)
    await database.debit("bob", 80, tx_type="test")

    result = await coin_flip.handle_challenge_response("bob", "heads")

    assert not result.success
    assert result.error == "responder_insufficient_funds"
    assert "bob is too broke now! Has $20, needs $50. Refunded alice." == result.public_message
    assert await database.get_balance("alice") == 100
    assert await database.get_balance("bob") == 20
    row = await database.get_challenge(created.challenge_id)
    assert row["status"] == "cancelled"
    assert row["cancel_reason"] == "insufficient_funds"


@pytest.mark.asyncio
async def test_resolution_failure_refunds_challenger(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    created = await coin_flip.create_challenge("alice", "bob", 50)

    with patch.object(database, "complete_challenge", AsyncMock(side_effect=RuntimeError("boom"))):
        result = await coin_flip.handle_challenge_response("bob", "heads")

    assert result.error == "internal_error"
    assert "refunded alice's $50" in result.public_message
    assert await database.get_balance("alice") == 100
    assert await database.get_balance("bob") == 100
    row = await database.get_challenge(created.challenge_id)
    assert row["status"] == "cancelled"
    assert row["cancel_reason"] == "error"


@pytest.mark.asyncio
async def test_refund_failure_is_not_announced_as_refunded(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    created = await coin_flip.create_challenge("alice", "bob", 50)

    with patch.object(database, "complete_challenge", AsyncMock(side_effect=RuntimeError("boom"))), \
            patch.object(database, "cancel_challenge", AsyncMock(side_effect=RuntimeError("locked"))):
        result = await coin_flip.handle_challenge_response("bob", "heads")

    assert result.error == "internal_error"
    assert result.public_message is None
    assert "did not go through" in result.message
    assert (await database.get_challenge(created.challenge_id))["status"] == "accepting"

    # The stuck row is refunded on the next start
    assert await coin_flip.recover_stale_challenges() == 1
    assert await database.get_balance("alice") == 100


# ═══════════════════════════════════════════════════════════════
#  Expiry
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_ttl_timer_refunds_challenger(database: EconomyDatabase):
    announce = AsyncMock(return_value=True)
    engine = _engine(database, announce=announce, challenge_ttl_seconds=0.1)
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)

    created = await engine.create_challenge("alice", "bob", 50)
    assert await database.get_balance("alice") == 50

    row = await _wait_for_status(database, created.challenge_id, "cancelled")
    assert row["cancel_reason"] == "expired"
    assert await database.get_balance("alice") == 100
    assert engine.pending_timer_count == 0
    announce.assert_awaited_with("No response from bob, alice gets their $50 back.")

    late = await engine.handle_challenge_response("bob", "heads")
    assert late.error == "no_pending_challenge"
    assert await database.get_balance("bob") == 100
    engine.shutdown()


@pytest.mark.asyncio
async def test_expire_twice_refunds_once(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    created = await coin_flip.create_challenge("alice", "bob", 50)

    first = await coin_flip.expire_challenge(created.challenge_id)
    second = await coin_flip.expire_challenge(created.challenge_id)

    assert first.success
    assert second.error == "not_pending"
    assert await database.get_balance("alice") == 100


@pytest.mark.asyncio
async def test_late_accept_of_overdue_challenge(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    await database.create_challenge("alice", "bob", 50, 30, now=now_utc() - timedelta(seconds=60))

    result = await coin_flip.handle_challenge_response("bob", "heads")

    assert result.error == "no_pending_challenge"
    assert await database.get_balance("bob") == 100


@pytest.mark.asyncio
async def test_sweep_expired_challenges(
    coin_flip: CoinFlipEngine, database: EconomyDatabase, announce: AsyncMock,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    await seed_balance(database, "carol", 100)
    await database.create_challenge("alice", "bob", 50, 30, now=now_utc() - timedelta(seconds=60))
    live = await coin_flip.create_challenge("carol", "bob", 10)

    swept = await coin_flip.sweep_expired_challenges()

    assert swept == 1
    assert await database.get_balance("alice") == 100
    assert (await database.get_challenge(live.challenge_id))["status"] == "pending"
    announce.assert_awaited_once()


@pytest.mark.asyncio
async def test_overdue_challenge_cleared_on_new_challenge(
    coin_flip: CoinFlipEngine, database: EconomyDatabase,
):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    old = await database.create_challenge("alice", "bob", 50, 30, now=now_utc() - timedelta(seconds=60))

    created = await coin_flip.create_challenge("alice", "bob", 20)

    assert created.success
    assert (await database.get_challenge(old["challenge_id"]))["status"] == "cancelled"
    assert await database.get_balance("alice") == 80


@pytest.mark.asyncio
async def test_recover_stale_challenges(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    for name in ("alice", "bob", "carol", "dave"):
        await seed_balance(database, name, 100)

    stuck = await database.create_challenge("alice", "bob", 10, 30)
    await database.claim_challenge("bob")
    overdue = await database.create_challenge(
        "carol", "dave", 20, 30, now=now_utc() - timedelta(seconds=60),
    )
    live = await database.create_challenge("dave", "alice", 30, 30)

    recovered = await coin_flip.recover_stale_challenges()

    assert recovered == 2
    stuck_row = await database.get_challenge(stuck["challenge_id"])
    assert stuck_row["status"] == "cancelled"
    assert stuck_row["cancel_reason"] == "recovered"
    assert (await database.get_challenge(overdue["challenge_id"]))["status"] == "cancelled"
    assert (await database.get_challenge(live["challenge_id"]))["status"] == "pending"
    assert coin_flip.has_expiry_timer(live["challenge_id"])
    assert await database.get_balance("alice") == 100
    assert await database.get_balance("carol") == 100
    assert await database.get_balance("dave") == 70


@pytest.mark.asyncio
async def test_shutdown_cancels_timers(coin_flip: CoinFlipEngine, database: EconomyDatabase):
    await seed_balance(database, "alice", 100)
    await seed_balance(database, "bob", 100)
    await coin_flip.create_challenge("alice", "bob", 10)
    assert coin_flip.pending_timer_count == 1

    coin_flip.shutdown()

    assert coin_flip.pending_timer_count == 0

"""Integration tests for 1v1 challenge settlement and expiry."""

from datetime import timedelta

import pytest

from chartvolt.core.clock import utcnow
from chartvolt.core.exceptions import IntegrityViolation
from chartvolt.models.challenge import Challenge, ChallengeParticipant
from chartvolt.models.position import TradingPosition
from chartvolt.models.wallet import CreditWallet, PlatformTransaction, WalletTransaction
from chartvolt.services.challenge_settler import ChallengeSettler

from factories import count, fetch, fetch_all, make_challenge, make_position, make_side, persist, set_quote


async def _finalize(session_factory, prices, effects, challenge_id, tie_policy=None):
    async with session_factory() as db:
        return await ChallengeSettler(db, prices, effects, tie_policy=tie_policy).finalize_challenge(challenge_id)


async def _expire(session_factory, prices, effects, challenge_id):
    async with session_factory() as db:
        return await ChallengeSettler(db, prices, effects).expire_challenge(challenge_id)


class TestFinalizeChallenge:
    async def test_winner_takes_pool_minus_fee(self, session_factory, prices, effects, recorder) -> None:
        challenge = make_challenge(entry_fee=50, platform_fee_percentage=10)
        challenger = make_side(challenge, "challenger", pnl=120)
        challenged = make_side(challenge, "challenged", pnl=-30)
        await persist(session_factory, challenge, challenger, challenged)

        plan = await _finalize(session_factory, prices, effects, challenge.id)

        assert plan.outcome == "winner"
        stored = await fetch(session_factory, Challenge, challenge.id)
        assert stored.status == "completed"
        assert stored.winner_id == challenge.challenger_id
        assert stored.loser_id == challenge.challenged_id
        assert (stored.winner_prize, stored.platform_fee_earned) == (90, 10)
        wallet = await fetch(session_factory, CreditWallet, challenge.challenger_id)
        assert wallet.balance == 90
        platform = await fetch_all(session_factory, PlatformTransaction)
        assert [(p.type, p.amount) for p in platform] == [("challenge_platform_fee", 10)]
        assert recorder.notifications_for(challenge.challenger_id) == ["challenge_won"]
        assert recorder.notifications_for(challenge.challenged_id) == ["challenge_lost"]

    async def test_tie_refunds_both_sides(self, session_factory, prices, effects) -> None:
        challenge = make_challenge(entry_fee=50)
        await persist(
            session_factory,
            challenge,
            make_side(challenge, "challenger", pnl=15),
            make_side(challenge, "challenged", pnl=15),
        )

        await _finalize(session_factory, prices, effects, challenge.id, tie_policy="refund")

        stored = await fetch(session_factory, Challenge, challenge.id)
        assert stored.is_tie is True
        assert stored.total_refunded == 100
        assert stored.platform_fee_earned == 0
        refunds = await fetch_all(session_factory, WalletTransaction, WalletTransaction.type == "challenge_refund")
        assert sorted(r.amount for r in refunds) == [50, 50]
        assert await count(session_factory, PlatformTransaction) == 0

    async def test_both_sides_without_trades(self, session_factory, prices, effects) -> None:
        challenge = make_challenge(entry_fee=50, platform_fee_percentage=10)
        challenger = make_side(challenge, "challenger", total_trades=0)
        challenged = make_side(challenge, "challenged", total_trades=0)
        await persist(session_factory, challenge, challenger, challenged)

        await _finalize(session_factory, prices, effects, challenge.id)

        stored = await fetch(session_factory, Challenge, challenge.id)
        assert stored.both_disqualified is True
        assert stored.winner_id is None
        assert (stored.platform_fee_earned, stored.unclaimed_pool) == (10, 90)
        assert await count(session_factory, WalletTransaction) == 0
        for side in (challenger, challenged):
            row = await fetch(session_factory, ChallengeParticipant, side.id)
            assert row.status == "disqualified"

    async def test_open_positions_closed_before_deciding(self, session_factory, redis, prices, effects) -> None:
        challenge = make_challenge(entry_fee=50)
        challenger = make_side(challenge, "challenger", pnl=10, current_open_positions=1)
        challenged = make_side(challenge, "challenged", pnl=20)
        # short from 100, ask 80: +20 takes the challenger to 30
        position = make_position(challenger, side="short", entry_price=100)
        await persist(session_factory, challenge, challenger, challenged, position)
        await set_quote(redis, "BTCUSDT", bid=79, ask=80)

        plan = await _finalize(session_factory, prices, effects, challenge.id)

        closed = await fetch(session_factory, TradingPosition, position.id)
        assert (closed.status, closed.close_reason, closed.realized_pnl) == ("closed", "challenge_end", 20)
        assert plan.winner_id == challenge.challenger_id
        assert plan.challenger_metric == pytest.approx(30)

    async def test_second_run_is_a_no_op(self, session_factory, prices, effects) -> None:
        challenge = make_challenge()
        await persist(
            session_factory, challenge, make_side(challenge, "challenger", pnl=1), make_side(challenge, "challenged")
        )

        assert await _finalize(session_factory, prices, effects, challenge.id) is not None
        assert await _finalize(session_factory, prices, effects, challenge.id) is None
        assert await count(session_factory, WalletTransaction) == 1

    async def test_missing_side_rolls_back(self, session_factory, prices, effects) -> None:
        challenge = make_challenge()
        await persist(session_factory, challenge, make_side(challenge, "challenger"))

        with pytest.raises(IntegrityViolation):
            await _finalize(session_factory, prices, effects, challenge.id)

        stored = await fetch(session_factory, Challenge, challenge.id)
        assert stored.status == "active"
        assert stored.settlement_locked_at is None


class TestExpireChallenge:
    async def test_expires_after_deadline(self, session_factory, prices, effects, recorder) -> None:
        challenge = make_challenge(status="pending", start_time=None, end_time=None)
        await persist(session_factory, challenge)

        assert await _expire(session_factory, prices, effects, challenge.id) is True
        assert (await fetch(session_factory, Challenge, challenge.id)).status == "expired"
        assert recorder.notifications_for(challenge.challenger_id) == ["challenge_expired"]
        assert await count(session_factory, WalletTransaction) == 0

    async def test_deadline_not_reached(self, session_factory, prices, effects) -> None:
        challenge = make_challenge(
            status="pending", accept_deadline=utcnow() + timedelta(hours=1), start_time=None, end_time=None
        )
        await persist(session_factory, challenge)

        assert await _expire(session_factory, prices, effects, challenge.id) is False
        assert (await fetch(session_factory, Challenge, challenge.id)).status == "pending"

    async def test_accepted_challenge_is_not_expired(self, session_factory, prices, effects) -> None:
        challenge = make_challenge(status="active")
        await persist(session_factory, challenge)

        assert await _expire(session_factory, prices, effects, challenge.id) is False

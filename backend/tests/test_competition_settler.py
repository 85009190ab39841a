"""Integration tests for competition completion, cancellation and auto-start."""

from datetime import timedelta
from uuid import uuid4

import pytest

from chartvolt.core.clock import utcnow
from chartvolt.core.exceptions import EntityNotFound, IntegrityViolation
from chartvolt.models.competition import Competition, CompetitionParticipant
from chartvolt.models.position import TradingPosition
from chartvolt.models.wallet import CreditWallet, PlatformTransaction, WalletTransaction
from chartvolt.services.competition_settler import CompetitionSettler
from chartvolt.services.effects import EffectRunner

from factories import (
    RecordingRedis,
    count,
    fetch,
    fetch_all,
    make_competition,
    make_participant,
    make_position,
    persist,
    set_quote,
)


async def _finalize(session_factory, prices, effects, competition_id):
    async with session_factory() as db:
        return await CompetitionSettler(db, prices, effects).finalize_competition(competition_id)


async def _cancel(session_factory, prices, effects, competition_id, reason="Admin cancelled"):
    async with session_factory() as db:
        return await CompetitionSettler(db, prices, effects).cancel_competition(competition_id, reason)


async def _start(session_factory, prices, effects, competition_id):
    async with session_factory() as db:
        return await CompetitionSettler(db, prices, effects).start_competition(competition_id)


@pytest.fixture
async def finished(session_factory):
    """Ended competition: two eligible traders and one without enough trades"""
    competition = make_competition(entry_fee=100, prize_pool=300, minimum_trades=1)
    first = make_participant(competition, 0, pnl=300)
    second = make_participant(competition, 1, pnl=100)
    idle = make_participant(competition, 2, pnl=0, total_trades=0)
    await persist(session_factory, competition, first, second, idle)
    return competition, first, second, idle


class TestFinalizeCompetition:
    async def test_credits_winners_and_records_ledger(self, session_factory, prices, effects, finished) -> None:
        competition, first, second, idle = finished

        plan = await _finalize(session_factory, prices, effects, competition.id)

        assert plan is not None
        stored = await fetch(session_factory, Competition, competition.id)
        assert stored.status == "completed"
        assert stored.settled_at is not None
        assert stored.winner_id == first.user_id
        assert stored.total_collected == 300
        assert stored.total_distributed == 270
        assert stored.unclaimed_pool == 30
        assert stored.platform_fee_earned == 0
        assert [w["rank"] for w in stored.winners] == [1, 2]
        assert [d["user_id"] for d in stored.disqualified] == [str(idle.user_id)]

        wallet = await fetch(session_factory, CreditWallet, first.user_id)
        assert wallet.balance == 180
        transactions = await fetch_all(
            session_factory, WalletTransaction, WalletTransaction.reference_id == competition.id
        )
        assert sorted(t.amount for t in transactions) == [90, 180]
        assert {t.type for t in transactions} == {"competition_prize"}

        platform = await fetch_all(session_factory, PlatformTransaction)
        assert [(p.type, p.amount) for p in platform] == [("competition_unclaimed_pool", 30)]

        idle_row = await fetch(session_factory, CompetitionParticipant, idle.id)
        assert idle_row.status == "disqualified"
        assert idle_row.disqualification_reason == "minimum_trades_not_met"
        first_row = await fetch(session_factory, CompetitionParticipant, first.id)
        assert (first_row.final_rank, first_row.prize_amount) == (1, 180)

    async def test_second_run_is_a_no_op(self, session_factory, prices, effects, recorder, finished) -> None:
        competition = finished[0]
        await _finalize(session_factory, prices, effects, competition.id)
        transactions = await count(session_factory, WalletTransaction)
        published = len(recorder.messages)

        again = await _finalize(session_factory, prices, effects, competition.id)

        assert again is None
        assert await count(session_factory, WalletTransaction) == transactions
        assert len(recorder.messages) == published

    async def test_notifications_published_after_commit(self, session_factory, prices, effects, recorder, finished) -> None:
        competition, first, second, idle = finished
        await _finalize(session_factory, prices, effects, competition.id)

        assert "competition_won" in recorder.notifications_for(first.user_id)
        assert "competition_podium" in recorder.notifications_for(second.user_id)
        assert recorder.notifications_for(idle.user_id) == ["competition_disqualified"]

    async def test_effect_failures_do_not_undo_settlement(self, session_factory, prices, finished) -> None:
        competition = finished[0]
        plan = await _finalize(session_factory, prices, EffectRunner(RecordingRedis(fail=True)), competition.id)

        assert plan is not None
        assert (await fetch(session_factory, Competition, competition.id)).status == "completed"

    async def test_open_positions_closed_at_market(self, session_factory, redis, prices, effects) -> None:
        competition = make_competition(prize_pool=0, minimum_trades=1)
        trader = make_participant(competition, 0, pnl=0, total_trades=0, winning_trades=0,
                                  losing_trades=0, current_open_positions=1, used_margin=50)
        position = make_position(trader, symbol="BTCUSDT", side="long", entry_price=100, margin_used=50)
        await persist(session_factory, competition, trader, position)
        await set_quote(redis, "BTCUSDT", bid=110, ask=111)

        await _finalize(session_factory, prices, effects, competition.id)

        closed = await fetch(session_factory, TradingPosition, position.id)
        assert closed.status == "closed"
        assert closed.close_reason == "competition_end"
        assert closed.exit_price == 110
        assert closed.realized_pnl == 10
        row = await fetch(session_factory, CompetitionParticipant, trader.id)
        assert (row.pnl, row.total_trades, row.current_open_positions, row.used_margin) == (10, 1, 0, 0)
        assert row.status == "active"
        assert row.final_rank == 1

    async def test_missing_quote_closes_at_last_price(self, session_factory, prices, effects) -> None:
        competition = make_competition(prize_pool=0)
        trader = make_participant(competition, 0, current_open_positions=1)
        position = make_position(trader, symbol="XAUUSD", side="short", entry_price=2000, current_price=1990)
        await persist(session_factory, competition, trader, position)

        await _finalize(session_factory, prices, effects, competition.id)

        closed = await fetch(session_factory, TradingPosition, position.id)
        assert (closed.status, closed.exit_price, closed.realized_pnl) == ("closed", 1990, 10)

    async def test_not_yet_ended_is_skipped(self, session_factory, prices, effects) -> None:
        competition = make_competition(end_time=utcnow() + timedelta(hours=1))
        await persist(session_factory, competition)

        assert await _finalize(session_factory, prices, effects, competition.id) is None
        assert (await fetch(session_factory, Competition, competition.id)).status == "active"

    async def test_cancelled_is_never_downgraded(self, session_factory, prices, effects) -> None:
        competition = make_competition(status="cancelled")
        await persist(session_factory, competition, make_participant(competition, 0, pnl=100))

        assert await _finalize(session_factory, prices, effects, competition.id) is None
        assert (await fetch(session_factory, Competition, competition.id)).status == "cancelled"
        assert await count(session_factory, WalletTransaction) == 0

    async def test_integrity_violation_leaves_competition_untouched(self, session_factory, redis, prices, effects) -> None:
        competition = make_competition(
            prize_pool=200,
            prize_distribution=[{"rank": 1, "percentage": 80}, {"rank": 2, "percentage": 40}],
        )
        trader = make_participant(competition, 0, current_open_positions=1)
        rival = make_participant(competition, 1)
        position = make_position(trader)
        await persist(session_factory, competition, trader, rival, position)
        await set_quote(redis, "BTCUSDT", bid=150, ask=151)

        with pytest.raises(IntegrityViolation):
            await _finalize(session_factory, prices, effects, competition.id)

        stored = await fetch(session_factory, Competition, competition.id)
        assert stored.status == "active"
        assert stored.settlement_locked_at is None
        assert (await fetch(session_factory, TradingPosition, position.id)).status == "open"
        assert await count(session_factory, WalletTransaction) == 0

    async def test_unknown_competition(self, session_factory, prices, effects) -> None:
        with pytest.raises(EntityNotFound):
            await _finalize(session_factory, prices, effects, uuid4())


class TestCancelCompetition:
    async def test_refunds_every_entry_fee(self, session_factory, prices, effects, recorder) -> None:
        competition = make_competition(entry_fee=40, prize_pool=120, end_time=utcnow() + timedelta(days=1))
        field = [make_participant(competition, i) for i in range(3)]
        await persist(session_factory, competition, *field)

        plan = await _cancel(session_factory, prices, effects, competition.id, "Feed outage")

        assert plan.total_refunded == plan.total_collected
        stored = await fetch(session_factory, Competition, competition.id)
        assert stored.status == "cancelled"
        assert stored.cancellation_reason == "Feed outage"
        assert stored.total_refunded == 120
        assert stored.platform_fee_earned == 0
        refunds = await fetch_all(session_factory, WalletTransaction, WalletTransaction.type == "competition_refund")
        assert sorted(r.user_id for r in refunds) == sorted(p.user_id for p in field)
        assert all(r.amount == 40 for r in refunds)
        assert recorder.templates().count("competition_cancelled") == 3

    async def test_cancelling_twice_refunds_once(self, session_factory, prices, effects) -> None:
        competition = make_competition(entry_fee=10, prize_pool=10)
        await persist(session_factory, competition, make_participant(competition))

        assert await _cancel(session_factory, prices, effects, competition.id) is not None
        assert await _cancel(session_factory, prices, effects, competition.id) is None
        assert await count(session_factory, WalletTransaction) == 1

    async def test_active_competition_positions_closed_on_cancel(self, session_factory, redis, prices, effects) -> None:
        competition = make_competition(entry_fee=10, prize_pool=10, end_time=utcnow() + timedelta(days=1))
        trader = make_participant(competition, 0, current_open_positions=1, used_margin=100)
        position = make_position(trader, symbol="BTCUSDT", entry_price=100, margin_used=100)
        await persist(session_factory, competition, trader, position)
        await set_quote(redis, "BTCUSDT", bid=90, ask=91)

        plan = await _cancel(session_factory, prices, effects, competition.id, "Feed outage")

        assert plan.total_refunded == 10
        closed = await fetch(session_factory, TradingPosition, position.id)
        assert (closed.status, closed.close_reason, closed.exit_price) == ("closed", "competition_cancelled", 90)
        row = await fetch(session_factory, CompetitionParticipant, trader.id)
        assert (row.current_open_positions, row.used_margin) == (0, 0)
        assert (await fetch(session_factory, Competition, competition.id)).status == "cancelled"

    async def test_unknown_competition_cannot_be_cancelled(self, session_factory, prices, effects) -> None:
        with pytest.raises(EntityNotFound):
            await _cancel(session_factory, prices, effects, uuid4())

    async def test_completed_competition_cannot_be_cancelled(self, session_factory, prices, effects, finished) -> None:
        competition = finished[0]
        await _finalize(session_factory, prices, effects, competition.id)

        assert await _cancel(session_factory, prices, effects, competition.id) is None
        assert (await fetch(session_factory, Competition, competition.id)).status == "completed"


class TestStartCompetition:
    async def test_starts_with_enough_participants(self, session_factory, prices, effects, recorder) -> None:
        competition = make_competition(status="upcoming", start_time=utcnow() - timedelta(minutes=1),
                                       end_time=utcnow() + timedelta(days=1), prize_pool=200)
        field = [make_participant(competition, i) for i in range(2)]
        await persist(session_factory, competition, *field)

        assert await _start(session_factory, prices, effects, competition.id) == "started"
        assert (await fetch(session_factory, Competition, competition.id)).status == "active"
        assert recorder.templates() == ["competition_started", "competition_started"]

    async def test_cancels_and_refunds_when_too_few(self, session_factory, prices, effects) -> None:
        competition = make_competition(status="upcoming", start_time=utcnow() - timedelta(minutes=1),
                                       end_time=utcnow() + timedelta(days=1), prize_pool=100, min_participants=2)
        lonely = make_participant(competition, 0)
        await persist(session_factory, competition, lonely)

        assert await _start(session_factory, prices, effects, competition.id) == "cancelled"
        stored = await fetch(session_factory, Competition, competition.id)
        assert stored.status == "cancelled"
        assert stored.cancellation_reason.startswith("Insufficient participants")
        wallet = await fetch(session_factory, CreditWallet, lonely.user_id)
        assert wallet.balance == 100

    async def test_future_start_is_skipped(self, session_factory, prices, effects) -> None:
        competition = make_competition(status="upcoming", start_time=utcnow() + timedelta(hours=1),
                                       end_time=utcnow() + timedelta(days=1))
        await persist(session_factory, competition)

        assert await _start(session_factory, prices, effects, competition.id) == "skipped"

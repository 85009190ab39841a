"""Tests for the scheduler ticks: batch isolation and summaries."""

from datetime import timedelta

import pytest

from chartvolt.core.clock import utcnow
from chartvolt.models.challenge import Challenge
from chartvolt.models.competition import Competition
from chartvolt.services.scheduler import SettlementScheduler

from factories import fetch, make_challenge, make_competition, make_participant, make_position, make_side, persist


@pytest.fixture
def scheduler(session_factory, redis) -> SettlementScheduler:
    return SettlementScheduler(session_factory, redis, settlement_interval=1, margin_interval=1)


class TestSettlementTick:
    async def test_one_bad_competition_does_not_block_the_rest(self, session_factory, scheduler) -> None:
        broken = make_competition(
            prize_pool=100, prize_distribution=[{"rank": 1, "percentage": 70}, {"rank": 2, "percentage": 50}]
        )
        healthy = make_competition(prize_pool=100)
        await persist(
            session_factory,
            broken, healthy,
            make_participant(broken, 0, pnl=10), make_participant(healthy, 0, pnl=10),
        )

        summary = await scheduler.run_settlement_tick()

        finalized = summary["competitions_finalized"]
        assert (finalized["checked"], finalized["succeeded"]) == (2, 1)
        assert [f["id"] for f in finalized["failed"]] == [str(broken.id)]
        assert (await fetch(session_factory, Competition, broken.id)).status == "active"
        assert (await fetch(session_factory, Competition, healthy.id)).status == "completed"
        assert scheduler.last_settlement == summary

    async def test_covers_every_lifecycle_step(self, session_factory, scheduler) -> None:
        now = utcnow()
        upcoming = make_competition(status="upcoming", start_time=now - timedelta(minutes=1),
                                    end_time=now + timedelta(days=1))
        pending = make_challenge(status="pending", start_time=None, end_time=None)
        finished = make_challenge()
        await persist(
            session_factory,
            upcoming, make_participant(upcoming, 0), make_participant(upcoming, 1),
            pending, finished,
            make_side(finished, "challenger", pnl=5), make_side(finished, "challenged", pnl=-5),
        )

        summary = await scheduler.run_settlement_tick()

        assert summary["competitions_started"]["succeeded"] == 1
        assert summary["challenges_expired"]["succeeded"] == 1
        assert summary["challenges_finalized"]["succeeded"] == 1
        assert (await fetch(session_factory, Competition, upcoming.id)).status == "active"
        assert (await fetch(session_factory, Challenge, pending.id)).status == "expired"
        assert (await fetch(session_factory, Challenge, finished.id)).status == "completed"

    async def test_second_tick_settles_nothing_twice(self, session_factory, scheduler) -> None:
        competition = make_competition(prize_pool=100)
        await persist(session_factory, competition, make_participant(competition, 0, pnl=1))

        await scheduler.run_settlement_tick()
        summary = await scheduler.run_settlement_tick()

        assert summary["competitions_finalized"]["checked"] == 0

    async def test_empty_tick(self, scheduler) -> None:
        summary = await scheduler.run_settlement_tick()
        assert all(summary[k]["checked"] == 0 for k in (
            "competitions_started", "competitions_finalized", "challenges_expired", "challenges_finalized"
        ))
        assert "ran_at" in summary


class TestMarginTick:
    async def test_summary_is_kept(self, session_factory, redis, scheduler) -> None:
        competition = make_competition(end_time=utcnow() + timedelta(days=1))
        trader = make_participant(competition, 0, current_capital=1000, used_margin=100, current_open_positions=1)
        await persist(session_factory, competition, trader, make_position(trader))

        summary = await scheduler.run_margin_tick()

        assert summary["checked"] == 1
        assert scheduler.last_margin_check == summary


class TestLoops:
    async def test_start_and_stop(self, scheduler) -> None:
        await scheduler.start()
        assert scheduler.running is True
        assert len(scheduler.tasks) == 2

        await scheduler.stop()
        assert scheduler.running is False
        assert scheduler.tasks == []

"""Tests for the admin HTTP routes and the health endpoint."""

from uuid import uuid4

import httpx
import pytest
import pytest_asyncio

from chartvolt.core.database import get_session
from chartvolt.core.security import limiter
from chartvolt.main import app
from chartvolt.models.competition import Competition
from chartvolt.services.scheduler import SettlementScheduler

from factories import fetch, make_competition, make_participant, persist

ADMIN = {"X-Admin-Token": "test-admin-token"}


@pytest_asyncio.fixture
async def client(session_factory, redis):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.state.scheduler = SettlementScheduler(session_factory, redis)
    limiter.reset()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    app.state.scheduler = None


@pytest.fixture
async def open_competition(session_factory):
    competition = make_competition(entry_fee=20, prize_pool=40)
    await persist(session_factory, competition, make_participant(competition, 0), make_participant(competition, 1))
    return competition


class TestAdminRoutes:
    async def test_requires_token(self, client, open_competition) -> None:
        response = await client.post(f"/admin/competitions/{open_competition.id}/cancel", json={"reason": "x"})
        assert response.status_code == 401

        response = await client.post(
            f"/admin/competitions/{open_competition.id}/cancel",
            json={"reason": "x"},
            headers={"X-Admin-Token": "wrong"},
        )
        assert response.status_code == 401

    async def test_cancel_refunds(self, client, session_factory, open_competition) -> None:
        response = await client.post(
            f"/admin/competitions/{open_competition.id}/cancel", json={"reason": "Data feed outage"}, headers=ADMIN
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "cancelled"
        assert body["total_refunded"] == 40
        assert body["refunds"] == 2
        assert (await fetch(session_factory, Competition, open_competition.id)).status == "cancelled"

    async def test_cancel_twice_conflicts(self, client, open_competition) -> None:
        url = f"/admin/competitions/{open_competition.id}/cancel"
        assert (await client.post(url, json={"reason": "first"}, headers=ADMIN)).status_code == 200
        assert (await client.post(url, json={"reason": "second"}, headers=ADMIN)).status_code == 409

    async def test_cancel_unknown_competition(self, client) -> None:
        response = await client.post(f"/admin/competitions/{uuid4()}/cancel", json={"reason": "x"}, headers=ADMIN)
        assert response.status_code == 404

    async def test_cancel_requires_reason(self, client, open_competition) -> None:
        response = await client.post(
            f"/admin/competitions/{open_competition.id}/cancel", json={"reason": ""}, headers=ADMIN
        )
        assert response.status_code == 422

    async def test_settlement_lookup(self, client, open_competition) -> None:
        await client.post("/admin/settlement/run", headers=ADMIN)

        response = await client.get(f"/admin/competitions/{open_competition.id}/settlement", headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["total_collected"] == 40
        assert [w["rank"] for w in body["winners"]] == [1, 2]

    async def test_manual_ticks(self, client) -> None:
        settlement = await client.post("/admin/settlement/run", headers=ADMIN)
        margin = await client.post("/admin/margin-check/run", headers=ADMIN)

        assert settlement.status_code == 200
        assert "competitions_finalized" in settlement.json()
        assert margin.status_code == 200
        assert margin.json()["checked"] == 0


class TestHealth:
    async def test_reports_last_ticks(self, client) -> None:
        await client.post("/admin/margin-check/run", headers=ADMIN)

        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["services"]["scheduler"] == "down"
        assert body["last_margin_check"]["checked"] == 0
        assert response.headers["X-Content-Type-Options"] == "nosniff"

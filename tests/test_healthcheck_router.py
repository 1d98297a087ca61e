"""Tests for the health check endpoints."""

from datetime import timedelta

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.base_model import utcnow
from app.models.subscription_credit import SubscriptionCredit


def component(body, name):
    return next(c for c in body["components"] if c["name"] == name)


async def add_lapsed_period(db: AsyncSession, ended_ago: timedelta) -> None:
    end = utcnow() - ended_ago
    db.add(SubscriptionCredit(
        user_id="lapsed-user",
        subscription_id="sub_lapsed",
        credits=120,
        remaining_credits=40,
        start_date=end - timedelta(days=30),
        end_date=end,
        status="active"
    ))
    await db.commit()


async def test_liveness(client: AsyncClient):
    response = await client.get("/healthcheck/live")

    assert response.status_code == 200
    assert response.json()["uptime_seconds"] >= 0


async def test_full_reports_every_component(client: AsyncClient):
    response = await client.get("/healthcheck/full")

    assert response.status_code == 200
    body = response.json()
    assert {c["name"] for c in body["components"]} == {"database", "ledger", "stripe", "face_swap_provider"}
    assert component(body, "database")["status"] == "up"
    assert component(body, "ledger")["details"]["lapsed_periods"] == 0
    assert component(body, "face_swap_provider")["status"] == "up"


async def test_recent_lapse_is_not_a_backlog(client: AsyncClient, db: AsyncSession):
    await add_lapsed_period(db, timedelta(hours=1))

    body = (await client.get("/healthcheck/full")).json()

    ledger = component(body, "ledger")
    assert ledger["status"] == "up"
    assert ledger["details"]["lapsed_periods"] == 1


async def test_stale_lapse_degrades_the_ledger(client: AsyncClient, db: AsyncSession):
    await add_lapsed_period(db, timedelta(days=3))

    response = await client.get("/healthcheck/full")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "degraded"
    assert component(body, "ledger")["message"] == "Expiry sweep is behind"

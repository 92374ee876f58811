"""
Tests for API endpoints.

The lifespan does not run under ASGITransport, so each test wires the
engine onto app.state itself.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from arena.api.main import create_app
from arena.core.config import get_settings
from arena.core.security import create_access_token
from arena.db.database import get_db
from arena.db.models import UserDB
from arena.services.monitor_service import CheckResult
from arena.services.payout_service import PayoutService

CRON_SECRET = "cron-secret-for-tests"


@pytest.fixture(autouse=True)
def _settings_env(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def engine(settings, locks):
    engine = MagicMock()
    engine.settings = settings
    engine.locks = locks
    engine.side_effects = None
    engine.monitor.check_all_active_agents = AsyncMock(
        return_value={"agents_checked": 2, "agents_skipped": 1, "trades_opened": 0}
    )
    engine.monitor.check_agent = AsyncMock()
    engine.settlement.settle_closed_positions = AsyncMock(
        return_value={"settled": 1, "checked": 3, "errors": 0}
    )
    return engine


@pytest.fixture
def app(engine, db_session):
    app = create_app()
    app.state.engine = engine

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers(test_user):
    return {"Authorization": f"Bearer {create_access_token(test_user.wallet_address)}"}


@pytest.mark.unit
class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["environment"] == "development"


@pytest.mark.unit
class TestCronEndpoints:
    async def test_monitor_sweep_with_bearer_secret(self, client, engine):
        response = await client.get(
            "/api/v1/cron/monitor", headers={"Authorization": f"Bearer {CRON_SECRET}"}
        )

        assert response.status_code == 200
        assert response.json()["agents_checked"] == 2
        engine.monitor.check_all_active_agents.assert_awaited_once()

    async def test_settle_sweep_with_query_secret(self, client, engine):
        response = await client.get("/api/v1/cron/settle", params={"secret": CRON_SECRET})

        assert response.status_code == 200
        assert response.json() == {"settled": 1, "checked": 3, "errors": 0}

    async def test_wrong_secret_rejected(self, client, engine):
        response = await client.get("/api/v1/cron/monitor", params={"secret": "guess"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "CRON_UNAUTHORIZED"
        engine.monitor.check_all_active_agents.assert_not_awaited()

    async def test_missing_secret_rejected(self, client):
        response = await client.get("/api/v1/cron/monitor")

        assert response.status_code == 401

    async def test_unconfigured_secret_is_server_error(self, client, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "")
        get_settings.cache_clear()

        response = await client.get("/api/v1/cron/monitor", params={"secret": "anything"})

        assert response.status_code == 500

    async def test_engine_not_started(self, client, app):
        del app.state.engine

        response = await client.get(
            "/api/v1/cron/monitor", headers={"Authorization": f"Bearer {CRON_SECRET}"}
        )

        assert response.status_code == 503


@pytest.mark.unit
class TestMonitorEndpoint:
    async def test_runs_check_for_owned_agent(self, client, engine, test_agent, auth_headers):
        engine.monitor.check_agent.return_value = CheckResult(
            agent_id=test_agent.id, skipped=True, reason="checked too recently", next_check_in=120
        )

        response = await client.post(f"/api/v1/agents/{test_agent.id}/monitor", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["skipped"] is True
        assert body["next_check_in"] == 120
        engine.monitor.check_agent.assert_awaited_once_with(test_agent.id)

    async def test_requires_token(self, client, test_agent):
        response = await client.post(f"/api/v1/agents/{test_agent.id}/monitor")

        assert response.status_code == 401

    async def test_paused_agent_rejected(self, client, engine, make_agent, auth_headers):
        agent = await make_agent(status="paused")

        response = await client.post(f"/api/v1/agents/{agent.id}/monitor", headers=auth_headers)

        assert response.status_code == 409
        engine.monitor.check_agent.assert_not_awaited()

    async def test_other_users_agent_not_found(self, client, db_session, make_agent):
        agent = await make_agent()
        stranger = create_access_token("0x" + "e5" * 20)

        response = await client.post(
            f"/api/v1/agents/{agent.id}/monitor",
            headers={"Authorization": f"Bearer {stranger}"},
        )

        assert response.status_code == 404


@pytest.mark.unit
class TestCapitalWithdrawalEndpoint:
    async def test_withdrawal_is_paid_out_to_creator_wallet(
        self, client, engine, session_factory, test_agent, test_user, auth_headers
    ):
        bridge = MagicMock()
        engine.payouts = PayoutService(session_factory, bridge)
        engine.dispatcher = MagicMock()

        response = await client.post(
            f"/api/v1/agents/{test_agent.id}/withdraw-capital",
            json={"amount_usd": 100.0, "request_id": "capital-1"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["capital_balance"] == pytest.approx(900.0)
        assert body["payout"]["status"] == "pending"
        assert body["payout"]["to_address"] == test_user.wallet_address
        engine.dispatcher.submit.assert_called_once()
        # Credited to the free balance, then reserved by the payout request
        async with session_factory() as session:
            assert (await session.get(UserDB, test_user.id)).balance_usdt == pytest.approx(1000.0)

    async def test_withdrawal_without_payouts_stays_in_free_balance(
        self, client, engine, session_factory, test_agent, test_user, auth_headers
    ):
        engine.payouts = None

        response = await client.post(
            f"/api/v1/agents/{test_agent.id}/withdraw-capital",
            json={"amount_usd": 100.0},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["payout"] is None
        async with session_factory() as session:
            assert (await session.get(UserDB, test_user.id)).balance_usdt == pytest.approx(1100.0)

    async def test_withdrawal_above_pool_rejected(self, client, engine, test_agent, auth_headers):
        engine.payouts = None

        response = await client.post(
            f"/api/v1/agents/{test_agent.id}/withdraw-capital",
            json={"amount_usd": 5000.0},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INSUFFICIENT_BALANCE"

"""
Tests for the HTTP and WebSocket API

The application runs over an in-memory container with a manual clock
parked inside the trading session. The clock is never advanced here: the
app runs on the test client's own event loop thread.
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conftest import SECRET, USER_ID, ManualClock, make_strategy, signal
from papertrade.container import ServiceContainer
from papertrade.main import create_application
from papertrade.stores.base import Account, Instrument


@pytest.fixture
def container(settings):
    container = ServiceContainer.in_memory(
        settings=settings,
        clock=ManualClock(),
        strategies=[make_strategy(), make_strategy(id="strat-2", webhook_secret="other", is_active=False)],
        instruments=[
            Instrument(symbol="RELIANCE", name="Reliance Industries", reference_price=Decimal("100")),
            Instrument(symbol="TCS", name="Tata Consultancy Services", reference_price=Decimal("3500")),
        ],
        accounts=[Account(user_id=USER_ID, balance=Decimal("100000"))],
    )
    container.order_executor.set_slippage(0)
    container.order_executor.set_execution_delay(0)
    return container


@pytest.fixture
def client(container):
    with TestClient(create_application(container=container)) as test_client:
        yield test_client


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["storage"] == "memory"
        assert data["market_open"] is True
        assert "database" not in data


class TestWebhook:
    """Tests for signal intake and status mapping."""

    def test_buy_signal_executes(self, client):
        response = client.post("/api/webhook/tradingview", json=signal())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["symbol"] == "RELIANCE"
        assert data["execution_price"] == "100.00"
        assert data["order"]["side"] == "BUY"

    def test_duplicate_is_conflict(self, client):
        client.post("/api/webhook/tradingview", json=signal())
        response = client.post("/api/webhook/tradingview", json=signal())

        assert response.status_code == 409
        assert response.json()["error"] == "DUPLICATE_SIGNAL"

    def test_bad_secret_is_unauthorized(self, client):
        response = client.post("/api/webhook/tradingview", json=signal(secret="nope"))

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid webhook secret or strategy not active"

    def test_malformed_signal(self, client):
        response = client.post("/api/webhook/tradingview", json=signal(action="HOLD"))

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_invalid_json_body(self, client):
        response = client.post(
            "/api/webhook/tradingview",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Signal payload must be a JSON object"

    def test_risk_rejection(self, client):
        response = client.post("/api/webhook/tradingview", json=signal(quantity=500))

        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "RISK_LIMIT_EXCEEDED"
        assert data["details"]["limit"] == "max_capital_per_trade"

    def test_sell_without_holding(self, client):
        response = client.post("/api/webhook/tradingview", json=signal(action="SELL"))

        assert response.status_code == 400
        assert response.json()["error"] == "NO_HOLDING"

    def test_payload_description(self, client):
        data = client.get("/api/webhook/test").json()
        assert set(data["required_fields"]) == {"symbol", "action", "secret"}


class TestStrategiesApi:
    """Tests for strategy monitoring."""

    def test_list(self, client):
        assert client.get("/api/strategies").json()["total"] == 2
        active = client.get("/api/strategies", params={"active_only": True}).json()
        assert [s["id"] for s in active["strategies"]] == ["strat-1"]

    def test_secret_not_exposed(self, client):
        strategies = client.get("/api/strategies").json()["strategies"]
        assert all("webhook_secret" not in s for s in strategies)
        assert SECRET not in str(strategies)

    def test_metrics(self, client):
        client.post("/api/webhook/tradingview", json=signal())

        metrics = client.get("/api/strategies/strat-1/metrics").json()
        assert metrics["executed"] == 1
        assert metrics["strategy"]["stats"]["total_trades"] == 1

    def test_metrics_unknown(self, client):
        assert client.get("/api/strategies/missing/metrics").status_code == 404

    def test_risk_and_reset(self, client):
        client.post("/api/webhook/tradingview", json=signal())

        risk = client.get("/api/strategies/strat-1/risk").json()
        assert risk["today"]["trades_executed_today"] == 1
        assert risk["limits"]["max_trades_per_day"] == 10
        assert risk["market_hours"] == "09:15 - 15:30 IST"

        reset = client.post("/api/strategies/strat-1/reset-counters").json()
        assert reset["risk"]["trades_executed_today"] == 0


class TestMarketApi:
    """Tests for cached price reads."""

    def test_price_seeded_from_instrument(self, client):
        response = client.get("/api/market/prices/tcs")

        assert response.status_code == 200
        assert response.json()["ltp"] == 3500.0

    def test_unknown_symbol(self, client):
        assert client.get("/api/market/prices/NOPE").status_code == 404

    def test_prices_list(self, client, container):
        container.price_feed.ingest({"symbol": "RELIANCE", "ltp": 101})
        container.price_feed.ingest({"symbol": "TCS", "ltp": 3501})

        data = client.get("/api/market/prices", params={"symbols": "reliance, INFY"}).json()
        assert data["count"] == 1
        assert data["prices"][0]["symbol"] == "RELIANCE"
        assert client.get("/api/market/prices").json()["count"] == 2

    def test_status(self, client):
        data = client.get("/api/market/status").json()
        assert data["market_open"] is True
        assert data["market_hours"] == "09:15 - 15:30 IST"


class TestOrdersApi:
    """Tests for manual orders and the portfolio view."""

    def test_buy_and_portfolio(self, client):
        client.get("/api/market/prices/RELIANCE")
        response = client.post("/api/orders/buy", json={"user_id": USER_ID, "symbol": "RELIANCE", "quantity": 10})

        assert response.status_code == 200
        assert response.json()["remaining_balance"] == "98998.81"

        portfolio = client.get(f"/api/orders/portfolio/{USER_ID}").json()
        assert portfolio["balance"] == "98998.81"
        assert portfolio["holdings"][0]["quantity"] == 10
        assert len(portfolio["orders"]) == 1

    def test_new_user_gets_account(self, client, settings):
        client.get("/api/market/prices/RELIANCE")
        response = client.post("/api/orders/buy", json={"user_id": "user-9", "symbol": "RELIANCE", "quantity": 1})

        assert response.status_code == 200
        portfolio = client.get("/api/orders/portfolio/user-9").json()
        assert Decimal(portfolio["balance"]) < settings.trading.initial_balance

    def test_sell_without_holding(self, client):
        client.get("/api/market/prices/RELIANCE")
        response = client.post("/api/orders/sell", json={"user_id": USER_ID, "symbol": "RELIANCE", "quantity": 1})

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "NO_HOLDING"

    def test_invalid_quantity(self, client):
        response = client.post("/api/orders/buy", json={"user_id": USER_ID, "symbol": "RELIANCE", "quantity": 0})
        assert response.status_code == 422

    def test_unknown_portfolio(self, client):
        assert client.get("/api/orders/portfolio/ghost").status_code == 404


class TestAdminApi:
    """Tests for executor configuration and emergency controls."""

    def test_update_executor(self, client):
        response = client.put("/api/admin/executor", json={"slippage_percent": 0.25, "execution_delay_ms": 100})

        assert response.status_code == 200
        config = client.get("/api/admin/executor").json()["config"]
        assert config["slippage_percent"] == 0.25
        assert config["execution_delay_ms"] == 100

    def test_invalid_executor_update(self, client):
        response = client.put("/api/admin/executor", json={"mode": "SHADOW"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid execution mode: SHADOW. Must be PAPER or LIVE"

    def test_slippage_out_of_range(self, client):
        response = client.put("/api/admin/executor", json={"slippage_percent": 2})
        assert response.json()["detail"] == "Slippage must be between 0 and 1%"

    def test_emergency_stop(self, client):
        response = client.post("/api/admin/emergency-stop")

        assert response.json()["deactivated"] == ["strat-1"]
        assert client.post("/api/webhook/tradingview", json=signal()).status_code == 401

        logs = client.get("/api/audit/logs", params={"event_type": "risk_limit_hit"}).json()
        assert logs["total"] == 1
        assert logs["logs"][0]["metadata"] == {"deactivated": ["strat-1"]}

    def test_clear_signal_cache(self, client):
        client.post("/api/webhook/tradingview", json=signal())

        assert client.post("/api/admin/signal-cache/clear").json() == {"success": True, "cleared": 1}
        assert client.post("/api/webhook/tradingview", json=signal()).status_code == 200

    def test_errors_and_status(self, client):
        errors = client.get("/api/admin/errors").json()
        assert errors["stats"]["total_errors"] == 0

        status = client.get("/api/admin/status").json()
        assert status["started"] is True
        assert status["risk_manager"]["running"] is True


class TestAuditApi:
    """Tests for audit log queries."""

    def test_logs_filtered_by_strategy(self, client):
        client.post("/api/webhook/tradingview", json=signal())

        logs = client.get("/api/audit/logs", params={"strategy_id": "strat-1"}).json()
        assert [e["event_type"] for e in logs["logs"]] == ["SIGNAL_RECEIVED", "ORDER_EXECUTED"]

    def test_invalid_event_type(self, client):
        assert client.get("/api/audit/logs", params={"event_type": "bogus"}).status_code == 400

    def test_invalid_date(self, client):
        assert client.get("/api/audit/logs", params={"start_date": "yesterday"}).status_code == 400

    def test_stats(self, client):
        client.post("/api/webhook/tradingview", json=signal())
        assert client.get("/api/audit/stats").json()["by_type"]["ORDER_EXECUTED"] == 1


class TestPriceWebSocket:
    """Tests for the realtime price socket."""

    def test_subscribe_and_ping(self, client, container):
        container.price_feed.ingest({"symbol": "TCS", "ltp": 3500})

        with client.websocket_connect("/api/realtime/ws/prices") as ws:
            assert ws.receive_json()["type"] == "connected"

            ws.send_json({"action": "subscribe", "symbols": ["tcs"]})
            update = ws.receive_json()
            assert update["type"] == "price_update"
            assert update["data"]["symbol"] == "TCS"
            assert ws.receive_json() == {"type": "subscribed", "symbols": ["TCS"]}

            ws.send_json({"action": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_invalid_messages(self, client):
        with client.websocket_connect("/api/realtime/ws/prices") as ws:
            ws.receive_json()

            ws.send_text("{oops")
            assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}

            ws.send_json({"action": "dance"})
            assert ws.receive_json()["type"] == "error"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

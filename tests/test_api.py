from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from services.api.app import ConnectionManager, create_app, ws_feed
from services.api.config import AppConfig
from services.api.db import InMemoryTradeRepository
from services.api.flow_scanner import NullFlowSource, StaticFlowSource

TRADE = {
    "symbol": "btc", "venue": "poly", "market_id": "btc-100k", "side": "BUY",
    "market_probability": 0.5, "fair_probability": 0.6,
    "bankroll_usd": 100, "max_risk_pct": 8,
}


def make_client(source=None, **cfg):
    app = create_app(AppConfig(**cfg), repo=InMemoryTradeRepository(), source=source or NullFlowSource())
    return TestClient(app)


@pytest.fixture
def client():
    with make_client() as c:
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_trade_lifecycle(client):
    r = client.post("/trades", json=TRADE)
    assert r.status_code == 200
    trade = r.json()["trade"]
    assert trade["size"] == pytest.approx(8)
    assert trade["symbol"] == "BTC"

    r = client.post(f"/trades/{trade['id']}/close", json={"exit_probability": 1.0})
    assert r.status_code == 200
    assert r.json()["trade"]["pnl"] == pytest.approx(8)

    r = client.post(f"/trades/{trade['id']}/close", json={"exit_probability": 0.0})
    assert r.status_code == 409
    assert r.json()["error"] == "already_closed"

    assert client.get(f"/trades/{trade['id']}").json()["trade"]["pnl"] == pytest.approx(8)
    assert len(client.get("/trades").json()["trades"]) == 1


def test_nan_exit_is_rejected(client):
    trade = client.post("/trades", json=TRADE).json()["trade"]
    r = client.post(f"/trades/{trade['id']}/close", content='{"exit_probability": NaN}',
                    headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"
    stored = client.get(f"/trades/{trade['id']}").json()["trade"]
    assert stored["status"] == "open" and stored["pnl"] is None


def test_unknown_trade(client):
    r = client.post("/trades/missing/close", json={"exit_probability": 1.0})
    assert r.status_code == 404
    assert r.json() == {"ok": False, "error": "not_found", "detail": "trade missing not found"}
    assert client.get("/trades/missing").status_code == 404


def test_bad_trades_rejected(client):
    r = client.post("/trades", json={**TRADE, "max_risk_pct": 0})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_risk"

    r = client.post("/trades", json={**TRADE, "market_probability": 1.0})
    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"

    r = client.post("/trades", json={"symbol": "btc"})
    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"
    assert client.get("/trades").json()["trades"] == []


def test_default_risk_from_config():
    with make_client(ledger={"default_max_risk_pct": 2.0, "default_fee_bps": 10}) as c:
        body = {k: v for k, v in TRADE.items() if k != "max_risk_pct"}
        trade = c.post("/trades", json=body).json()["trade"]
        assert trade["size"] == pytest.approx(2)
        assert trade["fee_bps"] == pytest.approx(10)


def test_scan_and_dashboard(client):
    body = {
        "symbol": "btc", "fair_probability": 0.62, "min_edge_bps": 80,
        "quotes": [
            {"venue": "kalshi", "market_id": "k1", "probability_yes": 0.61, "fee_bps": 50},
            {"venue": "poly", "market_id": "p1", "probability_yes": 0.54, "fee_bps": 40},
            {"venue": "manifold", "market_id": "f1", "probability_yes": 0.60, "fee_bps": 50},
        ],
    }
    r = client.post("/scan/arbitrage", json=body)
    assert r.status_code == 200
    opps = r.json()["result"]["opportunities"]
    assert [o["venue"] for o in opps] == ["poly", "manifold"]

    t = client.post("/trades", json=TRADE).json()["trade"]
    client.post(f"/trades/{t['id']}/close", json={"exit_probability": 0.75})

    dash = client.get("/dashboard").json()
    assert dash["ok"] is True
    assert [o["venue"] for o in dash["opportunities"]] == ["poly", "manifold"]
    assert dash["summary"]["closed_trades"] == 1
    assert dash["summary"]["wins"] == 1
    assert len(dash["equity_curve"]) == 1
    assert dash["equity_curve"][0]["equity"] == pytest.approx(4)
    assert dash["signals"] == []


def test_scan_rejects_bad_inputs(client):
    r = client.post("/scan/arbitrage", json={"symbol": "btc", "fair_probability": 1.0, "quotes": []})
    assert r.status_code == 400
    r = client.post("/scan/arbitrage", json={
        "symbol": "btc", "fair_probability": 0.5,
        "quotes": [{"venue": "poly", "market_id": "p1", "probability_yes": 1.4}],
    })
    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"


def test_probability_endpoint(client):
    r = client.post("/scan/probability", json={
        "forward_price": 100, "strike": 100, "volatility": 0.2, "time_to_expiry_years": 1,
        "market_probability": 0.4,
    })
    res = r.json()["result"]
    assert res["fair_probability"] == pytest.approx(0.4602, abs=1e-4)
    assert res["recommendation"] == "positive_ev"


def test_empty_dashboard(client):
    dash = client.get("/dashboard").json()
    assert dash["summary"]["total_trades"] == 0
    assert dash["summary"]["win_rate"] == 0.0
    assert dash["opportunities"] == [] and dash["recent_trades"] == [] and dash["equity_curve"] == []


def test_signals_from_first_cycle(activity):
    batch = [activity(symbol="NVDA", option_type="CALL", premium=4_000_000),
             activity(symbol="NVDA", option_type="PUT", premium=500_000)]
    with make_client(source=StaticFlowSource([batch])) as c:
        # the scanner runs its first cycle as the app starts
        for _ in range(50):
            if c.get("/flow/stats").json()["cycles"] >= 1:
                break
        sigs = c.get("/signals").json()["signals"]
        assert [s["symbol"] for s in sigs] == ["NVDA"]
        assert c.get("/signals/nvda").json()["signal"]["direction"] == "BULLISH"
        assert c.get("/signals/aapl").json()["signal"] is None


def test_rate_limit():
    with make_client(rate_limit={"max_requests": 3, "window_ms": 60_000}) as c:
        codes = [c.get("/health").status_code for _ in range(4)]
        assert codes == [200, 200, 200, 429]
        body = c.get("/health").json()
        assert body["ok"] is False and body["error"] == "rate_limited"


def test_websocket_ping_pong(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("garbage")
        ws.send_json({"type": "ping", "timestamp": 1})
        msg = ws.receive_json()
        assert msg["type"] == "pong"


def test_websocket_receives_trade_events(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "ping", "timestamp": 1})
        assert ws.receive_json()["type"] == "pong"
        client.post("/trades", json=TRADE)
        msg = ws.receive_json()
        assert msg["type"] == "trade"
        assert msg["data"]["status"] == "open"


class BrokenSocket:
    """Accepts, then fails on the first read with something other than a disconnect."""

    def __init__(self, hub):
        self.app = SimpleNamespace(state=SimpleNamespace(engine=SimpleNamespace(hub=hub)))

    async def accept(self):
        pass

    async def receive_text(self):
        raise RuntimeError("socket torn down")


@pytest.mark.asyncio
async def test_websocket_error_releases_client():
    hub = ConnectionManager()
    ws = BrokenSocket(hub)
    with pytest.raises(RuntimeError):
        await ws_feed(ws)
    assert hub.active == []

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import redis.asyncio as redis

from libs.flowguard.arbitrage import evaluate_probability, run_scan
from libs.flowguard.errors import EngineError
from libs.flowguard.flow import FlowConfig
from libs.flowguard.models import (
    AlertEnvelope, AlertEvent, PongEnvelope, Quote, Signal, Trade, TradeEnvelope, TradeEvent, parse_envelope,
)
from services.api.config import AppConfig, configure_logging, load_config
from services.api.dashboard import DashboardAggregator, OpportunityBook
from services.api.db import TradeRepository, make_repository
from services.api.flow_scanner import FlowScanner, FlowSource, HttpFlowSource, NullFlowSource
from services.api.ledger import TradeLedger
from services.api.notify import notify
from services.api.ratelimit import RateLimiter
from services.market_data.runner import ENVELOPES_CHANNEL

log = logging.getLogger(__name__)

ERROR_STATUS = {
    "validation_error": 400,
    "invalid_risk": 400,
    "not_found": 404,
    "already_closed": 409,
    "rate_limited": 429,
}

def now_ms() -> int:
    return int(time.time() * 1000)

# ---------------- WS → UI ----------------
class ConnectionManager:
    def __init__(self): self.active: list[WebSocket] = []
    async def connect(self, ws: WebSocket): await ws.accept(); self.active.append(ws)
    def disconnect(self, ws: WebSocket):
        if ws in self.active: self.active.remove(ws)
    async def send(self, ws: WebSocket, message: str):
        try: await ws.send_text(message)
        except Exception as e:
            log.debug("[ws] send failed, dropping client: %s", e)
            self.disconnect(ws)
    async def broadcast(self, message: str):
        for ws in list(self.active):
            await self.send(ws, message)

# ---------------- Engine wiring ----------------
class Engine:
    """Everything one API process owns; built on startup, dropped on shutdown."""

    def __init__(self, cfg: AppConfig, repo: TradeRepository, source: FlowSource):
        self.cfg = cfg
        self.repo = repo
        self.hub = ConnectionManager()
        self.limiter = RateLimiter(cfg.rate_limit.max_requests, cfg.rate_limit.window_ms)
        self.ledger = TradeLedger(repo)
        self.book = OpportunityBook(cfg.dashboard.max_recent_opportunities)
        self.scanner = FlowScanner(
            source,
            period_s=cfg.flow.period_s,
            retention_cycles=cfg.flow.retention_cycles,
            cfg=FlowConfig(**cfg.flow.thresholds),
            repo=repo,
            on_signals=self.publish_signals,
            alert_confidence=cfg.flow.alert_confidence,
        )
        self.dashboard = DashboardAggregator(
            self.ledger, self.book, self.scanner,
            top_opportunities=cfg.dashboard.top_opportunities,
            recent_trades=cfg.dashboard.recent_trades,
        )
        self.tasks: List[asyncio.Task] = []
        self.redis: Optional[redis.Redis] = None

    async def publish_trade(self, t: Trade):
        env = TradeEnvelope(type="trade", timestamp=now_ms(), data=TradeEvent(
            id=t.id, symbol=t.symbol, side=t.side, status=t.status, size=t.size, pnl=t.pnl))
        await self.hub.broadcast(env.model_dump_json())

    async def publish_alert(self, title: str, message: str, level: str = "info"):
        env = AlertEnvelope(type="alert", timestamp=now_ms(),
                            data=AlertEvent(level=level, title=title, message=message))
        await self.hub.broadcast(env.model_dump_json())

    async def publish_signals(self, signals: List[Signal]):
        for s in signals:
            title = f"{s.direction} {s.symbol}"
            await self.publish_alert(title, s.rationale)
            await notify(f"Options flow signal: {title}", {
                "confidence": f"{s.confidence:.0%}",
                "premium": f"${s.total_premium/1000:.0f}k",
                "call_put_ratio": f"{s.call_put_ratio:.2f}",
            })

    async def relay_envelopes(self):
        """Forward envelopes published by the market-data runner to /ws clients."""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(ENVELOPES_CHANNEL)
        log.info("[relay] subscribed → %s", ENVELOPES_CHANNEL)
        async for msg in pubsub.listen():
            if not msg or msg["type"] != "message":
                continue
            await self.hub.broadcast(msg["data"])

    async def start(self):
        await self.repo.init()
        self.tasks.append(asyncio.create_task(self.scanner.run()))
        self.tasks.append(asyncio.create_task(self.limiter.sweep_loop()))
        if self.cfg.redis_url:
            self.redis = redis.from_url(self.cfg.redis_url, decode_responses=True)
            self.tasks.append(asyncio.create_task(self.relay_envelopes()))

    async def stop(self):
        self.scanner.stop()
        for t in self.tasks:
            t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()
        if self.redis is not None:
            await self.redis.aclose()
        await self.repo.dispose()


def engine_of(request: Request) -> Engine:
    return request.app.state.engine

# ---------------- Request bodies ----------------
class ScanReq(BaseModel):
    symbol: str
    fair_probability: float
    min_edge_bps: float = 50.0
    quotes: List[Quote]

class ProbabilityReq(BaseModel):
    forward_price: float
    strike: float
    volatility: float
    time_to_expiry_years: float
    market_probability: float = 0.0
    fee_bps: float = 0.0

class OpenTradeReq(BaseModel):
    symbol: str
    venue: str
    market_id: str
    side: str = "BUY"
    market_probability: float
    fair_probability: float
    bankroll_usd: float
    max_risk_pct: Optional[float] = None
    fee_bps: Optional[float] = Field(default=None, ge=0.0)
    notes: Optional[str] = None

class CloseTradeReq(BaseModel):
    exit_probability: float

# ---------------- Routes ----------------
router = APIRouter()

@router.get("/health")
async def health(request: Request):
    eng = engine_of(request)
    return {"status": "ok", "env": eng.cfg.env, "flow": eng.scanner.stats(), "rate_limit": eng.limiter.stats()}

@router.post("/scan/arbitrage")
async def scan_arbitrage(req: ScanReq, request: Request):
    eng = engine_of(request)
    result = run_scan(req.symbol, req.fair_probability, req.min_edge_bps, req.quotes)
    eng.book.record(result.opportunities)
    if result.opportunities:
        best = result.opportunities[0]
        await eng.publish_alert(f"{len(result.opportunities)} opportunities on {result.symbol}",
                                f"best {best.venue}/{best.market_id} edge={best.edge_bps:.0f}bps")
    return {"ok": True, "result": result.model_dump(mode="json")}

@router.post("/scan/probability")
async def scan_probability(req: ProbabilityReq):
    res = evaluate_probability(req.forward_price, req.strike, req.volatility, req.time_to_expiry_years,
                               req.market_probability, req.fee_bps)
    return {"ok": True, "result": res.model_dump()}

@router.get("/signals")
async def get_signals(request: Request):
    sigs = await engine_of(request).scanner.all_signals()
    return {"signals": [s.model_dump() for s in sigs]}

@router.get("/signals/{symbol}")
async def get_signal(symbol: str, request: Request):
    sig = await engine_of(request).scanner.signal_for_symbol(symbol)
    return {"symbol": symbol.upper(), "signal": sig.model_dump() if sig else None}

@router.get("/flow/stats")
async def flow_stats(request: Request):
    return engine_of(request).scanner.stats()

@router.post("/trades")
async def open_trade(req: OpenTradeReq, request: Request):
    eng = engine_of(request)
    led_cfg = eng.cfg.ledger
    trade = await eng.ledger.open(
        symbol=req.symbol, venue=req.venue, market_id=req.market_id, side=req.side,
        market_probability=req.market_probability, fair_probability=req.fair_probability,
        bankroll_usd=req.bankroll_usd,
        max_risk_pct=req.max_risk_pct if req.max_risk_pct is not None else led_cfg.default_max_risk_pct,
        fee_bps=req.fee_bps if req.fee_bps is not None else led_cfg.default_fee_bps,
        notes=req.notes,
    )
    await eng.publish_trade(trade)
    await notify("Paper trade opened", {"id": trade.id, "symbol": trade.symbol, "side": trade.side,
                                        "size": f"{trade.size:.2f}"}, level="success")
    return {"ok": True, "trade": trade.model_dump(mode="json")}

@router.post("/trades/{trade_id}/close")
async def close_trade(trade_id: str, req: CloseTradeReq, request: Request):
    eng = engine_of(request)
    trade = await eng.ledger.close(trade_id, req.exit_probability)
    await eng.publish_trade(trade)
    await notify("Paper trade closed", {"id": trade.id, "symbol": trade.symbol,
                                        "pnl": f"{trade.pnl:.2f}"}, level="success")
    return {"ok": True, "trade": trade.model_dump(mode="json")}

@router.get("/trades")
async def list_trades(request: Request, limit: int = Query(50, ge=1, le=500)):
    trades = await engine_of(request).ledger.recent(limit)
    return {"trades": [t.model_dump(mode="json") for t in trades]}

@router.get("/trades/{trade_id}")
async def get_trade(trade_id: str, request: Request):
    trade = await engine_of(request).ledger.get(trade_id)
    return {"trade": trade.model_dump(mode="json")}

@router.get("/dashboard")
async def get_dashboard(request: Request):
    data = await engine_of(request).dashboard.build()
    return {"ok": True, **data}

@router.websocket("/ws")
async def ws_feed(ws: WebSocket):
    hub = ws.app.state.engine.hub
    await hub.connect(ws)
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = parse_envelope(raw)
            except ValueError:
                log.warning("[ws] client sent malformed frame, ignored")
                continue
            if msg.type == "ping":
                await hub.send(ws, PongEnvelope(type="pong", timestamp=now_ms()).model_dump_json())
    except WebSocketDisconnect:
        log.debug("[ws] client disconnected")
    finally:
        hub.disconnect(ws)

# ---------------- App factory ----------------
def _error_response(code: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=ERROR_STATUS.get(code, 500),
                        content={"ok": False, "error": code, "detail": detail})

def create_app(cfg: Optional[AppConfig] = None, repo: Optional[TradeRepository] = None,
               source: Optional[FlowSource] = None) -> FastAPI:
    cfg = cfg or load_config()
    configure_logging(cfg.log_level)
    if source is None:
        source = HttpFlowSource(cfg.flow.source_url) if cfg.flow.source_url else NullFlowSource()
    engine = Engine(cfg, repo or make_repository(cfg.database_url), source)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        log.info("[api] engine started (env=%s)", cfg.env)
        try:
            yield
        finally:
            await engine.stop()
            log.info("[api] engine stopped")

    app = FastAPI(title="Flowguard API", lifespan=lifespan)
    app.state.engine = engine
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        ident = request.client.host if request.client else "unknown"
        if not engine.limiter.admit(ident):
            log.warning("[ratelimit] %s exceeded on %s", ident, request.url.path)
            return _error_response("rate_limited", "Too many requests, please try again later")
        return await call_next(request)

    @app.exception_handler(EngineError)
    async def engine_error(_request: Request, exc: EngineError):
        return _error_response(exc.code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def bad_request(_request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"ok": False, "error": "validation_error",
                                                      "detail": json.loads(json.dumps(exc.errors(), default=str))})

    app.include_router(router)
    return app

from __future__ import annotations
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class OptionsActivity(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    option_type: Literal["CALL", "PUT"]
    strike: float
    expiration: datetime
    volume: float = Field(ge=0.0)
    open_interest: float = Field(ge=0.0)
    premium: float = Field(ge=0.0)
    spot_price: float
    timestamp: datetime
    source: str = "synthetic"

    @property
    def volume_ratio(self) -> float:
        return self.volume / max(self.open_interest, 1.0)


class Signal(BaseModel):
    symbol: str
    direction: Literal["BULLISH", "BEARISH"]
    confidence: float = Field(ge=0.0, le=1.0)
    timeframe: str = "1-3 days"
    rationale: str
    total_premium: float
    call_put_ratio: float


class Quote(BaseModel):
    venue: str
    market_id: str
    probability_yes: float = Field(ge=0.0, le=1.0)
    fee_bps: float = Field(default=0.0, ge=0.0)
    liquidity_usd: float = Field(default=0.0, ge=0.0)


class Opportunity(BaseModel):
    id: str
    symbol: str
    venue: str
    market_id: str
    market_probability: float
    fair_probability: float
    edge_bps: float
    expected_roi_pct: float
    created_at: datetime


class CrossVenueArb(BaseModel):
    symbol: str
    buy_venue: str
    sell_venue: str
    buy_probability: float
    sell_probability: float
    spread_bps: float
    recommendation: str = "cross_venue_arb_candidate"


class ScanResult(BaseModel):
    symbol: str
    opportunities: List[Opportunity]
    cross_venue_arb: Optional[CrossVenueArb] = None
    total_quotes: int


class ProbabilityEvaluation(BaseModel):
    fair_probability: float
    d2: float
    edge: float
    edge_bps: float
    expected_roi_pct: float
    recommendation: Literal["positive_ev", "skip"]


class Trade(BaseModel):
    id: str
    symbol: str
    venue: str
    market_id: str
    side: Literal["BUY", "SELL"]
    status: Literal["open", "closed"] = "open"
    entry_probability: float
    fair_probability: float
    exit_probability: Optional[float] = None
    size: float
    bankroll_usd: float
    max_risk_pct: float
    fee_bps: float = 0.0
    pnl: Optional[float] = None
    notes: Optional[str] = None
    executed_at: datetime
    closed_at: Optional[datetime] = None


class EquityPoint(BaseModel):
    closed_at: datetime
    trade_id: str
    pnl: float
    equity: float


class DashboardSummary(BaseModel):
    total_trades: int = 0
    closed_trades: int = 0
    open_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    net_pnl: float = 0.0
    roi_pct: float = 0.0
    equity_curve: List[EquityPoint] = Field(default_factory=list)


# ---------- realtime channel ----------

class MarketData(BaseModel):
    symbol: str
    price: float
    volume: Optional[float] = None
    change_24h: Optional[float] = None


class TradeEvent(BaseModel):
    id: str
    symbol: str
    side: Literal["BUY", "SELL"]
    status: Literal["open", "closed"]
    size: float
    pnl: Optional[float] = None


class PositionUpdate(BaseModel):
    symbol: str
    size: float
    entry_price: float
    unrealized_pnl: float = 0.0


class AlertEvent(BaseModel):
    level: Literal["info", "warning", "error"] = "info"
    title: str
    message: str = ""


class RegimeUpdate(BaseModel):
    regime: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class MarketDataEnvelope(BaseModel):
    type: Literal["market_data"]
    data: MarketData
    timestamp: int


class TradeEnvelope(BaseModel):
    type: Literal["trade"]
    data: TradeEvent
    timestamp: int


class PositionEnvelope(BaseModel):
    type: Literal["position"]
    data: PositionUpdate
    timestamp: int


class AlertEnvelope(BaseModel):
    type: Literal["alert"]
    data: AlertEvent
    timestamp: int


class RegimeEnvelope(BaseModel):
    type: Literal["regime"]
    data: RegimeUpdate
    timestamp: int


class PingEnvelope(BaseModel):
    type: Literal["ping"]
    timestamp: int


class PongEnvelope(BaseModel):
    type: Literal["pong"]
    timestamp: Optional[int] = None


Envelope = Annotated[
    Union[
        MarketDataEnvelope, TradeEnvelope, PositionEnvelope, AlertEnvelope,
        RegimeEnvelope, PingEnvelope, PongEnvelope,
    ],
    Field(discriminator="type"),
]

ENVELOPE_ADAPTER: TypeAdapter = TypeAdapter(Envelope)


def parse_envelope(raw: Union[str, bytes]):
    """Parse a JSON frame into a typed envelope; raises pydantic.ValidationError."""
    return ENVELOPE_ADAPTER.validate_json(raw)

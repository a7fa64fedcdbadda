from __future__ import annotations
from datetime import datetime, timezone
from typing import Iterable, List, Optional
import math

from libs.flowguard.errors import ValidationError
from libs.flowguard.models import (
    CrossVenueArb, Opportunity, ProbabilityEvaluation, Quote, ScanResult,
)

def _clamp01(x: float) -> float:
    if not math.isfinite(x):
        return 0.0
    return max(0.0, min(1.0, x))

def normal_cdf(x: float) -> float:
    """Abramowitz-Stegun 7.1.26 approximation of the standard normal CDF."""
    a1, a2, a3, a4, a5 = 0.254829592, -0.284496736, 1.421413741, -1.453152027, 1.061405429
    p = 0.3275911
    sign = -1.0 if x < 0 else 1.0
    z = abs(x) / math.sqrt(2.0)
    t = 1.0 / (1.0 + p * z)
    erf = 1.0 - (((((a5 * t + a4) * t + a3) * t + a2) * t + a1) * t * math.exp(-z * z))
    return 0.5 * (1.0 + sign * erf)

def edge_bps(fair_probability: float, quote: Quote) -> float:
    """Fee-adjusted BUY-side edge; positive when the venue underprices "yes"."""
    return (fair_probability - quote.probability_yes) * 10_000.0 - quote.fee_bps

def opportunity_id(symbol: str, quote: Quote, scan_ts: datetime, index: int = 0) -> str:
    # quote position keeps duplicate venue/market pairs distinct
    return f"{symbol}:{quote.venue}:{quote.market_id}:{int(scan_ts.timestamp() * 1000)}:{index}"

def _check_fair(fair_probability: float) -> float:
    fp = float(fair_probability)
    if not math.isfinite(fp) or not (0.0 < fp < 1.0):
        raise ValidationError(f"fair_probability must be in (0,1), got {fair_probability}")
    return fp

def _check_min_edge(min_edge_bps: float) -> float:
    m = float(min_edge_bps)
    if not math.isfinite(m):
        raise ValidationError(f"min_edge_bps must be finite, got {min_edge_bps}")
    return m

def scan_arbitrage(symbol: str, fair_probability: float, min_edge_bps: float,
                   quotes: Iterable[Quote], now: Optional[datetime] = None) -> List[Opportunity]:
    """
    One Opportunity per quote whose edge clears `min_edge_bps`, best edge first.
    Nothing is cached: edges come from the quotes passed in on every call.
    """
    fp = _check_fair(fair_probability)
    min_edge = _check_min_edge(min_edge_bps)
    scan_ts = now or datetime.now(timezone.utc)
    sym = (symbol or "UNKNOWN").upper()

    out: List[Opportunity] = []
    for i, q in enumerate(quotes):
        e = edge_bps(fp, q)
        if e < min_edge:
            continue
        out.append(Opportunity(
            id=opportunity_id(sym, q, scan_ts, i),
            symbol=sym,
            venue=q.venue,
            market_id=q.market_id,
            market_probability=q.probability_yes,
            fair_probability=fp,
            edge_bps=e,
            expected_roi_pct=e / 100.0,
            created_at=scan_ts,
        ))
    out.sort(key=lambda o: o.edge_bps, reverse=True)
    return out

def find_cross_venue_arb(symbol: str, quotes: List[Quote], min_edge_bps: float) -> Optional[CrossVenueArb]:
    # buy the cheapest "yes", sell the richest
    min_edge = _check_min_edge(min_edge_bps)
    if len(quotes) < 2:
        return None
    ordered = sorted(quotes, key=lambda q: q.probability_yes)
    lo, hi = ordered[0], ordered[-1]
    spread = (hi.probability_yes - lo.probability_yes) * 10_000.0
    if spread < min_edge:
        return None
    return CrossVenueArb(
        symbol=(symbol or "UNKNOWN").upper(),
        buy_venue=lo.venue,
        sell_venue=hi.venue,
        buy_probability=lo.probability_yes,
        sell_probability=hi.probability_yes,
        spread_bps=spread,
    )

def run_scan(symbol: str, fair_probability: float, min_edge_bps: float,
             quotes: List[Quote], now: Optional[datetime] = None) -> ScanResult:
    opps = scan_arbitrage(symbol, fair_probability, min_edge_bps, quotes, now=now)
    return ScanResult(
        symbol=(symbol or "UNKNOWN").upper(),
        opportunities=opps,
        cross_venue_arb=find_cross_venue_arb(symbol, quotes, min_edge_bps),
        total_quotes=len(quotes),
    )

def evaluate_probability(forward_price: float, strike: float, volatility: float,
                         time_to_expiry_years: float, market_probability: float = 0.0,
                         fee_bps: float = 0.0) -> ProbabilityEvaluation:
    """Fair probability of a binary "finishes above strike" claim, N(d2)."""
    F = max(1e-9, float(forward_price))
    K = max(1e-9, float(strike))
    sigma = max(1e-9, float(volatility))
    T = max(1e-9, float(time_to_expiry_years))
    mkt = _clamp01(float(market_probability))
    fee = max(0.0, float(fee_bps))

    d2 = (math.log(F / K) - 0.5 * sigma * sigma * T) / (sigma * math.sqrt(T))
    fair = _clamp01(normal_cdf(d2))
    edge = fair - mkt
    roi = (edge - fee / 10_000.0) * 100.0
    return ProbabilityEvaluation(
        fair_probability=fair,
        d2=d2,
        edge=edge,
        edge_bps=edge * 10_000.0,
        expected_roi_pct=roi,
        recommendation="positive_ev" if roi > 0 else "skip",
    )

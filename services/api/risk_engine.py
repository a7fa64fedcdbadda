# services/api/risk_engine.py
from __future__ import annotations
from typing import Iterable, List
import math

from libs.flowguard.errors import InvalidRisk, ValidationError
from libs.flowguard.models import DashboardSummary, EquityPoint, Trade

def position_size(bankroll_usd: float, max_risk_pct: float) -> float:
    """
    Stake committed to a paper trade: a fixed share of the bankroll.
    Never exceeds bankroll * max_risk_pct / 100.
    """
    bankroll = float(bankroll_usd)
    risk = float(max_risk_pct)
    if not math.isfinite(bankroll) or bankroll <= 0:
        raise InvalidRisk(f"bankroll_usd must be > 0, got {bankroll_usd}")
    if not math.isfinite(risk) or risk <= 0 or risk > 100:
        raise InvalidRisk(f"max_risk_pct must be in (0,100], got {max_risk_pct}")
    return bankroll * (risk / 100.0)

def check_entry_probability(p: float) -> float:
    # entry is a divisor in the payout, so 0 and 1 are not tradable
    p = float(p)
    if not math.isfinite(p) or not (0.0 < p < 1.0):
        raise ValidationError(f"market_probability must be in (0,1), got {p}")
    return p

def check_exit_probability(p: float) -> float:
    """Resolved value of a claim: finite, clamped to [0,1]."""
    p = float(p)
    if not math.isfinite(p):
        raise ValidationError(f"exit_probability must be a finite number, got {p}")
    return max(0.0, min(1.0, p))

def binary_pnl(side: str, size: float, entry: float, exit_probability: float) -> float:
    """
    PnL of a binary claim priced in probability space.

    BUY  : `size` buys size/entry contracts paying 1 on "yes"
           → pnl = size * (exit - entry) / entry
    SELL : `size` is the premium at risk on the "no" leg
           → pnl = size * (entry - exit) / (1 - entry)

    `exit_probability` is clamped to [0,1]: 1 = resolved favourably for
    "yes", 0 = resolved against, anything between is a mark.
    """
    resolved = check_exit_probability(exit_probability)
    if side == "BUY":
        return size * (resolved - entry) / entry
    return size * (entry - resolved) / (1.0 - entry)

def summarize_trades(trades: Iterable[Trade]) -> DashboardSummary:
    trades = list(trades)
    closed = [t for t in trades if t.status == "closed"]
    open_n = sum(1 for t in trades if t.status == "open")

    wins = sum(1 for t in closed if (t.pnl or 0.0) > 0)
    losses = sum(1 for t in closed if (t.pnl or 0.0) < 0)
    net = sum((t.pnl or 0.0) for t in closed)
    staked = sum(t.size for t in closed)

    curve: List[EquityPoint] = []
    equity = 0.0
    for t in sorted(closed, key=lambda t: (t.closed_at, t.id)):
        equity += t.pnl or 0.0
        curve.append(EquityPoint(closed_at=t.closed_at, trade_id=t.id, pnl=t.pnl or 0.0, equity=equity))

    return DashboardSummary(
        total_trades=len(trades),
        closed_trades=len(closed),
        open_trades=open_n,
        wins=wins,
        losses=losses,
        win_rate=(wins / len(closed)) if closed else 0.0,
        net_pnl=net,
        roi_pct=(net / staked * 100.0) if staked > 0 else 0.0,
        equity_curve=curve,
    )

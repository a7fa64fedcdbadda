from __future__ import annotations
from typing import Dict, Iterable, List, Optional

from libs.flowguard.models import OptionsActivity, Signal

# --- config ---

class FlowConfig(dict):
    """
    Thresholds for flow classification and signal scoring.
    Overridable from the `flow` section of app.yaml.
    """
    DEFAULTS = {
        "unusual_volume_ratio": 5.0,      # volume / open interest
        "large_premium_usd": 100_000.0,
        "bullish_ratio": 3.0,             # call/put premium ratio
        "bearish_ratio": 0.33,
        "min_side_premium_usd": 500_000.0,
        "max_confidence": 0.9,
        "timeframe": "1-3 days",
    }

    def __init__(self, **kwargs):
        d = dict(self.DEFAULTS)
        d.update(kwargs or {})
        super().__init__(d)

# --- classification ---

def is_unusual(rec: OptionsActivity, cfg: Optional[FlowConfig] = None) -> bool:
    cfg = cfg or FlowConfig()
    if rec.volume_ratio >= float(cfg["unusual_volume_ratio"]):
        return True
    return rec.premium >= float(cfg["large_premium_usd"])

def filter_unusual(batch: Iterable[OptionsActivity], cfg: Optional[FlowConfig] = None) -> List[OptionsActivity]:
    cfg = cfg or FlowConfig()
    return [rec for rec in batch if is_unusual(rec, cfg)]

# --- scoring ---

def premium_split(records: Iterable[OptionsActivity]) -> Dict[str, float]:
    calls = puts = 0.0
    n_calls = n_puts = 0
    for rec in records:
        if rec.option_type == "CALL":
            calls += rec.premium
            n_calls += 1
        else:
            puts += rec.premium
            n_puts += 1
    return {"call_premium": calls, "put_premium": puts, "n_calls": n_calls, "n_puts": n_puts}

def compute_flow_signal(symbol: str, records: List[OptionsActivity],
                        cfg: Optional[FlowConfig] = None) -> Optional[Signal]:
    """
    Directional signal from the retained unusual flow of one symbol.

    ratio = call premium / put premium. No put premium means the ratio is
    undefined and the symbol is skipped, as is a symbol with no premium at all.
    """
    cfg = cfg or FlowConfig()
    split = premium_split(records)
    call_p, put_p = split["call_premium"], split["put_premium"]
    total = call_p + put_p
    if total == 0 or put_p == 0:
        return None

    ratio = call_p / put_p
    cap = float(cfg["max_confidence"])
    min_side = float(cfg["min_side_premium_usd"])

    if ratio > float(cfg["bullish_ratio"]) and call_p > min_side:
        return Signal(
            symbol=symbol,
            direction="BULLISH",
            confidence=min(cap, ratio / 10.0),
            timeframe=cfg["timeframe"],
            rationale=f"Heavy call buying: {split['n_calls']} calls, ${call_p/1000:.0f}k premium",
            total_premium=total,
            call_put_ratio=ratio,
        )
    if ratio < float(cfg["bearish_ratio"]) and put_p > min_side:
        conf = cap if ratio == 0 else min(cap, 1.0 / (ratio * 10.0))
        return Signal(
            symbol=symbol,
            direction="BEARISH",
            confidence=conf,
            timeframe=cfg["timeframe"],
            rationale=f"Heavy put buying: {split['n_puts']} puts, ${put_p/1000:.0f}k premium",
            total_premium=total,
            call_put_ratio=ratio,
        )
    return None

def compute_flow_signals(history: Dict[str, List[OptionsActivity]],
                         cfg: Optional[FlowConfig] = None) -> List[Signal]:
    cfg = cfg or FlowConfig()
    out: List[Signal] = []
    for symbol, records in history.items():
        sig = compute_flow_signal(symbol, records, cfg)
        if sig is not None:
            out.append(sig)
    out.sort(key=lambda s: s.confidence, reverse=True)
    return out

# services/api/dashboard.py
from __future__ import annotations
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

from libs.flowguard.models import Opportunity
from services.api.flow_scanner import FlowScanner
from services.api.ledger import TradeLedger


class OpportunityBook:
    """Last opportunities returned by scan requests, newest first, bounded."""

    def __init__(self, maxlen: int = 200):
        self._items: Deque[Opportunity] = deque(maxlen=maxlen)

    def record(self, opps: Iterable[Opportunity]):
        # keep the scan's ranking: best edge ends up first
        for o in reversed(list(opps)):
            self._items.appendleft(o)

    def top(self, n: int) -> List[Opportunity]:
        return list(self._items)[:max(0, int(n))]

    def __len__(self) -> int:
        return len(self._items)


class DashboardAggregator:
    """Read-only fan-in of ledger summary, recent opportunities and flow signals."""

    def __init__(self, ledger: TradeLedger, book: OpportunityBook,
                 scanner: Optional[FlowScanner] = None,
                 top_opportunities: int = 20, recent_trades: int = 12):
        self.ledger = ledger
        self.book = book
        self.scanner = scanner
        self.top_opportunities = top_opportunities
        self.recent_trades = recent_trades

    async def build(self) -> Dict[str, Any]:
        summary = await self.ledger.summarize()
        recent = await self.ledger.recent(self.recent_trades)
        signals = await self.scanner.all_signals() if self.scanner is not None else []
        curve = summary.equity_curve
        return {
            "summary": summary.model_dump(mode="json", exclude={"equity_curve"}),
            "equity_curve": [p.model_dump(mode="json") for p in curve],
            "opportunities": [o.model_dump(mode="json") for o in self.book.top(self.top_opportunities)],
            "recent_trades": [t.model_dump(mode="json") for t in recent],
            "signals": [s.model_dump(mode="json") for s in signals],
        }

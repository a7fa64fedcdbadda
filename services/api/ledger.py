# services/api/ledger.py
from __future__ import annotations
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from libs.flowguard.errors import AlreadyClosed, NotFound, ValidationError
from libs.flowguard.models import DashboardSummary, Trade
from services.api.db import TradeRepository
from services.api.risk_engine import (
    binary_pnl, check_entry_probability, check_exit_probability, position_size, summarize_trades,
)

log = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TradeLedger:
    """
    Paper-trade lifecycle: open → closed, exactly once.

    Each trade id gets its own asyncio.Lock for the state transition, held
    in the map only while some caller is using it. The repository's close
    is a check-and-set on status as well, so a second closer (same process
    or not) always sees AlreadyClosed.
    """

    def __init__(self, repo: TradeRepository, clock: Callable[[], datetime] = utc_now):
        self.repo = repo
        self.clock = clock
        # trade id -> (lock, number of callers holding or waiting on it)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _exclusive(self, trade_id: str):
        lk, users = self._locks.get(trade_id, (None, 0))
        if lk is None:
            lk = asyncio.Lock()
        self._locks[trade_id] = (lk, users + 1)
        try:
            async with lk:
                yield
        finally:
            lk, users = self._locks[trade_id]
            if users <= 1:
                del self._locks[trade_id]
            else:
                self._locks[trade_id] = (lk, users - 1)

    async def open(self, symbol: str, venue: str, market_id: str, side: str,
                   market_probability: float, fair_probability: float,
                   bankroll_usd: float, max_risk_pct: float, fee_bps: float = 0.0,
                   notes: Optional[str] = None) -> Trade:
        side = (side or "BUY").upper()
        if side not in ("BUY", "SELL"):
            raise ValidationError("side must be BUY or SELL")
        size = position_size(bankroll_usd, max_risk_pct)
        entry = check_entry_probability(market_probability)
        fair = float(fair_probability)
        if not (0.0 <= fair <= 1.0):
            raise ValidationError(f"fair_probability must be in [0,1], got {fair_probability}")
        if float(fee_bps) < 0:
            raise ValidationError("fee_bps must be >= 0")

        trade = Trade(
            id=uuid.uuid4().hex,
            symbol=(symbol or "UNKNOWN").upper(),
            venue=str(venue or "unknown"),
            market_id=str(market_id),
            side=side,
            status="open",
            entry_probability=entry,
            fair_probability=fair,
            size=size,
            bankroll_usd=float(bankroll_usd),
            max_risk_pct=float(max_risk_pct),
            fee_bps=float(fee_bps),
            notes=notes,
            executed_at=self.clock(),
        )
        await self.repo.create_trade(trade)
        log.info("[ledger] opened %s %s %s size=%.2f entry=%.4f",
                 trade.id, trade.side, trade.symbol, trade.size, trade.entry_probability)
        return trade

    async def close(self, trade_id: str, exit_probability: float) -> Trade:
        exit_p = check_exit_probability(exit_probability)
        async with self._exclusive(trade_id):
            cur = await self.repo.get_trade(trade_id)
            if cur is None:
                raise NotFound(f"trade {trade_id} not found")
            if cur.status != "open":
                raise AlreadyClosed(f"trade {trade_id} is already {cur.status}")

            pnl = binary_pnl(cur.side, cur.size, cur.entry_probability, exit_p)
            closed = await self.repo.close_trade(trade_id, exit_p, pnl, self.clock())
            if closed is None:
                # lost the race against another writer on the same store
                raise AlreadyClosed(f"trade {trade_id} is already closed")

        log.info("[ledger] closed %s exit=%.4f pnl=%.4f", trade_id, exit_p, pnl)
        return closed

    async def get(self, trade_id: str) -> Trade:
        t = await self.repo.get_trade(trade_id)
        if t is None:
            raise NotFound(f"trade {trade_id} not found")
        return t

    async def recent(self, limit: int = 12) -> List[Trade]:
        trades = await self.repo.list_trades()
        trades.sort(key=lambda t: t.executed_at, reverse=True)
        return trades[:max(0, int(limit))]

    async def summarize(self) -> DashboardSummary:
        return summarize_trades(await self.repo.list_trades())

from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from libs.flowguard.models import OptionsActivity, Trade


class TradeRepository(ABC):
    """Storage for paper trades and retained unusual flow."""

    async def init(self) -> None:
        return None

    async def dispose(self) -> None:
        return None

    # ---------- TRADES ----------
    @abstractmethod
    async def create_trade(self, trade: Trade) -> Trade: ...

    @abstractmethod
    async def get_trade(self, trade_id: str) -> Optional[Trade]: ...

    @abstractmethod
    async def list_trades(self) -> List[Trade]: ...

    @abstractmethod
    async def close_trade(self, trade_id: str, exit_probability: float, pnl: float,
                          closed_at: datetime) -> Optional[Trade]:
        """Check-and-set open→closed. Returns None when the trade was not open."""

    # ---------- FLOW HISTORY ----------
    @abstractmethod
    async def append_activity(self, records: List[OptionsActivity]) -> int: ...

    @abstractmethod
    async def list_activity(self, symbol: Optional[str] = None) -> List[OptionsActivity]: ...


class InMemoryTradeRepository(TradeRepository):
    def __init__(self):
        self._trades: Dict[str, Trade] = {}
        self._activity: List[OptionsActivity] = []

    async def create_trade(self, trade: Trade) -> Trade:
        if trade.id in self._trades:
            raise KeyError(f"duplicate trade id {trade.id}")
        self._trades[trade.id] = trade
        return trade

    async def get_trade(self, trade_id: str) -> Optional[Trade]:
        return self._trades.get(trade_id)

    async def list_trades(self) -> List[Trade]:
        return list(self._trades.values())

    async def close_trade(self, trade_id, exit_probability, pnl, closed_at):
        cur = self._trades.get(trade_id)
        if cur is None or cur.status != "open":
            return None
        new = cur.model_copy(update={
            "status": "closed",
            "exit_probability": exit_probability,
            "pnl": pnl,
            "closed_at": closed_at,
        })
        self._trades[trade_id] = new
        return new

    async def append_activity(self, records):
        self._activity.extend(records)
        return len(records)

    async def list_activity(self, symbol=None):
        if symbol is None:
            return list(self._activity)
        return [r for r in self._activity if r.symbol == symbol]


_TRADE_COLS = """id, symbol, venue, market_id, side, status, entry_probability, fair_probability,
                 exit_probability, size, bankroll_usd, max_risk_pct, fee_bps, pnl, notes,
                 executed_at, closed_at"""


def _row_to_trade(row) -> Trade:
    m = dict(row._mapping)
    # NUMERIC -> float for clean JSON
    for k in ("entry_probability", "fair_probability", "size", "bankroll_usd", "max_risk_pct", "fee_bps"):
        m[k] = float(m[k])
    for k in ("exit_probability", "pnl"):
        m[k] = float(m[k]) if m[k] is not None else None
    return Trade(**m)


class SqlTradeRepository(TradeRepository):
    """SQLAlchemy async engine + raw SQL. Postgres (asyncpg) in production."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self._engine: AsyncEngine = create_async_engine(dsn, echo=False, pool_pre_ping=True)
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False, class_=AsyncSession)

    def session(self) -> AsyncSession:
        return self._sessionmaker()

    async def init(self) -> None:
        async with self.session() as s:
            await s.execute(text("""
                CREATE TABLE IF NOT EXISTS paper_trades (
                  id TEXT PRIMARY KEY,
                  symbol TEXT NOT NULL,
                  venue TEXT NOT NULL,
                  market_id TEXT NOT NULL,
                  side TEXT NOT NULL,
                  status TEXT NOT NULL,
                  entry_probability NUMERIC NOT NULL,
                  fair_probability NUMERIC NOT NULL,
                  exit_probability NUMERIC,
                  size NUMERIC NOT NULL,
                  bankroll_usd NUMERIC NOT NULL,
                  max_risk_pct NUMERIC NOT NULL,
                  fee_bps NUMERIC NOT NULL,
                  pnl NUMERIC,
                  notes TEXT,
                  executed_at TIMESTAMPTZ NOT NULL,
                  closed_at TIMESTAMPTZ
                )
            """))
            # index in a separate call
            await s.execute(text("CREATE INDEX IF NOT EXISTS idx_paper_trades_closed ON paper_trades(closed_at)"))
            await s.execute(text("""
                CREATE TABLE IF NOT EXISTS flow_activity (
                  id BIGSERIAL PRIMARY KEY,
                  symbol TEXT NOT NULL,
                  option_type TEXT NOT NULL,
                  strike NUMERIC NOT NULL,
                  expiration TIMESTAMPTZ NOT NULL,
                  volume NUMERIC NOT NULL,
                  open_interest NUMERIC NOT NULL,
                  premium NUMERIC NOT NULL,
                  spot_price NUMERIC NOT NULL,
                  ts TIMESTAMPTZ NOT NULL,
                  source TEXT NOT NULL
                )
            """))
            await s.execute(text("CREATE INDEX IF NOT EXISTS idx_flow_activity_symbol ON flow_activity(symbol)"))
            await s.commit()

    async def dispose(self) -> None:
        await self._engine.dispose()

    async def create_trade(self, trade: Trade) -> Trade:
        q = text(f"""
            INSERT INTO paper_trades ({_TRADE_COLS})
            VALUES (:id, :symbol, :venue, :market_id, :side, :status, :entry_probability, :fair_probability,
                    :exit_probability, :size, :bankroll_usd, :max_risk_pct, :fee_bps, :pnl, :notes,
                    :executed_at, :closed_at)
        """)
        async with self.session() as s:
            await s.execute(q, trade.model_dump())
            await s.commit()
        return trade

    async def get_trade(self, trade_id: str) -> Optional[Trade]:
        q = text(f"SELECT {_TRADE_COLS} FROM paper_trades WHERE id=:id")
        async with self.session() as s:
            res = await s.execute(q, {"id": trade_id})
            row = res.fetchone()
        return _row_to_trade(row) if row else None

    async def list_trades(self) -> List[Trade]:
        q = text(f"SELECT {_TRADE_COLS} FROM paper_trades ORDER BY executed_at ASC")
        async with self.session() as s:
            res = await s.execute(q)
            return [_row_to_trade(r) for r in res.fetchall()]

    async def close_trade(self, trade_id, exit_probability, pnl, closed_at):
        # status in the WHERE clause: only one concurrent UPDATE can win
        q = text("""
            UPDATE paper_trades
            SET status='closed', exit_probability=:exit, pnl=:pnl, closed_at=:closed_at
            WHERE id=:id AND status='open'
        """)
        async with self.session() as s:
            res = await s.execute(q, {"id": trade_id, "exit": exit_probability, "pnl": pnl, "closed_at": closed_at})
            await s.commit()
            if res.rowcount != 1:
                return None
        return await self.get_trade(trade_id)

    async def append_activity(self, records):
        if not records:
            return 0
        q = text("""
            INSERT INTO flow_activity (symbol, option_type, strike, expiration, volume, open_interest,
                                       premium, spot_price, ts, source)
            VALUES (:symbol, :option_type, :strike, :expiration, :volume, :open_interest,
                    :premium, :spot_price, :timestamp, :source)
        """)
        async with self.session() as s:
            await s.execute(q, [r.model_dump() for r in records])
            await s.commit()
        return len(records)

    async def list_activity(self, symbol=None):
        sql = """SELECT symbol, option_type, strike, expiration, volume, open_interest, premium,
                        spot_price, ts AS timestamp, source
                 FROM flow_activity"""
        params = {}
        if symbol is not None:
            sql += " WHERE symbol=:s"
            params["s"] = symbol
        sql += " ORDER BY ts ASC"
        async with self.session() as s:
            res = await s.execute(text(sql), params)
            out = []
            for r in res.fetchall():
                m = dict(r._mapping)
                for k in ("strike", "volume", "open_interest", "premium", "spot_price"):
                    m[k] = float(m[k])
                out.append(OptionsActivity(**m))
            return out


def make_repository(database_url: Optional[str]) -> TradeRepository:
    if database_url:
        return SqlTradeRepository(database_url)
    return InMemoryTradeRepository()

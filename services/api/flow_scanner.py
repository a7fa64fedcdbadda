# services/api/flow_scanner.py
from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import httpx
from pydantic import TypeAdapter

from libs.flowguard.errors import TransientFeedError
from libs.flowguard.flow import FlowConfig, compute_flow_signal, compute_flow_signals, filter_unusual
from libs.flowguard.models import OptionsActivity, Signal
from services.api.db import TradeRepository

log = logging.getLogger(__name__)

_BATCH = TypeAdapter(List[OptionsActivity])


# ---------- sources ----------
class FlowSource(ABC):
    @abstractmethod
    async def fetch(self) -> List[OptionsActivity]: ...


class NullFlowSource(FlowSource):
    """No feed configured: every cycle sees an empty batch."""

    async def fetch(self) -> List[OptionsActivity]:
        return []


class StaticFlowSource(FlowSource):
    """Hands out pre-loaded batches one per cycle, then empty batches."""

    def __init__(self, batches: Optional[List[List[OptionsActivity]]] = None):
        self._batches: Deque[List[OptionsActivity]] = deque(batches or [])

    def push(self, batch: List[OptionsActivity]):
        self._batches.append(list(batch))

    async def fetch(self) -> List[OptionsActivity]:
        return self._batches.popleft() if self._batches else []


class HttpFlowSource(FlowSource):
    """GET a JSON array of OptionsActivity (or {"records": [...]}) from a synthetic feed."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def fetch(self) -> List[OptionsActivity]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as cli:
                r = await cli.get(self.url)
                r.raise_for_status()
                payload = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientFeedError(f"flow fetch {self.url}: {e}") from e
        if isinstance(payload, dict):
            payload = payload.get("records") or []
        return _BATCH.validate_python(payload)


# ---------- scanner ----------
class FlowScanner:
    """
    Periodic unusual-options scan.

    Unusual records are retained per symbol and tagged with the cycle that
    ingested them; records older than `retention_cycles` cycles are evicted
    (None keeps everything). Signals are recomputed from the retained
    history on every read.
    """

    def __init__(self, source: FlowSource, period_s: float = 300.0,
                 retention_cycles: Optional[int] = 12, cfg: Optional[FlowConfig] = None,
                 repo: Optional[TradeRepository] = None,
                 on_signals: Optional[Callable[[List[Signal]], Awaitable[None]]] = None,
                 alert_confidence: float = 0.7):
        self.source = source
        self.period_s = float(period_s)
        self.retention_cycles = retention_cycles
        self.cfg = cfg or FlowConfig()
        self.repo = repo
        self.on_signals = on_signals
        self.alert_confidence = float(alert_confidence)

        self._history: Dict[str, List[Tuple[int, OptionsActivity]]] = {}
        self._lock = asyncio.Lock()
        self._cycle = 0
        self._stop = asyncio.Event()
        self._running = False
        self.last_scan_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    async def scan_once(self) -> List[Signal]:
        """
        One cycle. A failed fetch or a bad batch is logged and yields no
        signals; repository failures propagate.
        """
        try:
            batch = await self.source.fetch()
            unusual = filter_unusual(batch, self.cfg)
        except Exception as e:
            self.last_error = str(e)
            log.warning("[flow] scan failed: %s", e)
            return []
        if unusual and self.repo is not None:
            await self.repo.append_activity(unusual)

        async with self._lock:
            self._cycle += 1
            for rec in unusual:
                self._history.setdefault(rec.symbol, []).append((self._cycle, rec))
            self._evict()
            signals = compute_flow_signals(self._snapshot(), self.cfg)

        self.last_scan_at = datetime.now(timezone.utc)
        self.last_error = None
        log.info("[flow] cycle %d: %d records, %d unusual, %d signals",
                 self._cycle, len(batch), len(unusual), len(signals))

        strong = [s for s in signals if s.confidence >= self.alert_confidence]
        for s in strong:
            log.info("[flow] SIGNAL %s %s conf=%.0f%% premium=$%.0fk",
                     s.direction, s.symbol, s.confidence * 100, s.total_premium / 1000)
        if strong and self.on_signals is not None:
            try:
                await self.on_signals(strong)
            except Exception as e:
                log.warning("[flow] signal hook failed: %s", e)
        return signals

    def _evict(self):
        if self.retention_cycles is None:
            return
        oldest = self._cycle - int(self.retention_cycles)
        for sym in list(self._history.keys()):
            kept = [(c, r) for (c, r) in self._history[sym] if c > oldest]
            if kept:
                self._history[sym] = kept
            else:
                del self._history[sym]

    def _snapshot(self) -> Dict[str, List[OptionsActivity]]:
        return {sym: [r for (_, r) in recs] for sym, recs in self._history.items()}

    async def all_signals(self) -> List[Signal]:
        async with self._lock:
            snap = self._snapshot()
        return compute_flow_signals(snap, self.cfg)

    async def signal_for_symbol(self, symbol: str) -> Optional[Signal]:
        sym = symbol.upper()
        async with self._lock:
            recs = [r for (_, r) in self._history.get(sym, [])]
        return compute_flow_signal(sym, recs, self.cfg)

    async def run(self):
        """Scan now, then every `period_s` until stop()."""
        self._running = True
        self._stop.clear()
        log.info("[flow] scanner started (every %.0fs)", self.period_s)
        try:
            while not self._stop.is_set():
                await self.scan_once()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.period_s)
                except asyncio.TimeoutError:
                    pass
        except Exception:
            log.exception("[flow] scanner loop died")
            raise
        finally:
            self._running = False
            log.info("[flow] scanner stopped")

    def stop(self):
        self._stop.set()

    def stats(self) -> dict:
        return {
            "tracked_symbols": len(self._history),
            "total_flow": sum(len(v) for v in self._history.values()),
            "is_running": self._running,
            "cycles": self._cycle,
            "last_scan_at": self.last_scan_at.isoformat() if self.last_scan_at else None,
            "last_error": self.last_error,
        }

# services/api/ratelimit.py
from __future__ import annotations
import asyncio
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from libs.flowguard.errors import RateLimitExceeded

log = logging.getLogger(__name__)


def now_ms() -> float:
    return time.monotonic() * 1000.0


class RateLimiter:
    """
    Sliding-window admission per caller identity.

    A caller may pass its own window; each identity keeps hits for the
    longest window it has been checked against, and sweeps honour it.

    prune → check → record runs under one lock so two concurrent requests
    cannot both see the last free slot. Rejected attempts are not recorded.
    """

    def __init__(self, max_requests: int = 100, window_ms: int = 60_000,
                 clock: Callable[[], float] = now_ms):
        self.max_requests = int(max_requests)
        self.window_ms = int(window_ms)
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._retention: Dict[str, int] = {}
        self._lock = threading.Lock()

    def admit(self, identifier: str, max_requests: Optional[int] = None,
              window_ms: Optional[int] = None) -> bool:
        limit = self.max_requests if max_requests is None else int(max_requests)
        window = self.window_ms if window_ms is None else int(window_ms)
        with self._lock:
            now = self.clock()
            hits = self._hits.get(identifier)
            if hits is None:
                hits = self._hits[identifier] = deque()
            keep = max(window, self._retention.get(identifier, 0))
            self._retention[identifier] = keep
            self._prune(hits, now - keep)
            cutoff = now - window
            in_window = 0
            for t in reversed(hits):
                if t <= cutoff:
                    break
                in_window += 1
            if in_window >= limit:
                return False
            hits.append(now)
            return True

    def check(self, identifier: str, max_requests: Optional[int] = None,
              window_ms: Optional[int] = None) -> None:
        if not self.admit(identifier, max_requests, window_ms):
            raise RateLimitExceeded(identifier,
                                    self.max_requests if max_requests is None else int(max_requests),
                                    self.window_ms if window_ms is None else int(window_ms))

    @staticmethod
    def _prune(hits: Deque[float], cutoff: float):
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def sweep(self) -> int:
        """Drop identifiers with no request inside their window. Returns how many were dropped."""
        removed = 0
        with self._lock:
            now = self.clock()
            for ident in list(self._hits.keys()):
                hits = self._hits[ident]
                self._prune(hits, now - self._retention.get(ident, self.window_ms))
                if not hits:
                    del self._hits[ident]
                    self._retention.pop(ident, None)
                    removed += 1
        return removed

    async def sweep_loop(self):
        while True:
            await asyncio.sleep(self.window_ms / 1000.0)
            n = self.sweep()
            if n:
                log.debug("[ratelimit] swept %d idle identifiers", n)

    def stats(self) -> dict:
        with self._lock:
            return {
                "tracked_identifiers": len(self._hits),
                "max_requests": self.max_requests,
                "window_ms": self.window_ms,
            }

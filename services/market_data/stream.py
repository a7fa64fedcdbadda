# services/market_data/stream.py
from __future__ import annotations
import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from pydantic import BaseModel, ValidationError

from libs.flowguard.errors import ConnectionExhausted
from libs.flowguard.models import PingEnvelope, PongEnvelope, parse_envelope

log = logging.getLogger(__name__)

CLEAN_CLOSE = 1000
ABNORMAL_CLOSE = 1006
PROBE_TIMEOUT_CLOSE = 4000


def now_ms() -> int:
    return int(time.time() * 1000)


def backoff_delay_ms(attempt: int, base_ms: int = 1000, max_ms: int = 30_000) -> int:
    return int(min((2 ** attempt) * base_ms, max_ms))


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    RETRYING = "retrying"
    FAILED = "failed"


class StreamClient:
    """
    One live duplex connection to the realtime feed.

    DISCONNECTED → CONNECTING → CONNECTED → (CLOSING | RETRYING) → DISCONNECTED,
    FAILED once `max_attempts` consecutive abnormal closures have happened.

    A ping goes out as soon as the socket is up; the matching pong resets
    the attempt counter, a missing pong closes the socket with 4000. A clean
    close (1000) never reconnects. `connect` and `sleep` are injectable so
    the backoff schedule runs without wall-clock waits in tests.
    """

    def __init__(self, url: str,
                 on_envelope: Optional[Callable[[Any], Awaitable[None]]] = None,
                 on_fatal: Optional[Callable[[ConnectionExhausted], Awaitable[None]]] = None,
                 connect: Callable[..., Any] = websockets.connect,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 max_attempts: int = 5, pong_timeout: float = 10.0,
                 base_delay_ms: int = 1000, max_delay_ms: int = 30_000,
                 clock: Callable[[], int] = now_ms):
        self.url = url
        self.on_envelope = on_envelope
        self.on_fatal = on_fatal
        self.connect = connect
        self.sleep = sleep
        self.max_attempts = int(max_attempts)
        self.pong_timeout = float(pong_timeout)
        self.base_delay_ms = int(base_delay_ms)
        self.max_delay_ms = int(max_delay_ms)
        self.clock = clock

        self.state = StreamState.DISCONNECTED
        self.attempt = 0
        self.error: Optional[ConnectionExhausted] = None
        self.scheduled_delays: List[int] = []
        self.metrics: Dict[str, int] = {"connects": 0, "reconnects": 0, "dropped_frames": 0}

        self._ws = None
        self._closing = False
        self._forced_code: Optional[int] = None
        self._pong = asyncio.Event()

    # ---------- state transitions ----------
    def on_closed(self, code: Optional[int]) -> Optional[int]:
        """Apply a closure; returns the reconnect delay in ms, or None when terminal."""
        self._ws = None
        if self._closing or code == CLEAN_CLOSE:
            self.state = StreamState.DISCONNECTED
            log.info("[ws] closed cleanly (%s)", self.url)
            return None

        self.attempt += 1
        if self.attempt >= self.max_attempts:
            self.state = StreamState.FAILED
            self.error = ConnectionExhausted(self.url, self.attempt)
            log.error("[ws] %s", self.error)
            return None

        delay = backoff_delay_ms(self.attempt, self.base_delay_ms, self.max_delay_ms)
        self.state = StreamState.RETRYING
        self.scheduled_delays.append(delay)
        log.warning("[ws] abnormal close code=%s, retry %d/%d in %dms",
                    code, self.attempt, self.max_attempts, delay)
        return delay

    # ---------- main loop ----------
    async def run(self) -> StreamState:
        self._closing = False
        while True:
            self.state = StreamState.CONNECTING
            code = await self._session()
            delay = self.on_closed(code)
            if delay is None:
                break
            self.metrics["reconnects"] += 1
            await self.sleep(delay / 1000.0)
            if self._closing:
                self.state = StreamState.DISCONNECTED
                break

        if self.state == StreamState.FAILED and self.on_fatal is not None:
            await self.on_fatal(self.error)
        return self.state

    async def _session(self) -> int:
        self._forced_code = None
        try:
            async with self.connect(self.url) as ws:
                self._ws = ws
                self.state = StreamState.CONNECTED
                self.metrics["connects"] += 1
                log.info("[ws] connected %s", self.url)
                self._pong.clear()
                await self.send(PingEnvelope(type="ping", timestamp=self.clock()))
                watchdog = asyncio.create_task(self._watch_pong(ws))
                try:
                    async for raw in ws:
                        await self._handle_frame(raw)
                finally:
                    watchdog.cancel()
                code = self._forced_code or getattr(ws, "close_code", None)
        except websockets.ConnectionClosed as e:
            code = self._forced_code or getattr(e.rcvd, "code", None)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            log.warning("[ws] connect error %s: %s", self.url, e)
            code = ABNORMAL_CLOSE
        if self._closing:
            return CLEAN_CLOSE
        return code if code is not None else ABNORMAL_CLOSE

    async def _watch_pong(self, ws):
        try:
            await asyncio.wait_for(self._pong.wait(), timeout=self.pong_timeout)
        except asyncio.TimeoutError:
            log.warning("[ws] no pong within %.1fs, dropping connection", self.pong_timeout)
            self._forced_code = PROBE_TIMEOUT_CLOSE
            await ws.close(code=PROBE_TIMEOUT_CLOSE, reason="pong timeout")

    async def _handle_frame(self, raw):
        try:
            env = parse_envelope(raw)
        except ValidationError as e:
            self.metrics["dropped_frames"] += 1
            log.warning("[ws] dropped malformed frame: %s", e.errors()[0].get("msg") if e.errors() else e)
            return
        if isinstance(env, PongEnvelope):
            self.attempt = 0
            self._pong.set()
            return
        if isinstance(env, PingEnvelope):
            await self.send(PongEnvelope(type="pong", timestamp=self.clock()))
            return
        if self.on_envelope is not None:
            try:
                await self.on_envelope(env)
            except Exception as e:
                log.warning("[ws] envelope handler failed on %s: %s", env.type, e)

    # ---------- outbound ----------
    async def send(self, message) -> bool:
        """False (and nothing sent) unless connected."""
        ws = self._ws
        if self.state != StreamState.CONNECTED or ws is None:
            return False
        if isinstance(message, BaseModel):
            payload = message.model_dump_json(exclude_none=True)
        elif isinstance(message, (str, bytes)):
            payload = message
        else:
            payload = json.dumps(message)
        try:
            await ws.send(payload)
        except websockets.ConnectionClosed:
            return False
        return True

    async def close(self):
        self._closing = True
        ws = self._ws
        if ws is not None:
            self.state = StreamState.CLOSING
            await ws.close(code=CLEAN_CLOSE)

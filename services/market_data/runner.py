import asyncio
import logging
from typing import Optional

import redis.asyncio as redis

from libs.flowguard.errors import ConnectionExhausted
from libs.flowguard.models import MarketDataEnvelope
from services.api.config import AppConfig, configure_logging, load_config
from services.api.notify import notify
from services.market_data.stream import StreamClient

log = logging.getLogger(__name__)

ENVELOPES_CHANNEL = "envelopes"
LAST_TICKS_KEY = "last_ticks"


class EnvelopeRelay:
    """Republishes every feed envelope on Redis; market data also lands in the `last_ticks` hash."""

    def __init__(self, r: redis.Redis, channel: str = ENVELOPES_CHANNEL):
        self.r = r
        self.channel = channel

    async def __call__(self, env):
        raw = env.model_dump_json()
        if isinstance(env, MarketDataEnvelope):
            await self.r.hset(LAST_TICKS_KEY, env.data.symbol, raw)
        await self.r.publish(self.channel, raw)


async def on_fatal(err: ConnectionExhausted):
    await notify("Realtime feed lost: reconnection attempts exhausted",
                 {"url": err.url, "attempts": err.attempts}, level="error")


def build_client(cfg: AppConfig, r: Optional[redis.Redis] = None) -> StreamClient:
    sc = cfg.stream
    if not sc.feed_url:
        raise ValueError("stream.feed_url is not configured")
    return StreamClient(
        sc.feed_url,
        on_envelope=EnvelopeRelay(r) if r is not None else None,
        on_fatal=on_fatal,
        max_attempts=sc.max_attempts,
        pong_timeout=sc.pong_timeout_s,
        base_delay_ms=sc.base_delay_ms,
        max_delay_ms=sc.max_delay_ms,
    )


# ---------- MAIN ----------
async def main():
    cfg = load_config()
    configure_logging(cfg.log_level)
    r = redis.from_url(cfg.redis_url, decode_responses=True) if cfg.redis_url else None
    client = build_client(cfg, r)
    log.info("[md] runner started → %s", client.url)
    try:
        state = await client.run()
        log.info("[md] stream finished in state %s", state.value)
    finally:
        if r is not None:
            await r.aclose()


if __name__ == "__main__":
    asyncio.run(main())

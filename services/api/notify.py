# services/api/notify.py
import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

log = logging.getLogger(__name__)

LEVEL_COLORS = {
    "info": 0x3498DB,
    "success": 0x2ECC71,
    "warning": 0xE67E22,
    "error": 0xE74C3C,
}

TELEGRAM_API = "https://api.telegram.org"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _flag(name: str, default: str = "true") -> bool:
    return _env(name, default).lower() in ("1", "true", "yes", "on")


def _flatten(text: str, extra: Optional[Dict[str, Any]]) -> str:
    if not extra:
        return text
    return text + " - " + " | ".join(f"{k}={v}" for k, v in extra.items())


def _embed(text: str, extra: Optional[Dict[str, Any]], level: str) -> Dict[str, Any]:
    embed: Dict[str, Any] = {
        "description": text,
        "color": LEVEL_COLORS.get(level, LEVEL_COLORS["info"]),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if extra:
        embed["fields"] = [{"name": str(k), "value": str(v), "inline": True} for k, v in extra.items()]
    return embed


async def _send_discord(webhook: str, text: str, extra, level: str):
    payload: Dict[str, Any] = {"embeds": [_embed(text, extra, level)]}
    username = _env("DISCORD_USERNAME")
    if username:
        payload["username"] = username
    async with httpx.AsyncClient(timeout=10) as cli:
        r = await cli.post(webhook, json=payload)
        if r.status_code == 429:
            # one retry after the webhook's own cool-down
            try:
                wait_s = float(r.json().get("retry_after", 1.5))
            except ValueError:
                wait_s = 1.5
            log.warning("[discord] rate limited, retrying in %.1fs", wait_s)
            await asyncio.sleep(wait_s)
            r = await cli.post(webhook, json=payload)
    if r.status_code >= 400:
        raise RuntimeError(f"discord HTTP {r.status_code}: {r.text}")


async def _send_telegram(token: str, chat_id: str, text: str, extra):
    body = {"chat_id": chat_id, "text": _flatten(text, extra), "disable_web_page_preview": True}
    async with httpx.AsyncClient(timeout=10) as cli:
        r = await cli.post(f"{TELEGRAM_API}/bot{token}/sendMessage", json=body)
    if r.status_code >= 400:
        raise RuntimeError(f"telegram HTTP {r.status_code}: {r.text}")


async def notify(text: str, extra: Optional[Dict[str, Any]] = None, level: str = "info") -> None:
    """
    Operator notice. Tries the Discord webhook, then Telegram, then the log;
    the first channel that accepts the message wins. Delivery failures are
    logged, never raised. Channels are read from the environment on each call.
    """
    webhook = _env("DISCORD_WEBHOOK_URL")
    if webhook and _flag("DISCORD_ENABLE"):
        try:
            await _send_discord(webhook, text, extra, level)
            log.debug("[discord] sent: %s", text)
            return
        except (httpx.HTTPError, RuntimeError) as e:
            log.warning("[discord] send error: %r", e)

    token, chat_id = _env("TELEGRAM_BOT_TOKEN"), _env("TELEGRAM_CHAT_ID")
    if token and chat_id:
        try:
            await _send_telegram(token, chat_id, text, extra)
            log.debug("[tg] sent: %s", text)
            return
        except (httpx.HTTPError, RuntimeError) as e:
            log.warning("[tg] send error: %r", e)

    lvl = {"error": logging.ERROR, "warning": logging.WARNING}.get(level, logging.INFO)
    log.log(lvl, "[notify] %s", _flatten(text, extra))

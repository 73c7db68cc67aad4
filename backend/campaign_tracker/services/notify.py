"""
Operator alerts over Telegram, throttled per title.

Env:
  TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID

The same (level, title) is sent at most once per THROTTLE_SEC. Alerts are
best-effort: failures are logged and never raised to the caller.
"""
from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from campaign_tracker.settings import get_settings

logger = logging.getLogger(__name__)

_throttle: dict[str, float] = {}
THROTTLE_SEC = 15 * 60


def _should_send(key: str) -> bool:
    now = time.monotonic()
    last = _throttle.get(key)
    if last is not None and now - last < THROTTLE_SEC:
        return False
    _throttle[key] = now
    return True


async def _send_telegram(text: str) -> bool:
    settings = get_settings()
    token, chat_id = settings.telegram_bot_token, settings.telegram_chat_id
    if not token or not chat_id:
        logger.debug("[notify] Telegram not configured, skipping")
        return False
    url = f"https://api.telegram.org/bot{token}/sendMessage"
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            r = await client.post(url, json={
                "chat_id": chat_id,
                "text": text[:4000],
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            })
        if r.status_code == 200:
            return True
        logger.warning(f"[notify] Telegram API {r.status_code}: {r.text[:200]}")
    except httpx.HTTPError as e:
        logger.warning(f"[notify] Telegram send failed: {e}")
    return False


async def _notify(level: str, icon: str, title: str, payload: Any = None) -> bool:
    if not _should_send(f"{level}:{title}"):
        logger.debug(f"[notify] throttled {level}: {title}")
        return False
    body = f"{icon} <b>{title}</b>"
    if payload:
        body += f"\n<pre>{str(payload)[:500]}</pre>"
    return await _send_telegram(body)


async def notify_error(title: str, payload: Any = None) -> bool:
    return await _notify("error", "🔴", title, payload)


async def notify_warn(title: str, payload: Any = None) -> bool:
    return await _notify("warn", "🟡", title, payload)

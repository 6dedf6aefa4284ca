"""Admin notifications through a Telegram bot.

Delivery is best effort: every failure is logged and reported as ``False``,
never raised, so callers on the request path are not affected.
"""

import datetime as _dt
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class AdminNotifier:
    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._client = httpx.AsyncClient(base_url=TELEGRAM_API_BASE, timeout=timeout, transport=transport)

    def is_configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send_message(self, text: str, parse_mode: str = "HTML") -> bool:
        if not self.is_configured():
            logger.warning("Admin bot not configured, skipping notification")
            return False
        try:
            response = await self._client.post(
                f"/bot{self.bot_token}/sendMessage",
                json={
                    "chat_id": self.chat_id,
                    "text": text,
                    "parse_mode": parse_mode,
                    "disable_web_page_preview": True,
                },
            )
        except httpx.HTTPError as exc:
            logger.error("Admin notification failed: %s", exc)
            return False
        if response.is_error:
            logger.error("Admin notification rejected: %d %s", response.status_code, response.text)
            return False
        logger.debug("Admin notification sent (%d chars)", len(text))
        return True

    async def notify_started(self, module_name: str, environment: str, port: int) -> bool:
        text = "\n".join(
            [
                f"<b>{module_name}</b> started",
                f"Env: {environment}",
                f"Port: {port}",
                f"Time: {_dt.datetime.now(_dt.timezone.utc).isoformat()}",
            ]
        )
        return await self.send_message(text)

    async def notify_retention(self, module_name: str, deleted: int, ttl_days: int) -> bool:
        text = f"<b>{module_name}</b>: retention sweep removed {deleted} conversations older than {ttl_days} days"
        return await self.send_message(text)

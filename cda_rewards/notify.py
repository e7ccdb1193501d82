# D:\cda_rewards\cda_rewards\notify.py
"""
運用者向け通知

コンソール (logging) に必ず出し、webhook が設定されていれば
Discord 形式の embed を POST する。配送はベストエフォートで、
失敗してもログに残すだけで呼び出し元には伝播させない。
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx

_logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


_COLORS = {
    NotificationLevel.INFO: 0x3498DB,
    NotificationLevel.WARNING: 0xF39C12,
    NotificationLevel.ERROR: 0xE74C3C,
    NotificationLevel.SUCCESS: 0x2ECC71,
}

_LOG_LEVELS = {
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
    NotificationLevel.SUCCESS: logging.INFO,
}


class Notifier:
    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
        source: str = "CDA Rewards",
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.source = source
        self._client = client

    async def send(
        self,
        title: str,
        message: str,
        level: NotificationLevel = NotificationLevel.INFO,
        **fields: Any,
    ) -> None:
        level = NotificationLevel(level)
        _logger.log(_LOG_LEVELS[level], "[%s] %s: %s", level.value.upper(), title, message)
        if not self.webhook_url:
            return
        try:
            await self._post(self._embed(title, message, level, fields))
        except httpx.HTTPError as exc:
            _logger.warning("notification webhook failed (%s): %s", title, exc)

    def _embed(self, title: str, message: str, level: NotificationLevel, fields: dict[str, Any]) -> dict:
        embed: dict[str, Any] = {
            "title": title,
            "description": message,
            "color": _COLORS[level],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "footer": {"text": self.source},
        }
        if fields:
            embed["fields"] = [{"name": k, "value": str(v), "inline": True} for k, v in fields.items()]
        return {"embeds": [embed]}

    async def _post(self, payload: dict) -> None:
        if self._client is not None:
            resp = await self._client.post(self.webhook_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.webhook_url, json=payload)
            resp.raise_for_status()

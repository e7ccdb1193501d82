# D:\cda_rewards\cda_rewards\uptime\probe.py
"""
JSON-RPC ヘルスチェック

* eth_blockNumber が HTTP 2xx で返れば online
* online のときだけ eth_syncing も問い合わせる (result == false で同期済み)
* 接続エラー / タイムアウトは attempts 回まで再試行し、それでも駄目なら offline
* 例外は外に出さない。必ず UptimeRecord を 1 件返す
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Optional

import httpx

from ..data_models import NodeInfo, UptimeRecord
from ..timers import Clock, SystemClock

_logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class NodeProbe:
    def __init__(
        self,
        *,
        timeout: float = 10.0,
        attempts: int = 3,
        backoff: float = 0.5,
        client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.timeout = timeout
        self.attempts = max(attempts, 1)
        self.backoff = backoff
        self.clock = clock or SystemClock()
        self._client = client

    async def probe(self, node: NodeInfo) -> UptimeRecord:
        if self._client is not None:
            return await self._probe(self._client, node)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._probe(client, node)

    async def _probe(self, client: httpx.AsyncClient, node: NodeInfo) -> UptimeRecord:
        started = time.perf_counter()
        try:
            result = await self._rpc_with_retry(client, node.endpoint, "eth_blockNumber")
        except (httpx.HTTPError, ValueError) as exc:
            elapsed = (time.perf_counter() - started) * 1000
            _logger.info("%s: offline (%s)", node.name, exc)
            return UptimeRecord(timestamp=self.clock.now(), is_online=False, response_time_ms=round(elapsed, 2))
        elapsed = (time.perf_counter() - started) * 1000

        sync_status: Optional[bool] = None
        try:
            sync_status = (await self._rpc(client, node.endpoint, "eth_syncing")) is False
        except (httpx.HTTPError, ValueError) as exc:
            _logger.debug("%s: eth_syncing failed: %s", node.name, exc)

        height = _parse_block(result)
        _logger.info(
            "%s: online (block=%s, %.0fms, synced=%s)", node.name, height, elapsed, sync_status
        )
        return UptimeRecord(
            timestamp=self.clock.now(),
            is_online=True,
            block_height=height,
            response_time_ms=round(elapsed, 2),
            sync_status=sync_status,
        )

    async def _rpc_with_retry(self, client: httpx.AsyncClient, endpoint: str, method: str) -> Any:
        for attempt in range(1, self.attempts + 1):
            try:
                return await self._rpc(client, endpoint, method)
            except httpx.TransportError:
                if attempt >= self.attempts:
                    raise
                await asyncio.sleep(self.backoff * attempt)

    async def _rpc(self, client: httpx.AsyncClient, endpoint: str, method: str) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": [], "id": next(_ids)}
        resp = await client.post(endpoint, json=payload, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        return data.get("result") if isinstance(data, dict) else None


def _parse_block(result: Any) -> Optional[int]:
    if isinstance(result, str):
        try:
            return int(result, 16)
        except ValueError:
            return None
    return result if isinstance(result, int) else None

# D:\cda_rewards\cda_rewards\ledger\resilient.py
"""
ledger.resilient  ― リトライポリシー付きラッパー

LedgerNetworkError (retryable) だけを errors.handle で指数バックオフ再試行する。
revert / 上限超過は即座に呼び出し元へ。
"""
from __future__ import annotations

from typing import Optional, Sequence

from ..data_models import BadgeInfo, CycleInfo, ResetStatus, TxReceipt
from ..errors import ConfigurationError, handle
from .base import AllocationLedger, BadgeRegistry


class ResilientLedger(AllocationLedger, BadgeRegistry):
    def __init__(self, ledger: AllocationLedger, badges: BadgeRegistry | None = None) -> None:
        self._ledger = ledger
        self._badges = badges

    # ---------------- AllocationLedger ----------------
    @handle
    async def balance_of(self, address: str) -> int:
        return await self._ledger.balance_of(address)

    @handle
    async def get_cycle_info(self) -> CycleInfo:
        return await self._ledger.get_cycle_info()

    @handle
    async def get_remaining_allocation(self, category: str) -> int:
        return await self._ledger.get_remaining_allocation(category)

    @handle
    async def distribute_reward(self, to: str, amount: int, reason: str, category: str) -> TxReceipt:
        return await self._ledger.distribute_reward(to, amount, reason, category)

    @handle
    async def batch_distribute_rewards(
        self, to: Sequence[str], amounts: Sequence[int], reason: str, category: str
    ) -> TxReceipt:
        return await self._ledger.batch_distribute_rewards(to, amounts, reason, category)

    @handle
    async def get_transaction_status(self, tx_hash: str) -> Optional[bool]:
        return await self._ledger.get_transaction_status(tx_hash)

    @handle
    async def get_reset_status(self) -> ResetStatus:
        return await self._ledger.get_reset_status()

    @handle
    async def initiate_reset(self) -> TxReceipt:
        return await self._ledger.initiate_reset()

    # ---------------- BadgeRegistry ----------------
    def _require_badges(self) -> BadgeRegistry:
        if self._badges is None:
            raise ConfigurationError("badge registry is not configured (BADGE_NFT_ADDRESS)")
        return self._badges

    @handle
    async def get_user_badge_info(self, address: str) -> BadgeInfo:
        return await self._require_badges().get_user_badge_info(address)

    @handle
    async def record_activity(self, address: str, activity_type: str, count: int) -> TxReceipt:
        return await self._require_badges().record_activity(address, activity_type, count)

    @handle
    async def batch_record_activity(
        self, addresses: Sequence[str], activity_type: str, counts: Sequence[int]
    ) -> TxReceipt:
        return await self._require_badges().batch_record_activity(addresses, activity_type, counts)

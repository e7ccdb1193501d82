# D:\cda_rewards\cda_rewards\ledger\base.py
"""
ledger.base  ― オンチェーン コントラクトの型付きインターフェース

ロジックは持たず呼び出しの形だけを定義する。
カテゴリ上限はコントラクト側が強制し、拒否 (revert) は最終判断として扱う。
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from ..data_models import (
    BadgeInfo,
    CycleInfo,
    RedemptionDetails,
    RedemptionEvent,
    ResetStatus,
    SwagItem,
    TxReceipt,
)


class AllocationLedger(ABC):
    """CDAERC20 + CDAResetManager"""

    @abstractmethod
    async def balance_of(self, address: str) -> int: ...

    @abstractmethod
    async def get_cycle_info(self) -> CycleInfo: ...

    @abstractmethod
    async def get_remaining_allocation(self, category: str) -> int: ...

    @abstractmethod
    async def distribute_reward(self, to: str, amount: int, reason: str, category: str) -> TxReceipt: ...

    @abstractmethod
    async def batch_distribute_rewards(
        self, to: Sequence[str], amounts: Sequence[int], reason: str, category: str
    ) -> TxReceipt: ...

    @abstractmethod
    async def get_transaction_status(self, tx_hash: str) -> Optional[bool]:
        """True = 成功で確定、False = 失敗で確定、None = 未発見 / 未確定"""

    @abstractmethod
    async def get_reset_status(self) -> ResetStatus: ...

    @abstractmethod
    async def initiate_reset(self) -> TxReceipt: ...


class BadgeRegistry(ABC):
    """CDABadgeNFT"""

    @abstractmethod
    async def get_user_badge_info(self, address: str) -> BadgeInfo: ...

    @abstractmethod
    async def record_activity(self, address: str, activity_type: str, count: int) -> TxReceipt: ...

    @abstractmethod
    async def batch_record_activity(
        self, addresses: Sequence[str], activity_type: str, counts: Sequence[int]
    ) -> TxReceipt: ...


class SwagRedemptionSource(ABC):
    """
    SwagRedemption コントラクト。
    イベントは from_block からのポーリングで取得する (at-least-once)。
    """

    @abstractmethod
    async def fetch_events(self, from_block: int) -> tuple[list[RedemptionEvent], int]:
        """(イベント一覧, 次回の from_block) を返す"""

    @abstractmethod
    async def get_redemption(self, redemption_id: int) -> RedemptionDetails: ...

    @abstractmethod
    async def get_swag_item(self, item_id: int) -> SwagItem: ...

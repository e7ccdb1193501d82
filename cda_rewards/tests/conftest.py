# D:\cda_rewards\cda_rewards\tests\conftest.py
"""
共通フィクスチャ

* FakeLedger        … カテゴリ上限を強制するインメモリ台帳 (+ バッジ)
* FakeSwagSource    … ブロック番号付きイベントを返すだけの swag ソース
* RecordingNotifier … 送った通知を記録するだけ
* FakeClock         … 手で進める時計
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import pytest

from cda_rewards.config import DEFAULT_CATEGORY_CAPS, Settings
from cda_rewards.data_models import (
    BadgeInfo,
    CycleInfo,
    RedemptionDetails,
    RedemptionEvent,
    ResetStatus,
    SwagItem,
    TxReceipt,
    to_wei,
)
from cda_rewards.errors import AllocationExceededError
from cda_rewards.ledger.base import AllocationLedger, BadgeRegistry, SwagRedemptionSource
from cda_rewards.notify import NotificationLevel, Notifier
from cda_rewards.timers import Clock

ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
CAROL = "0x3333333333333333333333333333333333333333"
DAVE = "0x4444444444444444444444444444444444444444"


# ───────────────────────────────────────────────
# 時計
# ───────────────────────────────────────────────
class FakeClock(Clock):
    def __init__(self, start: datetime) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


# ───────────────────────────────────────────────
# 台帳
# ───────────────────────────────────────────────
class FakeLedger(AllocationLedger, BadgeRegistry):
    def __init__(self, caps: dict[str, int] | None = None) -> None:
        caps = caps or DEFAULT_CATEGORY_CAPS
        self.caps = {c: to_wei(v) for c, v in caps.items()}
        self.used = {c: 0 for c in self.caps}
        self.balances: dict[str, int] = {}
        self.cycle = 1
        self.reset_timestamp = 1_722_470_400
        self.can_reset = True
        self.reset_reason = ""
        self.days_until_eligible = 0
        self.mutations: list[tuple] = []
        self.badge_calls: list[tuple] = []
        # テストから差し込む失敗
        self.fail_recipients: dict[str, Exception] = {}
        self.fail_categories: dict[str, Exception] = {}
        self.badge_error: Exception | None = None
        self.reset_error: Exception | None = None
        self.reset_advances_cycle = True
        # tx_hash → 確定状態 (テストから設定)
        self.tx_status: dict[str, Optional[bool]] = {}
        self._tx = 0

    def _receipt(self) -> TxReceipt:
        self._tx += 1
        return TxReceipt(tx_hash=f"0x{self._tx:064x}", block_number=self._tx)

    def remaining(self, category: str) -> int:
        return self.caps[category] - self.used[category]

    # ---- AllocationLedger ----
    async def balance_of(self, address: str) -> int:
        return self.balances.get(address, 0)

    async def get_cycle_info(self) -> CycleInfo:
        return CycleInfo(
            cycle=self.cycle,
            reset_timestamp=self.reset_timestamp,
            total_supply=sum(self.balances.values()),
            days_until_reset=self.days_until_eligible,
        )

    async def get_remaining_allocation(self, category: str) -> int:
        return self.remaining(category)

    async def distribute_reward(self, to: str, amount: int, reason: str, category: str) -> TxReceipt:
        if to in self.fail_recipients:
            raise self.fail_recipients[to]
        if category in self.fail_categories:
            raise self.fail_categories[category]
        if amount > self.remaining(category):
            raise AllocationExceededError(category, amount)
        self.used[category] += amount
        self.balances[to] = self.balances.get(to, 0) + amount
        self.mutations.append(("distribute", to, amount, category, reason))
        return self._receipt()

    async def batch_distribute_rewards(
        self, to: Sequence[str], amounts: Sequence[int], reason: str, category: str
    ) -> TxReceipt:
        if category in self.fail_categories:
            raise self.fail_categories[category]
        total = sum(amounts)
        if total > self.remaining(category):
            raise AllocationExceededError(category, total)
        self.used[category] += total
        for a, amt in zip(to, amounts):
            self.balances[a] = self.balances.get(a, 0) + amt
        self.mutations.append(("batch", tuple(to), tuple(amounts), category, reason))
        return self._receipt()

    async def get_transaction_status(self, tx_hash: str) -> Optional[bool]:
        return self.tx_status.get(tx_hash)

    async def get_reset_status(self) -> ResetStatus:
        return ResetStatus(
            can_reset_now=self.can_reset,
            reset_reason=self.reset_reason,
            days_until_eligible=self.days_until_eligible,
        )

    async def initiate_reset(self) -> TxReceipt:
        if self.reset_error is not None:
            raise self.reset_error
        self.mutations.append(("reset", self.cycle))
        if self.reset_advances_cycle:
            self.cycle += 1
            self.used = {c: 0 for c in self.caps}
            self.balances.clear()
        return self._receipt()

    # ---- BadgeRegistry ----
    async def get_user_badge_info(self, address: str) -> BadgeInfo:
        events = sum(
            c for (_, addrs, kind, counts) in self.badge_calls if kind == "event"
            for a, c in zip(addrs, counts) if a == address
        )
        return BadgeInfo(current_level=1 if events else 0, events_attended=events)

    async def record_activity(self, address: str, activity_type: str, count: int) -> TxReceipt:
        if self.badge_error is not None:
            raise self.badge_error
        self.badge_calls.append(("single", (address,), activity_type, (count,)))
        return self._receipt()

    async def batch_record_activity(
        self, addresses: Sequence[str], activity_type: str, counts: Sequence[int]
    ) -> TxReceipt:
        if self.badge_error is not None:
            raise self.badge_error
        self.badge_calls.append(("batch", tuple(addresses), activity_type, tuple(counts)))
        return self._receipt()


# ───────────────────────────────────────────────
# Swag
# ───────────────────────────────────────────────
class FakeSwagSource(SwagRedemptionSource):
    def __init__(self) -> None:
        self.events: list[RedemptionEvent] = []
        self.redemptions: dict[int, RedemptionDetails] = {}
        self.items: dict[int, SwagItem] = {}
        self.head = 0
        self.detail_error: Exception | None = None
        self.detail_calls = 0

    def add_redemption(self, rid: int, user: str, item_id: int, cost: int, ts: int, block: int,
                       fulfilled: bool = False) -> None:
        self.redemptions[rid] = RedemptionDetails(
            user=user, item_id=item_id, cda_cost=cost, timestamp=ts, fulfilled=fulfilled
        )
        self.events.append(
            RedemptionEvent(kind="redeemed", redemption_id=rid, user=user, item_id=item_id,
                            cda_cost=cost, block_number=block)
        )
        self.head = max(self.head, block)

    def add_fulfilled(self, rid: int, user: str, block: int, log_index: int = 0) -> None:
        self.events.append(
            RedemptionEvent(kind="fulfilled", redemption_id=rid, user=user, block_number=block, log_index=log_index)
        )
        self.head = max(self.head, block)

    async def fetch_events(self, from_block: int) -> tuple[list[RedemptionEvent], int]:
        if from_block > self.head:
            return [], from_block
        return [e for e in self.events if e.block_number >= from_block], self.head + 1

    async def get_redemption(self, redemption_id: int) -> RedemptionDetails:
        self.detail_calls += 1
        if self.detail_error is not None:
            raise self.detail_error
        return self.redemptions[redemption_id]

    async def get_swag_item(self, item_id: int) -> SwagItem:
        return self.items.get(item_id, SwagItem(item_id=item_id, name=f"item-{item_id}"))


# ───────────────────────────────────────────────
# 通知
# ───────────────────────────────────────────────
class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        super().__init__(None)
        self.sent: list[tuple[str, str, NotificationLevel]] = []

    async def send(self, title, message, level=NotificationLevel.INFO, **fields) -> None:
        self.sent.append((title, message, NotificationLevel(level)))

    def levels(self) -> list[NotificationLevel]:
        return [lvl for _, _, lvl in self.sent]


# ───────────────────────────────────────────────
# fixtures
# ───────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch):
    """リトライ待ちを 0 秒に"""
    monkeypatch.setenv("LEDGERNETWORKERROR_BACKOFF", "0")
    monkeypatch.setenv("STORAGEERROR_BACKOFF", "0")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=str(tmp_path / "data"),
        reports_dir=str(tmp_path / "reports"),
        backups_dir=str(tmp_path / "backups"),
        exports_dir=str(tmp_path / "exports"),
        nodes_config_path=str(tmp_path / "nodes.json"),
        notification_webhook=None,
        reset_enabled=True,
        reset_dry_run=False,
        reset_cron="0 0 1 8 *",
    )


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 1, 0, 0, tzinfo=timezone.utc))

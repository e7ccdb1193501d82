# D:\cda_rewards\cda_rewards\runtime.py
"""
コンポーネントの組み立て

CLI / HTTP サーバはここで作った Runtime を共有する。
台帳やイベントソースを差し替えればテストからも同じ配線で動かせる。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import Settings
from .dispenser import RewardDispenser
from .ledger import ResilientLedger, Web3Ledger, Web3SwagRedemption
from .ledger.base import AllocationLedger, BadgeRegistry, SwagRedemptionSource
from .notify import Notifier
from .reset_scheduler import ResetScheduler
from .swag import SwagBurnTracker
from .timers import Clock, SystemClock
from .uptime import NodeUptimeMonitor

_logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    ledger: AllocationLedger
    badges: BadgeRegistry
    notifier: Notifier
    dispenser: RewardDispenser
    monitor: NodeUptimeMonitor
    reset: ResetScheduler
    swag: Optional[SwagBurnTracker] = None
    started: list[str] = field(default_factory=list)

    async def start(self, *, monitor: bool = True, reset: bool = True, swag: bool = True) -> None:
        if monitor:
            await self.monitor.start_monitoring()
            self.started.append("monitor")
        if reset:
            await self.reset.start_scheduler()
            self.started.append("reset")
        if swag and self.swag is not None:
            await self.swag.start_tracking()
            self.started.append("swag")

    async def stop(self) -> None:
        # 起動と逆順に止める
        for name in reversed(self.started):
            if name == "monitor":
                await self.monitor.stop_monitoring()
            elif name == "reset":
                await self.reset.stop_scheduler()
            elif name == "swag" and self.swag is not None:
                await self.swag.stop_tracking()
        self.started.clear()


def build_runtime(
    settings: Settings,
    *,
    ledger: AllocationLedger | None = None,
    badges: BadgeRegistry | None = None,
    swag_source: SwagRedemptionSource | None = None,
    notifier: Notifier | None = None,
    clock: Clock | None = None,
) -> Runtime:
    clock = clock or SystemClock()
    if ledger is None:
        client = Web3Ledger(settings)
        resilient = ResilientLedger(client, client if client.badge_nft is not None else None)
        ledger = resilient
        badges = badges or resilient
        if swag_source is None and settings.swag_redemption_address:
            swag_source = Web3SwagRedemption(settings, client.w3)
    if badges is None:
        badges = ledger  # type: ignore[assignment]

    shared = notifier or Notifier(settings.notification_webhook, timeout=settings.notification_timeout_sec)
    monitor = NodeUptimeMonitor(settings, ledger, notifier=shared, clock=clock)
    # スケジュール更新で webhook が差し替わるので、注入されない限りリセット用は別インスタンス
    reset = ResetScheduler(settings, ledger, notifier=notifier, clock=clock)
    swag = SwagBurnTracker(settings, swag_source, notifier=shared, clock=clock) if swag_source else None

    reset.backup_sources["node_rewards"] = lambda: monitor.monthly_rewards
    if swag is not None:
        reset.backup_sources["swag_redemptions"] = lambda: list(swag.records.values())

    return Runtime(
        settings=settings,
        ledger=ledger,
        badges=badges,
        notifier=shared,
        dispenser=RewardDispenser(settings, ledger, badges),
        monitor=monitor,
        reset=reset,
        swag=swag,
    )

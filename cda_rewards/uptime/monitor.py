# D:\cda_rewards\cda_rewards\uptime\monitor.py
# -*- coding: utf-8 -*-
"""
ノード稼働監視 + 月次報酬配布

状態遷移:
    IDLE → MONITORING → CHECKING → MONITORING … → STOPPED

ジョブ (JobScheduler):
    uptime-check   … CHECK_INTERVAL_SEC ごとに check_all_nodes()
    monthly-reward … MONTHLY_CRON (既定 "0 0 1 * *") で distribute_monthly_rewards()
    reward-retry   … REWARD_RETRY_INTERVAL_SEC ごとに同じパスを再評価
                     月初に停止していた場合も前月分はここで拾われる

報酬計算はすべて整数 basis point で行う:
    share_bps = uptime_bps * 10000 // Σ uptime_bps
    amount    = pool * share_bps // 10000
端数 (pool - Σ amount) は配布せず rounding_residue としてレポートに残す。
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from ..config import Settings
from ..data_models import MonthlyReward, NodeInfo, UptimeRecord, from_wei
from ..errors import BaseError, LedgerRevertError, log_exception
from ..ledger.base import AllocationLedger
from ..metrics import NODE_CHECKS, record_distribution, record_failure
from ..notify import NotificationLevel, Notifier
from ..storage import JsonStore
from ..timers import Clock, CronTrigger, IntervalTrigger, JobScheduler, SystemClock
from .probe import NodeProbe
from .registry import NodeRegistry

_logger = logging.getLogger(__name__)

UPTIME_FILE = "node-uptime"
REWARDS_FILE = "node-rewards"
BPS = 10_000


class MonitorState(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    CHECKING = "checking"
    STOPPED = "stopped"


# --------------------------------------------------------------------------- #
# pure helpers
# --------------------------------------------------------------------------- #
def _window(records: Iterable[UptimeRecord], start: datetime, end: datetime) -> tuple[int, int]:
    online = total = 0
    for r in records:
        if start <= r.timestamp <= end:
            total += 1
            online += r.is_online
    return online, total


def previous_month_window(now: datetime) -> tuple[str, datetime, datetime]:
    """now の前月 (UTC) → ("YYYY-MM", 月初 00:00, 月末 23:59:59.999999)"""
    first_this = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    end = first_this - timedelta(microseconds=1)
    start = end.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start.strftime("%Y-%m"), start, end


def apportion(pool: int, weights: dict[str, int]) -> dict[str, tuple[int, int]]:
    """address → (share_bps, amount)。Σ amount <= pool を保証"""
    total = sum(weights.values())
    if total <= 0 or pool <= 0:
        return {a: (0, 0) for a in weights}
    out = {}
    for address, w in weights.items():
        share = w * BPS // total
        out[address] = (share, pool * share // BPS)
    return out


class NodeUptimeMonitor:
    def __init__(
        self,
        settings: Settings,
        ledger: AllocationLedger,
        *,
        registry: NodeRegistry | None = None,
        probe: NodeProbe | None = None,
        store: JsonStore | None = None,
        reports: JsonStore | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        scheduler: JobScheduler | None = None,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.registry = registry if registry is not None else NodeRegistry.from_config(settings.nodes_config_path)
        self.probe = probe or NodeProbe(
            timeout=settings.probe_timeout_sec,
            attempts=settings.probe_attempts,
            backoff=settings.probe_backoff_sec,
            clock=self.clock,
        )
        self.store = store or JsonStore(settings.data_dir)
        self.reports = reports or JsonStore(settings.reports_dir)
        self.notifier = notifier or Notifier(settings.notification_webhook, timeout=settings.notification_timeout_sec)
        self.scheduler = scheduler or JobScheduler(self.clock, name="uptime")

        self.state = MonitorState.IDLE
        self.monthly_rewards: dict[str, list[MonthlyReward]] = {}
        self.monthly_pools: dict[str, int] = {}
        self.last_check: Optional[datetime] = None
        self._checking = False
        self._distributing = False
        self._jobs_registered = False

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #
    async def start_monitoring(self) -> None:
        if self.state in (MonitorState.MONITORING, MonitorState.CHECKING):
            return
        await self.load_existing_data()
        self.register_jobs()
        self.state = MonitorState.MONITORING
        _logger.info("node monitoring started: %d nodes, every %ss", len(self.registry), self.settings.check_interval_sec)
        await self.check_all_nodes()
        await self.scheduler.start()

    def register_jobs(self) -> None:
        if self._jobs_registered:
            return
        s = self.settings
        self.scheduler.add_job("uptime-check", IntervalTrigger(s.check_interval_sec), self.check_all_nodes)
        self.scheduler.add_job("monthly-reward", CronTrigger(s.monthly_cron), self.distribute_monthly_rewards)
        self.scheduler.add_job(
            "reward-retry", IntervalTrigger(s.reward_retry_interval_sec), self.distribute_monthly_rewards
        )
        self._jobs_registered = True

    async def stop_monitoring(self) -> None:
        await self.scheduler.stop()
        self.state = MonitorState.STOPPED
        await self.save_uptime()
        await self.save_rewards()
        _logger.info("node monitoring stopped")

    # ------------------------------------------------------------------ #
    # checks
    # ------------------------------------------------------------------ #
    async def check_all_nodes(self) -> bool:
        """1 パス実行したら True、前のパスが実行中でスキップしたら False"""
        if self._checking:
            _logger.warning("uptime check already in progress, skipping")
            return False
        self._checking = True
        previous = self.state
        self.state = MonitorState.CHECKING
        try:
            nodes = list(self.registry)
            results = await asyncio.gather(*(self.check_node_uptime(n) for n in nodes), return_exceptions=True)
            for node, result in zip(nodes, results):
                if isinstance(result, BaseException):
                    log_exception(result, f"check failed for {node.name}", component="uptime", node=node.address)
            now = self.clock.now()
            self.last_check = now
            removed = self.registry.prune(now - timedelta(days=self.settings.history_retention_days))
            if removed:
                _logger.debug("pruned %d uptime records", removed)
            await self.save_uptime()
        finally:
            self._checking = False
            self.state = previous if previous != MonitorState.CHECKING else MonitorState.MONITORING
        online = sum(1 for n in nodes if n.uptime_history and n.uptime_history[-1].is_online)
        _logger.info("uptime check complete: %d/%d online", online, len(nodes))
        return True

    async def check_node_uptime(self, node: NodeInfo) -> UptimeRecord:
        try:
            record = await self.probe.probe(node)
        except Exception as exc:
            log_exception(exc, f"probe crashed for {node.name}", component="uptime", node=node.address)
            record = UptimeRecord(timestamp=self.clock.now(), is_online=False)
        self.registry.append(node.address, record)
        NODE_CHECKS.labels(status="online" if record.is_online else "offline").inc()
        return record

    # ------------------------------------------------------------------ #
    # uptime math
    # ------------------------------------------------------------------ #
    @staticmethod
    def calculate_uptime_percentage(node: NodeInfo, start: datetime, end: datetime) -> float:
        online, total = _window(node.uptime_history, start, end)
        return online / total * 100 if total else 0.0

    @staticmethod
    def uptime_basis_points(node: NodeInfo, start: datetime, end: datetime) -> int:
        online, total = _window(node.uptime_history, start, end)
        return online * BPS // total if total else 0

    # ------------------------------------------------------------------ #
    # monthly rewards
    # ------------------------------------------------------------------ #
    async def distribute_monthly_rewards(self, now: datetime | None = None) -> list[MonthlyReward]:
        if self._distributing:
            _logger.warning("monthly distribution already in progress, skipping")
            return []
        self._distributing = True
        try:
            return await self._distribute_monthly(now or self.clock.now())
        finally:
            self._distributing = False

    async def _distribute_monthly(self, now: datetime) -> list[MonthlyReward]:
        month, start, end = previous_month_window(now)
        rewards = self.monthly_rewards.get(month)
        # 履歴のスナップショットは最初の await より前に同期的に取る
        snapshot = self.registry.snapshot() if rewards is None else None

        # 他の月で未完了 (失敗 or 結果未確認) のものを先に片付ける
        for other in sorted(self.monthly_rewards):
            if other != month and self._unsettled(self.monthly_rewards[other]):
                await self._settle(other, self.monthly_rewards[other])

        if snapshot is not None:
            rewards = await self._compute_month(month, start, end, snapshot)
            self.monthly_rewards[month] = rewards
            await self.save_rewards()
            await self._settle(month, rewards, force_report=True)
        elif not self._unsettled(rewards):
            _logger.info("rewards for %s already distributed", month)
        else:
            await self._settle(month, rewards)
        return rewards

    @staticmethod
    def _unsettled(rewards: list[MonthlyReward]) -> list[MonthlyReward]:
        return [r for r in rewards if not r.distributed]

    async def _settle(self, month: str, rewards: list[MonthlyReward], *, force_report: bool = False) -> None:
        """未配布のレコードを 1 件ずつ処理し、動きがあればレポートを書く"""
        pending = self._unsettled(rewards)
        if pending and not force_report:
            _logger.info("retrying %d undistributed rewards for %s", len(pending), month)

        attempted = False
        for reward in pending:
            if reward.pending_tx is not None and not await self._resolve(reward):
                continue
            if not reward.distributed:
                await self._pay(reward)
                attempted = True
            await self.save_rewards()

        if not (attempted or force_report or not self._unsettled(rewards)):
            # 結果未確認のまま保留中のレコードしかない
            return

        report = self.generate_monthly_report(month, rewards)
        await self.reports.write_report(f"node-uptime-{month}", report)

        failed = [r for r in rewards if not r.distributed and r.pending_tx is None]
        if failed:
            await self.notifier.send(
                "Node Rewards Incomplete",
                f"{len(failed)} of {len(rewards)} node rewards for {month} failed; they will be retried",
                NotificationLevel.WARNING,
            )

    async def _resolve(self, reward: MonthlyReward) -> bool:
        """
        送信済みで結果不明のトランザクションを台帳に問い合わせる。

        True  … 決着した (確定済みなら distributed、失敗なら再送可能)
        False … まだ不明。再送せず保留する
        """
        tx_hash = reward.pending_tx
        try:
            status = await self.ledger.get_transaction_status(tx_hash)
        except BaseError as exc:
            log_exception(exc, f"receipt lookup failed for {tx_hash}", component="uptime",
                          recipient=reward.operator_address, tx_hash=tx_hash)
            return False
        if status is None:
            _logger.warning("node reward %s for %s still unconfirmed, holding", tx_hash, reward.operator_address)
            return False

        reward.pending_tx = None
        if status:
            self._mark_paid(reward, tx_hash)
        else:
            reward.last_error = f"transaction {tx_hash} failed on chain"
            _logger.warning("node reward %s for %s failed on chain, resending", tx_hash, reward.operator_address)
        return True

    async def _compute_month(
        self, month: str, start: datetime, end: datetime, snapshot: list[NodeInfo]
    ) -> list[MonthlyReward]:
        qualifying: dict[str, tuple[NodeInfo, int, float]] = {}
        for node in snapshot:
            bps = self.uptime_basis_points(node, start, end)
            pct = self.calculate_uptime_percentage(node, start, end)
            if bps >= self.settings.uptime_threshold_bps:
                qualifying[node.address] = (node, bps, pct)
            else:
                _logger.info("%s below minimum uptime: %.2f%%", node.name, pct)

        if not qualifying:
            _logger.warning("no nodes qualify for rewards in %s", month)
            self.monthly_pools[month] = 0
            return []

        remaining = await self.ledger.get_remaining_allocation("node")
        pool = remaining // self.settings.monthly_pool_divisor
        self.monthly_pools[month] = pool
        _logger.info("monthly node reward pool for %s: %s CDA", month, from_wei(pool))

        shares = apportion(pool, {a: bps for a, (_, bps, _) in qualifying.items()})
        rewards = []
        for address, (node, bps, pct) in qualifying.items():
            _, amount = shares[address]
            if amount <= 0:
                _logger.warning("%s qualifies but its share rounds to zero", node.name)
                continue
            rewards.append(
                MonthlyReward(
                    month=month,
                    node_address=address,
                    operator_address=node.operator_address,
                    uptime_percentage=round(pct, 4),
                    uptime_bps=bps,
                    reward_amount=amount,
                )
            )
        return rewards

    async def _pay(self, reward: MonthlyReward) -> None:
        reason = f"Node operator reward - {reward.uptime_bps / 100:.2f}% uptime for {reward.month}"
        try:
            receipt = await self.ledger.distribute_reward(
                reward.operator_address, reward.reward_amount, reason, "node"
            )
        except BaseError as exc:
            reward.last_error = str(exc)
            record_failure("node", exc)
            log_exception(
                exc,
                f"node reward failed for {reward.operator_address}",
                component="uptime",
                recipient=reward.operator_address,
                amount=reward.reward_amount,
                category="node",
                reason=reason,
            )
            # 送信済みで結果不明。次のパスでレシートを確認するまで再送しない
            sent = None if isinstance(exc, LedgerRevertError) else exc.context.get("tx_hash")
            if sent:
                reward.pending_tx = sent
                await self.notifier.send(
                    "Node Reward Unconfirmed",
                    f"Reward for {reward.operator_address} ({reward.month}) was sent as {sent} "
                    "but not confirmed; it will not be resent until the receipt is known",
                    NotificationLevel.WARNING,
                    tx_hash=sent,
                )
            return
        self._mark_paid(reward, receipt.tx_hash)

    def _mark_paid(self, reward: MonthlyReward, tx_hash: str) -> None:
        reward.distributed = True
        reward.tx_hash = tx_hash
        reward.distributed_at = self.clock.now()
        reward.last_error = None
        record_distribution("node", reward.reward_amount)
        _logger.info(
            "rewarded %s: %s CDA (%.2f%% uptime)",
            reward.operator_address, from_wei(reward.reward_amount), reward.uptime_percentage,
        )

    # ------------------------------------------------------------------ #
    # reporting
    # ------------------------------------------------------------------ #
    def generate_monthly_report(self, month: str, rewards: list[MonthlyReward]) -> dict:
        names = {n.address: n.name for n in self.registry}
        pool = self.monthly_pools.get(month)
        issued = sum(r.reward_amount for r in rewards)
        distributed = sum(r.reward_amount for r in rewards if r.distributed)
        rewarded = {r.node_address for r in rewards}
        avg = sum(r.uptime_percentage for r in rewards) / len(rewards) if rewards else 0.0
        return {
            "month": month,
            "generated_at": self.clock.now().isoformat(),
            "summary": {
                "total_nodes_eligible": len(rewards),
                "total_nodes_monitored": len(self.registry),
                "monthly_pool": pool,
                "total_rewards_distributed": distributed,
                "total_rewards_distributed_cda": from_wei(distributed),
                "rounding_residue": pool - issued if pool is not None else None,
                "average_uptime": round(avg, 2),
                "eligibility_threshold_bps": self.settings.uptime_threshold_bps,
            },
            "node_performance": [
                {
                    "node_name": names.get(r.node_address, "Unknown"),
                    "node_address": r.node_address,
                    "operator_address": r.operator_address,
                    "uptime_percentage": r.uptime_percentage,
                    "uptime_bps": r.uptime_bps,
                    "reward_amount": r.reward_amount,
                    "status": "distributed" if r.distributed else ("unconfirmed" if r.pending_tx else "pending"),
                    "tx_hash": r.tx_hash or r.pending_tx,
                    "last_error": r.last_error,
                }
                for r in rewards
            ],
            "ineligible_nodes": [
                {"node_name": n.name, "node_address": n.address, "operator_address": n.operator_address}
                for n in self.registry
                if n.address not in rewarded
            ],
        }

    def get_uptime_stats(self) -> dict:
        now = self.clock.now()
        day = timedelta(days=1)
        nodes = []
        for node in self.registry:
            last = node.uptime_history[-1] if node.uptime_history else None
            nodes.append(
                {
                    "name": node.name,
                    "address": node.address,
                    "current_status": "online" if last and last.is_online else "offline",
                    "block_height": last.block_height if last else None,
                    "uptime_24h": self.calculate_uptime_percentage(node, now - day, now),
                    "uptime_7d": self.calculate_uptime_percentage(node, now - 7 * day, now),
                    "uptime_30d": self.calculate_uptime_percentage(node, now - 30 * day, now),
                    "last_checked": node.last_checked.isoformat() if node.last_checked else None,
                }
            )

        def _avg(key: str) -> float:
            return sum(n[key] for n in nodes) / len(nodes) if nodes else 0.0

        return {
            "nodes": nodes,
            "overall": {
                "total_nodes": len(nodes),
                "online_nodes": sum(1 for n in nodes if n["current_status"] == "online"),
                "average_uptime_24h": _avg("uptime_24h"),
                "average_uptime_7d": _avg("uptime_7d"),
                "average_uptime_30d": _avg("uptime_30d"),
            },
        }

    def get_status(self) -> dict:
        return {
            "state": self.state.value,
            "nodes": len(self.registry),
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "check_in_progress": self._checking,
            "months_recorded": sorted(self.monthly_rewards),
            "scheduler": self.scheduler.status(),
        }

    # ------------------------------------------------------------------ #
    # persistence
    # ------------------------------------------------------------------ #
    async def load_existing_data(self) -> None:
        uptime = await self.store.load(UPTIME_FILE)
        if uptime:
            self.registry.restore_history(uptime)
            _logger.info("loaded uptime history for %d nodes", len(uptime))
        rewards = await self.store.load(REWARDS_FILE)
        if rewards:
            self.monthly_rewards = {
                month: [MonthlyReward.model_validate(r) for r in items]
                for month, items in rewards.get("rewards", {}).items()
            }
            self.monthly_pools = {m: int(p) for m, p in rewards.get("pools", {}).items()}
            _logger.info("loaded reward records for %d months", len(self.monthly_rewards))

    async def save_uptime(self) -> None:
        await self.store.save(UPTIME_FILE, self.registry.dump())

    async def save_rewards(self) -> None:
        await self.store.save(
            REWARDS_FILE, {"rewards": self.monthly_rewards, "pools": self.monthly_pools}
        )

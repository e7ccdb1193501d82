# D:\cda_rewards\cda_rewards\dispenser.py
# -*- coding: utf-8 -*-
"""
報酬配布 (RewardDispenser)

* process_activity_batch()       … 活動種別ごとに 1 回のバッチ配布 + 1 回のバッジ記録
* distribute_special_reward()    … 手動の単発配布
* distribute_hackathon_rewards() … 順位別の賞金 + project 活動の記録
* distribute_node_runner_rewards() … 稼働率比例 (basis point) の配布
* generate_reward_report()       … カテゴリ別使用率レポート (読み取りのみ)

カテゴリ上限の判定はコントラクトに任せる。拒否は AllocationExceededError として
呼び出し元まで伝播し、自動再試行はしない。
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Sequence

from web3 import Web3

from .config import Settings
from .data_models import (
    ActivityRecord,
    ActivityType,
    BatchOutcome,
    NodeRunner,
    RunnerPayout,
    from_wei,
    utcnow,
    to_wei,
)
from .errors import BaseError, BatchDistributionError, ValidationError, log_exception
from .importer import load_attendance_csv
from .ledger.base import AllocationLedger, BadgeRegistry
from .metrics import record_distribution, record_failure
from .reports import allocation_totals, collect_allocations
from .storage import JsonStore

_logger = logging.getLogger(__name__)

CATEGORY_BY_ACTIVITY: dict[ActivityType, str] = {
    ActivityType.EVENT: "activity",
    ActivityType.VOLUNTEER: "activity",
    ActivityType.PRESENTATION: "milestone",
    ActivityType.PROJECT: "milestone",
    ActivityType.HACKATHON: "milestone",
    ActivityType.NODE: "node",
}

HACKATHON_TIERS: dict[int, int] = {1: 1_000, 2: 750, 3: 500}
HACKATHON_DEFAULT = 250

NODE_RUNNER_MIN_BPS = 8_000
BPS = 10_000


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        return f"{n}th"
    return f"{n}" + {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")


class RewardDispenser:
    def __init__(
        self,
        settings: Settings,
        ledger: AllocationLedger,
        badges: BadgeRegistry,
        *,
        reports: JsonStore | None = None,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.badges = badges
        self.reports = reports or JsonStore(settings.reports_dir)

    # ------------------------------------------------------------------ #
    # helpers
    # ------------------------------------------------------------------ #
    def category_for(self, activity_type: ActivityType) -> str:
        return CATEGORY_BY_ACTIVITY[ActivityType(activity_type)]

    def amount_for(self, record: ActivityRecord) -> int:
        if record.amount is not None:
            return record.amount
        rate = self.settings.reward_schedule.get(record.activity_type.value)
        if rate is None:
            raise ValidationError(
                f"no reward rate for activity type {record.activity_type.value}",
                activity_type=record.activity_type.value,
            )
        return to_wei(rate) * record.count

    def _validate(self, address: str, amount: int, category: str) -> None:
        if amount <= 0:
            raise ValidationError(f"amount must be positive: {amount}", amount=amount)
        if category not in self.settings.category_caps:
            raise ValidationError(f"unknown category: {category}", category=category)
        if not Web3.is_address(address):
            raise ValidationError(f"invalid address: {address}", recipient=address)

    # ------------------------------------------------------------------ #
    # batch distribution
    # ------------------------------------------------------------------ #
    async def process_activity_batch(self, records: Sequence[ActivityRecord]) -> list[BatchOutcome]:
        if not records:
            raise ValidationError("activity batch is empty")

        groups: dict[ActivityType, list[ActivityRecord]] = {}
        for rec in records:
            groups.setdefault(rec.activity_type, []).append(rec)

        # 送信前に全件を検証する (途中のグループで検証エラーを出さない)
        planned = []
        for activity_type, group in groups.items():
            category = self.category_for(activity_type)
            amounts = [self.amount_for(r) for r in group]
            for r, amount in zip(group, amounts):
                self._validate(r.address, amount, category)
            planned.append((activity_type, category, group, amounts))

        _logger.info("distributing rewards to %d recipients in %d batches", len(records), len(planned))
        outcomes: list[BatchOutcome] = []
        for activity_type, category, group, amounts in planned:
            outcomes.append(await self._distribute_group(activity_type, category, group, amounts))
        return outcomes

    async def _distribute_group(
        self,
        activity_type: ActivityType,
        category: str,
        group: list[ActivityRecord],
        amounts: list[int],
    ) -> BatchOutcome:
        addresses = [r.address for r in group]
        counts = [r.count for r in group]
        reason = group[0].reason or f"{activity_type.value.capitalize()} participation reward"
        total = sum(amounts)

        try:
            receipt = await self.ledger.batch_distribute_rewards(addresses, amounts, reason, category)
        except BaseError as exc:
            record_failure(category, exc)
            err = BatchDistributionError(activity_type.value, len(group), "tokens", exc)
            log_exception(err, component="dispenser", category=category, amount=total, reason=reason)
            raise err from exc
        record_distribution(category, total)
        _logger.info(
            "%s batch distributed: %d recipients, %s CDA (%s)",
            activity_type.value, len(group), from_wei(total), receipt.tx_hash,
        )

        try:
            badge_receipt = await self.badges.batch_record_activity(addresses, activity_type.value, counts)
        except BaseError as exc:
            err = BatchDistributionError(activity_type.value, len(group), "badges", exc)
            log_exception(err, component="dispenser", tokens_tx=receipt.tx_hash)
            raise err from exc

        return BatchOutcome(
            activity_type=activity_type,
            category=category,
            recipients=len(group),
            total_amount=total,
            tx_hash=receipt.tx_hash,
            badge_tx_hash=badge_receipt.tx_hash,
        )

    async def process_event_attendance(self, csv_path: str | Path) -> list[BatchOutcome]:
        records = load_attendance_csv(csv_path)
        if not records:
            _logger.warning("no valid attendees in %s", csv_path)
            return []
        outcomes = await self.process_activity_batch(records)
        _logger.info("processed %d event attendees", len(records))
        return outcomes

    # ------------------------------------------------------------------ #
    # single distributions
    # ------------------------------------------------------------------ #
    async def distribute_special_reward(
        self, address: str, amount: int, reason: str, category: str = "milestone"
    ) -> str:
        """amount は wei。成功時は tx hash を返す"""
        self._validate(address, amount, category)
        _logger.info("special reward: %s CDA to %s (%s)", from_wei(amount), address, category)
        try:
            receipt = await self.ledger.distribute_reward(address, amount, reason, category)
        except BaseError as exc:
            record_failure(category, exc)
            log_exception(
                exc, "special reward failed", component="dispenser",
                recipient=address, amount=amount, category=category, reason=reason,
            )
            raise
        record_distribution(category, amount)
        return receipt.tx_hash

    async def distribute_hackathon_rewards(self, winners: Iterable[dict]) -> list[dict]:
        """
        winners: [{"address": ..., "name": ..., "place": 1}, ...]

        1 人の失敗で残りの入賞者は止めない。結果の error / badge_error で確認する。
        """
        results = []
        for winner in winners:
            place = int(winner["place"])
            amount = to_wei(HACKATHON_TIERS.get(place, HACKATHON_DEFAULT))
            result = {"address": winner["address"], "name": winner.get("name", ""), "place": place,
                      "amount": amount, "tx_hash": None, "error": None, "badge_error": None}
            results.append(result)
            try:
                result["tx_hash"] = await self.distribute_special_reward(
                    winner["address"], amount, f"Hackathon {_ordinal(place)} place winner", "milestone"
                )
            except BaseError as exc:
                # ログは distribute_special_reward 側で出している
                result["error"] = str(exc)
                continue
            try:
                await self.badges.record_activity(winner["address"], ActivityType.PROJECT.value, 1)
            except BaseError as exc:
                result["badge_error"] = str(exc)
                log_exception(
                    exc, "hackathon badge update failed", component="dispenser",
                    recipient=winner["address"], place=place, tokens_tx=result["tx_hash"],
                )
        paid = sum(1 for r in results if r["tx_hash"])
        _logger.info("hackathon rewards distributed to %d/%d winners", paid, len(results))
        return results

    async def distribute_node_runner_rewards(self, runners: Iterable[NodeRunner]) -> dict:
        """
        uptime 0.80 未満はスキップ。プールは node カテゴリの残量すべて。
        1 件の失敗で他の配布は止めない。
        """
        payouts: list[RunnerPayout] = []
        qualifying: list[RunnerPayout] = []
        for runner in runners:
            bps = round(runner.uptime * BPS)
            payout = RunnerPayout(address=runner.address, name=runner.name, uptime_bps=bps)
            payouts.append(payout)
            if bps < NODE_RUNNER_MIN_BPS:
                payout.skipped_reason = "uptime below 80%"
                _logger.info("skipping %s - uptime too low: %.1f%%", runner.name or runner.address, bps / 100)
                continue
            qualifying.append(payout)

        pool = await self.ledger.get_remaining_allocation("node") if qualifying else 0
        total_bps = sum(p.uptime_bps for p in qualifying)
        for p in qualifying:
            p.share_bps = p.uptime_bps * BPS // total_bps
            p.amount = pool * p.share_bps // BPS

        for p in qualifying:
            if p.amount <= 0:
                p.skipped_reason = "zero share"
                continue
            reason = f"Node runner reward - {p.uptime_bps / 100:.1f}% uptime"
            try:
                receipt = await self.ledger.distribute_reward(p.address, p.amount, reason, "node")
            except BaseError as exc:
                p.error = str(exc)
                record_failure("node", exc)
                log_exception(
                    exc, "node runner reward failed", component="dispenser",
                    recipient=p.address, amount=p.amount, category="node", reason=reason,
                )
                continue
            p.distributed = True
            p.tx_hash = receipt.tx_hash
            record_distribution("node", p.amount)
            _logger.info("rewarded %s: %s CDA", p.name or p.address, from_wei(p.amount))

        issued = sum(p.amount for p in qualifying)
        return {
            "pool": pool,
            "distributed": sum(p.amount for p in qualifying if p.distributed),
            "rounding_residue": pool - issued,
            "payouts": payouts,
        }

    # ------------------------------------------------------------------ #
    # read side
    # ------------------------------------------------------------------ #
    async def generate_reward_report(self) -> dict:
        cycle = await self.ledger.get_cycle_info()
        usages = await collect_allocations(self.ledger, self.settings.category_caps)
        report = {
            "timestamp": utcnow().isoformat(),
            "cycle": cycle.cycle,
            "days_until_reset": cycle.days_until_reset,
            "categories": [u.model_dump() for u in usages],
            "totals": allocation_totals(usages),
        }
        path = await self.reports.write_report("reward-report", report)
        report["path"] = str(path)
        for u in usages:
            _logger.info("%-9s used %6.2f%% (remaining %s CDA)", u.category, u.utilization_rate, from_wei(u.remaining))
        return report

    async def get_participant_profile(self, address: str) -> dict:
        if not Web3.is_address(address):
            raise ValidationError(f"invalid address: {address}", recipient=address)
        balance = await self.ledger.balance_of(address)
        badge = await self.badges.get_user_badge_info(address)
        return {
            "address": address,
            "balance": balance,
            "balance_cda": from_wei(balance),
            "badges": badge.model_dump(),
        }

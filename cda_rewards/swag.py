# D:\cda_rewards\cda_rewards\swag.py
# -*- coding: utf-8 -*-
"""
Swag 引き換え (= CDA バーン) の追跡

イベントは SwagRedemptionSource をブロックカーソルからポーリングして取得する。
配信は at-least-once なので、ハンドラはすべて冪等:

* 同じ redemption_id の SwagRedeemed は 2 回目以降無視
* SwagRedeemed より先に届いた RedemptionFulfilled は覚えておき、記録時に適用

カーソル / 記録 / 保留中の fulfilled は data/swag-tracking.json に保存する。
"""
from __future__ import annotations

import csv
import io
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .config import Settings
from .data_models import RedemptionEvent, RedemptionRecord, from_wei
from .errors import BaseError, log_exception
from .ledger.base import SwagRedemptionSource
from .metrics import SWAG_EVENTS
from .notify import NotificationLevel, Notifier
from .storage import JsonStore
from .timers import Clock, CronTrigger, IntervalTrigger, JobScheduler, SystemClock

_logger = logging.getLogger(__name__)

TRACKING_FILE = "swag-tracking"
OVERDUE_CRON = "0 10 * * *"


def _month(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m")


def _short(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


class SwagBurnTracker:
    def __init__(
        self,
        settings: Settings,
        source: SwagRedemptionSource,
        *,
        store: JsonStore | None = None,
        reports: JsonStore | None = None,
        exports: JsonStore | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        scheduler: JobScheduler | None = None,
    ) -> None:
        self.settings = settings
        self.source = source
        self.store = store or JsonStore(settings.data_dir)
        self.reports = reports or JsonStore(settings.reports_dir)
        self.exports = exports or JsonStore(settings.exports_dir)
        self.notifier = notifier or Notifier(settings.notification_webhook, timeout=settings.notification_timeout_sec)
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or JobScheduler(self.clock, name="swag")

        self.cursor: int = settings.swag_start_block
        self.records: dict[int, RedemptionRecord] = {}
        self.pending_fulfilled: set[int] = set()
        self._jobs_registered = False

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #
    async def start_tracking(self) -> None:
        await self.load_tracking_data()
        if not self._jobs_registered:
            self.scheduler.add_job("swag-poll", IntervalTrigger(self.settings.swag_poll_interval_sec), self.poll_once)
            self.scheduler.add_job("swag-overdue", CronTrigger(OVERDUE_CRON), self.check_overdue_redemptions)
            self._jobs_registered = True
        await self.scheduler.start()
        _logger.info("swag burn tracking started from block %d", self.cursor)

    async def stop_tracking(self) -> None:
        await self.scheduler.stop()
        await self.save_tracking_data()
        _logger.info("swag burn tracking stopped")

    # ------------------------------------------------------------------ #
    # event handling
    # ------------------------------------------------------------------ #
    async def poll_once(self) -> int:
        """1 回ポーリングして処理したイベント数を返す"""
        events, next_block = await self.source.fetch_events(self.cursor)
        events = sorted(events, key=lambda e: (e.block_number, e.log_index))
        handled = 0
        try:
            for event in events:
                await self.handle_event(event)
                handled += 1
        except BaseError as exc:
            # カーソルを進めずに保存 → 次回同じ範囲を再取得 (処理済み分は冪等に無視される)
            log_exception(exc, "swag event handling failed", component="swag", cursor=self.cursor)
            await self.save_tracking_data()
            raise
        self.cursor = max(self.cursor, next_block)
        await self.save_tracking_data()
        if handled:
            _logger.info("processed %d swag events, cursor=%d", handled, self.cursor)
        return handled

    async def handle_event(self, event: RedemptionEvent) -> None:
        SWAG_EVENTS.labels(kind=event.kind).inc()
        if event.kind == "redeemed":
            await self.record_redemption(event)
        elif event.kind == "fulfilled":
            self.update_fulfillment_status(event.redemption_id, True)
        else:
            _logger.warning("unknown swag event kind: %s", event.kind)

    async def record_redemption(self, event: RedemptionEvent) -> Optional[RedemptionRecord]:
        if event.redemption_id in self.records:
            _logger.debug("duplicate redemption %d ignored", event.redemption_id)
            return None
        details = await self.source.get_redemption(event.redemption_id)
        item = await self.source.get_swag_item(details.item_id)
        record = RedemptionRecord(
            redemption_id=event.redemption_id,
            user=event.user,
            item_id=details.item_id,
            item_name=item.name,
            cda_cost=event.cda_cost if event.cda_cost is not None else details.cda_cost,
            timestamp=details.timestamp,
            fulfilled=details.fulfilled or event.redemption_id in self.pending_fulfilled,
            shipping_info=details.shipping_info,
        )
        self.pending_fulfilled.discard(event.redemption_id)
        self.records[record.redemption_id] = record
        _logger.info("recorded redemption: %s for %s CDA", record.item_name, from_wei(record.cda_cost))
        await self.notifier.send(
            "New Swag Redemption",
            f"{record.item_name} redeemed by {_short(record.user)}",
            NotificationLevel.INFO,
            item=record.item_name,
            cost=f"{from_wei(record.cda_cost)} CDA",
            redemption_id=record.redemption_id,
        )
        return record

    def update_fulfillment_status(self, redemption_id: int, fulfilled: bool) -> None:
        record = self.records.get(redemption_id)
        if record is None:
            # SwagRedeemed がまだ届いていない
            self.pending_fulfilled.add(redemption_id)
            return
        record.fulfilled = fulfilled
        _logger.info("updated fulfillment status for redemption %d", redemption_id)

    # ------------------------------------------------------------------ #
    # stats / reports
    # ------------------------------------------------------------------ #
    def get_redemption_stats(self) -> dict:
        records = list(self.records.values())
        items: dict[str, dict] = defaultdict(lambda: {"count": 0, "total_cda": 0})
        months: dict[str, dict] = defaultdict(lambda: {"redemptions": 0, "cda_burned": 0})
        for r in records:
            items[r.item_name]["count"] += 1
            items[r.item_name]["total_cda"] += r.cda_cost
            m = months[_month(r.timestamp)]
            m["redemptions"] += 1
            m["cda_burned"] += r.cda_cost

        top = sorted(({"item_name": k, **v} for k, v in items.items()), key=lambda x: -x["count"])[:10]
        fulfilled = sum(1 for r in records if r.fulfilled)
        return {
            "total_redemptions": len(records),
            "total_cda_burned": sum(r.cda_cost for r in records),
            "fulfilled_redemptions": fulfilled,
            "pending_redemptions": len(records) - fulfilled,
            "top_items": top,
            "monthly_stats": [{"month": k, **months[k]} for k in sorted(months)],
        }

    async def generate_burn_report(self) -> Path:
        stats = self.get_redemption_stats()
        total = stats["total_redemptions"]
        burned = stats["total_cda_burned"]
        recent = sorted(self.records.values(), key=lambda r: r.timestamp, reverse=True)[:20]
        report = {
            "generated_at": self.clock.now().isoformat(),
            "report_period": "all time",
            "summary": {
                "total_redemptions": total,
                "total_cda_burned": burned,
                "total_cda_burned_cda": from_wei(burned),
                "average_cda_per_redemption": burned // total if total else 0,
                "fulfillment_rate": round(stats["fulfilled_redemptions"] * 100 / total, 2) if total else 0.0,
                "pending_fulfillments": stats["pending_redemptions"],
            },
            "top_items": stats["top_items"],
            "monthly_trends": stats["monthly_stats"],
            "recent_redemptions": [
                {
                    "date": datetime.fromtimestamp(r.timestamp, tz=timezone.utc).date().isoformat(),
                    "user": _short(r.user),
                    "item": r.item_name,
                    "cost": r.cda_cost,
                    "fulfilled": r.fulfilled,
                }
                for r in recent
            ],
        }
        path = await self.reports.write_report("swag-burn-report", report)
        _logger.info("total CDA burned: %s, pending fulfillments: %d", from_wei(burned), stats["pending_redemptions"])
        return path

    async def export_to_csv(self) -> Path:
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(["Redemption ID", "User", "Item Name", "CDA Cost", "Date", "Fulfilled", "Shipping Info"])
        for r in sorted(self.records.values(), key=lambda r: r.redemption_id):
            writer.writerow([
                r.redemption_id,
                r.user,
                r.item_name,
                from_wei(r.cda_cost),
                datetime.fromtimestamp(r.timestamp, tz=timezone.utc).isoformat(),
                r.fulfilled,
                r.shipping_info,
            ])
        path = await self.exports.write_report("swag-redemptions", buf.getvalue(), suffix=".csv")
        _logger.info("CSV exported to %s", path)
        return path

    async def check_overdue_redemptions(self, days: int | None = None) -> list[RedemptionRecord]:
        days = self.settings.overdue_days if days is None else days
        threshold = int((self.clock.now() - timedelta(days=days)).timestamp())
        overdue = [r for r in self.records.values() if not r.fulfilled and r.timestamp < threshold]
        if overdue:
            _logger.warning("found %d overdue redemptions (>%d days)", len(overdue), days)
            await self.notifier.send(
                "Overdue Redemptions",
                f"{len(overdue)} redemptions are overdue and need fulfillment",
                NotificationLevel.WARNING,
                ids=", ".join(str(r.redemption_id) for r in overdue[:10]),
            )
        return overdue

    # ------------------------------------------------------------------ #
    # persistence
    # ------------------------------------------------------------------ #
    async def load_tracking_data(self) -> None:
        raw = await self.store.load(TRACKING_FILE)
        if not raw:
            return
        self.cursor = max(self.cursor, int(raw.get("cursor", 0)))
        self.records = {
            r["redemption_id"]: RedemptionRecord.model_validate(r) for r in raw.get("records", [])
        }
        self.pending_fulfilled = set(raw.get("pending_fulfilled", []))
        _logger.info("loaded %d existing redemption records", len(self.records))

    async def save_tracking_data(self) -> None:
        await self.store.save(
            TRACKING_FILE,
            {
                "cursor": self.cursor,
                "records": list(self.records.values()),
                "pending_fulfilled": sorted(self.pending_fulfilled),
            },
        )

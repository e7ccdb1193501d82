# D:\cda_rewards\cda_rewards\reset_scheduler.py
# -*- coding: utf-8 -*-
"""
年次リセット スケジューラ

ジョブ:
    annual-reset      … schedule.cron_expression (既定 "0 0 1 8 *" = 8/1 00:00 UTC)
    eligibility-check … ELIGIBILITY_CRON (既定 毎日 09:00 UTC)

execute_scheduled_reset() の手順:
    1. getResetStatus()。不可ならエラー通知 1 件だけ出して終了 (台帳は一切触らない)
    2. reset-state.json が現サイクルで "submitted" のままなら二重送信を止める
    3. 事前タスク (最終サイクルレポート / バックアップ / 開始通知)。失敗したら中止
    4. dry run なら通知だけして終了
    5. initiateReset()。例外は捕捉し、状態を failed にしてエラー通知
    6. 事後タスク (サイクル番号の検証 / 新サイクルレポート / 外部通知) → 成功通知
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from .config import Settings
from .data_models import CycleInfo, ResetOutcome, ResetSchedule, ResetState, to_wei
from .errors import BaseError, ValidationError, log_exception
from .ledger.base import AllocationLedger
from .metrics import RESETS
from .notify import NotificationLevel, Notifier
from .reports import allocation_totals, collect_allocations
from .storage import JsonStore
from .timers import Clock, CronTrigger, JobScheduler, SystemClock, validate_cron

_logger = logging.getLogger(__name__)

STATE_FILE = "reset-state"

ResetListener = Callable[[CycleInfo], Awaitable[None]]


class ResetScheduler:
    def __init__(
        self,
        settings: Settings,
        ledger: AllocationLedger,
        *,
        schedule: ResetSchedule | None = None,
        notifier: Notifier | None = None,
        store: JsonStore | None = None,
        reports: JsonStore | None = None,
        backups: JsonStore | None = None,
        clock: Clock | None = None,
        scheduler: JobScheduler | None = None,
        listeners: list[ResetListener] | None = None,
        backup_sources: dict[str, Callable[[], Any]] | None = None,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.schedule = schedule or ResetSchedule(
            enabled=settings.reset_enabled,
            cron_expression=settings.reset_cron,
            dry_run=settings.reset_dry_run,
            notification_webhook=settings.notification_webhook,
        )
        validate_cron(self.schedule.cron_expression)
        self.notifier = notifier or Notifier(
            self.schedule.notification_webhook, timeout=settings.notification_timeout_sec
        )
        self.store = store or JsonStore(settings.data_dir)
        self.reports = reports or JsonStore(settings.reports_dir)
        self.backups = backups or JsonStore(settings.backups_dir)
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or JobScheduler(self.clock, name="reset")
        self.listeners: list[ResetListener] = list(listeners or [])
        self.backup_sources = dict(backup_sources or {})

        self.last_outcome: Optional[ResetOutcome] = None
        self._resetting = False
        self._jobs_registered = False

    # ------------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------------ #
    async def start_scheduler(self) -> None:
        if not self._jobs_registered:
            # cron 式は評価のたびに読み直す
            self.scheduler.add_job(
                "annual-reset", lambda: CronTrigger(self.schedule.cron_expression), self._scheduled_reset
            )
            self.scheduler.add_job(
                "eligibility-check", CronTrigger(self.settings.eligibility_cron), self.check_reset_eligibility
            )
            self._jobs_registered = True
        await self.scheduler.start()
        _logger.info(
            "reset scheduler started: %s (enabled=%s, dry_run=%s)",
            self.schedule.cron_expression, self.schedule.enabled, self.schedule.dry_run,
        )

    async def stop_scheduler(self) -> None:
        await self.scheduler.stop()
        _logger.info("reset scheduler stopped")

    async def _scheduled_reset(self) -> None:
        if not self.schedule.enabled:
            _logger.info("scheduled reset fired but schedule is disabled")
            return
        await self.execute_scheduled_reset()

    # ------------------------------------------------------------------ #
    # reset
    # ------------------------------------------------------------------ #
    async def execute_scheduled_reset(self) -> ResetOutcome:
        if self._resetting:
            _logger.warning("reset already in progress, skipping")
            return ResetOutcome(status="skipped", reason="reset already in progress")
        self._resetting = True
        try:
            outcome = await self._execute()
        finally:
            self._resetting = False
        self.last_outcome = outcome
        RESETS.labels(outcome=outcome.status).inc()
        return outcome

    async def _execute(self) -> ResetOutcome:
        _logger.info("executing scheduled annual reset")

        status = await self.ledger.get_reset_status()
        if not status.can_reset_now:
            _logger.warning("reset not allowed: %s", status.reset_reason)
            await self.notifier.send(
                "Reset Failed", f"Reset not allowed: {status.reset_reason}", NotificationLevel.ERROR
            )
            return ResetOutcome(status="not_eligible", reason=status.reset_reason)

        cycle = await self.ledger.get_cycle_info()
        state = await self.load_state()
        if state is not None and state.status == "submitted" and state.from_cycle == cycle.cycle:
            msg = f"a reset for cycle {cycle.cycle} was already submitted ({state.tx_hash}); resolve it manually"
            _logger.error(msg)
            await self.notifier.send("Reset Blocked", msg, NotificationLevel.ERROR)
            return ResetOutcome(status="blocked", reason=msg, from_cycle=cycle.cycle, tx_hash=state.tx_hash)

        try:
            await self.perform_pre_reset_tasks(cycle)
        except BaseError as exc:
            log_exception(exc, "pre-reset tasks failed", component="reset_scheduler")
            await self.notifier.send(
                "Reset Aborted", f"Pre-reset tasks failed: {exc}", NotificationLevel.ERROR
            )
            return ResetOutcome(status="pre_reset_failed", reason=str(exc), from_cycle=cycle.cycle)

        if self.schedule.dry_run:
            await self.notifier.send(
                "Dry Run Reset", f"Dry run: cycle {cycle.cycle} would be reset now", NotificationLevel.INFO
            )
            return ResetOutcome(status="dry_run", from_cycle=cycle.cycle)

        await self.save_state(ResetState(from_cycle=cycle.cycle, status="submitted", updated_at=self.clock.now()))
        try:
            receipt = await self.ledger.initiate_reset()
        except Exception as exc:
            log_exception(exc, "annual reset failed", component="reset_scheduler", from_cycle=cycle.cycle)
            # 送信済みで結果不明なら submitted のまま残して再送を止める
            sent = exc.context.get("tx_hash") if isinstance(exc, BaseError) else None
            await self.save_state(
                ResetState(
                    from_cycle=cycle.cycle,
                    status="submitted" if sent else "failed",
                    tx_hash=sent,
                    updated_at=self.clock.now(),
                )
            )
            await self.notifier.send("Reset Failed", f"Annual reset failed: {exc}", NotificationLevel.ERROR)
            return ResetOutcome(status="failed", reason=str(exc), from_cycle=cycle.cycle)

        await self.save_state(
            ResetState(from_cycle=cycle.cycle, status="submitted", tx_hash=receipt.tx_hash, updated_at=self.clock.now())
        )
        _logger.info("reset transaction confirmed: %s", receipt.tx_hash)

        new_cycle = await self.perform_post_reset_tasks(cycle.cycle)
        if new_cycle.cycle <= cycle.cycle:
            msg = f"cycle did not advance after reset (was {cycle.cycle}, now {new_cycle.cycle})"
            _logger.error(msg)
            await self.notifier.send("Reset Verification Failed", msg, NotificationLevel.ERROR)
            return ResetOutcome(
                status="unverified", reason=msg, from_cycle=cycle.cycle,
                new_cycle=new_cycle.cycle, tx_hash=receipt.tx_hash,
            )

        await self.save_state(
            ResetState(from_cycle=cycle.cycle, status="completed", tx_hash=receipt.tx_hash, updated_at=self.clock.now())
        )
        await self.notifier.send(
            "Reset Completed",
            f"Annual CDA reset completed. New cycle: {new_cycle.cycle}",
            NotificationLevel.SUCCESS,
            tx_hash=receipt.tx_hash,
        )
        return ResetOutcome(
            status="completed", from_cycle=cycle.cycle, new_cycle=new_cycle.cycle, tx_hash=receipt.tx_hash
        )

    async def perform_pre_reset_tasks(self, cycle: CycleInfo) -> None:
        _logger.info("performing pre-reset tasks")
        await self.generate_final_cycle_report(cycle)
        await self.backup_current_state(cycle)
        if self.schedule.dry_run:
            title, message = "Dry Run Reset Starting", "Dry run: no reset will be submitted and balances are unchanged."
        else:
            title, message = "Reset Starting", "Annual CDA reset is starting. All token balances will be reset to zero."
        await self.notifier.send(title, message, NotificationLevel.INFO)

    async def perform_post_reset_tasks(self, from_cycle: int) -> CycleInfo:
        _logger.info("performing post-reset tasks")
        cycle = await self.ledger.get_cycle_info()
        _logger.info("new cycle: %d (from %d)", cycle.cycle, from_cycle)
        if cycle.cycle > from_cycle:
            await self.generate_new_cycle_report(cycle)
            await self.notify_external_systems(cycle)
        return cycle

    # ------------------------------------------------------------------ #
    # reports / backup
    # ------------------------------------------------------------------ #
    async def generate_final_cycle_report(self, cycle: CycleInfo) -> dict:
        usages = await collect_allocations(self.ledger, self.settings.category_caps)
        report = {
            "cycle_number": cycle.cycle,
            "cycle_end_date": self.clock.now().isoformat(),
            "days_until_reset": cycle.days_until_reset,
            "final_allocations": {u.category: u.model_dump(exclude={"category"}) for u in usages},
            "total_utilization": allocation_totals(usages),
        }
        await self.reports.write_report(f"final-cycle-{cycle.cycle}", report)
        _logger.info("overall utilization: %.2f%%", report["total_utilization"]["overall_utilization"])
        return report

    async def generate_new_cycle_report(self, cycle: CycleInfo) -> dict:
        reset_at = datetime.fromtimestamp(cycle.reset_timestamp, tz=timezone.utc)
        caps = self.settings.category_caps
        report = {
            "new_cycle_number": cycle.cycle,
            "cycle_start_date": self.clock.now().isoformat(),
            "reset_timestamp": cycle.reset_timestamp,
            "fresh_allocations": {c: to_wei(v) for c, v in caps.items()},
            "fresh_allocations_total": to_wei(sum(caps.values())),
            "next_reset_eligible": (reset_at + timedelta(days=365)).isoformat(),
        }
        await self.reports.write_report(f"new-cycle-{cycle.cycle}", report)
        return report

    async def backup_current_state(self, cycle: CycleInfo) -> None:
        data: dict[str, Any] = {
            "timestamp": self.clock.now().isoformat(),
            "cycle_info": cycle,
            "allocations": await collect_allocations(self.ledger, self.settings.category_caps),
        }
        for name, source in self.backup_sources.items():
            data[name] = source()
        path = await self.backups.write_report("pre-reset-backup", data)
        _logger.info("backup created: %s", path)

    async def notify_external_systems(self, cycle: CycleInfo) -> None:
        for listener in self.listeners:
            try:
                await listener(cycle)
            except Exception as exc:
                log_exception(exc, "reset listener failed", component="reset_scheduler", cycle=cycle.cycle)

    # ------------------------------------------------------------------ #
    # eligibility
    # ------------------------------------------------------------------ #
    async def check_reset_eligibility(self) -> dict:
        status = await self.ledger.get_reset_status()
        cycle = await self.ledger.get_cycle_info()
        days = status.days_until_eligible

        if 0 < days <= self.settings.reminder_window_days:
            await self.notifier.send(
                "Reset Reminder",
                f"CDA system reset eligible in {days} days. Current cycle: {cycle.cycle}",
                NotificationLevel.WARNING,
            )
        if status.can_reset_now and days == 0:
            await self.notifier.send(
                "Reset Overdue",
                f"CDA system reset is now eligible and overdue. Current cycle: {cycle.cycle}",
                NotificationLevel.ERROR,
            )
        return {
            "cycle": cycle.cycle,
            "can_reset_now": status.can_reset_now,
            "reset_reason": status.reset_reason,
            "days_until_eligible": days,
        }

    # ------------------------------------------------------------------ #
    # schedule
    # ------------------------------------------------------------------ #
    def update_schedule(self, **partial: Any) -> ResetSchedule:
        """notification_webhook の変更はこのスケジューラの通知にだけ効く"""
        unknown = set(partial) - set(ResetSchedule.model_fields)
        if unknown:
            raise ValidationError(f"unknown schedule fields: {sorted(unknown)}")
        if "cron_expression" in partial:
            validate_cron(partial["cron_expression"])
        try:
            updated = ResetSchedule.model_validate({**self.schedule.model_dump(), **partial})
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid schedule: {exc}") from exc
        self.schedule = updated
        self.notifier.webhook_url = updated.notification_webhook
        _logger.info("reset schedule updated: %s", updated.model_dump(exclude={"notification_webhook"}))
        return updated

    def get_status(self) -> dict:
        now = self.clock.now()
        return {
            "running": self.scheduler.running,
            "resetting": self._resetting,
            "schedule": self.schedule.model_dump(exclude={"notification_webhook"}),
            "next_reset": CronTrigger(self.schedule.cron_expression).next_fire(now).isoformat(),
            "next_eligibility_check": CronTrigger(self.settings.eligibility_cron).next_fire(now).isoformat(),
            "last_outcome": self.last_outcome.model_dump() if self.last_outcome else None,
        }

    # ------------------------------------------------------------------ #
    # persistence
    # ------------------------------------------------------------------ #
    async def load_state(self) -> Optional[ResetState]:
        raw = await self.store.load(STATE_FILE)
        return ResetState.model_validate(raw) if raw else None

    async def save_state(self, state: ResetState) -> None:
        await self.store.save(STATE_FILE, state)

# D:\cda_rewards\cda_rewards\tests\test_reset_scheduler.py
"""
年次リセット スケジューラのテスト

FakeLedger の can_reset / reset_error / reset_advances_cycle を切り替えて
execute_scheduled_reset() の各分岐を通す。
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

from cda_rewards.data_models import ResetSchedule
from cda_rewards.errors import LedgerError, LedgerRevertError, StorageError, ValidationError
from cda_rewards.notify import NotificationLevel
from cda_rewards.reset_scheduler import ResetScheduler
from cda_rewards.storage import JsonStore


class BrokenReports(JsonStore):
    async def write_report(self, prefix, data, *, suffix=".json"):
        raise StorageError("disk full")


@pytest.fixture
def reset(settings, ledger, notifier, clock):
    return ResetScheduler(settings, ledger, notifier=notifier, clock=clock)


def _reports(settings, prefix):
    return JsonStore(settings.reports_dir).list_reports(prefix)


# ───────────────────────────────────────────────
# 1) execute_scheduled_reset の分岐
# ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_not_eligible_touches_nothing(reset, ledger, notifier, settings):
    ledger.can_reset = False
    ledger.reset_reason = "Too early for reset"

    outcome = await reset.execute_scheduled_reset()

    assert outcome.status == "not_eligible"
    assert outcome.reason == "Too early for reset"
    assert ledger.mutations == []
    assert notifier.levels() == [NotificationLevel.ERROR]
    assert _reports(settings, "final-cycle") == []
    assert await reset.load_state() is None


@pytest.mark.asyncio
async def test_dry_run_stops_before_initiate(reset, ledger, notifier, settings):
    reset.update_schedule(dry_run=True)

    outcome = await reset.execute_scheduled_reset()

    assert outcome.status == "dry_run"
    assert ledger.mutations == []
    assert [t for t, _, _ in notifier.sent] == ["Dry Run Reset Starting", "Dry Run Reset"]
    assert not any("reset to zero" in m for _, m, _ in notifier.sent)
    assert len(_reports(settings, "final-cycle-1")) == 1
    assert len(JsonStore(settings.backups_dir).list_reports("pre-reset-backup")) == 1


@pytest.mark.asyncio
async def test_completed_reset(reset, ledger, notifier, settings):
    seen = []

    async def listener(cycle):
        seen.append(cycle.cycle)

    reset.listeners.append(listener)
    reset.backup_sources["node_rewards"] = lambda: {"2025-02": []}

    outcome = await reset.execute_scheduled_reset()

    assert outcome.status == "completed"
    assert (outcome.from_cycle, outcome.new_cycle) == (1, 2)
    assert [m[0] for m in ledger.mutations] == ["reset"]
    assert seen == [2]
    assert notifier.levels()[-1] == NotificationLevel.SUCCESS
    state = await reset.load_state()
    assert state.status == "completed"
    assert state.tx_hash == outcome.tx_hash

    new_cycle = json.loads(_reports(settings, "new-cycle-2")[0].read_text())
    assert new_cycle["next_reset_eligible"].startswith("2025-08-01")
    backup = json.loads(JsonStore(settings.backups_dir).list_reports("pre-reset-backup")[0].read_text())
    assert backup["node_rewards"] == {"2025-02": []}
    assert backup["cycle_info"]["cycle"] == 1


@pytest.mark.asyncio
async def test_listener_failure_does_not_fail_reset(reset):
    async def broken(cycle):
        raise RuntimeError("listener down")

    reset.listeners.append(broken)
    outcome = await reset.execute_scheduled_reset()
    assert outcome.status == "completed"


@pytest.mark.asyncio
async def test_revert_marks_state_failed(reset, ledger, notifier):
    ledger.reset_error = LedgerRevertError("Reset not allowed yet")

    outcome = await reset.execute_scheduled_reset()

    assert outcome.status == "failed"
    assert "Reset not allowed yet" in outcome.reason
    assert (await reset.load_state()).status == "failed"
    assert notifier.sent[-1][0] == "Reset Failed"
    assert notifier.levels()[-1] == NotificationLevel.ERROR


@pytest.mark.asyncio
async def test_unknown_outcome_blocks_resubmission(reset, ledger, notifier):
    ledger.reset_error = LedgerError("receipt wait timed out", tx_hash="0xabc")

    first = await reset.execute_scheduled_reset()
    assert first.status == "failed"
    state = await reset.load_state()
    assert (state.status, state.tx_hash) == ("submitted", "0xabc")

    ledger.reset_error = None
    second = await reset.execute_scheduled_reset()
    assert second.status == "blocked"
    assert second.tx_hash == "0xabc"
    assert ledger.mutations == []
    assert notifier.sent[-1][0] == "Reset Blocked"


@pytest.mark.asyncio
async def test_cycle_not_advanced_is_unverified(reset, ledger, notifier):
    ledger.reset_advances_cycle = False

    outcome = await reset.execute_scheduled_reset()

    assert outcome.status == "unverified"
    assert notifier.sent[-1][0] == "Reset Verification Failed"
    assert (await reset.load_state()).status == "submitted"


@pytest.mark.asyncio
async def test_pre_reset_failure_aborts(settings, ledger, notifier, clock):
    reset = ResetScheduler(settings, ledger, notifier=notifier, clock=clock, reports=BrokenReports(settings.reports_dir))

    outcome = await reset.execute_scheduled_reset()

    assert outcome.status == "pre_reset_failed"
    assert ledger.mutations == []
    assert notifier.sent[-1][0] == "Reset Aborted"


@pytest.mark.asyncio
async def test_concurrent_execution_skipped(reset, ledger):
    reset._resetting = True
    outcome = await reset.execute_scheduled_reset()
    assert outcome.status == "skipped"
    assert ledger.mutations == []


# ───────────────────────────────────────────────
# 2) 適格性チェック
# ───────────────────────────────────────────────
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "days,can_reset,expected",
    [
        (10, False, ["Reset Reminder"]),
        (30, False, ["Reset Reminder"]),
        (31, False, []),
        (0, True, ["Reset Overdue"]),
        (0, False, []),
    ],
)
async def test_eligibility_notifications(reset, ledger, notifier, days, can_reset, expected):
    ledger.days_until_eligible = days
    ledger.can_reset = can_reset

    result = await reset.check_reset_eligibility()

    assert [t for t, _, _ in notifier.sent] == expected
    assert result["days_until_eligible"] == days
    assert ledger.mutations == []


# ───────────────────────────────────────────────
# 3) スケジュール
# ───────────────────────────────────────────────
def test_update_schedule_validates(reset, notifier):
    with pytest.raises(ValidationError):
        reset.update_schedule(cron_expression="not a cron")
    with pytest.raises(ValidationError):
        reset.update_schedule(timezone="UTC")
    with pytest.raises(ValidationError):
        reset.update_schedule(enabled="maybe")
    assert reset.schedule == ResetSchedule(cron_expression="0 0 1 8 *")

    updated = reset.update_schedule(cron_expression="0 12 1 8 *", notification_webhook="https://hooks.example/x")
    assert updated.cron_expression == "0 12 1 8 *"
    assert notifier.webhook_url == "https://hooks.example/x"
    assert "notification_webhook" not in reset.get_status()["schedule"]


def test_get_status_reports_next_fire_times(reset):
    status = reset.get_status()
    assert status["next_reset"] == "2025-08-01T00:00:00+00:00"
    assert status["next_eligibility_check"] == "2025-03-01T09:00:00+00:00"
    assert status["last_outcome"] is None


@pytest.mark.asyncio
async def test_scheduled_job_uses_updated_cron(reset, ledger, clock):
    await reset.start_scheduler()
    await reset.stop_scheduler()

    reset.update_schedule(cron_expression="0 0 1 4 *")
    clock.current = datetime(2025, 4, 1, 0, 0, 1, tzinfo=timezone.utc)
    tasks = await reset.scheduler.run_due()
    await asyncio.gather(*tasks)

    assert reset.last_outcome.status == "completed"
    assert [m[0] for m in ledger.mutations] == ["reset"]


@pytest.mark.asyncio
async def test_disabled_schedule_does_not_reset(reset, ledger, clock):
    await reset.start_scheduler()
    await reset.stop_scheduler()

    reset.update_schedule(enabled=False)
    clock.current = datetime(2025, 8, 1, 0, 0, 1, tzinfo=timezone.utc)
    await asyncio.gather(*await reset.scheduler.run_due())

    assert ledger.mutations == []
    assert reset.last_outcome is None

# D:\cda_rewards\cda_rewards\tests\test_dispenser.py
"""
pytest -q cda_rewards/tests/test_dispenser.py
"""
from __future__ import annotations

import json

import pytest

from cda_rewards.data_models import ActivityRecord, ActivityType, NodeRunner, to_wei
from cda_rewards.dispenser import RewardDispenser
from cda_rewards.errors import (
    AllocationExceededError,
    BatchDistributionError,
    LedgerRevertError,
    ValidationError,
)
from cda_rewards.storage import JsonStore

from conftest import ALICE, BOB, CAROL, DAVE


@pytest.fixture
def dispenser(settings, ledger):
    return RewardDispenser(settings, ledger, ledger)


def _rec(address, kind, **kw):
    return ActivityRecord(address=address, activity_type=kind, **kw)


# ───────────────────────────────────────────────
# 1) バッチ配布
# ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_batch_groups_by_activity_type(dispenser, ledger):
    outcomes = await dispenser.process_activity_batch([
        _rec(ALICE, ActivityType.EVENT),
        _rec(BOB, ActivityType.PRESENTATION),
        _rec(CAROL, ActivityType.EVENT, count=2),
    ])

    assert [o.activity_type for o in outcomes] == [ActivityType.EVENT, ActivityType.PRESENTATION]
    batches = [m for m in ledger.mutations if m[0] == "batch"]
    assert batches[0][1:4] == ((ALICE, CAROL), (to_wei(50), to_wei(100)), "activity")
    assert batches[1][1:4] == ((BOB,), (to_wei(200),), "milestone")
    assert [c[2] for c in ledger.badge_calls] == ["event", "presentation"]
    assert ledger.badge_calls[0][3] == (1, 2)
    assert outcomes[0].total_amount == to_wei(150)


@pytest.mark.asyncio
async def test_explicit_amount_overrides_schedule(dispenser, ledger):
    await dispenser.process_activity_batch([_rec(ALICE, ActivityType.VOLUNTEER, amount=123)])
    assert ledger.mutations[0][2] == (123,)


@pytest.mark.asyncio
async def test_empty_batch_rejected(dispenser, ledger):
    with pytest.raises(ValidationError):
        await dispenser.process_activity_batch([])
    assert ledger.mutations == []


@pytest.mark.asyncio
async def test_invalid_address_rejected_before_any_call(dispenser, ledger):
    with pytest.raises(ValidationError):
        await dispenser.process_activity_batch([
            _rec(ALICE, ActivityType.EVENT),
            _rec("not-an-address", ActivityType.PROJECT),
        ])
    assert ledger.mutations == []


@pytest.mark.asyncio
async def test_failed_group_names_type_and_count(dispenser, ledger):
    ledger.fail_categories["milestone"] = LedgerRevertError("boom")

    with pytest.raises(BatchDistributionError) as ei:
        await dispenser.process_activity_batch([
            _rec(ALICE, ActivityType.EVENT),
            _rec(BOB, ActivityType.PROJECT),
            _rec(CAROL, ActivityType.PROJECT),
        ])

    err = ei.value
    assert err.activity_type == "project"
    assert err.recipient_count == 2
    assert err.stage == "tokens"
    # 先に成功したグループはそのまま
    assert [m[3] for m in ledger.mutations] == ["activity"]


@pytest.mark.asyncio
async def test_badge_failure_reports_badges_stage(dispenser, ledger):
    ledger.badge_error = LedgerRevertError("badge contract paused")

    with pytest.raises(BatchDistributionError) as ei:
        await dispenser.process_activity_batch([_rec(ALICE, ActivityType.EVENT)])

    assert ei.value.stage == "badges"
    assert len(ledger.mutations) == 1


@pytest.mark.asyncio
async def test_allocation_never_exceeded(settings):
    from conftest import FakeLedger

    ledger = FakeLedger({**settings.category_caps, "activity": 120})
    dispenser = RewardDispenser(settings, ledger, ledger)

    await dispenser.process_activity_batch([_rec(ALICE, ActivityType.EVENT), _rec(BOB, ActivityType.EVENT)])
    with pytest.raises(BatchDistributionError) as ei:
        await dispenser.process_activity_batch([_rec(CAROL, ActivityType.EVENT)])

    assert isinstance(ei.value.cause, AllocationExceededError)
    assert ledger.used["activity"] == to_wei(100)
    assert ledger.used["activity"] <= ledger.caps["activity"]


# ───────────────────────────────────────────────
# 2) 単発配布
# ───────────────────────────────────────────────
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "address,amount,category",
    [
        (ALICE, 0, "milestone"),
        (ALICE, -5, "milestone"),
        (ALICE, 10, "marketing"),
        ("0x123", 10, "milestone"),
    ],
)
async def test_special_reward_validation(dispenser, ledger, address, amount, category):
    with pytest.raises(ValidationError):
        await dispenser.distribute_special_reward(address, amount, "bonus", category)
    assert ledger.mutations == []


@pytest.mark.asyncio
async def test_special_reward_allocation_exceeded_propagates(settings):
    from conftest import FakeLedger

    ledger = FakeLedger({**settings.category_caps, "admin": 1})
    dispenser = RewardDispenser(settings, ledger, ledger)

    with pytest.raises(AllocationExceededError) as ei:
        await dispenser.distribute_special_reward(ALICE, to_wei(2), "bonus", "admin")
    assert ei.value.category == "admin"
    assert ledger.mutations == []


@pytest.mark.asyncio
async def test_hackathon_tiers(dispenser, ledger):
    results = await dispenser.distribute_hackathon_rewards([
        {"address": ALICE, "name": "Alpha", "place": 1},
        {"address": BOB, "name": "Beta", "place": 2},
        {"address": CAROL, "name": "Gamma", "place": 3},
        {"address": DAVE, "name": "Delta", "place": 4},
    ])

    assert [r["amount"] for r in results] == [to_wei(1000), to_wei(750), to_wei(500), to_wei(250)]
    assert all(m[3] == "milestone" for m in ledger.mutations)
    assert ledger.mutations[0][4] == "Hackathon 1st place winner"
    assert ledger.mutations[3][4] == "Hackathon 4th place winner"
    assert [c[2] for c in ledger.badge_calls] == ["project"] * 4


@pytest.mark.asyncio
async def test_hackathon_failure_does_not_stop_other_winners(dispenser, ledger):
    ledger.fail_recipients[BOB] = LedgerRevertError("paused")

    results = await dispenser.distribute_hackathon_rewards([
        {"address": ALICE, "place": 1},
        {"address": BOB, "place": 2},
        {"address": CAROL, "place": 3},
    ])

    assert [r["tx_hash"] is not None for r in results] == [True, False, True]
    assert "paused" in results[1]["error"]
    assert [m[1] for m in ledger.mutations] == [ALICE, CAROL]
    assert [c[1] for c in ledger.badge_calls] == [(ALICE,), (CAROL,)]


@pytest.mark.asyncio
async def test_hackathon_badge_failure_keeps_paid_tx(dispenser, ledger):
    ledger.badge_error = LedgerRevertError("badge paused")

    results = await dispenser.distribute_hackathon_rewards([
        {"address": ALICE, "place": 1},
        {"address": BOB, "place": 2},
    ])

    assert all(r["tx_hash"] for r in results)
    assert all("badge paused" in r["badge_error"] for r in results)
    assert len(ledger.mutations) == 2


# ───────────────────────────────────────────────
# 3) ノードランナー
# ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_node_runner_low_uptime_skipped(dispenser, ledger):
    result = await dispenser.distribute_node_runner_rewards([
        NodeRunner(address=ALICE, uptime=0.9, name="good"),
        NodeRunner(address=BOB, uptime=0.6, name="flaky"),
    ])

    good, flaky = result["payouts"]
    assert good.amount == to_wei(5000)
    assert good.distributed
    assert flaky.skipped_reason is not None
    assert flaky.amount == 0
    assert result["rounding_residue"] == 0
    assert ledger.balances.get(BOB, 0) == 0


@pytest.mark.asyncio
async def test_node_runner_failure_does_not_stop_others(dispenser, ledger):
    ledger.fail_recipients[ALICE] = LedgerRevertError("recipient blocked")

    result = await dispenser.distribute_node_runner_rewards([
        NodeRunner(address=ALICE, uptime=0.9),
        NodeRunner(address=BOB, uptime=0.9),
    ])

    alice, bob = result["payouts"]
    assert not alice.distributed and alice.error
    assert bob.distributed
    assert bob.amount == to_wei(2500)
    assert result["distributed"] == to_wei(2500)


# ───────────────────────────────────────────────
# 4) レポート / CSV / プロフィール
# ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_reward_report_is_read_only(dispenser, ledger, settings):
    await dispenser.distribute_special_reward(ALICE, to_wei(1500), "bonus", "milestone")
    before = list(ledger.mutations)

    report = await dispenser.generate_reward_report()

    assert ledger.mutations == before
    milestone = next(c for c in report["categories"] if c["category"] == "milestone")
    assert milestone["utilization_rate"] == 10.0
    saved = JsonStore(settings.reports_dir).list_reports("reward-report")
    assert len(saved) == 1
    assert json.loads(saved[0].read_text())["cycle"] == 1


@pytest.mark.asyncio
async def test_event_attendance_csv(dispenser, ledger, tmp_path):
    path = tmp_path / "attendance.csv"
    path.write_text(
        "address,name,role\n"
        f"{ALICE},Alice,speaker\n"
        ",Nobody,\n"
        "0xnothex,Broken,\n"
        f"{BOB},Bob,\n",
        encoding="utf-8",
    )

    outcomes = await dispenser.process_event_attendance(path)

    assert len(outcomes) == 1
    assert outcomes[0].recipients == 2
    assert ledger.mutations[0][3] == "activity"


@pytest.mark.asyncio
async def test_participant_profile(dispenser, ledger):
    await dispenser.process_activity_batch([_rec(ALICE, ActivityType.EVENT)])
    profile = await dispenser.get_participant_profile(ALICE)
    assert profile["balance"] == to_wei(50)
    assert profile["badges"]["events_attended"] == 1

# D:\cda_rewards\cda_rewards\tests\test_errors.py
"""
errors パッケージ (ポリシー / handle デコレーター) のテスト
"""
from __future__ import annotations

import pytest

from cda_rewards.errors import (
    AlertLevel,
    AllocationExceededError,
    BatchDistributionError,
    ErrorPolicy,
    LedgerError,
    LedgerNetworkError,
    LedgerRevertError,
    ValidationError,
    get_policy,
    handle,
)


def test_policy_lookup():
    net = get_policy(LedgerNetworkError)
    assert net.max_attempts == 2
    assert net.alert_level is AlertLevel.WARNING

    # サブクラスは親のポリシー、ただし retryable でなければリトライ 0
    assert get_policy(AllocationExceededError("node", 1)).max_attempts == 0
    assert get_policy(LedgerError("unknown")).max_attempts == 0
    assert get_policy(ValidationError).alert_level is AlertLevel.NONE


def test_policy_env_override(monkeypatch):
    monkeypatch.setenv("LEDGERNETWORKERROR_MAX", "5")
    monkeypatch.setenv("LEDGERNETWORKERROR_ALERT", "CRITICAL")
    pol = get_policy(LedgerNetworkError)
    assert pol.max_attempts == 5
    assert pol.initial_backoff == 0.0     # conftest で 0 に上書き済み
    assert pol.alert_level is AlertLevel.CRITICAL


def test_backoff_is_exponential():
    pol = ErrorPolicy(max_attempts=3, initial_backoff=1.0)
    assert [pol.backoff_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_exception_context():
    err = AllocationExceededError("swag", 42)
    assert err.context == {"category": "swag", "amount": 42}
    assert "swag" in str(err)

    batch = BatchDistributionError("event", 3, "tokens", err)
    assert batch.context["recipient_count"] == 3
    assert batch.cause is err


# ───────────────────────────────────────────────
# handle デコレーター
# ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_handle_retries_transient_errors():
    calls = 0

    @handle
    async def flaky():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise LedgerNetworkError("connection refused")
        return "ok"

    assert await flaky() == "ok"
    assert calls == 3


@pytest.mark.asyncio
async def test_handle_gives_up_after_max_attempts():
    calls = 0

    @handle
    async def down():
        nonlocal calls
        calls += 1
        raise LedgerNetworkError("connection refused")

    with pytest.raises(LedgerNetworkError):
        await down()
    assert calls == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [LedgerRevertError("revert"), AllocationExceededError("node", 1), ValidationError("bad")])
async def test_handle_does_not_retry_terminal_errors(exc):
    calls = 0

    @handle
    async def fail():
        nonlocal calls
        calls += 1
        raise exc

    with pytest.raises(type(exc)):
        await fail()
    assert calls == 1


@pytest.mark.asyncio
async def test_handle_passes_through_foreign_exceptions():
    @handle
    async def boom():
        raise KeyError("x")

    with pytest.raises(KeyError):
        await boom()

# D:\cda_rewards\cda_rewards\tests\test_ledger.py
"""
ResilientLedger (リトライ) と web3 例外の対応付け
"""
from __future__ import annotations

import asyncio
from types import SimpleNamespace

import aiohttp
import pytest
from web3.exceptions import ContractLogicError, TransactionNotFound

from cda_rewards.errors import (
    AllocationExceededError,
    ConfigurationError,
    LedgerNetworkError,
    LedgerRevertError,
)
from cda_rewards.ledger import ResilientLedger, Web3Ledger
from cda_rewards.ledger.web3_client import _guard, _to_ledger_error

from conftest import ALICE, FakeLedger


class FlakyLedger(FakeLedger):
    """最初の n 回だけ LedgerNetworkError を投げる"""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def get_remaining_allocation(self, category: str) -> int:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise LedgerNetworkError("connection reset")
        return await super().get_remaining_allocation(category)


# ───────────────────────────────────────────────
# 1) ResilientLedger
# ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_network_errors_are_retried():
    inner = FlakyLedger(failures=2)
    ledger = ResilientLedger(inner, inner)

    assert await ledger.get_remaining_allocation("node") == inner.remaining("node")
    assert inner.attempts == 3


@pytest.mark.asyncio
async def test_retry_budget_exhausted():
    inner = FlakyLedger(failures=10)
    with pytest.raises(LedgerNetworkError):
        await ResilientLedger(inner).get_remaining_allocation("node")
    assert inner.attempts == 3


@pytest.mark.asyncio
async def test_revert_is_not_retried():
    inner = FakeLedger()
    inner.fail_recipients[ALICE] = LedgerRevertError("paused")
    with pytest.raises(LedgerRevertError):
        await ResilientLedger(inner).distribute_reward(ALICE, 1, "x", "admin")


@pytest.mark.asyncio
async def test_missing_badge_registry():
    with pytest.raises(ConfigurationError):
        await ResilientLedger(FakeLedger()).record_activity(ALICE, "event", 1)


# ───────────────────────────────────────────────
# 2) web3 例外 → 独自例外
# ───────────────────────────────────────────────
def test_allocation_revert_maps_to_allocation_exceeded():
    exc = ContractLogicError("execution reverted: Exceeds category allocation")
    err = _to_ledger_error(exc, "distributeReward", category="node", amount=10)
    assert isinstance(err, AllocationExceededError)
    assert (err.category, err.amount) == ("node", 10)


def test_other_revert_maps_to_revert_error():
    err = _to_ledger_error(ContractLogicError("execution reverted: Ownable"), "initiateReset")
    assert type(err) is LedgerRevertError
    assert not err.retryable


def test_connection_errors_are_retryable():
    err = _to_ledger_error(aiohttp.ClientConnectionError("refused"), "balanceOf")
    assert isinstance(err, LedgerNetworkError)
    assert err.retryable
    assert isinstance(_to_ledger_error(asyncio.TimeoutError(), "balanceOf"), LedgerNetworkError)


@pytest.mark.asyncio
async def test_guard_wraps_and_chains():
    async def call():
        raise ContractLogicError("execution reverted: nope")

    with pytest.raises(LedgerRevertError) as ei:
        await _guard(call(), "getCycleInfo")
    assert isinstance(ei.value.__cause__, ContractLogicError)


def test_web3_ledger_requires_addresses(settings):
    with pytest.raises(ConfigurationError) as ei:
        Web3Ledger(settings)
    assert "CDA_TOKEN_ADDRESS" in str(ei.value)
    assert "OPERATOR_PRIVATE_KEY" in ei.value.context["missing"]


class _ReceiptEth:
    def __init__(self, receipts: dict) -> None:
        self.receipts = receipts

    async def get_transaction_receipt(self, tx_hash):
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"transaction {tx_hash} not found")
        return self.receipts[tx_hash]


@pytest.mark.asyncio
async def test_transaction_status_from_receipt():
    ledger = Web3Ledger.__new__(Web3Ledger)
    ledger.w3 = SimpleNamespace(eth=_ReceiptEth({"0xok": {"status": 1}, "0xbad": {"status": 0}}))

    assert await ledger.get_transaction_status("0xok") is True
    assert await ledger.get_transaction_status("0xbad") is False
    assert await ledger.get_transaction_status("0xgone") is None

# D:\cda_rewards\cda_rewards\ledger\web3_client.py
# -*- coding: utf-8 -*-
"""
web3.py (AsyncWeb3) による台帳クライアント

* Web3Ledger         … CDAERC20 / CDAResetManager / CDABadgeNFT
* Web3SwagRedemption … SwagRedemption (イベントはブロック範囲ポーリング)

例外の対応付け:
    ContractLogicError (上限超過)  → AllocationExceededError
    ContractLogicError (その他)    → LedgerRevertError
    接続拒否 / タイムアウト         → LedgerNetworkError (retryable)
    送信後のレシート待ちタイムアウト → LedgerError (結果不明。再送すると二重配布になり得る)
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional, Sequence

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from ..config import Settings
from ..data_models import (
    BadgeInfo,
    CycleInfo,
    RedemptionDetails,
    RedemptionEvent,
    ResetStatus,
    SwagItem,
    TxReceipt,
)
from ..errors import (
    AllocationExceededError,
    ConfigurationError,
    LedgerError,
    LedgerNetworkError,
    LedgerRevertError,
)
from .abi import BADGE_NFT_ABI, CDA_TOKEN_ABI, RESET_MANAGER_ABI, SWAG_REDEMPTION_ABI
from .base import AllocationLedger, BadgeRegistry, SwagRedemptionSource

_logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)
_ALLOCATION_MARKERS = ("allocation", "exceed")


def _to_ledger_error(exc: Exception, op: str, category: str | None = None,
                     amount: int | None = None, **context: Any) -> Exception:
    if isinstance(exc, ContractLogicError):
        text = str(exc).lower()
        if category is not None and any(m in text for m in _ALLOCATION_MARKERS):
            return AllocationExceededError(category, amount or 0, f"{op}: {exc}", op=op, **context)
        return LedgerRevertError(f"{op} reverted: {exc}", op=op, category=category, amount=amount, **context)
    if isinstance(exc, _NETWORK_ERRORS):
        return LedgerNetworkError(f"{op}: {exc}", op=op, **context)
    return exc


async def _guard(coro: Awaitable[Any], op: str, **context: Any) -> Any:
    try:
        return await coro
    except (ContractLogicError, *_NETWORK_ERRORS) as exc:
        raise _to_ledger_error(exc, op, **context) from exc


def make_web3(settings: Settings) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(settings.rpc_url, request_kwargs={"timeout": settings.tx_timeout_sec}))


class Web3Ledger(AllocationLedger, BadgeRegistry):
    def __init__(self, settings: Settings, w3: AsyncWeb3 | None = None) -> None:
        settings.require("cda_token_address", "reset_manager_address", "operator_private_key")
        self.settings = settings
        self.w3 = w3 or make_web3(settings)
        self.account = self.w3.eth.account.from_key(settings.operator_private_key)
        self.token = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(settings.cda_token_address), abi=CDA_TOKEN_ABI
        )
        self.reset_manager = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(settings.reset_manager_address), abi=RESET_MANAGER_ABI
        )
        self.badge_nft = None
        if settings.badge_nft_address:
            self.badge_nft = self.w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(settings.badge_nft_address), abi=BADGE_NFT_ABI
            )
        # 運用ウォレットは 1 つなので nonce 取得〜送信を直列化する
        self._tx_lock = asyncio.Lock()

    # ------------------------------------------------------------ #
    # tx helper
    # ------------------------------------------------------------ #
    async def _transact(self, fn: Any, op: str, **context: Any) -> TxReceipt:
        async with self._tx_lock:
            nonce = await _guard(self.w3.eth.get_transaction_count(self.account.address, "pending"), op)
            params: dict[str, Any] = {"from": self.account.address, "nonce": nonce}
            if self.settings.chain_id is not None:
                params["chainId"] = self.settings.chain_id
            # build_transaction は eth_estimateGas を呼ぶので revert はここで検出される
            tx = await _guard(fn.build_transaction(params), op, **context)
            signed = self.account.sign_transaction(tx)
            tx_hash = await _guard(self.w3.eth.send_raw_transaction(signed.raw_transaction), op, **context)

        hex_hash = AsyncWeb3.to_hex(tx_hash)
        _logger.info("%s submitted: %s", op, hex_hash)
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.settings.tx_timeout_sec
            )
        except (TimeExhausted, *_NETWORK_ERRORS) as exc:
            # 送信済み。再試行させない
            raise LedgerError(
                f"{op}: receipt not confirmed, outcome unknown ({exc})", op=op, tx_hash=hex_hash, **context
            ) from exc
        if receipt["status"] != 1:
            raise LedgerRevertError(f"{op} mined with status 0", op=op, tx_hash=hex_hash, **context)
        return TxReceipt(tx_hash=hex_hash, block_number=receipt["blockNumber"], status=receipt["status"])

    # ------------------------------------------------------------ #
    # AllocationLedger
    # ------------------------------------------------------------ #
    async def balance_of(self, address: str) -> int:
        return await _guard(
            self.token.functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call(), "balanceOf"
        )

    async def get_cycle_info(self) -> CycleInfo:
        cycle, reset_ts, supply, days = await _guard(self.token.functions.getCycleInfo().call(), "getCycleInfo")
        return CycleInfo(cycle=cycle, reset_timestamp=reset_ts, total_supply=supply, days_until_reset=days)

    async def get_remaining_allocation(self, category: str) -> int:
        return await _guard(
            self.token.functions.getRemainingAllocation(category).call(), "getRemainingAllocation"
        )

    async def distribute_reward(self, to: str, amount: int, reason: str, category: str) -> TxReceipt:
        fn = self.token.functions.distributeReward(AsyncWeb3.to_checksum_address(to), amount, reason, category)
        return await self._transact(fn, "distributeReward", category=category, amount=amount, recipient=to)

    async def batch_distribute_rewards(
        self, to: Sequence[str], amounts: Sequence[int], reason: str, category: str
    ) -> TxReceipt:
        fn = self.token.functions.batchDistributeRewards(
            [AsyncWeb3.to_checksum_address(a) for a in to], list(amounts), reason, category
        )
        return await self._transact(
            fn, "batchDistributeRewards", category=category, amount=sum(amounts), recipients=len(to)
        )

    async def get_transaction_status(self, tx_hash: str) -> Optional[bool]:
        try:
            receipt = await _guard(self.w3.eth.get_transaction_receipt(tx_hash), "getTransactionReceipt")
        except TransactionNotFound:
            # ドロップ済みか未採掘。どちらとも言えない
            return None
        return receipt["status"] == 1

    async def get_reset_status(self) -> ResetStatus:
        can, reason, days = await _guard(self.reset_manager.functions.getResetStatus().call(), "getResetStatus")
        return ResetStatus(can_reset_now=can, reset_reason=reason, days_until_eligible=days)

    async def initiate_reset(self) -> TxReceipt:
        return await self._transact(self.reset_manager.functions.initiateReset(), "initiateReset")

    # ------------------------------------------------------------ #
    # BadgeRegistry
    # ------------------------------------------------------------ #
    def _badges(self) -> Any:
        if self.badge_nft is None:
            raise ConfigurationError("BADGE_NFT_ADDRESS is not configured")
        return self.badge_nft

    async def get_user_badge_info(self, address: str) -> BadgeInfo:
        level, ids, events, volunteered, presentations, projects = await _guard(
            self._badges().functions.getUserBadgeInfo(AsyncWeb3.to_checksum_address(address)).call(),
            "getUserBadgeInfo",
        )
        return BadgeInfo(
            current_level=level,
            badge_token_ids=list(ids),
            events_attended=events,
            volunteered_times=volunteered,
            presentations_made=presentations,
            projects_completed=projects,
        )

    async def record_activity(self, address: str, activity_type: str, count: int) -> TxReceipt:
        fn = self._badges().functions.recordActivity(AsyncWeb3.to_checksum_address(address), activity_type, count)
        return await self._transact(fn, "recordActivity", activity_type=activity_type)

    async def batch_record_activity(
        self, addresses: Sequence[str], activity_type: str, counts: Sequence[int]
    ) -> TxReceipt:
        fn = self._badges().functions.batchRecordActivity(
            [AsyncWeb3.to_checksum_address(a) for a in addresses], activity_type, list(counts)
        )
        return await self._transact(fn, "batchRecordActivity", activity_type=activity_type, recipients=len(addresses))


class Web3SwagRedemption(SwagRedemptionSource):
    """SwagRedemption コントラクトをブロック範囲でポーリングする"""

    def __init__(self, settings: Settings, w3: AsyncWeb3 | None = None, *, max_block_range: int = 2_000) -> None:
        settings.require("swag_redemption_address")
        self.w3 = w3 or make_web3(settings)
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(settings.swag_redemption_address), abi=SWAG_REDEMPTION_ABI
        )
        self.max_block_range = max_block_range

    async def fetch_events(self, from_block: int) -> tuple[list[RedemptionEvent], int]:
        latest = await _guard(self.w3.eth.block_number, "blockNumber")
        if from_block > latest:
            return [], from_block
        to_block = min(latest, from_block + self.max_block_range - 1)

        redeemed = await _guard(
            self.contract.events.SwagRedeemed.get_logs(from_block=from_block, to_block=to_block), "getLogs"
        )
        fulfilled = await _guard(
            self.contract.events.RedemptionFulfilled.get_logs(from_block=from_block, to_block=to_block), "getLogs"
        )
        events = [
            RedemptionEvent(
                kind="redeemed",
                redemption_id=log["args"]["redemptionId"],
                user=log["args"]["user"],
                item_id=log["args"]["itemId"],
                cda_cost=log["args"]["cdaCost"],
                block_number=log["blockNumber"],
                log_index=log["logIndex"],
            )
            for log in redeemed
        ] + [
            RedemptionEvent(
                kind="fulfilled",
                redemption_id=log["args"]["redemptionId"],
                user=log["args"]["user"],
                block_number=log["blockNumber"],
                log_index=log["logIndex"],
            )
            for log in fulfilled
        ]
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events, to_block + 1

    async def get_redemption(self, redemption_id: int) -> RedemptionDetails:
        user, item_id, cost, ts, fulfilled, shipping = await _guard(
            self.contract.functions.redemptions(redemption_id).call(), "redemptions"
        )
        return RedemptionDetails(
            user=user, item_id=item_id, cda_cost=cost, timestamp=ts, fulfilled=fulfilled, shipping_info=shipping
        )

    async def get_swag_item(self, item_id: int) -> SwagItem:
        name, cost, _stock, _active = await _guard(self.contract.functions.swagItems(item_id).call(), "swagItems")
        return SwagItem(item_id=item_id, name=name, cda_cost=cost)

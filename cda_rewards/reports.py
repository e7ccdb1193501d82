# D:\cda_rewards\cda_rewards\reports.py
"""
カテゴリ別の配分使用状況 (allocated / remaining / used / utilization)

RewardDispenser.generate_reward_report() と ResetScheduler の
最終サイクルレポートの両方から使う読み取り専用ヘルパー。
"""
from __future__ import annotations

import asyncio
from typing import Iterable, Mapping

from .data_models import CategoryUsage, from_wei, to_wei
from .ledger.base import AllocationLedger


def _usage(category: str, allocated: int, remaining: int) -> CategoryUsage:
    used = max(allocated - remaining, 0)
    rate = round(used * 100 / allocated, 2) if allocated else 0.0
    return CategoryUsage(
        category=category,
        allocated=allocated,
        remaining=remaining,
        used=used,
        utilization_rate=rate,
    )


async def collect_allocations(ledger: AllocationLedger, caps: Mapping[str, int]) -> list[CategoryUsage]:
    """caps は CDA 単位。remaining は並行に読み出す"""
    categories = list(caps)
    remaining = await asyncio.gather(*(ledger.get_remaining_allocation(c) for c in categories))
    return [_usage(c, to_wei(caps[c]), r) for c, r in zip(categories, remaining)]


def allocation_totals(usages: Iterable[CategoryUsage]) -> dict:
    usages = list(usages)
    allocated = sum(u.allocated for u in usages)
    remaining = sum(u.remaining for u in usages)
    used = sum(u.used for u in usages)
    return {
        "total_allocated": allocated,
        "total_remaining": remaining,
        "total_used": used,
        "overall_utilization": round(used * 100 / allocated, 2) if allocated else 0.0,
        "total_used_cda": from_wei(used),
    }

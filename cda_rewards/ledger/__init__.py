"""
ledger パッケージ

    from cda_rewards.ledger import ResilientLedger, Web3Ledger
    ledger = ResilientLedger(Web3Ledger(settings))
"""
from .base import AllocationLedger, BadgeRegistry, SwagRedemptionSource
from .resilient import ResilientLedger
from .web3_client import Web3Ledger, Web3SwagRedemption

__all__ = [
    "AllocationLedger",
    "BadgeRegistry",
    "SwagRedemptionSource",
    "ResilientLedger",
    "Web3Ledger",
    "Web3SwagRedemption",
]

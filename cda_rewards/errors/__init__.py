"""
errors パッケージ

    from cda_rewards import errors
    raise errors.AllocationExceededError("node", amount)
"""
from .exceptions import (
    AllocationExceededError,
    BaseError,
    BatchDistributionError,
    ConfigurationError,
    LedgerError,
    LedgerNetworkError,
    LedgerRevertError,
    StorageError,
    ValidationError,
)
from .handlers import handle
from .logger import err_logger, log_exception
from .policies import AlertLevel, ErrorPolicy, get_policy

__all__ = [
    "AllocationExceededError",
    "BaseError",
    "BatchDistributionError",
    "ConfigurationError",
    "LedgerError",
    "LedgerNetworkError",
    "LedgerRevertError",
    "StorageError",
    "ValidationError",
    "handle",
    "err_logger",
    "log_exception",
    "AlertLevel",
    "ErrorPolicy",
    "get_policy",
]

# D:\cda_rewards\cda_rewards\errors\policies.py
"""
policies.py  ― 例外種別 → ポリシーマッピング
環境変数で上書きできるようにしておくと運用が楽。
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum, auto
from typing import Mapping, Type

from .exceptions import (
    AllocationExceededError,
    BaseError,
    ConfigurationError,
    LedgerNetworkError,
    LedgerRevertError,
    StorageError,
    ValidationError,
)

__all__ = ["AlertLevel", "ErrorPolicy", "get_policy"]


class AlertLevel(Enum):
    NONE = auto()
    INFO = auto()
    WARNING = auto()
    CRITICAL = auto()


@dataclass(slots=True)
class ErrorPolicy:
    """リトライ・バックオフ・通知レベル"""

    max_attempts: int = 0               # 0 = リトライなし (初回呼び出しは含まない)
    initial_backoff: float = 0.0        # 秒。以降は backoff_multiplier 倍
    backoff_multiplier: float = 2.0
    alert_level: AlertLevel = AlertLevel.INFO

    def merge_env(self, prefix: str) -> "ErrorPolicy":
        """
        環境変数 ``{prefix}_MAX`` / ``{prefix}_BACKOFF`` / ``{prefix}_ALERT``
        で上書き出来るようにする。
        """
        max_env = os.getenv(f"{prefix}_MAX")
        back_env = os.getenv(f"{prefix}_BACKOFF")
        alert_env = os.getenv(f"{prefix}_ALERT")

        return ErrorPolicy(
            max_attempts=int(max_env) if max_env else self.max_attempts,
            initial_backoff=float(back_env) if back_env else self.initial_backoff,
            backoff_multiplier=self.backoff_multiplier,
            alert_level=AlertLevel[alert_env] if alert_env else self.alert_level,
        )

    def backoff_for(self, attempt: int) -> float:
        """attempt 回目 (1 始まり) の失敗後に待つ秒数"""
        return self.initial_backoff * (self.backoff_multiplier ** (attempt - 1))


# デフォルトマップ
_POLICIES: Mapping[Type[BaseError], ErrorPolicy] = {
    # 合計 3 回 (初回 + 2 回リトライ)
    LedgerNetworkError: ErrorPolicy(max_attempts=2, initial_backoff=1.0, alert_level=AlertLevel.WARNING),
    StorageError: ErrorPolicy(max_attempts=2, initial_backoff=0.2, alert_level=AlertLevel.CRITICAL),
    LedgerRevertError: ErrorPolicy(max_attempts=0, alert_level=AlertLevel.CRITICAL),
    AllocationExceededError: ErrorPolicy(max_attempts=0, alert_level=AlertLevel.CRITICAL),
    ValidationError: ErrorPolicy(max_attempts=0, alert_level=AlertLevel.NONE),
    ConfigurationError: ErrorPolicy(max_attempts=0, alert_level=AlertLevel.CRITICAL),
}


def get_policy(exc: BaseError | type[BaseError]) -> ErrorPolicy:
    """
    例外インスタンス or クラス → ErrorPolicy
    環境変数で個別上書きがあれば取り込む
    """
    cls = exc if isinstance(exc, type) else exc.__class__
    pol = _POLICIES.get(cls)
    if pol is None:
        # サブクラスは親のポリシーを継承
        pol = next((p for c, p in _POLICIES.items() if issubclass(cls, c)), ErrorPolicy())
    if not cls.retryable:
        pol = ErrorPolicy(max_attempts=0, alert_level=pol.alert_level)
    return pol.merge_env(prefix=cls.__name__.upper())

# D:\cda_rewards\cda_rewards\errors\exceptions.py
"""
exceptions.py  ― 共通例外クラス

retryable / alert をクラス属性で持たせ、policies.py がそれを元に
リトライ回数・通知レベルを決める。
"""
from __future__ import annotations

from typing import Any


class BaseError(Exception):
    """すべての独自例外の親。"""

    retryable: bool = False       # デフォルト: リトライ不可
    alert: bool = True            # デフォルト: アラートを飛ばす

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context


# ───────────────────────────
# カテゴリ別
# ───────────────────────────
class ValidationError(BaseError):
    """入力検証エラー (金額 <= 0、未知カテゴリ、空バッチなど)"""

    retryable = False
    alert = False


class ConfigurationError(BaseError):
    """必須アドレス / 環境変数の欠落。起動時に致命的"""

    retryable = False


class StorageError(BaseError):
    """JSON スナップショット / レポートの書き込み失敗"""

    retryable = True


class LedgerError(BaseError):
    """オンチェーン台帳 (コントラクト) 呼び出しの失敗"""


class LedgerNetworkError(LedgerError):
    """RPC タイムアウト / 接続拒否など一時的な I/O エラー"""

    retryable = True


class LedgerRevertError(LedgerError):
    """コントラクトの revert。終端エラーなので再試行しない"""

    retryable = False


class AllocationExceededError(LedgerRevertError):
    """カテゴリ上限超過。運用者が手動で突合できるよう category / amount を保持"""

    def __init__(self, category: str, amount: int, message: str = "", **context: Any) -> None:
        super().__init__(
            message or f"allocation exceeded for category={category} amount={amount}",
            category=category,
            amount=amount,
            **context,
        )
        self.category = category
        self.amount = amount


# ───────────────────────────
# バッチ配布
# ───────────────────────────
class BatchDistributionError(BaseError):
    """
    バッチ配布はコントラクト側で all-or-nothing。
    受取人単位のフォールバックはせず、バッチ単位で失敗を報告する。

    stage:
        "tokens" … トークン配布そのものが失敗
        "badges" … トークンは配布済みだがバッジ活動記録が失敗
    """

    retryable = False

    def __init__(self, activity_type: str, recipient_count: int, stage: str,
                 cause: BaseException | None = None) -> None:
        super().__init__(
            f"batch distribution failed: activity={activity_type} "
            f"recipients={recipient_count} stage={stage}: {cause}",
            activity_type=activity_type,
            recipient_count=recipient_count,
            stage=stage,
        )
        self.activity_type = activity_type
        self.recipient_count = recipient_count
        self.stage = stage
        self.cause = cause

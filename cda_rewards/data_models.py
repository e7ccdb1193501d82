# D:\cda_rewards\cda_rewards\data_models.py
"""
dataclass / pydantic schemas

トークン量はすべて最小単位 (wei, 18 decimals) の int で持つ。
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from web3 import Web3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_wei(amount: int | float | str) -> int:
    """CDA (整数 / 10 進文字列) → wei"""
    return int(Web3.to_wei(amount, "ether"))


def from_wei(amount: int) -> str:
    """wei → 表示用 10 進文字列"""
    return str(Web3.from_wei(amount, "ether"))


# ---------------------------------------------------------------------------
# オンチェーン読み出し結果
# ---------------------------------------------------------------------------
class CycleInfo(BaseModel):
    cycle: int
    reset_timestamp: int          # epoch 秒
    total_supply: int             # wei
    days_until_reset: int


class ResetStatus(BaseModel):
    can_reset_now: bool
    reset_reason: str = ""
    days_until_eligible: int = 0


class BadgeInfo(BaseModel):
    current_level: int = 0
    badge_token_ids: list[int] = Field(default_factory=list)
    events_attended: int = 0
    volunteered_times: int = 0
    presentations_made: int = 0
    projects_completed: int = 0


class TxReceipt(BaseModel):
    tx_hash: str
    block_number: Optional[int] = None
    status: int = 1


# ---------------------------------------------------------------------------
# 活動 / 配布
# ---------------------------------------------------------------------------
class ActivityType(str, Enum):
    EVENT = "event"
    VOLUNTEER = "volunteer"
    PRESENTATION = "presentation"
    PROJECT = "project"
    HACKATHON = "hackathon"
    NODE = "node"


class ActivityRecord(BaseModel):
    """1 件の報酬対象イベント。RewardDispenser に 1 度だけ消費される"""

    address: str
    activity_type: ActivityType
    count: int = Field(1, ge=1)
    amount: Optional[int] = Field(default=None, gt=0, description="明示指定時の wei 量")
    reason: str = ""
    name: str = ""
    role: str = "attendee"


class BatchOutcome(BaseModel):
    activity_type: ActivityType
    category: str
    recipients: int
    total_amount: int
    tx_hash: str
    badge_tx_hash: Optional[str] = None


class NodeRunner(BaseModel):
    address: str
    uptime: float = Field(ge=0.0, le=1.0, description="稼働率 (0.0 - 1.0)")
    name: str = ""


class RunnerPayout(BaseModel):
    address: str
    name: str = ""
    uptime_bps: int
    share_bps: int = 0
    amount: int = 0
    distributed: bool = False
    skipped_reason: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# ノード監視
# ---------------------------------------------------------------------------
class UptimeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    is_online: bool
    block_height: Optional[int] = None
    response_time_ms: Optional[float] = None
    sync_status: Optional[bool] = None


class NodeInfo(BaseModel):
    address: str
    name: str
    endpoint: str
    operator_address: str
    last_checked: Optional[datetime] = None
    uptime_history: list[UptimeRecord] = Field(default_factory=list)


class MonthlyReward(BaseModel):
    month: str                      # "YYYY-MM"
    node_address: str
    operator_address: str
    uptime_percentage: float
    uptime_bps: int
    reward_amount: int = 0          # wei
    distributed: bool = False
    tx_hash: Optional[str] = None
    distributed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    pending_tx: Optional[str] = None   # 送信済みでレシート未確認。確認できるまで再送しない


# ---------------------------------------------------------------------------
# 年次リセット
# ---------------------------------------------------------------------------
class ResetSchedule(BaseModel):
    enabled: bool = True
    cron_expression: str = "0 0 1 8 *"
    dry_run: bool = False
    notification_webhook: Optional[str] = None


class ResetState(BaseModel):
    from_cycle: int
    status: str                     # submitted / completed / failed
    tx_hash: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ResetOutcome(BaseModel):
    status: str                     # not_eligible / blocked / pre_reset_failed / dry_run / failed / completed / skipped
    reason: str = ""
    from_cycle: Optional[int] = None
    new_cycle: Optional[int] = None
    tx_hash: Optional[str] = None


class CategoryUsage(BaseModel):
    category: str
    allocated: int
    remaining: int
    used: int
    utilization_rate: float         # %


# ---------------------------------------------------------------------------
# Swag
# ---------------------------------------------------------------------------
class RedemptionEvent(BaseModel):
    kind: str                       # "redeemed" / "fulfilled"
    redemption_id: int
    user: str
    item_id: Optional[int] = None
    cda_cost: Optional[int] = None
    block_number: int = 0
    log_index: int = 0


class RedemptionDetails(BaseModel):
    user: str
    item_id: int
    cda_cost: int
    timestamp: int                  # epoch 秒
    fulfilled: bool = False
    shipping_info: str = ""


class SwagItem(BaseModel):
    item_id: int
    name: str
    cda_cost: int = 0


class RedemptionRecord(BaseModel):
    redemption_id: int
    user: str
    item_id: int
    item_name: str
    cda_cost: int                   # wei
    timestamp: int                  # epoch 秒
    fulfilled: bool = False
    shipping_info: str = ""

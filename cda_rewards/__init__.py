# D:\cda_rewards\cda_rewards\__init__.py
# -*- coding: utf-8 -*-
"""
CDA Rewards ― オフチェーン・オーケストレーション層

* RewardDispenser     … カテゴリ上限付きのトークン配布
* NodeUptimeMonitor   … ノード稼働監視と月次報酬の按分
* ResetScheduler      … 年次リセットの cron 駆動ステートマシン
* SwagBurnTracker     … Swag 交換イベントの追跡とバーンレポート
"""
from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("cda-rewards")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "RewardDispenser",
    "NodeUptimeMonitor",
    "ResetScheduler",
    "SwagBurnTracker",
    "__version__",
]


def __getattr__(name):
    if name == "RewardDispenser":
        from .dispenser import RewardDispenser
        return RewardDispenser
    if name == "NodeUptimeMonitor":
        from .uptime.monitor import NodeUptimeMonitor
        return NodeUptimeMonitor
    if name == "ResetScheduler":
        from .reset_scheduler import ResetScheduler
        return ResetScheduler
    if name == "SwagBurnTracker":
        from .swag import SwagBurnTracker
        return SwagBurnTracker
    raise AttributeError(name)

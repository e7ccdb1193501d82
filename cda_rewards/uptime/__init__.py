"""
uptime パッケージ

* registry … 監視対象ノード (JSON 設定)
* probe    … JSON-RPC ヘルスチェック
* monitor  … 稼働率の集計と月次報酬
"""
from .monitor import MonitorState, NodeUptimeMonitor, apportion, previous_month_window
from .probe import NodeProbe
from .registry import NodeRegistry

__all__ = [
    "MonitorState",
    "NodeUptimeMonitor",
    "NodeProbe",
    "NodeRegistry",
    "apportion",
    "previous_month_window",
]

# D:\cda_rewards\cda_rewards\uptime\registry.py
"""
監視対象ノードの登録簿

モニター 1 つにつき 1 つ所有する (グローバルな共有状態は持たない)。
ノード一覧は JSON 設定ファイルから読む:

    [
      {"address": "node-1", "name": "Tokyo", "endpoint": "https://...",
       "operator_address": "0x..."}
    ]
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator

from pydantic import ValidationError as PydanticValidationError

from ..data_models import NodeInfo, UptimeRecord
from ..errors import ConfigurationError

_logger = logging.getLogger(__name__)


class NodeRegistry:
    def __init__(self, nodes: Iterable[NodeInfo] = ()) -> None:
        self._nodes: dict[str, NodeInfo] = {}
        for node in nodes:
            self.add(node)

    # ------------------------------------------------------------------ #
    # construction
    # ------------------------------------------------------------------ #
    @classmethod
    def from_config(cls, path: str | Path) -> "NodeRegistry":
        path = Path(path)
        if not path.exists():
            _logger.warning("node config %s not found, no nodes will be monitored", path)
            return cls()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            nodes = [NodeInfo.model_validate(item) for item in raw]
        except (OSError, json.JSONDecodeError, TypeError, PydanticValidationError) as exc:
            raise ConfigurationError(f"invalid node config {path}: {exc}", path=str(path)) from exc
        _logger.info("loaded %d nodes from %s", len(nodes), path)
        return cls(nodes)

    # ------------------------------------------------------------------ #
    # collection
    # ------------------------------------------------------------------ #
    def add(self, node: NodeInfo) -> None:
        if node.address in self._nodes:
            raise ConfigurationError(f"duplicate node address: {node.address}")
        self._nodes[node.address] = node

    def get(self, address: str) -> NodeInfo:
        return self._nodes[address]

    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def __iter__(self) -> Iterator[NodeInfo]:
        return iter(list(self._nodes.values()))

    def __len__(self) -> int:
        return len(self._nodes)

    # ------------------------------------------------------------------ #
    # history
    # ------------------------------------------------------------------ #
    def append(self, address: str, record: UptimeRecord) -> None:
        node = self._nodes[address]
        node.uptime_history.append(record)
        node.last_checked = record.timestamp

    def prune(self, cutoff: datetime) -> int:
        """cutoff 以前のレコードを捨てる。削除件数を返す"""
        removed = 0
        for node in self._nodes.values():
            kept = [r for r in node.uptime_history if r.timestamp > cutoff]
            removed += len(node.uptime_history) - len(kept)
            node.uptime_history = kept
        return removed

    def snapshot(self) -> list[NodeInfo]:
        """
        同期的に取るコピー。月次報酬計算はこの 1 枚だけを使うので、
        計算中に監視パスが履歴を追記しても分母はぶれない。
        """
        return [
            n.model_copy(update={"uptime_history": list(n.uptime_history)})
            for n in self._nodes.values()
        ]

    def restore_history(self, data: dict) -> None:
        """永続化済みの履歴を設定上のノードに戻す (設定にないノードは捨てる)"""
        for address, saved in data.items():
            node = self._nodes.get(address)
            if node is None:
                _logger.info("dropping saved history for unknown node %s", address)
                continue
            restored = NodeInfo.model_validate({**node.model_dump(), **saved})
            node.uptime_history = restored.uptime_history
            node.last_checked = restored.last_checked

    def dump(self) -> dict:
        return {n.address: n.model_dump(mode="json") for n in self._nodes.values()}

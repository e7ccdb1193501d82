# D:\cda_rewards\cda_rewards\storage.py
"""
storage.py

監査・再起動復旧用の JSON 永続化。

* save() / load()   … 1 ファイル 1 オブジェクトのスナップショット (上書き)
* write_report()    … タイムスタンプ付きファイル名で追記型に保存 (上書きしない)

各ファイルは所有コンポーネントだけが書く (single writer) 前提なのでロックは持たない。
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiofiles
from pydantic import BaseModel

from .errors import StorageError, handle

_logger = logging.getLogger(__name__)


def _jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, dict):
        return {k: _jsonable(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_jsonable(v) for v in data]
    return data


def dumps(data: Any) -> str:
    return json.dumps(_jsonable(data), indent=2, ensure_ascii=False, default=str)


class JsonStore:
    """
    Async file-based storage for JSON snapshots and reports.
    """

    def __init__(self, base_path: str | Path):
        self.base = Path(base_path)
        self.base.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        return self.base / f"{name}.json"

    @handle
    async def save(self, name: str, data: Any) -> Path:
        """一時ファイルに書いてから rename (途中クラッシュで壊れた JSON を残さない)"""
        path = self.path_for(name)
        tmp = path.with_suffix(".json.tmp")
        try:
            async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
                await f.write(dumps(data))
            os.replace(tmp, path)
        except OSError as exc:
            raise StorageError(f"failed to save {path}: {exc}", path=str(path)) from exc
        return path

    async def load(self, name: str) -> Any | None:
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"failed to load {path}: {exc}", path=str(path)) from exc

    async def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    @handle
    async def write_report(self, prefix: str, data: Any, *, suffix: str = ".json") -> Path:
        """
        `{prefix}-{UTC タイムスタンプ}.json` へ保存する。
        同名ファイルが既にあれば連番を付け、決して上書きしない。
        """
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.base / f"{prefix}-{stamp}{suffix}"
        seq = 1
        while path.exists():
            path = self.base / f"{prefix}-{stamp}-{seq}{suffix}"
            seq += 1
        body = data if isinstance(data, str) else dumps(data)
        try:
            # "x" … 既存ファイルがあれば失敗させる
            async with aiofiles.open(path, "x", encoding="utf-8") as f:
                await f.write(body)
        except OSError as exc:
            raise StorageError(f"failed to write report {path}: {exc}", path=str(path)) from exc
        _logger.info("report saved: %s", path)
        return path

    def list_reports(self, prefix: str) -> list[Path]:
        return sorted(self.base.glob(f"{prefix}-*"))

# D:\cda_rewards\cda_rewards\errors\logger.py
"""
logger.py  ― エラー専用ロガー
JSON 1 行 (severity / component / context) で stdout に流す。
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

_LOGGER_NAME = "cda_rewards.errors"


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "lvl": record.levelname,
            "component": getattr(record, "component", record.module),
            "msg": record.getMessage(),
            "context": getattr(record, "context", {}),
        }
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            data["exc"] = f"{exc.__class__.__name__}: {exc}"
        return json.dumps(data, ensure_ascii=False, default=str)


_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(_JsonFormatter())
_root = logging.getLogger(_LOGGER_NAME)
_root.setLevel(logging.INFO)
_root.addHandler(_handler)
_root.propagate = False  # 二重出力防止


def err_logger() -> logging.Logger:
    """呼び出し側用ファクトリ"""
    return _root


def log_exception(
    exc: BaseException,
    extra_msg: str | None = None,
    *,
    component: str = "cda_rewards",
    level: int = logging.ERROR,
    **context: Any,
) -> None:
    """例外 + 付帯情報 (受取人・金額・カテゴリなど) を構造化ログへ"""
    merged = dict(getattr(exc, "context", {}) or {})
    merged.update(context)
    _root.log(
        level,
        extra_msg or str(exc),
        exc_info=exc,
        extra={"component": component, "context": merged},
    )

# D:\cda_rewards\cda_rewards\errors\handlers.py
"""
handlers.py  ― 例外ハンドリングの統一窓口

    @handle
    async def get_remaining_allocation(...):
        ...

retryable な BaseError だけを ErrorPolicy に従って指数バックオフで再試行し、
それ以外 (revert / 検証エラー) は即座に呼び出し元へ送出する。
"""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, ParamSpec, TypeVar

from .exceptions import BaseError
from .logger import log_exception
from .policies import get_policy

P = ParamSpec("P")
R = TypeVar("R")


def handle(fn: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    """
    デコレーター (async 関数専用):
        @errors.handle
        async def my_call(...):
            ...
    """

    @functools.wraps(fn)
    async def _wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except BaseError as exc:
                policy = get_policy(exc)
                if not exc.retryable or attempt >= policy.max_attempts:
                    raise
                attempt += 1
                backoff = policy.backoff_for(attempt)
                log_exception(
                    exc,
                    f"{fn.__name__}: transient failure, retry {attempt}/{policy.max_attempts} in {backoff:.2f}s",
                    component="errors.handle",
                    level=logging.WARNING,
                )
                await asyncio.sleep(backoff)

    return _wrapper

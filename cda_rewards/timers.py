# D:\cda_rewards\cda_rewards\timers.py
# -*- coding: utf-8 -*-
"""
非同期ジョブスケジューラ

* IntervalTrigger … N 秒ごと
* CronTrigger     … cron 式 (UTC, croniter)
* JobScheduler    … start() / stop() でライフサイクル制御

トリガーは「ファクトリ」でも登録でき、評価のたびに呼び直す。
(ResetScheduler は update_schedule() 後の cron 式を次回評価から反映させる)

同じジョブの前回実行がまだ終わっていなければ、その発火はスキップする。
ジョブ内の例外はログに残してループを継続する。
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from croniter import croniter

from .errors import ValidationError, log_exception

_logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
# Clock
# --------------------------------------------------------------------------- #
class Clock:
    """テストで時刻を差し替えるための抽象"""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# --------------------------------------------------------------------------- #
# Triggers
# --------------------------------------------------------------------------- #
class Trigger(ABC):
    @abstractmethod
    def next_fire(self, after: datetime) -> datetime:
        """after より厳密に後の次回発火時刻"""

    @abstractmethod
    def describe(self) -> str: ...


class IntervalTrigger(Trigger):
    def __init__(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValidationError(f"interval must be positive: {seconds}")
        self.seconds = seconds

    def next_fire(self, after: datetime) -> datetime:
        return after + timedelta(seconds=self.seconds)

    def describe(self) -> str:
        return f"every {self.seconds:g}s"


class CronTrigger(Trigger):
    def __init__(self, expression: str) -> None:
        validate_cron(expression)
        self.expression = expression

    def next_fire(self, after: datetime) -> datetime:
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        return croniter(self.expression, after.astimezone(timezone.utc)).get_next(datetime)

    def describe(self) -> str:
        return f"cron '{self.expression}' (UTC)"


def validate_cron(expression: str) -> None:
    if not isinstance(expression, str) or not croniter.is_valid(expression):
        raise ValidationError(f"invalid cron expression: {expression!r}", cron_expression=expression)


TriggerSource = Union[Trigger, Callable[[], Trigger]]


# --------------------------------------------------------------------------- #
# Jobs
# --------------------------------------------------------------------------- #
@dataclass
class Job:
    name: str
    trigger_source: TriggerSource
    func: Callable[[], Awaitable[Any]]
    anchor: datetime                # 直近の発火 (または登録 / start) 時刻
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    last_run: Optional[datetime] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def trigger(self) -> Trigger:
        src = self.trigger_source
        return src if isinstance(src, Trigger) else src()

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class JobScheduler:
    """
    周期ジョブの実行器。

    ``run_due(now)`` を直接呼べばテストから時刻を進めて駆動できる。
    ``start()`` はそれを一定間隔でポーリングするバックグラウンドタスクを立てる。
    """

    # 長い cron 待ちでも定期的に起きて、スケジュール変更を拾う
    MAX_TICK_SEC = 30.0

    def __init__(self, clock: Clock | None = None, *, name: str = "scheduler") -> None:
        self.clock = clock or SystemClock()
        self.name = name
        self._jobs: dict[str, Job] = {}
        self._loop_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------ #
    # registration
    # ------------------------------------------------------------ #
    def add_job(self, name: str, trigger: TriggerSource, func: Callable[[], Awaitable[Any]]) -> Job:
        if name in self._jobs:
            raise ValidationError(f"job already registered: {name}")
        job = Job(name=name, trigger_source=trigger, func=func, anchor=self.clock.now())
        self._jobs[name] = job
        return job

    def get_job(self, name: str) -> Job:
        return self._jobs[name]

    @property
    def jobs(self) -> list[Job]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def next_fire_time(self, name: str) -> datetime:
        job = self._jobs[name]
        return job.trigger.next_fire(job.anchor)

    # ------------------------------------------------------------ #
    # evaluation
    # ------------------------------------------------------------ #
    async def run_due(self, now: datetime | None = None) -> list[asyncio.Task]:
        """
        anchor から now までに発火点があるジョブを起動する。
        起動したタスクのリストを返す (テストで await するため)。
        """
        now = now or self.clock.now()
        launched: list[asyncio.Task] = []
        for job in self._jobs.values():
            if job.trigger.next_fire(job.anchor) > now:
                continue
            # 取りこぼした周期があっても 1 回だけ
            job.anchor = now
            if job.running:
                job.skipped += 1
                _logger.warning("[%s] job '%s' still running, firing skipped", self.name, job.name)
                continue
            job.task = asyncio.create_task(self._run(job, now), name=f"{self.name}:{job.name}")
            launched.append(job.task)
        return launched

    async def _run(self, job: Job, fired_at: datetime) -> None:
        job.last_run = fired_at
        job.runs += 1
        try:
            await job.func()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.failures += 1
            log_exception(exc, f"job '{job.name}' failed", component=f"timers.{self.name}")

    async def wait_idle(self) -> None:
        """実行中ジョブがすべて終わるまで待つ"""
        tasks = [j.task for j in self._jobs.values() if j.running]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------ #
    # lifecycle
    # ------------------------------------------------------------ #
    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        now = self.clock.now()
        for job in self._jobs.values():
            job.anchor = now
        self._loop_task = asyncio.create_task(self._loop(), name=f"{self.name}:loop")
        _logger.info("[%s] started with %d jobs", self.name, len(self._jobs))

    async def stop(self) -> None:
        """新規発火を止め、実行中のジョブは最後まで走らせる"""
        self._stop_event.set()
        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        await self.wait_idle()
        _logger.info("[%s] stopped", self.name)

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            await self.run_due()
            now = self.clock.now()
            delay = self.MAX_TICK_SEC
            for job in self._jobs.values():
                until = (job.trigger.next_fire(job.anchor) - now).total_seconds()
                delay = min(delay, max(until, 0.0))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=max(delay, 0.01))
            except asyncio.TimeoutError:
                pass

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "jobs": [
                {
                    "name": j.name,
                    "trigger": j.trigger.describe(),
                    "next_fire": self.next_fire_time(j.name).isoformat(),
                    "last_run": j.last_run.isoformat() if j.last_run else None,
                    "runs": j.runs,
                    "skipped": j.skipped,
                    "failures": j.failures,
                    "in_flight": j.running,
                }
                for j in self._jobs.values()
            ],
        }

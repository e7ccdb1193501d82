# D:\cda_rewards\cda_rewards\api\http_server.py
# -*- coding: utf-8 -*-
"""
HTTP API (FastAPI)

* GET  /healthz          … Liveness-Probe
* GET  /status           … 監視 / リセット / swag の状態
* GET  /uptime           … ノード稼働率 (24h / 7d / 30d)
* GET  /rewards/{month}  … 月次ノード報酬 ("YYYY-MM")
* POST /schedule         … リセットスケジュールの部分更新
* GET  /swag/stats       … 引き換え統計
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from fastapi import FastAPI, HTTPException, status
from pydantic import BaseModel

from ..data_models import MonthlyReward, ResetSchedule
from ..errors import ValidationError
from ..runtime import Runtime

_logger = logging.getLogger(__name__)

_MONTH = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class ScheduleUpdate(BaseModel):
    enabled: Optional[bool] = None
    cron_expression: Optional[str] = None
    dry_run: Optional[bool] = None
    notification_webhook: Optional[str] = None


def create_app(runtime: Runtime) -> FastAPI:
    app = FastAPI(title="CDA Rewards HTTP API")
    app.state.runtime = runtime

    # ----------------------------------------------------------------------- #
    # End-points
    # ----------------------------------------------------------------------- #
    @app.get("/healthz", response_model=dict[str, str])
    async def healthz() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/status")
    async def get_status() -> dict:
        return {
            "monitor": runtime.monitor.get_status(),
            "reset": runtime.reset.get_status(),
            "swag": {
                "enabled": runtime.swag is not None,
                "cursor": runtime.swag.cursor if runtime.swag else None,
                "records": len(runtime.swag.records) if runtime.swag else 0,
            },
        }

    @app.get("/uptime")
    async def get_uptime() -> dict:
        return runtime.monitor.get_uptime_stats()

    @app.get("/rewards/{month}", response_model=list[MonthlyReward])
    async def get_rewards(month: str) -> list[MonthlyReward]:
        if not _MONTH.match(month):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="month must be YYYY-MM")
        rewards = runtime.monitor.monthly_rewards.get(month)
        if rewards is None:
            raise HTTPException(status_code=404, detail=f"no rewards recorded for {month}")
        return rewards

    @app.post("/schedule", response_model=ResetSchedule)
    async def post_schedule(update: ScheduleUpdate) -> ResetSchedule:
        try:
            schedule = runtime.reset.update_schedule(**update.model_dump(exclude_unset=True))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return schedule.model_copy(update={"notification_webhook": None})

    @app.get("/swag/stats")
    async def get_swag_stats() -> dict:
        if runtime.swag is None:
            raise HTTPException(status_code=404, detail="swag tracking is not configured")
        return runtime.swag.get_redemption_stats()

    return app

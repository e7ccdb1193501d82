# D:\cda_rewards\cda_rewards\app_rewards.py
# -*- coding: utf-8 -*-
"""
CLI ランチャー

* `monitor`           … ノード稼働監視 + 月次報酬 (常駐)
* `reset-scheduler`   … 年次リセット スケジューラ (常駐、--now で即時実行)
* `import-attendance` … 出席 CSV から event 報酬を一括配布
* `hackathon`         … ハッカソン入賞者 JSON から順位別に配布
* `node-runners`      … ノードランナー JSON から稼働率比例で配布
* `report`            … カテゴリ別配分レポート
* `swag-report`       … swag バーンレポート (+ CSV)
* `serve`             … 全常駐コンポーネント + HTTP API + /metrics
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

import click
import uvicorn

from .api.http_server import create_app
from .config import Settings, settings as default_settings
from .data_models import NodeRunner, from_wei
from .errors import BaseError, ConfigurationError
from .metrics import start_metrics_server
from .runtime import Runtime, build_runtime

_logger = logging.getLogger(__name__)


def _run(ctx: click.Context, fn: Callable[[Runtime], Awaitable[Any]]) -> Any:
    """Runtime を組み立てて fn を実行。設定不備は exit code 1"""
    settings: Settings = ctx.obj["settings"]

    async def _main() -> Any:
        runtime = build_runtime(settings)
        return await fn(runtime)

    try:
        return asyncio.run(_main())
    except ConfigurationError as exc:
        raise click.ClickException(f"configuration error: {exc}") from exc
    except BaseError as exc:
        raise click.ClickException(str(exc)) from exc


async def _serve_forever(runtime: Runtime, **components: bool) -> None:
    await runtime.start(**components)
    try:
        await asyncio.Event().wait()
    finally:
        await runtime.stop()


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@click.group()
@click.option("--log-level", default=None, help="DEBUG / INFO / WARNING / ERROR")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """CDA community rewards controller"""
    settings = default_settings
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"settings": settings}


# ------------------------------------------------------------------
# 常駐サブコマンド
# ------------------------------------------------------------------
@cli.command()
@click.pass_context
def monitor(ctx: click.Context) -> None:
    """Run node uptime monitoring and monthly rewards"""
    _run(ctx, lambda rt: _serve_forever(rt, monitor=True, reset=False, swag=False))


@cli.command("reset-scheduler")
@click.option("--now", "run_now", is_flag=True, help="Execute the reset immediately and exit")
@click.option("--dry-run", is_flag=True, help="Run every step except initiateReset")
@click.pass_context
def reset_scheduler(ctx: click.Context, run_now: bool, dry_run: bool) -> None:
    """Run the annual reset scheduler"""

    async def _main(rt: Runtime) -> None:
        if dry_run:
            rt.reset.update_schedule(dry_run=True)
        if run_now:
            outcome = await rt.reset.execute_scheduled_reset()
            _echo_json(outcome.model_dump())
            return
        await _serve_forever(rt, monitor=False, reset=True, swag=False)

    _run(ctx, _main)


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run all services + HTTP API + Prometheus exporter"""
    settings: Settings = ctx.obj["settings"]

    async def _main(rt: Runtime) -> None:
        start_metrics_server(settings.prometheus_port)
        await rt.start()
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(rt),
                host=settings.http_host,
                port=settings.http_port,
                log_level=settings.log_level.lower(),
            )
        )
        try:
            await server.serve()
        finally:
            await rt.stop()

    _run(ctx, _main)


# ------------------------------------------------------------------
# 単発サブコマンド
# ------------------------------------------------------------------
@cli.command("import-attendance")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_attendance(ctx: click.Context, csv_path: Path) -> None:
    """Distribute event rewards from an attendance CSV (address,name,role)"""

    async def _main(rt: Runtime) -> None:
        outcomes = await rt.dispenser.process_event_attendance(csv_path)
        _echo_json([o.model_dump() for o in outcomes])

    _run(ctx, _main)


@cli.command()
@click.argument("winners_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def hackathon(ctx: click.Context, winners_json: Path) -> None:
    """Distribute hackathon placement rewards ([{address, name, place}])"""
    winners = json.loads(winners_json.read_text(encoding="utf-8"))

    async def _main(rt: Runtime) -> None:
        _echo_json(await rt.dispenser.distribute_hackathon_rewards(winners))

    _run(ctx, _main)


@cli.command("node-runners")
@click.argument("runners_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def node_runners(ctx: click.Context, runners_json: Path) -> None:
    """Distribute the node allocation by uptime ([{address, uptime, name}])"""
    runners = [NodeRunner.model_validate(r) for r in json.loads(runners_json.read_text(encoding="utf-8"))]

    async def _main(rt: Runtime) -> None:
        result = await rt.dispenser.distribute_node_runner_rewards(runners)
        _echo_json({**result, "payouts": [p.model_dump() for p in result["payouts"]]})

    _run(ctx, _main)


@cli.command()
@click.pass_context
def report(ctx: click.Context) -> None:
    """Write a per-category allocation usage report"""

    async def _main(rt: Runtime) -> None:
        data = await rt.dispenser.generate_reward_report()
        click.echo(f"cycle {data['cycle']}, {data['days_until_reset']} days until reset")
        click.echo(f"used {from_wei(data['totals']['total_used'])} CDA -> {data['path']}")

    _run(ctx, _main)


@cli.command("swag-report")
@click.option("--csv", "with_csv", is_flag=True, help="Also export redemptions as CSV")
@click.pass_context
def swag_report(ctx: click.Context, with_csv: bool) -> None:
    """Sync swag redemptions and write a burn report"""

    async def _main(rt: Runtime) -> None:
        if rt.swag is None:
            raise ConfigurationError("SWAG_REDEMPTION_ADDRESS is not configured")
        await rt.swag.load_tracking_data()
        # カーソルが最新ブロックに追いつくまで
        while True:
            before = rt.swag.cursor
            await rt.swag.poll_once()
            if rt.swag.cursor == before:
                break
        click.echo(f"report: {await rt.swag.generate_burn_report()}")
        if with_csv:
            click.echo(f"csv: {await rt.swag.export_to_csv()}")

    _run(ctx, _main)


if __name__ == "__main__":
    cli()

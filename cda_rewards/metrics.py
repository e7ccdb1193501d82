# D:\cda_rewards\cda_rewards\metrics.py
# -*- coding: utf-8 -*-
"""
Prometheus Exporter

* 配布量 / 配布失敗 / ノード監視結果 / リセット結果をカウンタで公開
* `/metrics` は FastAPI とは別ポートで立てる
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, start_http_server

_logger = logging.getLogger(__name__)

TOKENS_DISTRIBUTED = Counter(
    "cda_tokens_distributed_total",
    "CDA distributed (whole tokens)",
    ["category"],
)
DISTRIBUTION_FAILURES = Counter(
    "cda_distribution_failures_total",
    "Failed distribution calls",
    ["category", "kind"],
)
NODE_CHECKS = Counter(
    "cda_node_checks_total",
    "Node health probes",
    ["status"],
)
RESETS = Counter(
    "cda_resets_total",
    "Annual reset executions",
    ["outcome"],
)
SWAG_EVENTS = Counter(
    "cda_swag_events_total",
    "Processed swag redemption events",
    ["kind"],
)


def record_distribution(category: str, amount_wei: int) -> None:
    TOKENS_DISTRIBUTED.labels(category=category).inc(amount_wei / 10**18)


def record_failure(category: str, exc: BaseException) -> None:
    DISTRIBUTION_FAILURES.labels(category=category, kind=type(exc).__name__).inc()


def start_metrics_server(port: int) -> None:
    start_http_server(port)
    _logger.info("Prometheus exporter started at :%d/metrics", port)

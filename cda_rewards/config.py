# D:\cda_rewards\cda_rewards\config.py
# -*- coding: utf-8 -*-
"""
cda_rewards ― アプリケーション設定

* .env  または OS 環境変数から読み込む
* すべてデフォルト値付きなので、未設定でもローカル環境で起動可能
* ただしコントラクトアドレス等は Settings.require() で起動時に必須チェックする
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

# カテゴリごとの年間上限 (CDA, 整数トークン単位)
DEFAULT_CATEGORY_CAPS: dict[str, int] = {
    "activity": 60_000,
    "milestone": 15_000,
    "swag": 10_000,
    "nft": 7_500,
    "node": 5_000,
    "admin": 2_500,
}

# 活動種別ごとの配布量 (CDA)
DEFAULT_REWARD_SCHEDULE: dict[str, int] = {
    "event": 50,
    "volunteer": 100,
    "presentation": 200,
    "project": 500,
    "hackathon": 1_000,
}


class Settings(BaseSettings):
    # ---------------------------------------------------------------------
    # チェーン / コントラクト
    # ---------------------------------------------------------------------
    rpc_url: str = Field(
        "http://127.0.0.1:8545",
        alias="RPC_URL",
        description="JSON-RPC エンドポイント",
    )
    chain_id: int | None = Field(
        default=None,
        alias="CHAIN_ID",
        description="未設定なら eth_chainId で取得",
    )
    cda_token_address: str | None = Field(default=None, alias="CDA_TOKEN_ADDRESS")
    badge_nft_address: str | None = Field(default=None, alias="BADGE_NFT_ADDRESS")
    reset_manager_address: str | None = Field(default=None, alias="RESET_MANAGER_ADDRESS")
    swag_redemption_address: str | None = Field(default=None, alias="SWAG_REDEMPTION_ADDRESS")
    operator_private_key: str | None = Field(
        default=None,
        alias="OPERATOR_PRIVATE_KEY",
        description="配布 / リセット Tx に署名する運用ウォレットの秘密鍵",
    )
    tx_timeout_sec: float = Field(120.0, alias="TX_TIMEOUT_SEC")

    # ---------------------------------------------------------------------
    # トークノミクス
    # ---------------------------------------------------------------------
    category_caps: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_CAPS),
        alias="CATEGORY_CAPS",
        description='JSON 例: {"activity": 60000, ...}',
    )
    reward_schedule: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_REWARD_SCHEDULE),
        alias="REWARD_SCHEDULE",
    )

    # ---------------------------------------------------------------------
    # 永続化ディレクトリ
    # ---------------------------------------------------------------------
    data_dir: str = Field("data", alias="DATA_DIR")
    reports_dir: str = Field("reports", alias="REPORTS_DIR")
    backups_dir: str = Field("backups", alias="BACKUPS_DIR")
    exports_dir: str = Field("exports", alias="EXPORTS_DIR")
    nodes_config_path: str = Field("config/nodes.json", alias="NODES_CONFIG_PATH")

    # ---------------------------------------------------------------------
    # ノード監視
    # ---------------------------------------------------------------------
    check_interval_sec: float = Field(300.0, alias="CHECK_INTERVAL_SEC")
    probe_timeout_sec: float = Field(10.0, alias="PROBE_TIMEOUT_SEC")
    probe_attempts: int = Field(3, alias="PROBE_ATTEMPTS")
    probe_backoff_sec: float = Field(0.5, alias="PROBE_BACKOFF_SEC")
    history_retention_days: int = Field(30, alias="HISTORY_RETENTION_DAYS")
    uptime_threshold_bps: int = Field(
        8_000,
        alias="UPTIME_THRESHOLD_BPS",
        description="報酬対象となる最低稼働率 (basis points, 8000 = 80%)",
    )
    monthly_pool_divisor: int = Field(12, alias="MONTHLY_POOL_DIVISOR")
    monthly_cron: str = Field("0 0 1 * *", alias="MONTHLY_CRON")
    reward_retry_interval_sec: float = Field(
        3600.0,
        alias="REWARD_RETRY_INTERVAL_SEC",
        description="未配布 / 未確認の月次報酬を再評価する間隔",
    )

    # ---------------------------------------------------------------------
    # 年次リセット
    # ---------------------------------------------------------------------
    reset_enabled: bool = Field(True, alias="RESET_ENABLED")
    reset_cron: str = Field("0 0 1 8 *", alias="RESET_CRON")   # 8/1 00:00 UTC
    reset_dry_run: bool = Field(False, alias="RESET_DRY_RUN")
    eligibility_cron: str = Field("0 9 * * *", alias="ELIGIBILITY_CRON")
    reminder_window_days: int = Field(30, alias="REMINDER_WINDOW_DAYS")
    notification_webhook: str | None = Field(default=None, alias="NOTIFICATION_WEBHOOK")
    notification_timeout_sec: float = Field(5.0, alias="NOTIFICATION_TIMEOUT_SEC")

    # ---------------------------------------------------------------------
    # Swag トラッカー
    # ---------------------------------------------------------------------
    swag_poll_interval_sec: float = Field(60.0, alias="SWAG_POLL_INTERVAL_SEC")
    swag_start_block: int = Field(0, alias="SWAG_START_BLOCK")
    overdue_days: int = Field(7, alias="OVERDUE_DAYS")

    # ---------------------------------------------------------------------
    # サーバ / ログ / メトリクス
    # ---------------------------------------------------------------------
    http_host: str = Field("0.0.0.0", alias="HTTP_HOST")
    http_port: int = Field(8090, alias="HTTP_PORT")
    prometheus_port: int = Field(8091, alias="PROMETHEUS_PORT")
    log_level: str = Field(
        "INFO",
        alias="LOG_LEVEL",
        description="ログレベル（DEBUG / INFO / WARNING / ERROR）",
    )

    # ---------------------------------------------------------------------
    # 共通モデル設定
    # ---------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,   # 環境変数名の大文字小文字を無視
        populate_by_name=True,  # テストでは Settings(data_dir=...) と書けるように
    )

    # ------------------------------------------------------------------ #
    # helpers
    # ------------------------------------------------------------------ #
    def require(self, *fields: str) -> None:
        """
        未設定のまま起動させない。欠けているフィールドを列挙して
        ConfigurationError を送出する。
        """
        missing = [f for f in fields if not getattr(self, f, None)]
        if missing:
            aliases = [type(self).model_fields[f].alias or f.upper() for f in missing]
            raise ConfigurationError(
                "missing required configuration: " + ", ".join(aliases),
                missing=aliases,
            )

    @property
    def categories(self) -> list[str]:
        return list(self.category_caps)


# ------------------------------------------------------------
# シングルトン (CLI 用デフォルト。各コンポーネントは注入された Settings を使う)
# ------------------------------------------------------------
settings = Settings()

"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from gridworker.infra.logging_cfg import log_event

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    data_dir: str
    accounts_file: str
    worker_enabled: bool
    worker_owner: Optional[str]
    tick_interval: float
    max_concurrent_ticks: int
    max_consecutive_failures: int
    http_timeout: float
    http_max_attempts: int
    http_backoff_sec: float
    http_backoff_max_sec: float
    prefer_ipv4: bool
    product_cache_ttl: float
    equity_snapshot_interval: float
    equity_max_points: int
    equity_asset: Optional[str]
    activity_max_events: int
    audit_log_path: Optional[str]
    alert_enabled: bool
    alert_webhook_url: Optional[str]
    alert_webhook_type: str  # telegram, slack, discord, generic
    alert_rate_limit_sec: int
    telegram_bot_token: Optional[str]
    telegram_chat_id: Optional[str]
    metrics_port: int
    log_file: Optional[str]
    log_level: str

    def dump(self) -> dict:
        """Settings as a dict with secrets masked."""
        out = self.__dict__.copy()
        if out.get("telegram_bot_token"):
            out["telegram_bot_token"] = "****"
        return out

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        def _opt_env(key: str) -> Optional[str]:
            raw = os.getenv(key)
            return raw.strip() if raw and raw.strip() else None

        cfg = cls(
            data_dir=os.getenv("GW_DATA_DIR", "data"),
            accounts_file=os.getenv("GW_ACCOUNTS_FILE", "configs/accounts.yaml"),
            worker_enabled=env_bool("GW_WORKER_ENABLED", True),
            worker_owner=_opt_env("GW_WORKER_OWNER"),
            tick_interval=_float_env("GW_TICK_INTERVAL_SEC", 1.2),
            max_concurrent_ticks=_int_env("GW_MAX_CONCURRENT_TICKS", 8),
            max_consecutive_failures=_int_env("GW_MAX_CONSECUTIVE_FAILURES", 5),
            http_timeout=_float_env("GW_HTTP_TIMEOUT", 15.0),
            http_max_attempts=_int_env("GW_HTTP_MAX_ATTEMPTS", 3),
            http_backoff_sec=_float_env("GW_HTTP_BACKOFF_SEC", 0.25),
            http_backoff_max_sec=_float_env("GW_HTTP_BACKOFF_MAX_SEC", 4.0),
            prefer_ipv4=env_bool("GW_PREFER_IPV4", True),
            product_cache_ttl=_float_env("GW_PRODUCT_CACHE_TTL_SEC", 300.0),
            equity_snapshot_interval=_float_env("GW_EQUITY_SNAPSHOT_SEC", 300.0),
            equity_max_points=_int_env("GW_EQUITY_MAX_POINTS", 20000),
            equity_asset=_opt_env("GW_EQUITY_ASSET"),
            activity_max_events=_int_env("GW_ACTIVITY_MAX_EVENTS", 500),
            audit_log_path=os.getenv("GW_AUDIT_LOG", "data/exchange-audit.jsonl") or None,
            alert_enabled=env_bool("GW_ALERT_ENABLED", True),
            alert_webhook_url=_opt_env("GW_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("GW_ALERT_WEBHOOK_TYPE", "telegram"),
            alert_rate_limit_sec=_int_env("GW_ALERT_RATE_LIMIT_SEC", 0),
            telegram_bot_token=_opt_env("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=_opt_env("TELEGRAM_CHAT_ID"),
            metrics_port=_int_env("GW_METRICS_PORT", 0),
            log_file=os.getenv("GW_LOG_FILE", "gridworker.log") or None,
            log_level=os.getenv("GW_LOG_LEVEL", "INFO").upper(),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if self.tick_interval <= 0:
            raise ValueError("GW_TICK_INTERVAL_SEC must be > 0")
        if self.max_concurrent_ticks <= 0:
            raise ValueError("GW_MAX_CONCURRENT_TICKS must be > 0")
        if self.max_consecutive_failures <= 0:
            raise ValueError("GW_MAX_CONSECUTIVE_FAILURES must be > 0")
        if self.http_timeout <= 0:
            raise ValueError("GW_HTTP_TIMEOUT must be > 0")
        if self.http_max_attempts < 1:
            raise ValueError("GW_HTTP_MAX_ATTEMPTS must be >= 1")
        if self.http_backoff_sec < 0 or self.http_backoff_max_sec < self.http_backoff_sec:
            raise ValueError("GW_HTTP_BACKOFF_SEC must be >= 0 and <= GW_HTTP_BACKOFF_MAX_SEC")
        if self.equity_max_points < 0:
            raise ValueError("GW_EQUITY_MAX_POINTS must be >= 0 (0 = unlimited)")
        if self.activity_max_events <= 0:
            raise ValueError("GW_ACTIVITY_MAX_EVENTS must be > 0")
        if self.alert_webhook_type not in {"telegram", "slack", "discord", "generic"}:
            raise ValueError(f"GW_ALERT_WEBHOOK_TYPE={self.alert_webhook_type!r} is not supported")

        if self.http_max_attempts > 6:
            logging.getLogger("gridworker").warning(
                f"WARNING: GW_HTTP_MAX_ATTEMPTS={self.http_max_attempts} burns rate-limit budget "
                "on a failing exchange. 3-4 attempts is usually enough."
            )
        if self.alert_webhook_type == "telegram" and self.alert_enabled and not self.telegram_bot_token:
            logging.getLogger("gridworker").warning(
                "WARNING: TELEGRAM_BOT_TOKEN not set; lifecycle alerts will be dropped."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log the settings that most often get overridden, once at startup."""
    log_event(
        logging.getLogger("gridworker"),
        "config_loaded",
        data_dir=cfg.data_dir,
        tick_interval=cfg.tick_interval,
        max_concurrent_ticks=cfg.max_concurrent_ticks,
        http_max_attempts=cfg.http_max_attempts,
        worker_owner=cfg.worker_owner,
    )

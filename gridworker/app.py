"""
Worker wiring.

`start_worker` builds every component from Settings and launches the
scheduler loop. It is best effort: failures come back as the second element
of the returned tuple instead of raising, so a host process can log them and
carry on serving its other duties.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

import httpx

from gridworker.config.accounts import AccountResolver
from gridworker.config.config import Settings
from gridworker.infra.logging_cfg import log_event
from gridworker.infra.net import ensure_ipv4_preferred
from gridworker.monitoring.activity import ActivityRecorder, EquityRecorder
from gridworker.monitoring.alerting import AlertConfig, AlertManager, configure_alerts
from gridworker.monitoring.audit import AuditLog
from gridworker.monitoring.metrics import WorkerMetrics
from gridworker.orchestrator.bot_runner import BotRunner, RunnerConfig
from gridworker.orchestrator.exchanges import ExchangeProvider
from gridworker.orchestrator.scheduler import BotScheduler
from gridworker.service import AuthResolver, GridWorkerService
from gridworker.state.repository import BotRepository
from gridworker.state.store import JsonFileStore, KeyValueStore

log = logging.getLogger("gridworker")


@dataclass
class WorkerHandle:
    settings: Settings
    repo: BotRepository
    activity: ActivityRecorder
    equity: EquityRecorder
    accounts: AccountResolver
    alerts: AlertManager
    metrics: WorkerMetrics
    exchanges: ExchangeProvider
    runner: BotRunner
    scheduler: BotScheduler
    task: Optional[asyncio.Task] = None
    _closed: bool = field(default=False, repr=False)

    def service(self, auth: AuthResolver) -> GridWorkerService:
        """Service facade sharing this worker's store and recorders."""
        return GridWorkerService(
            repo=self.repo,
            auth=auth,
            activity=self.activity,
            equity=self.equity,
            accounts=self.accounts,
            alerts=self.alerts,
            metrics=self.metrics,
        )

    async def close(self, reason: str = "normal") -> None:
        if self._closed:
            return
        self._closed = True
        self.scheduler.stop()
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)
        await self.alerts.worker_shutdown(reason)
        await self.exchanges.close()
        await self.alerts.close()
        log_event(log, "worker_stopped", reason=reason)


def build_worker(
    settings: Settings,
    store: Optional[KeyValueStore] = None,
    accounts: Optional[AccountResolver] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> WorkerHandle:
    store = store or JsonFileStore(settings.data_dir)
    repo = BotRepository(store)
    metrics = WorkerMetrics()
    audit = AuditLog(settings.audit_log_path) if settings.audit_log_path else None
    accounts = accounts or AccountResolver.from_file(settings.accounts_file)
    alerts = configure_alerts(AlertConfig(
        webhook_url=settings.alert_webhook_url,
        webhook_type=settings.alert_webhook_type,
        telegram_bot_token=settings.telegram_bot_token,
        telegram_chat_id=settings.telegram_chat_id,
        rate_limit_seconds=settings.alert_rate_limit_sec,
        enabled=settings.alert_enabled,
    ))
    activity = ActivityRecorder(store, max_events=settings.activity_max_events)
    equity = EquityRecorder(store, max_points=settings.equity_max_points)
    exchanges = ExchangeProvider(
        accounts,
        timeout=settings.http_timeout,
        max_attempts=settings.http_max_attempts,
        backoff_sec=settings.http_backoff_sec,
        backoff_max_sec=settings.http_backoff_max_sec,
        prefer_ipv4=settings.prefer_ipv4,
        product_cache_ttl=settings.product_cache_ttl,
        audit=audit,
        metrics=metrics,
        transport=transport,
    )
    runner = BotRunner(
        repo=repo,
        exchanges=exchanges,
        activity=activity,
        equity=equity,
        alerts=alerts,
        metrics=metrics,
        config=RunnerConfig(
            max_consecutive_failures=settings.max_consecutive_failures,
            equity_snapshot_interval=settings.equity_snapshot_interval,
            equity_asset=settings.equity_asset,
        ),
    )
    scheduler = BotScheduler(
        repo=repo,
        runner=runner,
        tick_interval=settings.tick_interval,
        max_concurrent_ticks=settings.max_concurrent_ticks,
        owner=settings.worker_owner,
        metrics=metrics,
    )
    return WorkerHandle(
        settings=settings,
        repo=repo,
        activity=activity,
        equity=equity,
        accounts=accounts,
        alerts=alerts,
        metrics=metrics,
        exchanges=exchanges,
        runner=runner,
        scheduler=scheduler,
    )


async def start_worker(
    settings: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    accounts: Optional[AccountResolver] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    serve_metrics: bool = True,
) -> Tuple[Optional[WorkerHandle], Optional[Exception]]:
    """
    Build and launch the worker. Returns (handle, None) on success,
    (None, None) when the worker is disabled and (None, error) on failure.
    """
    try:
        settings = settings or Settings.load()
        if not settings.worker_enabled:
            log_event(log, "worker_disabled")
            return None, None
        if settings.prefer_ipv4:
            ensure_ipv4_preferred()
        handle = build_worker(settings, store=store, accounts=accounts, transport=transport)
        if serve_metrics and settings.metrics_port > 0:
            handle.metrics.serve(settings.metrics_port)
        bots = await handle.repo.list_raw_configs(settings.worker_owner)
        handle.task = asyncio.create_task(handle.scheduler.run_forever(), name="gridworker-scheduler")
    except Exception as exc:  # reported to the host, which decides what to do
        log_event(log, "worker_start_failed", level=logging.ERROR, err=f"{type(exc).__name__}: {exc}")
        return None, exc

    log_event(log, "worker_started", bots=len(bots), owner=settings.worker_owner,
              interval=settings.tick_interval)
    handle.alerts.worker_startup(settings.worker_owner, len(bots))
    return handle, None

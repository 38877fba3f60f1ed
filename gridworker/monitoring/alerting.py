"""
Best-effort alert delivery for bot lifecycle events.

- Telegram Bot API (HTML parse mode), Slack, Discord or a generic JSON webhook
- Rate limiting per (alert type, bot) to prevent alert storms
- Non-blocking: `notify` schedules delivery and returns immediately
- Delivery failures are logged and never propagate into bot processing
"""

from __future__ import annotations

import asyncio
import html
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional, Set, Tuple

import aiohttp

logger = logging.getLogger("gridworker")

TELEGRAM_API = "https://api.telegram.org"


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    BOT_CREATED = auto()
    BOT_STARTED = auto()
    BOT_STOPPED = auto()
    BOT_DELETED = auto()
    BOT_ERROR = auto()
    EMERGENCY_STOP = auto()
    WORKER_STARTUP = auto()
    WORKER_SHUTDOWN = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    """An alert to be sent."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    bot_id: Optional[str] = None
    destination: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "bot_id": self.bot_id,
        }


@dataclass
class AlertConfig:
    """Configuration for alerting."""
    webhook_url: Optional[str] = None
    webhook_type: str = "telegram"  # telegram, slack, discord, generic
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    min_severity: AlertSeverity = AlertSeverity.INFO
    rate_limit_seconds: int = 0  # Min seconds between same (type, bot) alert
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "gridworker"
    timeout_sec: float = 10.0
    retries: int = 2


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def format_telegram(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        lines = [f"<b>{html.escape(alert.title)}</b>", html.escape(alert.message)]
        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:6]:
                lines.append(f"<i>{html.escape(str(key))}</i>: {html.escape(str(value))}")
        return {
            "chat_id": alert.destination or config.telegram_chat_id,
            "text": "\n".join(lines),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: "#FF0000",
            AlertSeverity.WARNING: "#FFA500",
            AlertSeverity.INFO: "#0000FF",
        }.get(alert.severity, "#808080")

        fields = []
        if alert.bot_id:
            fields.append({"title": "Bot", "value": alert.bot_id, "short": True})
        fields.append({"title": "Type", "value": alert.alert_type.name, "short": True})
        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:
                fields.append({"title": key, "value": str(value), "short": True})

        return {
            "username": config.bot_name,
            "attachments": [{
                "color": color,
                "title": alert.title,
                "text": alert.message,
                "fields": fields,
                "footer": f"{config.bot_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }],
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: 0xFF0000,
            AlertSeverity.WARNING: 0xFFA500,
            AlertSeverity.INFO: 0x0000FF,
        }.get(alert.severity, 0x808080)

        fields = []
        if alert.bot_id:
            fields.append({"name": "Bot", "value": alert.bot_id, "inline": True})
        fields.append({"name": "Type", "value": alert.alert_type.name, "inline": True})
        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:
                fields.append({"name": key, "value": str(value), "inline": True})

        return {
            "username": config.bot_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "fields": fields,
                "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }],
        }


class AlertManager:
    """
    Manages alert delivery with rate limiting.

    `send` awaits delivery and reports success; `notify` fires and forgets so
    a slow webhook never stretches a tick.
    """

    def __init__(self, config: Optional[AlertConfig] = None) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[Tuple[AlertType, Optional[str]], int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def target_url(self) -> Optional[str]:
        if self.config.webhook_type == "telegram":
            if not self.config.telegram_bot_token:
                return None
            return f"{TELEGRAM_API}/bot{self.config.telegram_bot_token}/sendMessage"
        return self.config.webhook_url

    def _should_send(self, alert: Alert) -> bool:
        if not self.config.enabled or not self.target_url:
            return False
        if self.config.webhook_type == "telegram" and not (alert.destination or self.config.telegram_chat_id):
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False
        if self.config.rate_limit_seconds > 0:
            now_ms = int(time.time() * 1000)
            key = (alert.alert_type, alert.bot_id)
            if now_ms - self._last_alert_times.get(key, 0) < self.config.rate_limit_seconds * 1000:
                logger.debug(f"Alert rate limited: {alert.alert_type.name}")
                return False
            self._last_alert_times[key] = now_ms
        return True

    async def send(self, text: str, destination: Optional[str] = None) -> bool:
        """Deliver a free-form message. Returns False on any failure."""
        return await self.send_alert(Alert(
            alert_type=AlertType.CUSTOM,
            severity=AlertSeverity.INFO,
            title=self.config.bot_name,
            message=text,
            destination=destination,
        ))

    async def send_alert(self, alert: Alert) -> bool:
        if not self._should_send(alert):
            return False
        return await self._http_post(self._format_alert(alert))

    def notify(self, alert: Alert) -> bool:
        """Schedule delivery in the background. Returns False if filtered out."""
        if not self._should_send(alert):
            return False
        task = asyncio.create_task(self._http_post(self._format_alert(alert)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def drain(self) -> None:
        """Wait for background deliveries still in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "telegram": WebhookFormatter.format_telegram,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    async def _http_post(self, payload: Dict[str, Any]) -> bool:
        url = self.target_url
        if not url:
            return False
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.config.timeout_sec))

        retries = self.config.retries
        for attempt in range(retries + 1):
            try:
                async with self._session.post(url, json=payload) as resp:
                    if resp.status < 300:
                        logger.debug("Alert delivered successfully")
                        return True
                    logger.warning(f"Alert delivery failed: HTTP {resp.status}")
                    if 400 <= resp.status < 500 and resp.status != 429:
                        return False
            except asyncio.TimeoutError:
                logger.warning(f"Alert delivery timeout (attempt {attempt + 1})")
            except aiohttp.ClientError as e:
                logger.warning(f"Alert delivery error: {e}")

            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))
        return False

    # ─────────────────────────────────────────────────────────────────────
    # Convenience Methods for Lifecycle Alerts
    # ─────────────────────────────────────────────────────────────────────

    def bot_lifecycle(self, alert_type: AlertType, bot_id: str, name: str, symbol: str,
                      message: str, **details: Any) -> bool:
        severity = AlertSeverity.INFO
        if alert_type in (AlertType.BOT_ERROR, AlertType.EMERGENCY_STOP):
            severity = AlertSeverity.CRITICAL
        titles = {
            AlertType.BOT_CREATED: "Bot created",
            AlertType.BOT_STARTED: "Bot started",
            AlertType.BOT_STOPPED: "Bot stopped",
            AlertType.BOT_DELETED: "Bot deleted",
            AlertType.BOT_ERROR: "Bot error",
        }
        return self.notify(Alert(
            alert_type=alert_type,
            severity=severity,
            title=f"{titles.get(alert_type, alert_type.name)}: {name or bot_id} ({symbol})",
            message=message,
            bot_id=bot_id,
            details=details,
        ))

    def emergency_stop(self, user: str, exchange: str, bots: int) -> bool:
        return self.notify(Alert(
            alert_type=AlertType.EMERGENCY_STOP,
            severity=AlertSeverity.CRITICAL,
            title="Emergency stop",
            message=f"All bots on {exchange} are being halted and their orders cancelled.",
            details={"user": user, "exchange": exchange, "bots": bots},
        ))

    def worker_startup(self, owner: Optional[str], bots: int) -> bool:
        return self.notify(Alert(
            alert_type=AlertType.WORKER_STARTUP,
            severity=AlertSeverity.INFO,
            title="Worker started",
            message=f"Grid worker started with {bots} stored bots.",
            details={"owner": owner or "all"},
        ))

    async def worker_shutdown(self, reason: str = "normal") -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(Alert(
            alert_type=AlertType.WORKER_SHUTDOWN,
            severity=severity,
            title="Worker shutdown",
            message=f"Grid worker shutting down: {reason}",
        ))


# Global alert manager instance
_alert_manager: Optional[AlertManager] = None


def get_alert_manager() -> AlertManager:
    """Get the global alert manager instance."""
    global _alert_manager
    if _alert_manager is None:
        _alert_manager = AlertManager()
    return _alert_manager


def configure_alerts(config: AlertConfig) -> AlertManager:
    """Replace the global alert manager."""
    global _alert_manager
    _alert_manager = AlertManager(config)
    return _alert_manager

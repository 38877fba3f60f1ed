"""
Tests for AlertManager filtering, formatting and background delivery.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from gridworker.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    WebhookFormatter,
)


def telegram_manager(**overrides):
    config = AlertConfig(telegram_bot_token="123:abc", telegram_chat_id="42", **overrides)
    manager = AlertManager(config)
    manager._http_post = AsyncMock(return_value=True)
    return manager


class TestFiltering:
    @pytest.mark.asyncio
    async def test_disabled_without_token(self):
        manager = AlertManager(AlertConfig(telegram_chat_id="42"))
        manager._http_post = AsyncMock(return_value=True)
        assert manager.target_url is None
        assert await manager.send("hello") is False
        manager._http_post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_to_explicit_destination(self):
        manager = telegram_manager(telegram_chat_id=None)
        assert await manager.send("hello", destination="99") is True
        (payload,), _ = manager._http_post.await_args
        assert payload["chat_id"] == "99"
        assert manager.target_url == "https://api.telegram.org/bot123:abc/sendMessage"

    @pytest.mark.asyncio
    async def test_rate_limit_per_type_and_bot(self):
        manager = telegram_manager(rate_limit_seconds=60)
        assert manager.bot_lifecycle(AlertType.BOT_STARTED, "a", "grid a", "BTCUSD", "live")
        assert not manager.bot_lifecycle(AlertType.BOT_STARTED, "a", "grid a", "BTCUSD", "live")
        assert manager.bot_lifecycle(AlertType.BOT_STARTED, "b", "grid b", "BTCUSD", "live")
        await manager.drain()
        assert manager._http_post.await_count == 2

    @pytest.mark.asyncio
    async def test_min_severity(self):
        manager = telegram_manager(min_severity=AlertSeverity.CRITICAL)
        assert not manager.bot_lifecycle(AlertType.BOT_CREATED, "a", "", "BTCUSD", "created")
        assert manager.emergency_stop("alice@example.com", "delta_india", bots=2)
        await manager.drain()


class TestFormatting:
    def test_telegram_escapes_html(self):
        alert = Alert(AlertType.BOT_ERROR, AlertSeverity.CRITICAL, "Bot error: <x>",
                      "price < lower & more", details={"err": "<b>"})
        payload = WebhookFormatter.format_telegram(alert, AlertConfig(telegram_chat_id="42"))
        assert payload["parse_mode"] == "HTML"
        assert "&lt;x&gt;" in payload["text"]
        assert "price &lt; lower &amp; more" in payload["text"]
        assert "<b>Bot error" in payload["text"]

    def test_slack_and_discord_carry_bot(self):
        alert = Alert(AlertType.BOT_STOPPED, AlertSeverity.INFO, "Bot stopped", "done", bot_id="a")
        slack = WebhookFormatter.format_slack(alert, AlertConfig())
        discord = WebhookFormatter.format_discord(alert, AlertConfig())
        assert slack["attachments"][0]["fields"][0] == {"title": "Bot", "value": "a", "short": True}
        assert discord["embeds"][0]["fields"][0]["value"] == "a"


class TestDelivery:
    @pytest.mark.asyncio
    async def test_notify_does_not_block(self):
        manager = telegram_manager()
        gate = asyncio.Event()

        async def slow_post(payload):
            await gate.wait()
            return True

        manager._http_post = slow_post
        assert manager.bot_lifecycle(AlertType.BOT_STOPPED, "a", "grid", "BTCUSD", "stopped")
        assert len(manager._tasks) == 1
        gate.set()
        await manager.close()
        assert not manager._tasks

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self):
        manager = telegram_manager()
        manager._http_post = AsyncMock(return_value=False)
        assert await manager.worker_shutdown("signal") is False

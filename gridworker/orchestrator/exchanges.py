"""
Per-scope exchange handles.

Live bots share one signed client per (user, exchange account); paper bots
share one PaperExchange per (user, exchange account) fed by the venue's public
market data.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from gridworker.config.accounts import AccountResolver, default_base_url, normalize_exchange
from gridworker.exchange.api import ExchangeApi
from gridworker.exchange.client import ExchangeClient
from gridworker.exchange.paper import PaperExchange
from gridworker.monitoring.audit import AuditLog
from gridworker.state.models import BotConfig, ExecutionMode

log = logging.getLogger("gridworker")


class ExchangeProvider:
    def __init__(
        self,
        accounts: AccountResolver,
        timeout: float = 15.0,
        max_attempts: int = 3,
        backoff_sec: float = 0.25,
        backoff_max_sec: float = 4.0,
        prefer_ipv4: bool = True,
        product_cache_ttl: float = 300.0,
        audit: Optional[AuditLog] = None,
        metrics: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.accounts = accounts
        self._client_kwargs: Dict[str, Any] = dict(
            timeout=timeout,
            max_attempts=max_attempts,
            backoff_sec=backoff_sec,
            backoff_max_sec=backoff_max_sec,
            prefer_ipv4=prefer_ipv4,
            transport=transport,
            audit=audit,
            metrics=metrics,
        )
        self.product_cache_ttl = product_cache_ttl
        self._handles: Dict[Tuple[str, str, str], Any] = {}

    def register(self, owner: str, exchange: str, execution: ExecutionMode, handle: Any) -> None:
        """Install a handle directly (paper simulations, tests)."""
        self._handles[(owner, normalize_exchange(exchange), execution.value)] = handle

    def get(self, config: BotConfig) -> Any:
        key = (config.owner, normalize_exchange(config.exchange), config.execution.value)
        handle = self._handles.get(key)
        if handle is not None:
            return handle

        if config.execution == ExecutionMode.PAPER:
            market = ExchangeApi(
                ExchangeClient(None, base_url=default_base_url(key[1]), **self._client_kwargs),
                product_cache_ttl=self.product_cache_ttl,
            )
            handle = PaperExchange(market=market)
        else:
            creds = self.accounts.resolve(config.owner, key[1])
            handle = ExchangeApi(
                ExchangeClient(creds, **self._client_kwargs),
                product_cache_ttl=self.product_cache_ttl,
            )
        self._handles[key] = handle
        log.info(f"exchange_handle_created owner={config.owner} exchange={key[1]} mode={key[2]}")
        return handle

    async def close(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await handle.close()

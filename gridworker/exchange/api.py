"""
Typed Delta Exchange endpoints used by the grid worker.

Thin layer over ExchangeClient: builds paths and bodies, validates results into
the dataclasses in gridworker.exchange.models.
"""

from __future__ import annotations

import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from gridworker.core.errors import MalformedResponse
from gridworker.exchange.client import ExchangeClient
from gridworker.exchange.models import (
    LiveOrder,
    OrderAck,
    OrderStatus,
    Position,
    Product,
    Ticker,
    WalletBalance,
)

PRODUCT_CACHE_TTL_SEC = 300.0

# (base_url, symbol) -> (fetched_at, Product); shared by every client of a venue.
_product_cache: Dict[Tuple[str, str], Tuple[float, Product]] = {}


def clear_product_cache() -> None:
    _product_cache.clear()


def _size_field(size: Decimal) -> Any:
    if size == size.to_integral_value():
        return int(size)
    return format(size.normalize(), "f")


def _price_field(px: Decimal) -> str:
    return format(px.normalize(), "f")


class ExchangeApi:
    def __init__(self, client: ExchangeClient, product_cache_ttl: float = PRODUCT_CACHE_TTL_SEC) -> None:
        self.client = client
        self.product_cache_ttl = product_cache_ttl

    async def close(self) -> None:
        await self.client.close()

    async def get_product(self, symbol: str) -> Product:
        key = (self.client.base_url, symbol.upper())
        cached = _product_cache.get(key)
        now = time.time()
        if cached and now - cached[0] < self.product_cache_ttl:
            return cached[1]
        result = await self.client.request("GET", f"/v2/products/{symbol.upper()}", auth=False)
        product = Product.from_payload(result)
        _product_cache[key] = (now, product)
        return product

    async def get_ticker(self, symbol: str) -> Ticker:
        result = await self.client.request("GET", f"/v2/tickers/{symbol.upper()}", auth=False)
        return Ticker.from_payload(result)

    async def get_open_orders(self, product_id: int) -> List[LiveOrder]:
        result = await self.client.request(
            "GET", "/v2/orders", query={"product_ids": str(product_id), "states": "open,pending"},
        )
        if not isinstance(result, list):
            raise MalformedResponse("open orders: expected a list")
        return [LiveOrder.from_payload(o) for o in result]

    async def get_order(self, order_id: str) -> OrderStatus:
        result = await self.client.request("GET", f"/v2/orders/{order_id}")
        return OrderStatus.from_payload(result)

    async def get_position(self, product_id: int) -> Position:
        result = await self.client.request("GET", "/v2/positions", query={"product_id": product_id})
        if result is not None and not isinstance(result, dict):
            raise MalformedResponse("position: expected an object")
        return Position.from_payload(result or {}, product_id)

    async def get_wallet_balances(self) -> List[WalletBalance]:
        result = await self.client.request("GET", "/v2/wallet/balances")
        if not isinstance(result, list):
            raise MalformedResponse("wallet balances: expected a list")
        return [WalletBalance.from_payload(b) for b in result]

    async def place_limit_order(self, product_id: int, side: str, size: Decimal, limit_price: Decimal,
                                client_order_id: Optional[str] = None) -> OrderAck:
        body: Dict[str, Any] = {
            "product_id": product_id,
            "side": side,
            "order_type": "limit_order",
            "size": _size_field(size),
            "limit_price": _price_field(limit_price),
        }
        if client_order_id:
            body["client_order_id"] = client_order_id
        result = await self.client.request("POST", "/v2/orders", body=body)
        return OrderAck.from_payload(result)

    async def cancel_order(self, order_id: str, product_id: int) -> None:
        await self.client.request("DELETE", "/v2/orders", body={"id": int(order_id) if order_id.isdigit() else order_id,
                                                                "product_id": product_id})

    async def set_leverage(self, product_id: int, leverage: Decimal) -> None:
        await self.client.request(
            "POST", f"/v2/products/{product_id}/orders/leverage", body={"leverage": str(leverage)},
        )

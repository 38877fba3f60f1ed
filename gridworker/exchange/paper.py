"""
In-memory paper exchange.

Same surface as ExchangeApi. Public market data (products, tickers) can come
from a real venue via `market`; orders, positions and balances are simulated.
A resting limit order fills in full once the mark price trades through it.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from gridworker.core.errors import ExchangeRejection
from gridworker.exchange.models import (
    LiveOrder,
    OrderAck,
    OrderStatus,
    Position,
    Product,
    Ticker,
    WalletBalance,
)
from gridworker.infra.logging_cfg import log_event

log = logging.getLogger("gridworker")

PAPER_ASSET = "USD"


@dataclass
class _PaperOrder:
    order: LiveOrder
    state: str = "open"


class PaperExchange:
    def __init__(self, market: Any = None, starting_balance: Decimal = Decimal("10000"),
                 log_event: Optional[Callable[..., None]] = None) -> None:
        self.market = market
        self.balance = Decimal(starting_balance)
        self._products: Dict[str, Product] = {}
        self._marks: Dict[str, Decimal] = {}
        self._orders: Dict[str, _PaperOrder] = {}
        self._positions: Dict[int, Decimal] = {}
        self._leverage: Dict[int, Decimal] = {}
        self._ids = itertools.count(1)
        self._log_event = log_event or self._default_log
        # call journals, handy when inspecting a paper run
        self.placed: List[LiveOrder] = []
        self.cancelled: List[str] = []

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, level=logging.DEBUG, **kwargs)

    async def close(self) -> None:
        if self.market is not None:
            await self.market.close()

    # -- simulation controls ----------------------------------------------

    def add_product(self, product: Product, mark_price: Optional[Decimal] = None) -> None:
        self._products[product.symbol] = product
        if mark_price is not None:
            self._marks[product.symbol] = Decimal(mark_price)

    def set_mark(self, symbol: str, price: Decimal) -> None:
        symbol = symbol.upper()
        self._marks[symbol] = Decimal(price)
        product = self._products.get(symbol)
        if product is not None:
            self._match(product, Decimal(price))

    def inject_order(self, product_id: int, side: str, size: Decimal, limit_price: Decimal,
                     unfilled_size: Optional[Decimal] = None) -> LiveOrder:
        """Rest an order that this process did not place (manual or pre-crash order)."""
        order = LiveOrder(
            id=str(next(self._ids)),
            product_id=product_id,
            side=side,
            limit_price=Decimal(limit_price),
            size=Decimal(size),
            unfilled_size=Decimal(size) if unfilled_size is None else Decimal(unfilled_size),
            state="open",
        )
        self._orders[order.id] = _PaperOrder(order)
        return order

    def fill_order(self, order_id: str, quantity: Optional[Decimal] = None) -> None:
        rec = self._orders[order_id]
        qty = rec.order.unfilled_size if quantity is None else min(Decimal(quantity), rec.order.unfilled_size)
        self._apply_fill(rec, qty)

    def external_cancel(self, order_id: str) -> None:
        self._orders[order_id].state = "cancelled"

    def set_position(self, product_id: int, size: Decimal) -> None:
        self._positions[product_id] = Decimal(size)

    # -- exchange surface -------------------------------------------------

    async def get_product(self, symbol: str) -> Product:
        symbol = symbol.upper()
        if symbol not in self._products:
            if self.market is None:
                raise ExchangeRejection(f"unknown product {symbol}", status=404, error_code="not_found")
            self._products[symbol] = await self.market.get_product(symbol)
        return self._products[symbol]

    async def get_ticker(self, symbol: str) -> Ticker:
        symbol = symbol.upper()
        if self.market is not None:
            ticker = await self.market.get_ticker(symbol)
            if ticker.reference_price is not None:
                self.set_mark(symbol, ticker.reference_price)
            return ticker
        mark = self._marks.get(symbol)
        return Ticker(symbol=symbol, mark_price=mark, last_price=mark)

    async def get_open_orders(self, product_id: int) -> List[LiveOrder]:
        return [
            r.order for r in self._orders.values()
            if r.state == "open" and r.order.product_id == product_id
        ]

    async def get_order(self, order_id: str) -> OrderStatus:
        rec = self._orders.get(order_id)
        if rec is None:
            raise ExchangeRejection(f"order {order_id} not found", status=404, error_code="not_found")
        state = "open" if rec.state == "open" else ("closed" if rec.state == "filled" else "cancelled")
        return OrderStatus(id=order_id, state=state, size=rec.order.size, unfilled_size=rec.order.unfilled_size)

    async def get_position(self, product_id: int) -> Position:
        return Position(product_id=product_id, size=self._positions.get(product_id, Decimal("0")))

    async def get_wallet_balances(self) -> List[WalletBalance]:
        equity = self.equity()
        return [WalletBalance(asset_symbol=PAPER_ASSET, balance=equity, available_balance=equity)]

    async def place_limit_order(self, product_id: int, side: str, size: Decimal, limit_price: Decimal,
                                client_order_id: Optional[str] = None) -> OrderAck:
        if side not in ("buy", "sell"):
            raise ExchangeRejection(f"bad side {side}", status=400, error_code="invalid_side")
        if size <= 0:
            raise ExchangeRejection("size must be positive", status=400, error_code="invalid_size")
        order = LiveOrder(
            id=str(next(self._ids)),
            product_id=product_id,
            side=side,
            limit_price=Decimal(limit_price),
            size=Decimal(size),
            unfilled_size=Decimal(size),
            state="open",
            client_order_id=client_order_id,
        )
        rec = _PaperOrder(order)
        self._orders[order.id] = rec
        self.placed.append(order)
        self._log_event("paper_order_placed", order_id=order.id, side=side, px=str(limit_price), sz=str(size))
        product = self._product_by_id(product_id)
        if product is not None and product.symbol in self._marks:
            self._match(product, self._marks[product.symbol])
        return OrderAck(id=order.id, state=rec.state if rec.state != "filled" else "closed",
                        client_order_id=client_order_id)

    async def cancel_order(self, order_id: str, product_id: int) -> None:
        rec = self._orders.get(order_id)
        if rec is None or rec.state != "open":
            raise ExchangeRejection(f"order {order_id} is not open", status=400, error_code="open_order_not_found")
        rec.state = "cancelled"
        self.cancelled.append(order_id)

    async def set_leverage(self, product_id: int, leverage: Decimal) -> None:
        self._leverage[product_id] = Decimal(leverage)

    # -- internals --------------------------------------------------------

    def equity(self) -> Decimal:
        total = self.balance
        for product in self._products.values():
            size = self._positions.get(product.id, Decimal("0"))
            mark = self._marks.get(product.symbol)
            if size and mark is not None:
                total += size * mark * product.contract_value
        return total

    def _product_by_id(self, product_id: int) -> Optional[Product]:
        for product in self._products.values():
            if product.id == product_id:
                return product
        return None

    def _match(self, product: Product, mark: Decimal) -> None:
        for rec in list(self._orders.values()):
            if rec.state != "open" or rec.order.product_id != product.id:
                continue
            crossed = (rec.order.side == "buy" and mark <= rec.order.limit_price) or (
                rec.order.side == "sell" and mark >= rec.order.limit_price
            )
            if crossed:
                self._apply_fill(rec, rec.order.unfilled_size)

    def _apply_fill(self, rec: _PaperOrder, qty: Decimal) -> None:
        if qty <= 0:
            return
        order = rec.order
        product = self._product_by_id(order.product_id)
        cv = product.contract_value if product is not None else Decimal("1")
        signed = qty if order.side == "buy" else -qty
        self._positions[order.product_id] = self._positions.get(order.product_id, Decimal("0")) + signed
        self.balance -= signed * order.limit_price * cv
        rec.order = replace(order, unfilled_size=order.unfilled_size - qty)
        if rec.order.unfilled_size <= 0:
            rec.state = "filled"
        self._log_event("paper_fill", order_id=order.id, side=order.side, px=str(order.limit_price), sz=str(qty))

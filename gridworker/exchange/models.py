"""
Typed results for exchange endpoints.

Every `from_payload` validates the fields the worker depends on and raises
MalformedResponse otherwise, so a half-parsed payload never reaches the
reconciler.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from gridworker.core.errors import MalformedResponse


def _req(payload: Dict[str, Any], key: str, what: str) -> Any:
    if not isinstance(payload, dict) or key not in payload or payload[key] is None:
        raise MalformedResponse(f"{what}: missing field {key!r}")
    return payload[key]


def _dec(value: Any, what: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise MalformedResponse(f"{what}: not a number: {value!r}") from None


def _opt_dec(value: Any, what: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return _dec(value, what)


def _int(value: Any, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedResponse(f"{what}: not an integer: {value!r}") from None


def _side(value: Any, what: str) -> str:
    side = str(value).lower()
    if side not in ("buy", "sell"):
        raise MalformedResponse(f"{what}: bad side {value!r}")
    return side


@dataclass(frozen=True)
class Product:
    id: int
    symbol: str
    tick_size: Decimal
    contract_value: Decimal
    state: str = "live"
    min_order_size: Decimal = Decimal("1")  # contracts

    @classmethod
    def from_payload(cls, p: Dict[str, Any]) -> "Product":
        tick = _dec(_req(p, "tick_size", "product"), "product.tick_size")
        if tick <= 0:
            raise MalformedResponse(f"product: non-positive tick_size {tick}")
        specs = p.get("product_specs")
        min_size = _opt_dec(specs.get("min_order_size") if isinstance(specs, dict) else None,
                            "product.min_order_size")
        return cls(
            id=_int(_req(p, "id", "product"), "product.id"),
            symbol=str(_req(p, "symbol", "product")).upper(),
            tick_size=tick,
            contract_value=_dec(p.get("contract_value", "1"), "product.contract_value"),
            state=str(p.get("state") or "live"),
            min_order_size=max(Decimal("1"), min_size) if min_size is not None else Decimal("1"),
        )


@dataclass(frozen=True)
class Ticker:
    symbol: str
    mark_price: Optional[Decimal]
    last_price: Optional[Decimal]

    @property
    def reference_price(self) -> Optional[Decimal]:
        return self.mark_price if self.mark_price is not None else self.last_price

    @classmethod
    def from_payload(cls, p: Dict[str, Any]) -> "Ticker":
        return cls(
            symbol=str(_req(p, "symbol", "ticker")).upper(),
            mark_price=_opt_dec(p.get("mark_price"), "ticker.mark_price"),
            last_price=_opt_dec(p.get("close") or p.get("last_price"), "ticker.close"),
        )


@dataclass(frozen=True)
class LiveOrder:
    id: str
    product_id: int
    side: str
    limit_price: Decimal
    size: Decimal
    unfilled_size: Decimal
    state: str
    client_order_id: Optional[str] = None

    @property
    def filled_size(self) -> Decimal:
        return self.size - self.unfilled_size

    @classmethod
    def from_payload(cls, p: Dict[str, Any]) -> "LiveOrder":
        size = _dec(_req(p, "size", "order"), "order.size")
        unfilled = p.get("unfilled_size")
        return cls(
            id=str(_req(p, "id", "order")),
            product_id=_int(_req(p, "product_id", "order"), "order.product_id"),
            side=_side(_req(p, "side", "order"), "order.side"),
            limit_price=_dec(_req(p, "limit_price", "order"), "order.limit_price"),
            size=size,
            unfilled_size=size if unfilled is None else _dec(unfilled, "order.unfilled_size"),
            state=str(p.get("state") or "open"),
            client_order_id=p.get("client_order_id"),
        )


@dataclass(frozen=True)
class OrderStatus:
    """Final or current status of a single order looked up by id."""
    id: str
    state: str  # open, pending, closed, cancelled
    size: Decimal
    unfilled_size: Decimal

    @property
    def filled_size(self) -> Decimal:
        return self.size - self.unfilled_size

    @property
    def is_open(self) -> bool:
        return self.state in ("open", "pending")

    @property
    def fully_filled(self) -> bool:
        return not self.is_open and self.unfilled_size <= 0

    @classmethod
    def from_payload(cls, p: Dict[str, Any]) -> "OrderStatus":
        size = _dec(_req(p, "size", "order_status"), "order_status.size")
        unfilled = p.get("unfilled_size")
        return cls(
            id=str(_req(p, "id", "order_status")),
            state=str(_req(p, "state", "order_status")),
            size=size,
            unfilled_size=size if unfilled is None else _dec(unfilled, "order_status.unfilled_size"),
        )


@dataclass(frozen=True)
class Position:
    product_id: int
    size: Decimal  # signed: positive long, negative short
    entry_price: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, p: Dict[str, Any], product_id: int) -> "Position":
        if not p:
            return cls(product_id=product_id, size=Decimal("0"))
        return cls(
            product_id=_int(p.get("product_id", product_id), "position.product_id"),
            size=_dec(p.get("size", 0), "position.size"),
            entry_price=_opt_dec(p.get("entry_price"), "position.entry_price"),
        )


@dataclass(frozen=True)
class WalletBalance:
    asset_symbol: str
    balance: Decimal
    available_balance: Decimal

    @classmethod
    def from_payload(cls, p: Dict[str, Any]) -> "WalletBalance":
        balance = _dec(_req(p, "balance", "wallet"), "wallet.balance")
        return cls(
            asset_symbol=str(_req(p, "asset_symbol", "wallet")).upper(),
            balance=balance,
            available_balance=_dec(p.get("available_balance", balance), "wallet.available_balance"),
        )


@dataclass(frozen=True)
class OrderAck:
    id: str
    state: str
    client_order_id: Optional[str] = None

    @classmethod
    def from_payload(cls, p: Dict[str, Any]) -> "OrderAck":
        return cls(
            id=str(_req(p, "id", "order_ack")),
            state=str(p.get("state") or "open"),
            client_order_id=p.get("client_order_id"),
        )

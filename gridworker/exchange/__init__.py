"""
Exchange access: signed HTTP client, typed endpoints and paper execution.
"""

from gridworker.exchange.api import ExchangeApi, clear_product_cache
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
from gridworker.exchange.paper import PaperExchange
from gridworker.exchange.signing import sign_request, signed_headers

__all__ = [
    "ExchangeApi",
    "ExchangeClient",
    "PaperExchange",
    "clear_product_cache",
    "sign_request",
    "signed_headers",
    "LiveOrder",
    "OrderAck",
    "OrderStatus",
    "Position",
    "Product",
    "Ticker",
    "WalletBalance",
]

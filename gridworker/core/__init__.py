"""
Core utilities package.

Error taxonomy and JSON helpers shared by every other package.
"""

from gridworker.core.errors import (
    AuthError,
    BotConflict,
    ExchangeRejection,
    GridWorkerError,
    InvariantViolation,
    MalformedResponse,
    PersistenceError,
    ScopeNotFound,
    TransientNetworkError,
)
from gridworker.core.json_utils import dumps, loads

__all__ = [
    "AuthError",
    "BotConflict",
    "ExchangeRejection",
    "GridWorkerError",
    "InvariantViolation",
    "MalformedResponse",
    "PersistenceError",
    "ScopeNotFound",
    "TransientNetworkError",
    "dumps",
    "loads",
]

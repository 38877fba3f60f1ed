"""
Error taxonomy shared by the exchange client, the store and the scheduler.

Every error carries a `code` so the service layer can turn it into a
success/failure envelope without inspecting exception types twice.

    AuthError              bad session or exchange credentials, never retried
    TransientNetworkError  timeout, 5xx, rate limit, retried with backoff
    ExchangeRejection      business rejection (e.g. insufficient margin)
    MalformedResponse      exchange payload failed validation (fail closed)
    PersistenceError       local storage failure, retried next cycle
    InvariantViolation     malformed BotConfig, bot goes to Errored
    ScopeNotFound          request named a (user, exchange) scope we don't know
    BotConflict            request clashes with another bot (same symbol already running)
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GridWorkerError(Exception):
    code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "kind": type(self).__name__, "code": self.code}


class AuthError(GridWorkerError):
    code = 401


class TransientNetworkError(GridWorkerError):
    code = 503
    retryable = True

    def __init__(self, message: str, *, status: Optional[int] = None, retry_after: Optional[float] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)
        self.status = status
        self.retry_after = retry_after


class ExchangeRejection(GridWorkerError):
    code = 400

    def __init__(self, message: str, *, status: Optional[int] = None, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)
        self.status = status
        self.error_code = error_code


class MalformedResponse(ExchangeRejection):
    code = 502


class PersistenceError(GridWorkerError):
    code = 500
    retryable = True


class InvariantViolation(GridWorkerError):
    code = 422


class ScopeNotFound(GridWorkerError):
    code = 404


class BotConflict(GridWorkerError):
    code = 409

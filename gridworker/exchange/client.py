"""
Signed HTTP client for Delta Exchange with retry and error classification.

    timeout / transport error / 5xx / 429 -> TransientNetworkError, retried with backoff
    401 expired_signature                  -> clock resync, one immediate retry
    401 / 403                              -> AuthError, never retried
    other 4xx, or success: false           -> ExchangeRejection
    unparseable body                       -> MalformedResponse

Every attempt is logged and written to the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from gridworker.config.accounts import Credentials
from gridworker.core.errors import (
    AuthError,
    ExchangeRejection,
    MalformedResponse,
    TransientNetworkError,
)
from gridworker.core.json_utils import dumps, loads
from gridworker.exchange.signing import USER_AGENT, build_query_string, signed_headers
from gridworker.infra.logging_cfg import log_event
from gridworker.infra.net import IPV4_LOCAL_ADDRESS
from gridworker.monitoring.audit import AuditLog

log = logging.getLogger("gridworker")

EXPIRED_SIGNATURE_CODES = {"expired_signature", "signature_expired"}
RATE_LIMIT_RESET_HEADER = "x-rate-limit-reset"  # milliseconds until the quota refills

_ID_SEGMENT = re.compile(r"/\d+(?=/|$)")


def _endpoint_label(path: str) -> str:
    return _ID_SEGMENT.sub("/{id}", path)


def _error_code(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    err = payload.get("error")
    if isinstance(err, dict):
        code = err.get("code")
        return str(code) if code is not None else None
    if isinstance(err, str):
        return err
    return None


class ExchangeClient:
    def __init__(
        self,
        credentials: Optional[Credentials],
        base_url: Optional[str] = None,
        timeout: float = 15.0,
        max_attempts: int = 3,
        backoff_sec: float = 0.25,
        backoff_max_sec: float = 4.0,
        prefer_ipv4: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        audit: Optional[AuditLog] = None,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.credentials = credentials
        self.base_url = (base_url or (credentials.base_url if credentials else "")).rstrip("/")
        if not self.base_url:
            raise ValueError("ExchangeClient needs a base_url")
        self.max_attempts = max(1, max_attempts)
        self.backoff_sec = backoff_sec
        self.backoff_max_sec = backoff_max_sec
        self.clock_offset = 0.0
        self._audit = audit
        self._metrics = metrics
        self._log_event = log_event or self._default_log
        self._sleep = sleep

        if transport is None:
            transport = httpx.AsyncHTTPTransport(
                http2=True,
                local_address=IPV4_LOCAL_ADDRESS if prefer_ipv4 else None,
            )
        self._client = httpx.AsyncClient(base_url=self.base_url, transport=transport, timeout=timeout)

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event in ("http_retry", "http_error") else logging.DEBUG
        log_event(log, event, level=level, **kwargs)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ExchangeClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        path: str,
        query: Optional[Mapping[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        auth: bool = True,
    ) -> Any:
        """
        Send one logical request, retrying transient failures.

        Returns the `result` field of the exchange envelope when present,
        otherwise the decoded body.
        """
        method = method.upper()
        query_string = build_query_string(query)
        body_str = dumps(body) if body is not None else ""
        if auth and self.credentials is None:
            raise AuthError("Missing exchange credentials")

        attempt = 0
        failures = 0
        resynced = False
        while True:
            attempt += 1
            if auth:
                headers = signed_headers(
                    self.credentials.api_key, self.credentials.api_secret, method, path,
                    query_string, body_str, clock_offset=self.clock_offset,
                )
            else:
                headers = {"user-agent": USER_AGENT, "accept": "application/json"}

            t0 = time.monotonic()
            try:
                resp = await self._client.request(
                    method, path + query_string, content=body_str or None, headers=headers,
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                latency_ms = (time.monotonic() - t0) * 1000
                self._record(method, path, None, latency_ms, attempt, body, outcome=type(e).__name__)
                failures += 1
                err = TransientNetworkError(f"{method} {path}: {type(e).__name__}: {e}")
                if failures >= self.max_attempts:
                    raise err from e
                await self._backoff(method, path, failures, None, reason=type(e).__name__)
                continue

            latency_ms = (time.monotonic() - t0) * 1000
            status = resp.status_code
            payload, parse_error = self._decode(resp)
            code = _error_code(payload)
            self._record(method, path, status, latency_ms, attempt, body,
                         outcome="ok" if status < 400 else "error", error_code=code)

            if status == 429 or status >= 500:
                failures += 1
                retry_after = self._retry_after(resp)
                err = TransientNetworkError(
                    f"{method} {path}: HTTP {status}", status=status, retry_after=retry_after,
                )
                if failures >= self.max_attempts:
                    raise err
                await self._backoff(method, path, failures, retry_after, reason=f"http_{status}")
                continue

            if status == 401:
                if code in EXPIRED_SIGNATURE_CODES and not resynced:
                    resynced = True
                    self._resync_clock(payload, resp)
                    continue
                raise AuthError(f"{method} {path}: unauthorized ({code or status})", details={"status": status})

            if status == 403:
                raise AuthError(f"{method} {path}: forbidden ({code or status})", details={"status": status})

            if status >= 400:
                raise ExchangeRejection(
                    f"{method} {path}: rejected ({code or status})",
                    status=status, error_code=code, details={"body": payload} if payload is not None else None,
                )

            if parse_error is not None:
                raise MalformedResponse(f"{method} {path}: {parse_error}", status=status)
            if isinstance(payload, dict):
                if payload.get("success") is False:
                    raise ExchangeRejection(
                        f"{method} {path}: rejected ({code or 'success=false'})",
                        status=status, error_code=code,
                    )
                if "result" in payload:
                    return payload["result"]
            return payload

    def _decode(self, resp: httpx.Response) -> tuple[Any, Optional[str]]:
        raw = resp.content
        if not raw:
            return None, "empty body"
        try:
            return loads(raw), None
        except ValueError:
            return None, "body is not JSON"

    def _retry_after(self, resp: httpx.Response) -> Optional[float]:
        raw = resp.headers.get(RATE_LIMIT_RESET_HEADER)
        if raw is None:
            raw_sec = resp.headers.get("retry-after")
            if raw_sec is None:
                return None
            try:
                return max(0.0, float(raw_sec))
            except ValueError:
                return None
        try:
            return max(0.0, float(raw) / 1000.0)
        except ValueError:
            return None

    async def _backoff(self, method: str, path: str, failures: int,
                       retry_after: Optional[float], reason: str) -> None:
        delay = min(self.backoff_sec * (2 ** (failures - 1)), self.backoff_max_sec)
        delay += random.uniform(0, delay * 0.5)
        if retry_after is not None:
            delay = max(delay, retry_after)
        self._log_event("http_retry", method=method, path=path, attempt=failures,
                        delay=round(delay, 3), reason=reason)
        await self._sleep(delay)

    def _resync_clock(self, payload: Any, resp: httpx.Response) -> None:
        server_time: Optional[float] = None
        if isinstance(payload, dict):
            err = payload.get("error")
            ctx = err.get("context") if isinstance(err, dict) else None
            if isinstance(ctx, dict) and ctx.get("server_time") is not None:
                try:
                    server_time = float(ctx["server_time"])
                except (TypeError, ValueError):
                    server_time = None
        if server_time is None and resp.headers.get("date"):
            try:
                server_time = parsedate_to_datetime(resp.headers["date"]).timestamp()
            except (TypeError, ValueError):
                server_time = None
        if server_time is None:
            self._log_event("clock_resync_failed")
            return
        # Delta reports server_time in seconds; guard against micro/milliseconds.
        while server_time > 1e11:
            server_time /= 1000.0
        self.clock_offset = server_time - time.time()
        self._log_event("clock_resync", offset=round(self.clock_offset, 3))

    def _record(self, method: str, path: str, status: Optional[int], latency_ms: float,
                attempt: int, body: Optional[Dict[str, Any]], outcome: str,
                error_code: Optional[str] = None) -> None:
        event = "http_call" if outcome == "ok" else "http_error"
        self._log_event(event, method=method, path=path, status=status,
                        latency_ms=round(latency_ms, 1), attempt=attempt)
        if self._metrics is not None:
            self._metrics.observe_request(method, _endpoint_label(path), status, latency_ms / 1000.0)
        if self._audit is not None:
            try:
                self._audit.append({
                    "method": method,
                    "path": path,
                    "base_url": self.base_url,
                    "status": status,
                    "latency_ms": round(latency_ms, 1),
                    "attempt": attempt,
                    "outcome": outcome,
                    "error_code": error_code,
                    "api_key": self.credentials.masked_key if self.credentials else None,
                    "body_keys": sorted(body.keys()) if body else [],
                })
            except OSError as e:
                log.error(dumps({"event": "audit_write_failed", "err": str(e)}))

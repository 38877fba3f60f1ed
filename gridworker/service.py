"""
Service interface for dashboards and HTTP handlers.

Every call resolves the caller through the AuthResolver and returns an
Envelope; errors never escape as exceptions. Writes go through the store's
atomic update so they can race with scheduler ticks safely: the service only
edits BotConfig and stop flags, the scheduler alone writes BotState.
"""

from __future__ import annotations

import functools
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from gridworker.config.accounts import AccountResolver, normalize_exchange
from gridworker.core.errors import (
    AuthError,
    BotConflict,
    GridWorkerError,
    InvariantViolation,
    ScopeNotFound,
)
from gridworker.infra.logging_cfg import CRITICAL_SAFETY, log_event
from gridworker.monitoring.activity import ActivityRecorder, EquityRecorder
from gridworker.monitoring.alerting import AlertManager, AlertType
from gridworker.state.models import BotConfig, BotStatus, EventKind, ExecutionMode, Scope, now_ms
from gridworker.state.repository import BotRepository

log = logging.getLogger("gridworker")

EDITABLE_FIELDS = {"name", "lower", "upper", "levels", "quantity", "leverage", "mode", "tick_size",
                   "symbol", "exchange", "execution", "direction", "max_positions", "stop_out_of_range",
                   "drawdown_stop_pct"}
# changing these would orphan live orders on the old instrument/account
LOCKED_WHILE_ACTIVE = {"symbol", "exchange", "execution"}


class AuthResolver(Protocol):
    async def resolve(self, request: Any) -> str:
        """Return the user id for the request or raise AuthError."""


class SessionAuthResolver:
    """Resolve `request["session"]` against a session -> user mapping."""

    def __init__(self, sessions: Mapping[str, str]) -> None:
        self._sessions = dict(sessions)

    async def resolve(self, request: Any) -> str:
        token = request.get("session") if isinstance(request, Mapping) else None
        user = self._sessions.get(token) if token else None
        if not user:
            raise AuthError("Unauthorized")
        return user


@dataclass(frozen=True)
class Envelope:
    ok: bool
    data: Any = None
    error: Optional[str] = None
    code: int = 200

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok, "code": self.code}
        if self.ok:
            out["data"] = self.data
        else:
            out["error"] = self.error
        return out


def enveloped(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Envelope]]:
    @functools.wraps(fn)
    async def wrapper(self: "GridWorkerService", *args: Any, **kwargs: Any) -> Envelope:
        try:
            return Envelope(ok=True, data=await fn(self, *args, **kwargs))
        except GridWorkerError as e:
            log_event(log, "service_error", level=logging.WARNING, op=fn.__name__,
                      kind=type(e).__name__, err=e.message)
            return Envelope(ok=False, error=e.message, code=e.code)
    return wrapper


class GridWorkerService:
    def __init__(
        self,
        repo: BotRepository,
        auth: AuthResolver,
        activity: ActivityRecorder,
        equity: EquityRecorder,
        accounts: Optional[AccountResolver] = None,
        alerts: Optional[AlertManager] = None,
        metrics: Any = None,
    ) -> None:
        self.repo = repo
        self.auth = auth
        self.activity = activity
        self.equity = equity
        self.accounts = accounts
        self.alerts = alerts
        self.metrics = metrics

    async def _owned(self, user: str, bot_id: str) -> BotConfig:
        config = await self.repo.get_config(bot_id)
        if config is None or config.owner != user:
            raise ScopeNotFound(f"bot {bot_id} not found")
        return config

    async def _scope_known(self, scope: Scope) -> bool:
        for config in await self.repo.list_configs(scope.user):
            if normalize_exchange(config.exchange) == scope.exchange:
                return True
        return self.accounts is not None and self.accounts.known(scope.user, scope.exchange)

    # ─────────────────────────────────────────────────────────────────────
    # Emergency stop & feeds
    # ─────────────────────────────────────────────────────────────────────

    @enveloped
    async def emergency_stop(self, request: Any, exchange: str) -> Dict[str, Any]:
        """
        Halt every bot of the caller on one exchange account.

        Returns once the flag is durably stored; the scheduler cancels orders
        on its next tick. Repeated requests are no-ops.
        """
        user = await self.auth.resolve(request)
        scope = Scope(user, normalize_exchange(exchange))
        if not await self._scope_known(scope):
            raise ScopeNotFound(f"no bots or credentials for {scope.exchange}")

        newly_set = await self.repo.set_stop_flag(scope)
        bots = [c for c in await self.repo.list_configs(user)
                if normalize_exchange(c.exchange) == scope.exchange and c.running]
        if newly_set:
            await self.activity.append(user, EventKind.EMERGENCY_STOP, exchange=scope.exchange,
                                       detail={"bots": [c.bot_id for c in bots]})
            log_event(log, "emergency_stop", level=CRITICAL_SAFETY, user=user,
                      exchange=scope.exchange, bots=len(bots))
            if self.alerts is not None:
                self.alerts.emergency_stop(user, scope.exchange, len(bots))
            if self.metrics is not None:
                self.metrics.emergency_stops.labels(exchange=scope.exchange).inc()
        return {"exchange": scope.exchange, "already_set": not newly_set, "bots": len(bots)}

    @enveloped
    async def list_activity(self, request: Any, limit: Optional[int] = None) -> list:
        user = await self.auth.resolve(request)
        return [e.to_dict() for e in await self.activity.list(user, limit)]

    @enveloped
    async def equity_history(self, request: Any, mode: str = "live") -> list:
        user = await self.auth.resolve(request)
        try:
            execution = ExecutionMode(mode)
        except ValueError:
            raise InvariantViolation(f"unknown mode {mode!r}") from None
        return [s.to_dict() for s in await self.equity.history(user, execution)]

    # ─────────────────────────────────────────────────────────────────────
    # Bot CRUD
    # ─────────────────────────────────────────────────────────────────────

    @enveloped
    async def list_bots(self, request: Any) -> list:
        user = await self.auth.resolve(request)
        out = []
        for config in await self.repo.list_configs(user):
            state = await self.repo.load_state(config.bot_id)
            out.append({"config": config.to_dict(), "state": state.to_dict()})
        return out

    @enveloped
    async def create_bot(self, request: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        user = await self.auth.resolve(request)
        ts = now_ms()
        fields = {k: v for k, v in payload.items() if k in EDITABLE_FIELDS}
        config = BotConfig.from_dict({
            **fields,
            "bot_id": uuid.uuid4().hex[:12],
            "owner": user,
            "exchange": normalize_exchange(payload.get("exchange")),
            "running": False,
            "created_at_ms": ts,
            "updated_at_ms": ts,
        })
        config.validate()
        await self.repo.save_config(config)
        await self.activity.append(user, EventKind.CREATED, bot_id=config.bot_id, exchange=config.exchange,
                                   detail={"symbol": config.symbol, "name": config.name})
        if self.alerts is not None:
            self.alerts.bot_lifecycle(AlertType.BOT_CREATED, config.bot_id, config.name, config.symbol,
                                      f"Grid {config.lower}-{config.upper} x{config.levels} created.")
        if payload.get("running"):
            config = await self._start(user, config.bot_id)
        return config.to_dict()

    @enveloped
    async def edit_bot(self, request: Any, bot_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        user = await self.auth.resolve(request)
        current = await self._owned(user, bot_id)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise InvariantViolation(f"fields not editable: {', '.join(sorted(unknown))}")
        state = await self.repo.load_state(bot_id)
        active = current.running or state.status in (BotStatus.RUNNING, BotStatus.STOPPING)
        locked = {k for k in LOCKED_WHILE_ACTIVE if k in changes}
        if active and locked:
            raise InvariantViolation(f"stop the bot before changing {', '.join(sorted(locked))}")

        def _edit(config: BotConfig) -> BotConfig:
            merged = BotConfig.from_dict({**config.to_dict(), **changes})
            merged.validate()
            return merged

        updated = await self.repo.update_config(bot_id, _edit)
        if updated is None:
            raise ScopeNotFound(f"bot {bot_id} not found")
        return updated.to_dict()

    async def _start(self, user: str, bot_id: str) -> BotConfig:
        config = await self._owned(user, bot_id)
        config.validate()
        for other in await self.repo.list_configs(user):
            if (
                other.bot_id != bot_id
                and other.running
                and other.symbol == config.symbol
                and normalize_exchange(other.exchange) == normalize_exchange(config.exchange)
            ):
                raise BotConflict(f"{config.symbol} already has a running bot ({other.name or other.bot_id})")

        await self.repo.clear_stop_flag(config.scope)
        started = await self.repo.update_config(
            bot_id, lambda c: c.with_changes(running=True, start_requested_ms=now_ms()),
        )
        if started is None:
            raise ScopeNotFound(f"bot {bot_id} not found")
        log_event(log, "bot_start_requested", user=user, bot_id=bot_id, symbol=config.symbol)
        return started

    @enveloped
    async def start_bot(self, request: Any, bot_id: str) -> Dict[str, Any]:
        """Mark the bot running; the scheduler resets and activates it on its next tick."""
        user = await self.auth.resolve(request)
        return (await self._start(user, bot_id)).to_dict()

    @enveloped
    async def stop_bot(self, request: Any, bot_id: str) -> Dict[str, Any]:
        user = await self.auth.resolve(request)
        await self._owned(user, bot_id)
        stopped = await self.repo.update_config(bot_id, lambda c: c.with_changes(running=False))
        if stopped is None:
            raise ScopeNotFound(f"bot {bot_id} not found")
        log_event(log, "bot_stop_requested", user=user, bot_id=bot_id)
        return stopped.to_dict()

    @enveloped
    async def delete_bot(self, request: Any, bot_id: str) -> Dict[str, Any]:
        user = await self.auth.resolve(request)
        config = await self._owned(user, bot_id)
        state = await self.repo.load_state(bot_id)
        if config.running or state.status in (BotStatus.RUNNING, BotStatus.STOPPING):
            raise BotConflict("stop the bot and wait for its orders to be cancelled before deleting it")
        await self.repo.delete_config(bot_id)
        await self.activity.append(user, EventKind.DELETED, bot_id=bot_id, exchange=config.exchange,
                                   detail={"symbol": config.symbol, "name": config.name})
        if self.alerts is not None:
            self.alerts.bot_lifecycle(AlertType.BOT_DELETED, bot_id, config.name, config.symbol, "Bot deleted.")
        return {"bot_id": bot_id, "deleted": True}

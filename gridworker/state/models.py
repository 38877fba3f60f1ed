"""
Persistent records for bots, their runtime state and the activity feed.

BotConfig is the user's intent and is edited only through the service layer.
BotState is owned by the scheduler while the bot is active; everything else
gets copies via to_dict().
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import asdict, dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from gridworker.core.errors import InvariantViolation


def now_ms() -> int:
    return int(time.time() * 1000)


EXCHANGES = ("delta_india", "delta_global")
DEFAULT_EXCHANGE = "delta_india"


def normalize_exchange(exchange: Optional[str]) -> str:
    """Canonical exchange account id; empty means the India venue."""
    if exchange is None or not str(exchange).strip():
        return DEFAULT_EXCHANGE
    ex = str(exchange).strip().lower()
    if ex not in EXCHANGES:
        raise InvariantViolation(f"unknown exchange {exchange!r}, expected one of {', '.join(EXCHANGES)}")
    return ex


def _dec(value: Any, name: str) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvariantViolation(f"{name} is not a number: {value!r}") from None
    if not d.is_finite():
        raise InvariantViolation(f"{name} must be finite, got {value!r}")
    return d


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class GridMode(str, Enum):
    ARITHMETIC = "arithmetic"
    GEOMETRIC = "geometric"


class Direction(str, Enum):
    """Which side of the book the grid may open exposure on."""
    NEUTRAL = "neutral"
    LONG = "long"  # buys open, sells only close
    SHORT = "short"  # sells open, buys only close


class ExecutionMode(str, Enum):
    LIVE = "live"
    PAPER = "paper"


class BotStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in (BotStatus.STOPPED, BotStatus.ERRORED)


class EventKind(str, Enum):
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"
    DELETED = "deleted"
    ORDER_PLACED = "order-placed"
    ORDER_CANCELLED = "order-cancelled"
    ORDER_FILLED = "order-filled"
    ERROR = "error"
    EMERGENCY_STOP = "emergency-stop"


@dataclass(frozen=True)
class Scope:
    """(user, exchange account) pair that an emergency stop applies to."""
    user: str
    exchange: str

    @property
    def key(self) -> str:
        return f"{self.user}/{self.exchange}"


@dataclass(frozen=True)
class BotConfig:
    bot_id: str
    owner: str
    exchange: str
    symbol: str
    lower: Decimal
    upper: Decimal
    levels: int
    quantity: Decimal
    leverage: Decimal = Decimal("1")
    mode: GridMode = GridMode.ARITHMETIC
    name: str = ""
    execution: ExecutionMode = ExecutionMode.LIVE
    running: bool = False
    tick_size: Optional[Decimal] = None
    created_at_ms: int = 0
    updated_at_ms: int = 0
    start_requested_ms: int = 0  # bumped by every start request
    direction: Direction = Direction.NEUTRAL
    max_positions: int = 0  # lots of exposure per side, 0 = unlimited
    stop_out_of_range: bool = False
    drawdown_stop_pct: Decimal = Decimal("0")  # 0 = off

    @property
    def scope(self) -> Scope:
        return Scope(self.owner, self.exchange)

    def validate(self) -> None:
        if not self.bot_id:
            raise InvariantViolation("bot_id must be non-empty")
        if not self.symbol or not self.symbol.strip():
            raise InvariantViolation("symbol must be non-empty")
        if not self.lower < self.upper:
            raise InvariantViolation(f"lower ({self.lower}) must be below upper ({self.upper})")
        if self.lower <= 0:
            raise InvariantViolation("lower must be positive")
        if self.levels < 2:
            raise InvariantViolation(f"levels must be >= 2, got {self.levels}")
        if self.quantity <= 0:
            raise InvariantViolation("quantity must be positive")
        if self.leverage <= 0:
            raise InvariantViolation("leverage must be positive")
        if self.tick_size is not None and self.tick_size <= 0:
            raise InvariantViolation("tick_size must be positive")
        if self.exchange not in EXCHANGES:
            raise InvariantViolation(f"unknown exchange {self.exchange!r}")
        if self.max_positions < 0:
            raise InvariantViolation("max_positions must be >= 0")
        if not Decimal("0") <= self.drawdown_stop_pct <= Decimal("100"):
            raise InvariantViolation(f"drawdown_stop_pct must be within 0-100, got {self.drawdown_stop_pct}")

    def grid_hash(self) -> str:
        """Hash of the fields that shape the ladder; a change means re-seeding the grid."""
        parts = [self.symbol, str(self.lower), str(self.upper), str(self.levels),
                 str(self.quantity), self.mode.value, str(self.tick_size), self.direction.value]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "owner": self.owner,
            "exchange": self.exchange,
            "symbol": self.symbol,
            "lower": str(self.lower),
            "upper": str(self.upper),
            "levels": self.levels,
            "quantity": str(self.quantity),
            "leverage": str(self.leverage),
            "mode": self.mode.value,
            "name": self.name,
            "execution": self.execution.value,
            "running": self.running,
            "tick_size": str(self.tick_size) if self.tick_size is not None else None,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "start_requested_ms": self.start_requested_ms,
            "direction": self.direction.value,
            "max_positions": self.max_positions,
            "stop_out_of_range": self.stop_out_of_range,
            "drawdown_stop_pct": str(self.drawdown_stop_pct),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BotConfig":
        try:
            mode = GridMode(str(d.get("mode") or "arithmetic").lower())
            execution = ExecutionMode(str(d.get("execution") or "live").lower())
            direction = Direction(str(d.get("direction") or "neutral").lower())
            levels = int(d.get("levels", 0))
            max_positions = int(d.get("max_positions") or 0)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvariantViolation(str(e)) from None
        tick = d.get("tick_size")
        return cls(
            bot_id=str(d.get("bot_id") or ""),
            owner=str(d.get("owner") or ""),
            exchange=normalize_exchange(d.get("exchange")),
            symbol=str(d.get("symbol") or "").strip().upper(),
            lower=_dec(d.get("lower"), "lower"),
            upper=_dec(d.get("upper"), "upper"),
            levels=levels,
            quantity=_dec(d.get("quantity"), "quantity"),
            leverage=_dec(d.get("leverage", "1"), "leverage"),
            mode=mode,
            name=str(d.get("name") or ""),
            execution=execution,
            running=bool(d.get("running", False)),
            tick_size=_dec(tick, "tick_size") if tick not in (None, "") else None,
            created_at_ms=int(d.get("created_at_ms") or 0),
            updated_at_ms=int(d.get("updated_at_ms") or 0),
            start_requested_ms=int(d.get("start_requested_ms") or 0),
            direction=direction,
            max_positions=max_positions,
            stop_out_of_range=_flag(d.get("stop_out_of_range", False)),
            drawdown_stop_pct=_dec(d.get("drawdown_stop_pct") or "0", "drawdown_stop_pct"),
        )

    def with_changes(self, **changes: Any) -> "BotConfig":
        return replace(self, **changes)


@dataclass
class LevelSlot:
    side: Optional[str]  # "buy", "sell" or None for the idle level
    order_id: Optional[str] = None
    quantity: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {"side": self.side, "order_id": self.order_id, "quantity": str(self.quantity)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LevelSlot":
        return cls(
            side=d.get("side"),
            order_id=d.get("order_id"),
            quantity=Decimal(str(d.get("quantity", "0"))),
        )


@dataclass
class BotState:
    status: BotStatus = BotStatus.CREATED
    slots: Dict[int, LevelSlot] = field(default_factory=dict)
    product_id: Optional[int] = None
    grid_hash: Optional[str] = None
    last_reconciled_ms: int = 0
    last_error: Optional[str] = None
    error_streak: int = 0
    degraded: bool = False
    stop_reason: Optional[str] = None
    started_at_ms: int = 0
    stopped_at_ms: int = 0
    start_seen_ms: int = 0  # last BotConfig.start_requested_ms acted on
    start_equity: Optional[Decimal] = None  # account equity at activation, for the drawdown stop

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "slots": {str(i): s.to_dict() for i, s in sorted(self.slots.items())},
            "product_id": self.product_id,
            "grid_hash": self.grid_hash,
            "last_reconciled_ms": self.last_reconciled_ms,
            "last_error": self.last_error,
            "error_streak": self.error_streak,
            "degraded": self.degraded,
            "stop_reason": self.stop_reason,
            "started_at_ms": self.started_at_ms,
            "stopped_at_ms": self.stopped_at_ms,
            "start_seen_ms": self.start_seen_ms,
            "start_equity": str(self.start_equity) if self.start_equity is not None else None,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "BotState":
        if not d:
            return cls()
        return cls(
            status=BotStatus(d.get("status", "created")),
            slots={int(i): LevelSlot.from_dict(s) for i, s in (d.get("slots") or {}).items()},
            product_id=d.get("product_id"),
            grid_hash=d.get("grid_hash"),
            last_reconciled_ms=int(d.get("last_reconciled_ms") or 0),
            last_error=d.get("last_error"),
            error_streak=int(d.get("error_streak") or 0),
            degraded=bool(d.get("degraded", False)),
            stop_reason=d.get("stop_reason"),
            started_at_ms=int(d.get("started_at_ms") or 0),
            stopped_at_ms=int(d.get("stopped_at_ms") or 0),
            start_seen_ms=int(d.get("start_seen_ms") or 0),
            start_equity=Decimal(str(d["start_equity"])) if d.get("start_equity") is not None else None,
        )

    def copy(self) -> "BotState":
        return BotState.from_dict(self.to_dict())


@dataclass(frozen=True)
class EmergencyStopFlag:
    set: bool = False
    set_at_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"set": self.set, "set_at_ms": self.set_at_ms}

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "EmergencyStopFlag":
        if not d:
            return cls()
        return cls(set=bool(d.get("set", False)), set_at_ms=int(d.get("set_at_ms") or 0))


@dataclass(frozen=True)
class ActivityEvent:
    seq: int
    ts_ms: int
    user: str
    kind: EventKind
    bot_id: Optional[str] = None
    exchange: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ActivityEvent":
        return cls(
            seq=int(d["seq"]),
            ts_ms=int(d["ts_ms"]),
            user=str(d["user"]),
            kind=EventKind(d["kind"]),
            bot_id=d.get("bot_id"),
            exchange=d.get("exchange"),
            detail=dict(d.get("detail") or {}),
        )


@dataclass(frozen=True)
class EquitySample:
    label: str  # ISO-8601 timestamp
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "value": self.value}

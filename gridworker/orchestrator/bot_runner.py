"""
BotRunner: one tick of one bot's lifecycle state machine.

    Created --activate--> Running --stop flag / user stop / risk stop--> Stopping --> Stopped
       any --auth failure / bad config / failure streak--> Errored
    Errored --stop flag--> Stopping (cancels whatever the bot left on the book)

A tick reads the bot's config and state, reads the emergency stop flag fresh
from the store, talks to the exchange, persists the new state and appends
activity events. Errors stay inside the tick: the scheduler only sees a
TickResult.

Live exchange orders are ground truth. Persisted slots are a hint that lets
the reconciler recognise fills; losing them (crash between place and persist)
costs at most an adoption, never a duplicate order.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from gridworker.core.errors import (
    AuthError,
    ExchangeRejection,
    GridWorkerError,
    InvariantViolation,
    MalformedResponse,
    PersistenceError,
)
from gridworker.infra.logging_cfg import CRITICAL_SAFETY, log_event
from gridworker.monitoring.activity import ActivityRecorder, EquityRecorder
from gridworker.monitoring.alerting import AlertManager, AlertType
from gridworker.orchestrator.exchanges import ExchangeProvider
from gridworker.risk.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from gridworker.state.models import BotConfig, BotState, BotStatus, EventKind, ExecutionMode, now_ms
from gridworker.state.repository import BotRepository
from gridworker.strategy.grid_calculator import normalize_order_size
from gridworker.strategy.reconciler import (
    ALREADY_CLOSED_CODES,
    GridReconciler,
    LiveSnapshot,
    PlanOutcome,
    ReconcilePlan,
)

log = logging.getLogger("gridworker")

STABLE_ASSETS = ("USD", "USDT", "USDC")


@dataclass
class RunnerConfig:
    """Configuration for BotRunner."""
    max_consecutive_failures: int = 5
    equity_snapshot_interval: float = 300.0
    equity_asset: Optional[str] = None  # None: sum of stablecoin wallets


@dataclass
class TickResult:
    """Result of a single bot tick."""
    bot_id: str
    success: bool
    status: Optional[BotStatus] = None
    placed: int = 0
    cancelled: int = 0
    failed: int = 0
    fills: int = 0
    skipped: bool = False
    error: Optional[str] = None
    duration_ms: float = 0.0


class BotRunner:
    def __init__(
        self,
        repo: BotRepository,
        exchanges: ExchangeProvider,
        activity: ActivityRecorder,
        equity: Optional[EquityRecorder] = None,
        alerts: Optional[AlertManager] = None,
        metrics: Any = None,
        config: Optional[RunnerConfig] = None,
        reconciler: Optional[GridReconciler] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.repo = repo
        self.exchanges = exchanges
        self.activity = activity
        self.equity = equity
        self.alerts = alerts
        self.metrics = metrics
        self.config = config or RunnerConfig()
        self.reconciler = reconciler or GridReconciler()
        self._log_event = log_event or self._default_log
        self._last_equity: Dict[Tuple[str, str], float] = {}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.INFO
        if event in ("bot_errored", "bot_emergency_stopping"):
            level = CRITICAL_SAFETY
        elif event in ("tick_failed", "stop_incomplete", "equity_sample_error", "leverage_set_failed",
                       "bot_risk_stop", "drawdown_limit_hit"):
            level = logging.WARNING
        log_event(log, event, level=level, **kwargs)

    # ─────────────────────────────────────────────────────────────────────
    # Entry point
    # ─────────────────────────────────────────────────────────────────────

    async def tick(self, raw_config: Dict[str, Any]) -> TickResult:
        bot_id = str(raw_config.get("bot_id") or "")
        t0 = time.monotonic()
        result = TickResult(bot_id=bot_id, success=True)
        try:
            await self._tick(raw_config, result)
        except PersistenceError as e:
            # nothing durable changed; next tick starts over from exchange truth
            result.success = False
            result.error = str(e)
            self._log_event("tick_failed", bot_id=bot_id, err=str(e), kind="persistence")
            if self.metrics is not None:
                self.metrics.tick_errors.labels(bot_id=bot_id, error_type="PersistenceError").inc()
        result.duration_ms = (time.monotonic() - t0) * 1000
        if self.metrics is not None:
            self.metrics.tick_duration_sec.labels(bot_id=bot_id).observe(result.duration_ms / 1000)
            if result.status is not None:
                self.metrics.set_status(bot_id, result.status)
        return result

    async def _tick(self, raw_config: Dict[str, Any], result: TickResult) -> None:
        bot_id = result.bot_id
        state = await self.repo.load_state(bot_id)
        result.status = state.status

        try:
            config = BotConfig.from_dict(raw_config)
            config.validate()
        except InvariantViolation as e:
            result.success = False
            result.error = str(e)
            if state.status != BotStatus.ERRORED:
                await self._to_errored(None, bot_id, raw_config, state, f"invalid config: {e}")
            result.status = state.status
            return

        if config.running and config.start_requested_ms > state.start_seen_ms:
            if state.status == BotStatus.RUNNING:
                state.start_seen_ms = config.start_requested_ms
            else:
                self._log_event("bot_restart", bot_id=bot_id, previous=state.status.value)
                state = BotState(start_seen_ms=config.start_requested_ms)
                await self.repo.save_state(bot_id, state)
                result.status = state.status

        flag = await self.repo.get_stop_flag(config.scope)
        if state.status == BotStatus.ERRORED and flag.set and state.stop_reason != "emergency":
            # an errored bot may still have its ladder on the book
            if state.product_id is None:
                await self._to_stopped(config, state, "emergency")
                result.status = state.status
                return
            state.status = BotStatus.STOPPING
            state.stop_reason = "emergency"
            await self.repo.save_state(bot_id, state)
            self._log_event("bot_emergency_stopping", bot_id=bot_id, reason="emergency", previous="errored")

        if state.status.terminal:
            return
        if state.status == BotStatus.CREATED and not config.running:
            return

        if state.status in (BotStatus.CREATED, BotStatus.RUNNING) and (flag.set or not config.running):
            reason = "emergency" if flag.set else "user"
            if state.status == BotStatus.CREATED:
                # never activated, nothing on the book
                await self._to_stopped(config, state, reason)
                result.status = state.status
                return
            state.status = BotStatus.STOPPING
            state.stop_reason = reason
            await self.repo.save_state(bot_id, state)
            self._log_event("bot_emergency_stopping" if flag.set else "bot_stopping", bot_id=bot_id, reason=reason)

        breaker = CircuitBreaker(
            CircuitBreakerConfig(error_threshold=self.config.max_consecutive_failures),
            streak=state.error_streak,
        )
        try:
            exchange = self.exchanges.get(config)
            if state.status == BotStatus.CREATED:
                await self._activate(exchange, config, state)
            if state.status == BotStatus.RUNNING:
                await self._run(exchange, config, state, breaker, result)
            if state.status == BotStatus.STOPPING:
                await self._stop(exchange, config, state, result)
        except AuthError as e:
            result.success = False
            result.error = str(e)
            breaker.force_trip("auth")
            await self._to_errored(config, bot_id, raw_config, state, f"authentication failed: {e}")
        except InvariantViolation as e:
            result.success = False
            result.error = str(e)
            await self._to_errored(config, bot_id, raw_config, state, f"invalid grid: {e}")
        except PersistenceError:
            raise
        except GridWorkerError as e:
            result.success = False
            result.error = str(e)
            await self._record_failure(config, state, breaker, e, where=state.status.value)
        result.status = state.status

    # ─────────────────────────────────────────────────────────────────────
    # States
    # ─────────────────────────────────────────────────────────────────────

    async def _activate(self, exchange: Any, config: BotConfig, state: BotState) -> None:
        product = await exchange.get_product(config.symbol)
        size = normalize_order_size(config.quantity, product.min_order_size)
        if size != config.quantity:
            self._log_event("order_size_adjusted", bot_id=config.bot_id,
                            requested=str(config.quantity), size=str(size))
        start_equity = None
        if config.drawdown_stop_pct > 0:
            start_equity = await self._account_equity(exchange)
        try:
            await exchange.set_leverage(product.id, config.leverage)
        except AuthError:
            raise
        except GridWorkerError as e:
            self._log_event("leverage_set_failed", bot_id=config.bot_id, err=str(e))

        state.status = BotStatus.RUNNING
        state.product_id = product.id
        state.grid_hash = config.grid_hash()
        state.slots = {}
        state.started_at_ms = now_ms()
        state.start_seen_ms = max(state.start_seen_ms, config.start_requested_ms)
        state.error_streak = 0
        state.degraded = False
        state.last_error = None
        state.stop_reason = None
        state.start_equity = start_equity
        await self.repo.save_state(config.bot_id, state)

        await self.activity.append(config.owner, EventKind.STARTED, bot_id=config.bot_id,
                                   exchange=config.exchange,
                                   detail={"symbol": config.symbol, "execution": config.execution.value})
        self._log_event("bot_started", bot_id=config.bot_id, symbol=config.symbol, product_id=product.id)
        if self.alerts is not None:
            self.alerts.bot_lifecycle(AlertType.BOT_STARTED, config.bot_id, config.name, config.symbol,
                                      f"Grid {config.lower}-{config.upper} x{config.levels} is live.",
                                      execution=config.execution.value)

    async def _run(self, exchange: Any, config: BotConfig, state: BotState,
                   breaker: CircuitBreaker, result: TickResult) -> None:
        product = await exchange.get_product(config.symbol)
        state.product_id = product.id
        if state.grid_hash != config.grid_hash():
            self._log_event("grid_reseed", bot_id=config.bot_id, old=state.grid_hash, new=config.grid_hash())
            state.slots = {}
            state.grid_hash = config.grid_hash()

        # the ladder is planned in whole contracts; the hash stays on the user's quantity
        sized = config.with_changes(quantity=normalize_order_size(config.quantity, product.min_order_size))
        snapshot = await self._snapshot(exchange, sized, state, product.id, product.tick_size)

        risk_reason = await self._risk_stop_reason(exchange, sized, state, snapshot)
        if risk_reason is not None:
            state.status = BotStatus.STOPPING
            state.stop_reason = risk_reason
            await self.repo.save_state(config.bot_id, state)
            self._log_event("bot_risk_stop", bot_id=config.bot_id, reason=risk_reason,
                            reference_price=str(snapshot.reference_price))
            return

        plan = self.reconciler.plan(sized, state, snapshot)

        async def stop_requested() -> bool:
            return (await self.repo.get_stop_flag(config.scope)).set

        outcome = await self.reconciler.apply(plan, exchange, sized, product.id, stop_requested)

        new_state = plan.state
        new_state.last_reconciled_ms = now_ms()
        if outcome.failed:
            first_action, first_error = outcome.failed[0]
            new_state.degraded = True
            new_state.last_error = str(first_error)
            if breaker.record_error("apply", first_error):
                new_state.status = BotStatus.ERRORED
        else:
            breaker.record_success()
            new_state.degraded = False
        new_state.error_streak = breaker.error_streak
        if outcome.halted:
            new_state.status = BotStatus.STOPPING
            new_state.stop_reason = "emergency"
        _copy_into(state, new_state)
        await self.repo.save_state(config.bot_id, state)

        await self._record_plan_events(config, plan, outcome)
        result.placed = len(outcome.placed)
        result.cancelled = len(outcome.cancelled)
        result.failed = len(outcome.failed)
        result.fills = len(plan.fills)
        result.success = outcome.ok

        if state.status == BotStatus.ERRORED:
            await self._announce_errored(config, state.last_error or "repeated failures")
        elif outcome.ok and state.status == BotStatus.RUNNING:
            await self._maybe_sample_equity(exchange, config)

    async def _stop(self, exchange: Any, config: BotConfig, state: BotState, result: TickResult) -> None:
        product_id = state.product_id
        if product_id is None:
            product_id = (await exchange.get_product(config.symbol)).id
            state.product_id = product_id

        orders = await exchange.get_open_orders(product_id)
        failures: List[GridWorkerError] = []
        for order in sorted(orders, key=lambda o: (o.limit_price, o.id)):
            try:
                await exchange.cancel_order(order.id, product_id)
            except AuthError:
                raise
            except ExchangeRejection as e:
                if e.error_code not in ALREADY_CLOSED_CODES:
                    failures.append(e)
                continue
            except GridWorkerError as e:
                failures.append(e)
                continue
            result.cancelled += 1
            if self.metrics is not None:
                self.metrics.orders_cancelled.labels(bot_id=config.bot_id, reason="stop").inc()
            await self.activity.append(config.owner, EventKind.ORDER_CANCELLED, bot_id=config.bot_id,
                                       exchange=config.exchange,
                                       detail={"order_id": order.id, "side": order.side,
                                               "price": str(order.limit_price), "reason": "stop"})

        remaining = await exchange.get_open_orders(product_id) if not failures else orders
        if failures or remaining:
            state.degraded = True
            state.last_error = str(failures[0]) if failures else f"{len(remaining)} orders still open"
            await self.repo.save_state(config.bot_id, state)
            result.success = False
            result.failed = len(failures)
            result.error = state.last_error
            self._log_event("stop_incomplete", bot_id=config.bot_id, failures=len(failures),
                            remaining=len(remaining))
            return

        await self._to_stopped(config, state, state.stop_reason or "user")

    async def _to_stopped(self, config: BotConfig, state: BotState, reason: str) -> None:
        state.status = BotStatus.STOPPED
        state.slots = {}
        state.degraded = False
        state.stop_reason = reason
        state.stopped_at_ms = now_ms()
        await self.repo.save_state(config.bot_id, state)
        if reason != "user":
            # a halt the user did not ask for needs an explicit start to undo
            await self.repo.update_config(config.bot_id, lambda c: c.with_changes(running=False))

        await self.activity.append(config.owner, EventKind.STOPPED, bot_id=config.bot_id,
                                   exchange=config.exchange, detail={"reason": reason})
        self._log_event("bot_stopped", bot_id=config.bot_id, reason=reason)
        if self.alerts is not None:
            self.alerts.bot_lifecycle(AlertType.BOT_STOPPED, config.bot_id, config.name, config.symbol,
                                      f"Stopped ({reason}); open orders cancelled.")

    async def _to_errored(self, config: Optional[BotConfig], bot_id: str, raw: Dict[str, Any],
                          state: BotState, reason: str) -> None:
        state.status = BotStatus.ERRORED
        state.last_error = reason
        await self.repo.save_state(bot_id, state)
        owner = config.owner if config else str(raw.get("owner") or "")
        if owner:
            await self.activity.append(owner, EventKind.ERROR, bot_id=bot_id,
                                       exchange=config.exchange if config else raw.get("exchange"),
                                       detail={"error": reason, "fatal": True})
        self._log_event("bot_errored", bot_id=bot_id, reason=reason)
        if self.alerts is not None:
            self.alerts.bot_lifecycle(AlertType.BOT_ERROR, bot_id, config.name if config else "",
                                      config.symbol if config else str(raw.get("symbol") or ""), reason)

    async def _announce_errored(self, config: BotConfig, reason: str) -> None:
        await self.activity.append(config.owner, EventKind.ERROR, bot_id=config.bot_id,
                                   exchange=config.exchange, detail={"error": reason, "fatal": True})
        self._log_event("bot_errored", bot_id=config.bot_id, reason=reason)
        if self.alerts is not None:
            self.alerts.bot_lifecycle(AlertType.BOT_ERROR, config.bot_id, config.name, config.symbol,
                                      f"Halted after {self.config.max_consecutive_failures} failing ticks: {reason}")

    async def _record_failure(self, config: BotConfig, state: BotState, breaker: CircuitBreaker,
                              error: GridWorkerError, where: str) -> None:
        if self.metrics is not None:
            self.metrics.tick_errors.labels(bot_id=config.bot_id, error_type=type(error).__name__).inc()
        state.last_error = str(error)
        state.degraded = True
        if state.status == BotStatus.STOPPING:
            # stopping never escalates; keep retrying the cancels
            await self.repo.save_state(config.bot_id, state)
            self._log_event("stop_incomplete", bot_id=config.bot_id, err=str(error))
            return
        tripped = breaker.record_error(where, error)
        state.error_streak = breaker.error_streak
        if tripped:
            state.status = BotStatus.ERRORED
        await self.repo.save_state(config.bot_id, state)
        await self.activity.append(config.owner, EventKind.ERROR, bot_id=config.bot_id,
                                   exchange=config.exchange,
                                   detail={"error": str(error), "kind": type(error).__name__,
                                           "streak": state.error_streak})
        if tripped:
            await self._announce_errored(config, str(error))

    # ─────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────

    async def _snapshot(self, exchange: Any, config: BotConfig, state: BotState,
                        product_id: int, tick_size: Decimal) -> LiveSnapshot:
        orders = await exchange.get_open_orders(product_id)
        ticker = await exchange.get_ticker(config.symbol)
        position = Decimal("0")
        if not state.slots or config.max_positions > 0:
            position = (await exchange.get_position(product_id)).size

        live_ids = {o.id for o in orders}
        statuses = {}
        for slot in state.slots.values():
            if slot.order_id is None or slot.order_id in live_ids:
                continue
            try:
                statuses[slot.order_id] = await exchange.get_order(slot.order_id)
            except MalformedResponse:
                raise
            except ExchangeRejection as e:
                self._log_event("order_status_unknown", bot_id=config.bot_id,
                                order_id=slot.order_id, err=str(e))
        return LiveSnapshot(
            product_id=product_id,
            open_orders=orders,
            position=position,
            reference_price=ticker.reference_price,
            tick_size=tick_size,
            order_status=statuses,
        )

    async def _record_plan_events(self, config: BotConfig, plan: ReconcilePlan, outcome: PlanOutcome) -> None:
        for fill in plan.fills:
            if self.metrics is not None:
                self.metrics.fills_total.labels(bot_id=config.bot_id, side=fill.side).inc()
            await self.activity.append(config.owner, EventKind.ORDER_FILLED, bot_id=config.bot_id,
                                       exchange=config.exchange,
                                       detail={"order_id": fill.order_id, "level": fill.level, "side": fill.side,
                                               "price": str(fill.price), "quantity": str(fill.quantity),
                                               "partial": fill.partial})
        for action in outcome.cancelled:
            if self.metrics is not None:
                self.metrics.orders_cancelled.labels(bot_id=config.bot_id, reason=action.reason).inc()
            await self.activity.append(config.owner, EventKind.ORDER_CANCELLED, bot_id=config.bot_id,
                                       exchange=config.exchange,
                                       detail={"order_id": action.order_id, "side": action.side,
                                               "price": str(action.price), "reason": action.reason})
        for action, ack in outcome.placed:
            if self.metrics is not None:
                self.metrics.orders_placed.labels(bot_id=config.bot_id, side=action.side).inc()
            await self.activity.append(config.owner, EventKind.ORDER_PLACED, bot_id=config.bot_id,
                                       exchange=config.exchange,
                                       detail={"order_id": ack.id, "level": action.level, "side": action.side,
                                               "price": str(action.price), "quantity": str(action.quantity)})
        if outcome.failed:
            if self.metrics is not None:
                for _, error in outcome.failed:
                    self.metrics.orders_rejected.labels(bot_id=config.bot_id,
                                                        error_type=type(error).__name__).inc()
            await self.activity.append(config.owner, EventKind.ERROR, bot_id=config.bot_id,
                                       exchange=config.exchange,
                                       detail={"failed_actions": [
                                           {"kind": a.kind, "price": str(a.price), "side": a.side,
                                            "error": str(e)} for a, e in outcome.failed
                                       ]})

    async def _risk_stop_reason(self, exchange: Any, config: BotConfig, state: BotState,
                                snapshot: LiveSnapshot) -> Optional[str]:
        ref = snapshot.reference_price
        if config.stop_out_of_range and ref is not None and not config.lower <= ref <= config.upper:
            return "out_of_range"
        if config.drawdown_stop_pct > 0 and state.start_equity:
            equity = await self._account_equity(exchange)
            drawdown = (state.start_equity - equity) / state.start_equity * 100
            if drawdown >= config.drawdown_stop_pct:
                self._log_event("drawdown_limit_hit", bot_id=config.bot_id, start=str(state.start_equity),
                                equity=str(equity), drawdown_pct=f"{drawdown:.2f}")
                return "circuit_breaker"
        return None

    async def _account_equity(self, exchange: Any) -> Decimal:
        balances = await exchange.get_wallet_balances()
        if self.config.equity_asset:
            wanted = (self.config.equity_asset.upper(),)
        else:
            wanted = STABLE_ASSETS
        return sum((b.balance for b in balances if b.asset_symbol in wanted), Decimal("0"))

    async def _maybe_sample_equity(self, exchange: Any, config: BotConfig) -> None:
        if self.equity is None:
            return
        key = (config.owner, config.execution.value)
        now = time.time()
        last = self._last_equity.get(key)
        if last is not None and now - last < self.config.equity_snapshot_interval:
            return
        try:
            value = await self._account_equity(exchange)
        except AuthError:
            raise
        except GridWorkerError as e:
            self._log_event("equity_sample_error", bot_id=config.bot_id, err=str(e))
            return
        self._last_equity[key] = now
        await self.equity.record(config.owner, ExecutionMode(config.execution), float(value))


def _copy_into(target: BotState, source: BotState) -> None:
    for name in source.__dataclass_fields__:
        setattr(target, name, getattr(source, name))

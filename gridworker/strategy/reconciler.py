"""
GridReconciler: desired grid vs. live exchange state.

Planning is pure: given the bot config, its persisted slots and a snapshot of
the exchange, produce the cancellations and placements that bring the live
book to the grid. Applying a plan is separate so the caller can interleave
emergency-stop checks between placements.

Slot rules:
    buy filled at level i   -> i goes idle, level i+1 becomes a sell
    sell filled at level i  -> i goes idle, level i-1 becomes a buy
    fill at the range edge  -> the level keeps its side and is re-placed
    cancelled / unknown     -> re-placed on the same side, remainder only
    live order at slot px   -> satisfied (partial fills included)

A long grid seeds only buys, a short grid only sells; the closing side arms
after a fill. With max_positions set, placements that could take exposure on
a side past that many lots are deferred.

Live orders are the source of truth: an untracked order that matches a slot
is adopted instead of placing a duplicate, and anything left over on the
instrument is cancelled.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from gridworker.core.errors import AuthError, ExchangeRejection, GridWorkerError
from gridworker.exchange.models import LiveOrder, OrderAck, OrderStatus
from gridworker.infra.logging_cfg import log_event
from gridworker.state.models import BotConfig, BotState, Direction, LevelSlot
from gridworker.strategy.grid_calculator import GridCalculator

log = logging.getLogger("gridworker")

CANCEL = "cancel"
PLACE = "place"

# Cancel errors meaning the order is already gone.
ALREADY_CLOSED_CODES = {"open_order_not_found", "order_not_found", "not_found"}


@dataclass
class LiveSnapshot:
    """Exchange truth for one instrument at one moment."""
    product_id: int
    open_orders: List[LiveOrder]
    position: Decimal = Decimal("0")
    reference_price: Optional[Decimal] = None
    tick_size: Optional[Decimal] = None
    order_status: Dict[str, OrderStatus] = field(default_factory=dict)


@dataclass(frozen=True)
class GridAction:
    kind: str  # "cancel" or "place"
    price: Decimal
    side: Optional[str] = None
    quantity: Decimal = Decimal("0")
    level: Optional[int] = None
    order_id: Optional[str] = None
    reason: str = ""

    def sort_key(self) -> Tuple[int, Decimal, str, int]:
        return (
            0 if self.kind == CANCEL else 1,
            self.price,
            self.order_id or "",
            self.level if self.level is not None else -1,
        )


@dataclass(frozen=True)
class FillEvent:
    level: int
    side: str
    price: Decimal
    quantity: Decimal
    order_id: str
    partial: bool = False


@dataclass
class ReconcilePlan:
    actions: List[GridAction]
    state: BotState
    fills: List[FillEvent] = field(default_factory=list)
    adopted: List[str] = field(default_factory=list)
    deferred: List[GridAction] = field(default_factory=list)  # held back by max_positions

    @property
    def cancels(self) -> List[GridAction]:
        return [a for a in self.actions if a.kind == CANCEL]

    @property
    def placements(self) -> List[GridAction]:
        return [a for a in self.actions if a.kind == PLACE]


@dataclass
class PlanOutcome:
    placed: List[Tuple[GridAction, OrderAck]] = field(default_factory=list)
    cancelled: List[GridAction] = field(default_factory=list)
    failed: List[Tuple[GridAction, GridWorkerError]] = field(default_factory=list)
    halted: bool = False  # stop flag observed before a placement

    @property
    def ok(self) -> bool:
        return not self.failed


def _apply_fill(slots: Dict[int, LevelSlot], level: int, side: str, quantity: Decimal, n_levels: int) -> None:
    step = 1 if side == "buy" else -1
    neighbour = level + step
    if neighbour < 0 or neighbour >= n_levels:
        slots[level] = LevelSlot(side=side, order_id=None, quantity=quantity)
        return
    slots[level] = LevelSlot(side=None, order_id=None, quantity=Decimal("0"))
    opposite = "sell" if side == "buy" else "buy"
    current = slots.get(neighbour)
    if current is None or current.side != opposite:
        slots[neighbour] = LevelSlot(side=opposite, order_id=None, quantity=quantity)


class GridReconciler:
    def __init__(self, log_event: Optional[Callable[..., None]] = None) -> None:
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, level=logging.DEBUG, **kwargs)

    # -- planning ---------------------------------------------------------

    def seed_slots(self, config: BotConfig, prices: List[Decimal], snapshot: LiveSnapshot) -> Dict[int, LevelSlot]:
        ref = snapshot.reference_price
        if ref is None:
            ref = (config.lower + config.upper) / 2
        slots = {}
        for i, px in enumerate(prices):
            side: Optional[str] = "buy" if px <= ref else "sell"
            # one-sided grids only open on their own side; the other side arms after a fill
            if config.direction == Direction.LONG and side == "sell":
                side = None
            elif config.direction == Direction.SHORT and side == "buy":
                side = None
            slots[i] = LevelSlot(side=side, order_id=None,
                                 quantity=config.quantity if side else Decimal("0"))

        position = snapshot.position or Decimal("0")
        replays = int(abs(position) // config.quantity)
        side = "buy" if position > 0 else "sell"
        for _ in range(replays):
            candidates = [i for i, s in slots.items() if s.side == side]
            if not candidates:
                break
            # nearest to the reference price: highest buy, lowest sell
            level = max(candidates) if side == "buy" else min(candidates)
            _apply_fill(slots, level, side, config.quantity, len(prices))
        if replays:
            self._log_event("grid_seed_position_replay", bot_id=config.bot_id,
                            position=str(position), replays=replays)
        return slots

    def plan(self, config: BotConfig, state: BotState, snapshot: LiveSnapshot) -> ReconcilePlan:
        prices = GridCalculator.target_prices(config, snapshot.tick_size)
        tick = GridCalculator.effective_tick(config, snapshot.tick_size)
        tolerance = tick / 2
        n = len(prices)

        new_state = state.copy()
        if not new_state.slots:
            new_state.slots = self.seed_slots(config, prices, snapshot)
        slots = new_state.slots

        live = {o.id: o for o in snapshot.open_orders if o.product_id == snapshot.product_id}
        fills: List[FillEvent] = []
        pending: set = set()

        # 1. tracked orders that left the book
        for level in sorted(slots):
            slot = slots[level]
            if slot.order_id is None or slot.order_id in live:
                continue
            status = snapshot.order_status.get(slot.order_id)
            if status is not None and status.is_open:
                # lookup says still open but listing missed it; leave it alone this tick
                pending.add(level)
                continue
            if slot.side is None:
                slot.order_id = None
                continue
            filled = status.filled_size if status is not None else Decimal("0")
            remaining = slot.quantity - filled
            if status is not None and (status.fully_filled or remaining <= 0):
                fills.append(FillEvent(level, slot.side, prices[level], slot.quantity, slot.order_id))
                _apply_fill(slots, level, slot.side, config.quantity, n)
                continue
            if filled > 0:
                fills.append(FillEvent(level, slot.side, prices[level], filled, slot.order_id, partial=True))
                slot.quantity = remaining
            slot.order_id = None

        # 2. match live orders to slots
        pool = dict(live)

        def matches(order: LiveOrder, level: int, s: LevelSlot) -> bool:
            return (
                order.side == s.side
                and abs(order.limit_price - prices[level]) <= tolerance
                and order.size == s.quantity
            )

        placements: List[GridAction] = []
        adopted: List[str] = []
        for level in sorted(slots):
            slot = slots[level]
            if slot.side is None:
                continue
            if level in pending:
                continue
            if slot.order_id is not None:
                tracked = pool.get(slot.order_id)
                if tracked is not None and matches(tracked, level, slot):
                    del pool[slot.order_id]
                    continue
                slot.order_id = None
            candidate = next(
                (o for oid, o in sorted(pool.items()) if matches(o, level, slot)),
                None,
            )
            if candidate is not None:
                slot.order_id = candidate.id
                del pool[candidate.id]
                adopted.append(candidate.id)
                continue
            placements.append(GridAction(
                kind=PLACE, price=prices[level], side=slot.side,
                quantity=slot.quantity, level=level, reason="missing",
            ))

        placements, deferred = self._cap_exposure(config, snapshot, slots, placements)

        # 3. everything left on the instrument is drift
        cancels = [
            GridAction(kind=CANCEL, price=o.limit_price, side=o.side, quantity=o.size,
                       order_id=o.id, reason="drift")
            for o in pool.values()
        ]

        actions = sorted(cancels, key=GridAction.sort_key) + sorted(placements, key=GridAction.sort_key)
        if actions or fills or deferred:
            self._log_event("grid_plan", bot_id=config.bot_id, cancels=len(cancels),
                            places=len(placements), fills=len(fills), adopted=len(adopted),
                            deferred=len(deferred))
        return ReconcilePlan(actions=actions, state=new_state, fills=fills, adopted=adopted,
                             deferred=deferred)

    def _cap_exposure(
        self,
        config: BotConfig,
        snapshot: LiveSnapshot,
        slots: Dict[int, LevelSlot],
        placements: List[GridAction],
    ) -> Tuple[List[GridAction], List[GridAction]]:
        """
        Hold back placements that could push exposure past max_positions lots.

        Exposure on a side is counted as if every resting order on that side
        filled: long = position + resting buys, short = -position + resting
        sells. Closing orders always fit since they reduce the other side.
        Placements nearest the reference price go first; the rest wait for a
        later tick.
        """
        if config.max_positions <= 0 or not placements:
            return placements, []
        cap = config.quantity * config.max_positions
        position = snapshot.position or Decimal("0")
        exposure = {"buy": position, "sell": -position}
        for slot in slots.values():
            if slot.side is not None and slot.order_id is not None:
                exposure[slot.side] += slot.quantity

        ref = snapshot.reference_price
        if ref is None:
            ref = (config.lower + config.upper) / 2
        allowed: List[GridAction] = []
        deferred: List[GridAction] = []
        for action in sorted(placements, key=lambda a: (abs(a.price - ref), a.price, a.level)):
            if exposure[action.side] + action.quantity <= cap:
                exposure[action.side] += action.quantity
                allowed.append(action)
            else:
                deferred.append(action)
        return allowed, deferred

    # -- execution --------------------------------------------------------

    async def apply(
        self,
        plan: ReconcilePlan,
        exchange: Any,
        config: BotConfig,
        product_id: int,
        stop_requested: Callable[[], Awaitable[bool]],
    ) -> PlanOutcome:
        """
        Execute plan actions in order. Individual failures are collected, not
        raised; AuthError aborts since every following call would fail too.
        """
        outcome = PlanOutcome()
        for action in plan.actions:
            if action.kind == CANCEL:
                try:
                    await exchange.cancel_order(action.order_id, product_id)
                    outcome.cancelled.append(action)
                except AuthError:
                    raise
                except ExchangeRejection as e:
                    if e.error_code in ALREADY_CLOSED_CODES:
                        outcome.cancelled.append(action)
                    else:
                        outcome.failed.append((action, e))
                except GridWorkerError as e:
                    outcome.failed.append((action, e))
                continue

            if await stop_requested():
                outcome.halted = True
                self._log_event("grid_apply_halted", bot_id=config.bot_id, level=action.level)
                break
            try:
                ack = await exchange.place_limit_order(
                    product_id, action.side, action.quantity, action.price,
                    client_order_id=f"gw{action.level}-{uuid.uuid4().hex[:16]}",
                )
            except AuthError:
                raise
            except GridWorkerError as e:
                outcome.failed.append((action, e))
                continue
            slot = plan.state.slots.get(action.level)
            if slot is not None:
                slot.order_id = ack.id
            outcome.placed.append((action, ack))
        return outcome

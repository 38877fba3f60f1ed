"""
Tests for GridReconciler planning and plan execution.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import BTC
from gridworker.core.errors import AuthError, ExchangeRejection
from gridworker.exchange.models import OrderAck
from gridworker.state.models import BotState, Direction, LevelSlot
from gridworker.strategy.reconciler import (
    CANCEL,
    PLACE,
    GridReconciler,
    LiveSnapshot,
    _apply_fill,
)

REF = Decimal("107")


async def snapshot(paper, state=None, position=Decimal("0"), reference=REF):
    open_orders = await paper.get_open_orders(BTC.id)
    live_ids = {o.id for o in open_orders}
    statuses = {}
    for slot in (state.slots.values() if state else []):
        if slot.order_id and slot.order_id not in live_ids:
            statuses[slot.order_id] = await paper.get_order(slot.order_id)
    return LiveSnapshot(
        product_id=BTC.id,
        open_orders=open_orders,
        position=position,
        reference_price=reference,
        tick_size=BTC.tick_size,
        order_status=statuses,
    )


async def never_stop():
    return False


async def run_plan(reconciler, paper, config, state):
    plan = reconciler.plan(config, state, await snapshot(paper, state))
    outcome = await reconciler.apply(plan, paper, config, BTC.id, never_stop)
    return plan, outcome


class TestPlan:
    @pytest.fixture
    def reconciler(self):
        return GridReconciler()

    @pytest.mark.asyncio
    async def test_fresh_grid_places_every_level(self, reconciler, paper, make_config):
        plan = reconciler.plan(make_config(), BotState(), await snapshot(paper))
        assert plan.cancels == []
        assert [(a.price, a.side) for a in plan.placements] == [
            (Decimal("100"), "buy"),
            (Decimal("105"), "buy"),
            (Decimal("110"), "sell"),
        ]
        assert all(a.quantity == Decimal("1") for a in plan.placements)

    @pytest.mark.asyncio
    async def test_live_order_at_level_is_adopted(self, reconciler, paper, make_config):
        order = paper.inject_order(BTC.id, "buy", Decimal("1"), Decimal("105"))
        plan = reconciler.plan(make_config(), BotState(), await snapshot(paper))
        assert [a.price for a in plan.placements] == [Decimal("100"), Decimal("110")]
        assert plan.cancels == []
        assert plan.adopted == [order.id]
        assert plan.state.slots[1].order_id == order.id

    @pytest.mark.asyncio
    async def test_replan_after_apply_is_empty(self, reconciler, paper, make_config):
        cfg = make_config()
        plan, outcome = await run_plan(reconciler, paper, cfg, BotState())
        assert outcome.ok
        assert len(outcome.placed) == 3

        again = reconciler.plan(cfg, plan.state, await snapshot(paper, plan.state))
        assert again.actions == []
        assert again.fills == []

    @pytest.mark.asyncio
    async def test_cancels_come_before_placements_in_price_order(self, reconciler, paper, make_config):
        paper.inject_order(BTC.id, "sell", Decimal("1"), Decimal("120"))
        paper.inject_order(BTC.id, "buy", Decimal("1"), Decimal("90"))
        plan = reconciler.plan(make_config(), BotState(), await snapshot(paper))
        assert [(a.kind, a.price) for a in plan.actions] == [
            (CANCEL, Decimal("90")),
            (CANCEL, Decimal("120")),
            (PLACE, Decimal("100")),
            (PLACE, Decimal("105")),
            (PLACE, Decimal("110")),
        ]

    @pytest.mark.asyncio
    async def test_wrong_size_order_is_replaced(self, reconciler, paper, make_config):
        wrong = paper.inject_order(BTC.id, "buy", Decimal("2"), Decimal("105"))
        plan = reconciler.plan(make_config(), BotState(), await snapshot(paper))
        assert [a.order_id for a in plan.cancels] == [wrong.id]
        assert [a.price for a in plan.placements] == [Decimal("100"), Decimal("105"), Decimal("110")]

    @pytest.mark.asyncio
    async def test_order_on_other_instrument_ignored(self, reconciler, paper, make_config):
        paper.inject_order(99, "buy", Decimal("1"), Decimal("50"))
        snap = await snapshot(paper)
        snap.open_orders.extend(await paper.get_open_orders(99))
        plan = reconciler.plan(make_config(), BotState(), snap)
        assert plan.cancels == []

    @pytest.mark.asyncio
    async def test_buy_fill_idles_level(self, reconciler, paper, make_config):
        cfg = make_config()
        plan, _ = await run_plan(reconciler, paper, cfg, BotState())
        buy_105 = plan.state.slots[1].order_id
        paper.fill_order(buy_105)

        nxt = reconciler.plan(cfg, plan.state, await snapshot(paper, plan.state))
        assert [(f.level, f.side, f.partial) for f in nxt.fills] == [(1, "buy", False)]
        assert nxt.state.slots[1].side is None
        assert nxt.state.slots[2].side == "sell"
        assert nxt.actions == []

    @pytest.mark.asyncio
    async def test_sell_fill_rearms_buy_below(self, reconciler, paper, make_config):
        cfg = make_config()
        plan, _ = await run_plan(reconciler, paper, cfg, BotState())
        paper.fill_order(plan.state.slots[1].order_id)
        plan, _ = await run_plan(reconciler, paper, cfg, plan.state)

        paper.fill_order(plan.state.slots[2].order_id)
        nxt = reconciler.plan(cfg, plan.state, await snapshot(paper, plan.state))
        assert [(f.level, f.side) for f in nxt.fills] == [(2, "sell")]
        assert [(a.price, a.side) for a in nxt.placements] == [(Decimal("105"), "buy")]
        assert nxt.state.slots[2].side is None

    @pytest.mark.asyncio
    async def test_cancelled_partial_fill_replaces_remainder(self, reconciler, paper, make_config):
        cfg = make_config()
        plan, _ = await run_plan(reconciler, paper, cfg, BotState())
        oid = plan.state.slots[1].order_id
        paper.fill_order(oid, Decimal("0.4"))
        paper.external_cancel(oid)

        nxt = reconciler.plan(cfg, plan.state, await snapshot(paper, plan.state))
        assert [(f.quantity, f.partial) for f in nxt.fills] == [(Decimal("0.4"), True)]
        assert [(a.price, a.side, a.quantity) for a in nxt.placements] == [
            (Decimal("105"), "buy", Decimal("0.6")),
        ]

    @pytest.mark.asyncio
    async def test_partially_filled_live_order_is_kept(self, reconciler, paper, make_config):
        cfg = make_config()
        plan, _ = await run_plan(reconciler, paper, cfg, BotState())
        paper.fill_order(plan.state.slots[0].order_id, Decimal("0.5"))
        nxt = reconciler.plan(cfg, plan.state, await snapshot(paper, plan.state))
        assert nxt.actions == []

    @pytest.mark.asyncio
    async def test_tracked_order_missing_from_listing_but_open_waits(self, reconciler, paper, make_config):
        cfg = make_config()
        plan, _ = await run_plan(reconciler, paper, cfg, BotState())
        snap = await snapshot(paper, plan.state)
        hidden = plan.state.slots[0].order_id
        snap.open_orders = [o for o in snap.open_orders if o.id != hidden]
        snap.order_status[hidden] = await paper.get_order(hidden)

        nxt = reconciler.plan(cfg, plan.state, snap)
        assert nxt.actions == []
        assert nxt.state.slots[0].order_id == hidden

    @pytest.mark.asyncio
    async def test_unknown_tracked_order_is_replaced(self, reconciler, paper, make_config):
        cfg = make_config()
        state = BotState(slots={
            0: LevelSlot("buy", "gone-1", Decimal("1")),
            1: LevelSlot("buy", None, Decimal("1")),
            2: LevelSlot("sell", None, Decimal("1")),
        })
        plan = reconciler.plan(cfg, state, await snapshot(paper))
        assert [a.price for a in plan.placements] == [Decimal("100"), Decimal("105"), Decimal("110")]
        assert plan.fills == []

    @pytest.mark.asyncio
    async def test_long_position_replays_fill_when_seeding(self, reconciler, paper, make_config):
        snap = await snapshot(paper)
        snap.position = Decimal("1")
        plan = reconciler.plan(make_config(), BotState(), snap)
        assert [(a.price, a.side) for a in plan.placements] == [
            (Decimal("100"), "buy"),
            (Decimal("110"), "sell"),
        ]
        assert plan.state.slots[1].side is None

    @pytest.mark.asyncio
    async def test_input_state_is_not_mutated(self, reconciler, paper, make_config):
        state = BotState()
        reconciler.plan(make_config(), state, await snapshot(paper))
        assert state.slots == {}


class TestDirection:
    @pytest.fixture
    def reconciler(self):
        return GridReconciler()

    @pytest.mark.asyncio
    async def test_long_grid_seeds_only_buys(self, reconciler, paper, make_config):
        plan = reconciler.plan(make_config(direction=Direction.LONG), BotState(), await snapshot(paper))
        assert [(a.price, a.side) for a in plan.placements] == [
            (Decimal("100"), "buy"), (Decimal("105"), "buy"),
        ]
        assert plan.state.slots[2].side is None

    @pytest.mark.asyncio
    async def test_short_grid_seeds_only_sells(self, reconciler, paper, make_config):
        plan = reconciler.plan(make_config(direction=Direction.SHORT), BotState(), await snapshot(paper))
        assert [(a.price, a.side) for a in plan.placements] == [(Decimal("110"), "sell")]
        assert plan.state.slots[0].side is None
        assert plan.state.slots[1].side is None

    @pytest.mark.asyncio
    async def test_long_grid_arms_sell_after_buy_fill(self, reconciler, paper, make_config):
        cfg = make_config(direction=Direction.LONG)
        plan, _ = await run_plan(reconciler, paper, cfg, BotState())
        paper.fill_order(plan.state.slots[1].order_id)

        nxt = reconciler.plan(cfg, plan.state, await snapshot(paper, plan.state))
        assert [(a.price, a.side) for a in nxt.placements] == [(Decimal("110"), "sell")]
        assert nxt.state.slots[1].side is None


class TestMaxPositions:
    @pytest.fixture
    def reconciler(self):
        return GridReconciler()

    @pytest.mark.asyncio
    async def test_placements_nearest_the_price_go_first(self, reconciler, paper, make_config):
        plan = reconciler.plan(make_config(max_positions=1), BotState(), await snapshot(paper))
        assert [(a.price, a.side) for a in plan.placements] == [
            (Decimal("105"), "buy"), (Decimal("110"), "sell"),
        ]
        assert [(a.price, a.side) for a in plan.deferred] == [(Decimal("100"), "buy")]
        assert plan.state.slots[0].side == "buy"
        assert plan.state.slots[0].order_id is None

    @pytest.mark.asyncio
    async def test_closing_order_allowed_at_the_cap(self, reconciler, paper, make_config):
        snap = await snapshot(paper, position=Decimal("1"))
        plan = reconciler.plan(make_config(max_positions=1), BotState(), snap)
        assert [(a.price, a.side) for a in plan.placements] == [(Decimal("110"), "sell")]
        assert [(a.price, a.side) for a in plan.deferred] == [(Decimal("100"), "buy")]

    @pytest.mark.asyncio
    async def test_resting_orders_count_toward_the_cap(self, reconciler, paper, make_config):
        paper.inject_order(BTC.id, "buy", Decimal("1"), Decimal("105"))
        paper.inject_order(BTC.id, "buy", Decimal("1"), Decimal("100"))
        plan = reconciler.plan(make_config(max_positions=1), BotState(), await snapshot(paper))
        # adopted orders are kept even past the cap; nothing new is added on that side
        assert len(plan.adopted) == 2
        assert [(a.price, a.side) for a in plan.placements] == [(Decimal("110"), "sell")]
        assert plan.cancels == []

    @pytest.mark.asyncio
    async def test_zero_means_unlimited(self, reconciler, paper, make_config):
        plan = reconciler.plan(make_config(max_positions=0), BotState(), await snapshot(paper))
        assert len(plan.placements) == 3
        assert plan.deferred == []


class TestApplyFill:
    def test_buy_fill_at_top_edge_keeps_side(self):
        slots = {i: LevelSlot("buy", None, Decimal("1")) for i in range(3)}
        _apply_fill(slots, 2, "buy", Decimal("1"), 3)
        assert slots[2].side == "buy"
        assert slots[2].order_id is None

    def test_sell_fill_at_bottom_edge_keeps_side(self):
        slots = {i: LevelSlot("sell", None, Decimal("1")) for i in range(3)}
        _apply_fill(slots, 0, "sell", Decimal("1"), 3)
        assert slots[0].side == "sell"

    def test_buy_fill_flips_neighbour(self):
        slots = {0: LevelSlot("buy", "a", Decimal("1")), 1: LevelSlot("buy", "b", Decimal("1"))}
        _apply_fill(slots, 0, "buy", Decimal("1"), 2)
        assert slots[0].side is None
        assert slots[1] == LevelSlot("sell", None, Decimal("1"))


class TestApply:
    @pytest.fixture
    def reconciler(self):
        return GridReconciler()

    @pytest.mark.asyncio
    async def test_halts_when_stop_appears_mid_plan(self, reconciler, paper, make_config):
        cfg = make_config()
        plan = reconciler.plan(cfg, BotState(), await snapshot(paper))
        checks = iter([False, True, True])

        async def stop_requested():
            return next(checks)

        outcome = await reconciler.apply(plan, paper, cfg, BTC.id, stop_requested)
        assert outcome.halted
        assert len(outcome.placed) == 1
        assert len(paper.placed) == 1

    @pytest.mark.asyncio
    async def test_single_rejection_does_not_abort_plan(self, reconciler, paper, make_config):
        cfg = make_config()
        plan = reconciler.plan(cfg, BotState(), await snapshot(paper))
        acks = iter(["11", "13"])

        async def place(product_id, side, size, price, client_order_id=None):
            if price == Decimal("105"):
                raise ExchangeRejection("insufficient margin", error_code="insufficient_margin")
            return OrderAck(id=next(acks), state="open")

        exchange = AsyncMock()
        exchange.place_limit_order.side_effect = place
        outcome = await reconciler.apply(plan, exchange, cfg, BTC.id, never_stop)
        assert not outcome.ok
        assert len(outcome.placed) == 2
        assert [a.price for a, _ in outcome.failed] == [Decimal("105")]
        assert plan.state.slots[0].order_id == "11"
        assert plan.state.slots[1].order_id is None
        assert plan.state.slots[2].order_id == "13"

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self, reconciler, paper, make_config):
        cfg = make_config()
        plan = reconciler.plan(cfg, BotState(), await snapshot(paper))
        exchange = AsyncMock()
        exchange.place_limit_order.side_effect = AuthError("bad key")
        with pytest.raises(AuthError):
            await reconciler.apply(plan, exchange, cfg, BTC.id, never_stop)

    @pytest.mark.asyncio
    async def test_client_order_ids_never_repeat(self, reconciler, paper, make_config):
        cfg = make_config()
        plan, _ = await run_plan(reconciler, paper, cfg, BotState())
        for order in list(paper.placed):
            paper.external_cancel(order.id)
        await run_plan(reconciler, paper, cfg, plan.state)

        ids = [o.client_order_id for o in paper.placed]
        assert len(ids) == 6
        assert len(set(ids)) == 6
        assert all(i.startswith("gw") for i in ids)

    @pytest.mark.asyncio
    async def test_cancel_of_already_closed_order_counts(self, reconciler, paper, make_config):
        cfg = make_config()
        stray = paper.inject_order(BTC.id, "sell", Decimal("1"), Decimal("130"))
        plan = reconciler.plan(cfg, BotState(), await snapshot(paper))
        paper.external_cancel(stray.id)

        outcome = await reconciler.apply(plan, paper, cfg, BTC.id, never_stop)
        assert [a.order_id for a in outcome.cancelled] == [stray.id]
        assert outcome.ok

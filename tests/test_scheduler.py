"""
Tests for BotScheduler cycles: isolation between bots, busy skipping and
owner filtering.
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import OWNER
from gridworker.monitoring.metrics import WorkerMetrics
from gridworker.orchestrator.bot_runner import TickResult
from gridworker.orchestrator.scheduler import BotScheduler
from gridworker.state.models import BotStatus


class FakeRunner:
    def __init__(self, crash_on=(), gate=None):
        self.crash_on = set(crash_on)
        self.gate = gate
        self.calls = []

    async def tick(self, raw):
        bot_id = raw["bot_id"]
        self.calls.append(bot_id)
        if self.gate is not None:
            await self.gate.wait()
        if bot_id in self.crash_on:
            raise RuntimeError(f"boom in {bot_id}")
        return TickResult(bot_id=bot_id, success=True, status=BotStatus.RUNNING)


@pytest.mark.asyncio
async def test_crashing_bot_does_not_stop_others(repo, make_config):
    for bot_id in ("a", "b", "c"):
        await repo.save_config(make_config(bot_id=bot_id))
    runner = FakeRunner(crash_on={"b"})
    scheduler = BotScheduler(repo, runner, tick_interval=0.01)

    results = {r.bot_id: r for r in await scheduler.run_cycle()}

    assert set(results) == {"a", "b", "c"}
    assert results["a"].success and results["c"].success
    assert not results["b"].success
    assert "boom" in results["b"].error
    assert scheduler.cycles == 1


@pytest.mark.asyncio
async def test_errored_bot_isolated_from_healthy_bot(repo, runner, paper, make_config):
    await repo.save_config(make_config(bot_id="good"))
    await repo.save_config(make_config(bot_id="broken", symbol="ETHUSD"))
    scheduler = BotScheduler(repo, runner, tick_interval=0.01)

    results = {r.bot_id: r for r in await scheduler.run_cycle()}

    assert results["good"].status == BotStatus.RUNNING
    assert results["good"].placed == 3
    # ETHUSD is unknown to the paper venue
    assert not results["broken"].success
    assert results["broken"].status == BotStatus.CREATED


@pytest.mark.asyncio
async def test_busy_bot_is_skipped(repo, make_config):
    await repo.save_config(make_config(bot_id="slow"))
    gate = asyncio.Event()
    runner = FakeRunner(gate=gate)
    metrics = WorkerMetrics()
    scheduler = BotScheduler(repo, runner, tick_interval=0.01, metrics=metrics)

    first = asyncio.create_task(scheduler.run_cycle())
    while not runner.calls:
        await asyncio.sleep(0)

    second = await scheduler.run_cycle()
    assert [r.skipped for r in second] == [True]

    gate.set()
    done = await first
    assert [r.skipped for r in done] == [False]
    assert runner.calls == ["slow"]


@pytest.mark.asyncio
async def test_owner_filter(repo, make_config):
    await repo.save_config(make_config(bot_id="mine"))
    await repo.save_config(make_config(bot_id="theirs", owner="bob@example.com"))
    runner = FakeRunner()
    scheduler = BotScheduler(repo, runner, owner=OWNER)

    await scheduler.run_cycle()
    assert runner.calls == ["mine"]


@pytest.mark.asyncio
async def test_run_forever_stops_on_request(repo, make_config):
    await repo.save_config(make_config())
    runner = FakeRunner()
    scheduler = BotScheduler(repo, runner, tick_interval=0.01)

    task = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert scheduler.stopped
    assert scheduler.cycles >= 2
    assert runner.calls.count("bot1") == scheduler.cycles


@pytest.mark.asyncio
async def test_empty_store_cycle():
    repo = MagicMock()

    async def no_bots(owner=None):
        return []

    repo.list_raw_configs = no_bots
    scheduler = BotScheduler(repo, FakeRunner())
    assert await scheduler.run_cycle() == []

"""
BotScheduler: periodic cycle over every stored bot.

Each cycle lists bot configs and ticks each bot in its own failure domain.
Ticks run concurrently under a semaphore; a per-bot lock guarantees a single
writer per BotState, so a bot still busy from the previous cycle is skipped
rather than ticked twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set

from gridworker.core.errors import PersistenceError
from gridworker.infra.logging_cfg import log_event
from gridworker.orchestrator.bot_runner import BotRunner, TickResult
from gridworker.state.repository import BotRepository

log = logging.getLogger("gridworker")


class BotScheduler:
    def __init__(
        self,
        repo: BotRepository,
        runner: BotRunner,
        tick_interval: float = 1.2,
        max_concurrent_ticks: int = 8,
        owner: Optional[str] = None,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.repo = repo
        self.runner = runner
        self.tick_interval = tick_interval
        self.owner = owner
        self.metrics = metrics
        self._semaphore = asyncio.Semaphore(max_concurrent_ticks)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._inflight: Set[asyncio.Task] = set()
        self._stop = asyncio.Event()
        self._log_event = log_event or self._default_log
        self.cycles = 0

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event in ("tick_crashed", "cycle_list_failed") else logging.DEBUG
        log_event(log, event, level=level, **kwargs)

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def _tick_one(self, raw: Dict[str, Any]) -> TickResult:
        bot_id = str(raw.get("bot_id") or "")
        lock = self._locks[bot_id]
        if lock.locked():
            self._log_event("tick_skipped_busy", bot_id=bot_id)
            if self.metrics is not None:
                self.metrics.ticks_skipped.labels(bot_id=bot_id).inc()
            return TickResult(bot_id=bot_id, success=True, skipped=True)
        async with lock:
            async with self._semaphore:
                try:
                    return await self.runner.tick(raw)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # a bug in one bot's tick must not take the loop down
                    self._log_event("tick_crashed", bot_id=bot_id, err=f"{type(e).__name__}: {e}",
                                    traceback=traceback.format_exc())
                    return TickResult(bot_id=bot_id, success=False, error=str(e))

    async def _start_cycle(self) -> List[asyncio.Task]:
        try:
            raws = await self.repo.list_raw_configs(self.owner)
        except PersistenceError as e:
            self._log_event("cycle_list_failed", err=str(e))
            return []
        tasks = []
        for raw in raws:
            task = asyncio.create_task(self._tick_one(raw), name=f"tick-{raw.get('bot_id')}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)
        self.cycles += 1
        return tasks

    async def run_cycle(self) -> List[TickResult]:
        """Tick every bot once and wait for all ticks to finish."""
        t0 = time.monotonic()
        tasks = await self._start_cycle()
        results = list(await asyncio.gather(*tasks)) if tasks else []
        if self.metrics is not None:
            self.metrics.cycle_duration_sec.observe(time.monotonic() - t0)
        return results

    async def run_forever(self) -> None:
        """
        Cycle every tick_interval until stop() is called.

        A slow bot does not hold back the others: the loop waits at most one
        interval for a cycle, and bots still ticking are skipped next time.
        """
        self._log_event("scheduler_started", interval=self.tick_interval, owner=self.owner)
        while not self._stop.is_set():
            t0 = time.monotonic()
            tasks = await self._start_cycle()
            if tasks:
                await asyncio.wait(tasks, timeout=self.tick_interval)
            elapsed = time.monotonic() - t0
            if self.metrics is not None:
                self.metrics.cycle_duration_sec.observe(elapsed)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, self.tick_interval - elapsed))
            except asyncio.TimeoutError:
                pass
        await self.drain()
        self._log_event("scheduler_stopped", cycles=self.cycles)

    async def drain(self) -> None:
        """Wait for ticks still in flight."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

"""
Tests for the activity feed and equity history recorders.
"""
from datetime import datetime, timezone

import pytest

from conftest import OWNER
from gridworker.monitoring.activity import ActivityRecorder, EquityRecorder
from gridworker.state.models import EventKind, ExecutionMode


@pytest.mark.asyncio
async def test_feed_is_newest_first_with_increasing_seq(activity):
    await activity.append(OWNER, EventKind.CREATED, bot_id="a", exchange="delta_india")
    await activity.append(OWNER, EventKind.STARTED, bot_id="a", exchange="delta_india")
    await activity.append(OWNER, EventKind.STOPPED, bot_id="a", exchange="delta_india",
                          detail={"reason": "user"})

    events = await activity.list(OWNER)
    assert [e.kind for e in events] == [EventKind.STOPPED, EventKind.STARTED, EventKind.CREATED]
    assert [e.seq for e in events] == [3, 2, 1]
    assert events[0].detail == {"reason": "user"}
    assert [e.kind for e in await activity.list(OWNER, limit=1)] == [EventKind.STOPPED]


@pytest.mark.asyncio
async def test_feeds_are_per_user(activity):
    await activity.append(OWNER, EventKind.CREATED, bot_id="a")
    await activity.append("bob@example.com", EventKind.CREATED, bot_id="b")
    assert [e.bot_id for e in await activity.list(OWNER)] == ["a"]
    assert (await activity.list("bob@example.com"))[0].seq == 1
    assert await activity.list("nobody@example.com") == []


@pytest.mark.asyncio
async def test_feed_truncated_to_max_events(store):
    recorder = ActivityRecorder(store, max_events=3)
    for _ in range(5):
        await recorder.append(OWNER, EventKind.ORDER_PLACED, bot_id="a")
    events = await recorder.list(OWNER)
    assert [e.seq for e in events] == [5, 4, 3]


@pytest.mark.asyncio
async def test_equity_series_split_by_mode(equity):
    t0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    await equity.record(OWNER, ExecutionMode.LIVE, 1000.0, at=t0)
    await equity.record(OWNER, ExecutionMode.PAPER, 10000.0, at=t0)
    await equity.record(OWNER, ExecutionMode.LIVE, 1012.5)

    live = await equity.history(OWNER, ExecutionMode.LIVE)
    assert [s.value for s in live] == [1000.0, 1012.5]
    assert live[0].label == "2024-03-01T12:00:00+00:00"
    assert [s.value for s in await equity.history(OWNER, ExecutionMode.PAPER)] == [10000.0]


@pytest.mark.asyncio
async def test_equity_keeps_newest_points(store):
    recorder = EquityRecorder(store, max_points=2)
    for v in (1.0, 2.0, 3.0):
        await recorder.record(OWNER, ExecutionMode.LIVE, v)
    assert [s.value for s in await recorder.history(OWNER, ExecutionMode.LIVE)] == [2.0, 3.0]

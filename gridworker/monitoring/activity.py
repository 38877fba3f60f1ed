"""
Per-user activity feed and equity history.

Both are observability sinks: callers append, dashboards read. The feed is
stored newest first with a per-user sequence number; equity samples are kept
oldest first and truncated from the front.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from gridworker.infra.logging_cfg import log_event
from gridworker.state.models import ActivityEvent, EquitySample, EventKind, ExecutionMode, now_ms
from gridworker.state.store import KeyValueStore

log = logging.getLogger("gridworker")


def activity_key(user: str) -> str:
    return f"activity/{user}"


def equity_key(user: str) -> str:
    return f"equity/{user}"


class ActivityRecorder:
    def __init__(self, store: KeyValueStore, max_events: int = 500,
                 log_event: Optional[Callable[..., None]] = None) -> None:
        self.store = store
        self.max_events = max_events
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, **kwargs)

    async def append(self, user: str, kind: EventKind, bot_id: Optional[str] = None,
                     exchange: Optional[str] = None, detail: Optional[Dict[str, Any]] = None) -> ActivityEvent:
        created: Dict[str, ActivityEvent] = {}

        def _append(feed: Dict[str, Any]) -> Dict[str, Any]:
            feed = dict(feed or {})
            seq = int(feed.get("next_seq", 1))
            event = ActivityEvent(
                seq=seq,
                ts_ms=now_ms(),
                user=user,
                kind=kind,
                bot_id=bot_id,
                exchange=exchange,
                detail=dict(detail or {}),
            )
            events = [event.to_dict()] + list(feed.get("events") or [])
            feed["events"] = events[: self.max_events]
            feed["next_seq"] = seq + 1
            created["event"] = event
            return feed

        await self.store.update(activity_key(user), _append, {})
        event = created["event"]
        self._log_event("activity", user=user, kind=kind.value, bot_id=bot_id, seq=event.seq)
        return event

    async def list(self, user: str, limit: Optional[int] = None) -> List[ActivityEvent]:
        """Newest first."""
        feed = await self.store.read(activity_key(user), {}) or {}
        events = [ActivityEvent.from_dict(e) for e in feed.get("events") or []]
        events.sort(key=lambda e: e.seq, reverse=True)
        if limit is not None and limit >= 0:
            events = events[:limit]
        return events


class EquityRecorder:
    def __init__(self, store: KeyValueStore, max_points: int = 20000) -> None:
        self.store = store
        self.max_points = max_points  # 0 disables truncation

    async def record(self, user: str, mode: ExecutionMode, value: float,
                     at: Optional[datetime] = None) -> EquitySample:
        at = at or datetime.now(timezone.utc)
        sample = EquitySample(label=at.isoformat(timespec="seconds"), value=float(value))

        def _append(series: Dict[str, Any]) -> Dict[str, Any]:
            series = dict(series or {})
            points = list(series.get(mode.value) or [])
            points.append(sample.to_dict())
            if self.max_points > 0 and len(points) > self.max_points:
                points = points[-self.max_points:]
            series[mode.value] = points
            return series

        await self.store.update(equity_key(user), _append, {})
        return sample

    async def history(self, user: str, mode: ExecutionMode) -> List[EquitySample]:
        series = await self.store.read(equity_key(user), {}) or {}
        return [EquitySample(label=p["label"], value=float(p["value"])) for p in series.get(mode.value) or []]

"""
Typed access to bot records on top of a KeyValueStore.

Layout:
    bots                      {bot_id: BotConfig dict}  (all users, one record)
    state/<bot_id>            BotState dict
    emergency_stops           {"<user>/<exchange>": EmergencyStopFlag dict}
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from gridworker.core.errors import InvariantViolation
from gridworker.infra.logging_cfg import log_event
from gridworker.state.models import BotConfig, BotState, EmergencyStopFlag, Scope, now_ms
from gridworker.state.store import KeyValueStore

log = logging.getLogger("gridworker")

BOTS_KEY = "bots"
STOP_FLAGS_KEY = "emergency_stops"


def state_key(bot_id: str) -> str:
    return f"state/{bot_id}"


class BotRepository:
    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    # -- configs ----------------------------------------------------------

    async def list_raw_configs(self, owner: Optional[str] = None) -> List[Dict[str, Any]]:
        """Stored config records, unparsed, ordered by bot_id."""
        bots = await self.store.read(BOTS_KEY, {}) or {}
        out = [dict(v, bot_id=k) for k, v in sorted(bots.items()) if isinstance(v, dict)]
        if owner is not None:
            out = [d for d in out if d.get("owner") == owner]
        return out

    async def list_configs(self, owner: Optional[str] = None) -> List[BotConfig]:
        out: List[BotConfig] = []
        for raw in await self.list_raw_configs(owner):
            try:
                out.append(BotConfig.from_dict(raw))
            except InvariantViolation as e:
                log_event(log, "bot_config_unreadable", level=logging.WARNING,
                          bot_id=raw.get("bot_id"), err=str(e))
        return out

    async def get_config(self, bot_id: str) -> Optional[BotConfig]:
        bots = await self.store.read(BOTS_KEY, {}) or {}
        raw = bots.get(bot_id)
        if raw is None:
            return None
        return BotConfig.from_dict(dict(raw, bot_id=bot_id))

    async def save_config(self, config: BotConfig) -> None:
        def _put(bots: Dict[str, Any]) -> Dict[str, Any]:
            bots = dict(bots or {})
            bots[config.bot_id] = config.to_dict()
            return bots
        await self.store.update(BOTS_KEY, _put, {})

    async def update_config(self, bot_id: str, fn: Callable[[BotConfig], BotConfig]) -> Optional[BotConfig]:
        """Apply fn to the stored config atomically. Returns the new config or None if absent."""
        result: Dict[str, Optional[BotConfig]] = {"config": None}

        def _apply(bots: Dict[str, Any]) -> Dict[str, Any]:
            bots = dict(bots or {})
            raw = bots.get(bot_id)
            if raw is None:
                return bots
            new = fn(BotConfig.from_dict(dict(raw, bot_id=bot_id)))
            new = new.with_changes(updated_at_ms=now_ms())
            bots[bot_id] = new.to_dict()
            result["config"] = new
            return bots

        await self.store.update(BOTS_KEY, _apply, {})
        return result["config"]

    async def delete_config(self, bot_id: str) -> Optional[Dict[str, Any]]:
        removed: Dict[str, Any] = {}

        def _drop(bots: Dict[str, Any]) -> Dict[str, Any]:
            bots = dict(bots or {})
            if bot_id in bots:
                removed.update(bots.pop(bot_id))
            return bots

        await self.store.update(BOTS_KEY, _drop, {})
        await self.store.delete(state_key(bot_id))
        return removed or None

    # -- runtime state ----------------------------------------------------

    async def load_state(self, bot_id: str) -> BotState:
        return BotState.from_dict(await self.store.read(state_key(bot_id), None))

    async def save_state(self, bot_id: str, state: BotState) -> None:
        await self.store.write(state_key(bot_id), state.to_dict())

    # -- emergency stop flags ---------------------------------------------

    async def get_stop_flag(self, scope: Scope) -> EmergencyStopFlag:
        flags = await self.store.read(STOP_FLAGS_KEY, {}) or {}
        return EmergencyStopFlag.from_dict(flags.get(scope.key))

    async def set_stop_flag(self, scope: Scope) -> bool:
        """Durably set the flag. Returns True only for the request that set it."""
        outcome = {"newly_set": False}

        def _set(flags: Dict[str, Any]) -> Dict[str, Any]:
            flags = dict(flags or {})
            if EmergencyStopFlag.from_dict(flags.get(scope.key)).set:
                return flags
            flags[scope.key] = EmergencyStopFlag(set=True, set_at_ms=now_ms()).to_dict()
            outcome["newly_set"] = True
            return flags

        await self.store.update(STOP_FLAGS_KEY, _set, {})
        return outcome["newly_set"]

    async def clear_stop_flag(self, scope: Scope) -> None:
        def _clear(flags: Dict[str, Any]) -> Dict[str, Any]:
            flags = dict(flags or {})
            flags.pop(scope.key, None)
            return flags
        await self.store.update(STOP_FLAGS_KEY, _clear, {})

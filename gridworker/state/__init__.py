"""
State package.

Bot records, runtime state, emergency stop flags and the stores behind them.
"""

from gridworker.state.models import (
    ActivityEvent,
    BotConfig,
    BotState,
    BotStatus,
    Direction,
    EmergencyStopFlag,
    EquitySample,
    EventKind,
    ExecutionMode,
    GridMode,
    LevelSlot,
    Scope,
)
from gridworker.state.repository import BotRepository
from gridworker.state.store import JsonFileStore, KeyValueStore, MemoryStore

__all__ = [
    "ActivityEvent",
    "BotConfig",
    "BotState",
    "BotStatus",
    "Direction",
    "EmergencyStopFlag",
    "EquitySample",
    "EventKind",
    "ExecutionMode",
    "GridMode",
    "LevelSlot",
    "Scope",
    "BotRepository",
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
]

"""
CircuitBreaker: consecutive-failure escalation for a bot.

Handles:
- Error streak tracking across ticks
- Tripping once the streak reaches the threshold
- Latching: a tripped breaker stays open until force_reset()

A bot whose breaker trips is moved to Errored by the runner; restarting the
bot through the service layer resets the streak.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gridworker.infra.logging_cfg import log_event

log = logging.getLogger("gridworker")


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    error_threshold: int = 5  # Number of consecutive failing ticks to trip


class CircuitBreaker:
    """
    Tracks consecutive failures for one bot.

    The streak is seeded from persisted state so a worker restart does not
    forget how close a bot was to tripping.
    """

    def __init__(self, config: CircuitBreakerConfig, streak: int = 0,
                 on_trip: Optional[Callable[[], None]] = None,
                 log_event: Optional[Callable[..., None]] = None) -> None:
        self.config = config
        self.error_streak: int = streak
        self._tripped: bool = False
        self._on_trip = on_trip
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, level=logging.WARNING, **kwargs)

    @property
    def is_tripped(self) -> bool:
        return self._tripped

    def record_error(self, where: str, error: Exception) -> bool:
        """
        Record a failing tick. Returns True if this error tripped the breaker.
        """
        self.error_streak += 1
        self._log_event("tick_error", where=where, err=str(error), streak=self.error_streak)
        if self.error_streak >= self.config.error_threshold:
            return self._trip(where)
        return False

    def record_success(self) -> None:
        """Record a clean tick. Resets the error streak."""
        if self.error_streak > 0:
            self._log_event("tick_error_reset", streak=self.error_streak)
            self.error_streak = 0

    def _trip(self, where: str) -> bool:
        if self._tripped:
            return False
        self._tripped = True
        self._log_event("circuit_break", where=where, streak=self.error_streak)
        if self._on_trip:
            self._on_trip()
        return True

    def force_trip(self, where: str) -> None:
        """Trip immediately regardless of the streak (e.g. rejected credentials)."""
        self._trip(where)

    def force_reset(self) -> None:
        self._tripped = False
        self.error_streak = 0

    def get_state(self) -> dict:
        return {
            "tripped": self._tripped,
            "error_streak": self.error_streak,
            "threshold": self.config.error_threshold,
        }

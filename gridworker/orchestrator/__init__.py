"""
Orchestrator package.

Bot lifecycle ticks and the scheduler that drives them.
"""

from gridworker.orchestrator.bot_runner import BotRunner, RunnerConfig, TickResult
from gridworker.orchestrator.exchanges import ExchangeProvider
from gridworker.orchestrator.scheduler import BotScheduler

__all__ = [
    "BotRunner",
    "RunnerConfig",
    "TickResult",
    "ExchangeProvider",
    "BotScheduler",
]

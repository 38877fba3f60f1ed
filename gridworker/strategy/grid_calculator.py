"""
GridCalculator - target price ladder for a grid bot.

Pure calculation, no side effects:
- arithmetic spacing: lower + i * (upper - lower) / (levels - 1)
- geometric spacing:  lower * (upper / lower) ** (i / (levels - 1))
- quantization to the price tick (8 decimals when no tick is known)
- order sizes snapped down to whole contracts, never below the product minimum

The first level is rounded up and the last rounded down so quantization never
pushes a level outside [lower, upper].
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_EVEN, Decimal, localcontext
from typing import List, Optional

from gridworker.core.errors import InvariantViolation
from gridworker.state.models import BotConfig, GridMode

DEFAULT_QUANTUM = Decimal("0.00000001")


def quantize_to_tick(px: Decimal, tick: Decimal, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    steps = (px / tick).to_integral_value(rounding=rounding)
    return steps * tick


class GridCalculator:
    """
    Stateless ladder computation.

    `tick_size` overrides the config's own tick (typically the product tick
    fetched from the exchange when the user did not set one).
    """

    @staticmethod
    def raw_prices(config: BotConfig) -> List[Decimal]:
        n = config.levels
        lower, upper = config.lower, config.upper
        out: List[Decimal] = []
        with localcontext() as ctx:
            ctx.prec = 34
            if config.mode == GridMode.GEOMETRIC:
                ratio = upper / lower
                for i in range(n):
                    out.append(lower * ratio ** (Decimal(i) / Decimal(n - 1)))
            else:
                step = (upper - lower) / Decimal(n - 1)
                for i in range(n):
                    out.append(lower + step * i)
        out[0], out[-1] = lower, upper
        return out

    @classmethod
    def target_prices(cls, config: BotConfig, tick_size: Optional[Decimal] = None) -> List[Decimal]:
        config.validate()
        tick = config.tick_size or tick_size or DEFAULT_QUANTUM
        raw = cls.raw_prices(config)
        last = len(raw) - 1
        prices = []
        for i, px in enumerate(raw):
            rounding = ROUND_CEILING if i == 0 else ROUND_FLOOR if i == last else ROUND_HALF_EVEN
            prices.append(quantize_to_tick(px, tick, rounding))

        for i, px in enumerate(prices):
            if px < config.lower or px > config.upper:
                raise InvariantViolation(
                    f"level {i} price {px} falls outside [{config.lower}, {config.upper}] at tick {tick}"
                )
            if i and px <= prices[i - 1]:
                raise InvariantViolation(
                    f"tick {tick} is too coarse for {config.levels} levels in [{config.lower}, {config.upper}]"
                )
        return prices

    @staticmethod
    def effective_tick(config: BotConfig, tick_size: Optional[Decimal] = None) -> Decimal:
        return config.tick_size or tick_size or DEFAULT_QUANTUM


SIZE_STEP = Decimal("1")  # Delta sizes are whole contracts


def normalize_order_size(quantity: Decimal, min_order_size: Decimal = Decimal("1")) -> Decimal:
    """
    Snap a per-level quantity down to whole contracts.

    Raises InvariantViolation when nothing (or less than the product minimum)
    is left after rounding.
    """
    size = quantize_to_tick(quantity, SIZE_STEP, ROUND_FLOOR)
    if size <= 0:
        raise InvariantViolation(f"order size {quantity} rounds to zero contracts")
    if size < min_order_size:
        raise InvariantViolation(f"order size {size} is below the minimum of {min_order_size} contracts")
    return size

"""
Strategy package.

Grid ladder computation and reconciliation against live orders.
"""

from gridworker.strategy.grid_calculator import GridCalculator, normalize_order_size, quantize_to_tick
from gridworker.strategy.reconciler import (
    CANCEL,
    PLACE,
    FillEvent,
    GridAction,
    GridReconciler,
    LiveSnapshot,
    PlanOutcome,
    ReconcilePlan,
)

__all__ = [
    "GridCalculator",
    "normalize_order_size",
    "quantize_to_tick",
    "CANCEL",
    "PLACE",
    "FillEvent",
    "GridAction",
    "GridReconciler",
    "LiveSnapshot",
    "PlanOutcome",
    "ReconcilePlan",
]

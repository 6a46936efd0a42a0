"""
Cycle scheduling: the time-grid state machine and its stage handlers.
"""

from .cycle_scheduler import CycleScheduler, Stage, SystemClock
from .distribution_cycle import DistributionCycle

__all__ = [
    "CycleScheduler",
    "Stage",
    "SystemClock",
    "DistributionCycle",
]

"""
Shared compute infrastructure for pymixed.

Submodules:
    timing: Execution timing utilities
    tolerances: Numerical reproducibility tolerance tiers
"""

from pymixed.core.compute.timing import Timer
from pymixed.core.compute.tolerances import ToleranceTier, select_tolerance

__all__ = [
    "Timer",
    "ToleranceTier",
    "select_tolerance",
]

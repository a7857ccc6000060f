"""
Core infrastructure for pymixed.

Shared abstractions used by the mixed-model engine and the bootstrap driver.

Key components:
    result: Generic Result[P] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    compute: Timing and tolerance tiers
"""

from pymixed.core.result import Result
from pymixed.core.exceptions import (
    PyMixedError,
    ValidationError,
    DimensionMismatch,
    InvalidParameter,
    NumericalError,
    NonPositiveDefinite,
    PIRLSDivergence,
    BootstrapSampleFailure,
    ConvergenceError,
    MaxEvaluationsExceeded,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "PyMixedError",
    "ValidationError",
    "DimensionMismatch",
    "InvalidParameter",
    "NumericalError",
    "NonPositiveDefinite",
    "PIRLSDivergence",
    "BootstrapSampleFailure",
    "ConvergenceError",
    "MaxEvaluationsExceeded",
]

"""
Common data structures for the parametric bootstrap.

BootstrapRecord is one (sample, parameter) row; BootstrapParams is the
payload wrapped by Result[P] and exposed through MixedBootstrapSolution.
"""

from __future__ import annotations

from dataclasses import dataclass

from pymixed.core.exceptions import BootstrapSampleFailure

# Record kinds
FIXED = 'fixed'
STDDEV = 'stddev'
CORRELATION = 'correlation'
THETA = 'theta'

KINDS = (FIXED, STDDEV, CORRELATION, THETA)


@dataclass(frozen=True)
class BootstrapRecord:
    """One estimated quantity from one bootstrap refit.

    Attributes:
        sample: Bootstrap sample index (0-based).
        name: Parameter name, e.g. '(Intercept)', 'sd(subject:(Intercept))',
            'cor(subject:(Intercept),time)' or a θ name.
        value: Estimate from the refit.
        kind: One of 'fixed', 'stddev', 'correlation', 'theta'.
    """
    sample: int
    name: str
    value: float
    kind: str


@dataclass(frozen=True)
class BootstrapParams:
    """
    Parameter payload for parametric bootstrap results.

    - estimates: the original fit's values, keyed by parameter name
    - records: one row per (successful sample, parameter)
    - failures: samples whose refit raised, excluded from summaries
    """
    estimates: dict[str, float]
    kinds: dict[str, str]
    records: tuple[BootstrapRecord, ...]
    failures: tuple[BootstrapSampleFailure, ...]
    n_samples: int

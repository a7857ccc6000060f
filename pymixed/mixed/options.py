"""
Fit options for mixed model estimation.

FitOptions is an immutable bundle passed into every fit. There is no
process-wide configuration; two fits with equal options and data behave
identically.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import numpy as np
from numpy.typing import NDArray

from pymixed.core.exceptions import InvalidParameter

OPTIMIZERS = ('Nelder-Mead', 'Powell')


@dataclass(frozen=True)
class FitOptions:
    """Options controlling the outer optimization and PIRLS.

    Attributes:
        theta_start: Starting θ in elimination order. None → 1 on diagonal
            entries of each T_k, 0 off the diagonal.
        max_evaluations: Objective evaluation budget of the optimizer.
        deviance_tolerance: Relative convergence tolerance on the objective.
        parameter_tolerance: Absolute convergence tolerance on the parameters.
        quadrature_points: Gauss-Hermite nodes for GLMMs (odd; 1 = Laplace).
        thinning: Keep every k-th evaluation in the trace.
        reml: Use the REML criterion (linear mixed models only).
        fast: GLMM: skip the joint (β, θ) optimization stage. Only honoured
            with quadrature_points == 1.
        pirls_tolerance: Relative change in penalized deviance for PIRLS.
        pirls_max_iter: Maximum PIRLS iterations.
        pirls_max_halving: Maximum step halvings per PIRLS iteration.
        optimizer: 'Nelder-Mead' (default) or 'Powell'.
        zero_tolerance: Diagonal θ entries below this are tried at exactly
            zero after convergence.
        singular_tolerance: A fit with any diagonal θ entry below this is
            flagged as singular (on the boundary).
    """
    theta_start: tuple[float, ...] | None = None
    max_evaluations: int = 10_000
    deviance_tolerance: float = 1e-8
    parameter_tolerance: float = 1e-6
    quadrature_points: int = 1
    thinning: int = 1
    reml: bool = False
    fast: bool = False
    pirls_tolerance: float = 1e-8
    pirls_max_iter: int = 100
    pirls_max_halving: int = 10
    optimizer: str = 'Nelder-Mead'
    zero_tolerance: float = 1e-3
    singular_tolerance: float = 1e-4

    def __post_init__(self):
        if self.theta_start is not None:
            object.__setattr__(
                self, 'theta_start',
                tuple(float(t) for t in np.asarray(self.theta_start, dtype=np.float64).ravel()),
            )
        self.validate()

    def validate(self) -> None:
        """Check option values.

        Raises:
            InvalidParameter: On any out-of-range value.
        """
        _positive_int('max_evaluations', self.max_evaluations)
        _positive_int('thinning', self.thinning)
        _positive_int('pirls_max_iter', self.pirls_max_iter)
        _positive_int('quadrature_points', self.quadrature_points)
        if self.pirls_max_halving < 0:
            raise InvalidParameter(
                f"pirls_max_halving must be >= 0, got {self.pirls_max_halving}",
                expected='>= 0',
                actual=self.pirls_max_halving,
            )
        if self.quadrature_points % 2 == 0:
            raise InvalidParameter(
                f"quadrature_points must be odd, got {self.quadrature_points}",
                expected='odd positive integer',
                actual=self.quadrature_points,
            )
        for name in ('deviance_tolerance', 'parameter_tolerance', 'pirls_tolerance',
                     'zero_tolerance', 'singular_tolerance'):
            value = getattr(self, name)
            if not np.isfinite(value) or value < 0:
                raise InvalidParameter(
                    f"{name} must be a finite non-negative number, got {value}",
                    expected='finite >= 0',
                    actual=value,
                )
        if self.optimizer not in OPTIMIZERS:
            raise InvalidParameter(
                f"optimizer must be one of {OPTIMIZERS}, got {self.optimizer!r}",
                expected=OPTIMIZERS,
                actual=self.optimizer,
            )
        if self.theta_start is not None and not np.all(np.isfinite(self.theta_start)):
            raise InvalidParameter(
                "theta_start contains non-finite values",
                expected='finite values',
                actual=self.theta_start,
            )

    def start(self, default: NDArray) -> NDArray:
        """Starting θ: theta_start if given (length-checked), else default."""
        if self.theta_start is None:
            return default.copy()
        theta = np.asarray(self.theta_start, dtype=np.float64)
        if theta.shape != default.shape:
            raise InvalidParameter(
                f"theta_start has length {theta.shape[0]}, expected {default.shape[0]}",
                expected=default.shape[0],
                actual=theta.shape[0],
            )
        return theta

    def with_changes(self, **changes) -> FitOptions:
        return replace(self, **changes)


def _positive_int(name: str, value) -> None:
    if int(value) != value or value < 1:
        raise InvalidParameter(
            f"{name} must be a positive integer, got {value}",
            expected='integer >= 1',
            actual=value,
        )


def resolve_options(options: FitOptions | None, **overrides) -> FitOptions:
    """FitOptions from an optional instance plus keyword overrides."""
    base = options if options is not None else FitOptions()
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return replace(base, **overrides) if overrides else base

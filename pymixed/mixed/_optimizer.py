"""
Derivative-free bounded minimization of mixed-model objectives.

The driver wraps scipy.optimize.minimize (Nelder-Mead with bounds by
default, Powell as an alternative) and records everything about the run
in an OptSummary: start and final points, objective values, a thinned
trace, evaluation counts and a status.

Numerical failures at trial points (a non-positive-definite block, a
diverging PIRLS loop) are part of normal operation near the boundary of
the parameter space. The objective wrapper turns them into a large
finite penalty so the simplex simply moves away.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable
import logging
import warnings

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize

from pymixed.core.exceptions import (
    NumericalError, ConvergenceError, MaxEvaluationsExceeded,
)
from pymixed.mixed.options import FitOptions

logger = logging.getLogger(__name__)

# Objective value reported for trial points where evaluation failed
PENALTY = 1e100

# Step used to build the initial simplex around the starting point
INITIAL_STEP = 0.75

# Allowed increase of the objective when snapping a θ entry to zero
ZERO_SNAP_SLACK = 1e-5


class OptimizerStatus(str, Enum):
    INITIALIZED = 'initialized'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    MAX_EVALUATIONS_EXCEEDED = 'max_evaluations_exceeded'


@dataclass
class OptSummary:
    """Record of one optimization run.

    Mutated by minimize_bounded() while the fit runs, then treated as
    read-only.

    Attributes:
        x_start: Starting parameter vector.
        lower: Lower bounds (−inf where unbounded).
        optimizer: Name of the scipy method.
        max_evaluations: Evaluation budget.
        deviance_tolerance: Relative objective tolerance.
        parameter_tolerance: Absolute parameter tolerance.
        thinning: Every k-th evaluation is kept in the trace.
        quadrature_points: Gauss-Hermite nodes used by the objective.
        reml: Whether the objective is the REML criterion.
        names: Parameter names, for reporting.
        x_final: Best parameter vector found.
        f_initial: Objective at x_start.
        f_final: Objective at x_final.
        n_evaluations: Number of objective evaluations.
        n_penalized: Evaluations that failed numerically and were penalized.
        trace: Thinned list of (evaluation index, x, f).
        status: OptimizerStatus.
        message: Human-readable termination message.
    """
    x_start: NDArray
    lower: NDArray
    optimizer: str = 'Nelder-Mead'
    max_evaluations: int = 10_000
    deviance_tolerance: float = 1e-8
    parameter_tolerance: float = 1e-6
    thinning: int = 1
    quadrature_points: int = 1
    reml: bool = False
    names: tuple[str, ...] = ()
    x_final: NDArray | None = None
    f_initial: float = float('nan')
    f_final: float = float('nan')
    n_evaluations: int = 0
    n_penalized: int = 0
    trace: list[tuple[int, NDArray, float]] = field(default_factory=list)
    status: OptimizerStatus = OptimizerStatus.INITIALIZED
    message: str = ''

    @classmethod
    def from_options(
        cls,
        x_start: NDArray,
        lower: NDArray,
        options: FitOptions,
        names: tuple[str, ...] = (),
    ) -> OptSummary:
        return cls(
            x_start=np.asarray(x_start, dtype=np.float64).copy(),
            lower=np.asarray(lower, dtype=np.float64).copy(),
            optimizer=options.optimizer,
            max_evaluations=options.max_evaluations,
            deviance_tolerance=options.deviance_tolerance,
            parameter_tolerance=options.parameter_tolerance,
            thinning=options.thinning,
            quadrature_points=options.quadrature_points,
            reml=options.reml,
            names=tuple(names),
        )

    @property
    def converged(self) -> bool:
        return self.status == OptimizerStatus.CONVERGED

    def trace_values(self) -> NDArray:
        """Objective values of the kept trace entries."""
        return np.array([f for _, _, f in self.trace], dtype=np.float64)


class _BudgetExhausted(Exception):
    """Raised by the objective wrapper to stop the optimizer at the budget."""


class _TrackedObjective:
    """Counts, penalizes, traces and remembers the best evaluation."""

    def __init__(self, objective: Callable[[NDArray], float], optsum: OptSummary):
        self.objective = objective
        self.optsum = optsum
        self.best_x: NDArray | None = None
        self.best_f = np.inf

    def evaluate(self, x: NDArray, enforce_budget: bool = True) -> float:
        optsum = self.optsum
        if enforce_budget and optsum.n_evaluations >= optsum.max_evaluations:
            raise _BudgetExhausted()

        x = np.array(x, dtype=np.float64)
        try:
            f = float(self.objective(x))
        except NumericalError as e:
            logger.debug("evaluation %d penalized: %s", optsum.n_evaluations + 1, e)
            optsum.n_penalized += 1
            f = PENALTY
        else:
            if not np.isfinite(f):
                logger.debug("evaluation %d penalized: non-finite objective %r",
                             optsum.n_evaluations + 1, f)
                optsum.n_penalized += 1
                f = PENALTY

        optsum.n_evaluations += 1
        if optsum.n_evaluations == 1:
            optsum.f_initial = f
        if (optsum.n_evaluations - 1) % optsum.thinning == 0:
            optsum.trace.append((optsum.n_evaluations, x.copy(), f))
        if f < self.best_f:
            self.best_f = f
            self.best_x = x.copy()
        return f

    __call__ = evaluate


def _initial_simplex(x0: NDArray, steps: NDArray) -> NDArray:
    n = x0.shape[0]
    simplex = np.tile(x0, (n + 1, 1))
    for i in range(n):
        simplex[i + 1, i] += steps[i]
    return simplex


def _run(tracked: _TrackedObjective, x0: NDArray, steps: NDArray, f_scale: float) -> bool:
    """One scipy run; returns True if scipy reported convergence."""
    optsum = tracked.optsum
    bounds = [(lo if np.isfinite(lo) else None, None) for lo in optsum.lower]
    if optsum.optimizer == 'Powell':
        method_options = {
            'xtol': optsum.parameter_tolerance,
            'ftol': optsum.deviance_tolerance,
            'maxfev': optsum.max_evaluations,
            'direc': np.diag(steps),
        }
    else:
        method_options = {
            'xatol': optsum.parameter_tolerance,
            'fatol': optsum.deviance_tolerance * f_scale,
            'maxfev': optsum.max_evaluations,
            'initial_simplex': _initial_simplex(x0, steps),
        }
    try:
        res = minimize(
            tracked, x0, method=optsum.optimizer, bounds=bounds, options=method_options,
        )
    except _BudgetExhausted:
        return False
    logger.debug("%s finished: %s (nfev=%d)", optsum.optimizer, res.message, res.nfev)
    return bool(res.success)


def minimize_bounded(
    objective: Callable[[NDArray], float],
    optsum: OptSummary,
    steps: NDArray | None = None,
    zero_mask: NDArray | None = None,
    zero_tolerance: float = 0.0,
) -> OptSummary:
    """Minimize objective subject to x ≥ optsum.lower.

    Runs the optimizer from optsum.x_start, then once more from the best
    point found with a smaller simplex. After convergence, entries flagged
    in zero_mask whose value lies in (0, zero_tolerance) are tried at
    exactly zero and kept there if the objective does not increase by more
    than a small slack.

    Args:
        objective: Function of the parameter vector. May raise
            NumericalError at infeasible trial points.
        optsum: Summary to fill in (x_start, bounds, tolerances, budget).
        steps: Initial simplex steps per coordinate (default 0.75).
        zero_mask: Boolean mask of coordinates eligible for snapping to 0.
        zero_tolerance: Upper limit of the snapping window.

    Returns:
        The updated optsum.

    Raises:
        ConvergenceError: The objective failed at every trial point.
    """
    x0 = np.asarray(optsum.x_start, dtype=np.float64)
    lower = np.asarray(optsum.lower, dtype=np.float64)
    if np.any(x0 < lower):
        x0 = np.maximum(x0, lower)
        optsum.x_start = x0.copy()
    if steps is None:
        steps = np.full(x0.shape[0], INITIAL_STEP)

    tracked = _TrackedObjective(objective, optsum)
    optsum.status = OptimizerStatus.ITERATING
    f0 = tracked(x0)
    f_scale = max(1.0, abs(f0)) if f0 < PENALTY else 1.0

    converged = _run(tracked, x0, steps, f_scale)
    if converged and tracked.best_x is not None:
        # Restart: a collapsed simplex can stall away from the optimum
        restart_steps = np.maximum(np.abs(steps) * 0.1, optsum.parameter_tolerance * 10)
        converged = _run(tracked, tracked.best_x.copy(), restart_steps, f_scale)

    if tracked.best_x is None or tracked.best_f >= PENALTY:
        optsum.status = OptimizerStatus.MAX_EVALUATIONS_EXCEEDED
        raise ConvergenceError(
            "Objective could not be evaluated at any trial point",
            iterations=optsum.n_evaluations,
            reason='all_evaluations_failed',
        )

    if zero_mask is not None and zero_tolerance > 0:
        _snap_to_zero(tracked, np.asarray(zero_mask, dtype=bool), zero_tolerance)

    optsum.x_final = tracked.best_x.copy()
    optsum.f_final = float(tracked.best_f)

    if converged:
        optsum.status = OptimizerStatus.CONVERGED
        optsum.message = 'converged'
    elif optsum.n_evaluations >= optsum.max_evaluations:
        optsum.status = OptimizerStatus.MAX_EVALUATIONS_EXCEEDED
        optsum.message = (
            f"Maximum number of evaluations ({optsum.max_evaluations}) exceeded; "
            f"returning best point found (objective {optsum.f_final:.6g})"
        )
        warnings.warn(optsum.message, MaxEvaluationsExceeded, stacklevel=3)
    else:
        # scipy stopped without meeting the tolerances before the budget ran out
        optsum.status = OptimizerStatus.CONVERGED
        optsum.message = 'stopped: no further progress'

    logger.debug(
        "optimization %s after %d evaluations (%d penalized), objective %.10g",
        optsum.status.value, optsum.n_evaluations, optsum.n_penalized, optsum.f_final,
    )
    return optsum


def _snap_to_zero(tracked: _TrackedObjective, mask: NDArray, zero_tolerance: float) -> None:
    x = tracked.best_x.copy()
    f = tracked.best_f
    for i in np.flatnonzero(mask):
        if 0.0 < x[i] < zero_tolerance:
            trial = x.copy()
            trial[i] = 0.0
            f_trial = tracked.evaluate(trial, enforce_budget=False)
            if f_trial <= f + ZERO_SNAP_SLACK:
                logger.debug("parameter %d set to zero (objective %.10g → %.10g)",
                             i, f, f_trial)
                x, f = trial, f_trial
    tracked.best_x = x
    tracked.best_f = f

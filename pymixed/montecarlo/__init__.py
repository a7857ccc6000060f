"""
pymixed Monte Carlo methods.

Provides the parametric bootstrap of fitted mixed models, with refits
distributed over joblib threads.

Usage:
    from pymixed.montecarlo import parametric_bootstrap

    boot = parametric_bootstrap(solution, 1000, seed=42, n_jobs=4)
    boot.ci(0.95, method="percentile")
"""

from pymixed.montecarlo._common import BootstrapRecord
from pymixed.montecarlo.solution import MixedBootstrapSolution
from pymixed.montecarlo.solvers import parametric_bootstrap

__all__ = [
    "parametric_bootstrap",
    "MixedBootstrapSolution",
    "BootstrapRecord",
]

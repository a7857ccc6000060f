"""
pymixed: mixed-effects models for Python.

Linear and generalized linear mixed models fitted by profiled deviance
minimization over a blocked sparse Cholesky factor, with PIRLS and
adaptive Gauss-Hermite quadrature for non-gaussian responses and a
parallel parametric bootstrap.

Submodules:
    mixed: Model construction, fitting and optimizer summaries
    montecarlo: Parametric bootstrap of fitted models
    core: Result envelope, exceptions, validation, timing
"""

__version__ = "0.1.0"

from pymixed import core
from pymixed import mixed
from pymixed import montecarlo
from pymixed.mixed import fit, lmm, glmm, FitOptions
from pymixed.montecarlo import parametric_bootstrap

__all__ = [
    "__version__",
    "core",
    "mixed",
    "montecarlo",
    "fit",
    "lmm",
    "glmm",
    "FitOptions",
    "parametric_bootstrap",
]

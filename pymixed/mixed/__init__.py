"""
Mixed models: Linear Mixed Models (LMM) and Generalized Linear Mixed Models (GLMM).

Public API:
    fit()           — fit from X, random-effects terms and y
    lmm()           — fit a linear mixed model (ML or REML)
    glmm()          — fit a generalized linear mixed model (Laplace or AGQ)
    LMMSolution     — result wrapper for LMM
    GLMMSolution    — result wrapper for GLMM
    save_optsum()   — write the optimizer summary of a fit as JSON
    restore_optsum()— rebuild a fit from a saved optimizer summary
"""

from pymixed.mixed import families
from pymixed.mixed._model import LinearMixedModel, GeneralizedLinearMixedModel
from pymixed.mixed._optimizer import OptSummary, OptimizerStatus
from pymixed.mixed._reterms import ReTerm, parse_random_effects, reterm_from_matrix
from pymixed.mixed.design import MixedDesign
from pymixed.mixed.options import FitOptions
from pymixed.mixed.optsum import save_optsum, restore_optsum
from pymixed.mixed.solution import LMMSolution, GLMMSolution
from pymixed.mixed.solvers import fit, lmm, glmm

__all__ = [
    "fit",
    "lmm",
    "glmm",
    "FitOptions",
    "families",
    "ReTerm",
    "parse_random_effects",
    "reterm_from_matrix",
    "MixedDesign",
    "LinearMixedModel",
    "GeneralizedLinearMixedModel",
    "OptSummary",
    "OptimizerStatus",
    "save_optsum",
    "restore_optsum",
    "LMMSolution",
    "GLMMSolution",
]

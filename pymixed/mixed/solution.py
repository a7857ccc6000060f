"""
Solution wrappers for mixed models.

LMMSolution and GLMMSolution wrap Result[LMMParams] / Result[GLMMParams]
together with the fitted model object, and provide property accessors for
common quantities and for the optimizer summary.
"""

from __future__ import annotations

from typing import Any

from numpy.typing import NDArray

from pymixed.core.result import Result
from pymixed.mixed._common import LMMParams, GLMMParams, VarCompSummary
from pymixed.mixed._optimizer import OptSummary, OptimizerStatus


class _MixedSolution:
    """Accessors shared by LMM and GLMM solutions."""

    def __init__(self, _result: Result, model):
        self._result = _result
        self._model = model

    @property
    def model(self):
        """The fitted LinearMixedModel / GeneralizedLinearMixedModel."""
        return self._model

    @property
    def result(self) -> Result:
        return self._result

    @property
    def info(self) -> dict[str, Any]:
        return self._result.info

    @property
    def timing(self) -> dict[str, float] | None:
        return self._result.timing

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    # --- Fixed effects ---

    @property
    def coefficients(self) -> NDArray:
        """Fixed effect estimates β̂."""
        return self.params.coefficients

    @property
    def fixef(self) -> dict[str, float]:
        """Fixed effects as name → value dict."""
        return dict(zip(self.params.coefficient_names, self.params.coefficients))

    @property
    def se(self) -> NDArray:
        """Standard errors of fixed effects."""
        return self.params.se

    @property
    def vcov(self) -> NDArray:
        return self.params.vcov

    # --- Random effects ---

    @property
    def ranef(self) -> dict[str, NDArray]:
        """Random effects (BLUPs / conditional modes) per grouping factor."""
        return self.params.random_effects

    @property
    def var_components(self) -> tuple[VarCompSummary, ...]:
        """Variance component summaries."""
        return self.params.var_components

    @property
    def theta(self) -> NDArray:
        """Covariance parameters, in elimination order."""
        return self.params.theta

    @property
    def theta_names(self) -> tuple[str, ...]:
        return self.params.theta_names

    @property
    def is_singular(self) -> bool:
        """True when some variance component is estimated on the boundary."""
        return self.params.is_singular

    # --- Model fit ---

    @property
    def deviance(self) -> float:
        return self.params.deviance

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    @property
    def aic(self) -> float:
        return self.params.aic

    @property
    def bic(self) -> float:
        return self.params.bic

    @property
    def fitted_values(self) -> NDArray:
        return self.params.fitted_values

    @property
    def residuals(self) -> NDArray:
        return self.params.residuals

    @property
    def n_obs(self) -> int:
        return self.params.n_obs

    # --- Optimizer ---

    @property
    def optsum(self) -> OptSummary | None:
        """Optimizer summary (None for a solution restored without a fit)."""
        return self._model.optsum

    @property
    def status(self) -> OptimizerStatus:
        return OptimizerStatus(self.info['status'])

    @property
    def converged(self) -> bool:
        return self.params.converged

    @property
    def n_evaluations(self) -> int:
        return self.params.n_evaluations


class LMMSolution(_MixedSolution):
    """Solution wrapper for a fitted linear mixed model."""

    def __init__(self, _result: Result[LMMParams], model):
        super().__init__(_result, model)

    @property
    def params(self) -> LMMParams:
        return self._result.params

    @property
    def t_values(self) -> NDArray:
        """t-statistics for fixed effects."""
        return self.params.t_values

    @property
    def sigma(self) -> float:
        """Residual standard deviation σ̂."""
        return self.params.residual_std

    @property
    def reml(self) -> bool:
        return self.params.reml

    @property
    def icc(self) -> dict[str, float]:
        """Intraclass correlation coefficient per grouping factor.

        ICC = σ²_group / (σ²_group + σ²_residual)

        For models with random slopes, uses the intercept variance only.
        """
        sigma_sq_resid = self.params.residual_variance
        result = {}
        for vc in self.params.var_components:
            if vc.name in ('(Intercept)', '1'):
                key = vc.group
                if key not in result:
                    result[key] = vc.variance / (vc.variance + sigma_sq_resid)
        return result

    def __repr__(self) -> str:
        return (f"LMMSolution(n_obs={self.n_obs}, deviance={self.deviance:.4f}, "
                f"status={self.info['status']!r})")


class GLMMSolution(_MixedSolution):
    """Solution wrapper for a fitted generalized linear mixed model."""

    def __init__(self, _result: Result[GLMMParams], model):
        super().__init__(_result, model)

    @property
    def params(self) -> GLMMParams:
        return self._result.params

    @property
    def z_values(self) -> NDArray:
        """Wald z-statistics for fixed effects."""
        return self.params.z_values

    @property
    def p_values(self) -> NDArray:
        """Two-sided Wald p-values."""
        return self.params.p_values

    @property
    def sigma(self) -> float:
        return 1.0

    @property
    def family_name(self) -> str:
        return self.params.family_name

    @property
    def link_name(self) -> str:
        return self.params.link_name

    @property
    def linear_predictor(self) -> NDArray:
        return self.params.linear_predictor

    def __repr__(self) -> str:
        return (f"GLMMSolution(family={self.family_name!r}, n_obs={self.n_obs}, "
                f"deviance={self.deviance:.4f}, status={self.info['status']!r})")

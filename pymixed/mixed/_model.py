"""
Linear and generalized linear mixed model objects.

A model owns its BlockedSystem and the current parameter state. The
objective functions are pure functions of their argument (they overwrite
the model's factor storage, but the returned value depends only on the
argument), which is what the optimizer driver relies on.
"""

from __future__ import annotations

import warnings
import numpy as np
from numpy.typing import NDArray

from pymixed.mixed._blocks import BlockedSystem
from pymixed.mixed._cholesky import (
    fixef, ranef_spherical, conditional_modes, unscaled_vcov,
    random_effects_linear_predictor,
)
from pymixed.mixed._covariance import (
    check_theta, theta_lower_bounds, theta_start, theta_names, theta_diagonal_mask,
    lambda_factors,
)
from pymixed.mixed._deviance import profiled_deviance_lmm, sigma_hat
from pymixed.mixed._optimizer import OptSummary, minimize_bounded, INITIAL_STEP
from pymixed.mixed._pirls import pirls, PIRLSResult, supports_agq, agq_from_modes
from pymixed.mixed.design import MixedDesign
from pymixed.mixed.families import Family
from pymixed.mixed.options import FitOptions


class _MixedModelBase:
    """Shared parameter bookkeeping for LMM and GLMM."""

    design: MixedDesign
    system: BlockedSystem
    theta: NDArray

    @property
    def reterms(self):
        """Random-effects terms in elimination order (the order of θ)."""
        return self.system.reterms

    @property
    def theta_names(self) -> list[str]:
        return theta_names(self.reterms)

    @property
    def lower_bounds(self) -> NDArray:
        return theta_lower_bounds(self.reterms)

    @property
    def n_theta(self) -> int:
        return self.lower_bounds.shape[0]

    def is_singular(self, tolerance: float = 1e-4) -> bool:
        """True if some diagonal θ entry is (near) zero: a boundary fit."""
        diag = self.theta[theta_diagonal_mask(self.reterms)]
        return bool(np.any(diag < tolerance))

    def factors(self) -> list[NDArray]:
        """Relative covariance factors T_k at the current θ."""
        return lambda_factors(self.theta, self.reterms)

    def _draw_random_effects(self, rng, theta) -> NDArray:
        """Z Λ_θ u with u ~ N(0, I)."""
        out = np.zeros(self.design.n)
        for term, T in zip(self.reterms, lambda_factors(theta, self.reterms)):
            u = rng.standard_normal((term.n_levels, term.n_terms))
            out += term.Z @ (u @ T.T).ravel()
        return out


class LinearMixedModel(_MixedModelBase):
    """Linear mixed model y = Xβ + ZΛu + ε, u ~ N(0, σ²I), ε ~ N(0, σ²W⁻¹).

    Args:
        design: Validated MixedDesign.
        reml: Use the REML criterion instead of ML.
        system: Pre-built blocked system (used by with_response()).
    """

    def __init__(self, design: MixedDesign, reml: bool = False,
                 system: BlockedSystem | None = None):
        self.design = design
        self.reml = reml
        if system is None:
            system = BlockedSystem.build(
                design.X, list(design.reterms), design.y, weights=design.weights,
            )
        self.system = system
        self.theta = theta_start(self.reterms)
        self.optsum: OptSummary | None = None
        self._deviance = np.nan
        self._factored = False

    # --- Objective ---

    def objective(self, theta) -> float:
        """Profiled deviance (ML or REML) at θ.

        Raises:
            InvalidParameter: Wrong length or non-finite θ.
            NonPositiveDefinite: The scaled system is not positive definite.
        """
        self._factored = False
        return profiled_deviance_lmm(self.system, theta, reml=self.reml)

    def set_theta(self, theta) -> float:
        """Factor at θ and make it the model's current parameter value.

        Returns:
            The objective at θ.
        """
        theta = check_theta(theta, self.reterms)
        self._deviance = self.objective(theta)
        self.theta = theta.copy()
        self._factored = True
        return self._deviance

    def _ensure_factored(self) -> None:
        if not self._factored:
            self.set_theta(self.theta)

    # --- Fitting ---

    def fit(self, options: FitOptions | None = None) -> LinearMixedModel:
        """Minimize the profiled deviance over θ.

        Args:
            options: FitOptions (defaults when None).

        Returns:
            self, with optsum, θ and the final factorization set.
        """
        options = options if options is not None else FitOptions()
        x0 = options.start(theta_start(self.reterms))
        optsum = OptSummary.from_options(
            x0, self.lower_bounds, options, names=tuple(self.theta_names),
        )
        optsum.reml = self.reml
        optsum.quadrature_points = 1
        minimize_bounded(
            self.objective,
            optsum,
            zero_mask=theta_diagonal_mask(self.reterms),
            zero_tolerance=options.zero_tolerance,
        )
        self.optsum = optsum
        self.set_theta(optsum.x_final)
        return self

    # --- Estimates at the current θ ---

    @property
    def deviance(self) -> float:
        """Objective value at the current θ."""
        self._ensure_factored()
        return self._deviance

    def fixef(self) -> NDArray:
        self._ensure_factored()
        return fixef(self.system)

    def spherical_ranef(self) -> list[NDArray]:
        """u per term, in elimination order."""
        self._ensure_factored()
        return ranef_spherical(self.system, fixef(self.system))

    def ranef(self) -> list[NDArray]:
        """Conditional modes b per term as (ℓ, v) arrays, in elimination order."""
        self._ensure_factored()
        return conditional_modes(self.system, self.spherical_ranef())

    def sigma(self) -> float:
        """Residual standard deviation σ."""
        self._ensure_factored()
        return sigma_hat(self.system, reml=self.reml)

    def fitted(self) -> NDArray:
        """Xβ̂ + Zb̂."""
        self._ensure_factored()
        return (self.design.X @ self.fixef()
                + random_effects_linear_predictor(self.system, self.spherical_ranef()))

    def residuals(self) -> NDArray:
        return self.design.y - self.fitted()

    def vcov(self) -> NDArray:
        """Covariance matrix of β̂: σ² (R_X' R_X)⁻¹."""
        self._ensure_factored()
        return self.sigma() ** 2 * unscaled_vcov(self.system)

    def log_likelihood(self) -> float:
        """Log-likelihood (REML criterion / -2 for REML fits)."""
        return -0.5 * self.deviance

    @property
    def n_params(self) -> int:
        """β, θ and σ."""
        return self.design.p + self.n_theta + 1

    # --- Refits and simulation ---

    def with_response(self, y) -> LinearMixedModel:
        """Model for a new response sharing the θ-independent crossproducts."""
        design = self.design.with_response(y)
        model = LinearMixedModel(design, reml=self.reml,
                                 system=self.system.with_response(design.y))
        model.theta = self.theta.copy()
        return model

    def simulate(self, rng, beta=None, sigma=None, theta=None) -> NDArray:
        """Draw a response from the model.

        y = Xβ + σ (ZΛ_θ u + W^{-1/2} ε),  u ~ N(0, I), ε ~ N(0, I)

        Defaults are the current estimates.
        """
        beta = self.fixef() if beta is None else np.asarray(beta, dtype=np.float64)
        sigma = self.sigma() if sigma is None else float(sigma)
        theta = self.theta if theta is None else check_theta(theta, self.reterms)
        eps = rng.standard_normal(self.design.n)
        if self.design.weights is not None:
            eps = eps / np.sqrt(self.design.weights)
        return self.design.X @ beta + sigma * (self._draw_random_effects(rng, theta) + eps)


class GeneralizedLinearMixedModel(_MixedModelBase):
    """GLMM with g(E[y | b]) = Xβ + ZΛu, u ~ N(0, I).

    Args:
        design: Validated MixedDesign.
        family: Response family (not gaussian).
    """

    def __init__(self, design: MixedDesign, family: Family):
        self.design = design
        self.family = family
        family.check_response(design.y, design.prior_weights)
        # Weights enter through PIRLS reweighting
        self.system = BlockedSystem.build(design.X, list(design.reterms), design.y)
        self.theta = theta_start(self.reterms)
        self.beta = np.zeros(design.p)
        self.optsum: OptSummary | None = None
        self.optsum_stage1: OptSummary | None = None
        self.n_agq = 1
        self.pirls_tolerance = 1e-8
        self.pirls_max_iter = 100
        self.pirls_max_halving = 10
        self.fit_warnings: list[str] = []
        self._state: PIRLSResult | None = None
        self._deviance = np.nan
        self._beta_start: NDArray | None = None

    def _pirls(self, theta, beta, vary_beta: bool, from_response: bool = False) -> PIRLSResult:
        return pirls(
            self.system, self.design.X, self.design.y, self.design.prior_weights,
            self.family, theta, beta,
            vary_beta=vary_beta,
            tol=self.pirls_tolerance,
            max_iter=self.pirls_max_iter,
            max_halving=self.pirls_max_halving,
            from_response=from_response,
        )

    def initial_beta(self) -> NDArray:
        """β from a GLM fit (PIRLS at θ = 0)."""
        if self._beta_start is None:
            zero = np.zeros(self.n_theta)
            result = self._pirls(zero, np.zeros(self.design.p), True, from_response=True)
            self._beta_start = result.beta
        return self._beta_start.copy()

    # --- Objectives ---

    def objective_fast(self, theta) -> float:
        """Laplace deviance at θ with β optimized inside PIRLS."""
        theta = check_theta(theta, self.reterms)
        self._state = None
        return self._pirls(theta, self.initial_beta(), True).laplace

    def objective(self, params, n_agq: int | None = None) -> float:
        """Laplace (n_agq == 1) or AGQ deviance at params = [β, θ]."""
        params = np.asarray(params, dtype=np.float64)
        p = self.design.p
        beta, theta = params[:p], check_theta(params[p:], self.reterms)
        n_agq = self.n_agq if n_agq is None else n_agq
        self._state = None
        result = self._pirls(theta, beta, False)
        return self._deviance_from(result, n_agq)

    def _deviance_from(self, result: PIRLSResult, n_agq: int) -> float:
        if n_agq > 1 and supports_agq(self.system):
            return agq_from_modes(
                self.system, self.design.X, self.design.y, self.design.prior_weights,
                self.family, result, n_agq,
            )
        return result.laplace

    def set_params(self, beta, theta) -> float:
        """Make (β, θ) current: conditional modes, factor and deviance."""
        theta = check_theta(theta, self.reterms)
        beta = np.asarray(beta, dtype=np.float64)
        result = self._pirls(theta, beta, False)
        self._deviance = self._deviance_from(result, self.n_agq)
        self.theta = theta.copy()
        self.beta = beta.copy()
        self._state = result
        return self._deviance

    def _ensure_state(self) -> PIRLSResult:
        if self._state is None:
            self.set_params(self.beta, self.theta)
        return self._state

    # --- Fitting ---

    def fit(self, options: FitOptions | None = None) -> GeneralizedLinearMixedModel:
        """Two-stage fit.

        Stage 1 minimizes the Laplace deviance over θ with β inside PIRLS.
        Stage 2 (skipped when options.fast and quadrature_points == 1)
        minimizes the Laplace/AGQ deviance over (β, θ) jointly.
        """
        options = options if options is not None else FitOptions()
        self.pirls_tolerance = options.pirls_tolerance
        self.pirls_max_iter = options.pirls_max_iter
        self.pirls_max_halving = options.pirls_max_halving
        self.fit_warnings = []

        n_agq = options.quadrature_points
        if n_agq > 1 and not supports_agq(self.system):
            msg = (
                f"Adaptive Gauss-Hermite quadrature requires a single scalar "
                f"random-effects term; using the Laplace approximation instead "
                f"of {n_agq} quadrature points"
            )
            warnings.warn(msg, RuntimeWarning, stacklevel=2)
            self.fit_warnings.append(msg)
            n_agq = 1
        self.n_agq = n_agq

        self.initial_beta()
        diag_mask = theta_diagonal_mask(self.reterms)

        x0 = options.start(theta_start(self.reterms))
        stage1 = OptSummary.from_options(
            x0, self.lower_bounds, options, names=tuple(self.theta_names),
        )
        stage1.quadrature_points = 1
        stage1.reml = False
        minimize_bounded(
            self.objective_fast, stage1,
            zero_mask=diag_mask, zero_tolerance=options.zero_tolerance,
        )
        self.optsum_stage1 = stage1
        theta1 = stage1.x_final
        beta1 = self._pirls(theta1, self.initial_beta(), True).beta

        if options.fast and n_agq == 1:
            self.optsum = stage1
            self.set_params(beta1, theta1)
            return self

        # Step sizes: fixed effects by their standard errors, θ by its scale
        se = np.sqrt(np.maximum(np.diag(unscaled_vcov(self.system)), 0.0))
        beta_steps = np.where(se > 0, se / 3.0, 0.1)
        theta_steps = np.maximum(theta1 / 4.0, INITIAL_STEP / 15.0)

        p = self.design.p
        stage2 = OptSummary.from_options(
            np.concatenate([beta1, theta1]),
            np.concatenate([np.full(p, -np.inf), self.lower_bounds]),
            options,
            names=tuple(self.design.coefficient_names) + tuple(self.theta_names),
        )
        stage2.reml = False
        stage2.quadrature_points = n_agq
        minimize_bounded(
            lambda x: self.objective(x, n_agq),
            stage2,
            steps=np.concatenate([beta_steps, theta_steps]),
            zero_mask=np.concatenate([np.zeros(p, dtype=bool), diag_mask]),
            zero_tolerance=options.zero_tolerance,
        )
        self.optsum = stage2
        self.set_params(stage2.x_final[:p], stage2.x_final[p:])
        return self

    # --- Estimates ---

    @property
    def deviance(self) -> float:
        """Laplace or AGQ deviance at the current (β, θ)."""
        self._ensure_state()
        return self._deviance

    def fixef(self) -> NDArray:
        return self.beta.copy()

    def spherical_ranef(self) -> list[NDArray]:
        return self._ensure_state().u

    def ranef(self) -> list[NDArray]:
        """Conditional modes b per term as (ℓ, v) arrays, in elimination order."""
        state = self._ensure_state()
        return conditional_modes(self.system, state.u)

    def sigma(self) -> float:
        """Families here have fixed dispersion; σ is 1."""
        return 1.0

    def fitted(self) -> NDArray:
        """μ̂ = g⁻¹(Xβ̂ + Zb̂)."""
        return self._ensure_state().mu

    def linear_predictor(self) -> NDArray:
        return self._ensure_state().eta

    def residuals(self) -> NDArray:
        return self.design.y - self.fitted()

    def vcov(self) -> NDArray:
        """Approximate covariance of β̂ from the final PIRLS factor."""
        self._ensure_state()
        return unscaled_vcov(self.system)

    def log_likelihood(self) -> float:
        """Approximate marginal log-likelihood.

        The deviance is based on deviance residuals; the saturated-model
        constant is restored with the family's conditional log-likelihood.
        """
        state = self._ensure_state()
        wt = self.design.prior_weights
        cond_ll = self.family.log_likelihood(self.design.y, state.mu, wt, 1.0)
        return -0.5 * (self.deviance - state.devresid_sum - 2.0 * cond_ll)

    @property
    def n_params(self) -> int:
        return self.design.p + self.n_theta

    # --- Refits and simulation ---

    def with_response(self, y) -> GeneralizedLinearMixedModel:
        """Model for a new response (the PIRLS system is rebuilt)."""
        model = GeneralizedLinearMixedModel(self.design.with_response(y), self.family)
        model.theta = self.theta.copy()
        model.beta = self.beta.copy()
        return model

    def simulate(self, rng, beta=None, theta=None) -> NDArray:
        """Draw a response: μ = g⁻¹(Xβ + ZΛ_θ u), u ~ N(0, I), y ~ family(μ)."""
        beta = self.beta if beta is None else np.asarray(beta, dtype=np.float64)
        theta = self.theta if theta is None else check_theta(theta, self.reterms)
        eta = self.design.X @ beta + self._draw_random_effects(rng, theta)
        mu = self.family.link.linkinv(eta)
        return self.family.simulate(rng, mu, self.design.prior_weights)

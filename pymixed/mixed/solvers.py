"""
Solver dispatch for mixed models.

Public API:
    fit()  — fit a model from X, random-effects terms and y
    lmm()  — fit a linear mixed model from grouping labels (ML or REML)
    glmm() — fit a generalized linear mixed model from grouping labels
             (Laplace approximation or adaptive Gauss-Hermite quadrature)

All structural validation happens before any numerical work: a malformed
design raises immediately and never reaches the optimizer.
"""

from __future__ import annotations

import warnings
import numpy as np
from numpy.typing import ArrayLike
from scipy import stats

from pymixed.core.exceptions import ValidationError
from pymixed.core.result import Result
from pymixed.core.compute.timing import Timer

from pymixed.mixed._common import LMMParams, GLMMParams, VarCompSummary
from pymixed.mixed._covariance import covariance_summary
from pymixed.mixed._model import LinearMixedModel, GeneralizedLinearMixedModel
from pymixed.mixed._optimizer import OptimizerStatus
from pymixed.mixed._reterms import ReTerm
from pymixed.mixed.design import MixedDesign
from pymixed.mixed.families import Family, resolve_family
from pymixed.mixed.options import FitOptions, resolve_options
from pymixed.mixed.solution import LMMSolution, GLMMSolution


def fit(
    X: ArrayLike,
    reterms: list[ReTerm],
    y: ArrayLike,
    family: str | Family = 'gaussian',
    link=None,
    *,
    weights: ArrayLike | None = None,
    options: FitOptions | None = None,
    coefficient_names: list[str] | None = None,
) -> LMMSolution | GLMMSolution:
    """Fit a mixed model.

    A gaussian family with the identity link gives a linear mixed model
    (profiled ML, or REML with options.reml); any other family gives a
    GLMM.

    Args:
        X: Fixed effects design matrix (n, p).
        reterms: Random-effects terms (parse_random_effects /
            reterm_from_matrix).
        y: Response vector (n,).
        family: 'gaussian', 'bernoulli', 'binomial', 'poisson' or a Family.
        link: Optional link name or Link overriding the family default.
        weights: Optional positive prior weights (trial counts for binomial).
        options: FitOptions.
        coefficient_names: Optional names for the columns of X.

    Returns:
        LMMSolution or GLMMSolution.

    Raises:
        ValidationError: Malformed design, family or options.
        DimensionMismatch: Inconsistent row counts.
    """
    timer = Timer()
    timer.start()

    family_obj = resolve_family(family, link)
    options = options if options is not None else FitOptions()
    design = MixedDesign.validate(
        y, X, reterms, weights=weights, coefficient_names=coefficient_names,
    )

    if family_obj.name == 'gaussian':
        return _fit_lmm(design, options, timer)
    return _fit_glmm(design, family_obj, options, timer)


def lmm(
    y: ArrayLike,
    X: ArrayLike,
    groups: dict[str, ArrayLike],
    *,
    random_effects: dict[str, list[str]] | None = None,
    random_data: dict[str, ArrayLike] | None = None,
    weights: ArrayLike | None = None,
    reml: bool = False,
    options: FitOptions | None = None,
    coefficient_names: list[str] | None = None,
) -> LMMSolution:
    """Fit a linear mixed model.

    Estimates fixed effects β, random effects variance components,
    and conditional modes (BLUPs) of random effects by minimizing the
    profiled ML or REML deviance over θ (Bates et al., 2015).

    Args:
        y: Response vector (n,).
        X: Fixed effects design matrix (n, p). Should include an
            intercept column if desired.
        groups: Dict mapping grouping factor names to group label arrays.
            Example: {'subject': subject_ids}.
        random_effects: Optional dict mapping group names to lists of
            random effect terms. Default: random intercept per group.
            Example: {'subject': ['1', 'time']} for (1 + time | subject).
        random_data: Optional dict mapping variable names to data arrays
            for random slope variables.
            Example: {'time': time_array}.
        weights: Optional positive prior weights.
        reml: If True, use REML estimation. Default ML (reml=False).
        options: FitOptions; `reml` overrides options.reml.
        coefficient_names: Optional names for the columns of X.

    Returns:
        LMMSolution with fixed effects, random effects, variance components,
        model fit statistics and the optimizer summary.

    Examples:
        # Random intercept model
        >>> result = lmm(y, X, groups={'subject': subject_ids})

        # Random intercept + slope
        >>> result = lmm(y, X, groups={'subject': subject_ids},
        ...              random_effects={'subject': ['1', 'time']},
        ...              random_data={'time': time_array})

        # Crossed random effects
        >>> result = lmm(y, X, groups={'subject': subj, 'item': item})
    """
    timer = Timer()
    timer.start()

    options = resolve_options(options, reml=reml)
    design = MixedDesign.from_groups(
        y, X, groups, random_effects, random_data,
        weights=weights, coefficient_names=coefficient_names,
    )
    return _fit_lmm(design, options, timer)


def glmm(
    y: ArrayLike,
    X: ArrayLike,
    groups: dict[str, ArrayLike],
    *,
    family: str | Family = 'bernoulli',
    link=None,
    random_effects: dict[str, list[str]] | None = None,
    random_data: dict[str, ArrayLike] | None = None,
    weights: ArrayLike | None = None,
    quadrature_points: int | None = None,
    fast: bool | None = None,
    options: FitOptions | None = None,
    coefficient_names: list[str] | None = None,
) -> GLMMSolution:
    """Fit a generalized linear mixed model.

    Uses the Laplace approximation to the marginal likelihood (or adaptive
    Gauss-Hermite quadrature for a single scalar random-effects term) with
    PIRLS for the inner loop and a derivative-free bounded optimizer for
    the outer loop.

    Args:
        y: Response vector (n,).
        X: Fixed effects design matrix (n, p).
        groups: Dict mapping grouping factor names to group label arrays.
        family: 'bernoulli', 'binomial', 'poisson' or a Family instance.
        link: Optional link overriding the family default.
        random_effects: Optional random effects specification.
        random_data: Optional data for random slope variables.
        weights: Optional prior weights (trial counts for binomial).
        quadrature_points: Gauss-Hermite nodes (odd; 1 = Laplace).
        fast: Skip the joint (β, θ) optimization stage.
        options: FitOptions; explicit keyword arguments override it.
        coefficient_names: Optional names for the columns of X.

    Returns:
        GLMMSolution with fixed effects, random effects, and model fit.
    """
    timer = Timer()
    timer.start()

    family_obj = resolve_family(family, link)
    if family_obj.name == 'gaussian':
        raise ValidationError(
            "glmm() fits non-gaussian families; use lmm() for a gaussian response"
        )
    options = resolve_options(options, quadrature_points=quadrature_points, fast=fast)
    design = MixedDesign.from_groups(
        y, X, groups, random_effects, random_data,
        weights=weights, coefficient_names=coefficient_names,
    )
    return _fit_glmm(design, family_obj, options, timer)


# =====================================================================
# Fitting and assembly
# =====================================================================

def _fit_lmm(design: MixedDesign, options: FitOptions, timer: Timer) -> LMMSolution:
    with timer.section('setup'):
        model = LinearMixedModel(design, reml=options.reml)

    with timer.section('optimization'):
        model.fit(options)

    return lmm_solution(model, timer, singular_tolerance=options.singular_tolerance)


def _fit_glmm(
    design: MixedDesign, family: Family, options: FitOptions, timer: Timer,
) -> GLMMSolution:
    with timer.section('setup'):
        model = GeneralizedLinearMixedModel(design, family)

    with timer.section('optimization'):
        model.fit(options)

    return glmm_solution(model, timer, singular_tolerance=options.singular_tolerance)


def _status_warnings(model, singular_tolerance: float) -> list[str]:
    warn_list = []
    optsum = model.optsum
    if optsum is not None and optsum.status == OptimizerStatus.MAX_EVALUATIONS_EXCEEDED:
        # The driver already issued MaxEvaluationsExceeded
        warn_list.append(optsum.message)
    if model.is_singular(singular_tolerance):
        msg = (
            "Boundary (singular) fit: at least one variance component is "
            "estimated as (near) zero"
        )
        warnings.warn(msg, RuntimeWarning, stacklevel=3)
        warn_list.append(msg)
    return warn_list


def _info(model, method: str) -> dict:
    optsum = model.optsum
    info = {
        'method': method,
        'deviance': float(model.deviance),
        'theta': model.theta.copy(),
    }
    if optsum is None:
        info.update({
            'optimizer': None,
            'status': OptimizerStatus.CONVERGED.value,
            'converged': True,
            'n_evaluations': 0,
            'n_penalized': 0,
        })
    else:
        info.update({
            'optimizer': optsum.optimizer,
            'status': optsum.status.value,
            'converged': optsum.converged,
            'n_evaluations': optsum.n_evaluations,
            'n_penalized': optsum.n_penalized,
        })
    return info


def lmm_solution(
    model: LinearMixedModel,
    timer: Timer | None = None,
    singular_tolerance: float = 1e-4,
    extra_warnings: tuple[str, ...] = (),
) -> LMMSolution:
    """Assemble an LMMSolution from a model at its current θ."""
    if timer is None:
        timer = Timer()
        timer.start()
    design = model.design

    with timer.section('final_solve'):
        model.set_theta(model.theta)
        beta = model.fixef()
        sigma = model.sigma()
        vcov = model.vcov()
        se = np.sqrt(np.maximum(np.diag(vcov), 0.0))
        with np.errstate(divide='ignore', invalid='ignore'):
            t_vals = beta / se

    with timer.section('variance_components'):
        var_comps = extract_var_components(model, sigma * sigma)
        random_effs, levels = _extract_blups(model)

    with timer.section('model_fit'):
        deviance = float(model.deviance)
        ll = model.log_likelihood()
        k = model.n_params
        aic = -2.0 * ll + 2.0 * k
        bic = -2.0 * ll + np.log(design.n) * k
        fitted = model.fitted()

    warn_list = list(extra_warnings) + _status_warnings(model, singular_tolerance)
    timer.stop()

    params = LMMParams(
        coefficients=beta,
        coefficient_names=design.coefficient_names,
        se=se,
        t_values=t_vals,
        vcov=vcov,
        var_components=tuple(var_comps),
        residual_variance=sigma * sigma,
        residual_std=sigma,
        deviance=deviance,
        log_likelihood=ll,
        reml=model.reml,
        aic=float(aic),
        bic=float(bic),
        n_obs=design.n,
        n_groups=design.n_groups,
        converged=model.optsum is None or model.optsum.converged,
        n_evaluations=0 if model.optsum is None else model.optsum.n_evaluations,
        is_singular=model.is_singular(singular_tolerance),
        random_effects=random_effs,
        random_effect_levels=levels,
        fitted_values=fitted,
        residuals=design.y - fitted,
        theta=model.theta.copy(),
        theta_names=tuple(model.theta_names),
    )

    result = Result(
        params=params,
        info=_info(model, 'REML' if model.reml else 'ML'),
        timing=timer.result(),
        backend_name='cpu_lmm',
        warnings=tuple(warn_list),
    )
    return LMMSolution(_result=result, model=model)


def glmm_solution(
    model: GeneralizedLinearMixedModel,
    timer: Timer | None = None,
    singular_tolerance: float = 1e-4,
    extra_warnings: tuple[str, ...] = (),
) -> GLMMSolution:
    """Assemble a GLMMSolution from a model at its current (β, θ)."""
    if timer is None:
        timer = Timer()
        timer.start()
    design = model.design

    with timer.section('final_solve'):
        model.set_params(model.beta, model.theta)
        beta = model.fixef()
        vcov = model.vcov()
        se = np.sqrt(np.maximum(np.diag(vcov), 0.0))
        with np.errstate(divide='ignore', invalid='ignore'):
            z_vals = beta / se
        p_vals = 2.0 * stats.norm.sf(np.abs(z_vals))

    with timer.section('variance_components'):
        # σ² = 1 by convention for fixed-dispersion families
        var_comps = extract_var_components(model, 1.0)
        random_effs, levels = _extract_blups(model)

    with timer.section('model_fit'):
        deviance = float(model.deviance)
        ll = model.log_likelihood()
        k = model.n_params
        aic = -2.0 * ll + 2.0 * k
        bic = -2.0 * ll + np.log(design.n) * k
        mu = model.fitted()

    warn_list = list(extra_warnings) + list(model.fit_warnings)
    warn_list += _status_warnings(model, singular_tolerance)
    timer.stop()

    method = 'Laplace' if model.n_agq == 1 else f'AGQ({model.n_agq})'
    params = GLMMParams(
        coefficients=beta,
        coefficient_names=design.coefficient_names,
        se=se,
        z_values=z_vals,
        p_values=p_vals,
        vcov=vcov,
        var_components=tuple(var_comps),
        deviance=deviance,
        log_likelihood=ll,
        aic=float(aic),
        bic=float(bic),
        n_obs=design.n,
        n_groups=design.n_groups,
        family_name=model.family.name,
        link_name=model.family.link.name,
        quadrature_points=model.n_agq,
        converged=model.optsum is None or model.optsum.converged,
        n_evaluations=0 if model.optsum is None else model.optsum.n_evaluations,
        is_singular=model.is_singular(singular_tolerance),
        random_effects=random_effs,
        random_effect_levels=levels,
        fitted_values=mu,
        linear_predictor=model.linear_predictor(),
        residuals=design.y - mu,
        theta=model.theta.copy(),
        theta_names=tuple(model.theta_names),
    )

    info = _info(model, method)
    info.update({'family': model.family.name, 'link': model.family.link.name})
    if model.optsum_stage1 is not None:
        info['n_evaluations_stage1'] = model.optsum_stage1.n_evaluations

    result = Result(
        params=params,
        info=info,
        timing=timer.result(),
        backend_name='cpu_glmm',
        warnings=tuple(warn_list),
    )
    return GLMMSolution(_result=result, model=model)


# =====================================================================
# Helpers
# =====================================================================

def extract_var_components(model, sigma_sq: float) -> list[VarCompSummary]:
    """Extract variance component summaries from θ and σ².

    The covariance of one level's random effects is σ² T T'.
    """
    var_comps = []
    for term, T in zip(model.reterms, model.factors()):
        variances, std_devs, corr = covariance_summary(T, sigma_sq)
        labels = term.term_labels()
        for i in range(term.n_terms):
            # Correlation with first term (only for 2nd+ terms)
            c = float(np.clip(corr[i, 0], -1.0, 1.0)) if i > 0 else None
            var_comps.append(VarCompSummary(
                group=term.name,
                name=labels[i],
                variance=float(variances[i]),
                std_dev=float(std_devs[i]),
                corr=c,
            ))
    return var_comps


def _extract_blups(model) -> tuple[dict, dict]:
    """Conditional modes and level labels per grouping factor."""
    modes = model.ranef()
    random_effs = {t.name: b for t, b in zip(model.reterms, modes)}
    levels = {t.name: t.levels for t in model.reterms}
    return random_effs, levels

"""
Common data types for mixed models (LMM / GLMM).

Contains the frozen parameter payloads that go inside Result[P] envelopes.
Each payload is a pure data container without methods.

Random-effects quantities (θ, variance components, conditional modes)
are listed in elimination order: the term with the most columns first.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), 1-48.
"""

from dataclasses import dataclass

from numpy.typing import NDArray


@dataclass(frozen=True)
class VarCompSummary:
    """Variance component summary for one random effect term.

    Attributes:
        group: Grouping factor name (e.g. 'subject').
        name: Term name within the group (e.g. '(Intercept)', 'time').
        variance: Estimated variance σ²_b for this component.
        std_dev: Standard deviation (sqrt of variance).
        corr: Correlation with the group's first term, or None for the
              first (or only) term.
    """
    group: str
    name: str
    variance: float
    std_dev: float
    corr: float | None = None


@dataclass(frozen=True)
class LMMParams:
    """
    Parameter payload for a fitted linear mixed model.
    """
    # Fixed effects
    coefficients: NDArray              # β̂ (p,)
    coefficient_names: tuple[str, ...]
    se: NDArray                        # standard errors of β̂ (p,)
    t_values: NDArray                  # β̂ / se (p,)
    vcov: NDArray                      # covariance of β̂ (p, p)

    # Random effects
    var_components: tuple[VarCompSummary, ...]
    residual_variance: float           # σ²
    residual_std: float                # σ

    # Model fit
    deviance: float                    # objective at θ̂ (ML or REML criterion)
    log_likelihood: float
    reml: bool
    aic: float
    bic: float
    n_obs: int
    n_groups: dict[str, int]           # grouping_factor → number of levels

    # Convergence
    converged: bool
    n_evaluations: int
    is_singular: bool                  # some variance component on the boundary

    # Random effects conditional modes (BLUPs)
    random_effects: dict[str, NDArray]        # group_name → (n_levels, n_terms)
    random_effect_levels: dict[str, NDArray]  # group_name → level labels

    # Predictions
    fitted_values: NDArray             # Xβ̂ + Zb̂ (n,)
    residuals: NDArray                 # y - fitted (n,)

    # Covariance parameters
    theta: NDArray
    theta_names: tuple[str, ...]


@dataclass(frozen=True)
class GLMMParams:
    """
    Parameter payload for a fitted generalized linear mixed model.

    Same structure as LMMParams with additional family/link info
    and Wald z-statistics instead of t-statistics.
    """
    # Fixed effects
    coefficients: NDArray
    coefficient_names: tuple[str, ...]
    se: NDArray
    z_values: NDArray                  # β̂ / se
    p_values: NDArray                  # two-sided, standard normal
    vcov: NDArray

    # Random effects
    var_components: tuple[VarCompSummary, ...]

    # Model fit
    deviance: float                    # Laplace or AGQ deviance
    log_likelihood: float
    aic: float
    bic: float
    n_obs: int
    n_groups: dict[str, int]

    # Family
    family_name: str
    link_name: str
    quadrature_points: int

    # Convergence
    converged: bool
    n_evaluations: int
    is_singular: bool

    # Random effects conditional modes
    random_effects: dict[str, NDArray]
    random_effect_levels: dict[str, NDArray]

    # Predictions (on link scale and response scale)
    fitted_values: NDArray             # μ̂ = g⁻¹(Xβ̂ + Zb̂) (n,)
    linear_predictor: NDArray          # η̂ = Xβ̂ + Zb̂ (n,)
    residuals: NDArray                 # y - μ̂ (n,)

    # Covariance parameters
    theta: NDArray
    theta_names: tuple[str, ...]

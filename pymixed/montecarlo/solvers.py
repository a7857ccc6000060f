"""
Public API for the parametric bootstrap.

parametric_bootstrap() simulates n_samples responses from a fitted mixed
model, refits each one and collects the estimates.
"""

from __future__ import annotations

from pymixed.mixed.options import FitOptions
from pymixed.montecarlo.backends.cpu import CPUBootstrapBackend
from pymixed.montecarlo.design import ParametricBootstrapDesign
from pymixed.montecarlo.solution import MixedBootstrapSolution


def parametric_bootstrap(
    solution,
    n_samples: int,
    seed: int | None = None,
    *,
    n_jobs: int = 1,
    memory_budget: int | None = None,
    options: FitOptions | None = None,
) -> MixedBootstrapSolution:
    """
    Parametric bootstrap of a fitted linear or generalized linear mixed model.

    For each sample i, a response is simulated from the fitted model
    (β̂, σ̂, θ̂) with a generator seeded by the i-th child of
    SeedSequence(seed), and the model is refitted starting from θ̂. The
    result for a given seed is the same for any number of workers.

    Args:
        solution: LMMSolution / GLMMSolution, or a fitted model.
        n_samples: Number of bootstrap samples.
        seed: Root random seed.
        n_jobs: Worker threads (-1 = all CPUs).
        memory_budget: Optional bytes available for concurrent refits; the
            worker count is capped at memory_budget // bytes per refit.
        options: Refit FitOptions. Default: the original fit's settings.

    Returns:
        MixedBootstrapSolution. Samples whose refit failed are listed in
        .failures and excluded from all summaries.

    Raises:
        ValidationError: Unfitted model or invalid arguments.

    Examples:
        >>> fit = lmm(y, X, groups={'subject': subject})
        >>> boot = parametric_bootstrap(fit, 1000, seed=42, n_jobs=4)
        >>> boot.ci(0.95)['sd(subject:(Intercept))']
    """
    model = getattr(solution, 'model', solution)
    design = ParametricBootstrapDesign.from_model(
        model, n_samples, seed,
        n_jobs=n_jobs, memory_budget=memory_budget, options=options,
    )
    result = CPUBootstrapBackend().solve(design)
    return MixedBootstrapSolution(_result=result, _design=design)

"""
Design for the parametric bootstrap.

ParametricBootstrapDesign encapsulates everything the backend needs: the
fitted model, the parameters to simulate from, the refit options and the
parallelism limits. Immutable, validated at construction.
"""

from __future__ import annotations

from dataclasses import dataclass
import os

import numpy as np
from numpy.typing import NDArray

from pymixed.core.exceptions import ValidationError
from pymixed.mixed._model import LinearMixedModel, GeneralizedLinearMixedModel
from pymixed.mixed.options import FitOptions


@dataclass(frozen=True)
class ParametricBootstrapDesign:
    """
    Frozen design for a parametric bootstrap.

    Attributes:
        model: Fitted LinearMixedModel or GeneralizedLinearMixedModel.
        n_samples: Number of simulated responses to refit.
        seed: Root seed; sample i uses the i-th child of SeedSequence(seed).
        n_jobs: Requested worker threads (-1 = all CPUs).
        memory_budget: Optional bytes available for concurrent refits.
        options: FitOptions for every refit (θ start set to the estimate).
        beta: Fixed effects to simulate from.
        sigma: Residual standard deviation to simulate from (1 for GLMMs).
        theta: Covariance parameters to simulate from.
    """
    model: LinearMixedModel | GeneralizedLinearMixedModel
    n_samples: int
    seed: int | None
    n_jobs: int
    memory_budget: int | None
    options: FitOptions
    beta: NDArray
    sigma: float
    theta: NDArray

    @property
    def is_linear(self) -> bool:
        return isinstance(self.model, LinearMixedModel)

    @property
    def bytes_per_fit(self) -> int:
        """Storage one concurrent refit allocates."""
        system = self.model.system
        # GLMM refits rebuild the whole system; LMM refits share A's Z blocks
        return system.per_fit_nbytes() if self.is_linear else system.nbytes

    @property
    def n_workers(self) -> int:
        """Worker threads: n_jobs, capped by the memory budget and n_samples."""
        workers = (os.cpu_count() or 1) if self.n_jobs == -1 else self.n_jobs
        if self.memory_budget is not None:
            workers = min(workers, max(1, self.memory_budget // max(1, self.bytes_per_fit)))
        return max(1, min(workers, self.n_samples))

    @classmethod
    def from_model(
        cls,
        model,
        n_samples: int,
        seed: int | None = None,
        *,
        n_jobs: int = 1,
        memory_budget: int | None = None,
        options: FitOptions | None = None,
    ) -> ParametricBootstrapDesign:
        """
        Create a bootstrap design with validation.

        Args:
            model: Fitted mixed model (the simulation parameters are its
                current estimates).
            n_samples: Number of bootstrap samples. Must be >= 1.
            seed: Root seed for reproducibility.
            n_jobs: Worker threads, >= 1 or -1 for all CPUs.
            memory_budget: Optional bytes available for concurrent refits.
            options: Refit options. Default: the options of the original
                fit as recorded in its optimizer summary.

        Returns:
            Validated ParametricBootstrapDesign.

        Raises:
            ValidationError: If inputs are invalid.
        """
        if not isinstance(model, (LinearMixedModel, GeneralizedLinearMixedModel)):
            raise ValidationError(
                f"parametric bootstrap needs a fitted mixed model, got {type(model).__name__}"
            )
        if model.optsum is None:
            raise ValidationError("model has not been fitted")
        if int(n_samples) != n_samples or n_samples < 1:
            raise ValidationError(f"n_samples must be a positive integer, got {n_samples}")
        if n_jobs == 0 or n_jobs < -1 or int(n_jobs) != n_jobs:
            raise ValidationError(f"n_jobs must be >= 1 or -1, got {n_jobs}")
        if memory_budget is not None and memory_budget <= 0:
            raise ValidationError(f"memory_budget must be positive, got {memory_budget}")

        if options is None:
            options = refit_options(model)
        options = options.with_changes(theta_start=tuple(model.theta))

        linear = isinstance(model, LinearMixedModel)
        return cls(
            model=model,
            n_samples=int(n_samples),
            seed=seed,
            n_jobs=int(n_jobs),
            memory_budget=memory_budget,
            options=options,
            beta=np.asarray(model.fixef(), dtype=np.float64).copy(),
            sigma=float(model.sigma()) if linear else 1.0,
            theta=model.theta.copy(),
        )


def refit_options(model) -> FitOptions:
    """FitOptions reproducing the settings of a model's original fit."""
    optsum = model.optsum
    if isinstance(model, LinearMixedModel):
        return FitOptions(
            max_evaluations=optsum.max_evaluations,
            deviance_tolerance=optsum.deviance_tolerance,
            parameter_tolerance=optsum.parameter_tolerance,
            thinning=optsum.thinning,
            reml=model.reml,
            optimizer=optsum.optimizer,
        )
    return FitOptions(
        max_evaluations=optsum.max_evaluations,
        deviance_tolerance=optsum.deviance_tolerance,
        parameter_tolerance=optsum.parameter_tolerance,
        thinning=optsum.thinning,
        quadrature_points=model.n_agq,
        fast=optsum.x_final.shape[0] == model.n_theta,
        pirls_tolerance=model.pirls_tolerance,
        pirls_max_iter=model.pirls_max_iter,
        pirls_max_halving=model.pirls_max_halving,
        optimizer=optsum.optimizer,
    )

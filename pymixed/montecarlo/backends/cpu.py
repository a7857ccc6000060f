"""
CPU backend for the parametric bootstrap.

CPUBootstrapBackend simulates a response per sample, refits a copy of
the model that shares the original's θ-independent storage, and records
the estimates. Samples are independent: sample i draws from its own
child of SeedSequence(seed), so results do not depend on the number of
worker threads.

Refits spend most of their time in numpy and scipy linear algebra,
which releases the GIL, so joblib threads are used rather than processes.
"""

from __future__ import annotations

import logging
import warnings

import numpy as np
from joblib import Parallel, delayed

from pymixed.core.exceptions import (
    PyMixedError, BootstrapSampleFailure, MaxEvaluationsExceeded,
)
from pymixed.core.result import Result
from pymixed.core.compute.timing import Timer
from pymixed.mixed._covariance import covariance_summary
from pymixed.mixed._model import LinearMixedModel
from pymixed.montecarlo._common import (
    BootstrapParams, BootstrapRecord, FIXED, STDDEV, CORRELATION, THETA,
)
from pymixed.montecarlo.design import ParametricBootstrapDesign

logger = logging.getLogger(__name__)


def extract_estimates(model, beta=None, sigma=None, theta=None) -> list[tuple[str, float, str]]:
    """(name, value, kind) for every reported parameter of a fitted model.

    Order: fixed effects, per-term standard deviations and correlations
    (then the residual standard deviation for linear models), then θ.
    """
    linear = isinstance(model, LinearMixedModel)
    beta = model.fixef() if beta is None else beta
    if sigma is None:
        sigma = model.sigma() if linear else 1.0
    theta = model.theta if theta is None else theta

    rows = [(name, float(b), FIXED)
            for name, b in zip(model.design.coefficient_names, beta)]

    offset = 0
    for term in model.reterms:
        k = term.theta_size
        T = np.zeros((term.n_terms, term.n_terms))
        T[np.tril_indices(term.n_terms)] = theta[offset:offset + k]
        offset += k
        _, std_devs, corr = covariance_summary(T, sigma * sigma)
        labels = term.term_labels()
        for i in range(term.n_terms):
            rows.append((f"sd({term.name}:{labels[i]})", float(std_devs[i]), STDDEV))
        for i in range(term.n_terms):
            for j in range(i):
                c = float(np.clip(corr[i, j], -1.0, 1.0))
                rows.append((f"cor({term.name}:{labels[j]},{labels[i]})", c, CORRELATION))
    if linear:
        rows.append(("sd(residual)", float(sigma), STDDEV))

    for name, value in zip(model.theta_names, theta):
        rows.append((f"theta({name})", float(value), THETA))
    return rows


def _refit_one(design: ParametricBootstrapDesign, sample: int, seed_seq):
    """Simulate, refit and extract one sample; failures are returned, not raised."""
    rng = np.random.default_rng(seed_seq)
    model = design.model
    try:
        if design.is_linear:
            y = model.simulate(rng, beta=design.beta, sigma=design.sigma, theta=design.theta)
        else:
            y = model.simulate(rng, beta=design.beta, theta=design.theta)
        refit = model.with_response(y)
        refit.fit(design.options)
    except PyMixedError as e:
        logger.debug("bootstrap sample %d failed: %s", sample, e)
        failure = BootstrapSampleFailure(
            f"bootstrap sample {sample} failed: {e}",
            sample=sample,
            reason=f"{type(e).__name__}: {e}",
        )
        return [], failure, False

    records = [
        BootstrapRecord(sample=sample, name=name, value=value, kind=kind)
        for name, value, kind in extract_estimates(refit)
    ]
    return records, None, refit.optsum.converged


class CPUBootstrapBackend:
    """
    CPU backend for the parametric bootstrap of mixed models.
    """

    @property
    def name(self) -> str:
        return 'cpu_parametric_bootstrap'

    def solve(self, design: ParametricBootstrapDesign) -> Result[BootstrapParams]:
        """Run the bootstrap and return Result[BootstrapParams]."""
        timer = Timer()
        timer.start()

        with timer.section('estimates'):
            observed = extract_estimates(
                design.model, beta=design.beta,
                sigma=design.sigma if design.is_linear else None,
                theta=design.theta,
            )
            children = np.random.SeedSequence(design.seed).spawn(design.n_samples)
            n_workers = design.n_workers

        logger.debug(
            "parametric bootstrap: %d samples on %d worker(s), %d bytes per refit",
            design.n_samples, n_workers, design.bytes_per_fit,
        )

        with timer.section('bootstrap_replicates'):
            # Per-refit budget warnings are aggregated below
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', MaxEvaluationsExceeded)
                if n_workers == 1:
                    outcomes = [_refit_one(design, i, children[i])
                                for i in range(design.n_samples)]
                else:
                    outcomes = Parallel(n_jobs=n_workers, prefer="threads")(
                        delayed(_refit_one)(design, i, children[i])
                        for i in range(design.n_samples)
                    )

        records: list[BootstrapRecord] = []
        failures: list[BootstrapSampleFailure] = []
        n_not_converged = 0
        for sample_records, failure, converged in outcomes:
            if failure is not None:
                failures.append(failure)
                continue
            records.extend(sample_records)
            n_not_converged += not converged

        warnings_list: list[str] = []
        if failures:
            msg = (f"{len(failures)} of {design.n_samples} bootstrap refits failed "
                   f"and were excluded")
            warnings.warn(msg, RuntimeWarning, stacklevel=3)
            warnings_list.append(msg)
        if n_not_converged:
            msg = (f"{n_not_converged} bootstrap refits exhausted the evaluation "
                   f"budget before converging")
            warnings.warn(msg, RuntimeWarning, stacklevel=3)
            warnings_list.append(msg)

        timer.stop()

        params = BootstrapParams(
            estimates={name: value for name, value, _ in observed},
            kinds={name: kind for name, _, kind in observed},
            records=tuple(records),
            failures=tuple(failures),
            n_samples=design.n_samples,
        )

        return Result(
            params=params,
            info={
                'model': 'lmm' if design.is_linear else 'glmm',
                'n_samples': design.n_samples,
                'n_failed': len(failures),
                'n_not_converged': n_not_converged,
                'n_workers': n_workers,
                'bytes_per_fit': design.bytes_per_fit,
                'seed': design.seed,
            },
            timing=timer.result(),
            backend_name=self.name,
            warnings=tuple(warnings_list),
        )

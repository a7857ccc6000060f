"""
Solution wrapper for parametric bootstrap results.

MixedBootstrapSolution wraps Result[BootstrapParams] and provides
per-parameter replicate arrays, summaries and confidence intervals.
Failed samples never enter any summary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from pymixed.core.exceptions import BootstrapSampleFailure, ValidationError
from pymixed.core.result import Result
from pymixed.montecarlo._ci import compute_ci
from pymixed.montecarlo._common import BootstrapParams, BootstrapRecord

if TYPE_CHECKING:
    import pandas as pd
    from pymixed.montecarlo.design import ParametricBootstrapDesign


@dataclass
class MixedBootstrapSolution:
    """
    User-facing parametric bootstrap results.

    Parameters are addressed by name: fixed effects by coefficient name,
    'sd(group:term)', 'cor(group:term1,term2)', 'sd(residual)' (linear
    models) and 'theta(...)'.
    """
    _result: Result[BootstrapParams]
    _design: 'ParametricBootstrapDesign'

    # --- Core fields ---

    @property
    def records(self) -> tuple[BootstrapRecord, ...]:
        """One row per (successful sample, parameter), ordered by sample."""
        return self._result.params.records

    @property
    def failures(self) -> tuple[BootstrapSampleFailure, ...]:
        """Samples whose refit failed, with the reason."""
        return self._result.params.failures

    @property
    def estimates(self) -> dict[str, float]:
        """Values from the original fit."""
        return self._result.params.estimates

    @property
    def names(self) -> list[str]:
        return list(self._result.params.estimates)

    @property
    def kinds(self) -> dict[str, str]:
        return self._result.params.kinds

    @property
    def n_samples(self) -> int:
        return self._result.params.n_samples

    @property
    def n_failed(self) -> int:
        return len(self._result.params.failures)

    @property
    def n_succeeded(self) -> int:
        return self.n_samples - self.n_failed

    @property
    def seed(self) -> int | None:
        return self._design.seed

    @property
    def model(self):
        """The fitted model that was bootstrapped."""
        return self._design.model

    # --- Metadata ---

    @property
    def info(self) -> dict[str, Any]:
        return self._result.info

    @property
    def timing(self) -> dict[str, float] | None:
        return self._result.timing

    @property
    def backend_name(self) -> str:
        return self._result.backend_name

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    # --- Replicates and summaries ---

    def values(self, name: str) -> NDArray:
        """Bootstrap replicates of one parameter, ordered by sample index.

        Raises:
            ValidationError: Unknown parameter name.
        """
        if name not in self.estimates:
            raise ValidationError(
                f"Unknown bootstrap parameter {name!r}. Available: {self.names}"
            )
        return np.array([r.value for r in self.records if r.name == name],
                        dtype=np.float64)

    def mean(self) -> dict[str, float]:
        """Mean over successful samples, per parameter."""
        return {name: _mean(self.values(name)) for name in self.names}

    def bias(self) -> dict[str, float]:
        """mean(replicates) - estimate, per parameter."""
        means = self.mean()
        return {name: means[name] - self.estimates[name] for name in self.names}

    def se(self) -> dict[str, float]:
        """Bootstrap standard error sd(replicates), per parameter."""
        out = {}
        for name in self.names:
            t = self.values(name)
            out[name] = float(np.std(t, ddof=1)) if t.shape[0] > 1 else np.nan
        return out

    def ci(self, level: float = 0.95, method: str = 'percentile',
           names: list[str] | None = None) -> dict[str, tuple[float, float]]:
        """Confidence intervals per parameter.

        Args:
            level: Confidence level.
            method: 'percentile', 'normal' or 'basic'.
            names: Parameters to include (default all).

        Returns:
            Dict mapping parameter name to (lower, upper).
        """
        names = self.names if names is None else names
        return {
            name: compute_ci(self.estimates[name], self.values(name), level, method)
            for name in names
        }

    def to_dataframe(self) -> 'pd.DataFrame':
        """Records as a long-format DataFrame (sample, name, value, kind).

        Requires pandas.
        """
        import pandas as pd
        return pd.DataFrame(
            {
                'sample': [r.sample for r in self.records],
                'name': [r.name for r in self.records],
                'value': [r.value for r in self.records],
                'kind': [r.kind for r in self.records],
            },
            columns=['sample', 'name', 'value', 'kind'],
        )

    def __repr__(self) -> str:
        return (
            f"MixedBootstrapSolution(n_samples={self.n_samples}, "
            f"n_failed={self.n_failed}, backend={self.backend_name!r})"
        )


def _mean(t: NDArray) -> float:
    return float(np.mean(t)) if t.shape[0] else np.nan

"""
Design validation for mixed models.

MixedDesign validates and organizes the inputs for LMM/GLMM: the
response y, fixed effects matrix X, random-effects terms and optional
prior weights. All structural checks happen here, before any numerical
work starts.
"""

from __future__ import annotations

from dataclasses import dataclass
import numpy as np
from numpy.typing import NDArray

from pymixed.core.exceptions import ValidationError, DimensionMismatch
from pymixed.core.validation import (
    check_array, check_finite, check_1d, check_2d, check_consistent_length,
    check_column_rank, check_positive,
)
from pymixed.mixed._reterms import ReTerm, parse_random_effects


@dataclass(frozen=True)
class MixedDesign:
    """Validated design for a mixed model.

    Attributes:
        y: Response vector (n,).
        X: Fixed effects design matrix (n, p).
        reterms: Random-effects terms, in the order supplied.
        weights: Prior weights (n,), or None for unit weights.
        coefficient_names: Names of the columns of X.
        n: Number of observations.
        p: Number of fixed effect columns.
    """
    y: NDArray
    X: NDArray
    reterms: tuple[ReTerm, ...]
    weights: NDArray | None
    coefficient_names: tuple[str, ...]
    n: int
    p: int

    @property
    def prior_weights(self) -> NDArray:
        """Prior weights, with ones when none were given."""
        return np.ones(self.n) if self.weights is None else self.weights

    @property
    def n_groups(self) -> dict[str, int]:
        return {t.name: t.n_levels for t in self.reterms}

    def with_response(self, y) -> MixedDesign:
        """Same design with a new response vector (validated)."""
        y = check_array(y, 'y').ravel()
        check_finite(y, 'y')
        check_consistent_length(self.X, y, names=('X', 'y'))
        return MixedDesign(
            y=y,
            X=self.X,
            reterms=self.reterms,
            weights=self.weights,
            coefficient_names=self.coefficient_names,
            n=self.n,
            p=self.p,
        )

    @staticmethod
    def validate(
        y,
        X,
        reterms: list[ReTerm],
        weights=None,
        coefficient_names: list[str] | None = None,
    ) -> 'MixedDesign':
        """Validate inputs and create a MixedDesign.

        Args:
            y: Response vector.
            X: Fixed effects design matrix. If 1-D, treated as a single
               column (an intercept must be included by the caller).
            reterms: Random-effects terms (see parse_random_effects and
               reterm_from_matrix).
            weights: Optional positive prior weights.
            coefficient_names: Optional names for the columns of X.

        Returns:
            Validated MixedDesign.

        Raises:
            ValidationError: On invalid inputs.
            DimensionMismatch: On inconsistent row counts.
        """
        y = check_array(y, 'y')
        if y.ndim == 2 and y.shape[1] == 1:
            y = y.ravel()
        check_1d(y, 'y')
        check_finite(y, 'y')
        n = y.shape[0]

        if n < 3:
            raise ValidationError(f"Need at least 3 observations, got {n}")

        X = check_array(X, 'X')
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        check_2d(X, 'X')
        check_finite(X, 'X')
        p = X.shape[1]

        reterms = tuple(reterms)
        if not reterms:
            raise ValidationError("At least one random-effects term required")

        arrays = [y, X] + [t.Z for t in reterms]
        names = ('y', 'X') + tuple(f"Z[{t.name}]" for t in reterms)
        check_consistent_length(*arrays, names=names)

        seen = set()
        for term in reterms:
            if term.name in seen:
                raise ValidationError(f"Duplicate random-effects term name '{term.name}'")
            seen.add(term.name)
            if term.n_levels < 2:
                raise ValidationError(
                    f"Group '{term.name}' has only {term.n_levels} level(s), "
                    f"need at least 2"
                )

        if p >= n:
            raise ValidationError(
                f"X has {p} columns but only {n} observations"
            )
        if p > 0:
            check_column_rank(X, 'X')

        if weights is not None:
            weights = check_array(weights, 'weights').ravel()
            check_finite(weights, 'weights')
            check_consistent_length(y, weights, names=('y', 'weights'))
            check_positive(weights, 'weights')

        if coefficient_names is None:
            coefficient_names = make_coef_names(p)
        coefficient_names = tuple(str(c) for c in coefficient_names)
        if len(coefficient_names) != p:
            raise DimensionMismatch(
                f"coefficient_names has {len(coefficient_names)} entries, "
                f"X has {p} columns"
            )

        return MixedDesign(
            y=y,
            X=X,
            reterms=reterms,
            weights=weights,
            coefficient_names=coefficient_names,
            n=n,
            p=p,
        )

    @staticmethod
    def from_groups(
        y,
        X,
        groups: dict,
        random_effects: dict[str, list[str]] | None = None,
        random_data: dict | None = None,
        weights=None,
        coefficient_names: list[str] | None = None,
    ) -> 'MixedDesign':
        """Validate inputs given grouping labels instead of ReTerm objects.

        Args:
            y: Response vector.
            X: Fixed effects design matrix.
            groups: Dict mapping grouping factor names to group label arrays.
            random_effects: Optional dict mapping group names to term lists.
                Example: {'subject': ['1', 'time']} for (1 + time | subject).
            random_data: Optional dict mapping variable names to data arrays.
            weights: Optional positive prior weights.
            coefficient_names: Optional names for the columns of X.

        Raises:
            ValidationError: On invalid inputs.
        """
        if not groups:
            raise ValidationError("At least one grouping factor required")

        n = np.asarray(y).shape[0]

        if random_effects is not None:
            for name in random_effects:
                if name not in groups:
                    raise ValidationError(
                        f"Random effect group '{name}' not found in groups dict. "
                        f"Available: {list(groups.keys())}"
                    )

        reterms = parse_random_effects(groups, random_effects, random_data, n)
        for term in reterms:
            check_finite(term.z, f"random-effects data for '{term.name}'")

        return MixedDesign.validate(
            y, X, reterms, weights=weights, coefficient_names=coefficient_names,
        )


def make_coef_names(p: int) -> tuple[str, ...]:
    """Default coefficient names: '(Intercept)', 'X1', 'X2', ..."""
    if p == 0:
        return ()
    return ('(Intercept)',) + tuple(f'X{i}' for i in range(1, p))

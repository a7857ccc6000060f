"""
Random-effects terms: one grouping factor with its per-level design.

This module is the boundary to model-matrix construction. It accepts
either grouping labels plus slope variables (parse_random_effects) or an
externally built sparse design matrix per grouping factor
(reterm_from_matrix), and normalises both into ReTerm objects.

Column layout of Z_k is level-major: for level g and term t the column is
g * v + t. With this layout Λ_k = I_ℓ ⊗ T_k is block diagonal and Z_k'Z_k
is block diagonal with v × v blocks, so the diagonal block of a grouping
factor never needs dense storage.
"""

from __future__ import annotations

from dataclasses import dataclass
import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from pymixed.core.exceptions import ValidationError, DimensionMismatch


@dataclass(frozen=True)
class ReTerm:
    """One grouping factor's random effects.

    Attributes:
        name: Name of the grouping factor (e.g. 'subject').
        refs: Integer level code of each observation, shape (n,).
        levels: Level labels, shape (ℓ,). levels[refs[i]] is the label of
            observation i.
        terms: Names of the random effect terms (e.g. ('1',) or ('1', 'time')).
        z: Per-observation term values, shape (v, n). Row t holds the
            value multiplying term t (1.0 for an intercept).
        Z: Sparse design matrix, shape (n, ℓ·v), CSC, level-major columns.
        n_levels: Number of levels (ℓ).
        n_terms: Number of random effect terms per level (v).
        theta_size: Number of θ parameters for this term = v(v+1)/2.
    """
    name: str
    refs: NDArray
    levels: NDArray
    terms: tuple[str, ...]
    z: NDArray
    Z: sparse.csc_matrix
    n_levels: int
    n_terms: int
    theta_size: int

    @property
    def n_columns(self) -> int:
        """Number of columns of Z (ℓ·v)."""
        return self.n_levels * self.n_terms

    @property
    def is_scalar(self) -> bool:
        """True for a single term per level (e.g. a random intercept)."""
        return self.n_terms == 1

    def term_labels(self) -> list[str]:
        """Display names of the terms ('1' is reported as '(Intercept)')."""
        return ['(Intercept)' if t == '1' else t for t in self.terms]

    def weighted_Z(self, sqrt_w: NDArray | None) -> sparse.csc_matrix:
        """Z with rows scaled by sqrt(weights)."""
        if sqrt_w is None:
            return self.Z
        return sparse.csc_matrix(sparse.diags(sqrt_w) @ self.Z)


def _make_reterm(
    name: str,
    refs: NDArray,
    levels: NDArray,
    terms: tuple[str, ...],
    z: NDArray,
) -> ReTerm:
    n_terms = len(terms)
    n_levels = len(levels)
    n = refs.shape[0]

    rows = np.tile(np.arange(n), n_terms)
    cols = np.concatenate([refs * n_terms + t for t in range(n_terms)])
    vals = np.concatenate([z[t] for t in range(n_terms)])
    Z = sparse.csc_matrix(
        (vals, (rows, cols)), shape=(n, n_levels * n_terms), dtype=np.float64
    )
    Z.sort_indices()

    return ReTerm(
        name=name,
        refs=refs,
        levels=levels,
        terms=terms,
        z=z,
        Z=Z,
        n_levels=n_levels,
        n_terms=n_terms,
        theta_size=n_terms * (n_terms + 1) // 2,
    )


def parse_random_effects(
    groups: dict[str, NDArray],
    random_effects: dict[str, list[str]] | None,
    random_data: dict[str, NDArray] | None,
    n: int,
) -> list[ReTerm]:
    """Build ReTerm objects from grouping labels and slope variables.

    Args:
        groups: Mapping of grouping factor name → group labels array (n,).
        random_effects: Mapping of group name → list of term names.
            If None, defaults to random intercept ('1') for each group.
            Example: {'subject': ['1', 'time']} for (1 + time | subject).
        random_data: Mapping of variable name → data array (n,) for
            random slope variables. Required if any term in random_effects
            is not '1' (intercept).
        n: Number of observations.

    Returns:
        List of ReTerm, one per grouping factor, in the order of `groups`.
    """
    if random_effects is None:
        random_effects = {name: ['1'] for name in groups}

    if random_data is None:
        random_data = {}

    reterms = []
    for group_name in groups:
        group_raw = np.asarray(groups[group_name])
        if group_raw.shape[0] != n:
            raise DimensionMismatch(
                f"Group '{group_name}' has {group_raw.shape[0]} elements, "
                f"expected {n}"
            )

        # Map to consecutive 0-indexed integers
        levels, refs = np.unique(group_raw, return_inverse=True)
        refs = refs.astype(np.int64).ravel()

        terms = tuple(random_effects.get(group_name, ['1']))
        if len(terms) == 0:
            raise ValidationError(f"Group '{group_name}' has no random effect terms")

        z = np.empty((len(terms), n), dtype=np.float64)
        for t_idx, term in enumerate(terms):
            if term == '1':
                z[t_idx] = 1.0
                continue
            if term not in random_data:
                raise ValidationError(
                    f"Random slope term '{term}' requires data in "
                    f"random_data dict, but '{term}' was not found. "
                    f"Available: {list(random_data.keys())}"
                )
            var_data = np.asarray(random_data[term], dtype=np.float64)
            if var_data.shape[0] != n:
                raise DimensionMismatch(
                    f"Random data '{term}' has {var_data.shape[0]} elements, "
                    f"expected {n}"
                )
            z[t_idx] = var_data

        reterms.append(_make_reterm(group_name, refs, levels, terms, z))

    return reterms


def reterm_from_matrix(
    name: str,
    Z,
    n_terms: int = 1,
    term_names: tuple[str, ...] | None = None,
    levels: NDArray | None = None,
) -> ReTerm:
    """Wrap an externally built design matrix for one grouping factor.

    Z must be level-major: columns g*v .. g*v + v - 1 belong to level g.
    Every row may load on the columns of a single level only; rows with no
    nonzero entries are allowed (they carry no random effect).

    Args:
        name: Grouping factor name.
        Z: Dense or scipy.sparse matrix, shape (n, ℓ·v).
        n_terms: Number of terms per level (v).
        term_names: Names of the v terms. Default ('1',) for v == 1,
            otherwise ('z0', 'z1', ...).
        levels: Level labels, length ℓ. Default 0..ℓ-1.

    Returns:
        ReTerm.
    """
    if n_terms < 1:
        raise ValidationError(f"n_terms must be >= 1, got {n_terms}")

    Zc = sparse.coo_matrix(Z)
    n, q = Zc.shape
    if q % n_terms != 0:
        raise DimensionMismatch(
            f"Z for '{name}' has {q} columns, not a multiple of n_terms={n_terms}"
        )
    n_levels = q // n_terms

    if term_names is None:
        term_names = ('1',) if n_terms == 1 else tuple(f'z{t}' for t in range(n_terms))
    term_names = tuple(term_names)
    if len(term_names) != n_terms:
        raise ValidationError(
            f"term_names has {len(term_names)} entries, expected {n_terms}"
        )

    if levels is None:
        levels = np.arange(n_levels)
    levels = np.asarray(levels)
    if levels.shape[0] != n_levels:
        raise DimensionMismatch(
            f"levels has {levels.shape[0]} entries, expected {n_levels}"
        )

    row = Zc.row.astype(np.int64)
    col = Zc.col.astype(np.int64)
    level_of = col // n_terms

    lo = np.full(n, n_levels, dtype=np.int64)
    hi = np.full(n, -1, dtype=np.int64)
    np.minimum.at(lo, row, level_of)
    np.maximum.at(hi, row, level_of)

    loaded = hi >= 0
    if np.any(lo[loaded] != hi[loaded]):
        bad = int(np.flatnonzero(loaded & (lo != hi))[0])
        raise ValidationError(
            f"Z for '{name}': row {bad} loads on more than one level "
            f"(levels {int(lo[bad])}..{int(hi[bad])})"
        )

    refs = np.where(loaded, lo, 0)
    z = np.zeros((n_terms, n), dtype=np.float64)
    np.add.at(z, (col % n_terms, row), Zc.data.astype(np.float64))

    return _make_reterm(name, refs, levels, term_names, z)


def elimination_order(reterms: list[ReTerm]) -> list[ReTerm]:
    """Order terms for blocked elimination.

    The term with the most columns goes first: its diagonal block stays
    (block) diagonal, and the dense fill-in created by eliminating it lands
    in the diagonal blocks of the smaller terms that follow. Ties keep the
    caller's order.
    """
    return sorted(reterms, key=lambda t: -t.n_columns)

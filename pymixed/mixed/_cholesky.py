"""
Blocked Cholesky factorization of the scaled penalized system.

update_L() overwrites the L storage of a BlockedSystem with the lower
Cholesky factor of

    [Λ'Z'WZΛ + I   Λ'Z'W[X y] ]
    [[X y]'WZΛ     [X y]'W[X y]]

working one block column at a time (left-looking): downdate the diagonal
block with the already factored columns, downdate the blocks below it,
factor the diagonal block, then right-divide the blocks below by its
transpose. Diagonal and block-diagonal blocks are factored elementwise or
per level; dense blocks with LAPACK.

The last diagonal block holds the Cholesky factor of the Schur complement
of [X y]. Its leading p × p part is R_X' (so log|R_X|² comes for free)
and its last diagonal entry is sqrt(pwrss).

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), Section 3.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla
from scipy import sparse

from pymixed.core.exceptions import NonPositiveDefinite
from pymixed.mixed._blocks import (
    BlockedSystem, DiagonalBlock, BlockDiagonalBlock, SparseBlock, as_operator,
)


def update_L(system: BlockedSystem, theta) -> BlockedSystem:
    """Scale the system at θ and factor it in place.

    Args:
        system: The blocked system (L storage is overwritten).
        theta: Covariance parameters in elimination order.

    Returns:
        The same system, now holding the factor.

    Raises:
        InvalidParameter: Wrong length or non-finite θ.
        NonPositiveDefinite: A diagonal block is not positive definite.
    """
    system.scale(theta)
    L = system.L
    nb = system.n_blocks

    for j in range(nb):
        for i in range(j):
            _downdate_diagonal(L, j, i)
        for k in range(j + 1, nb):
            for i in range(j):
                _downdate_cross(L, k, j, i)
        _factor_diagonal(L, j)
        for k in range(j + 1, nb):
            _right_divide(L, k, j)

    return system


def _downdate_diagonal(L, j: int, i: int) -> None:
    """L[j][j] -= L[j][i] L[j][i]'."""
    Ljj = L[j][j]
    Lji = L[j][i]

    if isinstance(Ljj, DiagonalBlock):
        S = Lji.tocsc()
        Ljj.d -= np.asarray(S.multiply(S).sum(axis=1)).ravel()
    elif isinstance(Ljj, BlockDiagonalBlock):
        S = Lji.tocsc()
        M = sparse.coo_matrix(S @ S.T)
        v = Ljj.block_size
        np.subtract.at(Ljj.data, (M.row // v, M.row % v, M.col % v), M.data)
    elif isinstance(Lji, SparseBlock):
        S = Lji.tocsc()
        Ljj -= (S @ S.T).toarray()
    else:
        Ljj -= Lji @ Lji.T


def _downdate_cross(L, k: int, j: int, i: int) -> None:
    """L[k][j] -= L[k][i] L[j][i]'."""
    Lkj = L[k][j]
    Lki = as_operator(L[k][i])
    Lji = as_operator(L[j][i])

    if isinstance(Lkj, SparseBlock):
        M = sparse.coo_matrix(Lki @ Lji.T)
        Lkj.scatter_add(M.row, M.col, -M.data)
        return

    if sparse.issparse(Lji):
        prod = Lji @ Lki.T
        prod = prod.toarray().T if sparse.issparse(prod) else np.asarray(prod).T
    else:
        prod = Lki @ Lji.T
        if sparse.issparse(prod):
            prod = prod.toarray()
    Lkj -= np.asarray(prod)


def _factor_diagonal(L, j: int) -> None:
    Ljj = L[j][j]

    if isinstance(Ljj, DiagonalBlock):
        d = Ljj.d
        if not np.all(np.isfinite(d)) or np.any(d <= 0.0):
            bad = int(np.flatnonzero(~(np.isfinite(d) & (d > 0.0)))[0])
            raise NonPositiveDefinite(
                f"Diagonal block {j} not positive definite at position {bad} "
                f"(value {d[bad]!r})",
                block=j,
                matrix_name='diagonal',
            )
        np.sqrt(d, out=d)
        return

    if isinstance(Ljj, BlockDiagonalBlock):
        if not np.all(np.isfinite(Ljj.data)):
            raise NonPositiveDefinite(
                f"Block-diagonal block {j} has non-finite entries",
                block=j,
                matrix_name='blockdiag',
            )
        try:
            Ljj.data[:] = np.linalg.cholesky(Ljj.data)
        except np.linalg.LinAlgError as e:
            raise NonPositiveDefinite(
                f"Block-diagonal block {j} not positive definite: {e}",
                block=j,
                matrix_name='blockdiag',
            ) from e
        return

    try:
        Ljj[:] = sla.cholesky(Ljj, lower=True, check_finite=True)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise NonPositiveDefinite(
            f"Dense block {j} not positive definite: {e}",
            block=j,
            matrix_name='dense',
        ) from e


def _right_divide(L, k: int, j: int) -> None:
    """L[k][j] ← L[k][j] L[j][j]^{-T}."""
    Ljj = L[j][j]
    Lkj = L[k][j]

    if isinstance(Ljj, DiagonalBlock):
        if isinstance(Lkj, SparseBlock):
            Lkj.data /= Ljj.d[Lkj.cols]
        else:
            Lkj /= Ljj.d[np.newaxis, :]
        return

    if isinstance(Ljj, BlockDiagonalBlock):
        n_levels, v = Ljj.n_levels, Ljj.block_size
        inv = np.linalg.inv(Ljj.data)
        if isinstance(Lkj, SparseBlock):
            inv_t = sparse.bsr_matrix(
                (np.ascontiguousarray(inv.transpose(0, 2, 1)),
                 np.arange(n_levels), np.arange(n_levels + 1)),
                shape=(n_levels * v, n_levels * v),
            )
            Lkj.assign(Lkj.tocsc() @ inv_t)
        else:
            r = Lkj.shape[0]
            B3 = Lkj.reshape(r, n_levels, v)
            Lkj[:] = np.einsum('rgt,gst->rgs', B3, inv).reshape(r, n_levels * v)
        return

    Lkj[:] = sla.solve_triangular(Ljj, Lkj.T, lower=True).T


# ----------------------------------------------------------------------
# Quantities read off the factor
# ----------------------------------------------------------------------

def logdet_re(system: BlockedSystem) -> float:
    """log|L_θ|² over the random-effects diagonal blocks."""
    total = 0.0
    for j in range(len(system.reterms)):
        Ljj = system.L[j][j]
        diag = np.diag(Ljj) if isinstance(Ljj, np.ndarray) else Ljj.diagonal()
        total += float(np.sum(np.log(diag)))
    return 2.0 * total


def logdet_x(system: BlockedSystem) -> float:
    """log|R_X|² from the fixed-effects part of the last diagonal block."""
    p = system.n_fixed
    diag = np.diag(system.L[-1][-1])[:p]
    return 2.0 * float(np.sum(np.log(diag)))


def pwrss(system: BlockedSystem) -> float:
    """Penalized weighted residual sum of squares at the current factor."""
    p = system.n_fixed
    return float(system.L[-1][-1][p, p] ** 2)


def fixef(system: BlockedSystem) -> NDArray:
    """Conditional estimate of β: solves R_X β = c_β."""
    p = system.n_fixed
    if p == 0:
        return np.zeros(0)
    LKK = system.L[-1][-1]
    return sla.solve_triangular(LKK[:p, :p], LKK[p, :p], lower=True, trans='T')


def ranef_spherical(system: BlockedSystem, beta: NDArray) -> list[NDArray]:
    """Spherical random effects u for given β by block back-substitution.

    Solves L_uu' u = c_y - c_X' β, where c_X and c_y are the [X y] rows of
    the factor, one block at a time from the last term to the first.

    Returns:
        List of u_j vectors (length ℓ_j v_j) in elimination order.
    """
    K = len(system.reterms)
    p = system.n_fixed
    L = system.L
    u: list[NDArray | None] = [None] * K

    for j in reversed(range(K)):
        LKj = L[K][j]
        c = LKj[p, :] - beta @ LKj[:p, :]
        for k in range(j + 1, K):
            c = c - as_operator(L[k][j]).T @ u[k]
        u[j] = _solve_upper(L[j][j], np.asarray(c).ravel())

    return u


def _solve_upper(Ljj, c: NDArray) -> NDArray:
    """Solve L[j][j]' x = c."""
    if isinstance(Ljj, DiagonalBlock):
        return c / Ljj.d
    if isinstance(Ljj, BlockDiagonalBlock):
        n_levels, v = Ljj.n_levels, Ljj.block_size
        upper = Ljj.data.transpose(0, 2, 1)
        x = np.linalg.solve(upper, c.reshape(n_levels, v, 1))
        return x.reshape(n_levels * v)
    return sla.solve_triangular(Ljj, c, lower=True, trans='T')


def conditional_modes(system: BlockedSystem, u: list[NDArray]) -> list[NDArray]:
    """b_j = Λ_j u_j, reshaped to (ℓ_j, v_j) arrays."""
    modes = []
    for term, T, u_j in zip(system.reterms, system.factors, u):
        modes.append(u_j.reshape(term.n_levels, term.n_terms) @ T.T)
    return modes


def unscaled_vcov(system: BlockedSystem) -> NDArray:
    """(R_X' R_X)^{-1}; multiply by σ² for the covariance of β̂."""
    p = system.n_fixed
    if p == 0:
        return np.zeros((0, 0))
    RXt = system.L[-1][-1][:p, :p]
    inv = sla.solve_triangular(RXt, np.eye(p), lower=True)
    return inv.T @ inv


def random_effects_linear_predictor(system: BlockedSystem, u: list[NDArray]) -> NDArray:
    """Z Λ u as an (n,) vector."""
    out = np.zeros(system.n_obs)
    for term, b in zip(system.reterms, conditional_modes(system, u)):
        out += term.Z @ b.ravel()
    return out

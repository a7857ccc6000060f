"""
Blocked storage of the penalized system for mixed models.

The system matrix is partitioned into K + 1 block rows/columns: one per
random-effects term (in elimination order) followed by the [X y] block.
Two lower-triangular block matrices are kept:

    A — raw weighted crossproducts, A[i][j] = M_i' W M_j with
        M_0..M_{K-1} = Z_1..Z_K and M_K = [X y].
    L — storage for the blocked Cholesky factor of the scaled system
        Λ'AΛ + I (I only on random-effects diagonal blocks).

Each block has one of four storage kinds, fixed at construction:

    DiagonalBlock       scalar random-effects diagonal (ℓ entries)
    BlockDiagonalBlock  vector random-effects diagonal (ℓ dense v × v blocks)
    SparseBlock         CSC with a fixed pattern, updated by scatter-add
    numpy.ndarray       dense

The symbolic layout of L (which blocks stay diagonal or sparse and which
fill in to dense) is computed once from the sparsity patterns, so every
evaluation of the objective reuses the same storage.
"""

from __future__ import annotations

import logging
import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from pymixed.core.exceptions import DimensionMismatch
from pymixed.core.validation import check_consistent_length
from pymixed.mixed._reterms import ReTerm, elimination_order
from pymixed.mixed._covariance import lambda_factors, lambda_matrix

logger = logging.getLogger(__name__)

# Cross blocks denser than this are stored dense
DENSITY_THRESHOLD = 0.1


class DiagonalBlock:
    """Diagonal block of a scalar random-effects term."""

    kind = 'diagonal'

    def __init__(self, d: NDArray):
        self.d = d

    @property
    def shape(self) -> tuple[int, int]:
        return (self.d.shape[0], self.d.shape[0])

    @property
    def nbytes(self) -> int:
        return self.d.nbytes

    def diagonal(self) -> NDArray:
        return self.d

    def toarray(self) -> NDArray:
        return np.diag(self.d)

    def copy(self) -> DiagonalBlock:
        return DiagonalBlock(self.d.copy())


class BlockDiagonalBlock:
    """Diagonal block of a vector random-effects term: ℓ dense v × v blocks."""

    kind = 'blockdiag'

    def __init__(self, data: NDArray):
        self.data = data

    @property
    def n_levels(self) -> int:
        return self.data.shape[0]

    @property
    def block_size(self) -> int:
        return self.data.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        q = self.n_levels * self.block_size
        return (q, q)

    @property
    def nbytes(self) -> int:
        return self.data.nbytes

    def diagonal(self) -> NDArray:
        return np.diagonal(self.data, axis1=1, axis2=2).ravel()

    def toarray(self) -> NDArray:
        out = np.zeros(self.shape, dtype=np.float64)
        _scatter_blockdiag(out, self.data)
        return out

    def copy(self) -> BlockDiagonalBlock:
        return BlockDiagonalBlock(self.data.copy())


class SparseBlock:
    """CSC block with a fixed sparsity pattern.

    Values are updated in place; the pattern never changes after
    construction. Entries are addressed by the linear key col * nrows + row,
    which is sorted ascending in CSC order.
    """

    kind = 'sparse'

    def __init__(self, rows: NDArray, cols: NDArray, shape: tuple[int, int]):
        nrows, ncols = shape
        keys = np.unique(cols.astype(np.int64) * nrows + rows.astype(np.int64))
        self.shape = (int(nrows), int(ncols))
        self.keys = keys
        self.rows = (keys % nrows).astype(np.int64)
        self.cols = (keys // nrows).astype(np.int64)
        self.indptr = np.searchsorted(self.cols, np.arange(ncols + 1)).astype(np.int64)
        self.data = np.zeros(keys.shape[0], dtype=np.float64)

    @classmethod
    def from_pattern(cls, pattern: sparse.spmatrix) -> SparseBlock:
        coo = sparse.coo_matrix(pattern)
        return cls(coo.row, coo.col, coo.shape)

    @property
    def nnz(self) -> int:
        return self.data.shape[0]

    @property
    def density(self) -> float:
        size = self.shape[0] * self.shape[1]
        return self.nnz / size if size else 0.0

    @property
    def nbytes(self) -> int:
        return (self.data.nbytes + self.keys.nbytes + self.rows.nbytes
                + self.cols.nbytes + self.indptr.nbytes)

    def tocsc(self) -> sparse.csc_matrix:
        """CSC view sharing this block's value array."""
        return sparse.csc_matrix(
            (self.data, self.rows, self.indptr), shape=self.shape, copy=False
        )

    def pattern(self) -> sparse.csc_matrix:
        """CSC matrix of ones on the stored pattern."""
        return sparse.csc_matrix(
            (np.ones(self.nnz), self.rows, self.indptr), shape=self.shape
        )

    def positions(self, rows: NDArray, cols: NDArray) -> NDArray:
        """Storage positions of (row, col) entries, which must be in the pattern."""
        k = cols.astype(np.int64) * self.shape[0] + rows.astype(np.int64)
        pos = np.searchsorted(self.keys, k)
        if k.shape[0] and (pos.max() >= self.keys.shape[0]
                           or np.any(self.keys[pos] != k)):
            raise RuntimeError("update touches entries outside the fixed sparsity pattern")
        return pos

    def scatter_add(self, rows: NDArray, cols: NDArray, vals: NDArray) -> None:
        np.add.at(self.data, self.positions(rows, cols), vals)

    def assign(self, M: sparse.spmatrix) -> None:
        """Overwrite values with those of M (pattern of M ⊆ stored pattern)."""
        coo = sparse.coo_matrix(M)
        self.data[:] = 0.0
        self.scatter_add(coo.row, coo.col, coo.data)

    def toarray(self) -> NDArray:
        return self.tocsc().toarray()

    def copy(self) -> SparseBlock:
        new = SparseBlock.__new__(SparseBlock)
        new.shape = self.shape
        new.keys = self.keys
        new.rows = self.rows
        new.cols = self.cols
        new.indptr = self.indptr
        new.data = self.data.copy()
        return new


def _scatter_blockdiag(out: NDArray, data: NDArray) -> None:
    """Write (ℓ, v, v) blocks onto the diagonal of a dense (ℓv, ℓv) array."""
    n_levels, v, _ = data.shape
    base = (np.arange(n_levels) * v)[:, None, None]
    rows = base + np.arange(v)[None, :, None]
    cols = base + np.arange(v)[None, None, :]
    out[rows, cols] = data


def block_kind(block) -> str:
    return 'dense' if isinstance(block, np.ndarray) else block.kind


def to_dense(block) -> NDArray:
    if isinstance(block, np.ndarray):
        return block
    return block.toarray()


def as_operator(block):
    """Block as something that supports @ (ndarray or scipy.sparse)."""
    if isinstance(block, SparseBlock):
        return block.tocsc()
    if isinstance(block, np.ndarray):
        return block
    return block.toarray()


def _close_pattern(P: sparse.spmatrix, v_row: int, v_col: int) -> sparse.csc_matrix:
    """Expand a pattern to whole v_row × v_col level blocks."""
    coo = sparse.coo_matrix(P)
    nrows, ncols = coo.shape
    if coo.nnz == 0:
        return sparse.csc_matrix(coo.shape)
    lr = coo.row // v_row
    lc = coo.col // v_col
    n_lc = ncols // v_col
    pairs = np.unique(lr.astype(np.int64) * n_lc + lc)
    lr = pairs // n_lc
    lc = pairs % n_lc
    s, t = np.meshgrid(np.arange(v_row), np.arange(v_col), indexing='ij')
    rows = (lr[:, None] * v_row + s.ravel()[None, :]).ravel()
    cols = (lc[:, None] * v_col + t.ravel()[None, :]).ravel()
    return sparse.csc_matrix(
        (np.ones(rows.shape[0]), (rows, cols)), shape=(nrows, ncols)
    )


def _is_nested(P: sparse.spmatrix, v_row: int) -> bool:
    """True if every column of P has its rows within a single level block."""
    coo = sparse.coo_matrix(P)
    if coo.nnz == 0:
        return True
    ncols = coo.shape[1]
    lev = coo.row // v_row
    lo = np.full(ncols, np.iinfo(np.int64).max, dtype=np.int64)
    hi = np.full(ncols, -1, dtype=np.int64)
    np.minimum.at(lo, coo.col, lev)
    np.maximum.at(hi, coo.col, lev)
    used = hi >= 0
    return bool(np.all(lo[used] == hi[used]))


def _incidence_pattern(term_i: ReTerm, term_j: ReTerm) -> sparse.csc_matrix:
    """Structural pattern of Z_i' Z_j from the level codes."""
    shape = (term_i.n_columns, term_j.n_columns)
    P = sparse.csc_matrix(
        (np.ones(term_i.refs.shape[0]), (term_i.refs, term_j.refs)),
        shape=(term_i.n_levels, term_j.n_levels),
    )
    P.sum_duplicates()
    if term_i.n_terms == 1 and term_j.n_terms == 1:
        P.data[:] = 1.0
        return P
    coo = P.tocoo()
    rows = coo.row * term_i.n_terms
    cols = coo.col * term_j.n_terms
    seed = sparse.csc_matrix((np.ones(rows.shape[0]), (rows, cols)), shape=shape)
    return _close_pattern(seed, term_i.n_terms, term_j.n_terms)


def _rmul_lambda(B: NDArray, T: NDArray) -> NDArray:
    """Dense B @ (I_ℓ ⊗ T) without forming the Kronecker product."""
    v = T.shape[0]
    if v == 1:
        return B * T[0, 0]
    r, q = B.shape
    return (B.reshape(r, q // v, v) @ T).reshape(r, q)


class BlockedSystem:
    """Raw crossproducts A and factor storage L for one model.

    Build with BlockedSystem.build(). The random-effects terms are held in
    elimination order (largest term first); θ is interpreted in that order.

    Attributes:
        reterms: Random-effects terms in elimination order.
        n_obs: Number of observations.
        n_fixed: Number of fixed-effect columns (p).
        A: Lower-triangular list of lists of crossproduct blocks.
        L: Lower-triangular list of lists of factor blocks.
        factors: Relative covariance factors T_k of the last scale() call.
    """

    def __init__(self, reterms, X, y, sqrt_w):
        self.reterms = list(reterms)
        self.X = X
        self.y = y
        self.sqrt_w = sqrt_w
        self.n_obs = X.shape[0]
        self.n_fixed = X.shape[1]
        self.n_blocks = len(self.reterms) + 1
        self.A: list[list] = []
        self.L: list[list] = []
        self.factors: list[NDArray] | None = None
        self._a_positions: dict[tuple[int, int], NDArray] = {}
        self._shared = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        X: NDArray,
        reterms: list[ReTerm],
        y: NDArray,
        weights: NDArray | None = None,
    ) -> BlockedSystem:
        """Assemble A and the symbolic layout of L.

        Args:
            X: Fixed-effects design (n, p).
            reterms: Random-effects terms (any order).
            y: Response (n,).
            weights: Optional prior weights (n,).

        Returns:
            BlockedSystem with A filled and L allocated.

        Raises:
            DimensionMismatch: Row counts of X, Z_k, y, weights disagree.
        """
        arrays = [X, y] + [t.Z for t in reterms]
        names = ('X', 'y') + tuple(f'Z[{t.name}]' for t in reterms)
        if weights is not None:
            arrays.append(weights)
            names = names + ('weights',)
        check_consistent_length(*arrays, names=names)
        if len(reterms) == 0:
            raise DimensionMismatch("At least one random-effects term is required")

        sqrt_w = None if weights is None else np.sqrt(weights)
        system = cls(elimination_order(reterms), X, y, sqrt_w)
        system._allocate_A()
        system._fill_A(sqrt_w, y)
        system._plan_L()
        system.L = system._allocate_L()
        logger.debug(
            "built blocked system: %d terms, kinds %s",
            len(system.reterms), system.layout(),
        )
        return system

    def _allocate_A(self) -> None:
        K = len(self.reterms)
        p1 = self.n_fixed + 1
        A = []
        for i in range(K + 1):
            row = []
            for j in range(i + 1):
                if i == K:
                    width = p1 if j == K else self.reterms[j].n_columns
                    row.append(np.zeros((p1, width), dtype=np.float64))
                elif i == j:
                    term = self.reterms[i]
                    if term.is_scalar:
                        row.append(DiagonalBlock(np.zeros(term.n_levels)))
                    else:
                        v = term.n_terms
                        row.append(BlockDiagonalBlock(np.zeros((term.n_levels, v, v))))
                else:
                    P = _incidence_pattern(self.reterms[i], self.reterms[j])
                    block = SparseBlock.from_pattern(P)
                    if block.density > DENSITY_THRESHOLD:
                        row.append(np.zeros(block.shape, dtype=np.float64))
                    else:
                        row.append(block)
            A.append(row)
        self.A = A

    def _fill_A(self, sqrt_w: NDArray | None, y: NDArray) -> None:
        """Compute crossproduct values for weights sqrt_w² and response y."""
        K = len(self.reterms)
        w = None if sqrt_w is None else sqrt_w * sqrt_w
        Zw = [t.weighted_Z(sqrt_w) for t in self.reterms]

        for j, term in enumerate(self.reterms):
            self._fill_re_diagonal(j, term, w)
            for i in range(j + 1, K):
                M = Zw[i].T @ Zw[j]
                block = self.A[i][j]
                if isinstance(block, SparseBlock):
                    block.assign(M)
                else:
                    block[:] = M.toarray()

        self._fill_response(Zw, sqrt_w, y)

    def _fill_re_diagonal(self, j: int, term: ReTerm, w: NDArray | None) -> None:
        z = term.z
        block = self.A[j][j]
        if term.is_scalar:
            vals = z[0] * z[0] if w is None else w * z[0] * z[0]
            block.d[:] = np.bincount(term.refs, weights=vals, minlength=term.n_levels)
            return
        v = term.n_terms
        for s in range(v):
            for t in range(s + 1):
                vals = z[s] * z[t] if w is None else w * z[s] * z[t]
                col = np.bincount(term.refs, weights=vals, minlength=term.n_levels)
                block.data[:, s, t] = col
                block.data[:, t, s] = col

    def _fill_response(self, Zw, sqrt_w: NDArray | None, y: NDArray) -> None:
        K = len(self.reterms)
        XY = np.column_stack([self.X, y])
        if sqrt_w is not None:
            XY = XY * sqrt_w[:, np.newaxis]
        for j in range(K):
            self.A[K][j] = np.asarray(Zw[j].T @ XY).T.copy()
        self.A[K][K] = XY.T @ XY

    def _plan_L(self) -> None:
        """Decide the storage kind of every L block (symbolic factorization)."""
        K = len(self.reterms)
        kinds: dict[tuple[int, int], str] = {}
        patterns: dict[tuple[int, int], sparse.csc_matrix] = {}

        for j in range(K):
            term_j = self.reterms[j]
            nested = all(
                kinds[(j, i)] == 'sparse' and _is_nested(patterns[(j, i)], term_j.n_terms)
                for i in range(j)
            )
            if nested:
                kinds[(j, j)] = 'diagonal' if term_j.is_scalar else 'blockdiag'
            else:
                kinds[(j, j)] = 'dense'

            for k in range(j + 1, K):
                a_block = self.A[k][j]
                fill_dense = (
                    kinds[(j, j)] == 'dense'
                    or isinstance(a_block, np.ndarray)
                    or any(kinds[(k, i)] == 'dense' or kinds[(j, i)] == 'dense'
                           for i in range(j))
                )
                if fill_dense:
                    kinds[(k, j)] = 'dense'
                    continue
                P = a_block.pattern()
                for i in range(j):
                    P = P + patterns[(k, i)] @ patterns[(j, i)].T
                P = _close_pattern(P, self.reterms[k].n_terms, term_j.n_terms)
                nnz = P.nnz
                size = P.shape[0] * P.shape[1]
                if size and nnz / size > DENSITY_THRESHOLD:
                    kinds[(k, j)] = 'dense'
                else:
                    kinds[(k, j)] = 'sparse'
                    patterns[(k, j)] = P

        for j in range(K + 1):
            kinds[(K, j)] = 'dense'

        self._kinds = kinds
        self._patterns = patterns

    def _allocate_L(self) -> list[list]:
        K = len(self.reterms)
        widths = [t.n_columns for t in self.reterms] + [self.n_fixed + 1]
        L = []
        for k in range(K + 1):
            row = []
            for j in range(k + 1):
                kind = self._kinds[(k, j)]
                if kind == 'diagonal':
                    row.append(DiagonalBlock(np.zeros(widths[j])))
                elif kind == 'blockdiag':
                    term = self.reterms[j]
                    v = term.n_terms
                    row.append(BlockDiagonalBlock(np.zeros((term.n_levels, v, v))))
                elif kind == 'sparse':
                    block = SparseBlock.from_pattern(self._patterns[(k, j)])
                    a_block = self.A[k][j]
                    self._a_positions[(k, j)] = block.positions(a_block.rows, a_block.cols)
                    row.append(block)
                else:
                    row.append(np.zeros((widths[k], widths[j]), dtype=np.float64))
            L.append(row)
        return L

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def scale(self, theta) -> list[NDArray]:
        """Overwrite L with the scaled system Λ'AΛ + I (lower triangle).

        Args:
            theta: Covariance parameters in elimination order.

        Returns:
            The relative covariance factors T_k.

        Raises:
            InvalidParameter: Wrong length or non-finite θ.
        """
        factors = lambda_factors(theta, self.reterms)
        K = len(self.reterms)
        self.factors = factors

        for j in range(K):
            self._scale_diagonal(j, factors[j])
            for k in range(j + 1, K):
                self._scale_cross(k, j, factors[k], factors[j])
            self.L[K][j][:] = _rmul_lambda(self.A[K][j], factors[j])
        self.L[K][K][:] = self.A[K][K]
        return factors

    def _scale_diagonal(self, j: int, T: NDArray) -> None:
        a_block = self.A[j][j]
        l_block = self.L[j][j]
        if isinstance(a_block, DiagonalBlock):
            vals = (T[0, 0] * T[0, 0]) * a_block.d + 1.0
            if isinstance(l_block, DiagonalBlock):
                l_block.d[:] = vals
            else:
                l_block[:] = 0.0
                np.fill_diagonal(l_block, vals)
            return

        v = T.shape[0]
        vals = T.T[np.newaxis, :, :] @ a_block.data @ T[np.newaxis, :, :]
        vals += np.eye(v)[np.newaxis, :, :]
        if isinstance(l_block, BlockDiagonalBlock):
            l_block.data[:] = vals
        else:
            l_block[:] = 0.0
            _scatter_blockdiag(l_block, vals)

    def _scale_cross(self, k: int, j: int, T_k: NDArray, T_j: NDArray) -> None:
        a_block = self.A[k][j]
        l_block = self.L[k][j]
        if isinstance(a_block, np.ndarray):
            l_block[:] = _rmul_lambda(_rmul_lambda(a_block, T_j).T, T_k).T
            return

        if T_k.shape[0] == 1 and T_j.shape[0] == 1:
            scaled = (T_k[0, 0] * T_j[0, 0]) * a_block.data
            if isinstance(l_block, SparseBlock):
                l_block.data[:] = 0.0
                l_block.data[self._a_positions[(k, j)]] = scaled
            else:
                l_block[:] = 0.0
                l_block[a_block.rows, a_block.cols] = scaled
            return

        lam_k = lambda_matrix(T_k, self.reterms[k].n_levels)
        lam_j = lambda_matrix(T_j, self.reterms[j].n_levels)
        M = lam_k.T @ a_block.tocsc() @ lam_j
        if isinstance(l_block, SparseBlock):
            l_block.assign(M)
        else:
            l_block[:] = M.toarray()

    def reweight(self, sqrt_w: NDArray, y: NDArray) -> None:
        """Recompute A for new weights and response; the pattern is unchanged.

        Used by PIRLS, where the working weights and working response
        change at every iteration.
        """
        if self._shared:
            raise RuntimeError("cannot reweight a system that shares crossproducts")
        self._fill_A(sqrt_w, y)

    def with_response(self, y: NDArray) -> BlockedSystem:
        """A system for a new response that shares the θ-independent blocks.

        The random-effects crossproduct blocks are shared read-only; the
        [X y] block row and all of L are owned by the new system.
        """
        check_consistent_length(self.X, y, names=('X', 'y'))
        new = BlockedSystem(self.reterms, self.X, y, self.sqrt_w)
        K = len(self.reterms)
        new.A = [list(row) for row in self.A[:K]]
        new.A.append([None] * (K + 1))
        new._kinds = self._kinds
        new._patterns = self._patterns
        new._a_positions = self._a_positions
        Zw = [t.weighted_Z(self.sqrt_w) for t in self.reterms]
        new._fill_response(Zw, self.sqrt_w, y)
        new.L = new._allocate_L()
        new._shared = True
        self._shared = True
        return new

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def layout(self) -> dict[tuple[int, int], str]:
        """Storage kind of every L block, keyed by (row, col)."""
        return {
            (k, j): block_kind(self.L[k][j]) if self.L else self._kinds[(k, j)]
            for k in range(self.n_blocks) for j in range(k + 1)
        }

    def storage_report(self) -> list[dict]:
        """Per-block storage of A and L.

        Returns:
            List of dicts with keys 'matrix' ('A' or 'L'), 'block' (row, col),
            'kind', 'shape', 'nbytes' and 'shared' (θ-independent, shareable
            across refits with the same design).
        """
        K = len(self.reterms)
        report = []
        for name, blocks in (('A', self.A), ('L', self.L)):
            for k, row in enumerate(blocks):
                for j, block in enumerate(row):
                    report.append({
                        'matrix': name,
                        'block': (k, j),
                        'kind': block_kind(block),
                        'shape': tuple(block.shape),
                        'nbytes': int(block.nbytes),
                        'shared': name == 'A' and k < K,
                    })
        return report

    @property
    def nbytes(self) -> int:
        return sum(entry['nbytes'] for entry in self.storage_report())

    def per_fit_nbytes(self) -> int:
        """Bytes a refit with a new response allocates (unshared storage)."""
        return sum(e['nbytes'] for e in self.storage_report() if not e['shared'])

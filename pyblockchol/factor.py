"""
Blocked Cholesky factorization of block-partitioned symmetric matrices.

``cfactor`` overwrites a BlockMatrix with its upper-triangular Cholesky
factor R (R'R = A), block by block:

    for k in 0 .. n-1:
        for i < k:      A[k,k] -= A[i,k]'A[i,k]
        A[k,k] = chol(A[k,k])
        for j > k:
            for i < k:  A[k,j] -= A[i,k]'A[i,j]
            A[k,j] = A[k,k]^{-T} A[k,j]

The traversal order is load-bearing: every block is overwritten in place,
so a block must be completely downdated before it is factorized or solved.

Pivot blocks may be dense, diagonal, block-diagonal or themselves block
matrices (handled by recursion). Dense pivots go through LAPACK ``potrf``;
when LAPACK reports a non-positive pivot the block is refactorized with a
semidefinite column Cholesky that leaves zero pivots, so the factorization
does not fail at the singular boundary of the parameter space.

Set PYBLOCKCHOL_FORCE_SEMIDEFINITE=1 to bypass LAPACK for dense pivots
(debugging only).
"""

from __future__ import annotations
import os
from typing import Callable, Dict, Optional, Tuple

import numpy as np
import scipy.linalg as la
from scipy.linalg import lapack

from .blocks import (
    Block,
    BlockKind,
    BlockMatrix,
    BlockStructureError,
    DenseBlock,
    DiagonalBlock,
    HBlkDiagBlock,
    SparseBlock,
    UnsupportedBlockCombination,
    as_block,
    check_dim,
)
from .control import FactorControl
from .downdate import downdate, find_downdate_kernel

# Environment flag to bypass LAPACK for dense pivots (for debugging only)
FORCE_SEMIDEFINITE = os.getenv("PYBLOCKCHOL_FORCE_SEMIDEFINITE", "0") == "1"


def semidefinite_cholesky(A: np.ndarray, tol: float = 1e-10) -> np.ndarray:
    """
    Upper Cholesky factor of a positive semidefinite matrix.

    Column-oriented Cholesky that reads only the upper triangle of ``A``.
    A pivot not larger than ``tol * max(diag(A))`` is set to zero together
    with the rest of its row, so that R'R reproduces A for exactly or
    computationally rank-deficient input.

    Parameters
    ----------
    A : np.ndarray, shape (n, n)
        Symmetric positive semidefinite matrix (upper triangle used)
    tol : float, default=1e-10
        Relative pivot threshold

    Returns
    -------
    np.ndarray
        Upper-triangular R with R'R ≈ A and zero rows for deficient pivots

    Examples
    --------
    >>> semidefinite_cholesky(np.array([[1.0, 1.0], [1.0, 1.0]]))
    array([[1., 1.],
           [0., 0.]])
    """
    R = np.triu(np.asarray(A, dtype=np.float64))
    n = R.shape[0]
    if n == 0:
        return R
    threshold = tol * max(float(np.max(np.abs(np.diag(R)))), 0.0)
    for j in range(n):
        d = R[j, j] - R[:j, j] @ R[:j, j]
        if d <= threshold:
            R[j, j:] = 0.0
            continue
        R[j, j] = np.sqrt(d)
        if j + 1 < n:
            R[j, j + 1:] = (R[j, j + 1:] - R[:j, j] @ R[:j, j + 1:]) / R[j, j]
    return R


def _cholesky_upper_inplace(a: np.ndarray, control: FactorControl) -> np.ndarray:
    """Overwrite the square array ``a`` with its upper Cholesky factor."""
    if a.shape[0] == 0:
        return a
    if not FORCE_SEMIDEFINITE:
        R, info = lapack.dpotrf(a, lower=0, clean=1)
        if info == 0:
            a[...] = R
            return a
        if info < 0:
            raise RuntimeError(f"LAPACK dpotrf: illegal value in argument {-info}")
        if control.monitoring:
            print(f"  dense pivot not positive definite at column {info}; "
                  f"using semidefinite factorization")
    a[...] = semidefinite_cholesky(a, control.singular_tol)
    return a


def _solve_upper_transpose_inplace(r: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Overwrite ``b`` with ``r^{-T} b`` for upper-triangular ``r``.

    Rows belonging to zero pivots of a semidefinite factor are set to zero;
    those rows of ``r`` are zero, so no later row depends on them.
    """
    d = np.diag(r)
    nonzero = d != 0
    if nonzero.all():
        b[...] = la.solve_triangular(r, b, trans='T', lower=False, check_finite=False)
        return b
    idx = np.flatnonzero(nonzero)
    sol = np.zeros_like(b)
    if idx.size:
        sol[idx] = la.solve_triangular(
            r[np.ix_(idx, idx)], b[idx], trans='T', lower=False, check_finite=False
        )
    b[...] = sol
    return b


def _safe_reciprocal(d: np.ndarray) -> np.ndarray:
    return np.divide(1.0, d, out=np.zeros_like(d), where=d != 0)


# ---------------------------------------------------------------------------
# Pivot factorization, one kernel per pivot kind
# ---------------------------------------------------------------------------

def _factorize_dense(A: DenseBlock, control: FactorControl) -> DenseBlock:
    _cholesky_upper_inplace(A.values, control)
    return A


def _factorize_diagonal(A: DiagonalBlock, control: FactorControl) -> DiagonalBlock:
    # negative entries can only come from round-off on a semidefinite matrix
    np.maximum(A.diag, 0.0, out=A.diag)
    np.sqrt(A.diag, out=A.diag)
    return A


def _factorize_hblkdiag(A: HBlkDiagBlock, control: FactorControl) -> HBlkDiagBlock:
    for g in range(A.nlevels):
        _cholesky_upper_inplace(A.stack[g], control)
    return A


def _factorize_nested(A: BlockMatrix, control: FactorControl) -> BlockMatrix:
    return _cfactor_blockmatrix(A, control)


PIVOT_KERNELS: Dict[BlockKind, Callable] = {
    BlockKind.DENSE: _factorize_dense,
    BlockKind.DIAGONAL: _factorize_diagonal,
    BlockKind.HBLKDIAG: _factorize_hblkdiag,
    BlockKind.NESTED: _factorize_nested,
}


def find_pivot_kernel(kind: BlockKind) -> Callable:
    kernel = PIVOT_KERNELS.get(kind)
    if kernel is None:
        raise UnsupportedBlockCombination(f"no factorization kernel for a {kind.value} pivot block", (kind,))
    return kernel


def factorize_block(A: Block, control: Optional[FactorControl] = None) -> Block:
    """
    Replace a square pivot block by its upper Cholesky factor, in place.

    Parameters
    ----------
    A : Block
        Square dense, diagonal, block-diagonal or nested block.
    control : FactorControl, optional
        Factorization settings

    Returns
    -------
    Block
        ``A``, now holding its factor

    Raises
    ------
    BlockStructureError
        If ``A`` is not square
    UnsupportedBlockCombination
        If ``A`` is sparse
    """
    control = control or FactorControl()
    kernel = find_pivot_kernel(A.kind)
    if not A.is_square:
        raise BlockStructureError(f"pivot block is not square: shape {A.shape}")
    return kernel(A, control)


# ---------------------------------------------------------------------------
# Triangular solves with a factored pivot, one kernel per (pivot, target) pair
# ---------------------------------------------------------------------------

def _check_solve(R: Block, B: Block) -> None:
    check_dim("R.shape[0]", R.shape[0], "B.shape[0]", B.shape[0])


def _solve_dense_dense(R: DenseBlock, B: DenseBlock) -> DenseBlock:
    _check_solve(R, B)
    _solve_upper_transpose_inplace(R.values, B.values)
    return B


def _solve_diagonal_dense(R: DiagonalBlock, B: DenseBlock) -> DenseBlock:
    _check_solve(R, B)
    B.values *= _safe_reciprocal(R.diag)[:, np.newaxis]
    return B


def _solve_diagonal_diagonal(R: DiagonalBlock, B: DiagonalBlock) -> DiagonalBlock:
    _check_solve(R, B)
    B.diag *= _safe_reciprocal(R.diag)
    return B


def _solve_diagonal_sparse(R: DiagonalBlock, B: SparseBlock) -> SparseBlock:
    """Scale each stored entry of B by the reciprocal pivot of its row."""
    _check_solve(R, B)
    B.matrix.data *= _safe_reciprocal(R.diag)[B.matrix.indices]
    return B


def _solve_hblkdiag_dense(R: HBlkDiagBlock, B: DenseBlock) -> DenseBlock:
    _check_solve(R, B)
    r = R.subsize
    for g in range(R.nlevels):
        _solve_upper_transpose_inplace(R.stack[g], B.values[g * r:(g + 1) * r])
    return B


def _solve_nested_dense(R: BlockMatrix, B: DenseBlock) -> DenseBlock:
    """
    Block forward substitution with the transpose of a factored block matrix.

    The rows of B are split along R's partition; each row block is
    downdated by the already solved row blocks above it and then solved
    with its own diagonal factor.
    """
    _check_solve(R, B)
    off = R.offsets
    parts = [DenseBlock._view(B.values[off[a]:off[a + 1]]) for a in range(R.nblocks)]
    for a in range(R.nblocks):
        for b in range(a):
            downdate(parts[a], R[b, a], parts[b])
        solve_upper_transpose(R[a, a], parts[a])
    return B


SOLVE_KERNELS: Dict[Tuple[BlockKind, BlockKind], Callable] = {
    (BlockKind.DENSE, BlockKind.DENSE): _solve_dense_dense,
    (BlockKind.DIAGONAL, BlockKind.DENSE): _solve_diagonal_dense,
    (BlockKind.DIAGONAL, BlockKind.DIAGONAL): _solve_diagonal_diagonal,
    (BlockKind.DIAGONAL, BlockKind.SPARSE): _solve_diagonal_sparse,
    (BlockKind.HBLKDIAG, BlockKind.DENSE): _solve_hblkdiag_dense,
    (BlockKind.NESTED, BlockKind.DENSE): _solve_nested_dense,
}


def find_solve_kernel(kinds: Tuple[BlockKind, BlockKind]) -> Callable:
    kernel = SOLVE_KERNELS.get(tuple(kinds))
    if kernel is None:
        raise UnsupportedBlockCombination(
            f"no triangular solve kernel for R={kinds[0].value}, B={kinds[1].value}", kinds
        )
    return kernel


def solve_upper_transpose(R: Block, B: Block) -> Block:
    """
    Overwrite ``B`` with ``R^{-T} B`` for a factored pivot block ``R``.

    Parameters
    ----------
    R : Block
        Upper-triangular factor produced by ``factorize_block``
    B : Block
        Off-diagonal block in the same block row; modified in place

    Returns
    -------
    Block
        ``B``

    Raises
    ------
    UnsupportedBlockCombination
        If no kernel exists for the pair of kinds
    BlockDimensionMismatch
        If ``R`` and ``B`` have different row counts
    """
    for name, x in (("R", R), ("B", B)):
        if not isinstance(x, Block):
            raise TypeError(f"{name} must be a Block, got {type(x).__name__}")
    kernel = find_solve_kernel((R.kind, B.kind))
    return kernel(R, B)


# ---------------------------------------------------------------------------
# Blocked driver
# ---------------------------------------------------------------------------

def check_factorizable(A: BlockMatrix) -> None:
    """
    Verify that every kernel the blocked factorization of ``A`` needs exists.

    Block kinds do not change during factorization, so this check is exact
    and lets an unsupported combination fail before any block is modified.

    Raises
    ------
    UnsupportedBlockCombination
        For the first missing kernel in traversal order
    """
    n = A.nblocks
    for k in range(n):
        Akk = A[k, k]
        for i in range(k):
            find_downdate_kernel((Akk.kind, A[i, k].kind))
        find_pivot_kernel(Akk.kind)
        # the nested check also covers the downdates and solves of _solve_nested_dense,
        # which reuse the (pivot, off-diagonal) kinds checked there with dense targets
        if isinstance(Akk, BlockMatrix):
            check_factorizable(Akk)
        for j in range(k + 1, n):
            for i in range(k):
                find_downdate_kernel((A[k, j].kind, A[i, k].kind, A[i, j].kind))
            find_solve_kernel((Akk.kind, A[k, j].kind))


def _cfactor_blockmatrix(A: BlockMatrix, control: FactorControl) -> BlockMatrix:
    A.validate()
    if control.check_structure:
        check_factorizable(A)
    n = A.nblocks
    for k in range(n):
        Akk = A[k, k]
        for i in range(k):
            downdate(Akk, A[i, k])
        factorize_block(Akk, control)
        if control.monitoring:
            print(f"[cfactor] pivot {k + 1}/{n}: {Akk.kind.value} {Akk.shape[0]}x{Akk.shape[1]}")
        for j in range(k + 1, n):
            for i in range(k):
                downdate(A[k, j], A[i, k], A[i, j])
            solve_upper_transpose(Akk, A[k, j])
    return A


class CholeskyFactor:
    """
    Handle stating that a matrix now holds its upper Cholesky factor R.

    Parameters
    ----------
    matrix : Block
        The factorized block or block matrix (the caller's storage)

    Attributes
    ----------
    matrix : Block
        Storage holding R
    """

    def __init__(self, matrix: Block):
        self.matrix = matrix

    @property
    def shape(self) -> Tuple[int, int]:
        return self.matrix.shape

    def to_dense(self) -> np.ndarray:
        """Assemble R as a dense upper-triangular array."""
        if isinstance(self.matrix, BlockMatrix):
            return self.matrix.to_dense(symmetric=False)
        return np.triu(self.matrix.to_dense())

    def diagonal(self) -> np.ndarray:
        """Diagonal of R."""
        return _factor_diagonal(self.matrix)

    def logdet(self) -> float:
        """
        log det(R'R) = 2 * sum(log(diag(R))).

        A zero pivot gives ``-inf``; degenerate factors are valid results.
        """
        d = self.diagonal()
        with np.errstate(divide='ignore'):
            return float(2.0 * np.sum(np.log(np.abs(d))))

    def is_singular(self, tol: float = 0.0) -> bool:
        """True if some pivot is at most ``tol * max(|diag(R)|)``."""
        d = np.abs(self.diagonal())
        if d.size == 0:
            return False
        return bool(np.any(d <= tol * d.max()))

    def __repr__(self) -> str:
        return f"CholeskyFactor({self.matrix!r})"


def _factor_diagonal(block: Block) -> np.ndarray:
    if block.kind == BlockKind.DENSE:
        return np.diag(block.values).copy()
    if block.kind == BlockKind.DIAGONAL:
        return block.diag.copy()
    if block.kind == BlockKind.HBLKDIAG:
        return np.diagonal(block.stack, axis1=1, axis2=2).ravel()
    if block.kind == BlockKind.NESTED:
        parts = [_factor_diagonal(block[i, i]) for i in range(block.nblocks)]
        return np.concatenate(parts) if parts else np.zeros(0)
    raise UnsupportedBlockCombination(f"a {block.kind.value} block is not a Cholesky factor", (block.kind,))


def cfactor(A, control: Optional[FactorControl] = None) -> CholeskyFactor:
    """
    Overwrite ``A`` with its upper-triangular Cholesky factor.

    Parameters
    ----------
    A : BlockMatrix, Block or ndarray
        Symmetric positive (semi)definite matrix. A Block is modified in
        place; a plain array is first copied into a new block.
    control : FactorControl, optional
        Factorization settings

    Returns
    -------
    CholeskyFactor
        Handle on the factorized storage, with R'R ≈ A

    Raises
    ------
    BlockStructureError
        If a diagonal block is not square or the partition is inconsistent;
        raised before any block is modified
    UnsupportedBlockCombination
        If a block-kind combination has no kernel; raised before any block
        is modified when ``control.check_structure`` is set

    Notes
    -----
    A rank-deficient input is not an error: the factor carries zero (or
    near-zero) pivots for the deficient directions.

    Examples
    --------
    >>> cfactor(np.array([[4.0]])).to_dense()
    array([[2.]])
    """
    control = control or FactorControl()
    A = as_block(A)
    if isinstance(A, BlockMatrix):
        _cfactor_blockmatrix(A, control)
    else:
        factorize_block(A, control)
    return CholeskyFactor(A)


factorize = cfactor

"""
In-place downdate kernels: C := C - A'A and C := C - A'B.

The blocked Cholesky factorization removes the contribution of every
already-eliminated pivot row from the blocks below it. Which arithmetic that
takes depends on the representations involved, so each supported
combination of block kinds has its own kernel:

    C         A         B         operation
    --------  --------  --------  ------------------------------------------
    dense     dense     -         C -= A'A, upper triangle only
    dense     dense     dense     C -= A'B
    diagonal  sparse    -         C[j] -= sum of squares of column j of A
    diagonal  diagonal  -         C[i] -= A[i]^2
    diagonal  diagonal  diagonal  C[i] -= A[i] * B[i]
    dense     diagonal  dense     C[i, j] -= A[i] * B[i, j]
    dense     sparse    dense     C -= A'B, one stored entry of A at a time
    dense     sparse    sparse    C -= A'B, via the sparse product A'B
    dense     sparse    -         C -= A'A, column by column without forming A'A

Every kernel checks operand shapes before writing any element of C. Any
combination missing from the table raises UnsupportedBlockCombination.
"""

from __future__ import annotations
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from .blocks import (
    Block,
    BlockKind,
    DenseBlock,
    DiagonalBlock,
    SparseBlock,
    UnsupportedBlockCombination,
    check_dim,
)

DENSE = BlockKind.DENSE
DIAGONAL = BlockKind.DIAGONAL
SPARSE = BlockKind.SPARSE


def _check_square(C: Block) -> None:
    check_dim("C.shape[0]", C.shape[0], "C.shape[1]", C.shape[1])


def downdate_dense_dense(C: DenseBlock, A: DenseBlock) -> DenseBlock:
    """C -= A'A on the upper triangle of C; the strict lower triangle is left as is."""
    _check_square(C)
    check_dim("C.shape[0]", C.shape[0], "A.shape[1]", A.shape[1])
    iu = np.triu_indices(C.shape[0])
    a = A.values
    C.values[iu] -= (a.T @ a)[iu]
    return C


def downdate_dense_dense_dense(C: DenseBlock, A: DenseBlock, B: DenseBlock) -> DenseBlock:
    """C -= A'B."""
    check_dim("C.shape[0]", C.shape[0], "A.shape[1]", A.shape[1])
    check_dim("C.shape[1]", C.shape[1], "B.shape[1]", B.shape[1])
    check_dim("A.shape[0]", A.shape[0], "B.shape[0]", B.shape[0])
    C.values -= A.values.T @ B.values
    return C


def downdate_diagonal_sparse(C: DiagonalBlock, A: SparseBlock) -> DiagonalBlock:
    """C[j] -= sum of squares of the stored entries in column j of A."""
    check_dim("C.shape[1]", C.shape[1], "A.shape[1]", A.shape[1])
    _, cols = A.storage_coordinates()
    C.diag -= np.bincount(cols, weights=A.matrix.data ** 2, minlength=C.shape[1])
    return C


def downdate_diagonal_diagonal(C: DiagonalBlock, A: DiagonalBlock) -> DiagonalBlock:
    check_dim("C.shape[0]", C.shape[0], "A.shape[0]", A.shape[0])
    C.diag -= A.diag ** 2
    return C


def downdate_diagonal_diagonal_diagonal(C: DiagonalBlock, A: DiagonalBlock,
                                        B: DiagonalBlock) -> DiagonalBlock:
    check_dim("C.shape[0]", C.shape[0], "A.shape[0]", A.shape[0])
    check_dim("C.shape[0]", C.shape[0], "B.shape[0]", B.shape[0])
    C.diag -= A.diag * B.diag
    return C


def downdate_dense_diagonal_dense(C: DenseBlock, A: DiagonalBlock, B: DenseBlock) -> DenseBlock:
    """C -= A'B with A diagonal, i.e. row i of B scaled by A[i]."""
    check_dim("B.shape[0]", B.shape[0], "C.shape[0]", C.shape[0])
    check_dim("B.shape[1]", B.shape[1], "C.shape[1]", C.shape[1])
    check_dim("A.shape[1]", A.shape[1], "B.shape[0]", B.shape[0])
    C.values -= A.diag[:, np.newaxis] * B.values
    return C


def downdate_dense_sparse_dense(C: DenseBlock, A: SparseBlock, B: DenseBlock) -> DenseBlock:
    """
    C -= A'B with A sparse.

    Each stored entry ``A[row, col] = v`` removes ``v * B[row, :]`` from
    ``C[col, :]``.
    """
    check_dim("C.shape[0]", C.shape[0], "A.shape[1]", A.shape[1])
    check_dim("C.shape[1]", C.shape[1], "B.shape[1]", B.shape[1])
    check_dim("A.shape[0]", A.shape[0], "B.shape[0]", B.shape[0])
    rows, cols = A.storage_coordinates()
    np.subtract.at(C.values, cols, A.matrix.data[:, np.newaxis] * B.values[rows])
    return C


def downdate_dense_sparse_sparse(C: DenseBlock, A: SparseBlock, B: SparseBlock) -> DenseBlock:
    """C -= A'B, forming the sparse product A'B and subtracting its stored entries."""
    check_dim("A.shape[0]", A.shape[0], "B.shape[0]", B.shape[0])
    check_dim("C.shape[0]", C.shape[0], "A.shape[1]", A.shape[1])
    check_dim("C.shape[1]", C.shape[1], "B.shape[1]", B.shape[1])
    AtB = (A.matrix.T @ B.matrix).tocsc()
    AtB.sum_duplicates()
    cols = np.repeat(np.arange(AtB.shape[1]), np.diff(AtB.indptr))
    np.subtract.at(C.values, (AtB.indices, cols), AtB.data)
    return C


def downdate_dense_sparse(C: DenseBlock, A: SparseBlock) -> DenseBlock:
    """
    C -= A'A with A sparse, without forming A'A.

    For each stored entry ``A[k, j] = v`` the matching column ``k`` of A'
    (the stored entries of row ``k`` of A) is scaled by ``v`` and removed
    from column ``j`` of C. Both triangles of C are updated.
    """
    _check_square(C)
    check_dim("C.shape[1]", C.shape[1], "A.shape[1]", A.shape[1])
    a = A.matrix
    at = a.T.tocsc()
    at.sort_indices()
    c = C.values
    for j in range(a.shape[1]):
        for p in range(a.indptr[j], a.indptr[j + 1]):
            k = a.indices[p]
            lo, hi = at.indptr[k], at.indptr[k + 1]
            c[at.indices[lo:hi], j] -= at.data[lo:hi] * a.data[p]
    return C


DOWNDATE_KERNELS: Dict[Tuple[BlockKind, ...], Callable] = {
    (DENSE, DENSE): downdate_dense_dense,
    (DENSE, DENSE, DENSE): downdate_dense_dense_dense,
    (DIAGONAL, SPARSE): downdate_diagonal_sparse,
    (DIAGONAL, DIAGONAL): downdate_diagonal_diagonal,
    (DIAGONAL, DIAGONAL, DIAGONAL): downdate_diagonal_diagonal_diagonal,
    (DENSE, DIAGONAL, DENSE): downdate_dense_diagonal_dense,
    (DENSE, SPARSE, DENSE): downdate_dense_sparse_dense,
    (DENSE, SPARSE, SPARSE): downdate_dense_sparse_sparse,
    (DENSE, SPARSE): downdate_dense_sparse,
}


def _kinds_label(kinds: Tuple[BlockKind, ...]) -> str:
    return ", ".join(f"{name}={k.value}" for name, k in zip("CAB", kinds))


def find_downdate_kernel(kinds: Tuple[BlockKind, ...]) -> Callable:
    """
    Look up the kernel for a pair ``(C, A)`` or triple ``(C, A, B)`` of kinds.

    Raises
    ------
    UnsupportedBlockCombination
        If no kernel is defined for ``kinds``
    """
    kernel = DOWNDATE_KERNELS.get(tuple(kinds))
    if kernel is not None:
        return kernel
    if tuple(kinds) == (SPARSE, SPARSE, SPARSE):
        raise UnsupportedBlockCombination(
            "downdate with sparse C, A and B (three or more nested sparse grouping factors) "
            "is not implemented",
            kinds,
        )
    raise UnsupportedBlockCombination(f"no downdate kernel for {_kinds_label(kinds)}", kinds)


def downdate(C: Block, A: Block, B: Optional[Block] = None) -> Block:
    """
    Subtract, in place, ``A'A`` or ``A'B`` from ``C``.

    Parameters
    ----------
    C : Block
        Block to update; modified in place.
    A : Block
        Left operand.
    B : Block, optional
        Right operand. If omitted, ``A'A`` is subtracted.

    Returns
    -------
    Block
        ``C``

    Raises
    ------
    TypeError
        If an operand is not a Block
    UnsupportedBlockCombination
        If no kernel exists for the operand kinds
    BlockDimensionMismatch
        If operand shapes are incompatible; C is left unchanged

    Examples
    --------
    >>> C = DenseBlock([[10.0]])
    >>> downdate(C, DenseBlock([[3.0]])).values
    array([[1.]])
    """
    operands = (C, A) if B is None else (C, A, B)
    for name, x in zip("CAB", operands):
        if not isinstance(x, Block):
            raise TypeError(f"{name} must be a Block, got {type(x).__name__}")
    kernel = find_downdate_kernel(tuple(x.kind for x in operands))
    return kernel(*operands)

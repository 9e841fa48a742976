"""
Block representations for partitioned symmetric matrices.

A penalized crossproduct matrix from a mixed model is partitioned by the
random-effects grouping structure, and each cell of the partition uses the
cheapest representation that holds its values:

- DenseBlock: general 2-D array
- DiagonalBlock: 1-D array holding a square diagonal matrix
- SparseBlock: column-compressed (CSC) sparse matrix
- HBlkDiagBlock: stack of small same-shape dense blocks, one per group level
- BlockMatrix: an upper-triangular grid of blocks, itself usable as a block

Every block owns its storage. Constructors copy their input so that no two
blocks, and no external array, alias the same memory.
"""

from __future__ import annotations
import warnings
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp


class BlockKind(Enum):
    """Tag identifying the representation of a block."""
    DENSE = "dense"
    DIAGONAL = "diagonal"
    SPARSE = "sparse"
    HBLKDIAG = "hblkdiag"
    NESTED = "nested"


class BlockStructureError(ValueError):
    """Raised when a block or block matrix is structurally invalid."""


class BlockDimensionMismatch(BlockStructureError):
    """
    Raised when operand shapes are incompatible.

    Attributes
    ----------
    dims : tuple of str
        Names of the two dimensions that disagree, e.g. ("C.shape[0]", "A.shape[1]")
    """

    def __init__(self, message: str, dims: Tuple[str, str] = ()):
        super().__init__(message)
        self.dims = tuple(dims)


class UnsupportedBlockCombination(NotImplementedError):
    """
    Raised when no kernel exists for a combination of block kinds.

    Attributes
    ----------
    kinds : tuple of BlockKind
        The block kinds of the operands, in call order
    """

    def __init__(self, message: str, kinds: Tuple[BlockKind, ...] = ()):
        super().__init__(message)
        self.kinds = tuple(kinds)


def check_dim(left_name: str, left: int, right_name: str, right: int) -> None:
    """Raise BlockDimensionMismatch unless ``left == right``."""
    if left != right:
        raise BlockDimensionMismatch(
            f"{left_name} ({left}) != {right_name} ({right})",
            dims=(left_name, right_name),
        )


def _owned_float_array(values, ndim: int, what: str) -> np.ndarray:
    arr = np.asarray(values)
    if arr.ndim != ndim:
        raise BlockStructureError(f"{what} needs a {ndim}-D array, got {arr.ndim}-D")
    if arr.dtype != np.float64:
        if not (np.issubdtype(arr.dtype, np.floating) or np.issubdtype(arr.dtype, np.integer)
                or arr.dtype == np.bool_):
            raise BlockStructureError(f"{what} needs real values, got dtype {arr.dtype}")
        warnings.warn(f"Converting {what} values from {arr.dtype} to float64")
    return np.array(arr, dtype=np.float64, copy=True)


class Block:
    """
    Base class for one cell of a block matrix.

    Subclasses set ``kind`` and implement ``shape``, ``to_dense``, ``copy``,
    ``inject`` and ``storage``.
    """

    kind: BlockKind = None

    @property
    def shape(self) -> Tuple[int, int]:
        raise NotImplementedError

    @property
    def nrows(self) -> int:
        return self.shape[0]

    @property
    def ncols(self) -> int:
        return self.shape[1]

    @property
    def is_square(self) -> bool:
        return self.shape[0] == self.shape[1]

    def to_dense(self) -> np.ndarray:
        raise NotImplementedError

    def copy(self) -> "Block":
        raise NotImplementedError

    def inject(self, values) -> "Block":
        raise NotImplementedError

    def storage(self) -> List[np.ndarray]:
        """Backing arrays owned by this block."""
        raise NotImplementedError

    @property
    def nnz(self) -> int:
        return int(sum(a.size for a in self.storage() if a.dtype == np.float64))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(shape={self.shape})"


class DenseBlock(Block):
    """
    General dense block.

    Parameters
    ----------
    values : array_like, shape (m, n)
        Block entries; copied into new float64 storage.
    """

    kind = BlockKind.DENSE

    def __init__(self, values):
        self.values = _owned_float_array(values, 2, "dense block")

    @classmethod
    def _view(cls, values: np.ndarray) -> "DenseBlock":
        """Wrap a float64 view of storage owned elsewhere, without copying."""
        block = cls.__new__(cls)
        block.values = values
        return block

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def to_dense(self) -> np.ndarray:
        return self.values.copy()

    def copy(self) -> "DenseBlock":
        return DenseBlock(self.values)

    def inject(self, values) -> "DenseBlock":
        values = np.asarray(values)
        if values.shape != self.values.shape:
            raise BlockStructureError(
                f"cannot inject values of shape {values.shape} into dense block of shape {self.values.shape}"
            )
        self.values[...] = values
        return self

    def storage(self) -> List[np.ndarray]:
        return [self.values]


class DiagonalBlock(Block):
    """
    Square diagonal block stored as its diagonal.

    Parameters
    ----------
    diag : array_like, shape (n,)
        Diagonal entries; copied into new float64 storage.
    """

    kind = BlockKind.DIAGONAL

    def __init__(self, diag):
        self.diag = _owned_float_array(diag, 1, "diagonal block")

    @property
    def shape(self) -> Tuple[int, int]:
        n = self.diag.shape[0]
        return (n, n)

    def to_dense(self) -> np.ndarray:
        return np.diag(self.diag)

    def copy(self) -> "DiagonalBlock":
        return DiagonalBlock(self.diag)

    def inject(self, values) -> "DiagonalBlock":
        values = np.asarray(values)
        if values.ndim == 2:
            if values.shape != self.shape:
                raise BlockStructureError(
                    f"cannot inject values of shape {values.shape} into diagonal block of shape {self.shape}"
                )
            values = np.diag(values)
        if values.shape != self.diag.shape:
            raise BlockStructureError(
                f"cannot inject {values.shape[0]} diagonal values into diagonal block of size {self.diag.shape[0]}"
            )
        self.diag[...] = values
        return self

    def storage(self) -> List[np.ndarray]:
        return [self.diag]


class SparseBlock(Block):
    """
    Column-compressed sparse block.

    Parameters
    ----------
    matrix : scipy.sparse matrix or array_like
        Block entries. Non-CSC input is converted to CSC; the column
        pointer, row index and value arrays are always copied.
    """

    kind = BlockKind.SPARSE

    def __init__(self, matrix):
        if sp.issparse(matrix):
            if matrix.format != "csc":
                warnings.warn(f"Converting {matrix.format} sparse block to csc")
            matrix = sp.csc_matrix(matrix)
        else:
            matrix = sp.csc_matrix(np.asarray(matrix))
        if matrix.dtype != np.float64:
            warnings.warn(f"Converting sparse block values from {matrix.dtype} to float64")
        self.matrix = sp.csc_matrix(
            (
                np.array(matrix.data, dtype=np.float64, copy=True),
                np.array(matrix.indices, copy=True),
                np.array(matrix.indptr, copy=True),
            ),
            shape=matrix.shape,
        )
        # merges duplicate entries and sorts row indices
        self.matrix.sum_duplicates()

    @property
    def shape(self) -> Tuple[int, int]:
        return self.matrix.shape

    @property
    def nnz(self) -> int:
        return int(self.matrix.nnz)

    def to_dense(self) -> np.ndarray:
        return self.matrix.toarray()

    def storage_coordinates(self) -> Tuple[np.ndarray, np.ndarray]:
        """Row and column index of every stored entry, in storage order."""
        cols = np.repeat(np.arange(self.matrix.shape[1]), np.diff(self.matrix.indptr))
        return self.matrix.indices, cols

    def copy(self) -> "SparseBlock":
        return SparseBlock(self.matrix)

    def inject(self, values) -> "SparseBlock":
        """
        Overwrite the stored nonzeros.

        ``values`` is either a 1-D array of length ``nnz`` (in storage order)
        or a sparse matrix with exactly this block's sparsity pattern.
        """
        if sp.issparse(values):
            other = sp.csc_matrix(values)
            other.sum_duplicates()
            if (other.shape != self.matrix.shape
                    or not np.array_equal(other.indptr, self.matrix.indptr)
                    or not np.array_equal(other.indices, self.matrix.indices)):
                raise BlockStructureError("injected sparse matrix does not match the block's sparsity pattern")
            values = other.data
        values = np.asarray(values)
        if values.shape != self.matrix.data.shape:
            raise BlockStructureError(
                f"cannot inject {values.size} values into sparse block with {self.matrix.nnz} stored entries"
            )
        self.matrix.data[...] = values
        return self

    def storage(self) -> List[np.ndarray]:
        return [self.matrix.data, self.matrix.indices, self.matrix.indptr]

    def __repr__(self) -> str:
        return f"SparseBlock(shape={self.shape}, nnz={self.matrix.nnz})"


class HBlkDiagBlock(Block):
    """
    Block-diagonal matrix of small same-shape dense blocks.

    One ``r x r`` block per level of a grouping factor with a vector-valued
    random effect (e.g. random intercept and slope, ``r = 2``).

    Parameters
    ----------
    stack : array_like, shape (k, r, r)
        The ``k`` diagonal sub-blocks; copied into new float64 storage.
    """

    kind = BlockKind.HBLKDIAG

    def __init__(self, stack):
        self.stack = _owned_float_array(stack, 3, "block-diagonal block")
        if self.stack.shape[1] != self.stack.shape[2]:
            raise BlockStructureError(
                f"block-diagonal sub-blocks must be square, got {self.stack.shape[1]}x{self.stack.shape[2]}"
            )

    @property
    def nlevels(self) -> int:
        return self.stack.shape[0]

    @property
    def subsize(self) -> int:
        return self.stack.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        n = self.nlevels * self.subsize
        return (n, n)

    def to_dense(self) -> np.ndarray:
        n = self.shape[0]
        r = self.subsize
        out = np.zeros((n, n))
        for g in range(self.nlevels):
            out[g * r:(g + 1) * r, g * r:(g + 1) * r] = self.stack[g]
        return out

    def copy(self) -> "HBlkDiagBlock":
        return HBlkDiagBlock(self.stack)

    def inject(self, values) -> "HBlkDiagBlock":
        values = np.asarray(values)
        if values.shape != self.stack.shape:
            raise BlockStructureError(
                f"cannot inject values of shape {values.shape} into block-diagonal stack of shape {self.stack.shape}"
            )
        self.stack[...] = values
        return self

    def storage(self) -> List[np.ndarray]:
        return [self.stack]

    def __repr__(self) -> str:
        return f"HBlkDiagBlock(levels={self.nlevels}, size={self.subsize})"


BlockLike = Union[Block, np.ndarray, sp.spmatrix]


def as_block(x: BlockLike) -> Block:
    """
    Wrap an array as a block of the matching kind.

    Parameters
    ----------
    x : Block, ndarray or scipy.sparse matrix
        1-D arrays become DiagonalBlock, 2-D DenseBlock, 3-D HBlkDiagBlock,
        sparse matrices SparseBlock. Blocks are returned unchanged.

    Returns
    -------
    Block
    """
    if isinstance(x, Block):
        return x
    if sp.issparse(x):
        return SparseBlock(x)
    arr = np.asarray(x)
    if arr.ndim == 1:
        return DiagonalBlock(arr)
    if arr.ndim == 2:
        return DenseBlock(arr)
    if arr.ndim == 3:
        return HBlkDiagBlock(arr)
    raise BlockStructureError(f"cannot interpret {arr.ndim}-D array as a block")


class BlockMatrix(Block):
    """
    Symmetric matrix stored as the upper triangle of a grid of blocks.

    Row and column partitions are identical: diagonal block ``i`` is square
    of size ``sizes[i]`` and off-diagonal block ``(i, j)`` is
    ``sizes[i] x sizes[j]``. Only blocks with ``i <= j`` are stored.

    Parameters
    ----------
    blocks : sequence of sequences
        Row-major grid, ``blocks[i][j]`` for ``j >= i``. Entries below the
        diagonal are ignored and may be ``None``. Each entry is a Block or an
        array accepted by ``as_block``.

    Attributes
    ----------
    nblocks : int
        Number of block rows (and block columns)
    sizes : list of int
        Sizes of the diagonal blocks

    Examples
    --------
    >>> bm = BlockMatrix([[np.array([2.0, 3.0]), np.ones((2, 1))],
    ...                   [None, np.array([[4.0]])]])
    >>> bm.sizes
    [2, 1]
    """

    kind = BlockKind.NESTED

    def __init__(self, blocks: Sequence[Sequence[Optional[BlockLike]]]):
        blocks = list(blocks)
        n = len(blocks)
        self._blocks: Dict[Tuple[int, int], Block] = {}
        for i, row in enumerate(blocks):
            row = list(row)
            if len(row) != n:
                raise BlockStructureError(f"block row {i} has {len(row)} entries, expected {n}")
            for j in range(i, n):
                if row[j] is None:
                    raise BlockStructureError(f"missing block ({i}, {j}) in upper triangle")
                self._blocks[(i, j)] = as_block(row[j])
        self.nblocks = n
        self.sizes = [self._blocks[(i, i)].nrows for i in range(n)]
        self.validate()

    @classmethod
    def from_dense(cls, A, sizes: Sequence[int]) -> "BlockMatrix":
        """
        Partition a dense symmetric matrix into dense blocks.

        Parameters
        ----------
        A : array_like, shape (n, n)
            Symmetric matrix; only its upper triangle of blocks is used.
        sizes : sequence of int
            Block sizes, summing to ``n``.
        """
        A = np.asarray(A, dtype=np.float64)
        if A.ndim != 2 or A.shape[0] != A.shape[1]:
            raise BlockStructureError(f"from_dense needs a square matrix, got shape {A.shape}")
        check_dim("sum(sizes)", int(sum(sizes)), "A.shape[0]", A.shape[0])
        offsets = np.concatenate([[0], np.cumsum(sizes)]).astype(int)
        n = len(sizes)
        grid = [[None] * n for _ in range(n)]
        for i in range(n):
            for j in range(i, n):
                grid[i][j] = DenseBlock(A[offsets[i]:offsets[i + 1], offsets[j]:offsets[j + 1]])
        return cls(grid)

    def __getitem__(self, key: Tuple[int, int]) -> Block:
        i, j = key
        if i > j:
            raise KeyError(f"block ({i}, {j}) lies below the diagonal and is not stored")
        return self._blocks[(i, j)]

    def __setitem__(self, key: Tuple[int, int], block: BlockLike) -> None:
        i, j = key
        if i > j:
            raise KeyError(f"block ({i}, {j}) lies below the diagonal and is not stored")
        block = as_block(block)
        check_dim(f"block ({i}, {j}) rows", block.nrows, f"size of diagonal block {i}", self.sizes[i])
        check_dim(f"block ({i}, {j}) cols", block.ncols, f"size of diagonal block {j}", self.sizes[j])
        self._blocks[(i, j)] = block

    def items(self):
        """Iterate over ``((i, j), block)`` pairs of the upper triangle in row-major order."""
        for i in range(self.nblocks):
            for j in range(i, self.nblocks):
                yield (i, j), self._blocks[(i, j)]

    def validate(self) -> None:
        """
        Check squareness, partition consistency and storage ownership.

        Raises
        ------
        BlockStructureError
            If a diagonal block is not square, two blocks share storage or
            a block appears twice
        BlockDimensionMismatch
            If an off-diagonal block does not match the partition
        """
        for i in range(self.nblocks):
            d = self._blocks[(i, i)]
            if not d.is_square:
                raise BlockStructureError(f"diagonal block {i} is not square: shape {d.shape}")
            if isinstance(d, BlockMatrix):
                d.validate()
        for (i, j), b in self.items():
            if i == j:
                continue
            check_dim(f"block ({i}, {j}) rows", b.nrows, f"size of diagonal block {i}", self.sizes[i])
            check_dim(f"block ({i}, {j}) cols", b.ncols, f"size of diagonal block {j}", self.sizes[j])
        self._check_ownership()

    def _check_ownership(self) -> None:
        seen = {}
        arrays = []
        for key, b in self.items():
            if id(b) in seen:
                raise BlockStructureError(f"block object at {key} is also stored at {seen[id(b)]}")
            seen[id(b)] = key
            arrays.extend((key, a) for a in b.storage() if a.size)
        for p in range(len(arrays)):
            for q in range(p + 1, len(arrays)):
                if arrays[p][0] != arrays[q][0] and np.may_share_memory(arrays[p][1], arrays[q][1]):
                    raise BlockStructureError(
                        f"blocks {arrays[p][0]} and {arrays[q][0]} share backing storage"
                    )

    @property
    def shape(self) -> Tuple[int, int]:
        n = int(sum(self.sizes))
        return (n, n)

    @property
    def offsets(self) -> np.ndarray:
        return np.concatenate([[0], np.cumsum(self.sizes)]).astype(int)

    def to_dense(self, symmetric: bool = True) -> np.ndarray:
        """
        Assemble the matrix as a dense array.

        Parameters
        ----------
        symmetric : bool, default=True
            If True, mirror the stored upper triangle into the lower one.
            If False, return the upper triangle only (the view used for a
            Cholesky factor).
        """
        n = self.shape[0]
        off = self.offsets
        out = np.zeros((n, n))
        for (i, j), b in self.items():
            if isinstance(b, BlockMatrix):
                vals = b.to_dense(symmetric=False)
            else:
                vals = b.to_dense()
            if i == j:
                vals = np.triu(vals)
            out[off[i]:off[i + 1], off[j]:off[j + 1]] = vals
        if symmetric:
            out = out + np.triu(out, 1).T
        return out

    def copy(self) -> "BlockMatrix":
        grid = [[None] * self.nblocks for _ in range(self.nblocks)]
        for (i, j), b in self.items():
            grid[i][j] = b.copy()
        return BlockMatrix(grid)

    def inject(self, values) -> "BlockMatrix":
        """
        Overwrite every block's numeric content from ``values``.

        ``values`` is another BlockMatrix with the same block structure, or
        a dense symmetric array which is sliced along the partition. Block
        kinds and sparsity patterns are never changed.
        """
        if isinstance(values, BlockMatrix):
            if values.sizes != self.sizes:
                raise BlockStructureError(f"block sizes {values.sizes} differ from {self.sizes}")
            for key, b in self.items():
                src = values[key]
                if src.kind != b.kind:
                    raise BlockStructureError(f"block {key} is {b.kind.value}, got {src.kind.value}")
                b.inject(_injectable(src))
            return self
        values = np.asarray(values)
        if values.shape != self.shape:
            raise BlockStructureError(f"cannot inject values of shape {values.shape} into {self.shape}")
        off = self.offsets
        for (i, j), b in self.items():
            part = values[off[i]:off[i + 1], off[j]:off[j + 1]]
            if b.kind == BlockKind.SPARSE:
                rows, cols = b.storage_coordinates()
                part = part[rows, cols]
            elif b.kind == BlockKind.HBLKDIAG:
                r = b.subsize
                part = np.stack([part[g * r:(g + 1) * r, g * r:(g + 1) * r] for g in range(b.nlevels)])
            b.inject(part)
        return self

    def storage(self) -> List[np.ndarray]:
        out = []
        for _, b in self.items():
            out.extend(b.storage())
        return out

    @property
    def nnz(self) -> int:
        return int(sum(b.nnz for _, b in self.items()))

    def __repr__(self) -> str:
        kinds = [self._blocks[(i, i)].kind.value for i in range(self.nblocks)]
        return f"BlockMatrix(sizes={self.sizes}, diagonal={kinds})"


def _injectable(block: Block):
    if block.kind == BlockKind.DENSE:
        return block.values
    if block.kind == BlockKind.DIAGONAL:
        return block.diag
    if block.kind == BlockKind.SPARSE:
        return block.matrix
    if block.kind == BlockKind.HBLKDIAG:
        return block.stack
    return block

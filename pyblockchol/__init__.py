"""
pyBlockChol: blocked Cholesky factorization for mixed-model crossproducts

In-place Cholesky factorization of symmetric positive-(semi)definite
matrices partitioned into dense, diagonal, sparse and block-diagonal
blocks, together with the blockwise downdate kernels the blocked
algorithm requires.
"""

from .blocks import (
    BlockKind,
    Block,
    DenseBlock,
    DiagonalBlock,
    SparseBlock,
    HBlkDiagBlock,
    BlockMatrix,
    as_block,
    BlockStructureError,
    BlockDimensionMismatch,
    UnsupportedBlockCombination,
)
from .control import FactorControl
from .downdate import downdate
from .factor import cfactor, factorize, factorize_block, solve_upper_transpose, CholeskyFactor
from .utils import block_summary
from .plotting import plot_block_structure

__version__ = "0.1.0"
__author__ = "Python pyBlockChol Implementation"

__all__ = [
    "BlockKind",
    "Block",
    "DenseBlock",
    "DiagonalBlock",
    "SparseBlock",
    "HBlkDiagBlock",
    "BlockMatrix",
    "as_block",
    "BlockStructureError",
    "BlockDimensionMismatch",
    "UnsupportedBlockCombination",
    "FactorControl",
    "downdate",
    "cfactor",
    "factorize",
    "factorize_block",
    "solve_upper_transpose",
    "CholeskyFactor",
    "block_summary",
    "plot_block_structure",
]

"""
Utility functions for pyBlockChol package.
"""

import numpy as np
import pandas as pd
from typing import List, Sequence

from .blocks import BlockMatrix


def sizes_to_slices(sizes: Sequence[int]) -> List[slice]:
    """
    Convert block sizes to contiguous slices.

    Parameters
    ----------
    sizes : sequence of int
        Size of each block

    Returns
    -------
    list of slice
        ``slices[i]`` selects block ``i`` of a vector of length ``sum(sizes)``

    Examples
    --------
    >>> sizes_to_slices([2, 3])
    [slice(0, 2, None), slice(2, 5, None)]
    """
    stops = np.cumsum(sizes).astype(int)
    starts = np.concatenate([[0], stops[:-1]]).astype(int)
    return [slice(int(a), int(b)) for a, b in zip(starts, stops)]


def block_summary(bm: BlockMatrix) -> pd.DataFrame:
    """
    Tabulate the stored blocks of a block matrix.

    Parameters
    ----------
    bm : BlockMatrix
        Block matrix to describe

    Returns
    -------
    pd.DataFrame
        One row per stored block (upper triangle, row-major) with columns:
        - row, col: block position
        - kind: block representation
        - nrows, ncols: block shape
        - nnz: number of stored values
    """
    records = []
    for (i, j), b in bm.items():
        records.append({
            'row': i,
            'col': j,
            'kind': b.kind.value,
            'nrows': b.nrows,
            'ncols': b.ncols,
            'nnz': b.nnz,
        })
    return pd.DataFrame(records, columns=['row', 'col', 'kind', 'nrows', 'ncols', 'nnz'])

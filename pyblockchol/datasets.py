"""
Synthetic grouping data and penalized crossproducts for pyBlockChol.

The blocked factorization consumes the penalized crossproduct of a linear
mixed model,

    A(θ) = [ Λ'Z'ZΛ + I   Λ'Z'[X y]  ]
           [     .        [X y]'[X y] ]

partitioned by grouping factor. The functions here simulate grouping
structures and assemble A(θ) as a BlockMatrix for examples and tests.
"""

from __future__ import annotations
import numpy as np
import pandas as pd
import scipy.sparse as sp
from typing import Optional, Sequence, Union

from .blocks import BlockMatrix, DenseBlock, DiagonalBlock, HBlkDiagBlock, SparseBlock


def make_grouping_data(
    n_obs: int = 200,
    n_levels: Sequence[int] = (20, 5),
    nested: bool = False,
    seed: Optional[int] = 42
) -> pd.DataFrame:
    """
    Simulate observations classified by one or more grouping factors.

    Parameters
    ----------
    n_obs : int, default=200
        Number of observations
    n_levels : sequence of int, default=(20, 5)
        Number of levels of each grouping factor ``g1, g2, ...``
    nested : bool, default=False
        If True, each factor is nested within the next one (every level of
        ``g1`` occurs within a single level of ``g2``, and so on); the level
        counts must then be non-increasing. Otherwise factors are crossed.
    seed : int, optional
        Random seed

    Returns
    -------
    pd.DataFrame
        Columns ``g1, g2, ...`` (categorical), covariate ``x`` and response
        ``y``

    Examples
    --------
    >>> data = make_grouping_data(100, (10, 2), nested=True)
    >>> bm = penalized_crossproduct(data, ['g1', 'g2'], theta=[0.8, 0.5])
    """
    n_levels = [int(L) for L in n_levels]
    if not n_levels:
        raise ValueError("need at least one grouping factor")
    if min(n_levels) < 1:
        raise ValueError(f"every factor needs at least one level, got {n_levels}")
    if n_obs < max(n_levels):
        raise ValueError(f"n_obs ({n_obs}) must be at least the largest number of levels ({max(n_levels)})")
    if nested and any(a < b for a, b in zip(n_levels, n_levels[1:])):
        raise ValueError(f"nested factors need non-increasing level counts, got {n_levels}")

    rng = np.random.default_rng(seed)

    codes = [rng.permutation(np.arange(n_obs) % n_levels[0])]
    for L_prev, L in zip(n_levels, n_levels[1:]):
        if nested:
            codes.append(codes[-1] * L // L_prev)
        else:
            codes.append(rng.permutation(np.arange(n_obs) % L))

    x = rng.normal(0, 1, n_obs)
    y = 1.0 + 0.5 * x + rng.normal(0, 1, n_obs)
    for c, L in zip(codes, n_levels):
        y += rng.normal(0, 1, L)[c]

    data = {f"g{k + 1}": pd.Categorical(c) for k, c in enumerate(codes)}
    data["x"] = x
    data["y"] = y
    return pd.DataFrame(data)


def indicator_matrix(factor) -> sp.csc_matrix:
    """
    Indicator matrix of a grouping factor.

    Parameters
    ----------
    factor : array_like or pd.Series
        Group membership of each observation

    Returns
    -------
    scipy.sparse.csc_matrix
        ``n_obs x n_levels`` matrix with a single 1 per row
    """
    cat = pd.Categorical(factor)
    codes = np.asarray(cat.codes)
    if np.any(codes < 0):
        raise ValueError("grouping factor contains missing values")
    n = codes.shape[0]
    return sp.csc_matrix((np.ones(n), (np.arange(n), codes)), shape=(n, len(cat.categories)))


def _slope_template(theta0: Union[float, Sequence[float]]) -> np.ndarray:
    t = np.atleast_1d(np.asarray(theta0, dtype=np.float64))
    if t.size == 1:
        return t[0] * np.eye(2)
    if t.size == 3:
        return np.array([[t[0], 0.0], [t[1], t[2]]])
    raise ValueError(f"intercept/slope parameters need 1 or 3 values, got {t.size}")


def _is_nested(Z_inner: sp.spmatrix, Z_outer: sp.spmatrix) -> bool:
    """True if every level of the inner factor falls within one outer level."""
    counts = (Z_inner.T @ Z_outer).tocsr()
    return bool(np.all(np.diff(counts.indptr) == 1))


def penalized_crossproduct(
    data: pd.DataFrame,
    factors: Sequence[str],
    theta: Sequence[Union[float, Sequence[float]]],
    fixed: Sequence[str] = ('x',),
    response: str = 'y',
    slopes: Optional[str] = None
) -> BlockMatrix:
    """
    Assemble the penalized crossproduct A(θ) as a BlockMatrix.

    Parameters
    ----------
    data : pd.DataFrame
        Observations
    factors : sequence of str
        Grouping factor columns, one random-effects term each. List the
        factor with the most levels first.
    theta : sequence
        Relative covariance parameters, one per factor. Scalar terms take a
        scalar; the intercept/slope term (see ``slopes``) takes a scalar or
        the three entries ``(l11, l21, l22)`` of a lower-triangular 2x2
        factor.
    fixed : sequence of str, default=('x',)
        Fixed-effect covariates; an intercept is always included
    response : str, default='y'
        Response column
    slopes : str, optional
        Covariate with a random slope for the first factor, giving it a
        random intercept and slope per level

    Returns
    -------
    BlockMatrix
        ``len(factors) + 1`` block rows. Block kinds:
        - first factor: DIAGONAL, or HBLKDIAG with ``slopes``
        - second factor nested in the first scalar factor: DIAGONAL
        - other factor diagonal blocks: DENSE
        - first-row factor-by-factor blocks: SPARSE for a scalar first factor
        - all remaining blocks: DENSE
    """
    factors = list(factors)
    if len(theta) != len(factors):
        raise ValueError(f"need one theta per factor: {len(theta)} given for {len(factors)} factors")
    missing = [c for c in list(factors) + list(fixed) + [response] if c not in data.columns]
    if missing:
        raise ValueError(f"Missing columns in data: {missing}")

    n = len(data)
    X = np.column_stack([np.ones(n)] + [data[c].to_numpy(dtype=np.float64) for c in fixed])
    Xy = np.column_stack([X, data[response].to_numpy(dtype=np.float64)])

    Zs = []
    ZLs = []
    for k, f in enumerate(factors):
        Z = indicator_matrix(data[f])
        Zs.append(Z)
        L = Z.shape[1]
        if k == 0 and slopes is not None:
            x = data[slopes].to_numpy(dtype=np.float64)
            Zx = sp.csc_matrix(Z.multiply(x[:, np.newaxis]))
            order = np.column_stack([np.arange(L), L + np.arange(L)]).ravel()
            Z = sp.hstack([Z, Zx], format='csc')[:, order]
            Lam = sp.kron(sp.eye(L), _slope_template(theta[0]), format='csc')
        else:
            Lam = float(theta[k]) * sp.eye(L, format='csc')
        ZLs.append(sp.csc_matrix(Z @ Lam))

    q = len(factors)
    first_scalar = slopes is None
    grid = [[None] * (q + 1) for _ in range(q + 1)]

    for k in range(q):
        M = (ZLs[k].T @ ZLs[k]).tocsc() + sp.eye(ZLs[k].shape[1], format='csc')
        if k == 0 and not first_scalar:
            Md = M.toarray()
            grid[k][k] = HBlkDiagBlock(np.stack([Md[s:s + 2, s:s + 2] for s in range(0, Md.shape[0], 2)]))
        elif k == 0 or (k == 1 and first_scalar and _is_nested(Zs[0], Zs[1])):
            grid[k][k] = DiagonalBlock(M.diagonal())
        else:
            grid[k][k] = DenseBlock(M.toarray())

        for j in range(k + 1, q):
            M = (ZLs[k].T @ ZLs[j]).tocsc()
            if k == 0 and first_scalar:
                grid[k][j] = SparseBlock(M)
            else:
                grid[k][j] = DenseBlock(M.toarray())

        grid[k][q] = DenseBlock(np.asarray(ZLs[k].T @ Xy))

    grid[q][q] = DenseBlock(Xy.T @ Xy)
    return BlockMatrix(grid)

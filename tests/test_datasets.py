"""
Test cases for synthetic grouping data and penalized crossproducts.
"""

import pytest
import numpy as np
import pandas as pd
import scipy.sparse as sp

import sys
import os
# Add parent directory to path to find pyblockchol package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pyblockchol.blocks import BlockKind
from pyblockchol.datasets import make_grouping_data, indicator_matrix, penalized_crossproduct
from pyblockchol.factor import cfactor


def dense_crossproduct(data, factors, theta, fixed=('x',), response='y', slopes=None):
    """Reference A(θ) built with plain dense arrays."""
    n = len(data)
    columns = []
    for k, f in enumerate(factors):
        codes = pd.Categorical(data[f]).codes
        Z = np.eye(codes.max() + 1)[codes]
        if k == 0 and slopes is not None:
            t = np.atleast_1d(np.asarray(theta[0], dtype=float))
            T = t[0] * np.eye(2) if t.size == 1 else np.array([[t[0], 0.0], [t[1], t[2]]])
            x = data[slopes].to_numpy(dtype=float)
            for level in range(Z.shape[1]):
                columns.append(np.column_stack([Z[:, level], x * Z[:, level]]) @ T)
        else:
            columns.append(float(theta[k]) * Z)
    ZL = np.hstack(columns)
    q = ZL.shape[1]
    Xy = np.column_stack([np.ones(n)] + [data[c].to_numpy(dtype=float) for c in fixed]
                         + [data[response].to_numpy(dtype=float)])
    M = np.hstack([ZL, Xy])
    A = M.T @ M
    A[np.arange(q), np.arange(q)] += 1.0
    return A


class TestGroupingData:
    """Test simulated grouping data."""

    def test_columns(self):
        data = make_grouping_data(60, (6, 3), seed=1)

        assert isinstance(data, pd.DataFrame)
        assert len(data) == 60
        assert list(data.columns) == ['g1', 'g2', 'x', 'y']
        assert isinstance(data['g1'].dtype, pd.CategoricalDtype)
        assert data['g1'].nunique() == 6
        assert data['g2'].nunique() == 3

    def test_reproducible(self):
        a = make_grouping_data(50, (5,), seed=3)
        b = make_grouping_data(50, (5,), seed=3)
        pd.testing.assert_frame_equal(a, b)

    def test_nested(self):
        data = make_grouping_data(80, (8, 4, 2), nested=True)

        # every g1 level occurs in exactly one g2 level, and so on
        assert (data.groupby('g1', observed=True)['g2'].nunique() == 1).all()
        assert (data.groupby('g2', observed=True)['g3'].nunique() == 1).all()
        assert data['g3'].nunique() == 2

    def test_invalid_arguments(self):
        with pytest.raises(ValueError, match="at least one grouping factor"):
            make_grouping_data(10, ())
        with pytest.raises(ValueError, match="at least one level"):
            make_grouping_data(10, (0,))
        with pytest.raises(ValueError, match="n_obs"):
            make_grouping_data(5, (10,))
        with pytest.raises(ValueError, match="non-increasing"):
            make_grouping_data(20, (2, 4), nested=True)


class TestIndicatorMatrix:
    """Test indicator matrices of grouping factors."""

    def test_structure(self):
        Z = indicator_matrix(['b', 'a', 'b', 'c'])

        assert sp.issparse(Z)
        assert Z.format == 'csc'
        assert Z.shape == (4, 3)
        np.testing.assert_array_equal(Z.toarray(), [[0, 1, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]])

    def test_missing_values(self):
        with pytest.raises(ValueError, match="missing values"):
            indicator_matrix(pd.Series(['a', None, 'b']))


class TestPenalizedCrossproduct:
    """Test block structure and values of A(θ)."""

    def test_crossed_scalar_kinds(self):
        data = make_grouping_data(100, (10, 4), seed=2)
        bm = penalized_crossproduct(data, ['g1', 'g2'], theta=[0.7, 1.3])

        assert bm.sizes == [10, 4, 3]
        assert bm[0, 0].kind == BlockKind.DIAGONAL
        assert bm[0, 1].kind == BlockKind.SPARSE
        assert bm[1, 1].kind == BlockKind.DENSE
        assert bm[0, 2].kind == BlockKind.DENSE
        assert bm[2, 2].kind == BlockKind.DENSE

    def test_nested_scalar_kinds(self):
        data = make_grouping_data(100, (10, 5), nested=True, seed=2)
        bm = penalized_crossproduct(data, ['g1', 'g2'], theta=[0.7, 1.3])

        assert bm[1, 1].kind == BlockKind.DIAGONAL
        assert bm[0, 1].kind == BlockKind.SPARSE
        assert bm[0, 1].nnz == 10

    def test_slopes_kinds(self):
        data = make_grouping_data(90, (9, 3), seed=4)
        bm = penalized_crossproduct(data, ['g1', 'g2'], theta=[(1.0, 0.2, 0.5), 0.8], slopes='x')

        assert bm.sizes == [18, 3, 3]
        assert bm[0, 0].kind == BlockKind.HBLKDIAG
        assert bm[0, 0].nlevels == 9
        assert bm[0, 1].kind == BlockKind.DENSE

    @pytest.mark.parametrize("n_levels,nested,theta,slopes", [
        ((10, 4), False, [0.7, 1.3], None),
        ((10, 5), True, [0.7, 1.3], None),
        ((12, 4, 3), False, [0.5, 1.0, 2.0], None),
        ((9, 3), False, [(1.0, 0.2, 0.5), 0.8], 'x'),
        ((9, 3), False, [0.6, 0.8], 'x'),
        ((8,), False, [1.1], None),
    ])
    def test_matches_dense_reference(self, n_levels, nested, theta, slopes):
        data = make_grouping_data(96, n_levels, nested=nested, seed=5)
        factors = [f"g{k + 1}" for k in range(len(n_levels))]
        bm = penalized_crossproduct(data, factors, theta=theta, slopes=slopes)
        A = dense_crossproduct(data, factors, theta, slopes=slopes)

        np.testing.assert_allclose(bm.to_dense(), A, rtol=1e-10, atol=1e-10)

    @pytest.mark.parametrize("n_levels,nested,theta,slopes", [
        ((10, 4), False, [0.7, 1.3], None),
        ((10, 5), True, [0.7, 1.3], None),
        ((12, 4, 3), False, [0.5, 1.0, 2.0], None),
        ((9, 3), False, [(1.0, 0.2, 0.5), 0.8], 'x'),
    ])
    def test_factorizes(self, n_levels, nested, theta, slopes):
        data = make_grouping_data(96, n_levels, nested=nested, seed=6)
        factors = [f"g{k + 1}" for k in range(len(n_levels))]
        bm = penalized_crossproduct(data, factors, theta=theta, slopes=slopes)
        A = bm.to_dense()

        R = cfactor(bm)
        U = R.to_dense()

        np.testing.assert_allclose(U.T @ U, A, rtol=1e-8, atol=1e-8)
        sign, logdet = np.linalg.slogdet(A)
        assert sign > 0
        assert R.logdet() == pytest.approx(logdet, rel=1e-8)

    def test_zero_theta_is_identity_penalty(self):
        data = make_grouping_data(40, (5,), seed=7)
        bm = penalized_crossproduct(data, ['g1'], theta=[0.0])

        np.testing.assert_array_equal(bm[0, 0].diag, np.ones(5))
        np.testing.assert_array_equal(bm[0, 1].values, 0.0)

    def test_theta_count_mismatch(self):
        data = make_grouping_data(40, (5, 2), seed=7)
        with pytest.raises(ValueError, match="one theta per factor"):
            penalized_crossproduct(data, ['g1', 'g2'], theta=[1.0])

    def test_missing_column(self):
        data = make_grouping_data(40, (5,), seed=7)
        with pytest.raises(ValueError, match="Missing columns"):
            penalized_crossproduct(data, ['g1'], theta=[1.0], fixed=('age',))

    def test_bad_slope_parameters(self):
        data = make_grouping_data(40, (5,), seed=7)
        with pytest.raises(ValueError, match="1 or 3 values"):
            penalized_crossproduct(data, ['g1'], theta=[(1.0, 2.0)], slopes='x')

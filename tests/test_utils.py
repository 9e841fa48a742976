"""
Tests for block summaries, slicing helpers and structure plots.
"""

import pytest
import numpy as np
import pandas as pd
import scipy.sparse as sp
import sys
import os
import matplotlib
matplotlib.use('Agg')  # Use non-interactive backend for testing
import matplotlib.pyplot as plt

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pyblockchol.blocks import BlockMatrix
from pyblockchol.factor import cfactor
from pyblockchol.utils import block_summary, sizes_to_slices
from pyblockchol.plotting import plot_block_structure


def small_matrix():
    S = sp.csc_matrix(np.array([[1.0, 0.0], [0.0, 0.5], [0.0, 0.0]]))
    return BlockMatrix([
        [np.array([4.0, 4.0, 4.0]), S, np.ones((3, 1))],
        [None, np.eye(2) * 5.0, np.zeros((2, 1))],
        [None, None, np.array([[9.0]])],
    ])


class TestSizesToSlices:

    def test_slices(self):
        assert sizes_to_slices([2, 3]) == [slice(0, 2), slice(2, 5)]

    def test_zero_size_block(self):
        assert sizes_to_slices([1, 0, 2]) == [slice(0, 1), slice(1, 1), slice(1, 3)]

    def test_empty(self):
        assert sizes_to_slices([]) == []

    def test_matches_offsets(self):
        bm = small_matrix()
        off = bm.offsets
        for k, s in enumerate(sizes_to_slices(bm.sizes)):
            assert (s.start, s.stop) == (off[k], off[k + 1])


class TestBlockSummary:

    def test_columns_and_rows(self):
        df = block_summary(small_matrix())

        assert isinstance(df, pd.DataFrame)
        assert list(df.columns) == ['row', 'col', 'kind', 'nrows', 'ncols', 'nnz']
        assert len(df) == 6
        assert list(zip(df['row'], df['col'])) == [(0, 0), (0, 1), (0, 2), (1, 1), (1, 2), (2, 2)]

    def test_kinds_and_counts(self):
        df = block_summary(small_matrix()).set_index(['row', 'col'])

        assert df.loc[(0, 0), 'kind'] == 'diagonal'
        assert df.loc[(0, 0), 'nnz'] == 3
        assert df.loc[(0, 1), 'kind'] == 'sparse'
        assert df.loc[(0, 1), 'nnz'] == 2
        assert df.loc[(1, 1), 'nnz'] == 4
        assert df.loc[(0, 2), 'nrows'] == 3
        assert df.loc[(0, 2), 'ncols'] == 1

    def test_empty(self):
        df = block_summary(BlockMatrix([]))
        assert len(df) == 0
        assert list(df.columns) == ['row', 'col', 'kind', 'nrows', 'ncols', 'nnz']


class TestPlotBlockStructure:

    def teardown_method(self):
        plt.close('all')

    def test_returns_figure(self):
        fig = plot_block_structure(small_matrix())

        assert isinstance(fig, plt.Figure)
        ax = fig.axes[0]
        assert len(ax.patches) == 6
        assert "3 x 3 blocks" in ax.get_title()

    def test_existing_axes(self):
        fig, ax = plt.subplots()
        out = plot_block_structure(small_matrix(), ax=ax)
        assert out is fig

    def test_factor(self):
        R = cfactor(small_matrix())
        fig = plot_block_structure(R.matrix)
        labels = [t.get_text() for t in fig.axes[0].get_legend().get_texts()]
        assert labels == ['dense', 'diagonal', 'sparse']

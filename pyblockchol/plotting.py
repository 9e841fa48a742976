"""
Plotting functions for block matrices.
"""

import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from matplotlib.patches import Patch, Rectangle
from typing import Optional, Tuple

from .blocks import BlockKind, BlockMatrix


def plot_block_structure(bm: BlockMatrix, ax: Optional[plt.Axes] = None,
                         figsize: Tuple[int, int] = (6, 6)) -> plt.Figure:
    """
    Plot the stored upper triangle of a block matrix.

    Each stored block is shaded by its representation and its nonzero
    pattern is drawn on top, with lines at the block boundaries.

    Parameters
    ----------
    bm : BlockMatrix
        Block matrix (or its factor) to plot
    ax : plt.Axes, optional
        Axes to draw on; a new figure is created if omitted
    figsize : tuple, default=(6, 6)
        Figure size when creating a new figure

    Returns
    -------
    plt.Figure
        Matplotlib figure object
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    kinds = list(BlockKind)
    palette = dict(zip(kinds, sns.color_palette("pastel", len(kinds))))

    n = bm.shape[0]
    off = bm.offsets
    for (i, j), b in bm.items():
        ax.add_patch(Rectangle(
            (off[j] - 0.5, off[i] - 0.5), b.ncols, b.nrows,
            facecolor=palette[b.kind], edgecolor='none'
        ))

    pattern = bm.to_dense(symmetric=False)
    rows, cols = np.nonzero(pattern)
    ax.scatter(cols, rows, s=max(2.0, 400.0 / max(n, 1)), c='black', marker='s', linewidths=0)

    for pos in off[1:-1]:
        ax.axhline(pos - 0.5, color='grey', linewidth=0.8)
        ax.axvline(pos - 0.5, color='grey', linewidth=0.8)

    ax.set_xlim(-0.5, n - 0.5)
    ax.set_ylim(n - 0.5, -0.5)
    ax.set_aspect('equal')
    ax.set_title(f'Block structure ({bm.nblocks} x {bm.nblocks} blocks, n = {n})')

    present = sorted({b.kind for _, b in bm.items()}, key=kinds.index)
    ax.legend(handles=[Patch(facecolor=palette[k], label=k.value) for k in present],
              loc='lower left', fontsize='small')

    return fig

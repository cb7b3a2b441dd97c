"""
Consensus visualization utilities.

Provides functions for plotting rater performance and consensus overlays.
"""

from pathlib import Path
from typing import Optional, Union

import matplotlib.pyplot as plt
import numpy as np

from ..alignment.aligner import AlignedVolumes
from ..evaluation.evaluator import rater_names
from ..evaluation.staple import StapleResult
from ..utils.volume_ops import busiest_slice, positive_extent


def plot_rater_performance(
    result: StapleResult,
    output_path: Optional[Union[str, Path]] = None,
    show: bool = True,
    figsize: tuple = (6, 6),
    style: str = "bmh",
) -> plt.Figure:
    """
    Plot each rater in ROC space: sensitivity against 1 - specificity.

    Args:
        result: STAPLE result.
        output_path: Optional path to save figure.
        show: Whether to display the plot.
        figsize: Figure size (width, height).
        style: Matplotlib style.

    Returns:
        Matplotlib Figure object.
    """
    names = rater_names(result.sources)
    false_positive_rate = 1.0 - np.asarray(result.specificity)
    sensitivity = np.asarray(result.sensitivity)

    with plt.style.context(style):
        fig, ax = plt.subplots(figsize=figsize, constrained_layout=True)

        ax.plot([0, 1], [0, 1], color="gray", linestyle="--", linewidth=1, alpha=0.6)
        ax.scatter(false_positive_rate, sensitivity, s=60, color="#1f77b4", zorder=3)
        for name, x, y in zip(names, false_positive_rate, sensitivity):
            ax.annotate(name, (x, y), textcoords="offset points", xytext=(5, 5), fontsize=9)

        ax.set_xlim(-0.02, 1.02)
        ax.set_ylim(-0.02, 1.02)
        ax.set_xlabel("1 - Specificity")
        ax.set_ylabel("Sensitivity")
        ax.set_title(f"Rater Performance ({result.iterations} iterations)")
        ax.grid(True, alpha=0.3)

    if output_path:
        fig.savefig(output_path, dpi=150, bbox_inches="tight")

    if show:
        plt.show()

    return fig


def plot_consensus_slice(
    aligned: AlignedVolumes,
    result: StapleResult,
    index: Optional[int] = None,
    output_path: Optional[Union[str, Path]] = None,
    show: bool = True,
    figsize: tuple = (12, 4),
    crop_padding: Optional[int] = None,
) -> plt.Figure:
    """
    Show one master-grid slice: rater agreement, posterior weights and consensus.

    Args:
        aligned: Aligned rater volumes.
        result: STAPLE result computed from them.
        index: Slice index. If None, uses slice with max consensus area.
        output_path: Optional path to save figure.
        show: Whether to display the plot.
        figsize: Figure size.
        crop_padding: If given, crop to the voted region plus this many pixels.

    Returns:
        Matplotlib Figure object.
    """
    truth = result.true_segmentation
    if index is None:
        index = busiest_slice(truth)
    if not 0 <= index < truth.shape[0]:
        raise IndexError(f"Slice index {index} out of range for {truth.shape[0]} slices")

    votes = np.sum([aligned.restore(a)[index] for a in aligned.arrays], axis=0)
    weights = result.weights[index]
    consensus = truth[index]

    if crop_padding is not None:
        region = positive_extent(votes, consensus, padding=crop_padding)
        if region is not None:
            votes, weights, consensus = votes[region], weights[region], consensus[region]

    fig, axes = plt.subplots(1, 3, figsize=figsize)

    # Rater agreement
    im = axes[0].imshow(votes, cmap="viridis", vmin=0, vmax=len(aligned))
    axes[0].set_title("Rater Votes")
    axes[0].axis("off")
    fig.colorbar(im, ax=axes[0], fraction=0.046)

    # Posterior
    im = axes[1].imshow(weights, cmap="magma", vmin=0, vmax=1)
    axes[1].set_title("P(T=1 | D)")
    axes[1].axis("off")
    fig.colorbar(im, ax=axes[1], fraction=0.046)

    # Overlay
    axes[2].imshow(votes, cmap="gray", vmin=0, vmax=len(aligned))
    axes[2].imshow(np.ma.masked_equal(consensus, 0), cmap="jet", alpha=0.4, vmin=0, vmax=1)
    axes[2].set_title("Consensus")
    axes[2].axis("off")

    position = aligned.grid.positions[index]
    plt.suptitle(f"Slice {index} (position {position:.2f} mm)")
    plt.tight_layout()

    if output_path:
        fig.savefig(output_path, dpi=150, bbox_inches="tight")

    if show:
        plt.show()

    return fig

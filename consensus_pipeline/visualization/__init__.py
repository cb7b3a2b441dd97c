"""Visualization tools."""

from .plots import plot_consensus_slice, plot_rater_performance

__all__ = ["plot_rater_performance", "plot_consensus_slice"]

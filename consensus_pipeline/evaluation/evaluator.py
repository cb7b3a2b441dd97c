"""
Per-rater evaluation of consensus results.

Runs alignment and STAPLE for one or many cases and tabulates every rater's
performance against the estimated true segmentation.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from tqdm.auto import tqdm

from ..alignment.aligner import AlignedVolumes, Aligner
from ..configs.config import Config
from ..data.volumes import BinaryVolume
from ..errors import ConsensusError, InvalidArgumentError, ShapeMismatchError
from .metrics import compute_rater_metrics, dice_score
from .staple import ConsensusEstimator, StapleResult

logger = logging.getLogger(__name__)

RANKING_COLUMNS = ("sensitivity", "specificity", "dice")


def rater_names(sources: Sequence[Optional[str]]) -> List[str]:
    """Display names for raters, falling back to their input position."""
    return [s if s else f"rater_{i}" for i, s in enumerate(sources)]


def run_consensus(
    volumes: Sequence[BinaryVolume],
    config: Optional[Config] = None,
) -> Tuple[AlignedVolumes, StapleResult]:
    """
    Align volumes and run STAPLE on them.

    Args:
        volumes: One binary volume per rater.
        config: Pipeline configuration; defaults are used if omitted.

    Returns:
        Tuple of (aligned volumes, STAPLE result).
    """
    config = config or Config()

    aligned = Aligner.from_config(config.alignment).align(list(volumes))
    estimator = ConsensusEstimator.from_config(aligned, config.staple)
    result = estimator.solve()

    return aligned, result


class RaterEvaluator:
    """
    Tabulates rater performance for one STAPLE result.

    Sensitivity and specificity are the STAPLE estimates; Dice is measured
    against the rounded true segmentation on the full master grid.
    """

    def __init__(self, aligned: AlignedVolumes, result: StapleResult) -> None:
        """
        Initialize evaluator.

        Args:
            aligned: Volumes the result was computed from.
            result: STAPLE result.
        """
        if len(aligned) != result.n_raters:
            raise InvalidArgumentError(
                f"Result has {result.n_raters} raters but {len(aligned)} aligned volumes were given."
            )
        self.aligned = aligned
        self.result = result
        self.names = rater_names(aligned.sources)

    def evaluate(self) -> pd.DataFrame:
        """
        Build the per-rater score table.

        Returns:
            DataFrame with one row per rater, in input order.
        """
        truth = self.result.true_segmentation
        rows = []

        for index, array in enumerate(self.aligned.arrays):
            full = self.aligned.restore(array)
            rows.append(
                {
                    "rater": self.names[index],
                    "sensitivity": float(self.result.p[index]),
                    "specificity": float(self.result.q[index]),
                    "dice": dice_score(full, truth),
                    "positive_voxels": int(np.count_nonzero(full)),
                }
            )

        return pd.DataFrame(rows)

    def rank(self, by: str = "sensitivity", df: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """
        Order raters best first.

        Args:
            by: Column to rank on ("sensitivity", "specificity" or "dice").
            df: Score table; computed if omitted.

        Returns:
            DataFrame sorted in descending order of the chosen score.
        """
        if by not in RANKING_COLUMNS:
            raise InvalidArgumentError(f"Invalid argument 'by'. Expected one of {RANKING_COLUMNS}, got '{by}'.")
        df = self.evaluate() if df is None else df
        return df.sort_values(by, ascending=False, kind="stable").reset_index(drop=True)

    def compute_summary(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Compute summary statistics from the score table.

        Args:
            df: Score table from evaluate().

        Returns:
            Summary DataFrame with mean, std, min, max.
        """
        numeric_cols = df.select_dtypes(include=[np.number]).columns
        return df[numeric_cols].agg(["mean", "std", "min", "max"])

    def save_results(
        self,
        df: pd.DataFrame,
        output_path: Union[str, Path],
        include_summary: bool = True,
    ) -> Path:
        """
        Save rater scores to CSV.

        Args:
            df: Score table.
            output_path: Output CSV path.
            include_summary: Log summary statistics.

        Returns:
            Path to saved file.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        if include_summary:
            summary = self.compute_summary(df)
            logger.info(f"Rater score summary:\n{summary.to_string()}")

        df.to_csv(output_path, index=False)
        logger.info(f"Results saved to: {output_path}")

        return output_path


def score_against_master(
    aligned: AlignedVolumes,
    master: np.ndarray,
) -> pd.DataFrame:
    """
    Score every rater directly against an explicit reference segmentation.

    Args:
        aligned: Aligned rater volumes.
        master: Reference array on the full master grid.

    Returns:
        DataFrame with dice, sensitivity and specificity per rater.
    """
    master = np.asarray(master)
    if master.shape != aligned.full_shape:
        raise ShapeMismatchError(
            f"Master shape {master.shape} does not match aligned grid {aligned.full_shape}"
        )

    rows = []
    for name, array in zip(rater_names(aligned.sources), aligned.arrays):
        metrics = compute_rater_metrics(aligned.restore(array), master)
        metrics["rater"] = name
        rows.append(metrics)

    df = pd.DataFrame(rows)
    cols = ["rater"] + [c for c in df.columns if c != "rater"]
    return df[cols]


def evaluate_cases(
    cases: Dict[str, Sequence[BinaryVolume]],
    config: Optional[Config] = None,
    show_progress: bool = True,
) -> pd.DataFrame:
    """
    Run STAPLE for several cases and collect rater scores.

    Cases that fail validation are logged and skipped.

    Args:
        cases: Mapping of case ID to that case's rater volumes.
        config: Pipeline configuration.
        show_progress: Show progress bar.

    Returns:
        DataFrame with per-case, per-rater scores.
    """
    results = []
    iterator = cases.items()
    if show_progress:
        iterator = tqdm(list(iterator), desc="Estimating consensus")

    for case_id, volumes in iterator:
        try:
            aligned, result = run_consensus(volumes, config)
        except ConsensusError as e:
            logger.error(f"Error evaluating {case_id}: {e}")
            continue

        df = RaterEvaluator(aligned, result).evaluate()
        df.insert(0, "case_id", case_id)
        df["iterations"] = result.iterations
        df["converged"] = result.converged
        results.append(df)

    if not results:
        logger.warning("No valid evaluations completed")
        return pd.DataFrame()

    return pd.concat(results, ignore_index=True)

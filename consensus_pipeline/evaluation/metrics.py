"""
Rater agreement metrics.

Scores one binary segmentation against a reference (master) segmentation:
Dice overlap plus sensitivity and specificity.
"""

from typing import Dict

import numpy as np

from ..errors import ShapeMismatchError


def _as_bool_pair(prediction: np.ndarray, reference: np.ndarray):
    pred = np.asarray(prediction).astype(bool).ravel()
    ref = np.asarray(reference).astype(bool).ravel()
    if pred.size != ref.size:
        raise ShapeMismatchError(
            f"Shape mismatch: prediction {np.shape(prediction)} vs reference {np.shape(reference)}"
        )
    return pred, ref


def dice_score(
    prediction: np.ndarray,
    reference: np.ndarray,
    eps: float = 1e-6,
) -> float:
    """
    Compute Dice coefficient.

    Args:
        prediction: Binary rater mask.
        reference: Binary reference mask.
        eps: Small constant for numerical stability.

    Returns:
        Dice score in range [0, 1]; 1 when both masks are empty.
    """
    pred, ref = _as_bool_pair(prediction, reference)

    intersection = np.logical_and(pred, ref).sum()
    return float((2.0 * intersection + eps) / (pred.sum() + ref.sum() + eps))


def sensitivity_score(
    prediction: np.ndarray,
    reference: np.ndarray,
    eps: float = 1e-6,
) -> float:
    """
    Compute sensitivity (true positive fraction).

    Args:
        prediction: Binary rater mask.
        reference: Binary reference mask.
        eps: Small constant for numerical stability.

    Returns:
        Sensitivity in range [0, 1].
    """
    pred, ref = _as_bool_pair(prediction, reference)

    true_positives = np.logical_and(pred, ref).sum()
    return float(true_positives / (ref.sum() + eps))


def specificity_score(
    prediction: np.ndarray,
    reference: np.ndarray,
    eps: float = 1e-6,
) -> float:
    """
    Compute specificity (true negative fraction).

    Args:
        prediction: Binary rater mask.
        reference: Binary reference mask.
        eps: Small constant for numerical stability.

    Returns:
        Specificity in range [0, 1].
    """
    pred, ref = _as_bool_pair(prediction, reference)

    true_negatives = np.logical_and(~pred, ~ref).sum()
    return float(true_negatives / ((~ref).sum() + eps))


def compute_rater_metrics(
    prediction: np.ndarray,
    reference: np.ndarray,
) -> Dict[str, float]:
    """
    Compute all agreement metrics of a rater against a reference.

    Args:
        prediction: Binary rater mask.
        reference: Binary reference mask.

    Returns:
        Dictionary with dice, sensitivity, specificity and voxel counts.
    """
    return {
        "dice": dice_score(prediction, reference),
        "sensitivity": sensitivity_score(prediction, reference),
        "specificity": specificity_score(prediction, reference),
        "positive_voxels": int(np.count_nonzero(prediction)),
        "reference_voxels": int(np.count_nonzero(reference)),
    }

"""Consensus estimation and rater evaluation."""

from .metrics import compute_rater_metrics, dice_score, sensitivity_score, specificity_score
from .staple import ConsensusEstimator, StapleResult
from .evaluator import RaterEvaluator, evaluate_cases, run_consensus, score_against_master

__all__ = [
    "ConsensusEstimator",
    "StapleResult",
    "compute_rater_metrics",
    "dice_score",
    "sensitivity_score",
    "specificity_score",
    "RaterEvaluator",
    "evaluate_cases",
    "run_consensus",
    "score_against_master",
]

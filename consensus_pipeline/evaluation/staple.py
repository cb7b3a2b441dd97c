"""
STAPLE consensus estimation.

Simultaneous Truth And Performance Level Estimation: given binary decisions
D[i, j] of R raters over n voxels, Expectation-Maximization estimates the
hidden true segmentation T together with each rater's sensitivity
p[j] = P(D=1 | T=1) and specificity q[j] = P(D=0 | T=0).

E-step (log-space):
    log a[i] = sum_j D[i,j] log p[j] + (1 - D[i,j]) log(1 - p[j])
    log b[i] = sum_j (1 - D[i,j]) log q[j] + D[i,j] log(1 - q[j])
    W[i]     = a[i] pi / (a[i] pi + b[i] (1 - pi))

M-step:
    p[j] = sum_i W[i] D[i,j] / sum_i W[i]
    q[j] = sum_i (1 - W[i]) (1 - D[i,j]) / sum_i (1 - W[i])

Reference: Warfield, Zou & Wells, IEEE TMI 23(7), 2004.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.special import expit

from ..alignment.aligner import AlignedVolumes, KeptIndices, remove_empty_indices, restore_reduced
from ..errors import InvalidArgumentError, ShapeMismatchError

logger = logging.getLogger(__name__)

# W >= this threshold is a positive voxel, so W == 0.5 rounds up
TRUTH_THRESHOLD = 0.5


@dataclass(frozen=True, eq=False)
class StapleResult:
    """
    Outcome of one STAPLE run.

    Attributes:
        true_segmentation: uint8 array on the aligned grid shape (slices, rows, columns).
        weights: Posterior probability of a true positive for every voxel.
        p: Sensitivity per rater, in input order.
        q: Specificity per rater, in input order.
        phi: 2 x R matrix stacking p and q.
        prevalence: Prior probability of a true positive used in the last E-step.
        iterations: Number of EM iterations performed.
        converged: Whether the parameter change fell below tolerance.
        sources: Rater identities, when known.
    """

    true_segmentation: np.ndarray
    weights: np.ndarray
    p: np.ndarray
    q: np.ndarray
    phi: np.ndarray
    prevalence: float
    iterations: int
    converged: bool
    sources: Tuple[Optional[str], ...] = ()

    @property
    def sensitivity(self) -> np.ndarray:
        return self.p

    @property
    def specificity(self) -> np.ndarray:
        return self.q

    @property
    def n_raters(self) -> int:
        return len(self.p)


def _is_real(value) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool)


def _freeze(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


class ConsensusEstimator:
    """
    STAPLE estimator over two or more aligned binary volumes.

    All preconditions are checked at construction. ``solve`` always returns a
    result: non-convergence is bounded by ``max_iterations`` and reported via
    ``StapleResult.converged``.

    Example:
        >>> aligned = Aligner().align([volume_a, volume_b, volume_c])
        >>> estimator = ConsensusEstimator(aligned, max_iterations=25)
        >>> result = estimator.solve()
        >>> result.p, result.q
    """

    def __init__(
        self,
        volumes: Union[AlignedVolumes, Sequence[np.ndarray]],
        max_iterations: int = 5,
        tolerance: float = 1e-6,
        initial_sensitivity: float = 0.99999,
        initial_specificity: float = 0.99999,
        prevalence: Optional[float] = None,
        estimate_prevalence: bool = False,
    ) -> None:
        """
        Initialize estimator.

        Args:
            volumes: AlignedVolumes, or a list of equally shaped binary arrays.
            max_iterations: Upper bound on EM iterations.
            tolerance: Stop when no sensitivity or specificity changes by more
                than this between iterations.
            initial_sensitivity: Starting value of every p[j], in (0, 1).
            initial_specificity: Starting value of every q[j], in (0, 1).
            prevalence: Fixed prior P(T=1). Defaults to the mean of all decisions.
            estimate_prevalence: Re-estimate the prior as mean(W) after each iteration.

        Raises:
            InvalidArgumentError: Wrong input type, fewer than two raters,
                non-binary data or out-of-range options.
            ShapeMismatchError: Raters with different array shapes.
        """
        if isinstance(volumes, AlignedVolumes):
            arrays = list(volumes.arrays)
            self.sources = tuple(volumes.sources)
            self.full_shape = volumes.full_shape
            self._kept: Optional[KeptIndices] = volumes.kept_indices
        elif isinstance(volumes, (list, tuple)):
            arrays = [np.asarray(v) for v in volumes]
            self.sources = tuple([None] * len(arrays))
            self.full_shape = arrays[0].shape if arrays else ()
            self._kept = None
        else:
            raise InvalidArgumentError(
                f"Invalid argument 'volumes'. Expected AlignedVolumes or list of arrays, "
                f"got {type(volumes).__name__}."
            )

        if len(arrays) < 2:
            raise InvalidArgumentError(
                f"Invalid argument 'volumes'. Expected at least 2 raters, got {len(arrays)}."
            )

        shapes = [a.shape for a in arrays]
        if len(set(shapes)) > 1:
            raise ShapeMismatchError(
                f"Invalid argument 'volumes'. Expected raters with equal shapes, got {shapes}."
            )
        if arrays[0].size == 0:
            raise InvalidArgumentError("Invalid argument 'volumes'. Expected non-empty arrays.")

        for index, array in enumerate(arrays):
            if array.dtype.kind not in "biu" or array.min() < 0 or array.max() > 1:
                raise InvalidArgumentError(
                    f"Invalid argument 'volumes'. Rater {index} is not a binary 0/1 array."
                )

        if isinstance(max_iterations, bool) or not isinstance(max_iterations, (int, np.integer)) or max_iterations < 1:
            raise InvalidArgumentError(
                f"Invalid option 'max_iterations'. Expected positive integer, got {max_iterations!r}."
            )
        if not _is_real(tolerance) or tolerance < 0:
            raise InvalidArgumentError(f"Invalid option 'tolerance'. Expected number >= 0, got {tolerance!r}.")
        for name, value in (
            ("initial_sensitivity", initial_sensitivity),
            ("initial_specificity", initial_specificity),
        ):
            if not _is_real(value) or not 0.0 < value < 1.0:
                raise InvalidArgumentError(f"Invalid option '{name}'. Expected value in (0, 1), got {value}.")
        if prevalence is not None and (not _is_real(prevalence) or not 0.0 <= prevalence <= 1.0):
            raise InvalidArgumentError(f"Invalid option 'prevalence'. Expected value in [0, 1], got {prevalence!r}.")

        self._arrays: List[np.ndarray] = [a.astype(np.uint8) for a in arrays]
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.initial_sensitivity = float(initial_sensitivity)
        self.initial_specificity = float(initial_specificity)
        self.prevalence = prevalence
        self.estimate_prevalence = estimate_prevalence
        self._result: Optional[StapleResult] = None

    @classmethod
    def from_config(
        cls,
        volumes: Union[AlignedVolumes, Sequence[np.ndarray]],
        config,
    ) -> "ConsensusEstimator":
        """
        Create from a StapleConfig, applying its volume reduction setting.
        """
        estimator = cls(
            volumes,
            max_iterations=config.max_iterations,
            tolerance=config.tolerance,
            initial_sensitivity=config.initial_sensitivity,
            initial_specificity=config.initial_specificity,
            prevalence=config.prevalence,
            estimate_prevalence=config.estimate_prevalence,
        )
        if config.remove_empty_indices:
            estimator.remove_empty_indices()
        return estimator

    @property
    def n_raters(self) -> int:
        return len(self._arrays)

    @property
    def n_voxels(self) -> int:
        """Voxels entering the analysis (after any reduction)."""
        return int(self._arrays[0].size)

    @property
    def working_shape(self) -> Tuple[int, ...]:
        return self._arrays[0].shape

    def remove_empty_indices(self) -> "ConsensusEstimator":
        """
        Restrict the analysis to indices positive for at least one rater.

        Along each axis (slice, row, column), indices that no rater segmented
        are dropped. This raises the contrast of the specificity scores. The
        true segmentation is still reported on the full aligned shape.

        Returns:
            self, for chaining.
        """
        reduced, kept = remove_empty_indices(self._arrays)
        if self._kept is not None:
            kept = tuple(old[new] for old, new in zip(self._kept, kept))
        self._arrays = reduced
        self._kept = kept
        self._result = None
        return self

    def decisions(self) -> np.ndarray:
        """Decision matrix of shape (n_voxels, n_raters)."""
        return np.stack([a.reshape(-1) for a in self._arrays], axis=1).astype(bool)

    @staticmethod
    def _expectation(
        decisions: np.ndarray,
        p: np.ndarray,
        q: np.ndarray,
        prevalence: float,
    ) -> np.ndarray:
        """Posterior probability W of a true positive at every voxel."""
        with np.errstate(divide="ignore"):
            log_p, log_not_p = np.log(p), np.log(1.0 - p)
            log_q, log_not_q = np.log(q), np.log(1.0 - q)
            log_prior, log_not_prior = np.log(prevalence), np.log(1.0 - prevalence)

        # np.where keeps -inf terms out of 0 * -inf products
        log_a = np.where(decisions, log_p, log_not_p).sum(axis=1) + log_prior
        log_b = np.where(decisions, log_not_q, log_q).sum(axis=1) + log_not_prior

        with np.errstate(invalid="ignore"):
            weights = expit(log_a - log_b)

        # Both hypotheses impossible: no evidence for a positive
        weights[np.isneginf(log_a) & np.isneginf(log_b)] = 0.0
        return weights

    @staticmethod
    def _maximization(
        decisions: np.ndarray,
        weights: np.ndarray,
        p: np.ndarray,
        q: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, bool, bool]:
        """Updated (p, q) plus flags telling whether each denominator was zero."""
        positive = decisions.astype(np.float64)
        negative = 1.0 - positive
        not_weights = 1.0 - weights

        weight_sum = weights.sum()
        not_weight_sum = not_weights.sum()

        no_positives = weight_sum <= 0.0
        no_negatives = not_weight_sum <= 0.0

        new_p = p.copy() if no_positives else (weights @ positive) / weight_sum
        new_q = q.copy() if no_negatives else (not_weights @ negative) / not_weight_sum

        # Rounding can leave a ratio one ulp above 1
        np.clip(new_p, 0.0, 1.0, out=new_p)
        np.clip(new_q, 0.0, 1.0, out=new_q)

        return new_p, new_q, no_positives, no_negatives

    def solve(self) -> StapleResult:
        """
        Run STAPLE until convergence or ``max_iterations``.

        Returns:
            StapleResult; its fields are also exposed on the estimator.
        """
        decisions = self.decisions()
        n_voxels, n_raters = decisions.shape

        p = np.full(n_raters, self.initial_sensitivity)
        q = np.full(n_raters, self.initial_specificity)
        prevalence = float(decisions.mean()) if self.prevalence is None else float(self.prevalence)

        no_positives = no_negatives = False
        converged = False
        iteration = 0

        logger.info(
            f"Running STAPLE: {n_raters} raters, {n_voxels} voxels, "
            f"prevalence={prevalence:.4f}, max_iterations={self.max_iterations}"
        )

        for iteration in range(1, self.max_iterations + 1):
            weights = self._expectation(decisions, p, q, prevalence)
            new_p, new_q, no_positives, no_negatives = self._maximization(decisions, weights, p, q)

            change = max(np.abs(new_p - p).max(), np.abs(new_q - q).max())
            p, q = new_p, new_q
            if self.estimate_prevalence:
                prevalence = float(weights.mean())

            logger.debug(f"Iteration {iteration}: max parameter change {change:.3e}")

            if change < self.tolerance:
                converged = True
                break

        if not converged:
            logger.info(f"STAPLE stopped after {iteration} iterations without converging")

        # An empty truth class means no errors of that kind were possible
        if no_positives:
            p = np.ones(n_raters)
        if no_negatives:
            q = np.ones(n_raters)

        truth = (weights >= TRUTH_THRESHOLD).astype(np.uint8).reshape(self.working_shape)
        weights = weights.reshape(self.working_shape)
        if self._kept is not None:
            truth = restore_reduced(truth, self._kept, self.full_shape)
            weights = restore_reduced(weights, self._kept, self.full_shape)

        self._result = StapleResult(
            true_segmentation=_freeze(truth),
            weights=_freeze(weights),
            p=_freeze(p.copy()),
            q=_freeze(q.copy()),
            phi=_freeze(np.vstack([p, q])),
            prevalence=prevalence,
            iterations=iteration,
            converged=converged,
            sources=self.sources,
        )

        logger.info(
            f"STAPLE finished after {iteration} iterations: "
            f"p={np.round(p, 3).tolist()}, q={np.round(q, 3).tolist()}"
        )
        return self._result

    @property
    def result(self) -> StapleResult:
        if self._result is None:
            raise RuntimeError("No result available. Call solve() first.")
        return self._result

    @property
    def true_segmentation(self) -> np.ndarray:
        return self.result.true_segmentation

    @property
    def weights(self) -> np.ndarray:
        return self.result.weights

    @property
    def p(self) -> np.ndarray:
        return self.result.p

    @property
    def q(self) -> np.ndarray:
        return self.result.q

    @property
    def phi(self) -> np.ndarray:
        return self.result.phi

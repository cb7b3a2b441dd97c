"""Shared fixtures for the consensus pipeline tests."""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

from consensus_pipeline.data.volumes import BinarySlice, BinaryVolume


# One expert and four perturbed segmentations of a 1 x 20 pixel slice
EXPERT = [1, 1, 1, 1, 1, 0, 0, 0, 0, 0, 1, 1, 1, 1, 1, 0, 0, 0, 0, 0]
FIVE_RATERS = [
    EXPERT,
    [1, 1, 1, 1, 0, 0, 0, 0, 0, 0, 0, 1, 1, 1, 0, 0, 0, 0, 0, 0],  # lacking 3
    [1, 1, 1, 1, 1, 1, 0, 1, 0, 1, 1, 1, 1, 1, 1, 1, 0, 0, 0, 0],  # 4 false positives
    [1, 0, 0, 1, 1, 0, 0, 0, 0, 0, 1, 1, 0, 1, 1, 0, 0, 0, 0, 0],  # lacking 3
    [1, 1, 1, 0, 1, 0, 0, 0, 0, 1, 1, 1, 1, 1, 1, 1, 0, 0, 1, 1],  # lacking 1, 4 false positives
]
EXPECTED_SENSITIVITY = [1.0, 0.7, 1.0, 0.7, 0.9]
EXPECTED_SPECIFICITY = [1.0, 1.0, 0.6, 1.0, 0.6]


@pytest.fixture
def expert():
    return np.array(EXPERT, dtype=np.uint8).reshape(1, 1, 20)


@pytest.fixture
def five_rater_arrays():
    """Five (slices=1, rows=1, columns=20) rater arrays."""
    return [np.array(r, dtype=np.uint8).reshape(1, 1, 20) for r in FIVE_RATERS]


@pytest.fixture
def five_rater_volumes():
    names = ["expert", "resident", "generous", "sparse", "noisy"]
    return [
        BinaryVolume.from_array(np.array([r], dtype=np.uint8), positions=[0.0], source=name)
        for name, r in zip(names, FIVE_RATERS)
    ]


@pytest.fixture
def make_slice():
    """Factory for BinarySlices on the axial plane."""

    def _make(labels, position=0.0, spacing=(1.0, 1.0), origin=(0.0, 0.0, 0.0), **kwargs):
        return BinarySlice(np.asarray(labels, dtype=np.uint8), position, spacing, origin=origin, **kwargs)

    return _make


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def expected_sensitivity():
    return EXPECTED_SENSITIVITY


@pytest.fixture
def expected_specificity():
    return EXPECTED_SPECIFICITY

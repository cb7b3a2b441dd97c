import numpy as np
import pytest

from consensus_pipeline.data.volumes import AXIAL_COSINES, BinarySlice, BinaryVolume
from consensus_pipeline.errors import InvalidArgumentError, ShapeMismatchError


class TestBinarySlice:
    def test_shape_and_counts(self, make_slice):
        s = make_slice([[1, 0, 1], [0, 0, 1]])
        assert s.rows == 2
        assert s.columns == 3
        assert s.shape == (2, 3)
        assert s.positive_count == 3

    def test_labels_are_read_only_copies(self):
        labels = np.array([[1, 0], [0, 1]], dtype=np.uint8)
        s = BinarySlice(labels, 0.0)

        labels[0, 0] = 0
        assert s.labels[0, 0] == 1
        with pytest.raises(ValueError):
            s.labels[0, 0] = 0

    def test_bool_labels_are_accepted(self):
        s = BinarySlice(np.array([[True, False]]), 1.0)
        assert s.labels.dtype == np.uint8

    @pytest.mark.parametrize(
        "labels",
        [
            np.zeros((2, 2, 2), dtype=np.uint8),
            np.array([[0, 2]]),
            np.array([[0.0, 1.0]]),
            np.array([[-1, 0]]),
        ],
    )
    def test_rejects_invalid_labels(self, labels):
        with pytest.raises(InvalidArgumentError):
            BinarySlice(labels, 0.0)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"spacing": (0.0, 1.0)},
            {"spacing": (1.0,)},
            {"cosines": (1.0, 0.0, 0.0)},
            {"origin": (1.0,)},
            {"position": float("nan")},
            {"position": "top"},
        ],
    )
    def test_rejects_invalid_geometry(self, kwargs):
        args = {"labels": np.zeros((2, 2), dtype=np.uint8), "position": 0.0}
        args.update(kwargs)
        with pytest.raises(InvalidArgumentError):
            BinarySlice(**args)

    def test_two_value_origin_gets_zero_z(self, make_slice):
        s = make_slice([[1]], origin=(3.0, 4.0))
        assert s.origin == (3.0, 4.0, 0.0)

    def test_directions(self, make_slice):
        s = make_slice([[1]])
        np.testing.assert_array_equal(s.row_direction, AXIAL_COSINES[:3])
        np.testing.assert_array_equal(s.column_direction, AXIAL_COSINES[3:])

    def test_area(self, make_slice):
        s = make_slice([[1, 1, 0], [0, 1, 0]], spacing=(0.5, 2.0))
        assert s.pixel_area == pytest.approx(1.0)
        assert s.area() == pytest.approx(3.0)
        assert s.area(positive=False) == pytest.approx(3.0)

    def test_selection(self, make_slice):
        s = make_slice([[0, 1], [1, 0]])
        np.testing.assert_array_equal(s.selection().indices, [1, 2])

    def test_equality(self, make_slice):
        a = make_slice([[1, 0]], position=2.0)
        b = make_slice([[1, 0]], position=2.0)
        assert a == b
        assert hash(a) == hash(b)
        assert a != make_slice([[0, 1]], position=2.0)
        assert a != make_slice([[1, 0]], position=3.0)

    def test_with_labels_keeps_geometry(self, make_slice):
        s = make_slice([[1, 0]], position=5.0, spacing=(0.7, 0.7))
        other = s.with_labels(np.array([[0, 1]]))
        assert other.position == 5.0
        assert other.spacing == (0.7, 0.7)
        np.testing.assert_array_equal(other.labels, [[0, 1]])


class TestBinaryVolume:
    def test_slices_sorted_by_position(self, make_slice):
        volume = BinaryVolume([make_slice([[1]], position=3.0), make_slice([[0]], position=-1.0)])
        assert volume.positions == [-1.0, 3.0]
        assert len(volume) == 2
        assert [s.position for s in volume] == [-1.0, 3.0]

    def test_duplicate_position_raises(self, make_slice):
        with pytest.raises(InvalidArgumentError):
            BinaryVolume([make_slice([[1]], position=1.0), make_slice([[0]], position=1.0)])

    def test_rejects_non_slices(self):
        with pytest.raises(InvalidArgumentError):
            BinaryVolume([np.zeros((2, 2))])

    def test_with_slice_returns_new_volume(self, make_slice):
        volume = BinaryVolume([make_slice([[1]], position=0.0)], source="a")
        bigger = volume.with_slice(make_slice([[0]], position=1.0))
        assert len(volume) == 1
        assert len(bigger) == 2
        assert bigger.source == "a"

    def test_slice_at(self, make_slice):
        volume = BinaryVolume([make_slice([[1]], position=2.5)])
        assert volume.slice_at(2.5).positive_count == 1
        assert volume.slice_at(7.0) is None

    def test_to_array(self):
        array = np.zeros((3, 2, 4), dtype=np.uint8)
        array[1, 1, 3] = 1
        volume = BinaryVolume.from_array(array, positions=[10.0, 12.0, 14.0])

        out = volume.to_array()

        assert out.shape == (3, 2, 4)
        np.testing.assert_array_equal(out, array)
        assert volume.rows == 2
        assert volume.columns == 4
        assert volume.positive_count == 1

    def test_to_array_empty_raises(self):
        with pytest.raises(InvalidArgumentError):
            BinaryVolume().to_array()

    def test_to_array_mixed_shapes_raises(self, make_slice):
        volume = BinaryVolume([make_slice([[1, 0]], position=0.0), make_slice([[1], [0]], position=1.0)])
        with pytest.raises(ShapeMismatchError):
            volume.to_array()

    def test_from_array_defaults(self):
        volume = BinaryVolume.from_array(np.ones((2, 3), dtype=np.uint8), source="r")
        assert volume.positions == [0.0]
        assert volume.source == "r"

    def test_from_array_position_count_must_match(self):
        with pytest.raises(InvalidArgumentError):
            BinaryVolume.from_array(np.zeros((2, 2, 2), dtype=np.uint8), positions=[0.0])

    def test_from_threshold_is_inclusive(self):
        values = np.array([[[10.0, 20.0, 30.0, 40.0]]])
        volume = BinaryVolume.from_threshold(values, minimum=20.0, maximum=30.0)
        np.testing.assert_array_equal(volume.to_array(), [[[0, 1, 1, 0]]])

    def test_from_threshold_single_limit(self):
        values = np.array([[[10.0, 20.0, 30.0]]])
        volume = BinaryVolume.from_threshold(values, minimum=25.0)
        np.testing.assert_array_equal(volume.to_array(), [[[0, 0, 1]]])

    def test_from_threshold_needs_a_limit(self):
        with pytest.raises(InvalidArgumentError):
            BinaryVolume.from_threshold(np.zeros((1, 2, 2)))

    def test_filled_like(self):
        volume = BinaryVolume.from_array(np.zeros((2, 2, 3), dtype=np.uint8), positions=[1.0, 2.0])
        filled = BinaryVolume.filled_like(volume, source="all")
        assert filled.positions == [1.0, 2.0]
        assert filled.to_array().min() == 1
        assert filled.source == "all"

    def test_equality(self):
        a = BinaryVolume.from_array(np.eye(3, dtype=np.uint8), source="x")
        b = BinaryVolume.from_array(np.eye(3, dtype=np.uint8), source="x")
        assert a == b
        assert hash(a) == hash(b)
        assert a != BinaryVolume.from_array(np.eye(3, dtype=np.uint8), source="y")

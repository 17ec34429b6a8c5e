"""Tests for radial, divisor and index masks."""

import numpy as np
import pytest

from py_terramp.core.dense_matrix import DenseMatrix
from py_terramp.core.index_mask import build_index_mask, capped_max, dilate_selection, tile_grid_shape
from py_terramp.core.radial_mask import build_divisor_mask, build_radial_mask, build_useful_indices


class TestRadialMask:
    """Test the radial blending mask."""

    def test_literal_3x3(self):
        """Test center, edge-midpoint and corner values of a 3x3 mask."""
        mask = build_radial_mask(3).to_numpy()
        assert mask[1, 1] == 1.0
        for row, column in [(0, 1), (1, 0), (1, 2), (2, 1)]:
            assert mask[row, column] == pytest.approx(1.0 / 9.0, rel=1e-5)
        for row, column in [(0, 0), (0, 2), (2, 0), (2, 2)]:
            assert mask[row, column] == 0.0

    @pytest.mark.parametrize("size", [1, 3, 5, 9, 17])
    def test_center_is_one_for_odd_sizes(self, size):
        mask = build_radial_mask(size)
        assert mask[size // 2, size // 2] == 1.0

    @pytest.mark.parametrize("size", [3, 4, 7, 8, 16])
    def test_symmetry(self, size):
        """Test invariance under rotation and flips."""
        mask = build_radial_mask(size)
        values = mask.to_numpy()

        rotated = build_radial_mask(size)
        rotated.rotate90_clockwise()
        np.testing.assert_array_equal(rotated.to_numpy(), values)
        np.testing.assert_array_equal(np.flip(values, axis=0), values)
        np.testing.assert_array_equal(np.flip(values, axis=1), values)
        np.testing.assert_array_equal(values.T, values)

    def test_values_in_unit_range_and_monotonic(self):
        """Test that weights fall off from the center along a row."""
        values = build_radial_mask(9).to_numpy()
        assert values.min() >= 0.0
        assert values.max() <= 1.0
        center_row = values[4]
        assert np.all(np.diff(center_row[4:]) <= 0)
        assert np.all(np.diff(center_row[:5]) >= 0)

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            build_radial_mask(0)

    def test_useful_indices(self):
        mask = build_radial_mask(3)
        np.testing.assert_array_equal(build_useful_indices(mask), [1, 3, 4, 5, 7])


class TestDivisorMask:
    """Test overlap-add normalization."""

    @pytest.mark.parametrize("size,stride", [(8, 4), (16, 8), (12, 4), (9, 3), (24, 8)])
    def test_unity_gain(self, size, stride):
        """Test that tiled mask weight times divisor is one at every interior point."""
        mask = build_radial_mask(size)
        divisor = build_divisor_mask(mask, stride).to_numpy()
        assert divisor.shape == (stride, stride)

        tiles = 10
        extent = (tiles - 1) * stride + size
        coverage = np.zeros((extent, extent), dtype=np.float64)
        for i in range(tiles):
            for j in range(tiles):
                coverage[i * stride:i * stride + size, j * stride:j * stride + size] += mask.to_numpy()

        interior = range(size, extent - size)
        for row in interior:
            for column in interior:
                gain = coverage[row, column] * divisor[row % stride, column % stride]
                assert gain == pytest.approx(1.0, abs=1e-5)

    def test_stride_beyond_support(self):
        """Test that uncovered positions are reported instead of divided by zero."""
        with pytest.raises(ValueError):
            build_divisor_mask(build_radial_mask(3), 4)

    def test_divisor_positive(self):
        divisor = build_divisor_mask(build_radial_mask(8), 4)
        assert np.all(divisor.array > 0)


class TestIndexMask:
    """Test per-tile dictionary selection."""

    def test_capped_max_policy(self):
        """Test the largest value strictly between zero and the cap wins."""
        assert capped_max(np.array([[0, 3], [1, 7]], dtype=np.uint8), 4) == 3
        assert capped_max(np.array([[0, 0], [0, 0]], dtype=np.uint8), 4) == 0
        assert capped_max(np.array([[5, 9], [200, 4]], dtype=np.uint8), 4) == 0
        assert capped_max(np.array([[2, 1], [2, 1]], dtype=np.uint8), 3) == 2

    def test_indices_in_range(self, rng):
        """Test every index lies in [0, dictionary_count)."""
        for dictionary_count in (1, 2, 3, 7):
            hints = rng.integers(0, 256, size=(20, 20)).astype(np.uint8)
            padded = dilate_selection(hints, 8)
            tiles_high, tiles_wide = tile_grid_shape(20, 20, 4, 2)
            mask = build_index_mask(padded, 4, 2, tiles_high, tiles_wide, dictionary_count)
            assert mask.shape == (tiles_high * tiles_wide,)
            assert mask.min() >= 0
            assert mask.max() < dictionary_count

    def test_regions_follow_tile_layout(self):
        """Test that each tile reads its own region of the hint grid."""
        hints = np.zeros((8, 8), dtype=np.uint8)
        hints[4:8, 4:8] = 2
        hints[0:4, 4:8] = 1
        mask = build_index_mask(hints, 4, 4, 2, 2, 3)
        np.testing.assert_array_equal(mask, [0, 1, 0, 2])

    def test_single_dictionary_always_zero(self):
        hints = np.full((6, 6), 5, dtype=np.uint8)
        mask = build_index_mask(hints, 2, 2, 3, 3, 1)
        assert np.all(mask == 0)

    def test_dilate_selection_replicates_edges(self):
        hints = np.array([[1, 2], [3, 4]], dtype=np.uint8)
        padded = dilate_selection(hints, 4)
        assert padded.shape == (6, 6)
        assert padded[0, 0] == 1
        assert padded[5, 5] == 4
        assert padded[0, 5] == 2
        np.testing.assert_array_equal(padded[2:4, 2:4], hints)

    def test_tile_grid_shape(self):
        assert tile_grid_shape(8, 10, 4, 2) == (6, 7)

"""Tests for overlap-add synthesis and band locking."""

import math
import threading
import time

import numpy as np
import pytest

from py_terramp.core.dense_matrix import DenseMatrix
from py_terramp.core.matching import NO_MATCH, Coefficients
from py_terramp.core.radial_mask import build_divisor_mask, build_radial_mask
from py_terramp.core.synthesis import (
    hold_locks,
    lock_reach,
    normalization,
    normalize,
    synthesize,
    tiled_divisor,
)


class TestBandLocks:
    """Test the ascending-order lock discipline."""

    def test_lock_reach(self):
        assert lock_reach(8, 4) == 1
        assert lock_reach(4, 4) == 1
        assert lock_reach(12, 4) == 2
        assert lock_reach(16, 4) == 3

    def test_hold_and_release(self):
        locks = [threading.Lock() for _ in range(3)]
        with hold_locks(locks, 5):
            assert all(lock.locked() for lock in locks)
        assert not any(lock.locked() for lock in locks)

    def test_released_on_error(self):
        locks = [threading.Lock(), threading.Lock()]
        with pytest.raises(RuntimeError):
            with hold_locks(locks, 5):
                raise RuntimeError("boom")
        assert not any(lock.locked() for lock in locks)

    def test_retries_until_contended_lock_frees(self):
        """Test that a timed-out attempt backs off and later succeeds."""
        locks = [threading.Lock(), threading.Lock()]
        locks[1].acquire()

        def release_later():
            time.sleep(0.05)
            locks[1].release()

        releaser = threading.Thread(target=release_later)
        releaser.start()
        with hold_locks(locks, 1):
            assert locks[0].locked() and locks[1].locked()
        releaser.join()
        assert not locks[0].locked()


class TestNormalization:
    """Test output scaling."""

    def test_regular_range(self):
        offset, scale = normalization(-1.0, 1.0)
        assert offset == -1.0
        assert scale == pytest.approx(65535.0 / 2.0)

    def test_flat_output_uses_identity(self):
        assert normalization(0.5, 0.5) == (0.0, 1.0)

    def test_empty_output_uses_identity(self):
        assert normalization(math.inf, -math.inf) == (0.0, 1.0)

    def test_normalize_clamps(self):
        grid = DenseMatrix(1, 3, np.array([-1.0, 0.5, 2.0]))
        result = normalize(grid, 0.0, 65535.0)
        np.testing.assert_allclose(result.array, [0.0, 32767.5, 65535.0])


class TestSynthesize:
    """Test tile reconstruction."""

    def test_single_tile_reconstruction(self):
        """Test mean and atom terms land at the tile origin, atom column-major."""
        size = 4
        ones_mask = DenseMatrix(size, size, np.ones(size * size))
        divisor = DenseMatrix(size, size, np.ones(size * size))
        high = DenseMatrix(1, size * size, np.arange(size * size, dtype=np.float32))
        coefficients = Coefficients(np.array([0]), np.array([0.5]), 1)
        means = DenseMatrix(1, 1, np.array([2.0]))

        result = synthesize(1, 1, coefficients, [high], np.array([0]), means, ones_mask, divisor,
                            stride_high=size, output_rows=6, output_columns=6, workers=1)

        output = result.grid.to_numpy()
        rows, columns = np.meshgrid(np.arange(size), np.arange(size), indexing="ij")
        expected = 2.0 + 0.5 * (columns * size + rows)
        np.testing.assert_allclose(output[:size, :size], expected)
        assert np.all(output[size:, :] == 0)
        assert np.all(output[:, size:] == 0)
        assert result.minimum == pytest.approx(expected.min())
        assert result.maximum == pytest.approx(expected.max())

    def test_zero_mask_positions_untouched(self):
        """Test that positions outside the radial support are never written."""
        mask_high = build_radial_mask(4)
        divisor = DenseMatrix(4, 4, np.ones(16))
        coefficients = Coefficients(np.array([0]), np.array([1.0]), 1)
        high = DenseMatrix(1, 16, np.full(16, 3.0))
        means = DenseMatrix(1, 1, np.array([1.0]))

        result = synthesize(1, 1, coefficients, [high], np.array([0]), means, mask_high, divisor,
                            stride_high=4, output_rows=4, output_columns=4, workers=1)
        output = result.grid.to_numpy()
        zero = mask_high.to_numpy() == 0
        assert zero.any()
        assert np.all(output[zero] == 0)
        assert np.all(output[~zero] >= 3.0)

    def test_flat_field_unity_gain(self):
        """Test that unmatched tiles reconstruct their mean inside full coverage."""
        size, stride, tiles = 8, 4, 6
        mask_high = build_radial_mask(size)
        divisor = build_divisor_mask(mask_high, stride)
        coefficients = Coefficients(np.full(tiles * tiles, NO_MATCH), np.zeros(tiles * tiles), 1)
        means = DenseMatrix(tiles, tiles, np.full(tiles * tiles, 0.5))
        extent = (tiles - 1) * stride + size

        result = synthesize(tiles, tiles, coefficients, [DenseMatrix(1, size * size)],
                            np.zeros(tiles * tiles, dtype=np.int32), means, mask_high, divisor,
                            stride_high=stride, output_rows=extent, output_columns=extent, workers=3)

        interior = result.grid.to_numpy()[size:extent - size, size:extent - size]
        np.testing.assert_allclose(interior, 0.5, atol=1e-5)

    def test_parallel_bands_match_serial(self, rng):
        """Test that concurrent overlapping bands accumulate like a serial run."""
        size, stride, tiles = 12, 4, 7
        tile_count = tiles * tiles
        mask_high = build_radial_mask(size)
        divisor = build_divisor_mask(mask_high, stride)
        high_banks = [DenseMatrix.from_numpy(rng.standard_normal((3, size * size))) for _ in range(2)]
        coefficients = Coefficients(rng.integers(-1, 3, size=tile_count),
                                    rng.random(tile_count), 3)
        index_mask = rng.integers(0, 2, size=tile_count)
        means = DenseMatrix.from_numpy(rng.random((tiles, tiles)))
        extent = (tiles - 1) * stride + size

        def run(workers):
            return synthesize(tiles, tiles, coefficients, high_banks, index_mask, means, mask_high,
                              divisor, stride_high=stride, output_rows=extent, output_columns=extent,
                              workers=workers)

        serial = run(1)
        parallel = run(4)
        np.testing.assert_allclose(parallel.grid.array, serial.grid.array, rtol=1e-5, atol=1e-5)

    def test_no_tiles(self):
        result = synthesize(0, 0, Coefficients(np.zeros(0), np.zeros(0), 0), [],
                            np.zeros(0, dtype=np.int32), DenseMatrix(0, 0), build_radial_mask(4),
                            DenseMatrix(2, 2, np.ones(4)), stride_high=2, output_rows=4,
                            output_columns=4, workers=1)
        assert result.minimum == math.inf
        assert result.scale == 1.0
        assert result.offset == 0.0

    def test_tiled_divisor(self):
        divisor = DenseMatrix(2, 2, np.array([1.0, 2.0, 3.0, 4.0]))
        np.testing.assert_array_equal(tiled_divisor(divisor, 3), [[1, 2, 1], [3, 4, 3], [1, 2, 1]])

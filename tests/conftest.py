"""Shared fixtures for terrain amplification tests."""

import numpy as np
import pytest

from py_terramp.core.dense_matrix import DenseMatrix
from py_terramp.core.dictionary import TerrainDictionary


def build_dictionary(patch_size=4, tile_stride=2, atom_count=5, with_high8=False, seed=0, zero=False):
    """Create a dictionary with random (or all-zero) atom banks."""
    rng = np.random.default_rng(seed)

    def bank(rows, columns):
        if zero:
            return DenseMatrix(rows, columns)
        return DenseMatrix.from_numpy(rng.standard_normal((rows, columns)))

    return TerrainDictionary(
        patch_size=patch_size,
        tile_stride=tile_stride,
        low_atoms=bank(patch_size * patch_size, atom_count),
        high_atoms2=bank(atom_count, (2 * patch_size) ** 2),
        high_atoms4=bank(atom_count, (4 * patch_size) ** 2),
        high_atoms8=bank(atom_count, (8 * patch_size) ** 2) if with_high8 else None,
    )


@pytest.fixture
def make_dictionary():
    """Factory for test dictionaries."""
    return build_dictionary


@pytest.fixture
def rng():
    return np.random.default_rng(1234)

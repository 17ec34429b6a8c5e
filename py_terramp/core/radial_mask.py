"""
Radial blending masks and overlap-add normalization.

The radial mask weights every tile contribution, peaking at the tile center.
The divisor mask holds, for each position inside one stride period, the
reciprocal of the total radial weight that lands there when tiles are laid
out at that stride, so that overlap-add reconstructs unity gain.
"""

import math

import numpy as np

from .dense_matrix import DenseMatrix

# Stride cycles laid out on each side when measuring overlap
_DIVISOR_CYCLES = 3


def build_radial_mask(size: int) -> DenseMatrix:
    """
    Build a square ``max(0, 1 - k * (x^2 + y^2))^2`` mask.

    ``x`` and ``y`` are normalized to [-1, 1] around the center
    ``(size - 1) / 2`` and ``k = 1 - 1 / size``.

    Args:
        size: Side length in samples

    Returns:
        ``size x size`` mask with 1.0 at the center of odd sizes
    """
    if size <= 0:
        raise ValueError(f"Mask size must be positive, got {size}")
    k = np.float32(1.0 - 1.0 / size)
    radius = np.float32((size - 1) * 0.5)
    offsets = np.arange(size, dtype=np.float32) - radius
    coords = offsets / radius if radius > 0 else np.zeros(size, dtype=np.float32)
    x = coords[:, np.newaxis]
    y = coords[np.newaxis, :]
    values = np.maximum(np.float32(0.0), np.float32(1.0) - k * (x * x + y * y))
    return DenseMatrix(size, size, values * values)


def build_divisor_mask(mask: DenseMatrix, stride: int) -> DenseMatrix:
    """
    Build the ``stride x stride`` reciprocal overlap weight of ``mask``.

    The mask is tiled at ``stride`` over enough cycles that the window
    extracted from the middle sees every overlap, then each summed weight is
    inverted.

    Raises:
        ValueError: A position receives no weight (stride exceeds the mask support)
    """
    size = mask.rows
    offsets_per_mask = math.ceil(size / stride)
    iterations = offsets_per_mask * _DIVISOR_CYCLES
    width = (iterations - 1) * stride + size

    weights = mask.grid()
    coverage = np.zeros((width, width), dtype=np.float32)
    for i in range(iterations):
        row = i * stride
        for j in range(iterations):
            column = j * stride
            coverage[row:row + size, column:column + size] += weights

    start = stride * offsets_per_mask
    window = coverage[start:start + stride, start:start + stride]
    if not np.all(window > 0):
        raise ValueError(
            f"Stride {stride} leaves positions uncovered by a {size}x{size} mask"
        )
    return DenseMatrix(stride, stride, np.float32(1.0) / window)


def build_useful_indices(mask: DenseMatrix) -> np.ndarray:
    """Flat indices of the nonzero mask cells."""
    return np.flatnonzero(mask.array)

"""
Overlap-add synthesis of the amplified terrain.

Every tile adds ``coefficient * high_atom + mean * radial_weight * divisor``
into a shared output grid at ``tile_origin * stride_high``, restricted to
positions where the high-resolution radial mask is nonzero. Tiles are
processed one row band per task. A band's footprint reaches into the
following bands, so each band holds the locks of every band it can touch.

Locks are always acquired in ascending index order, which rules out
deadlock. Acquisition retries with a short timeout; the timeout only keeps a
waiting task from blocking indefinitely and has no effect on the result.
"""

import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from ..config import settings
from ..utils.parallel import resolve_workers
from .dense_matrix import DenseMatrix
from .matching import Coefficients

logger = structlog.get_logger()

OUTPUT_RANGE = 65535.0


@dataclass
class SynthesisResult:
    """Synthesized grid with the extrema observed while accumulating."""

    grid: DenseMatrix
    minimum: float
    maximum: float

    @property
    def scale(self) -> float:
        return normalization(self.minimum, self.maximum)[1]

    @property
    def offset(self) -> float:
        return normalization(self.minimum, self.maximum)[0]


def normalization(minimum: float, maximum: float) -> Tuple[float, float]:
    """
    Return ``(offset, scale)`` mapping ``[minimum, maximum]`` onto ``[0, 65535]``.

    A flat or empty result has no defined scale; it maps with offset 0.0 and
    scale 1.0.
    """
    if not (math.isfinite(minimum) and math.isfinite(maximum)) or maximum <= minimum:
        return 0.0, 1.0
    return minimum, OUTPUT_RANGE / (maximum - minimum)


def normalize(grid: DenseMatrix, offset: float, scale: float) -> DenseMatrix:
    """Apply ``(value - offset) * scale`` clamped to ``[0, 65535]``."""
    values = (grid.array.astype(np.float64) - offset) * scale
    return DenseMatrix(grid.rows, grid.columns, np.clip(values, 0.0, OUTPUT_RANGE))


def lock_reach(mask_size_high: int, stride_high: int) -> int:
    """Number of following bands a band's footprint can overlap."""
    return max(1, math.ceil(mask_size_high / stride_high) - 1)


@contextmanager
def hold_locks(locks: Sequence[threading.Lock], timeout_ms: int) -> Iterator[None]:
    """
    Hold every lock in ``locks`` in ascending order.

    If any lock cannot be acquired within ``timeout_ms`` the ones already
    held are released and the whole sequence is retried.
    """
    timeout = timeout_ms / 1000.0
    while True:
        held: List[threading.Lock] = []
        for lock in locks:
            if not lock.acquire(timeout=timeout):
                break
            held.append(lock)
        if len(held) == len(locks):
            break
        for lock in reversed(held):
            lock.release()
        time.sleep(0)
    try:
        yield
    finally:
        for lock in reversed(locks):
            lock.release()


def tiled_divisor(divisor_mask: DenseMatrix, size: int) -> np.ndarray:
    """Repeat the divisor period over a ``size x size`` tile footprint."""
    stride = divisor_mask.rows
    repeats = math.ceil(size / stride)
    return np.tile(divisor_mask.grid(), (repeats, repeats))[:size, :size]


def synthesize(
    tiles_high: int,
    tiles_wide: int,
    coefficients: Coefficients,
    high_banks: Sequence[DenseMatrix],
    index_mask: np.ndarray,
    means: DenseMatrix,
    mask_high: DenseMatrix,
    divisor_mask: DenseMatrix,
    stride_high: int,
    output_rows: int,
    output_columns: int,
    workers: Optional[int] = None,
    lock_timeout_ms: Optional[int] = None,
) -> SynthesisResult:
    """
    Overlap-add every tile into a new output grid.

    Args:
        tiles_high: Tile rows
        tiles_wide: Tile columns
        coefficients: One (atom, value) entry per tile
        high_banks: High-frequency banks (atoms x positions), one per dictionary
        index_mask: Dictionary index per tile
        means: Tile means, ``tiles_high x tiles_wide``
        mask_high: High-resolution radial mask
        divisor_mask: ``stride_high x stride_high`` divisor mask
        stride_high: Tile stride at output resolution
        output_rows: Output grid rows
        output_columns: Output grid columns
        workers: Thread pool size
        lock_timeout_ms: Per-attempt band lock timeout

    Returns:
        SynthesisResult with the grid and the extrema of all written samples
    """
    workers = resolve_workers(workers)
    if lock_timeout_ms is None:
        lock_timeout_ms = settings.lock_timeout_ms

    size = mask_high.rows
    weights = mask_high.grid()
    support = weights != 0
    mean_weights = weights * tiled_divisor(divisor_mask, size)

    synthesized = DenseMatrix(output_rows, output_columns)
    output = synthesized.grid()
    reach = lock_reach(size, stride_high)
    locks = [threading.Lock() for _ in range(tiles_high + reach)]

    def synthesize_band(i: int) -> Tuple[float, float]:
        local_min = math.inf
        local_max = -math.inf
        row = i * stride_high
        with hold_locks(locks[i:i + reach + 1], lock_timeout_ms):
            for j in range(tiles_wide):
                tile = i * tiles_wide + j
                patch = np.float32(means[i, j]) * mean_weights
                detail = coefficients.atom_patch(tile, high_banks[index_mask[tile]])
                if detail is not None:
                    patch = patch + detail

                column = j * stride_high
                target = output[row:row + size, column:column + size]
                target[support] += patch[support]
                written = target[support]
                if written.size:
                    local_min = min(local_min, float(written.min()))
                    local_max = max(local_max, float(written.max()))
        return local_min, local_max

    with ThreadPoolExecutor(max_workers=workers) as pool:
        extrema = list(pool.map(synthesize_band, range(tiles_high)))

    minimum = min((low for low, _ in extrema), default=math.inf)
    maximum = max((high for _, high in extrema), default=-math.inf)
    if not maximum > minimum:
        logger.warning("Synthesized terrain is flat, using identity normalization",
                       minimum=minimum, maximum=maximum)

    logger.info("Synthesis complete", bands=tiles_high, tiles=tiles_high * tiles_wide,
                minimum=minimum, maximum=maximum)
    return SynthesisResult(synthesized, minimum, maximum)

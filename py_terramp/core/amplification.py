"""
Terrain amplification pipeline.

Ties the pieces together for one run:
- Pad the input terrain by one patch on every side
- Build the radial, high-resolution radial and divisor masks
- Match every tile against its dictionary's low-frequency atoms
- Overlap-add the chosen high-frequency atoms into the upsampled grid

Every run is independent; nothing is cached between calls.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Union

import numpy as np
import structlog

from .dense_matrix import DenseMatrix
from .dictionary import DictionarySet, TerrainDictionary, select_banks
from .index_mask import build_index_mask, dilate_selection, tile_grid_shape
from .matching import Coefficients, optimize_terrain
from .radial_mask import build_divisor_mask, build_radial_mask, build_useful_indices
from .synthesis import normalization, normalize, synthesize

logger = structlog.get_logger()


@dataclass
class AmplificationResult:
    """
    Output of one amplification run.

    ``grid`` keeps the synthesis padding of ``padding`` samples on every side;
    the amplified terrain proper is the ``rows x columns`` window inside it.
    """

    grid: DenseMatrix
    minimum: float
    maximum: float
    offset: float
    scale: float
    padding: int
    rows: int
    columns: int
    coefficients: Coefficients

    def cropped(self) -> DenseMatrix:
        """The amplified terrain without the synthesis padding."""
        return self.grid.slice_get(
            range(self.padding, self.padding + self.rows),
            range(self.padding, self.padding + self.columns),
        )

    def normalized(self) -> DenseMatrix:
        """Cropped terrain mapped onto ``[0, 65535]``."""
        return normalize(self.cropped(), self.offset, self.scale)


@contextmanager
def _timed(operation: str) -> Iterator[None]:
    start = time.perf_counter()
    yield
    logger.info("Phase complete", operation=operation, seconds=round(time.perf_counter() - start, 3))


def dilate_terrain(terrain: DenseMatrix, padding: int) -> DenseMatrix:
    """Pad the terrain by replicating its edge samples, ``padding`` in total per axis."""
    before = padding // 2
    padded = np.pad(terrain.grid(), ((before, padding - before), (before, padding - before)), mode="edge")
    return DenseMatrix(padded.shape[0], padded.shape[1], padded)


def amplify(
    factor: int,
    terrain: DenseMatrix,
    index_mask: np.ndarray,
    dictionary_set: DictionarySet,
    workers: Optional[int] = None,
) -> AmplificationResult:
    """
    Amplify ``terrain`` by ``factor`` with a prepared dictionary set.

    Args:
        factor: Upsample factor the high-frequency banks were selected for
        terrain: Low-resolution height grid
        index_mask: Dictionary index per tile
        dictionary_set: Banks from :func:`select_banks`
        workers: Thread pool size

    Returns:
        AmplificationResult with the padded output grid and its normalization
    """
    patch_size = dictionary_set.patch_size
    stride = dictionary_set.tile_stride
    mask_size_high = patch_size * factor
    stride_high = stride * factor

    for bank in dictionary_set.high_banks:
        if bank.columns != mask_size_high * mask_size_high:
            raise ValueError(
                f"High-frequency bank has {bank.columns} positions, expected {mask_size_high}^2 for factor {factor}"
            )

    logger.info(
        "Amplifying terrain",
        rows=terrain.rows,
        columns=terrain.columns,
        factor=factor,
        patch_size=patch_size,
        tile_stride=stride,
        dictionaries=len(dictionary_set),
    )

    with _timed("dilate_terrain"):
        dilated = dilate_terrain(terrain, patch_size * 2)
    with _timed("build_masks"):
        mask = build_radial_mask(patch_size)
        mask_high = build_radial_mask(mask_size_high)
        divisor_mask = build_divisor_mask(mask_high, stride_high)
        useful_indices = build_useful_indices(mask)

    with _timed("optimization"):
        coefficients, means = optimize_terrain(
            dictionary_set.low_banks, index_mask, mask, stride, dilated, useful_indices, workers
        )

    tiles_high = (dilated.rows - patch_size) // stride
    tiles_wide = (dilated.columns - patch_size) // stride
    with _timed("synthesis"):
        result = synthesize(
            tiles_high,
            tiles_wide,
            coefficients,
            dictionary_set.high_banks,
            index_mask,
            means,
            mask_high,
            divisor_mask,
            stride_high,
            terrain.rows * factor + 2 * mask_size_high,
            terrain.columns * factor + 2 * mask_size_high,
            workers,
        )

    offset, scale = normalization(result.minimum, result.maximum)
    return AmplificationResult(
        grid=result.grid,
        minimum=result.minimum,
        maximum=result.maximum,
        offset=offset,
        scale=scale,
        padding=mask_size_high,
        rows=terrain.rows * factor,
        columns=terrain.columns * factor,
        coefficients=coefficients,
    )


def amplify_terrain(
    terrain: DenseMatrix,
    hints: np.ndarray,
    factor: int,
    dictionaries: Union[DictionarySet, Sequence[TerrainDictionary]],
    workers: Optional[int] = None,
) -> AmplificationResult:
    """
    Run the full pipeline from a terrain grid and a per-pixel selection hint grid.

    ``dictionaries`` is either a set already prepared by :func:`select_banks`
    or :func:`load_dictionaries`, or the loaded dictionaries themselves. Those
    are validated before any other work, so incompatible or malformed inputs
    fail without touching the terrain.

    Raises:
        DictionaryError: No dictionaries, a missing bank for ``factor``, or
            incompatible or malformed dictionaries
    """
    if isinstance(dictionaries, DictionarySet):
        dictionary_set = dictionaries
    else:
        dictionary_set = select_banks(factor, dictionaries)

    hints = np.asarray(hints)
    if hints.shape != terrain.shape:
        raise ValueError(f"Selection hints {hints.shape} do not match terrain {terrain.shape}")

    patch_size = dictionary_set.patch_size
    stride = dictionary_set.tile_stride
    tiles_high, tiles_wide = tile_grid_shape(terrain.rows, terrain.columns, patch_size, stride)
    with _timed("build_index_mask"):
        index_mask = build_index_mask(
            dilate_selection(hints, patch_size * 2),
            patch_size,
            stride,
            tiles_high,
            tiles_wide,
            len(dictionary_set),
        )
    return amplify(factor, terrain, index_mask, dictionary_set, workers)

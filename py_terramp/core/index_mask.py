"""
Per-tile dictionary selection.

A per-pixel selection-hint grid (8-bit samples) is reduced to one
dictionary index per tile with a capped-max policy: the largest hint in the
tile region that lies in ``(0, dictionary_count)``. Tiles with no such hint
use dictionary 0.
"""

import numpy as np
import structlog

logger = structlog.get_logger()


def dilate_selection(hints: np.ndarray, padding: int) -> np.ndarray:
    """
    Pad a hint grid by replicating its edge samples.

    Args:
        hints: 2-D hint grid
        padding: Total samples added per axis, split evenly between both sides

    Returns:
        Padded copy of ``hints``
    """
    before = padding // 2
    return np.pad(np.asarray(hints), ((before, padding - before), (before, padding - before)), mode="edge")


def tile_grid_shape(rows: int, columns: int, patch_size: int, stride: int):
    """Number of tiles along each axis for an unpadded ``rows x columns`` grid."""
    return (rows + patch_size) // stride, (columns + patch_size) // stride


def capped_max(region: np.ndarray, cap: int) -> int:
    """Largest value in ``region`` strictly between 0 and ``cap``, or 0 if none."""
    values = region.astype(np.int64, copy=False)
    candidates = values[(values > 0) & (values < cap)]
    return int(candidates.max()) if candidates.size else 0


def build_index_mask(
    hints: np.ndarray,
    patch_size: int,
    stride: int,
    tiles_high: int,
    tiles_wide: int,
    dictionary_count: int,
) -> np.ndarray:
    """
    Reduce a padded hint grid to one dictionary index per tile.

    Args:
        hints: Padded hint grid covering every tile region
        patch_size: Tile side in samples
        stride: Distance between tile origins
        tiles_high: Tile rows
        tiles_wide: Tile columns
        dictionary_count: Number of dictionaries available

    Returns:
        Flat int32 array of length ``tiles_high * tiles_wide``, row-major by
        tile, with every entry in ``[0, dictionary_count)``
    """
    if dictionary_count <= 0:
        raise ValueError("dictionary_count must be positive")

    index_mask = np.zeros(tiles_high * tiles_wide, dtype=np.int32)
    for i in range(tiles_high):
        band = hints[i * stride:i * stride + patch_size]
        for j in range(tiles_wide):
            region = band[:, j * stride:j * stride + patch_size]
            index_mask[i * tiles_wide + j] = capped_max(region, dictionary_count)

    logger.debug(
        "Built index mask",
        tiles=int(index_mask.size),
        dictionaries_used=int(np.unique(index_mask).size),
    )
    return index_mask

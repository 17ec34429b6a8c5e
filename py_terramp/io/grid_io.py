"""
PNG codec for terrain grids.

Heights are read from 16-bit grayscale images as ``sample / 255`` and
written back as 16-bit grayscale after ``(value - offset) * scale``
normalization. Selection hints are read from 8-bit images.
"""

from pathlib import Path
from typing import Optional, Union

import numpy as np
import structlog
from PIL import Image

from ..core.dense_matrix import DenseMatrix

logger = structlog.get_logger()

PathLike = Union[str, Path]


def _first_channel(path: PathLike) -> np.ndarray:
    with Image.open(Path(path)) as image:
        data = np.array(image)
    if data.ndim == 3:
        data = data[..., 0]
    return data.astype(np.int64)


def read_height_grid(path: PathLike) -> DenseMatrix:
    """Read a 16-bit grayscale image into a height grid."""
    data = _first_channel(path)
    heights = ((data & 0xFFFF) / 255.0).astype(np.float32)
    logger.info("Read height grid", path=str(path), rows=heights.shape[0], columns=heights.shape[1])
    return DenseMatrix(heights.shape[0], heights.shape[1], heights)


def read_selection_grid(path: PathLike) -> np.ndarray:
    """Read an 8-bit image of per-pixel dictionary selection hints."""
    return (_first_channel(path) & 0xFF).astype(np.uint8)


def to_samples(grid: DenseMatrix, offset: float = 0.0, scale: float = 1.0) -> np.ndarray:
    """Map grid values to 16-bit samples, truncating toward zero and clamping."""
    values = np.nan_to_num((grid.grid().astype(np.float64) - offset) * scale)
    return np.clip(np.trunc(values), 0, 65535).astype(np.uint16)


def write_height_grid(
    path: PathLike,
    grid: DenseMatrix,
    offset: float = 0.0,
    scale: float = 1.0,
    rows: Optional[int] = None,
    columns: Optional[int] = None,
    padding: int = 0,
) -> None:
    """
    Write the ``rows x columns`` window of ``grid`` starting at ``padding`` as a 16-bit PNG.

    Args:
        path: Output file
        grid: Grid to write
        offset: Value mapped to sample 0
        scale: Samples per unit of value
        rows: Window rows, defaults to the whole grid
        columns: Window columns, defaults to the whole grid
        padding: Row and column of the window origin
    """
    rows = grid.rows if rows is None else rows
    columns = grid.columns if columns is None else columns
    window = grid.slice_get(range(padding, padding + rows), range(padding, padding + columns))
    Image.fromarray(to_samples(window, offset, scale)).save(Path(path), format="PNG")
    logger.info("Wrote height grid", path=str(path), rows=rows, columns=columns)


def downscale_grid(grid: DenseMatrix, factor: int) -> DenseMatrix:
    """Average ``factor x factor`` blocks; trailing partial blocks are dropped."""
    rows = grid.rows // factor
    columns = grid.columns // factor
    blocks = grid.grid()[:rows * factor, :columns * factor].reshape(rows, factor, columns, factor)
    return DenseMatrix(rows, columns, blocks.mean(axis=(1, 3), dtype=np.float64))

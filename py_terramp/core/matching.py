"""
Single-atom matching of terrain tiles against dictionary atoms.

Each tile of the padded low-resolution terrain becomes a query vector: the
tile samples minus the tile mean, weighted by the radial mask and flattened
column-major. The query is projected onto every low-frequency atom of the
tile's dictionary (restricted to the nonzero mask positions) and only the
best-scoring atom is kept, a matching pursuit of depth one.

Scores are compared signed: the kept atom is the first one with the largest
score, and tiles whose best score is below ``MIN_COEFFICIENT`` get no atom.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

import numpy as np
import structlog

from ..config import settings
from ..utils.parallel import partition, resolve_workers
from .dense_matrix import DenseMatrix

logger = structlog.get_logger()

MIN_COEFFICIENT = np.float32(1e-7)
NO_MATCH = -1

# Matching chunks per worker when no chunk count is configured
_CHUNKS_PER_WORKER = 64


class Coefficients:
    """
    Coefficient table with at most one atom per tile.

    Attributes:
        atom_indices: Selected atom per tile, ``NO_MATCH`` when unmatched
        values: Coefficient per tile, 0.0 when unmatched
        atom_count: Number of atom slots (largest bank size)
        reverse_index: For every atom, the tiles that selected it
    """

    def __init__(self, atom_indices: np.ndarray, values: np.ndarray, atom_count: int):
        self.atom_indices = np.asarray(atom_indices, dtype=np.int32)
        self.values = np.asarray(values, dtype=np.float32)
        self.atom_count = atom_count
        self.reverse_index = self._build_reverse_index()

    def _build_reverse_index(self) -> List[List[int]]:
        reverse_index: List[List[int]] = [[] for _ in range(self.atom_count)]
        for tile in np.flatnonzero(self.atom_indices != NO_MATCH):
            reverse_index[self.atom_indices[tile]].append(int(tile))
        return reverse_index

    @property
    def tiles(self) -> int:
        return int(self.atom_indices.size)

    @property
    def matched(self) -> np.ndarray:
        """Boolean mask of tiles that kept an atom."""
        return self.atom_indices != NO_MATCH

    def atom_patch(self, tile: int, high_atoms: DenseMatrix) -> Optional[np.ndarray]:
        """Scaled high-frequency atom for a tile as a square patch, or None when unmatched."""
        atom = self.atom_indices[tile]
        if atom == NO_MATCH:
            return None
        side = math.isqrt(high_atoms.columns)
        # Atom positions are column-major
        return self.values[tile] * high_atoms.grid()[atom].reshape(side, side).T


def build_means(
    patch_size: int, stride: int, tiles_high: int, tiles_wide: int, terrain: DenseMatrix
) -> DenseMatrix:
    """Mean of every tile region of ``terrain``."""
    means = DenseMatrix(tiles_high, tiles_wide)
    for i in range(tiles_high):
        rows = range(i * stride, i * stride + patch_size)
        for j in range(tiles_wide):
            means[i, j] = terrain.mean(rows, range(j * stride, j * stride + patch_size))
    return means


def build_atoms(
    mask: DenseMatrix,
    stride: int,
    tiles_high: int,
    tiles_wide: int,
    means: DenseMatrix,
    terrain: DenseMatrix,
) -> DenseMatrix:
    """
    Build the query vector of every tile.

    Returns:
        ``patch_size^2 x tiles`` matrix; column ``i * tiles_wide + j`` holds
        tile (i, j) mean-subtracted, mask-weighted and flattened column-major
    """
    patch_size = mask.columns
    source = terrain.grid()
    weights = mask.grid().T
    atoms = np.zeros((patch_size * patch_size, tiles_high * tiles_wide), dtype=np.float32)
    for i in range(tiles_high):
        band = source[i * stride:i * stride + patch_size]
        for j in range(tiles_wide):
            block = band[:, j * stride:j * stride + patch_size]
            atoms[:, i * tiles_wide + j] = ((block - np.float32(means[i, j])) * weights).ravel(order="F")
    return DenseMatrix(atoms.shape[0], atoms.shape[1], atoms)


def _resolve_chunks(tiles: int, workers: int, chunk_count: Optional[int]) -> List[range]:
    if chunk_count is None:
        chunk_count = settings.matching_chunk_count
    if chunk_count is None:
        chunk_count = workers * _CHUNKS_PER_WORKER
    return partition(tiles, chunk_count)


def match_atoms(
    low_banks: Sequence[DenseMatrix],
    index_mask: np.ndarray,
    atoms: DenseMatrix,
    useful_indices: np.ndarray,
    workers: Optional[int] = None,
    chunk_count: Optional[int] = None,
) -> Coefficients:
    """
    Keep the best-correlated atom of the selected bank for every tile.

    Args:
        low_banks: Low-frequency banks (positions x atoms), one per dictionary
        index_mask: Dictionary index per tile
        atoms: Query vectors from :func:`build_atoms`
        useful_indices: Positions with nonzero mask weight
        workers: Thread pool size
        chunk_count: Number of independent tile chunks

    Returns:
        Coefficients with one entry per tile
    """
    tiles = atoms.columns
    if len(index_mask) != tiles:
        raise ValueError(f"Index mask has {len(index_mask)} entries for {tiles} tiles")

    workers = resolve_workers(workers)
    atom_count = max(bank.columns for bank in low_banks)
    atom_indices = np.full(tiles, NO_MATCH, dtype=np.int32)
    values = np.zeros(tiles, dtype=np.float32)

    queries = atoms.grid()[useful_indices]
    restricted = [bank.grid()[useful_indices] for bank in low_banks]

    def match_chunk(chunk: range) -> None:
        signals = np.arange(chunk.start, chunk.stop)
        selection = np.asarray(index_mask[chunk.start:chunk.stop])
        for dictionary in np.unique(selection):
            bank = restricted[dictionary]
            if bank.shape[1] == 0:
                continue
            chosen = signals[selection == dictionary]
            scores = queries[:, chosen].T @ bank
            best = np.argmax(scores, axis=1)
            best_scores = scores[np.arange(chosen.size), best]
            hits = best_scores >= MIN_COEFFICIENT
            atom_indices[chosen[hits]] = best[hits]
            values[chosen[hits]] = best_scores[hits]

    chunks = _resolve_chunks(tiles, workers, chunk_count)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        list(pool.map(match_chunk, chunks))

    coefficients = Coefficients(atom_indices, values, atom_count)
    logger.info(
        "Matching complete",
        tiles=tiles,
        chunks=len(chunks),
        matched=int(coefficients.matched.sum()),
        atoms_used=sum(1 for tiles_for_atom in coefficients.reverse_index if tiles_for_atom),
    )
    return coefficients


def match_single(
    low_bank: DenseMatrix,
    atoms: DenseMatrix,
    useful_indices: np.ndarray,
    workers: Optional[int] = None,
    chunk_count: Optional[int] = None,
) -> Coefficients:
    """Match every tile against a single low-frequency bank."""
    index_mask = np.zeros(atoms.columns, dtype=np.int32)
    return match_atoms([low_bank], index_mask, atoms, useful_indices, workers, chunk_count)


def optimize_terrain(
    low_banks: Sequence[DenseMatrix],
    index_mask: np.ndarray,
    mask: DenseMatrix,
    stride: int,
    terrain: DenseMatrix,
    useful_indices: np.ndarray,
    workers: Optional[int] = None,
) -> Tuple[Coefficients, DenseMatrix]:
    """
    Compute tile means and match every tile of the padded terrain.

    Returns:
        Tuple of (coefficients, tile means)
    """
    patch_size = mask.rows
    tiles_high = (terrain.rows - patch_size) // stride
    tiles_wide = (terrain.columns - patch_size) // stride
    means = build_means(patch_size, stride, tiles_high, tiles_wide, terrain)
    atoms = build_atoms(mask, stride, tiles_high, tiles_wide, means, terrain)
    coefficients = match_atoms(low_banks, index_mask, atoms, useful_indices, workers)
    return coefficients, means

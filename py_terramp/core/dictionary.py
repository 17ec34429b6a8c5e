"""
Trained terrain amplification dictionaries.

A dictionary bundles one low-frequency atom bank with the high-frequency
banks for upsample factors 2, 4 and optionally 8, plus the patch size and
tile stride the atoms were trained with. Files are gzip-compressed streams
of big-endian values:

    int32 patch_size
    int32 tile_stride
    DenseMatrix low_atoms      (patch_size^2 positions x atoms)
    DenseMatrix high_atoms2    (atoms x (2 * patch_size)^2 positions)
    DenseMatrix high_atoms4    (atoms x (4 * patch_size)^2 positions)
    bool has_high8
    DenseMatrix high_atoms8    (only when has_high8)

Patch positions are stored column-major (``column * side + row``).
"""

import gzip
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Union

import structlog

from .dense_matrix import DenseMatrix, read_exact

logger = structlog.get_logger()

SUPPORTED_FACTORS = (2, 4, 8)

_INT = struct.Struct(">i")
_BOOL = struct.Struct(">?")


class DictionaryError(ValueError):
    """Fatal dictionary configuration problem."""


@dataclass
class TerrainDictionary:
    """One trained dictionary."""

    patch_size: int
    tile_stride: int
    low_atoms: DenseMatrix
    high_atoms2: DenseMatrix
    high_atoms4: DenseMatrix
    high_atoms8: Optional[DenseMatrix] = None

    @property
    def atom_count(self) -> int:
        return self.low_atoms.columns

    def high_atoms(self, factor: int) -> DenseMatrix:
        """Return the high-frequency bank for an upsample factor."""
        if factor == 2:
            return self.high_atoms2
        if factor == 4:
            return self.high_atoms4
        if factor == 8 and self.high_atoms8 is not None:
            return self.high_atoms8
        raise DictionaryError(f"invalid factor for dictionary: {factor}")

    @classmethod
    def read(cls, stream: BinaryIO) -> "TerrainDictionary":
        (patch_size,) = _INT.unpack(read_exact(stream, _INT.size))
        (tile_stride,) = _INT.unpack(read_exact(stream, _INT.size))
        low = DenseMatrix.read(stream)
        high2 = DenseMatrix.read(stream)
        high4 = DenseMatrix.read(stream)
        (has_high8,) = _BOOL.unpack(read_exact(stream, _BOOL.size))
        high8 = DenseMatrix.read(stream) if has_high8 else None
        return cls(patch_size, tile_stride, low, high2, high4, high8)

    def write(self, stream: BinaryIO) -> None:
        stream.write(_INT.pack(self.patch_size))
        stream.write(_INT.pack(self.tile_stride))
        self.low_atoms.write(stream)
        self.high_atoms2.write(stream)
        self.high_atoms4.write(stream)
        stream.write(_BOOL.pack(self.high_atoms8 is not None))
        if self.high_atoms8 is not None:
            self.high_atoms8.write(stream)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "TerrainDictionary":
        """Load a gzip-compressed dictionary file."""
        with gzip.open(Path(path), "rb") as stream:
            dictionary = cls.read(stream)
        logger.info(
            "Loaded dictionary",
            path=str(path),
            patch_size=dictionary.patch_size,
            tile_stride=dictionary.tile_stride,
            atoms=dictionary.atom_count,
            has_high8=dictionary.high_atoms8 is not None,
        )
        return dictionary

    def save(self, path: Union[str, Path]) -> None:
        with gzip.open(Path(path), "wb") as stream:
            self.write(stream)


@dataclass
class DictionarySet:
    """Atom banks selected for one amplification run."""

    patch_size: int
    tile_stride: int
    low_banks: List[DenseMatrix]
    high_banks: List[DenseMatrix]

    def __len__(self) -> int:
        return len(self.low_banks)


def _check_bank_shapes(index: int, dictionary: TerrainDictionary, high: DenseMatrix, factor: int) -> None:
    low = dictionary.low_atoms
    positions = dictionary.patch_size * dictionary.patch_size
    if low.rows != positions:
        raise DictionaryError(
            f"malformed dictionary {index}: low-frequency bank has {low.rows} positions, "
            f"expected {positions} for patch_size={dictionary.patch_size}"
        )
    if high.rows != low.columns:
        raise DictionaryError(
            f"malformed dictionary {index}: high-frequency bank for factor {factor} has {high.rows} atoms, "
            f"low-frequency bank has {low.columns}"
        )
    high_positions = (dictionary.patch_size * factor) ** 2
    if high.columns != high_positions:
        raise DictionaryError(
            f"malformed dictionary {index}: high-frequency bank for factor {factor} has {high.columns} positions, "
            f"expected {high_positions}"
        )


def select_banks(factor: int, dictionaries: Sequence[TerrainDictionary]) -> DictionarySet:
    """
    Pick the banks for ``factor`` from each dictionary and check compatibility.

    Args:
        factor: Upsample factor (2, 4 or 8)
        dictionaries: Dictionaries in index-mask order

    Returns:
        DictionarySet with one (low, high) bank pair per dictionary

    Raises:
        DictionaryError: No dictionaries, a missing bank for ``factor``,
            mismatched patch size / tile stride, or banks whose shapes do not
            fit the patch size and atom count
    """
    if not dictionaries:
        raise DictionaryError("must specify one or more dictionary files")

    first = dictionaries[0]
    low_banks = []
    high_banks = []
    for index, dictionary in enumerate(dictionaries):
        high = dictionary.high_atoms(factor)
        if (dictionary.patch_size, dictionary.tile_stride) != (first.patch_size, first.tile_stride):
            raise DictionaryError(
                "input dictionaries are not compatible: "
                f"dictionary {index} has patch_size={dictionary.patch_size}, tile_stride={dictionary.tile_stride}, "
                f"expected patch_size={first.patch_size}, tile_stride={first.tile_stride}"
            )
        _check_bank_shapes(index, dictionary, high, factor)
        low_banks.append(dictionary.low_atoms)
        high_banks.append(high)

    return DictionarySet(first.patch_size, first.tile_stride, low_banks, high_banks)


def load_dictionaries(factor: int, paths: Sequence[Union[str, Path]]) -> DictionarySet:
    """Load dictionary files and select their banks for ``factor``."""
    if not paths:
        raise DictionaryError("must specify one or more dictionary files")
    return select_banks(factor, [TerrainDictionary.load(path) for path in paths])

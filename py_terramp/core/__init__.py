"""
Core terrain amplification functionality.
"""

from .dense_matrix import ALL, DenseMatrix
from .dictionary import DictionaryError, DictionarySet, TerrainDictionary, load_dictionaries, select_banks
from .radial_mask import build_divisor_mask, build_radial_mask, build_useful_indices
from .index_mask import build_index_mask, dilate_selection
from .matching import Coefficients, match_atoms, match_single
from .synthesis import SynthesisResult, synthesize
from .amplification import AmplificationResult, amplify, amplify_terrain

__all__ = ['ALL', 'DenseMatrix',
           'DictionaryError', 'DictionarySet', 'TerrainDictionary', 'load_dictionaries', 'select_banks',
           'build_divisor_mask', 'build_radial_mask', 'build_useful_indices',
           'build_index_mask', 'dilate_selection',
           'Coefficients', 'match_atoms', 'match_single',
           'SynthesisResult', 'synthesize',
           'AmplificationResult', 'amplify', 'amplify_terrain']

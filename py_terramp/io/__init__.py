"""
Image boundary for height and selection-hint grids.
"""

from .grid_io import downscale_grid, read_height_grid, read_selection_grid, write_height_grid

__all__ = ['downscale_grid', 'read_height_grid', 'read_selection_grid', 'write_height_grid']

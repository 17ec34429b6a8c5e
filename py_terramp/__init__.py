"""Dictionary-based terrain amplification."""

__version__ = "0.1.0"

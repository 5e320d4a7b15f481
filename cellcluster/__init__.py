"""
cellcluster: unsupervised clustering and marker discovery for single-cell
RNA-seq count matrices.
"""

from cellcluster.version import __version__

__all__ = ["__version__"]

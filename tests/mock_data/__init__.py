"""
Synthetic count data for the cellcluster test suite.
"""

from .base import SMALL_DATASET_CONFIG, TWO_GROUP_CONFIG, MockDataConfig
from .factories import ClusteredCountsFactory, marker_genes

__all__ = [
    "ClusteredCountsFactory",
    "MockDataConfig",
    "SMALL_DATASET_CONFIG",
    "TWO_GROUP_CONFIG",
    "marker_genes",
]

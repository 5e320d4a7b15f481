"""
Core module with the Dataset aggregate and the exception hierarchy.

This module provides the single object carried through the pipeline and the
errors every stage raises when it refuses to commit.
"""

from cellcluster.core.dataset import Dataset, NeighborGraph, PCAResult, PipelineStage, ReportView
from cellcluster.core.exceptions import (
    CellClusterError,
    DataError,
    DimensionError,
    GraphMismatchError,
    InsufficientFeaturesError,
    OrderingError,
)

__all__ = [
    "Dataset",
    "NeighborGraph",
    "PCAResult",
    "PipelineStage",
    "ReportView",
    "CellClusterError",
    "DataError",
    "DimensionError",
    "GraphMismatchError",
    "InsufficientFeaturesError",
    "OrderingError",
]

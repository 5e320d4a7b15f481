"""
Core exceptions for the cellcluster pipeline.

This module provides the exception hierarchy raised by the pipeline stages.
Every error is raised synchronously by the call that detects it, and a stage
that raises leaves the Dataset exactly as it was before the call.
"""

from typing import Any, Dict, Optional


class CellClusterError(Exception):
    """Base exception for all cellcluster errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class DataError(CellClusterError):
    """
    Raised for malformed or missing identifiers and zero-match filters.

    Example:
        try:
            service.filter_cells_and_genes(dataset, mito_prefix="MT-")
        except DataError as e:
            print(e.message)
            print(e.details.get("mito_prefix"))
    """

    pass


class DimensionError(CellClusterError):
    """
    Raised when a requested component, dimension or neighbor count is out of range.

    Attributes:
        details: Contains the requested value under ``requested`` and the
            largest valid value under ``maximum``.
    """

    pass


class InsufficientFeaturesError(CellClusterError):
    """Raised when no genes were selected or no genes survive a threshold."""

    pass


class OrderingError(CellClusterError):
    """
    Raised when a stage is invoked before a required predecessor stage.

    Attributes:
        details: Contains ``action``, the ``required`` stage name and the
            ``current`` stage name.
    """

    pass


class GraphMismatchError(CellClusterError):
    """Raised when a stored neighbor graph cannot be reused for the current request."""

    pass

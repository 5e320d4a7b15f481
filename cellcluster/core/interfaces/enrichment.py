"""
Gene set enrichment collaborator interface.

The pipeline hands marker gene symbols and the background universe to an
external enrichment service and returns its table unchanged. Nothing an
enrichment client returns is written back to the dataset.
"""

from abc import ABC, abstractmethod
from typing import Sequence

import pandas as pd


class EnrichmentClient(ABC):
    """
    Abstract interface for GO-term (or other gene set) enrichment services.

    Example implementation:
        >>> class LocalGOClient(EnrichmentClient):
        ...     def enrich(self, gene_symbols, background):
        ...         return run_hypergeometric_test(gene_symbols, background)
    """

    @abstractmethod
    def enrich(self, gene_symbols: Sequence[str], background: Sequence[str]) -> pd.DataFrame:
        """
        Test a gene list for enriched terms against a background universe.

        Args:
            gene_symbols: Marker gene symbols, without duplicates
            background: All gene symbols that could have been selected

        Returns:
            pd.DataFrame: Enrichment table in the client's own format
        """
        pass

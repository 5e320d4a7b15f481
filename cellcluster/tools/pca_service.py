"""
Principal component analysis of the scaled feature matrix.
"""

from typing import Any, Dict

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from cellcluster.core.dataset import Dataset, PipelineStage
from cellcluster.core.exceptions import (
    CellClusterError,
    DimensionError,
    InsufficientFeaturesError,
)
from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)


class PCAError(CellClusterError):
    """Base exception for PCA operations."""

    pass


class PCAService:
    """
    Stateless service computing principal components of scaled data.

    Scores, loadings and the explained variance ratio are committed to the
    dataset; choosing how many components to keep downstream is left to the
    caller (see ``variance_ratio`` in the returned statistics).
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the PCA service.

        Args:
            config: Optional configuration dict (unused, kept for a uniform service signature)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless PCAService")
        self.config = config or {}

    def run_pca(self, dataset: Dataset, n_components: int = 20) -> Dict[str, Any]:
        """
        Compute the top principal components of the scaled matrix.

        Args:
            dataset: Scaled dataset (modified in place)
            n_components: Number of components K, with
                ``1 <= K <= min(n_cells, n_features) - 1``

        Returns:
            Dict[str, Any]: PCA statistics including ``variance_ratio``

        Raises:
            OrderingError: If the dataset has not been scaled
            DimensionError: If K is outside the valid range
        """
        try:
            dataset.require(PipelineStage.SCALED, "run PCA")
            scaled = dataset.scaled
            n_cells, n_features = scaled.shape
            if n_features == 0:
                raise InsufficientFeaturesError("No variable features available for PCA")

            max_components = min(n_cells, n_features) - 1
            if not 1 <= n_components <= max_components:
                raise DimensionError(
                    f"n_components must be between 1 and {max_components} "
                    f"for {n_cells} cells × {n_features} features, got {n_components}",
                    details={
                        "n_components": n_components,
                        "max_components": max_components,
                    },
                )

            logger.info(
                f"Running PCA with {n_components} components on "
                f"{n_cells} cells × {n_features} features"
            )
            # Full SVD is exact and deterministic; sklearn fixes component signs
            pca = PCA(n_components=n_components, svd_solver="full")
            scores = pca.fit_transform(scaled)
            loadings = pca.components_.T.copy()
            variance_ratio = pca.explained_variance_ratio_.copy()

            params = {"n_components": n_components}
            dataset.commit_pca(scores, loadings, variance_ratio, params)

            stats = {
                "analysis_type": "pca",
                **params,
                "n_cells": n_cells,
                "n_features": n_features,
                "variance_ratio": variance_ratio.tolist(),
                "cumulative_variance": float(variance_ratio.sum()),
            }
            logger.info(
                f"PCA complete: {n_components} components explain "
                f"{variance_ratio.sum() * 100:.1f}% of variance"
            )
            return stats

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error in PCA: {e}")
            raise PCAError(f"PCA failed: {str(e)}") from e

    def top_loading_genes(
        self, dataset: Dataset, component: int = 0, n_genes: int = 10
    ) -> pd.DataFrame:
        """
        List the genes with the largest positive and negative loadings on a component.

        Args:
            dataset: Dataset after PCA
            component: Zero-based component index
            n_genes: Number of genes per direction

        Returns:
            pd.DataFrame: Columns ``gene``, ``loading``, ``direction``
        """
        dataset.require(PipelineStage.REDUCED, "inspect PCA loadings")
        pca = dataset.pca
        if not 0 <= component < pca.n_components:
            raise DimensionError(
                f"component must be between 0 and {pca.n_components - 1}, got {component}"
            )
        loadings = pd.Series(pca.loadings[:, component], index=list(pca.feature_names))
        ordered = loadings.sort_values(ascending=False, kind="stable")
        positive = ordered.head(n_genes)
        negative = ordered.iloc[::-1].head(n_genes)
        return pd.concat(
            [
                pd.DataFrame(
                    {"gene": positive.index, "loading": positive.values, "direction": "positive"}
                ),
                pd.DataFrame(
                    {"gene": negative.index, "loading": negative.values, "direction": "negative"}
                ),
            ],
            ignore_index=True,
        )

"""
Two-dimensional t-SNE embedding of PCA scores.
"""

from typing import Any, Dict, Optional

import numpy as np
from sklearn.manifold import TSNE

from cellcluster.core.dataset import Dataset, PipelineStage
from cellcluster.core.exceptions import CellClusterError, DataError, DimensionError
from cellcluster.utils.logger import get_logger
from cellcluster.utils.seeding import resolve_seed

logger = get_logger(__name__)


class EmbeddingError(CellClusterError):
    """Base exception for embedding operations."""

    pass


class EmbeddingService:
    """
    Stateless service computing a t-SNE layout of the cells.

    The embedding reads PCA scores only; cluster labels are neither read nor
    written, so labels can be overlaid afterwards by joining on barcode.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the embedding service.

        Args:
            config: Optional configuration dict (unused, kept for a uniform service signature)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless EmbeddingService")
        self.config = config or {}

    def run_tsne(
        self,
        dataset: Dataset,
        n_dims: int = 10,
        perplexity: float = 30.0,
        max_iter: int = 1000,
        seed: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Embed cells in two dimensions with t-SNE.

        Args:
            dataset: Dataset after PCA (modified in place)
            n_dims: Leading PCA dimensions used as input
            perplexity: Effective neighbor count, must be below the cell count
            max_iter: Iteration budget; no convergence check beyond it
            seed: Random seed; None draws a fresh one and marks the run
                non-deterministic

        Returns:
            Dict[str, Any]: Embedding statistics including the final KL divergence

        Raises:
            OrderingError: If PCA has not been run
            DimensionError: If ``n_dims`` or ``perplexity`` is out of range
        """
        try:
            dataset.require(PipelineStage.REDUCED, "run t-SNE")
            pca = dataset.pca
            if not 1 <= n_dims <= pca.n_components:
                raise DimensionError(
                    f"n_dims must be between 1 and {pca.n_components}, got {n_dims}",
                    details={"requested": n_dims, "maximum": pca.n_components},
                )
            if not 0 < perplexity < dataset.n_cells:
                raise DimensionError(
                    f"perplexity must be positive and below the number of cells "
                    f"({dataset.n_cells}), got {perplexity}",
                    details={"requested": perplexity, "maximum": dataset.n_cells},
                )
            if max_iter < 250:
                raise DataError(f"max_iter must be at least 250, got {max_iter}")
            seed, deterministic = resolve_seed(seed, "t-SNE")

            logger.info(
                f"Running t-SNE on {dataset.n_cells} cells × {n_dims} PCA dimensions "
                f"(perplexity={perplexity}, max_iter={max_iter})"
            )
            tsne = TSNE(
                n_components=2,
                perplexity=perplexity,
                max_iter=max_iter,
                init="pca" if n_dims >= 2 else "random",
                random_state=seed,
            )
            coordinates = tsne.fit_transform(np.asarray(pca.scores[:, :n_dims]))

            params = {
                "n_dims": n_dims,
                "perplexity": perplexity,
                "max_iter": max_iter,
                "seed": seed,
                "deterministic": deterministic,
            }
            dataset.commit_embedding(coordinates, params)

            stats = {
                "analysis_type": "tsne",
                **params,
                "n_cells": dataset.n_cells,
                "kl_divergence": float(tsne.kl_divergence_),
                "n_iter": int(getattr(tsne, "n_iter_", max_iter)),
            }
            logger.info(f"t-SNE complete (KL divergence {stats['kl_divergence']:.4f})")
            return stats

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error in t-SNE: {e}")
            raise EmbeddingError(f"t-SNE failed: {str(e)}") from e

"""
Normalization and scaling service for single-cell count data.

This service implements the log-normalization of raw counts and the
per-feature scaling step that regresses out unwanted per-cell covariates
(library size, mitochondrial fraction, ...) before PCA.
"""

from typing import Any, Dict, List, Optional, Sequence

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr

from cellcluster.core.dataset import Dataset, PipelineStage
from cellcluster.core.exceptions import (
    CellClusterError,
    DataError,
    InsufficientFeaturesError,
)
from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)

NORMALIZATION_METHODS = ("fixed", "median")

# Relative tolerance under which a residual vector counts as constant
ZERO_VARIANCE_RTOL = 1e-10


class PreprocessingError(CellClusterError):
    """Base exception for preprocessing operations."""

    pass


class PreprocessingService:
    """
    Stateless preprocessing service for single-cell RNA-seq data.

    Provides log-normalization of filtered counts and scaling of the selected
    features with optional linear regression of per-cell covariates.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the preprocessing service.

        Args:
            config: Optional configuration dict (unused, kept for a uniform service signature)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless PreprocessingService")
        self.config = config or {}

    def normalize(
        self,
        dataset: Dataset,
        normalization_method: str = "fixed",
        scale_factor: float = 1e4,
    ) -> Dict[str, Any]:
        """
        Log-normalize raw counts.

        Each cell is rescaled to a common total and then transformed with the
        natural ``log1p``. With ``normalization_method="fixed"`` the common
        total is ``scale_factor``; with ``"median"`` it is the median total
        count across cells, computed once before normalization.

        Args:
            dataset: Filtered dataset (modified in place)
            normalization_method: 'fixed' or 'median'
            scale_factor: Target total for the fixed mode

        Returns:
            Dict[str, Any]: Normalization statistics

        Raises:
            OrderingError: If the dataset has not been filtered
            DataError: If a cell has zero total counts
        """
        try:
            logger.info(f"Normalizing expression data using method: {normalization_method}")
            dataset.require(PipelineStage.FILTERED, "normalize")

            if normalization_method not in NORMALIZATION_METHODS:
                raise PreprocessingError(
                    f"Unknown normalization method '{normalization_method}'. "
                    f"Must be one of {NORMALIZATION_METHODS}"
                )

            counts = dataset.counts
            totals = np.asarray(counts.sum(axis=1)).ravel()
            if (totals <= 0).any():
                empty = dataset.cell_ids[totals <= 0].tolist()
                raise DataError(
                    f"{len(empty)} cells have zero total counts and cannot be normalized",
                    details={"cells": empty[:10]},
                )

            if normalization_method == "median":
                target_sum = float(np.median(totals))
            else:
                if scale_factor <= 0:
                    raise DataError(f"scale_factor must be positive, got {scale_factor}")
                target_sum = float(scale_factor)

            work = anndata.AnnData(X=counts.copy())
            sc.pp.normalize_total(work, target_sum=target_sum)
            sc.pp.log1p(work)
            normalized = spr.csr_matrix(work.X, dtype=np.float64)

            if normalized.nnz and (
                not np.all(np.isfinite(normalized.data)) or normalized.data.min() < 0
            ):
                raise PreprocessingError("Normalization produced non-finite or negative values")

            params = {
                "normalization_method": normalization_method,
                "target_sum": target_sum,
            }
            dataset.commit_normalized(normalized, params)

            stats = {
                "analysis_type": "normalization",
                **params,
                "n_cells": dataset.n_cells,
                "n_genes": dataset.n_genes,
                "median_total_counts_before": float(np.median(totals)),
                "max_normalized_value": float(normalized.max()) if normalized.nnz else 0.0,
            }
            logger.info(
                f"Normalization complete (target_sum={target_sum:g}, log1p transformed)"
            )
            return stats

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error in normalization: {e}")
            raise PreprocessingError(f"Normalization failed: {str(e)}") from e

    def scale_and_regress(
        self,
        dataset: Dataset,
        vars_to_regress: Optional[Sequence[str]] = None,
        max_value: Optional[float] = 10.0,
    ) -> Dict[str, Any]:
        """
        Regress out per-cell covariates and standardize the selected features.

        The selected genes are copied into a working AnnData; covariates are
        removed with ``sc.pp.regress_out`` (least squares with intercept) and
        the residuals are scaled with ``sc.pp.scale`` to zero mean and unit
        variance across cells. A gene whose residual has zero variance is set
        to all zeros.

        Args:
            dataset: Dataset with selected features (modified in place)
            vars_to_regress: Names of numeric per-cell columns, e.g.
                ``["total_counts", "mito_fraction"]``
            max_value: Clip standardized values to [-max_value, max_value];
                None disables clipping

        Returns:
            Dict[str, Any]: Scaling statistics

        Raises:
            OrderingError: If features have not been selected
            InsufficientFeaturesError: If no feature is selected
            DataError: If a covariate is unknown or not numeric
        """
        try:
            dataset.require(PipelineStage.FEATURES_SELECTED, "scale data")
            features = dataset.feature_indices
            if features is None or len(features) == 0:
                raise InsufficientFeaturesError(
                    "No variable features selected; cannot scale data"
                )
            if max_value is not None and max_value <= 0:
                raise DataError(f"max_value must be positive, got {max_value}")
            vars_to_regress = list(vars_to_regress or [])
            logger.info(
                f"Scaling {len(features)} features across {dataset.n_cells} cells"
                + (f", regressing out {vars_to_regress}" if vars_to_regress else "")
            )

            expression = dataset.normalized[:, features].toarray()
            work = anndata.AnnData(
                X=expression.copy(), obs=self._covariates(dataset, vars_to_regress)
            )
            if vars_to_regress:
                sc.pp.regress_out(work, vars_to_regress)

            residuals = np.asarray(work.X, dtype=np.float64)
            zero_variance = self._zero_variance(residuals, expression)
            # Exact zeros make sc.pp.scale keep the column at zero
            residuals[:, zero_variance] = 0.0
            work.X = residuals

            n_clipped = 0
            if zero_variance.all():
                scaled = np.zeros_like(residuals)
            else:
                if max_value is not None:
                    unclipped = sc.pp.scale(residuals, copy=True)
                    n_clipped = int((np.abs(unclipped) > max_value).sum())
                sc.pp.scale(work, max_value=max_value)
                scaled = np.asarray(work.X, dtype=np.float64)

            params = {
                "vars_to_regress": vars_to_regress,
                "max_value": max_value,
            }
            dataset.commit_scaled(scaled, params)

            zero_genes: List[str] = dataset.gene_ids[features[zero_variance]].tolist()
            if zero_genes:
                logger.warning(
                    f"{len(zero_genes)} features have zero residual variance and were set to 0"
                )
            stats = {
                "analysis_type": "scaling",
                **params,
                "n_features": len(features),
                "n_cells": dataset.n_cells,
                "zero_variance_features": zero_genes,
                "n_values_clipped": n_clipped,
            }
            logger.info("Scaling complete")
            return stats

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error in scaling: {e}")
            raise PreprocessingError(f"Scaling failed: {str(e)}") from e

    # Helper methods
    def _covariates(self, dataset: Dataset, vars_to_regress: List[str]) -> pd.DataFrame:
        """Numeric covariate columns indexed by barcode, validated for regression."""
        obs = dataset.adata.obs
        covariates = pd.DataFrame(index=obs.index.copy())
        for name in vars_to_regress:
            if name not in obs.columns:
                raise DataError(
                    f"Covariate '{name}' not found in cell metadata",
                    details={"covariate": name, "available": list(obs.columns)},
                )
            values = obs[name]
            if not pd.api.types.is_numeric_dtype(values):
                raise DataError(f"Covariate '{name}' is not numeric")
            values = values.to_numpy(dtype=float)
            if not np.all(np.isfinite(values)):
                raise DataError(f"Covariate '{name}' contains missing or infinite values")
            covariates[name] = values
        return covariates

    def _zero_variance(self, residuals: np.ndarray, expression: np.ndarray) -> np.ndarray:
        """Mask of columns whose residual is constant up to rounding."""
        ddof = 1 if residuals.shape[0] > 1 else 0
        std = residuals.std(axis=0, ddof=ddof)
        magnitude = np.abs(expression).max(axis=0) + 1.0
        return std <= ZERO_VARIANCE_RTOL * magnitude

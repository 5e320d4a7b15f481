"""
Variable feature selection for single-cell RNA-seq data.

Two methods are supported:

- ``DISPERSION``: mean/dispersion binning. Genes are binned by mean
  expression, the log variance-to-mean ratio is z-scored within each bin, and
  genes inside a mean range with a standardized dispersion above a cutoff are
  kept.
- ``POISSON_GAMMA``: excess coefficient of variation over a Poisson-Gamma
  (negative binomial) noise model. The common overdispersion of the null is
  fitted by the method of moments across genes, and genes whose observed CV
  exceeds the null-implied minimum CV by more than a number of standard
  deviations are kept.

Statistics are always computed from the full normalized matrix, so rerunning
the selection with the same parameters returns the same genes.
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr

from cellcluster.core.dataset import Dataset, PipelineStage
from cellcluster.core.exceptions import CellClusterError, DataError
from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)


class FeatureSelectionMethod(str, Enum):
    """Supported variable feature selection methods."""

    DISPERSION = "dispersion"
    POISSON_GAMMA = "poisson_gamma"


class FeatureSelectionError(CellClusterError):
    """Base exception for feature selection operations."""

    pass


def _column_mean_var(matrix: spr.csr_matrix) -> Tuple[np.ndarray, np.ndarray]:
    """Column means and sample variances (ddof=1) of a sparse matrix."""
    n_rows = matrix.shape[0]
    mean = np.asarray(matrix.mean(axis=0)).ravel()
    mean_sq = np.asarray(matrix.multiply(matrix).mean(axis=0)).ravel()
    var = mean_sq - mean**2
    if n_rows > 1:
        var = var * n_rows / (n_rows - 1)
    return mean, np.maximum(var, 0.0)


class FeatureSelectionService:
    """
    Stateless service selecting highly variable genes.

    The result is stored on the dataset as a boolean ``highly_variable``
    column together with per-gene ``means``, ``dispersions`` and
    ``dispersions_norm``.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the feature selection service.

        Args:
            config: Optional configuration dict (unused, kept for a uniform service signature)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless FeatureSelectionService")
        self.config = config or {}

    def select_features(
        self,
        dataset: Dataset,
        method: FeatureSelectionMethod = FeatureSelectionMethod.DISPERSION,
        min_mean: float = 0.0125,
        max_mean: float = 3.0,
        min_disp: float = 0.5,
        n_bins: int = 20,
        binning: str = "quantile",
        n_sd: float = 2.0,
        max_features: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Select variable genes from the normalized expression matrix.

        Args:
            dataset: Normalized dataset (modified in place)
            method: DISPERSION or POISSON_GAMMA
            min_mean: Lower bound of the mean-expression range (inclusive)
            max_mean: Upper bound of the mean-expression range (inclusive)
            min_disp: DISPERSION only, standardized dispersion cutoff
            n_bins: DISPERSION only, number of mean-expression bins
            binning: DISPERSION only, 'quantile' or 'equal_width'
            n_sd: POISSON_GAMMA only, required excess CV in standard deviations
            max_features: Keep at most this many genes, ranked by standardized
                dispersion (or excess CV)

        Returns:
            Dict[str, Any]: Selection statistics, including ``n_features_selected``
            and a ``flagged`` marker when nothing was selected

        Raises:
            OrderingError: If the dataset has not been normalized
        """
        try:
            method = FeatureSelectionMethod(method)
            logger.info(f"Starting feature selection with method: {method.value}")
            dataset.require(PipelineStage.NORMALIZED, "select features")
            if min_mean > max_mean:
                raise DataError(
                    f"min_mean ({min_mean}) is larger than max_mean ({max_mean})"
                )
            if max_features is not None and max_features < 1:
                raise DataError(f"max_features must be >= 1, got {max_features}")

            if method == FeatureSelectionMethod.DISPERSION:
                gene_stats, params = self._dispersion_statistics(
                    dataset, min_mean, max_mean, min_disp, n_bins, binning
                )
            else:
                gene_stats, params = self._poisson_gamma_statistics(
                    dataset, min_mean, max_mean, n_sd
                )

            candidates = gene_stats["highly_variable"].to_numpy()
            selected = np.flatnonzero(candidates)
            if max_features is not None and len(selected) > max_features:
                ranking = gene_stats["dispersions_norm"].to_numpy()[selected]
                # Stable sort keeps ties in gene order
                keep = np.argsort(-ranking, kind="stable")[:max_features]
                selected = np.sort(selected[keep])
            selected = np.unique(selected)

            params = {
                "method": method.value,
                "min_mean": min_mean,
                "max_mean": max_mean,
                "max_features": max_features,
                **params,
            }
            dataset.commit_features(
                gene_stats[["means", "dispersions", "dispersions_norm"]], selected, params
            )

            n_selected = len(selected)
            flagged = n_selected == 0
            if flagged:
                logger.warning(
                    "No variable genes selected; downstream scaling and PCA will fail. "
                    "Consider widening the mean range or lowering the cutoff."
                )
            stats = {
                "analysis_type": "feature_selection",
                **params,
                "n_genes_tested": dataset.n_genes,
                "n_features_selected": n_selected,
                "selected_genes": dataset.gene_ids[selected].tolist(),
                "flagged": flagged,
            }
            logger.info(f"Selected {n_selected} variable genes")
            return stats

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error in feature selection: {e}")
            raise FeatureSelectionError(f"Feature selection failed: {str(e)}") from e

    # Helper methods
    def _expression_means(self, dataset: Dataset) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Mean, variance of expm1(normalized) and log(mean + 1) per gene."""
        linear = dataset.normalized.copy()
        linear.data = np.expm1(linear.data)
        mean, var = _column_mean_var(linear)
        return mean, var, np.log1p(mean)

    def _dispersion_statistics(
        self,
        dataset: Dataset,
        min_mean: float,
        max_mean: float,
        min_disp: float,
        n_bins: int,
        binning: str,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        if n_bins < 1:
            raise DataError(f"n_bins must be >= 1, got {n_bins}")
        if binning not in ("quantile", "equal_width"):
            raise DataError(
                f"Unknown binning '{binning}'. Must be 'quantile' or 'equal_width'"
            )

        if binning == "equal_width":
            log_mean, dispersion, dispersion_norm = self._seurat_dispersion(dataset, n_bins)
        else:
            log_mean, dispersion, dispersion_norm = self._quantile_dispersion(dataset, n_bins)
        valid = np.isfinite(dispersion)
        dispersion_norm[~valid] = np.nan
        # Genes alone in a quantile bin, or in a bin without spread, carry no signal
        dispersion_norm[valid & ~np.isfinite(dispersion_norm)] = 0.0

        in_range = (log_mean >= min_mean) & (log_mean <= max_mean)
        with np.errstate(invalid="ignore"):
            selected = in_range & valid & (dispersion_norm > min_disp)

        gene_stats = pd.DataFrame(
            {
                "means": log_mean,
                "dispersions": dispersion,
                "dispersions_norm": dispersion_norm,
                "highly_variable": selected,
            },
            index=dataset.gene_ids,
        )
        params = {"min_disp": min_disp, "n_bins": n_bins, "binning": binning}
        return gene_stats, params

    def _seurat_dispersion(
        self, dataset: Dataset, n_bins: int
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Log mean, log dispersion and z-score over equal-width mean bins."""
        work = anndata.AnnData(X=dataset.normalized.copy())
        work.uns["log1p"] = {"base": None}
        table = sc.pp.highly_variable_genes(
            work, flavor="seurat", n_bins=n_bins, inplace=False
        )
        return (
            table["means"].to_numpy(dtype=float),
            table["dispersions"].to_numpy(dtype=float).copy(),
            table["dispersions_norm"].to_numpy(dtype=float).copy(),
        )

    def _quantile_dispersion(
        self, dataset: Dataset, n_bins: int
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Log mean, log dispersion and z-score over mean-expression quantile bins."""
        mean, var, log_mean = self._expression_means(dataset)
        with np.errstate(divide="ignore", invalid="ignore"):
            dispersion = np.log(var / mean)
        valid = np.isfinite(dispersion)

        dispersion_norm = np.full(dataset.n_genes, np.nan)
        if valid.any():
            valid_means = pd.Series(log_mean[valid])
            effective_bins = min(n_bins, int(valid.sum()))
            if effective_bins <= 1:
                bins = np.zeros(len(valid_means), dtype=int)
            else:
                bins = np.asarray(
                    pd.qcut(valid_means, effective_bins, labels=False, duplicates="drop")
                )

            frame = pd.DataFrame({"bin": bins, "disp": dispersion[valid]})
            grouped = frame.groupby("bin")["disp"]
            bin_mean = grouped.transform("mean").to_numpy()
            bin_std = grouped.transform(lambda d: d.std(ddof=1) if len(d) > 1 else np.nan).to_numpy()
            with np.errstate(divide="ignore", invalid="ignore"):
                dispersion_norm[valid] = (frame["disp"].to_numpy() - bin_mean) / bin_std
        return log_mean, dispersion, dispersion_norm

    def _poisson_gamma_statistics(
        self,
        dataset: Dataset,
        min_mean: float,
        max_mean: float,
        n_sd: float,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        if n_sd < 0:
            raise DataError(f"n_sd must be >= 0, got {n_sd}")

        _, _, log_mean = self._expression_means(dataset)

        # Counts on a common library size keep the Poisson term on the count scale
        counts = dataset.counts
        totals = np.asarray(counts.sum(axis=1)).ravel()
        size_factors = totals / totals.mean()
        scaled = spr.diags(1.0 / size_factors) @ counts
        mu, var = _column_mean_var(spr.csr_matrix(scaled))

        expressed = mu > 0
        cv = np.full(dataset.n_genes, np.nan)
        cv[expressed] = np.sqrt(var[expressed]) / mu[expressed]

        in_range = (log_mean >= min_mean) & (log_mean <= max_mean) & expressed
        if in_range.sum() == 0:
            phi = 0.0
        else:
            moments = cv[in_range] ** 2 - 1.0 / mu[in_range]
            phi = max(float(np.median(moments)), 0.0)
        shape = np.inf if phi == 0 else 1.0 / phi

        null_cv = np.full(dataset.n_genes, np.nan)
        null_cv[expressed] = np.sqrt(1.0 / mu[expressed] + phi)
        excess = cv - null_cv

        z = np.full(dataset.n_genes, np.nan)
        if in_range.sum() > 1:
            spread = float(np.std(excess[in_range], ddof=1))
            if spread > 0:
                z[expressed] = excess[expressed] / spread
        else:
            logger.warning(
                "Fewer than two genes inside the mean range; excess CV cannot be standardized"
            )

        with np.errstate(invalid="ignore"):
            selected = in_range & np.isfinite(z) & (z > n_sd)

        gene_stats = pd.DataFrame(
            {
                "means": log_mean,
                "dispersions": cv,
                "dispersions_norm": z,
                "highly_variable": selected,
            },
            index=dataset.gene_ids,
        )
        params = {
            "n_sd": n_sd,
            "null_overdispersion": phi,
            "null_shape": float(shape),
        }
        logger.info(
            f"Fitted Poisson-Gamma null: overdispersion={phi:.4g}, shape={shape:.4g}"
        )
        return gene_stats, params

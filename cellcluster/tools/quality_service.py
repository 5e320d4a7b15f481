"""
Quality control service for single-cell count data.

This service computes per-cell QC statistics (total counts, detected genes,
mitochondrial fraction) and removes cells and genes that fail the caller's
thresholds.
"""

from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import scanpy as sc

from cellcluster.core.dataset import Dataset, PipelineStage
from cellcluster.core.exceptions import (
    CellClusterError,
    DataError,
    InsufficientFeaturesError,
    OrderingError,
)
from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)

MitoPrefix = Optional[Union[str, Sequence[str]]]


class QualityError(CellClusterError):
    """Base exception for quality control operations."""

    pass


class QualityService:
    """
    Stateless service for single-cell quality control.

    Cells are kept only when they pass every cell threshold at once, and genes
    only when they are detected in enough cells. Filtering is permanent.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the quality control service.

        Args:
            config: Optional configuration dict (unused, kept for a uniform service signature)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless QualityService")
        self.config = config or {}

    def compute_qc_metrics(
        self, dataset: Dataset, mito_prefix: MitoPrefix = "MT-"
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Compute per-cell and per-gene QC statistics without filtering.

        Args:
            dataset: Dataset holding raw counts
            mito_prefix: Gene symbol prefix (or prefixes) marking mitochondrial
                genes, or None to skip the mitochondrial fraction

        Returns:
            Tuple[pd.DataFrame, pd.DataFrame]: Cell metrics indexed by barcode
            (``total_counts``, ``n_genes_by_counts``, ``mito_fraction``) and gene
            metrics indexed by symbol (``n_cells_by_counts``, ``total_counts``)

        Raises:
            DataError: If the mitochondrial prefix matches no gene
        """
        adata = dataset.adata
        qc_vars = []
        mito_mask = None
        if mito_prefix is not None:
            prefixes = (mito_prefix,) if isinstance(mito_prefix, str) else tuple(mito_prefix)
            mito_mask = adata.var_names.str.startswith(prefixes)
            if not mito_mask.any():
                raise DataError(
                    f"Mitochondrial prefix {prefixes} matches no gene; "
                    "refusing to report an all-zero mitochondrial fraction",
                    details={"mito_prefix": list(prefixes)},
                )
            qc_vars = ["mito"]

        # Work on a shallow AnnData so the dataset's var table is not touched
        probe = sc.AnnData(
            X=adata.X,
            obs=pd.DataFrame(index=adata.obs_names),
            var=pd.DataFrame(index=adata.var_names),
        )
        if mito_mask is not None:
            probe.var["mito"] = mito_mask
        obs_metrics, var_metrics = sc.pp.calculate_qc_metrics(
            probe, qc_vars=qc_vars, percent_top=None, log1p=False, inplace=False
        )

        cell_metrics = pd.DataFrame(index=adata.obs_names)
        cell_metrics["total_counts"] = obs_metrics["total_counts"].to_numpy(dtype=float)
        cell_metrics["n_genes_by_counts"] = obs_metrics["n_genes_by_counts"].to_numpy(dtype=int)
        if mito_mask is not None:
            totals = cell_metrics["total_counts"].to_numpy()
            mito_counts = obs_metrics["total_counts_mito"].to_numpy(dtype=float)
            with np.errstate(divide="ignore", invalid="ignore"):
                cell_metrics["mito_fraction"] = np.where(
                    totals > 0, mito_counts / totals, np.nan
                )

        gene_metrics = pd.DataFrame(index=adata.var_names)
        gene_metrics["n_cells_by_counts"] = var_metrics["n_cells_by_counts"].to_numpy(dtype=int)
        gene_metrics["total_counts"] = var_metrics["total_counts"].to_numpy(dtype=float)
        if mito_mask is not None:
            gene_metrics["mito"] = mito_mask

        return cell_metrics, gene_metrics

    def filter_cells_and_genes(
        self,
        dataset: Dataset,
        min_genes: Optional[int] = 200,
        max_genes: Optional[int] = 2500,
        max_mito_fraction: Optional[float] = 0.05,
        min_cells: Optional[int] = 3,
        mito_prefix: MitoPrefix = "MT-",
    ) -> Dict[str, Any]:
        """
        Remove cells and genes failing the QC thresholds.

        A cell survives when ``min_genes <= n_genes <= max_genes`` and
        ``mito_fraction <= max_mito_fraction``; a gene survives when it is
        detected in at least ``min_cells`` cells. Any threshold set to None is
        unbounded. All predicates are evaluated on statistics of the incoming
        matrix. Cells left without counts in the surviving genes are removed
        as well, since they cannot be normalized.

        Args:
            dataset: Dataset at stage LOADED or FILTERED (modified in place)
            min_genes: Minimum number of detected genes per cell
            max_genes: Maximum number of detected genes per cell
            max_mito_fraction: Maximum mitochondrial fraction (0-1)
            min_cells: Minimum number of cells in which a gene is detected
            mito_prefix: Mitochondrial gene symbol prefix(es), None to skip

        Returns:
            Dict[str, Any]: Filtering statistics

        Raises:
            OrderingError: If the dataset has already been normalized
            DataError: On a zero-match mitochondrial prefix or when no cell survives
            InsufficientFeaturesError: When no gene survives
        """
        try:
            logger.info("Starting cell and gene quality filtering")
            if dataset.stage > PipelineStage.FILTERED:
                raise OrderingError(
                    "Cannot filter cells: filtering must happen before normalization",
                    details={
                        "action": "filter cells",
                        "required": PipelineStage.FILTERED.name,
                        "current": dataset.stage.name,
                    },
                )
            self._validate_thresholds(min_genes, max_genes, max_mito_fraction, min_cells)
            if max_mito_fraction is not None and mito_prefix is None:
                raise DataError(
                    "max_mito_fraction was given but mito_prefix is None; "
                    "cannot compute a mitochondrial fraction"
                )

            logger.info(
                f"Input data shape: {dataset.n_cells} cells × {dataset.n_genes} genes"
            )
            cell_metrics, gene_metrics = self.compute_qc_metrics(dataset, mito_prefix)

            n_genes = cell_metrics["n_genes_by_counts"].to_numpy()
            predicates = {
                "min_genes": (
                    n_genes >= min_genes
                    if min_genes is not None
                    else np.ones(dataset.n_cells, dtype=bool)
                ),
                "max_genes": (
                    n_genes <= max_genes
                    if max_genes is not None
                    else np.ones(dataset.n_cells, dtype=bool)
                ),
            }
            if max_mito_fraction is not None:
                fraction = cell_metrics["mito_fraction"].to_numpy()
                predicates["max_mito_fraction"] = (
                    np.nan_to_num(fraction, nan=np.inf) <= max_mito_fraction
                )
            else:
                predicates["max_mito_fraction"] = np.ones(dataset.n_cells, dtype=bool)

            cell_mask = np.logical_and.reduce(list(predicates.values()))
            gene_mask = (
                gene_metrics["n_cells_by_counts"].to_numpy() >= min_cells
                if min_cells is not None
                else np.ones(dataset.n_genes, dtype=bool)
            )

            # Totals over the genes that survive, to catch cells that would be empty
            surviving_totals = np.asarray(
                dataset.counts[:, gene_mask].sum(axis=1)
            ).ravel()
            empty_cells = surviving_totals <= 0
            cell_mask &= ~empty_cells

            n_cells_kept = int(cell_mask.sum())
            n_genes_kept = int(gene_mask.sum())
            if n_genes_kept == 0:
                raise InsufficientFeaturesError(
                    f"No gene is detected in at least {min_cells} cells",
                    details={"min_cells": min_cells},
                )
            if n_cells_kept == 0:
                raise DataError(
                    "No cell passes the quality thresholds",
                    details={
                        name: int((~mask).sum()) for name, mask in predicates.items()
                    },
                )

            initial_cells = dataset.n_cells
            initial_genes = dataset.n_genes
            params = {
                "min_genes": min_genes,
                "max_genes": max_genes,
                "max_mito_fraction": max_mito_fraction,
                "min_cells": min_cells,
                "mito_prefix": (
                    mito_prefix
                    if mito_prefix is None or isinstance(mito_prefix, str)
                    else list(mito_prefix)
                ),
            }
            stats = {
                "analysis_type": "quality_filter",
                **params,
                "initial_cells": initial_cells,
                "final_cells": n_cells_kept,
                "cells_removed": initial_cells - n_cells_kept,
                "cells_retained_pct": n_cells_kept / initial_cells * 100,
                "initial_genes": initial_genes,
                "final_genes": n_genes_kept,
                "genes_removed": initial_genes - n_genes_kept,
                "genes_retained_pct": n_genes_kept / initial_genes * 100,
                "cells_failing": {
                    name: int((~mask).sum()) for name, mask in predicates.items()
                },
                "cells_without_counts": int(empty_cells.sum()),
                "median_genes_per_cell": float(np.median(n_genes)),
                "median_counts_per_cell": float(
                    np.median(cell_metrics["total_counts"].to_numpy())
                ),
            }

            dataset.commit_filter(cell_mask, gene_mask, cell_metrics, gene_metrics, params)

            logger.info(
                f"Filtering complete: {initial_cells} → {n_cells_kept} cells, "
                f"{initial_genes} → {n_genes_kept} genes"
            )
            return stats

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error in quality filtering: {e}")
            raise QualityError(f"Quality filtering failed: {str(e)}") from e

    def summarize_qc(self, dataset: Dataset, mito_prefix: MitoPrefix = "MT-") -> Dict[str, Any]:
        """
        Summarize QC distributions before choosing thresholds.

        Returns:
            Dict[str, Any]: min/median/mean/max of each cell metric
        """
        cell_metrics, gene_metrics = self.compute_qc_metrics(dataset, mito_prefix)
        summary = {}
        for column in cell_metrics.columns:
            values = cell_metrics[column].dropna()
            summary[column] = {
                "min": float(values.min()),
                "median": float(values.median()),
                "mean": float(values.mean()),
                "max": float(values.max()),
            }
        summary["n_cells"] = dataset.n_cells
        summary["n_genes"] = dataset.n_genes
        summary["genes_not_detected"] = int(
            (gene_metrics["n_cells_by_counts"] == 0).sum()
        )
        return summary

    @staticmethod
    def _validate_thresholds(min_genes, max_genes, max_mito_fraction, min_cells) -> None:
        if min_genes is not None and min_genes < 0:
            raise DataError(f"min_genes must be >= 0, got {min_genes}")
        if max_genes is not None and min_genes is not None and max_genes < min_genes:
            raise DataError(
                f"max_genes ({max_genes}) is smaller than min_genes ({min_genes})"
            )
        if max_mito_fraction is not None and not 0 <= max_mito_fraction <= 1:
            raise DataError(
                f"max_mito_fraction must be a fraction in [0, 1], got {max_mito_fraction}"
            )
        if min_cells is not None and min_cells < 0:
            raise DataError(f"min_cells must be >= 0, got {min_cells}")

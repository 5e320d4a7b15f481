"""
Marker gene discovery between clusters or arbitrary cell groups.

Markers are computed on the log-normalized matrix of all surviving genes.
A gene is tested when it is detected in at least ``min_pct`` of the cells of
either group; p-values are Bonferroni-adjusted over the tested genes.
Marker tables are returned to the caller and never stored on the dataset.
"""

from numbers import Integral
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from cellcluster.core.dataset import Dataset, PipelineStage
from cellcluster.core.exceptions import CellClusterError, DataError
from cellcluster.tools.de_tests import DETest, get_test
from cellcluster.utils.logger import get_logger
from cellcluster.utils.seeding import resolve_seed

logger = get_logger(__name__)

MARKER_COLUMNS = [
    "gene",
    "cluster",
    "statistic",
    "avg_logFC",
    "pct_1",
    "pct_2",
    "p_val",
    "p_val_adj",
]

# A cluster label, several labels, or a list of barcodes
GroupSpec = Union[int, Sequence[int], Sequence[str]]


class MarkerError(CellClusterError):
    """Base exception for marker discovery operations."""

    pass


def _empty_table() -> pd.DataFrame:
    return pd.DataFrame({column: [] for column in MARKER_COLUMNS})


class MarkerService:
    """
    Stateless service finding differentially expressed genes.

    The statistical test is chosen with ``DETest``; see
    ``cellcluster.tools.de_tests`` for the implementations.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the marker service.

        Args:
            config: Optional configuration dict (unused, kept for a uniform service signature)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless MarkerService")
        self.config = config or {}

    def find_markers(
        self,
        dataset: Dataset,
        target: GroupSpec,
        comparison: Optional[GroupSpec] = None,
        test: DETest = DETest.WILCOXON,
        min_pct: float = 0.1,
        logfc_threshold: float = 0.0,
        only_pos: bool = False,
        max_cells_per_group: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Find genes differentially expressed between a target group and a comparison.

        Args:
            dataset: Normalized dataset (clustered when groups are given as labels)
            target: Cluster label, list of cluster labels, or list of barcodes
            comparison: Same forms as ``target``; None compares against all
                other surviving cells
            test: Statistical test to apply
            min_pct: Minimum detection fraction in at least one group
            logfc_threshold: Minimum absolute ``avg_logFC`` for a gene to be tested
            only_pos: Keep only genes higher in the target group
            max_cells_per_group: Downsample each group to at most this many cells
            seed: Seed for downsampling; None draws a fresh one

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]: Marker table and statistics

        Raises:
            OrderingError: If the dataset is not normalized, or not clustered
                while cluster labels are used
            DataError: On unknown labels or barcodes, empty or overlapping groups
        """
        try:
            test = DETest(test)
            dataset.require(PipelineStage.NORMALIZED, "find markers")
            if not 0 <= min_pct <= 1:
                raise DataError(f"min_pct must be in [0, 1], got {min_pct}")
            if logfc_threshold < 0:
                raise DataError(f"logfc_threshold must be >= 0, got {logfc_threshold}")

            group_a, target_label = self._resolve_group(dataset, target, "target")
            if comparison is None:
                group_b = np.setdiff1d(np.arange(dataset.n_cells), group_a)
                if len(group_b) == 0:
                    raise DataError("Comparison group is empty: target covers every cell")
            else:
                group_b, _ = self._resolve_group(dataset, comparison, "comparison")
                overlap = np.intersect1d(group_a, group_b)
                if len(overlap):
                    raise DataError(
                        f"Target and comparison groups share {len(overlap)} cells",
                        details={"overlap": dataset.cell_ids[overlap[:10]].tolist()},
                    )

            params: Dict[str, Any] = {
                "test": test.value,
                "min_pct": min_pct,
                "logfc_threshold": logfc_threshold,
                "only_pos": only_pos,
                "max_cells_per_group": max_cells_per_group,
            }
            if max_cells_per_group is not None:
                if max_cells_per_group < 1:
                    raise DataError(
                        f"max_cells_per_group must be >= 1, got {max_cells_per_group}"
                    )
                seed, deterministic = resolve_seed(seed, "marker downsampling")
                rng = np.random.default_rng(seed)
                group_a = self._downsample(group_a, max_cells_per_group, rng)
                group_b = self._downsample(group_b, max_cells_per_group, rng)
                params.update({"seed": seed, "deterministic": deterministic})

            logger.info(
                f"Finding markers for {target_label}: {len(group_a)} vs {len(group_b)} cells "
                f"({test.value} test)"
            )
            table, n_tested = self._compare(
                dataset, group_a, group_b, target_label, test, min_pct, logfc_threshold, only_pos
            )

            stats = {
                "analysis_type": "marker_genes",
                **params,
                "target": target_label,
                "n_cells_target": int(len(group_a)),
                "n_cells_comparison": int(len(group_b)),
                "n_genes_tested": n_tested,
                "n_markers": int(len(table)),
                "n_significant": int((table["p_val_adj"] < 0.05).sum()),
            }
            logger.info(
                f"Marker search complete: {n_tested} genes tested, "
                f"{stats['n_significant']} with adjusted p < 0.05"
            )
            return table, stats

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error finding markers: {e}")
            raise MarkerError(f"Marker search failed: {str(e)}") from e

    def find_all_markers(
        self,
        dataset: Dataset,
        test: DETest = DETest.WILCOXON,
        min_pct: float = 0.1,
        logfc_threshold: float = 0.0,
        only_pos: bool = False,
        max_cells_per_group: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Run a one-vs-rest marker search for every cluster.

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]: Concatenated marker tables in
            cluster order, and per-cluster marker counts
        """
        try:
            dataset.require(PipelineStage.CLUSTERED, "find markers for all clusters")
            labels = sorted(dataset.clusters.unique().tolist())
            if len(labels) < 2:
                raise DataError(
                    f"At least 2 clusters are required for one-vs-rest markers, found {len(labels)}"
                )
            if max_cells_per_group is not None:
                seed, _ = resolve_seed(seed, "marker downsampling")

            tables: List[pd.DataFrame] = []
            per_cluster: Dict[str, int] = {}
            for label in labels:
                table, _ = self.find_markers(
                    dataset,
                    target=int(label),
                    test=test,
                    min_pct=min_pct,
                    logfc_threshold=logfc_threshold,
                    only_pos=only_pos,
                    max_cells_per_group=max_cells_per_group,
                    seed=seed,
                )
                tables.append(table)
                per_cluster[str(label)] = int(len(table))

            non_empty = [t for t in tables if len(t)]
            markers = (
                pd.concat(non_empty, ignore_index=True) if non_empty else _empty_table()
            )
            stats = {
                "analysis_type": "all_marker_genes",
                "test": DETest(test).value,
                "n_clusters": len(labels),
                "markers_per_cluster": per_cluster,
                "n_markers": int(len(markers)),
            }
            return markers, stats

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error finding markers for all clusters: {e}")
            raise MarkerError(f"Marker search failed: {str(e)}") from e

    # Helper methods
    def _resolve_group(
        self, dataset: Dataset, spec: GroupSpec, role: str
    ) -> Tuple[np.ndarray, Any]:
        """Turn a label, label list or barcode list into sorted row positions."""
        if isinstance(spec, str):
            raise DataError(
                f"{role} must be a cluster label or a list of barcodes, got the string '{spec}'"
            )
        if isinstance(spec, Integral):
            labels = [int(spec)]
            name: Any = int(spec)
        else:
            items = list(spec)
            if not items:
                raise DataError(f"{role} group is empty")
            if all(isinstance(item, Integral) for item in items):
                labels = [int(item) for item in items]
                name = labels if len(labels) > 1 else labels[0]
            else:
                positions = np.unique(dataset.cell_positions([str(i) for i in items]))
                return positions, "custom"

        dataset.require(PipelineStage.CLUSTERED, f"select {role} cells by cluster label")
        clusters = dataset.clusters.to_numpy()
        unknown = sorted(set(labels) - set(np.unique(clusters).tolist()))
        if unknown:
            raise DataError(
                f"Unknown cluster label(s) for {role}: {unknown}",
                details={"unknown": unknown, "available": sorted(np.unique(clusters).tolist())},
            )
        return np.flatnonzero(np.isin(clusters, labels)), name

    @staticmethod
    def _downsample(group: np.ndarray, max_cells: int, rng: np.random.Generator) -> np.ndarray:
        if len(group) <= max_cells:
            return group
        return np.sort(rng.choice(group, size=max_cells, replace=False))

    def _compare(
        self,
        dataset: Dataset,
        group_a: np.ndarray,
        group_b: np.ndarray,
        target_label: Any,
        test: DETest,
        min_pct: float,
        logfc_threshold: float,
        only_pos: bool,
    ) -> Tuple[pd.DataFrame, int]:
        normalized = dataset.normalized
        a_data = normalized[group_a]
        b_data = normalized[group_b]

        pct_1 = np.asarray((a_data > 0).astype(float).mean(axis=0)).ravel()
        pct_2 = np.asarray((b_data > 0).astype(float).mean(axis=0)).ravel()

        a_linear = a_data.copy()
        a_linear.data = np.expm1(a_linear.data)
        b_linear = b_data.copy()
        b_linear.data = np.expm1(b_linear.data)
        avg_logfc = np.log1p(np.asarray(a_linear.mean(axis=0)).ravel()) - np.log1p(
            np.asarray(b_linear.mean(axis=0)).ravel()
        )

        tested = (np.maximum(pct_1, pct_2) >= min_pct) & (np.abs(avg_logfc) >= logfc_threshold)
        genes = np.flatnonzero(tested)
        n_tested = int(len(genes))
        if n_tested == 0:
            logger.warning("No gene passes the detection and fold-change filters")
            return _empty_table(), 0

        expression = np.vstack(
            [a_data[:, genes].toarray(), b_data[:, genes].toarray()]
        )
        rows_a = np.arange(len(group_a))
        rows_b = np.arange(len(group_a), len(group_a) + len(group_b))
        statistic, p_val = get_test(test).compute_statistic(rows_a, rows_b, expression)
        p_val = np.where(np.isnan(p_val), 1.0, p_val)
        p_val_adj = np.minimum(p_val * n_tested, 1.0)

        table = pd.DataFrame(
            {
                "gene": dataset.gene_ids[genes].to_numpy(),
                "cluster": [target_label] * n_tested,
                "statistic": statistic,
                "avg_logFC": avg_logfc[genes],
                "pct_1": pct_1[genes],
                "pct_2": pct_2[genes],
                "p_val": p_val,
                "p_val_adj": p_val_adj,
            }
        )
        if only_pos:
            table = table[table["avg_logFC"] > 0]
        table = table.sort_values(
            ["p_val_adj", "avg_logFC"], ascending=[True, False], kind="mergesort"
        ).reset_index(drop=True)
        return table, n_tested

"""
Dataset aggregate for the clustering pipeline.

The Dataset owns the raw sparse count matrix and every product derived from
it. Storage follows the AnnData conventions used throughout the scverse
ecosystem (``X`` holds raw counts, ``layers``/``obsm``/``varm``/``obsp``/``uns``
hold derived matrices), but all writes go through the ``commit_*`` methods so
that stage ordering is checked and a failed stage never leaves a half-written
dataset behind.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as spr

from cellcluster.core.exceptions import DataError, OrderingError
from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)


class PipelineStage(IntEnum):
    """Linear stage order of the pipeline."""

    LOADED = 0
    FILTERED = 1
    NORMALIZED = 2
    FEATURES_SELECTED = 3
    SCALED = 4
    REDUCED = 5
    GRAPH_READY = 6
    CLUSTERED = 7


NORMALIZED_LAYER = "normalized"
SCALED_KEY = "X_scaled"
PCA_KEY = "X_pca"
TSNE_KEY = "X_tsne"
GRAPH_KEY = "snn"
CLUSTER_KEY = "cluster"

# Columns written by pipeline stages; imported copies are stale
RESERVED_OBS_COLUMNS = (CLUSTER_KEY, "total_counts", "n_genes_by_counts", "mito_fraction")
RESERVED_VAR_COLUMNS = (
    "highly_variable",
    "means",
    "dispersions",
    "dispersions_norm",
    "n_cells_by_counts",
    "total_counts",
)


@dataclass(frozen=True)
class NeighborGraph:
    """
    Shared-nearest-neighbor graph over the surviving cells.

    Attributes:
        adjacency: Symmetric CSR matrix of Jaccard weights with an empty diagonal
        cell_ids: Barcodes of the cells the graph was built on, in row order
        n_dims: Number of leading PCA dimensions used as coordinates
        n_neighbors: Neighbor count S (excluding the cell itself)
        metric: Distance metric used for the neighbor search
        prune: Edges with weight at or below this value were dropped
    """

    adjacency: spr.csr_matrix
    cell_ids: Tuple[str, ...]
    n_dims: int
    n_neighbors: int
    metric: str
    prune: float

    @property
    def n_nodes(self) -> int:
        return self.adjacency.shape[0]

    @property
    def n_edges(self) -> int:
        """Number of undirected edges."""
        return int(self.adjacency.nnz // 2)


@dataclass(frozen=True)
class PCAResult:
    """Scores, loadings and explained variance of a PCA run."""

    scores: np.ndarray
    loadings: np.ndarray
    variance_ratio: np.ndarray
    feature_names: Tuple[str, ...]

    @property
    def n_components(self) -> int:
        return self.scores.shape[1]


@dataclass(frozen=True)
class ReportView:
    """
    Read-only snapshot handed to report and plot generators.

    Arrays are flagged non-writable. ``version`` is the dataset version the
    snapshot was taken at; any later commit bumps the dataset version.
    """

    version: int
    cell_metrics: pd.DataFrame
    pca: Optional[np.ndarray]
    tsne: Optional[np.ndarray]
    clusters: Optional[pd.Series]


def _read_only(array: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if array is None:
        return None
    frozen = np.array(array, copy=True)
    frozen.setflags(write=False)
    return frozen


class Dataset:
    """
    Single mutable aggregate carried through the pipeline.

    A Dataset is created once from raw counts and updated in place by each
    stage. Cells and genes dropped by quality filtering are gone for good;
    the identifiers the dataset was created with are remembered so that
    derived structures can be checked against them.
    """

    def __init__(self, adata: anndata.AnnData):
        counts = self._validate_counts(adata)

        self.adata = anndata.AnnData(
            X=counts,
            obs=pd.DataFrame(index=pd.Index(adata.obs_names.astype(str), name=None)),
            var=pd.DataFrame(index=pd.Index(adata.var_names.astype(str), name=None)),
        )
        dropped = []
        for column in adata.obs.columns:
            if column in RESERVED_OBS_COLUMNS:
                dropped.append(f"obs.{column}")
                continue
            self.adata.obs[column] = adata.obs[column].values
        for column in adata.var.columns:
            if column in RESERVED_VAR_COLUMNS:
                dropped.append(f"var.{column}")
                continue
            self.adata.var[column] = adata.var[column].values
        if dropped:
            logger.warning(f"Ignoring imported analysis columns: {', '.join(dropped)}")

        self.original_cells = pd.Index(self.adata.obs_names.copy())
        self.original_genes = pd.Index(self.adata.var_names.copy())
        self.stage = PipelineStage.LOADED
        self.version = 0
        self.has_embedding = False
        self.history = []

        logger.info(
            f"Created dataset: {self.n_cells} cells × {self.n_genes} genes "
            f"({self.adata.X.nnz} nonzero entries)"
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_anndata(cls, adata: anndata.AnnData) -> "Dataset":
        """Create a dataset from an AnnData object holding raw counts in ``X``."""
        return cls(adata)

    @classmethod
    def from_matrix(
        cls,
        counts: Union[np.ndarray, spr.spmatrix],
        cell_ids: Sequence[str],
        gene_ids: Sequence[str],
    ) -> "Dataset":
        """
        Create a dataset from a cells × genes count matrix and identifier lists.

        Args:
            counts: Nonnegative integer counts, dense or sparse
            cell_ids: One barcode per row
            gene_ids: One gene symbol per column

        Raises:
            DataError: If identifiers do not match the matrix shape
        """
        n_rows, n_cols = counts.shape
        if len(cell_ids) != n_rows:
            raise DataError(
                f"Got {len(cell_ids)} cell identifiers for {n_rows} matrix rows",
                details={"n_cell_ids": len(cell_ids), "n_rows": n_rows},
            )
        if len(gene_ids) != n_cols:
            raise DataError(
                f"Got {len(gene_ids)} gene identifiers for {n_cols} matrix columns",
                details={"n_gene_ids": len(gene_ids), "n_cols": n_cols},
            )
        adata = anndata.AnnData(
            X=spr.csr_matrix(counts),
            obs=pd.DataFrame(index=[str(c) for c in cell_ids]),
            var=pd.DataFrame(index=[str(g) for g in gene_ids]),
        )
        return cls(adata)

    @staticmethod
    def _validate_counts(adata: anndata.AnnData) -> spr.csr_matrix:
        """Check identifiers and count values, returning a CSR copy of ``X``."""
        if adata.n_obs == 0 or adata.n_vars == 0:
            raise DataError(
                f"Count matrix is empty ({adata.n_obs} cells × {adata.n_vars} genes)"
            )

        for axis_name, names in (("cell", adata.obs_names), ("gene", adata.var_names)):
            names = pd.Index(names.astype(str))
            if (names.str.strip() == "").any():
                raise DataError(f"Empty {axis_name} identifier found")
            if not names.is_unique:
                duplicated = names[names.duplicated()].unique().tolist()[:5]
                raise DataError(
                    f"Duplicate {axis_name} identifiers: {duplicated}",
                    details={"axis": axis_name, "duplicates": duplicated},
                )

        counts = spr.csr_matrix(adata.X, dtype=np.float64)
        counts.eliminate_zeros()
        values = counts.data
        if values.size:
            if not np.all(np.isfinite(values)):
                raise DataError("Count matrix contains non-finite values")
            if values.min() < 0:
                raise DataError("Count matrix contains negative values")
            if not np.allclose(values, np.round(values)):
                raise DataError(
                    "Count matrix contains non-integer values; raw counts are required"
                )
        return counts

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def n_cells(self) -> int:
        return self.adata.n_obs

    @property
    def n_genes(self) -> int:
        return self.adata.n_vars

    @property
    def cell_ids(self) -> pd.Index:
        return self.adata.obs_names

    @property
    def gene_ids(self) -> pd.Index:
        return self.adata.var_names

    @property
    def counts(self) -> spr.csr_matrix:
        return self.adata.X

    @property
    def normalized(self) -> Optional[spr.csr_matrix]:
        return self.adata.layers.get(NORMALIZED_LAYER)

    @property
    def feature_indices(self) -> Optional[np.ndarray]:
        if "highly_variable" not in self.adata.var:
            return None
        return np.flatnonzero(self.adata.var["highly_variable"].to_numpy())

    @property
    def feature_names(self) -> Optional[pd.Index]:
        indices = self.feature_indices
        if indices is None:
            return None
        return self.adata.var_names[indices]

    @property
    def scaled(self) -> Optional[np.ndarray]:
        return self.adata.obsm.get(SCALED_KEY)

    @property
    def pca(self) -> Optional[PCAResult]:
        if PCA_KEY not in self.adata.obsm:
            return None
        info = self.adata.uns["pca"]
        return PCAResult(
            scores=self.adata.obsm[PCA_KEY],
            loadings=info["loadings"],
            variance_ratio=info["variance_ratio"],
            feature_names=tuple(info["feature_names"]),
        )

    @property
    def graph(self) -> Optional[NeighborGraph]:
        if GRAPH_KEY not in self.adata.obsp:
            return None
        params = self.adata.uns["neighbors"]
        return NeighborGraph(
            adjacency=self.adata.obsp[GRAPH_KEY],
            cell_ids=tuple(str(c) for c in params["cell_ids"]),
            n_dims=params["n_dims"],
            n_neighbors=params["n_neighbors"],
            metric=params["metric"],
            prune=params["prune"],
        )

    @property
    def clusters(self) -> Optional[pd.Series]:
        """Cluster assignment keyed by barcode, or None before clustering."""
        if CLUSTER_KEY not in self.adata.obs:
            return None
        return self.adata.obs[CLUSTER_KEY].astype(int).copy()

    @property
    def tsne(self) -> Optional[np.ndarray]:
        return self.adata.obsm.get(TSNE_KEY)

    def require(self, stage: PipelineStage, action: str) -> None:
        """
        Raise OrderingError unless ``stage`` has been reached.

        Args:
            stage: Minimum stage required by the action
            action: Human-readable name of the action being attempted
        """
        if self.stage < stage:
            raise OrderingError(
                f"Cannot {action}: requires stage {stage.name}, "
                f"dataset is at {self.stage.name}",
                details={
                    "action": action,
                    "required": stage.name,
                    "current": self.stage.name,
                },
            )

    def cell_positions(self, cell_ids: Sequence[str]) -> np.ndarray:
        """
        Map barcodes to row positions.

        Raises:
            DataError: If any barcode is not a surviving cell
        """
        indexer = self.adata.obs_names.get_indexer(pd.Index([str(c) for c in cell_ids]))
        missing = [c for c, pos in zip(cell_ids, indexer) if pos < 0]
        if missing:
            removed = [c for c in missing if c in self.original_cells]
            raise DataError(
                f"{len(missing)} cell identifiers are not present in the dataset"
                + (f" ({len(removed)} were removed by filtering)" if removed else ""),
                details={"missing": list(missing)[:10], "removed": removed[:10]},
            )
        return indexer

    def report_view(self) -> ReportView:
        """Return a read-only snapshot of per-cell results for report generators."""
        metric_columns = [
            c
            for c in ("total_counts", "n_genes_by_counts", "mito_fraction")
            if c in self.adata.obs
        ]
        metrics = self.adata.obs[metric_columns].copy()
        pca = self.pca
        clusters = self.clusters
        return ReportView(
            version=self.version,
            cell_metrics=metrics,
            pca=_read_only(pca.scores) if pca is not None else None,
            tsne=_read_only(self.tsne),
            clusters=clusters,
        )

    def copy(self) -> "Dataset":
        """Independent deep copy, for running analyses in parallel."""
        clone = Dataset.__new__(Dataset)
        clone.adata = self.adata.copy()
        clone.original_cells = self.original_cells.copy()
        clone.original_genes = self.original_genes.copy()
        clone.stage = self.stage
        clone.version = self.version
        clone.has_embedding = self.has_embedding
        clone.history = list(self.history)
        return clone

    def __repr__(self) -> str:
        return (
            f"Dataset({self.n_cells} cells × {self.n_genes} genes, "
            f"stage={self.stage.name}, version={self.version})"
        )

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def _bump(self, stage: PipelineStage, action: str, params: Dict[str, Any]) -> None:
        self.stage = stage
        self.version += 1
        self.history.append({"action": action, "version": self.version, **params})
        logger.debug(f"Dataset committed '{action}' -> {stage.name} (v{self.version})")

    def _invalidate_after(self, stage: PipelineStage) -> None:
        """Drop every derived product that depends on stages after ``stage``."""
        adata = self.adata
        if stage < PipelineStage.NORMALIZED:
            adata.layers.pop(NORMALIZED_LAYER, None)
        if stage < PipelineStage.FEATURES_SELECTED:
            for column in ("means", "dispersions", "dispersions_norm", "highly_variable"):
                if column in adata.var:
                    del adata.var[column]
            adata.uns.pop("feature_selection", None)
        if stage < PipelineStage.SCALED:
            adata.obsm.pop(SCALED_KEY, None)
            adata.uns.pop("scaling", None)
        if stage < PipelineStage.REDUCED:
            adata.obsm.pop(PCA_KEY, None)
            adata.uns.pop("pca", None)
            adata.obsm.pop(TSNE_KEY, None)
            adata.uns.pop("tsne", None)
            self.has_embedding = False
        if stage < PipelineStage.GRAPH_READY:
            adata.obsp.pop(GRAPH_KEY, None)
            adata.uns.pop("neighbors", None)
        if stage < PipelineStage.CLUSTERED:
            if CLUSTER_KEY in adata.obs:
                del adata.obs[CLUSTER_KEY]
            adata.uns.pop("clustering", None)

    def commit_filter(
        self,
        cell_mask: np.ndarray,
        gene_mask: np.ndarray,
        cell_metrics: pd.DataFrame,
        gene_metrics: pd.DataFrame,
        params: Dict[str, Any],
    ) -> None:
        """Permanently restrict the dataset to the passing cells and genes."""
        if self.stage > PipelineStage.FILTERED:
            raise OrderingError(
                "Cannot filter cells: filtering must happen before normalization",
                details={
                    "action": "filter cells",
                    "required": PipelineStage.FILTERED.name,
                    "current": self.stage.name,
                },
            )
        subset = self.adata[cell_mask, gene_mask].copy()
        for column in cell_metrics.columns:
            subset.obs[column] = cell_metrics.loc[subset.obs_names, column].values
        for column in gene_metrics.columns:
            subset.var[column] = gene_metrics.loc[subset.var_names, column].values
        subset.uns["qc"] = dict(params)
        self.adata = subset
        self._invalidate_after(PipelineStage.FILTERED)
        self._bump(PipelineStage.FILTERED, "filter", params)

    def commit_normalized(self, matrix: spr.csr_matrix, params: Dict[str, Any]) -> None:
        self.require(PipelineStage.FILTERED, "store normalized data")
        self._invalidate_after(PipelineStage.FILTERED)
        self.adata.layers[NORMALIZED_LAYER] = matrix
        self.adata.uns["normalization"] = dict(params)
        self._bump(PipelineStage.NORMALIZED, "normalize", params)

    def commit_features(
        self, gene_stats: pd.DataFrame, selected: np.ndarray, params: Dict[str, Any]
    ) -> None:
        self.require(PipelineStage.NORMALIZED, "store selected features")
        self._invalidate_after(PipelineStage.NORMALIZED)
        for column in gene_stats.columns:
            self.adata.var[column] = gene_stats[column].to_numpy()
        mask = np.zeros(self.n_genes, dtype=bool)
        mask[selected] = True
        self.adata.var["highly_variable"] = mask
        self.adata.uns["feature_selection"] = dict(params)
        self._bump(PipelineStage.FEATURES_SELECTED, "select_features", params)

    def commit_scaled(self, matrix: np.ndarray, params: Dict[str, Any]) -> None:
        self.require(PipelineStage.FEATURES_SELECTED, "store scaled data")
        self._invalidate_after(PipelineStage.FEATURES_SELECTED)
        self.adata.obsm[SCALED_KEY] = matrix
        self.adata.uns["scaling"] = dict(params)
        self._bump(PipelineStage.SCALED, "scale", params)

    def commit_pca(
        self,
        scores: np.ndarray,
        loadings: np.ndarray,
        variance_ratio: np.ndarray,
        params: Dict[str, Any],
    ) -> None:
        self.require(PipelineStage.SCALED, "store PCA results")
        self._invalidate_after(PipelineStage.SCALED)
        self.adata.obsm[PCA_KEY] = scores
        self.adata.uns["pca"] = {
            "loadings": loadings,
            "variance_ratio": variance_ratio,
            "feature_names": list(self.feature_names),
            **params,
        }
        self._bump(PipelineStage.REDUCED, "pca", params)

    def commit_graph(self, graph: NeighborGraph, params: Dict[str, Any]) -> None:
        self.require(PipelineStage.REDUCED, "store neighbor graph")
        if graph.cell_ids != tuple(self.adata.obs_names):
            raise DataError("Neighbor graph was built on a different cell set")
        self._invalidate_after(PipelineStage.REDUCED)
        self.adata.obsp[GRAPH_KEY] = graph.adjacency
        self.adata.uns["neighbors"] = {
            "n_dims": graph.n_dims,
            "n_neighbors": graph.n_neighbors,
            "metric": graph.metric,
            "prune": graph.prune,
            "cell_ids": list(graph.cell_ids),
        }
        self._bump(PipelineStage.GRAPH_READY, "neighbors", params)

    def commit_clusters(
        self,
        labels: np.ndarray,
        params: Dict[str, Any],
        graph: Optional[NeighborGraph] = None,
    ) -> None:
        """
        Store a cluster assignment, together with a freshly built graph if given.

        Labels replace any previous assignment.
        """
        self.require(PipelineStage.REDUCED, "store cluster labels")
        if graph is None:
            self.require(PipelineStage.GRAPH_READY, "store cluster labels")
        if len(labels) != self.n_cells:
            raise DataError(
                f"Got {len(labels)} cluster labels for {self.n_cells} cells"
            )
        if graph is not None:
            self.commit_graph(graph, params)
        self._invalidate_after(PipelineStage.GRAPH_READY)
        self.adata.obs[CLUSTER_KEY] = np.asarray(labels, dtype=int)
        self.adata.uns["clustering"] = dict(params)
        self._bump(PipelineStage.CLUSTERED, "cluster", params)

    def commit_embedding(self, coordinates: np.ndarray, params: Dict[str, Any]) -> None:
        self.require(PipelineStage.REDUCED, "store t-SNE coordinates")
        self.adata.obsm[TSNE_KEY] = coordinates
        self.adata.uns["tsne"] = dict(params)
        self.has_embedding = True
        # Embedding is independent of clustering, stage stays where it is
        self._bump(self.stage, "tsne", params)

"""
Shared-nearest-neighbor graph construction and graph-based clustering.

Cells are connected by the Jaccard overlap of their k-nearest-neighbor sets in
PCA space, and the resulting weighted graph is partitioned with the Leiden
algorithm optimising the Reichardt-Bornholdt configuration-model objective.
The resolution parameter controls granularity (higher → more clusters).
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import igraph as ig
import leidenalg as la
import numpy as np
import scipy.sparse as spr
from sklearn.metrics import (
    calinski_harabasz_score,
    davies_bouldin_score,
    silhouette_samples,
    silhouette_score,
)
from sklearn.neighbors import NearestNeighbors

from cellcluster.config.settings import get_settings
from cellcluster.core.dataset import Dataset, NeighborGraph, PipelineStage
from cellcluster.core.exceptions import (
    CellClusterError,
    DataError,
    DimensionError,
    GraphMismatchError,
)
from cellcluster.utils.logger import get_logger
from cellcluster.utils.seeding import resolve_seed

logger = get_logger(__name__)

QUALITY_METRICS = ["silhouette", "davies_bouldin", "calinski_harabasz"]


class ClusteringError(CellClusterError):
    """Base exception for clustering operations."""

    pass


def _dense_labels(membership: Sequence[int]) -> np.ndarray:
    """Relabel communities 0..k-1, largest first, ties by first appearance."""
    membership = np.asarray(membership)
    communities, first_seen, sizes = np.unique(
        membership, return_index=True, return_counts=True
    )
    order = np.lexsort((first_seen, -sizes))
    mapping = np.empty(communities.max() + 1, dtype=int)
    mapping[communities[order]] = np.arange(len(communities))
    return mapping[membership]


class ClusteringService:
    """
    Stateless service for neighbor graph construction and Leiden clustering.

    Every call that clusters either builds a fresh graph from the current PCA
    scores or, with ``reuse_graph=True``, checks the stored graph against the
    request before partitioning it.
    """

    def __init__(self, config=None, **kwargs):
        """
        Initialize the clustering service.

        Args:
            config: Optional configuration dict (unused, kept for a uniform service signature)
            **kwargs: Additional arguments (ignored)
        """
        logger.debug("Initializing stateless ClusteringService")
        self.config = config or {}
        self.default_cluster_resolution = get_settings().DEFAULT_CLUSTER_RESOLUTION

    def build_neighbor_graph(
        self,
        dataset: Dataset,
        n_dims: int = 10,
        n_neighbors: int = 10,
        metric: str = "euclidean",
        prune: float = 0.0,
    ) -> Dict[str, Any]:
        """
        Build and store the shared-nearest-neighbor graph.

        Args:
            dataset: Dataset after PCA (modified in place)
            n_dims: Number of leading PCA dimensions used as coordinates
            n_neighbors: Neighbor count S per cell, excluding the cell itself
            metric: Distance metric understood by ``sklearn.neighbors``
            prune: Edges with Jaccard weight at or below this value are dropped

        Returns:
            Dict[str, Any]: Graph statistics

        Raises:
            OrderingError: If PCA has not been run
            DimensionError: If ``n_dims`` or ``n_neighbors`` is out of range
        """
        try:
            graph = self._construct_graph(dataset, n_dims, n_neighbors, metric, prune)
            params = self._graph_params(graph)
            dataset.commit_graph(graph, params)
            return self._graph_stats(graph)

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error building neighbor graph: {e}")
            raise ClusteringError(f"Neighbor graph construction failed: {str(e)}") from e

    def cluster(
        self,
        dataset: Dataset,
        resolution: Optional[float] = None,
        n_dims: int = 10,
        n_neighbors: int = 10,
        metric: str = "euclidean",
        prune: float = 0.0,
        seed: Optional[int] = None,
        reuse_graph: bool = False,
    ) -> Dict[str, Any]:
        """
        Partition cells into communities of the SNN graph.

        Args:
            dataset: Dataset after PCA (modified in place)
            resolution: Resolution parameter R (> 0); higher gives more clusters
            n_dims: PCA dimensions for the graph; must match the stored graph
                when ``reuse_graph`` is set
            n_neighbors: Neighbor count S for a fresh graph
            metric: Distance metric for a fresh graph
            prune: Jaccard prune threshold for a fresh graph
            seed: Random seed; None draws a fresh one and marks the run
                non-deterministic
            reuse_graph: Partition the stored graph instead of rebuilding it

        Returns:
            Dict[str, Any]: Clustering statistics

        Raises:
            OrderingError: If PCA has not been run
            DimensionError: If graph parameters are out of range
            GraphMismatchError: If ``reuse_graph`` is set and the stored graph
                is missing or incompatible
        """
        try:
            if resolution is None:
                resolution = self.default_cluster_resolution
            if resolution <= 0:
                raise DataError(f"resolution must be positive, got {resolution}")
            dataset.require(PipelineStage.REDUCED, "cluster cells")
            seed, deterministic = resolve_seed(seed, "clustering")

            if reuse_graph:
                graph = self._stored_graph(dataset, n_dims)
                logger.info(
                    f"Reusing stored graph ({graph.n_nodes} cells, {graph.n_edges} edges)"
                )
                new_graph = None
            else:
                graph = self._construct_graph(dataset, n_dims, n_neighbors, metric, prune)
                new_graph = graph

            logger.info(f"Performing Leiden clustering with resolution {resolution}")
            labels, quality = self._leiden(graph, resolution, seed)

            params = {
                **self._graph_params(graph),
                "resolution": resolution,
                "seed": seed,
                "deterministic": deterministic,
                "reuse_graph": reuse_graph,
            }
            dataset.commit_clusters(labels, params, graph=new_graph)

            n_clusters = int(labels.max()) + 1
            cluster_sizes = {
                str(k): int(v) for k, v in zip(*np.unique(labels, return_counts=True))
            }
            stats = {
                "analysis_type": "clustering",
                **params,
                "n_clusters": n_clusters,
                "cluster_sizes": cluster_sizes,
                "quality": quality,
                "graph": self._graph_stats(graph),
            }
            logger.info(f"Clustering completed: {n_clusters} clusters identified")
            return stats

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error during clustering: {e}")
            raise ClusteringError(f"Clustering failed: {str(e)}") from e

    def resolution_sweep(
        self,
        dataset: Dataset,
        resolutions: Sequence[float],
        seed: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Cluster the stored graph at several resolutions without storing labels.

        Args:
            dataset: Dataset with a stored neighbor graph
            resolutions: Resolution values to try
            seed: Random seed shared by every run

        Returns:
            Dict[str, Any]: ``n_clusters`` and ``cluster_sizes`` per resolution
        """
        try:
            dataset.require(PipelineStage.GRAPH_READY, "sweep clustering resolutions")
            if not resolutions:
                raise DataError("At least one resolution is required")
            if any(r <= 0 for r in resolutions):
                raise DataError(f"Resolutions must be positive, got {list(resolutions)}")
            seed, deterministic = resolve_seed(seed, "resolution sweep")
            graph = dataset.graph

            results: List[Dict[str, Any]] = []
            for resolution in resolutions:
                labels, quality = self._leiden(graph, resolution, seed)
                sizes = np.bincount(labels)
                results.append(
                    {
                        "resolution": float(resolution),
                        "n_clusters": int(len(sizes)),
                        "cluster_sizes": sizes.tolist(),
                        "quality": quality,
                    }
                )
                logger.info(f"Resolution {resolution}: {len(sizes)} clusters")

            return {
                "analysis_type": "resolution_sweep",
                "seed": seed,
                "deterministic": deterministic,
                "results": results,
            }

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error during resolution sweep: {e}")
            raise ClusteringError(f"Resolution sweep failed: {str(e)}") from e

    def compute_clustering_quality(
        self, dataset: Dataset, metrics: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Compute clustering quality metrics on the PCA dimensions of the graph.

        - Silhouette score: how well-separated clusters are (-1 to 1, higher better)
        - Davies-Bouldin index: ratio of intra/inter-cluster distances (lower better)
        - Calinski-Harabasz score: ratio of between/within variance (higher better)

        Args:
            dataset: Clustered dataset
            metrics: Subset of ``["silhouette", "davies_bouldin", "calinski_harabasz"]``;
                None computes all of them

        Returns:
            Dict[str, Any]: Metric values, cluster sizes and per-cluster silhouette
        """
        try:
            dataset.require(PipelineStage.CLUSTERED, "evaluate clustering quality")
            metrics_to_compute = list(metrics) if metrics is not None else QUALITY_METRICS
            invalid = set(metrics_to_compute) - set(QUALITY_METRICS)
            if invalid:
                raise DataError(
                    f"Invalid metrics: {sorted(invalid)}. Valid options: {QUALITY_METRICS}"
                )

            labels = dataset.clusters.to_numpy()
            n_clusters = len(np.unique(labels))
            if not 2 <= n_clusters <= dataset.n_cells - 1:
                raise ClusteringError(
                    f"Need between 2 and {dataset.n_cells - 1} clusters for quality "
                    f"metrics, found {n_clusters}"
                )

            n_dims = dataset.graph.n_dims
            X = dataset.pca.scores[:, :n_dims]
            logger.info(
                f"Evaluating quality for {n_clusters} clusters on {n_dims} PCA dimensions"
            )

            results: Dict[str, Any] = {}
            if "silhouette" in metrics_to_compute:
                results["silhouette_score"] = float(silhouette_score(X, labels))
                per_cell = silhouette_samples(X, labels)
                results["per_cluster_silhouette"] = {
                    str(c): float(per_cell[labels == c].mean()) for c in np.unique(labels)
                }
            if "davies_bouldin" in metrics_to_compute:
                results["davies_bouldin_index"] = float(davies_bouldin_score(X, labels))
            if "calinski_harabasz" in metrics_to_compute:
                results["calinski_harabasz_score"] = float(
                    calinski_harabasz_score(X, labels)
                )

            return {
                "analysis_type": "clustering_quality",
                "n_clusters": n_clusters,
                "n_dims": n_dims,
                "cluster_sizes": {
                    str(k): int(v) for k, v in zip(*np.unique(labels, return_counts=True))
                },
                **results,
            }

        except CellClusterError:
            raise
        except Exception as e:
            logger.exception(f"Error computing clustering quality: {e}")
            raise ClusteringError(f"Clustering quality failed: {str(e)}") from e

    # Helper methods
    def _construct_graph(
        self,
        dataset: Dataset,
        n_dims: int,
        n_neighbors: int,
        metric: str,
        prune: float,
    ) -> NeighborGraph:
        """Compute the Jaccard SNN graph without touching the dataset."""
        dataset.require(PipelineStage.REDUCED, "build neighbor graph")
        pca = dataset.pca
        n_cells = dataset.n_cells
        if not 1 <= n_dims <= pca.n_components:
            raise DimensionError(
                f"n_dims must be between 1 and {pca.n_components}, got {n_dims}",
                details={"requested": n_dims, "maximum": pca.n_components},
            )
        if not 1 <= n_neighbors <= n_cells - 1:
            raise DimensionError(
                f"n_neighbors must be between 1 and {n_cells - 1}, got {n_neighbors}",
                details={"requested": n_neighbors, "maximum": n_cells - 1},
            )
        if prune < 0 or prune >= 1:
            raise DataError(f"prune must be in [0, 1), got {prune}")

        logger.info(
            f"Computing {n_neighbors} nearest neighbors on {n_dims} PCA dimensions "
            f"({metric} metric)"
        )
        coordinates = dataset.pca.scores[:, :n_dims]
        knn = NearestNeighbors(n_neighbors=n_neighbors, metric=metric)
        knn.fit(coordinates)
        # Without query points, each cell is excluded from its own neighbor list
        neighbor_idx = knn.kneighbors(return_distance=False)

        rows = np.repeat(np.arange(n_cells), n_neighbors + 1)
        cols = np.column_stack([np.arange(n_cells), neighbor_idx]).ravel()
        membership = spr.csr_matrix(
            (np.ones(len(rows)), (rows, cols)), shape=(n_cells, n_cells)
        )

        intersection = (membership @ membership.T).tocsr()
        intersection.setdiag(0)
        intersection.eliminate_zeros()
        set_size = n_neighbors + 1
        intersection.data = intersection.data / (2 * set_size - intersection.data)
        adjacency = intersection
        if prune > 0:
            adjacency.data[adjacency.data <= prune] = 0
            adjacency.eliminate_zeros()
        adjacency.sort_indices()

        graph = NeighborGraph(
            adjacency=adjacency,
            cell_ids=tuple(dataset.cell_ids),
            n_dims=n_dims,
            n_neighbors=n_neighbors,
            metric=metric,
            prune=prune,
        )
        logger.info(f"SNN graph: {graph.n_nodes} cells, {graph.n_edges} edges")
        return graph

    def _stored_graph(self, dataset: Dataset, n_dims: int) -> NeighborGraph:
        graph = dataset.graph
        if graph is None:
            raise GraphMismatchError(
                "reuse_graph was requested but no neighbor graph is stored"
            )
        if graph.cell_ids != tuple(dataset.cell_ids):
            raise GraphMismatchError(
                "Stored neighbor graph was built on a different cell set",
                details={"graph_cells": graph.n_nodes, "dataset_cells": dataset.n_cells},
            )
        if graph.n_dims != n_dims:
            raise GraphMismatchError(
                f"Stored neighbor graph was built on {graph.n_dims} PCA dimensions, "
                f"{n_dims} requested",
                details={"graph_n_dims": graph.n_dims, "requested_n_dims": n_dims},
            )
        return graph

    def _leiden(
        self, graph: NeighborGraph, resolution: float, seed: int
    ) -> Tuple[np.ndarray, float]:
        """Run Leiden on the SNN graph and return dense labels and partition quality."""
        upper = spr.triu(graph.adjacency, k=1).tocoo()
        g = ig.Graph(
            n=graph.n_nodes,
            edges=list(zip(upper.row.tolist(), upper.col.tolist())),
            directed=False,
        )
        g.es["weight"] = upper.data.tolist()
        partition = la.find_partition(
            g,
            la.RBConfigurationVertexPartition,
            weights="weight",
            resolution_parameter=resolution,
            n_iterations=-1,
            seed=seed,
        )
        return _dense_labels(partition.membership), float(partition.quality())

    @staticmethod
    def _graph_params(graph: NeighborGraph) -> Dict[str, Any]:
        return {
            "n_dims": graph.n_dims,
            "n_neighbors": graph.n_neighbors,
            "metric": graph.metric,
            "prune": graph.prune,
        }

    @staticmethod
    def _graph_stats(graph: NeighborGraph) -> Dict[str, Any]:
        degrees = np.diff(graph.adjacency.indptr)
        return {
            "analysis_type": "neighbor_graph",
            "n_cells": graph.n_nodes,
            "n_edges": graph.n_edges,
            "mean_degree": float(degrees.mean()) if len(degrees) else 0.0,
            "isolated_cells": int((degrees == 0).sum()),
            **ClusteringService._graph_params(graph),
        }

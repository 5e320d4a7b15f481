"""
Orchestrator running the clustering workflow on one dataset.

AnalysisPipeline owns a Dataset and the stateless services, exposes one method
per stage and fills stage parameters from a PipelineConfig. Keyword arguments
passed to a stage method override the configured values for that call only.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd

from cellcluster.config.pipeline_config import PipelineConfig
from cellcluster.core.dataset import Dataset
from cellcluster.core.exceptions import DataError
from cellcluster.core.interfaces.enrichment import EnrichmentClient
from cellcluster.core.loader import load_counts
from cellcluster.tools.clustering_service import ClusteringService
from cellcluster.tools.de_tests import DETest
from cellcluster.tools.embedding_service import EmbeddingService
from cellcluster.tools.feature_selection_service import (
    FeatureSelectionMethod,
    FeatureSelectionService,
)
from cellcluster.tools.marker_service import MarkerService
from cellcluster.tools.pca_service import PCAService
from cellcluster.tools.preprocessing_service import PreprocessingService
from cellcluster.tools.quality_service import QualityService
from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)


class AnalysisPipeline:
    """
    Run the clustering workflow stage by stage.

    Example:
        >>> pipeline = AnalysisPipeline.from_path("filtered_gene_bc_matrices/hg19")
        >>> pipeline.filter_cells(min_genes=200, max_genes=2500)
        >>> pipeline.normalize()
        >>> ...
        >>> markers, _ = pipeline.find_all_markers(only_pos=True)
    """

    def __init__(self, dataset: Dataset, config: Optional[PipelineConfig] = None):
        self.dataset = dataset
        self.config = config or PipelineConfig()
        self.results: Dict[str, Dict[str, Any]] = {}

        self.quality_service = QualityService()
        self.preprocessing_service = PreprocessingService()
        self.feature_selection_service = FeatureSelectionService()
        self.pca_service = PCAService()
        self.clustering_service = ClusteringService()
        self.embedding_service = EmbeddingService()
        self.marker_service = MarkerService()

    @classmethod
    def from_path(
        cls, path: Union[str, Path], config: Optional[PipelineConfig] = None, **load_kwargs
    ) -> "AnalysisPipeline":
        """Load counts from a 10X directory, ``.h5ad`` file or table."""
        return cls(load_counts(path, **load_kwargs), config)

    def _record(self, stage: str, stats: Dict[str, Any]) -> Dict[str, Any]:
        self.results[stage] = stats
        return stats

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def filter_cells(self, **overrides) -> Dict[str, Any]:
        params = {**self.config.qc.model_dump(), **overrides}
        return self._record(
            "filter", self.quality_service.filter_cells_and_genes(self.dataset, **params)
        )

    def normalize(self, **overrides) -> Dict[str, Any]:
        cfg = self.config.normalization
        params = {
            "normalization_method": cfg.method,
            "scale_factor": cfg.scale_factor,
            **overrides,
        }
        return self._record("normalize", self.preprocessing_service.normalize(self.dataset, **params))

    def select_features(self, **overrides) -> Dict[str, Any]:
        params = {**self.config.feature_selection.model_dump(), **overrides}
        params["method"] = FeatureSelectionMethod(params["method"])
        return self._record(
            "select_features",
            self.feature_selection_service.select_features(self.dataset, **params),
        )

    def scale(self, **overrides) -> Dict[str, Any]:
        params = {**self.config.scaling.model_dump(), **overrides}
        return self._record(
            "scale", self.preprocessing_service.scale_and_regress(self.dataset, **params)
        )

    def run_pca(self, **overrides) -> Dict[str, Any]:
        params = {**self.config.pca.model_dump(), **overrides}
        return self._record("pca", self.pca_service.run_pca(self.dataset, **params))

    def build_graph(self, **overrides) -> Dict[str, Any]:
        params = {**self.config.graph.model_dump(), **overrides}
        return self._record(
            "graph", self.clustering_service.build_neighbor_graph(self.dataset, **params)
        )

    def cluster(self, reuse_graph: bool = False, **overrides) -> Dict[str, Any]:
        """
        Cluster cells, rebuilding the graph unless ``reuse_graph`` is set.

        With ``reuse_graph`` only the resolution, seed and ``n_dims`` apply;
        ``n_dims`` must match the stored graph.
        """
        params = {
            **self.config.graph.model_dump(),
            **self.config.clustering.model_dump(),
            "seed": self.config.seed,
            **overrides,
        }
        return self._record(
            "cluster",
            self.clustering_service.cluster(self.dataset, reuse_graph=reuse_graph, **params),
        )

    def run_tsne(self, **overrides) -> Dict[str, Any]:
        params = {**self.config.tsne.model_dump(), "seed": self.config.seed, **overrides}
        params.pop("enabled", None)
        return self._record("tsne", self.embedding_service.run_tsne(self.dataset, **params))

    def find_markers(self, target, comparison=None, **overrides):
        """One marker search; see ``MarkerService.find_markers``."""
        params = self._marker_params(overrides)
        markers, stats = self.marker_service.find_markers(
            self.dataset, target, comparison=comparison, **params
        )
        self._record("markers", stats)
        return markers, stats

    def find_all_markers(self, **overrides):
        """One-vs-rest markers for every cluster; see ``MarkerService.find_all_markers``."""
        params = self._marker_params(overrides)
        markers, stats = self.marker_service.find_all_markers(self.dataset, **params)
        self._record("all_markers", stats)
        return markers, stats

    def _marker_params(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        params = {**self.config.markers.model_dump(), "seed": self.config.seed, **overrides}
        params["test"] = DETest(params["test"])
        return params

    def enrich_markers(
        self,
        client: EnrichmentClient,
        markers: pd.DataFrame,
        max_p_val_adj: float = 0.05,
        cluster: Optional[int] = None,
    ) -> pd.DataFrame:
        """
        Send positive significant markers to an enrichment client.

        Args:
            client: Enrichment service implementation
            markers: Marker table from ``find_markers`` or ``find_all_markers``
            max_p_val_adj: Adjusted p-value cutoff for a marker to be sent
            cluster: Restrict to the markers of one cluster

        Returns:
            pd.DataFrame: The client's enrichment table, untouched
        """
        selected = markers[(markers["p_val_adj"] < max_p_val_adj) & (markers["avg_logFC"] > 0)]
        if cluster is not None:
            selected = selected[selected["cluster"] == cluster]
        genes = list(dict.fromkeys(selected["gene"].tolist()))
        if not genes:
            raise DataError(
                f"No positive marker with adjusted p-value below {max_p_val_adj} to enrich"
            )
        logger.info(
            f"Requesting enrichment for {len(genes)} marker genes "
            f"against {self.dataset.n_genes} background genes"
        )
        return client.enrich(genes, self.dataset.gene_ids.tolist())

    def run_all(self) -> Dict[str, Any]:
        """
        Run every stage with the configured parameters.

        Returns:
            Dict[str, Any]: Per-stage statistics and the marker table under ``markers``
        """
        logger.info(f"Running full pipeline on {self.dataset!r}")
        self.filter_cells()
        self.normalize()
        self.select_features()
        self.scale()
        self.run_pca()
        self.cluster()
        if self.config.tsne.enabled:
            self.run_tsne()
        markers, _ = self.find_all_markers()
        logger.info("Pipeline complete")
        return {"stats": dict(self.results), "markers": markers}

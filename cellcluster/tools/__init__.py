"""
Tools module with the stateless analysis services:
- Quality control service for cell and gene filtering
- Preprocessing service for normalization and scaling
- Feature selection service for variable genes
- PCA service
- Clustering service for SNN graphs and Leiden clustering
- Embedding service for t-SNE
- Marker service for differential expression
"""

from cellcluster.tools.clustering_service import ClusteringService
from cellcluster.tools.embedding_service import EmbeddingService
from cellcluster.tools.feature_selection_service import FeatureSelectionService
from cellcluster.tools.marker_service import MarkerService
from cellcluster.tools.pca_service import PCAService
from cellcluster.tools.preprocessing_service import PreprocessingService
from cellcluster.tools.quality_service import QualityService

__all__ = [
    'ClusteringService',
    'EmbeddingService',
    'FeatureSelectionService',
    'MarkerService',
    'PCAService',
    'PreprocessingService',
    'QualityService',
]

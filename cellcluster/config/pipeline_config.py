"""
Pipeline parameter configuration.

A PipelineConfig bundles the parameters of every stage so that a full run
can be described in one JSON file and replayed.

Example:
    >>> config = PipelineConfig()
    >>> config.clustering.resolution = 1.2
    >>> config.save(Path("run_config.json"))
    >>> PipelineConfig.load(Path("run_config.json")).clustering.resolution
    1.2
"""

import json
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)


class QCConfig(BaseModel):
    """Cell and gene quality thresholds; None leaves a bound open."""

    min_genes: Optional[int] = Field(200, ge=0, description="Minimum detected genes per cell")
    max_genes: Optional[int] = Field(2500, ge=0, description="Maximum detected genes per cell")
    max_mito_fraction: Optional[float] = Field(
        0.05, ge=0.0, le=1.0, description="Maximum mitochondrial count fraction"
    )
    min_cells: Optional[int] = Field(3, ge=0, description="Minimum cells detecting a gene")
    mito_prefix: Optional[str] = Field("MT-", description="Mitochondrial gene symbol prefix")


class NormalizationConfig(BaseModel):
    method: str = Field("fixed", description="Scale factor mode (fixed | median)")
    scale_factor: float = Field(1e4, gt=0, description="Target total in fixed mode")

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        """Validate normalization mode."""
        if v not in ["fixed", "median"]:
            raise ValueError(f"Invalid normalization method: '{v}'. Must be one of: fixed, median")
        return v


class FeatureSelectionConfig(BaseModel):
    method: str = Field("dispersion", description="dispersion | poisson_gamma")
    min_mean: float = 0.0125
    max_mean: float = 3.0
    min_disp: float = 0.5
    n_bins: int = Field(20, ge=1)
    binning: str = Field("quantile", description="quantile | equal_width")
    n_sd: float = Field(2.0, ge=0)
    max_features: Optional[int] = Field(None, ge=1)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        """Validate feature selection method."""
        if v not in ["dispersion", "poisson_gamma"]:
            raise ValueError(
                f"Invalid feature selection method: '{v}'. "
                "Must be one of: dispersion, poisson_gamma"
            )
        return v

    @field_validator("binning")
    @classmethod
    def validate_binning(cls, v):
        """Validate mean binning scheme."""
        if v not in ["quantile", "equal_width"]:
            raise ValueError(f"Invalid binning: '{v}'. Must be one of: quantile, equal_width")
        return v


class ScalingConfig(BaseModel):
    vars_to_regress: List[str] = Field(
        default_factory=list,
        description="Per-cell covariates to regress out (e.g., ['total_counts', 'mito_fraction'])",
    )
    max_value: Optional[float] = Field(10.0, gt=0, description="Clip value, None disables")


class PCAConfig(BaseModel):
    n_components: int = Field(20, ge=1)


class GraphConfig(BaseModel):
    n_dims: int = Field(10, ge=1, description="Leading PCA dimensions used for the graph")
    n_neighbors: int = Field(10, ge=1, description="Neighbors per cell, excluding itself")
    metric: str = "euclidean"
    prune: float = Field(0.0, ge=0.0, lt=1.0)

    @field_validator("metric")
    @classmethod
    def validate_metric(cls, v):
        """Validate the distance metric name."""
        if not v:
            raise ValueError("Graph metric must not be empty")
        return v


class ClusteringConfig(BaseModel):
    resolution: float = Field(0.8, gt=0)


class TSNEConfig(BaseModel):
    enabled: bool = True
    n_dims: int = Field(10, ge=1)
    perplexity: float = Field(30.0, gt=0)
    max_iter: int = Field(1000, ge=250)


class MarkerConfig(BaseModel):
    test: str = Field("wilcoxon", description="wilcoxon | t_test | bimod")
    min_pct: float = Field(0.1, ge=0.0, le=1.0)
    logfc_threshold: float = Field(0.0, ge=0.0)
    only_pos: bool = False
    max_cells_per_group: Optional[int] = Field(None, ge=1)

    @field_validator("test")
    @classmethod
    def validate_test(cls, v):
        """Validate differential expression test name."""
        if v not in ["wilcoxon", "t_test", "bimod"]:
            raise ValueError(f"Invalid test: '{v}'. Must be one of: wilcoxon, t_test, bimod")
        return v


class PipelineConfig(BaseModel):
    """
    Parameters of a full pipeline run.

    Attributes:
        seed: Seed shared by clustering, t-SNE and marker downsampling;
            None makes those stages non-deterministic
    """

    seed: Optional[int] = Field(None, ge=0, le=2**31 - 1)
    qc: QCConfig = Field(default_factory=QCConfig)
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    feature_selection: FeatureSelectionConfig = Field(default_factory=FeatureSelectionConfig)
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)
    pca: PCAConfig = Field(default_factory=PCAConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    tsne: TSNEConfig = Field(default_factory=TSNEConfig)
    markers: MarkerConfig = Field(default_factory=MarkerConfig)

    def save(self, path: Union[str, Path]) -> None:
        """
        Write the configuration as indented JSON.

        Args:
            path: Destination file; parent directories are created
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2))
        logger.info(f"Saved pipeline config to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "PipelineConfig":
        """
        Read a configuration written by ``save``.

        Missing sections take their defaults; unknown values are rejected.

        Raises:
            FileNotFoundError: If the file does not exist
            pydantic.ValidationError: If a value is invalid
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Pipeline config not found: {path}")
        data = json.loads(path.read_text())
        config = cls(**data)
        logger.info(f"Loaded pipeline config from {path}")
        return config

"""
Pytest configuration and shared fixtures for the cellcluster test suite.

Stage fixtures build on each other and mutate the same Dataset in place, so a
test should request only the most advanced stage it needs.
"""

import logging

import pytest

from cellcluster.core.dataset import Dataset
from cellcluster.tools.clustering_service import ClusteringService
from cellcluster.tools.feature_selection_service import FeatureSelectionService
from cellcluster.tools.pca_service import PCAService
from cellcluster.tools.preprocessing_service import PreprocessingService
from cellcluster.tools.quality_service import QualityService

from tests.mock_data.base import SMALL_DATASET_CONFIG
from tests.mock_data.factories import ClusteredCountsFactory

# Suppress warnings during testing
logging.getLogger("scanpy").setLevel(logging.ERROR)
logging.getLogger("anndata").setLevel(logging.ERROR)

# Parameters under which the synthetic groups come out as separate clusters
QC_PARAMS = {
    "min_genes": 10,
    "max_genes": None,
    "max_mito_fraction": 0.2,
    "min_cells": 3,
    "mito_prefix": "MT-",
}
FEATURE_PARAMS = {"min_mean": 0.0, "max_mean": 20.0, "min_disp": 0.5, "n_bins": 1}
N_COMPONENTS = 5
GRAPH_PARAMS = {"n_dims": 5, "n_neighbors": 10}
RESOLUTION = 0.1


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Dataset Fixtures
# ==============================================================================


@pytest.fixture
def mock_config():
    return SMALL_DATASET_CONFIG


@pytest.fixture
def raw_adata(mock_config):
    """Synthetic raw counts with three separated groups."""
    return ClusteredCountsFactory(config=mock_config)


@pytest.fixture
def raw_dataset(raw_adata):
    return Dataset.from_anndata(raw_adata)


@pytest.fixture
def filtered_dataset(raw_dataset):
    QualityService().filter_cells_and_genes(raw_dataset, **QC_PARAMS)
    return raw_dataset


@pytest.fixture
def normalized_dataset(filtered_dataset):
    PreprocessingService().normalize(filtered_dataset)
    return filtered_dataset


@pytest.fixture
def selected_dataset(normalized_dataset):
    FeatureSelectionService().select_features(normalized_dataset, **FEATURE_PARAMS)
    return normalized_dataset


@pytest.fixture
def scaled_dataset(selected_dataset):
    PreprocessingService().scale_and_regress(selected_dataset)
    return selected_dataset


@pytest.fixture
def reduced_dataset(scaled_dataset):
    PCAService().run_pca(scaled_dataset, n_components=N_COMPONENTS)
    return scaled_dataset


@pytest.fixture
def graph_dataset(reduced_dataset):
    ClusteringService().build_neighbor_graph(reduced_dataset, **GRAPH_PARAMS)
    return reduced_dataset


@pytest.fixture
def clustered_dataset(reduced_dataset):
    ClusteringService().cluster(
        reduced_dataset, resolution=RESOLUTION, seed=0, **GRAPH_PARAMS
    )
    return reduced_dataset

"""
Unit tests for marker gene discovery.
"""

import numpy as np
import pandas as pd
import pytest

from cellcluster.core.dataset import Dataset
from cellcluster.core.exceptions import DataError, OrderingError
from cellcluster.tools.clustering_service import ClusteringService
from cellcluster.tools.de_tests import DETest
from cellcluster.tools.feature_selection_service import FeatureSelectionService
from cellcluster.tools.marker_service import MARKER_COLUMNS, MarkerService
from cellcluster.tools.pca_service import PCAService
from cellcluster.tools.preprocessing_service import PreprocessingService
from cellcluster.tools.quality_service import QualityService

from tests.conftest import FEATURE_PARAMS, GRAPH_PARAMS
from tests.mock_data.factories import marker_genes


@pytest.fixture
def marker_service():
    return MarkerService()


@pytest.fixture
def group_labels(clustered_dataset):
    """Cluster label of every synthetic group."""
    clusters = clustered_dataset.clusters
    groups = clustered_dataset.adata.obs["group"]
    return {group: int(clusters[groups == group].iloc[0]) for group in groups.unique()}


@pytest.fixture
def fixed_marker_dataset():
    """
    Two groups of 15 cells: MARKER is 100 in every A cell and 0 in every B cell,
    four B-only genes are Poisson(30) in B, and 30 genes are shared background.
    """
    rng = np.random.default_rng(3)
    n = 15
    marker = np.r_[np.full(n, 100), np.zeros(n)]
    b_genes = np.vstack([np.zeros((n, 4)), rng.poisson(30, size=(n, 4))])
    background = rng.poisson(3, size=(2 * n, 30))
    counts = np.column_stack([marker, b_genes, background])

    cells = [f"A_{i:02d}" for i in range(n)] + [f"B_{i:02d}" for i in range(n)]
    genes = ["MARKER"] + [f"B_ONLY_{i}" for i in range(4)] + [f"BG_{i:02d}" for i in range(30)]
    dataset = Dataset.from_matrix(counts, cells, genes)

    QualityService().filter_cells_and_genes(
        dataset, min_genes=1, max_genes=None, max_mito_fraction=None, min_cells=1, mito_prefix=None
    )
    PreprocessingService().normalize(dataset)
    FeatureSelectionService().select_features(dataset, **FEATURE_PARAMS)
    PreprocessingService().scale_and_regress(dataset)
    PCAService().run_pca(dataset, n_components=2)
    ClusteringService().cluster(dataset, resolution=0.1, seed=0, n_dims=2, n_neighbors=5)
    return dataset


# ===============================================================================
# Single comparisons
# ===============================================================================


@pytest.mark.unit
class TestFindMarkers:
    """Test one target group against a comparison."""

    def test_fixed_marker_ranks_first(self, marker_service, fixed_marker_dataset):
        clusters = fixed_marker_dataset.clusters
        label_a = int(clusters["A_00"])
        assert clusters[clusters.index.str.startswith("A_")].nunique() == 1
        assert clusters[clusters.index.str.startswith("B_")].nunique() == 1

        table, _ = marker_service.find_markers(
            fixed_marker_dataset, target=label_a, only_pos=True, seed=0
        )

        top = table.iloc[0]
        assert top["gene"] == "MARKER"
        assert top["pct_1"] == 1.0
        assert top["pct_2"] == 0.0
        # Full fold change against an all-zero comparison
        totals = np.asarray(fixed_marker_dataset.counts.sum(axis=1)).ravel()[:15]
        expected = np.log1p(np.mean(100 * 1e4 / totals))
        assert top["avg_logFC"] == pytest.approx(expected, rel=1e-6)
        assert top["p_val_adj"] < 0.05

    def test_group_markers_rank_first(self, marker_service, clustered_dataset, group_labels, mock_config):
        table, stats = marker_service.find_markers(
            clustered_dataset, target=group_labels["group_0"], only_pos=True
        )

        assert list(table.columns) == MARKER_COLUMNS
        assert set(table["gene"].iloc[:5]) == set(marker_genes(mock_config, 0))
        assert (table["avg_logFC"] > 0).all()
        assert (table["cluster"] == group_labels["group_0"]).all()
        assert stats["n_cells_target"] == mock_config.cells_per_group
        assert stats["n_cells_comparison"] == mock_config.n_cells - mock_config.cells_per_group

    def test_bonferroni_adjustment(self, marker_service, clustered_dataset, group_labels):
        table, stats = marker_service.find_markers(clustered_dataset, target=group_labels["group_1"])

        n_tested = stats["n_genes_tested"]
        assert len(table) == n_tested
        expected = np.minimum(table["p_val"].to_numpy() * n_tested, 1.0)
        np.testing.assert_allclose(table["p_val_adj"].to_numpy(), expected)
        assert (table["p_val_adj"] >= table["p_val"]).all()

    def test_sort_order(self, marker_service, clustered_dataset, group_labels):
        table, _ = marker_service.find_markers(clustered_dataset, target=group_labels["group_2"])

        resorted = table.sort_values(
            ["p_val_adj", "avg_logFC"], ascending=[True, False], kind="mergesort"
        ).reset_index(drop=True)
        pd.testing.assert_frame_equal(table, resorted)

    def test_min_pct_restricts_tested_genes(
        self, marker_service, clustered_dataset, group_labels, mock_config
    ):
        table, stats = marker_service.find_markers(
            clustered_dataset, target=group_labels["group_0"], min_pct=1.0
        )
        tested = set(table["gene"])
        assert set(marker_genes(mock_config, 0)) <= tested
        # Markers of other groups are detected in only part of the comparison
        assert not tested & set(marker_genes(mock_config, 1) + marker_genes(mock_config, 2))
        assert stats["n_genes_tested"] == len(table)

    def test_logfc_threshold(self, marker_service, clustered_dataset, group_labels):
        _, all_stats = marker_service.find_markers(clustered_dataset, target=group_labels["group_0"])
        table, stats = marker_service.find_markers(
            clustered_dataset, target=group_labels["group_0"], logfc_threshold=1.0
        )

        assert (table["avg_logFC"].abs() >= 1.0).all()
        assert stats["n_genes_tested"] < all_stats["n_genes_tested"]

    def test_explicit_comparison(self, marker_service, clustered_dataset, group_labels, mock_config):
        table, stats = marker_service.find_markers(
            clustered_dataset,
            target=group_labels["group_0"],
            comparison=[group_labels["group_1"]],
            only_pos=True,
        )
        assert stats["n_cells_comparison"] == mock_config.cells_per_group
        assert set(table["gene"].iloc[:5]) == set(marker_genes(mock_config, 0))

    def test_barcode_groups(self, marker_service, clustered_dataset, mock_config):
        groups = clustered_dataset.adata.obs["group"]
        target = groups.index[groups == "group_0"].tolist()
        comparison = groups.index[groups == "group_2"].tolist()

        table, stats = marker_service.find_markers(
            clustered_dataset, target=target, comparison=comparison, only_pos=True
        )

        assert (table["cluster"] == "custom").all()
        assert stats["target"] == "custom"
        assert set(table["gene"].iloc[:5]) == set(marker_genes(mock_config, 0))

    def test_barcodes_before_clustering(self, marker_service, normalized_dataset):
        target = normalized_dataset.cell_ids[:10].tolist()
        table, stats = marker_service.find_markers(normalized_dataset, target=target)
        assert stats["n_cells_comparison"] == normalized_dataset.n_cells - 10

    @pytest.mark.parametrize("test", [DETest.T_TEST, DETest.BIMOD])
    def test_alternative_tests(self, marker_service, clustered_dataset, group_labels, mock_config, test):
        table, stats = marker_service.find_markers(
            clustered_dataset, target=group_labels["group_1"], test=test, only_pos=True
        )
        assert stats["test"] == test.value
        assert table["gene"].iloc[0] in marker_genes(mock_config, 1)

    def test_downsampling_is_seeded(self, marker_service, clustered_dataset, group_labels):
        kwargs = {"target": group_labels["group_0"], "max_cells_per_group": 10, "seed": 3}
        first, stats = marker_service.find_markers(clustered_dataset, **kwargs)
        second, _ = marker_service.find_markers(clustered_dataset, **kwargs)

        assert stats["n_cells_target"] == 10
        assert stats["n_cells_comparison"] == 10
        assert stats["deterministic"]
        pd.testing.assert_frame_equal(first, second)

    def test_tables_are_not_stored(self, marker_service, clustered_dataset, group_labels):
        version = clustered_dataset.version
        marker_service.find_markers(clustered_dataset, target=group_labels["group_0"])
        assert clustered_dataset.version == version


@pytest.mark.unit
class TestFindMarkersErrors:
    """Test rejected group specifications."""

    def test_string_target(self, marker_service, clustered_dataset):
        with pytest.raises(DataError, match="string"):
            marker_service.find_markers(clustered_dataset, target="0")

    def test_unknown_label(self, marker_service, clustered_dataset):
        with pytest.raises(DataError) as exc_info:
            marker_service.find_markers(clustered_dataset, target=99)
        assert exc_info.value.details["unknown"] == [99]

    def test_unknown_barcode(self, marker_service, clustered_dataset):
        with pytest.raises(DataError):
            marker_service.find_markers(clustered_dataset, target=["Cell_0000", "NOPE"])

    def test_overlapping_groups(self, marker_service, clustered_dataset, group_labels):
        label = group_labels["group_0"]
        with pytest.raises(DataError, match="share"):
            marker_service.find_markers(clustered_dataset, target=label, comparison=[label])

    def test_target_covers_everything(self, marker_service, clustered_dataset):
        labels = sorted(clustered_dataset.clusters.unique().tolist())
        with pytest.raises(DataError, match="Comparison group is empty"):
            marker_service.find_markers(clustered_dataset, target=labels)

    def test_empty_target(self, marker_service, clustered_dataset):
        with pytest.raises(DataError, match="empty"):
            marker_service.find_markers(clustered_dataset, target=[])

    def test_labels_before_clustering(self, marker_service, normalized_dataset):
        with pytest.raises(OrderingError):
            marker_service.find_markers(normalized_dataset, target=0)

    def test_before_normalization(self, marker_service, filtered_dataset):
        with pytest.raises(OrderingError):
            marker_service.find_markers(filtered_dataset, target=["Cell_0000"])


# ===============================================================================
# One-vs-rest for all clusters
# ===============================================================================


@pytest.mark.unit
class TestFindAllMarkers:
    """Test one-vs-rest markers for every cluster."""

    def test_every_cluster_reported(self, marker_service, clustered_dataset):
        markers, stats = marker_service.find_all_markers(clustered_dataset, only_pos=True)

        labels = set(clustered_dataset.clusters.unique().tolist())
        assert set(markers["cluster"]) == labels
        assert sum(stats["markers_per_cluster"].values()) == len(markers)
        assert stats["n_clusters"] == len(labels)
        assert (markers["avg_logFC"] > 0).all()

    def test_requires_two_clusters(self, marker_service, reduced_dataset, mocker):
        service = ClusteringService()
        mocker.patch.object(
            service,
            "_leiden",
            return_value=(np.zeros(reduced_dataset.n_cells, dtype=int), 0.0),
        )
        service.cluster(reduced_dataset, seed=0, **GRAPH_PARAMS)

        with pytest.raises(DataError, match="At least 2 clusters"):
            marker_service.find_all_markers(reduced_dataset)

    def test_requires_clustering(self, marker_service, reduced_dataset):
        with pytest.raises(OrderingError):
            marker_service.find_all_markers(reduced_dataset)

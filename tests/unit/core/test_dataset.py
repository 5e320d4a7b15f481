"""
Unit tests for the Dataset aggregate.

Covers construction and validation of raw counts, stage bookkeeping,
invalidation of derived products, the read-only report view and copies.
"""

import anndata
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as spr

from cellcluster.core.dataset import Dataset, PipelineStage
from cellcluster.core.exceptions import DataError, OrderingError
from cellcluster.tools.embedding_service import EmbeddingService
from cellcluster.tools.preprocessing_service import PreprocessingService


# ===============================================================================
# Construction
# ===============================================================================


@pytest.mark.unit
class TestDatasetConstruction:
    """Test building a dataset from raw counts."""

    def test_from_matrix_dense(self):
        counts = np.array([[1, 0, 3], [0, 2, 0]])
        dataset = Dataset.from_matrix(counts, ["c1", "c2"], ["g1", "g2", "g3"])

        assert dataset.n_cells == 2
        assert dataset.n_genes == 3
        assert spr.isspmatrix_csr(dataset.counts)
        assert dataset.counts.nnz == 3
        assert dataset.stage == PipelineStage.LOADED
        assert dataset.version == 0
        assert list(dataset.cell_ids) == ["c1", "c2"]
        assert list(dataset.gene_ids) == ["g1", "g2", "g3"]

    def test_from_anndata_keeps_metadata(self, raw_adata):
        dataset = Dataset.from_anndata(raw_adata)

        assert dataset.n_cells == raw_adata.n_obs
        assert "group" in dataset.adata.obs
        assert "marker_of" in dataset.adata.var
        assert list(dataset.original_cells) == list(raw_adata.obs_names)

    def test_imported_analysis_columns_are_dropped(self):
        adata = anndata.AnnData(
            X=np.array([[1.0, 0.0], [2.0, 1.0], [0.0, 3.0]]),
            obs=pd.DataFrame(
                {"cluster": ["T", "T", "B"], "donor": ["d1", "d1", "d2"]},
                index=["c1", "c2", "c3"],
            ),
            var=pd.DataFrame({"highly_variable": [True, False]}, index=["g1", "g2"]),
        )

        dataset = Dataset.from_anndata(adata)
        view = dataset.report_view()

        assert dataset.clusters is None
        assert dataset.feature_indices is None
        assert view.clusters is None
        assert dataset.adata.obs["donor"].tolist() == ["d1", "d1", "d2"]

    def test_identifier_length_mismatch(self):
        with pytest.raises(DataError) as exc_info:
            Dataset.from_matrix(np.ones((2, 2)), ["c1"], ["g1", "g2"])
        assert exc_info.value.details["n_rows"] == 2

    def test_duplicate_barcodes_rejected(self):
        with pytest.raises(DataError, match="Duplicate cell"):
            Dataset.from_matrix(np.ones((2, 2)), ["c1", "c1"], ["g1", "g2"])

    def test_duplicate_genes_rejected(self):
        with pytest.raises(DataError, match="Duplicate gene"):
            Dataset.from_matrix(np.ones((2, 2)), ["c1", "c2"], ["g1", "g1"])

    def test_empty_identifier_rejected(self):
        with pytest.raises(DataError, match="Empty cell"):
            Dataset.from_matrix(np.ones((2, 2)), ["c1", " "], ["g1", "g2"])

    def test_negative_counts_rejected(self):
        with pytest.raises(DataError, match="negative"):
            Dataset.from_matrix(np.array([[1, -1], [0, 2]]), ["c1", "c2"], ["g1", "g2"])

    def test_non_integer_counts_rejected(self):
        with pytest.raises(DataError, match="non-integer"):
            Dataset.from_matrix(np.array([[1.5, 0], [0, 2]]), ["c1", "c2"], ["g1", "g2"])

    def test_non_finite_counts_rejected(self):
        with pytest.raises(DataError, match="non-finite"):
            Dataset.from_matrix(np.array([[np.inf, 0], [0, 2]]), ["c1", "c2"], ["g1", "g2"])

    def test_empty_matrix_rejected(self):
        with pytest.raises(DataError, match="empty"):
            Dataset.from_matrix(np.zeros((0, 3)), [], ["g1", "g2", "g3"])


# ===============================================================================
# Stage bookkeeping
# ===============================================================================


@pytest.mark.unit
class TestDatasetStages:
    """Test ordering checks, versioning and invalidation."""

    def test_require_raises_ordering_error(self, raw_dataset):
        with pytest.raises(OrderingError) as exc_info:
            raw_dataset.require(PipelineStage.REDUCED, "cluster cells")
        details = exc_info.value.details
        assert details["required"] == "REDUCED"
        assert details["current"] == "LOADED"

    def test_every_commit_bumps_version(self, reduced_dataset):
        assert reduced_dataset.stage == PipelineStage.REDUCED
        actions = [entry["action"] for entry in reduced_dataset.history]
        assert actions == ["filter", "normalize", "select_features", "scale", "pca"]
        assert reduced_dataset.version == len(actions)

    def test_renormalizing_invalidates_downstream(self, clustered_dataset):
        assert clustered_dataset.clusters is not None

        PreprocessingService().normalize(clustered_dataset)

        assert clustered_dataset.stage == PipelineStage.NORMALIZED
        assert clustered_dataset.feature_indices is None
        assert clustered_dataset.scaled is None
        assert clustered_dataset.pca is None
        assert clustered_dataset.graph is None
        assert clustered_dataset.clusters is None

    def test_embedding_keeps_stage(self, clustered_dataset):
        version = clustered_dataset.version
        EmbeddingService().run_tsne(
            clustered_dataset, n_dims=5, perplexity=10, max_iter=250, seed=0
        )
        assert clustered_dataset.stage == PipelineStage.CLUSTERED
        assert clustered_dataset.has_embedding
        assert clustered_dataset.version == version + 1

    def test_cell_positions(self, raw_dataset):
        positions = raw_dataset.cell_positions(["Cell_0002", "Cell_0000"])
        assert positions.tolist() == [2, 0]

    def test_cell_positions_unknown_barcode(self, raw_dataset):
        with pytest.raises(DataError) as exc_info:
            raw_dataset.cell_positions(["Cell_0000", "NOT_A_CELL"])
        assert exc_info.value.details["missing"] == ["NOT_A_CELL"]

    def test_cell_positions_reports_filtered_cells(self):
        counts = np.array([[5, 5], [1, 0], [4, 6]])
        dataset = Dataset.from_matrix(counts, ["c1", "c2", "c3"], ["g1", "g2"])
        dataset.commit_filter(
            np.array([True, False, True]),
            np.array([True, True]),
            pd.DataFrame(index=dataset.cell_ids),
            pd.DataFrame(index=dataset.gene_ids),
            {},
        )
        with pytest.raises(DataError, match="removed by filtering"):
            dataset.cell_positions(["c2"])


# ===============================================================================
# Report view and copies
# ===============================================================================


@pytest.mark.unit
class TestDatasetViews:
    """Test read-only snapshots and independent copies."""

    def test_report_view_contents(self, clustered_dataset):
        view = clustered_dataset.report_view()

        assert view.version == clustered_dataset.version
        assert list(view.cell_metrics.columns) == [
            "total_counts",
            "n_genes_by_counts",
            "mito_fraction",
        ]
        assert view.pca.shape == (clustered_dataset.n_cells, 5)
        assert view.tsne is None
        assert list(view.clusters.index) == list(clustered_dataset.cell_ids)

    def test_report_view_arrays_are_read_only(self, clustered_dataset):
        view = clustered_dataset.report_view()
        with pytest.raises(ValueError):
            view.pca[0, 0] = 1.0
        # Snapshot is detached from the dataset
        assert not np.shares_memory(view.pca, clustered_dataset.pca.scores)

    def test_copy_is_independent(self, clustered_dataset):
        clone = clustered_dataset.copy()
        PreprocessingService().normalize(clone)

        assert clone.stage == PipelineStage.NORMALIZED
        assert clustered_dataset.stage == PipelineStage.CLUSTERED
        assert clustered_dataset.clusters is not None
        assert clone.version == clustered_dataset.version + 1

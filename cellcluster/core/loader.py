"""
Count matrix ingestion.

Reads a cells × genes count matrix together with its barcode and gene symbol
lists and wraps it in a Dataset. Supported inputs are a 10X-style Matrix
Market directory (``matrix.mtx[.gz]``, ``barcodes.tsv[.gz]``,
``features.tsv[.gz]`` or ``genes.tsv[.gz]``), an ``.h5ad`` file, or a delimited
text table.
"""

from pathlib import Path
from typing import Union

import anndata
import pandas as pd
import scanpy as sc
import scipy.sparse as spr

from cellcluster.core.dataset import Dataset
from cellcluster.core.exceptions import DataError
from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)

MATRIX_CANDIDATES = ["matrix.mtx.gz", "matrix.mtx"]
FEATURES_CANDIDATES = ["features.tsv.gz", "genes.tsv.gz", "features.tsv", "genes.tsv"]
BARCODES_CANDIDATES = ["barcodes.tsv.gz", "barcodes.tsv"]


def _find_first(base_path: Path, candidates) -> Union[Path, None]:
    for candidate in candidates:
        candidate_path = base_path / candidate
        if candidate_path.exists():
            return candidate_path
    return None


def load_10x_mtx(path: Union[str, Path]) -> Dataset:
    """
    Load a 10X Matrix Market directory, indexing genes by symbol.

    Args:
        path: Directory containing the matrix, barcodes and features files

    Returns:
        Dataset: Dataset at stage LOADED

    Raises:
        DataError: If the directory is incomplete or cannot be parsed
    """
    base_path = Path(path)
    if not base_path.is_dir():
        raise DataError(f"Not a directory: {base_path}")

    matrix_path = _find_first(base_path, MATRIX_CANDIDATES)
    features_path = _find_first(base_path, FEATURES_CANDIDATES)
    barcodes_path = _find_first(base_path, BARCODES_CANDIDATES)
    missing = [
        name
        for name, found in (
            ("matrix", matrix_path),
            ("features", features_path),
            ("barcodes", barcodes_path),
        )
        if found is None
    ]
    if missing:
        raise DataError(
            f"Incomplete 10X directory {base_path}: missing {', '.join(missing)}",
            details={"path": str(base_path), "missing": missing},
        )

    logger.info(f"Loading 10X matrix from {base_path}")
    try:
        adata = sc.read_10x_mtx(base_path, var_names="gene_symbols", cache=False)
    except Exception as e:
        raise DataError(f"Failed to read 10X directory {base_path}: {e}") from e

    # Several Ensembl IDs can share one symbol
    adata.var_names_make_unique()
    logger.info(f"Loaded {adata.n_obs} cells × {adata.n_vars} genes")
    return Dataset.from_anndata(adata)


def load_h5ad(path: Union[str, Path]) -> Dataset:
    """Load raw counts stored in ``X`` of an ``.h5ad`` file."""
    path = Path(path)
    if not path.exists():
        raise DataError(f"File not found: {path}")
    logger.info(f"Loading h5ad file {path}")
    adata = anndata.read_h5ad(path)
    return Dataset.from_anndata(adata)


def load_csv(
    path: Union[str, Path], transpose: bool = False, sep: str = ","
) -> Dataset:
    """
    Load a delimited count table.

    Args:
        path: Table with identifiers in the first column and header row
        transpose: Set when rows are genes and columns are cells
        sep: Field delimiter

    Returns:
        Dataset: Dataset at stage LOADED
    """
    path = Path(path)
    if not path.exists():
        raise DataError(f"File not found: {path}")
    logger.info(f"Loading count table {path}")
    df = pd.read_csv(path, sep=sep, index_col=0)
    if transpose:
        df = df.T
    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise DataError(
            f"Count table has non-numeric columns: {non_numeric[:5]}",
            details={"columns": non_numeric[:20]},
        )
    return Dataset.from_matrix(
        spr.csr_matrix(df.to_numpy()),
        cell_ids=df.index.astype(str).tolist(),
        gene_ids=df.columns.astype(str).tolist(),
    )


def load_counts(path: Union[str, Path], **kwargs) -> Dataset:
    """Dispatch on the path type: directory → 10X, ``.h5ad`` → AnnData, else table."""
    path = Path(path)
    if path.is_dir():
        return load_10x_mtx(path)
    if path.suffix == ".h5ad":
        return load_h5ad(path)
    if path.suffix in (".tsv", ".txt"):
        kwargs.setdefault("sep", "\t")
    return load_csv(path, **kwargs)

"""
Loading of the persisted count matrix and cell annotation.

Count tables on disk are genes x cells (one row per gene, one column per
cell). In memory everything is an AnnData object, i.e. cells x genes.
"""

from pathlib import Path
from typing import Iterable, Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from .errors import DataAlignmentError, InputDataError
from .logger import get_logger

log = get_logger(__name__)

DELIMITED_SUFFIXES = {".csv": ",", ".tsv": "\t", ".txt": "\t"}


def _suffix(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    if suffixes and suffixes[-1] == ".gz":
        suffixes = suffixes[:-1]
    return suffixes[-1] if suffixes else ""


def _read_table(path: Path, index_col=0) -> pd.DataFrame:
    suffix = _suffix(path)
    if suffix == ".pkl":
        obj = pd.read_pickle(path)
        if isinstance(obj, pd.Series):
            obj = obj.to_frame()
        if not isinstance(obj, pd.DataFrame):
            raise InputDataError(f"{path} does not contain a pandas DataFrame (found {type(obj).__name__}).")
        return obj
    if suffix in DELIMITED_SUFFIXES:
        return pd.read_csv(path, sep=DELIMITED_SUFFIXES[suffix], index_col=index_col)
    raise InputDataError(f"Unsupported file type for {path}; expected .h5ad, .csv, .tsv, .txt or .pkl")


def _check_counts(X) -> None:
    values = X.data if sparse.issparse(X) else np.asarray(X)
    if values.size == 0:
        return
    if not np.all(np.isfinite(values)):
        raise InputDataError("Count matrix contains non-finite values.")
    if values.min() < 0:
        raise InputDataError("Count matrix contains negative values.")
    if not np.allclose(values, np.round(values)):
        raise InputDataError("Count matrix contains non-integer values; raw counts are required.")


def read_count_matrix(path: Path) -> ad.AnnData:
    """Read a count matrix and return it as a cells x genes AnnData."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count matrix not found: {path}")

    log.info("reading_count_matrix", path=str(path))
    if _suffix(path) == ".h5ad":
        adata = ad.read_h5ad(path)
    else:
        table = _read_table(path)
        if table.empty:
            raise InputDataError(f"Count matrix {path} is empty.")
        try:
            values = table.to_numpy(dtype=np.float64)
        except ValueError as e:
            raise InputDataError(f"Count matrix {path} contains non-numeric entries.") from e
        # genes x cells on disk
        adata = ad.AnnData(
            X=sparse.csr_matrix(values.T),
            obs=pd.DataFrame(index=table.columns.astype(str)),
            var=pd.DataFrame(index=table.index.astype(str)),
        )

    _check_counts(adata.X)
    if not adata.obs_names.is_unique:
        raise InputDataError(f"Cell identifiers in {path} are not unique.")
    adata.var_names_make_unique()
    log.info("count_matrix_loaded", n_cells=adata.n_obs, n_genes=adata.n_vars)
    return adata


def read_annotation(path: Path, label_key: str = "cell_type",
                    cell_id_column: Optional[str] = None) -> pd.Series:
    """Read the cell annotation table and return labels indexed by cell id."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Cell annotation not found: {path}")

    if _suffix(path) == ".pkl":
        table = _read_table(path)
        if cell_id_column is not None:
            table = table.set_index(cell_id_column)
    else:
        table = _read_table(path, index_col=cell_id_column if cell_id_column is not None else 0)

    if label_key not in table.columns:
        if table.shape[1] == 1:
            table.columns = [label_key]
        else:
            raise InputDataError(f"Label column '{label_key}' not found in {path}; columns: {list(table.columns)}")

    labels = table[label_key].astype(str)
    labels.index = labels.index.astype(str)
    labels.name = label_key
    if not labels.index.is_unique:
        raise InputDataError(f"Cell identifiers in {path} are not unique.")
    log.info("annotation_loaded", path=str(path), n_cells=len(labels), n_labels=labels.nunique())
    return labels


def align_annotation(counts: ad.AnnData, labels: pd.Series) -> pd.Series:
    """Reorder labels to the matrix cell order, failing on any mismatch."""
    if len(labels) != counts.n_obs:
        raise DataAlignmentError(
            f"Count matrix has {counts.n_obs} cells but the annotation has {len(labels)}."
        )
    missing = counts.obs_names.difference(labels.index)
    if len(missing) > 0:
        raise DataAlignmentError(
            f"{len(missing)} cells of the count matrix are absent from the annotation "
            f"(e.g. {list(missing[:3])})."
        )
    return labels.reindex(counts.obs_names)


def filter_by_labels(counts: ad.AnnData, labels: pd.Series,
                     keep_labels: Optional[Iterable[str]] = None) -> Tuple[ad.AnnData, pd.Series]:
    """
    Keep only cells whose label is in ``keep_labels``.

    Returns a new matrix and annotation sharing identical cell order. With
    ``keep_labels=None`` every cell is kept.
    """
    labels = align_annotation(counts, labels)

    if keep_labels is None:
        mask = np.ones(counts.n_obs, dtype=bool)
    else:
        keep = {str(label) for label in keep_labels}
        present = set(labels.unique())
        unknown = sorted(keep - present)
        if unknown and not (keep & present):
            raise InputDataError(f"None of the requested labels are present: {unknown}")
        if unknown:
            log.warning("labels_not_found", labels=unknown)
        mask = labels.isin(keep).to_numpy()

    if not mask.any():
        raise InputDataError("No cells remain after label filtering.")

    filtered = counts[mask].copy()
    filtered_labels = labels[mask]
    log.info("cells_filtered", n_before=counts.n_obs, n_after=filtered.n_obs)
    return filtered, filtered_labels


def load_dataset(counts_path: Path, annotation_path: Optional[Path] = None,
                 label_key: str = "cell_type", keep_labels: Optional[Iterable[str]] = None,
                 cell_id_column: Optional[str] = None) -> ad.AnnData:
    """
    Load counts and annotation, filter by label, and return a single AnnData
    whose ``obs[label_key]`` holds the categorical annotation.

    Without ``annotation_path`` the labels are taken from ``obs[label_key]``
    of an .h5ad matrix.
    """
    counts = read_count_matrix(counts_path)

    if annotation_path is not None:
        labels = read_annotation(annotation_path, label_key=label_key, cell_id_column=cell_id_column)
    elif label_key in counts.obs.columns:
        labels = counts.obs[label_key].astype(str)
    else:
        raise InputDataError(
            f"No annotation file given and '{label_key}' is not a column of the matrix's cell metadata."
        )

    adata, labels = filter_by_labels(counts, labels, keep_labels)
    adata.obs[label_key] = pd.Categorical(labels.to_numpy())
    return adata

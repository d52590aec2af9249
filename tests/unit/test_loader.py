import pytest
import numpy as np
import pandas as pd
from pathlib import Path

# Adjust the path to import from the src directory
import sys
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / 'src'))

from pseudotime_mini.errors import DataAlignmentError, InputDataError
from pseudotime_mini.loader import filter_by_labels, load_dataset, read_annotation, read_count_matrix


def test_read_count_matrix_transposes_genes_by_cells(branching_files, branching_counts):
    """A genes x cells CSV is loaded as a cells x genes AnnData."""
    counts_path, _ = branching_files
    table, _ = branching_counts

    adata = read_count_matrix(counts_path)

    assert adata.n_obs == table.shape[1]
    assert adata.n_vars == table.shape[0]
    assert list(adata.obs_names) == list(table.columns)
    assert list(adata.var_names) == list(table.index)
    assert adata.X[0].toarray().ravel().tolist() == table.iloc[:, 0].tolist()


def test_read_count_matrix_from_pickle(tmp_path, branching_counts):
    table, _ = branching_counts
    path = tmp_path / "counts.pkl"
    table.to_pickle(path)

    adata = read_count_matrix(path)
    assert adata.shape == (table.shape[1], table.shape[0])


def test_read_count_matrix_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_count_matrix(tmp_path / "absent.csv")


def test_read_count_matrix_rejects_negative_counts(tmp_path):
    path = tmp_path / "counts.tsv"
    pd.DataFrame({'c1': [1, -2], 'c2': [0, 3]}, index=['g1', 'g2']).to_csv(path, sep='\t')
    with pytest.raises(InputDataError, match="negative"):
        read_count_matrix(path)


def test_read_count_matrix_rejects_non_integer_counts(tmp_path):
    path = tmp_path / "counts.csv"
    pd.DataFrame({'c1': [1.5, 2.0], 'c2': [0.0, 3.0]}, index=['g1', 'g2']).to_csv(path)
    with pytest.raises(InputDataError, match="non-integer"):
        read_count_matrix(path)


def test_read_count_matrix_unsupported_suffix(tmp_path):
    path = tmp_path / "counts.xlsx"
    path.touch()
    with pytest.raises(InputDataError, match="Unsupported"):
        read_count_matrix(path)


def test_read_annotation(branching_files, branching_counts):
    _, annotation_path = branching_files
    _, annotation = branching_counts

    labels = read_annotation(annotation_path, label_key="cell_type")
    assert labels.name == "cell_type"
    assert labels.index.tolist() == annotation.index.tolist()
    assert labels.tolist() == annotation.tolist()


def test_read_annotation_unknown_column(tmp_path):
    path = tmp_path / "labels.csv"
    pd.DataFrame({'cell_id': ['a', 'b'], 'type': ['x', 'y'], 'batch': [1, 2]}).to_csv(path, index=False)
    with pytest.raises(InputDataError, match="cell_type"):
        read_annotation(path, label_key="cell_type")


def test_filter_never_increases_cell_count(branching_files):
    """Filtered cells are a subset of the input and stay aligned with their labels."""
    counts_path, annotation_path = branching_files
    counts = read_count_matrix(counts_path)
    labels = read_annotation(annotation_path)

    filtered, filtered_labels = filter_by_labels(counts, labels, ["fate_a", "fate_b"])

    assert filtered.n_obs <= counts.n_obs
    assert filtered.n_obs == 160
    assert set(filtered.obs_names) <= set(counts.obs_names)
    assert filtered.n_obs == len(filtered_labels)
    assert list(filtered.obs_names) == list(filtered_labels.index)
    assert set(filtered_labels) == {"fate_a", "fate_b"}


def test_filter_without_labels_keeps_everything(branching_files):
    counts_path, annotation_path = branching_files
    counts = read_count_matrix(counts_path)
    labels = read_annotation(annotation_path)

    filtered, filtered_labels = filter_by_labels(counts, labels, None)
    assert filtered.n_obs == counts.n_obs
    assert list(filtered_labels.index) == list(counts.obs_names)


def test_filter_reorders_annotation_to_matrix(branching_files):
    counts_path, annotation_path = branching_files
    counts = read_count_matrix(counts_path)
    labels = read_annotation(annotation_path).iloc[::-1]

    filtered, filtered_labels = filter_by_labels(counts, labels, ["progenitor"])
    assert list(filtered.obs_names) == list(filtered_labels.index)
    assert (filtered_labels == "progenitor").all()


def test_filter_cell_count_mismatch(branching_files):
    counts_path, annotation_path = branching_files
    counts = read_count_matrix(counts_path)
    labels = read_annotation(annotation_path).iloc[:-1]

    with pytest.raises(DataAlignmentError):
        filter_by_labels(counts, labels, ["progenitor"])


def test_filter_cell_identifier_mismatch(branching_files):
    counts_path, annotation_path = branching_files
    counts = read_count_matrix(counts_path)
    labels = read_annotation(annotation_path)
    labels.index = ["other_" + cell for cell in labels.index]

    with pytest.raises(DataAlignmentError):
        filter_by_labels(counts, labels, None)


def test_filter_unknown_labels(branching_files):
    counts_path, annotation_path = branching_files
    counts = read_count_matrix(counts_path)
    labels = read_annotation(annotation_path)

    with pytest.raises(InputDataError, match="None of the requested labels"):
        filter_by_labels(counts, labels, ["neuron"])

    # One known label is enough, the unknown one is only a warning
    filtered, _ = filter_by_labels(counts, labels, ["neuron", "fate_a"])
    assert filtered.n_obs == 80


def test_load_dataset(branching_files):
    counts_path, annotation_path = branching_files

    adata = load_dataset(counts_path, annotation_path, label_key="cell_type",
                         keep_labels=["progenitor", "intermediate"])

    assert adata.n_obs == 160
    assert isinstance(adata.obs["cell_type"].dtype, pd.CategoricalDtype)
    assert set(adata.obs["cell_type"]) == {"progenitor", "intermediate"}


def test_load_dataset_from_h5ad_labels(tmp_path, branching_adata):
    path = tmp_path / "counts.h5ad"
    branching_adata.write_h5ad(path)

    adata = load_dataset(path, None, label_key="cell_type", keep_labels=["fate_b"])
    assert adata.n_obs == 80
    assert np.all(adata.obs["cell_type"] == "fate_b")


def test_load_dataset_requires_labels(tmp_path, branching_adata):
    path = tmp_path / "counts.h5ad"
    branching_adata.write_h5ad(path)

    with pytest.raises(InputDataError):
        load_dataset(path, None, label_key="annotation")

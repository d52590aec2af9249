import sys
from pathlib import Path

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

# Adjust the path to import from the src directory
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / 'src'))

from pseudotime_mini.trajectory import TrajectoryResult  # noqa: E402

LABELS = ["progenitor", "intermediate", "fate_a", "fate_b"]


def make_branching_counts(n_cells_per_label: int = 80, n_genes_per_program: int = 15,
                          n_noise_genes: int = 20, seed: int = 0):
    """
    Synthetic counts for a progenitor -> intermediate -> {fate_a, fate_b}
    bifurcation. Returns a genes x cells DataFrame and the cell labels.
    """
    rng = np.random.default_rng(seed)
    progress, branch, labels = [], [], []
    for label in LABELS:
        t = rng.uniform(0, 1, n_cells_per_label)
        if label == "progenitor":
            progress.append(0.5 * t)
            branch.append(np.zeros(n_cells_per_label))
        elif label == "intermediate":
            progress.append(0.5 + 0.5 * t)
            branch.append(np.zeros(n_cells_per_label))
        else:
            progress.append(1.0 + t)
            branch.append(np.full(n_cells_per_label, 1.0 if label == "fate_a" else -1.0))
        labels.extend([label] * n_cells_per_label)
    progress = np.concatenate(progress)
    branch = np.concatenate(branch)
    branch_depth = np.clip(progress - 1.0, 0, None)

    rates = []
    for _ in range(n_genes_per_program):
        rates.append(30 * np.exp(-2 * progress))                          # early genes
        rates.append(30 * np.exp(-8 * (progress - 1.0) ** 2))             # transient genes
        rates.append(1 + 30 * branch_depth * (branch > 0))               # fate_a genes
        rates.append(1 + 30 * branch_depth * (branch < 0))               # fate_b genes
    for _ in range(n_noise_genes):
        rates.append(np.full(progress.shape, 5.0))
    rates = np.vstack(rates)
    counts = rng.poisson(rates)

    cells = [f"cell_{i:04d}" for i in range(counts.shape[1])]
    genes = [f"gene_{i:03d}" for i in range(counts.shape[0])]
    table = pd.DataFrame(counts, index=genes, columns=cells)
    annotation = pd.Series(labels, index=cells, name="cell_type")
    return table, annotation


@pytest.fixture
def branching_counts():
    return make_branching_counts()


@pytest.fixture
def branching_files(tmp_path, branching_counts):
    """Counts (genes x cells) and annotation written as CSV files."""
    table, annotation = branching_counts
    counts_path = tmp_path / "counts.csv"
    annotation_path = tmp_path / "cell_types.csv"
    table.to_csv(counts_path)
    annotation.to_frame().to_csv(annotation_path, index_label="cell_id")
    return counts_path, annotation_path


@pytest.fixture
def branching_adata(branching_counts):
    """Raw-count AnnData (cells x genes) with the cell_type annotation."""
    table, annotation = branching_counts
    adata = ad.AnnData(
        X=sparse.csr_matrix(table.to_numpy().T.astype(np.float32)),
        obs=pd.DataFrame({'cell_type': pd.Categorical(annotation.to_numpy())}, index=table.columns),
        var=pd.DataFrame(index=table.index),
    )
    return adata


# Cluster centroids of a Y-shaped tree: 0 - 1 - 2 < (3, 4)
Y_CENTROIDS = {
    "0": (0.0, 0.0),
    "1": (1.5, 0.0),
    "2": (3.0, 0.0),
    "3": (5.0, 1.5),
    "4": (4.0, -1.0),
}


@pytest.fixture
def y_shaped_adata():
    """Cells scattered along the edges of a Y, clustered by nearest centroid segment."""
    rng = np.random.default_rng(1)
    coords, clusters = [], []
    segments = [("0", "1", "0"), ("1", "2", "1"), ("2", "3", "3"), ("2", "4", "4")]
    for start, end, _ in segments:
        a, b = np.array(Y_CENTROIDS[start]), np.array(Y_CENTROIDS[end])
        t = rng.uniform(0, 1, 60)
        points = a + t[:, None] * (b - a) + rng.normal(0, 0.05, (60, 2))
        coords.append(points)
    coords = np.vstack(coords)

    centroids = np.array(list(Y_CENTROIDS.values()))
    names = list(Y_CENTROIDS)
    distances = ((coords[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2)
    clusters = [names[i] for i in distances.argmin(axis=1)]

    cells = [f"cell_{i:04d}" for i in range(len(coords))]
    adata = ad.AnnData(
        X=np.zeros((len(coords), 3), dtype=np.float32),
        obs=pd.DataFrame({'leiden': pd.Categorical(clusters)}, index=cells),
    )
    adata.obsm["X_umap"] = coords
    return adata


@pytest.fixture
def linear_trajectory():
    """A one-lineage trajectory over 200 cells, 20 of which lack pseudotime."""
    rng = np.random.default_rng(2)
    n_cells = 200
    cells = [f"cell_{i:04d}" for i in range(n_cells)]
    pseudotime = np.sort(rng.uniform(0, 10, n_cells))
    clusters = np.where(pseudotime < 5, "a", "b")
    pseudotime_table = pd.DataFrame({'Lineage1': pseudotime}, index=cells)
    pseudotime_table.iloc[-20:, 0] = np.nan

    X = rng.normal(0, 1, (n_cells, 30))
    X[:, 0] = pseudotime + rng.normal(0, 0.1, n_cells)
    X[:, 1] = -0.5 * pseudotime + rng.normal(0, 0.1, n_cells)
    genes = [f"gene_{i:02d}" for i in range(30)]
    adata = ad.AnnData(
        X=X,
        obs=pd.DataFrame({'leiden': pd.Categorical(clusters)}, index=cells),
        var=pd.DataFrame(index=genes),
    )
    adata.obsm["X_umap"] = np.column_stack([pseudotime, rng.normal(0, 0.1, n_cells)])

    trajectory = TrajectoryResult(
        lineages={'Lineage1': ["a", "b"]},
        pseudotime=pseudotime_table,
        curves={'Lineage1': np.array([[0.0, 0.0], [10.0, 0.0]])},
        mst_edges=[("a", "b")],
        start_cluster="a",
        embedding_key="X_umap",
        cluster_key="leiden",
        centroids=pd.DataFrame([[2.5, 0.0], [7.5, 0.0]], index=["a", "b"]),
    )
    return adata, trajectory

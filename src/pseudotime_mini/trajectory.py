"""
Lineage inference and pseudotime estimation.

Clusters are summarised by their centroids in a low-dimensional embedding,
connected by a minimum spanning tree, and every root-to-leaf path of that
tree becomes a lineage. A principal curve is fitted through the cells of
each lineage and a cell's pseudotime is the arc length of its projection on
the curve.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import anndata as ad
import networkx as nx
import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from .errors import TrajectoryError
from .logger import get_logger
from .validation import TrajectoryConfig

log = get_logger(__name__)

PSEUDOTIME_PREFIX = "pseudotime_"
UNS_KEY = "trajectory"
MIN_CELLS_TO_SMOOTH = 10


@dataclass
class TrajectoryResult:
    """Lineages, curves and per-lineage pseudotime of a fitted trajectory."""

    lineages: Dict[str, List[str]]
    pseudotime: pd.DataFrame
    curves: Dict[str, np.ndarray]
    mst_edges: List[Tuple[str, str]]
    start_cluster: str
    embedding_key: str
    cluster_key: str
    centroids: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def lineage_names(self) -> List[str]:
        return list(self.lineages)

    def pseudotime_for(self, lineage: Optional[str] = None) -> pd.Series:
        """Pseudotime of one lineage (the first when ``lineage`` is None)."""
        lineage = lineage or self.lineage_names[0]
        if lineage not in self.lineages:
            raise KeyError(f"Unknown lineage '{lineage}'; available: {self.lineage_names}")
        return self.pseudotime[lineage]

    def lineage_assignment(self) -> pd.DataFrame:
        """Boolean cells x lineages frame, True where pseudotime is defined."""
        return self.pseudotime.notna()

    def summary(self) -> Dict[str, Any]:
        assigned = self.lineage_assignment()
        return {
            'start_cluster': self.start_cluster,
            'n_lineages': len(self.lineages),
            'lineages': {name: list(path) for name, path in self.lineages.items()},
            'cells_per_lineage': {name: int(assigned[name].sum()) for name in self.lineages},
            'max_pseudotime': {name: float(self.pseudotime[name].max()) for name in self.lineages},
            'embedding_key': self.embedding_key,
            'cluster_key': self.cluster_key,
        }

    def to_anndata(self, adata: ad.AnnData) -> None:
        """Store pseudotime columns in ``obs`` and the rest in ``uns['trajectory']``."""
        for column in [c for c in adata.obs.columns if c.startswith(PSEUDOTIME_PREFIX)]:
            del adata.obs[column]
        for name in self.lineages:
            adata.obs[f"{PSEUDOTIME_PREFIX}{name}"] = self.pseudotime[name].reindex(adata.obs_names).to_numpy()

        adata.uns[UNS_KEY] = {
            'lineage_names': np.array(self.lineage_names, dtype=str),
            'lineages': {name: np.array(path, dtype=str) for name, path in self.lineages.items()},
            'curves': {name: np.asarray(curve) for name, curve in self.curves.items()},
            'mst_edges': np.array(self.mst_edges, dtype=str).reshape(-1, 2),
            'start_cluster': self.start_cluster,
            'embedding_key': self.embedding_key,
            'cluster_key': self.cluster_key,
            'centroid_clusters': np.array(self.centroids.index, dtype=str),
            'centroids': self.centroids.to_numpy(),
        }

    @classmethod
    def from_anndata(cls, adata: ad.AnnData) -> "TrajectoryResult":
        if UNS_KEY not in adata.uns:
            raise TrajectoryError("No trajectory stored in this AnnData object.")
        stored = adata.uns[UNS_KEY]
        names = [str(n) for n in stored['lineage_names']]
        pseudotime = pd.DataFrame(
            {name: adata.obs[f"{PSEUDOTIME_PREFIX}{name}"].astype(float).to_numpy() for name in names},
            index=adata.obs_names.copy(),
        )
        centroids = pd.DataFrame(
            np.asarray(stored['centroids']),
            index=[str(c) for c in stored['centroid_clusters']],
        )
        return cls(
            lineages={name: [str(c) for c in stored['lineages'][name]] for name in names},
            pseudotime=pseudotime,
            curves={name: np.asarray(stored['curves'][name]) for name in names},
            mst_edges=[(str(a), str(b)) for a, b in np.asarray(stored['mst_edges'])],
            start_cluster=str(stored['start_cluster']),
            embedding_key=str(stored['embedding_key']),
            cluster_key=str(stored['cluster_key']),
            centroids=centroids,
        )


# --- Cluster graph ---


def cluster_centroids(embedding: np.ndarray, clusters: pd.Series) -> pd.DataFrame:
    """Mean embedding coordinates of every cluster (clusters x dims)."""
    frame = pd.DataFrame(np.asarray(embedding), index=clusters.index)
    centroids = frame.groupby(clusters.to_numpy(), sort=True).mean()
    centroids.index = centroids.index.astype(str)
    return centroids


def _complete_graph(centroids: pd.DataFrame, nodes: Iterable[str]) -> nx.Graph:
    graph = nx.Graph()
    nodes = list(nodes)
    graph.add_nodes_from(nodes)
    for i, a in enumerate(nodes):
        for b in nodes[i + 1:]:
            distance = float(np.linalg.norm(centroids.loc[a].to_numpy() - centroids.loc[b].to_numpy()))
            graph.add_edge(a, b, weight=distance)
    return graph


def build_cluster_mst(centroids: pd.DataFrame, end_clusters: Iterable[str] = ()) -> nx.Graph:
    """
    Minimum spanning tree over cluster centroids (Euclidean distances).

    Clusters listed in ``end_clusters`` are kept as leaves: the tree is
    built over the remaining clusters and each end cluster is attached to
    its nearest non-end cluster.
    """
    clusters = list(centroids.index)
    end_clusters = [c for c in end_clusters if c in clusters]
    inner = [c for c in clusters if c not in end_clusters]
    if not inner:
        raise TrajectoryError("Every cluster is an end cluster; at least one must remain inside the tree.")

    mst = nx.minimum_spanning_tree(_complete_graph(centroids, inner), weight='weight', algorithm='kruskal')
    mst.add_nodes_from(inner)
    for end in end_clusters:
        distances = {c: float(np.linalg.norm(centroids.loc[end].to_numpy() - centroids.loc[c].to_numpy())) for c in inner}
        nearest = min(sorted(distances), key=distances.get)
        mst.add_edge(end, nearest, weight=distances[nearest])
    return mst


def choose_root(mst: nx.Graph, start_cluster: Optional[str] = None,
                end_clusters: Iterable[str] = ()) -> str:
    """
    Root of the lineage tree: ``start_cluster`` when given, otherwise an
    endpoint of the tree's longest weighted path.
    """
    if start_cluster is not None:
        if start_cluster not in mst:
            raise TrajectoryError(f"Start cluster '{start_cluster}' is not one of the clusters {sorted(mst.nodes)}.")
        return start_cluster

    end_clusters = set(end_clusters)
    lengths = dict(nx.all_pairs_dijkstra_path_length(mst, weight='weight'))
    candidates = [n for n in mst.nodes if n not in end_clusters]
    leaves = [n for n in candidates if mst.degree(n) <= 1]
    pool = sorted(leaves or candidates)
    return max(pool, key=lambda n: max(lengths[n].values()))


def lineages_from_mst(mst: nx.Graph, root: str) -> Dict[str, List[str]]:
    """Root-to-leaf cluster paths, longest first, named Lineage1..N."""
    if mst.number_of_nodes() == 1:
        return {"Lineage1": [root]}

    paths = nx.single_source_dijkstra_path(mst, root, weight='weight')
    lengths = nx.single_source_dijkstra_path_length(mst, root, weight='weight')
    leaves = [n for n in mst.nodes if n != root and mst.degree(n) == 1]
    leaves.sort(key=lambda leaf: (-len(paths[leaf]), -lengths[leaf], leaf))
    return {f"Lineage{i + 1}": paths[leaf] for i, leaf in enumerate(leaves)}


# --- Principal curves ---


def project_onto_curve(points: np.ndarray, curve: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Orthogonal projection of points onto a polyline.

    Returns the arc length of each projection measured from the first curve
    point, and the squared distance of each point to the curve.
    """
    points = np.asarray(points, dtype=float)
    curve = np.asarray(curve, dtype=float)
    if len(curve) == 1:
        return np.zeros(len(points)), np.sum((points - curve[0]) ** 2, axis=1)

    starts = curve[:-1]
    segments = curve[1:] - starts
    seg_len_sq = np.sum(segments ** 2, axis=1)
    seg_len = np.sqrt(seg_len_sq)
    offsets = np.concatenate([[0.0], np.cumsum(seg_len)[:-1]])

    # points x segments
    rel = points[:, None, :] - starts[None, :, :]
    with np.errstate(divide='ignore', invalid='ignore'):
        t = np.einsum('nsd,sd->ns', rel, segments) / seg_len_sq
    t = np.clip(np.nan_to_num(t, nan=0.0), 0.0, 1.0)
    nearest = starts[None, :, :] + t[:, :, None] * segments[None, :, :]
    dist_sq = np.sum((points[:, None, :] - nearest) ** 2, axis=2)

    best = np.argmin(dist_sq, axis=1)
    rows = np.arange(len(points))
    arclength = offsets[best] + t[rows, best] * seg_len[best]
    return arclength, dist_sq[rows, best]


def _smooth_curve(points: np.ndarray, lam: np.ndarray, frac: float, n_curve_points: int) -> np.ndarray:
    grid = np.linspace(lam.min(), lam.max(), n_curve_points)
    delta = 0.01 * float(lam.max() - lam.min())
    coords = []
    for dim in range(points.shape[1]):
        fitted = lowess(points[:, dim], lam, frac=frac, delta=delta, return_sorted=True)
        coords.append(np.interp(grid, fitted[:, 0], fitted[:, 1]))
    return np.column_stack(coords)


def fit_principal_curve(points: np.ndarray, initial_curve: np.ndarray,
                        config: TrajectoryConfig) -> Tuple[np.ndarray, np.ndarray]:
    """
    Fit a principal curve through ``points`` starting from ``initial_curve``.

    Alternates projection and LOWESS smoothing of each coordinate against
    arc length. Returns the curve and the arc length of every point.
    """
    curve = np.asarray(initial_curve, dtype=float)
    lam, _ = project_onto_curve(points, curve)
    if len(points) < MIN_CELLS_TO_SMOOTH or np.ptp(lam) == 0:
        return curve, lam

    for iteration in range(config.n_iterations):
        new_curve = _smooth_curve(points, lam, config.smoother_frac, config.n_curve_points)
        new_lam, _ = project_onto_curve(points, new_curve)
        scale = max(float(np.ptp(new_lam)), np.finfo(float).eps)
        change = float(np.mean(np.abs(new_lam - lam))) / scale
        curve, lam = new_curve, new_lam
        if change < config.tolerance:
            log.debug("principal_curve_converged", iteration=iteration + 1, change=change)
            break
    return curve, lam


# --- Entry point ---


def infer_trajectory(adata: ad.AnnData, config: TrajectoryConfig) -> TrajectoryResult:
    """
    Infer lineages and per-lineage pseudotime from an embedding and clusters.

    A cell only receives a pseudotime on lineages whose cluster path contains
    its own cluster; on every other lineage it is NaN.
    """
    if config.embedding_key not in adata.obsm:
        raise TrajectoryError(f"Embedding '{config.embedding_key}' not found; available: {list(adata.obsm.keys())}")
    if config.cluster_key not in adata.obs:
        raise TrajectoryError(f"Cluster column '{config.cluster_key}' not found in cell metadata.")

    embedding = np.asarray(adata.obsm[config.embedding_key], dtype=float)
    if embedding.ndim != 2 or embedding.shape[1] < 2:
        raise TrajectoryError(f"Embedding '{config.embedding_key}' must have at least 2 dimensions, got shape {embedding.shape}.")

    clusters = adata.obs[config.cluster_key]
    if clusters.isna().any():
        raise TrajectoryError(f"{int(clusters.isna().sum())} cells have no '{config.cluster_key}' label.")
    clusters = clusters.astype(str)

    sizes = clusters.value_counts()
    small = sorted(sizes[sizes < config.min_cluster_size].index)
    if small:
        raise TrajectoryError(f"Clusters {small} have fewer than {config.min_cluster_size} cells.")
    if len(sizes) < 2:
        raise TrajectoryError("At least two clusters are required to infer a trajectory.")

    unknown = [c for c in config.end_clusters if c not in sizes.index]
    if unknown:
        raise TrajectoryError(f"End clusters {unknown} are not among the clusters {sorted(sizes.index)}.")

    centroids = cluster_centroids(embedding, clusters)
    mst = build_cluster_mst(centroids, config.end_clusters)
    root = choose_root(mst, config.start_cluster, config.end_clusters)
    lineages = lineages_from_mst(mst, root)
    log.info("lineages_identified", root=root, n_lineages=len(lineages),
             lineages={name: '->'.join(path) for name, path in lineages.items()})

    pseudotime = pd.DataFrame(np.nan, index=adata.obs_names.copy(), columns=list(lineages), dtype=float)
    curves = {}
    for name, path in lineages.items():
        mask = clusters.isin(path).to_numpy()
        points = embedding[mask]
        initial_curve = centroids.loc[path].to_numpy()
        curve, lam = fit_principal_curve(points, initial_curve, config)
        offset = lam.min()
        pseudotime.loc[mask, name] = lam - offset
        curves[name] = curve
        log.info("lineage_fitted", lineage=name, n_cells=int(mask.sum()), max_pseudotime=float(lam.max() - offset))

    return TrajectoryResult(
        lineages=lineages,
        pseudotime=pseudotime,
        curves=curves,
        mst_edges=sorted(tuple(sorted(edge)) for edge in mst.edges),
        start_cluster=root,
        embedding_key=config.embedding_key,
        cluster_key=config.cluster_key,
        centroids=centroids,
    )

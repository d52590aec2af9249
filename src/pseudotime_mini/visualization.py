"""
Figures for embeddings, lineages and gene importance.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import anndata as ad
import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import networkx as nx  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
import seaborn as sns  # noqa: E402
from scipy import sparse  # noqa: E402

from .importance import ImportanceResult  # noqa: E402
from .logger import get_logger  # noqa: E402
from .trajectory import TrajectoryResult  # noqa: E402
from .validation import PlottingConfig  # noqa: E402

log = get_logger(__name__)

NAN_COLOR = "lightgrey"
CURVE_COLOR = "black"


def _save(fig: plt.Figure, save: Optional[Union[str, Path]], dpi: int) -> None:
    if save is not None:
        save = Path(save)
        save.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save, dpi=dpi, bbox_inches='tight')
        log.info("figure_saved", path=str(save))


def _gene_values(adata: ad.AnnData, gene: str) -> np.ndarray:
    column = adata[:, gene].X
    column = column.toarray() if sparse.issparse(column) else np.asarray(column)
    return column.ravel().astype(float)


def _color_values(adata: ad.AnnData, color: str) -> pd.Series:
    if color in adata.obs.columns:
        return adata.obs[color]
    if color in adata.var_names:
        return pd.Series(_gene_values(adata, color), index=adata.obs_names, name=color)
    raise KeyError(f"'{color}' is neither a cell metadata column nor a gene.")


def _overlay_curves(ax: plt.Axes, trajectory: TrajectoryResult) -> None:
    for name, curve in trajectory.curves.items():
        curve = np.asarray(curve)
        ax.plot(curve[:, 0], curve[:, 1], color=CURVE_COLOR, linewidth=2)
        ax.annotate(name, xy=curve[-1, :2], fontsize=8, fontweight='bold', ha='left', va='bottom')


def plot_embedding(adata: ad.AnnData, color: str, basis: str = "umap",
                   trajectory: Optional[TrajectoryResult] = None,
                   ax: Optional[plt.Axes] = None, title: Optional[str] = None,
                   point_size: float = 8.0, cmap: str = "viridis",
                   save: Optional[Union[str, Path]] = None, dpi: int = 150,
                   values: Optional[pd.Series] = None) -> plt.Figure:
    """
    Scatter the cells of an embedding coloured by a metadata column or gene.

    Categorical columns get a legend, continuous values a colour bar; NaN
    values (e.g. cells off a lineage) are drawn grey underneath. Lineage
    curves are overlaid when ``trajectory`` was fitted on this embedding.
    Precomputed ``values`` (indexed by cell) override the lookup of ``color``.
    """
    key = f"X_{basis}"
    if key not in adata.obsm:
        raise KeyError(f"Embedding '{key}' not found; available: {list(adata.obsm.keys())}")
    coords = np.asarray(adata.obsm[key])[:, :2]
    values = _color_values(adata, color) if values is None else values.reindex(adata.obs_names)

    if ax is None:
        fig, ax = plt.subplots(figsize=(7, 6))
    else:
        fig = ax.figure

    is_categorical = isinstance(values.dtype, pd.CategoricalDtype) or values.dtype == object
    if is_categorical:
        categories = values.astype('category').cat.categories
        missing = values.isna().to_numpy()
        if missing.any():
            ax.scatter(coords[missing, 0], coords[missing, 1], s=point_size, color=NAN_COLOR, linewidths=0)
        palette = sns.color_palette("tab20" if len(categories) > 10 else "tab10", len(categories))
        for category, colour in zip(categories, palette):
            mask = (values == category).to_numpy()
            ax.scatter(coords[mask, 0], coords[mask, 1], s=point_size, color=colour, label=str(category), linewidths=0)
        ax.legend(title=color, bbox_to_anchor=(1.02, 0.5), loc='center left', frameon=False, markerscale=2)
    else:
        numeric = values.astype(float).to_numpy()
        missing = np.isnan(numeric)
        ax.scatter(coords[missing, 0], coords[missing, 1], s=point_size, color=NAN_COLOR, linewidths=0)
        scatter = ax.scatter(coords[~missing, 0], coords[~missing, 1], s=point_size,
                             c=numeric[~missing], cmap=cmap, linewidths=0)
        fig.colorbar(scatter, ax=ax, label=color)

    if trajectory is not None and trajectory.embedding_key == key:
        _overlay_curves(ax, trajectory)

    ax.set_xlabel(f"{basis.upper()}1")
    ax.set_ylabel(f"{basis.upper()}2")
    ax.set_xticks([])
    ax.set_yticks([])
    ax.set_title(title or color)
    _save(fig, save, dpi)
    return fig


def plot_pseudotime(adata: ad.AnnData, trajectory: TrajectoryResult,
                    lineage: Optional[str] = None, basis: str = "umap",
                    save: Optional[Union[str, Path]] = None, dpi: int = 150) -> plt.Figure:
    """Embedding coloured by pseudotime, one panel per lineage."""
    lineages = [lineage] if lineage else trajectory.lineage_names
    fig, axes = plt.subplots(1, len(lineages), figsize=(6 * len(lineages), 5), squeeze=False)
    values = trajectory.pseudotime.reindex(adata.obs_names)

    for ax, name in zip(axes[0], lineages):
        plot_embedding(adata, f"pseudotime {name}", basis=basis, trajectory=trajectory, ax=ax,
                       title=f"{name}: {' -> '.join(trajectory.lineages[name])}", cmap='magma',
                       values=values[name])

    fig.tight_layout()
    _save(fig, save, dpi)
    return fig


def plot_lineage_graph(trajectory: TrajectoryResult, ax: Optional[plt.Axes] = None,
                       save: Optional[Union[str, Path]] = None, dpi: int = 150) -> plt.Figure:
    """Cluster MST drawn at the centroid positions, lineage edges highlighted."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(7, 6))
    else:
        fig = ax.figure

    graph = nx.Graph()
    graph.add_edges_from(trajectory.mst_edges)
    positions = {c: trajectory.centroids.loc[c].to_numpy()[:2] for c in graph.nodes}

    nx.draw_networkx_edges(graph, positions, ax=ax, edge_color=NAN_COLOR, width=4)
    palette = sns.color_palette("Set1", len(trajectory.lineages))
    for colour, (name, path) in zip(palette, trajectory.lineages.items()):
        edges = list(zip(path[:-1], path[1:]))
        nx.draw_networkx_edges(graph, positions, edgelist=edges, ax=ax, edge_color=[colour], width=1.5,
                               label=name)
    node_colors = ['gold' if c == trajectory.start_cluster else 'white' for c in graph.nodes]
    nx.draw_networkx_nodes(graph, positions, ax=ax, node_color=node_colors, edgecolors='black', node_size=400)
    nx.draw_networkx_labels(graph, positions, ax=ax, font_size=9)
    ax.legend(frameon=False)
    ax.set_title(f"Cluster tree (start: {trajectory.start_cluster})")
    ax.set_axis_off()
    _save(fig, save, dpi)
    return fig


def plot_gene_importance(result: ImportanceResult, n_top: int = 25,
                         save: Optional[Union[str, Path]] = None, dpi: int = 150) -> plt.Figure:
    """Horizontal bar chart of the most important genes."""
    top = result.ranking.head(n_top).iloc[::-1]
    fig, ax = plt.subplots(figsize=(7, max(4, 0.3 * len(top))))
    ax.barh(top['gene'], top['importance'], color=sns.color_palette("viridis", 1)[0])
    ax.set_xlabel(f"Importance ({result.importance_method})")
    r = result.metrics.get('pearson_r', float('nan'))
    ax.set_title(f"{result.lineage}: top {len(top)} genes (validation r = {r:.2f})")
    ax.grid(axis='x', linestyle='--', alpha=0.3)
    fig.tight_layout()
    _save(fig, save, dpi)
    return fig


def plot_genes_along_pseudotime(adata: ad.AnnData, trajectory: TrajectoryResult,
                                genes: Sequence[str], lineage: Optional[str] = None,
                                save: Optional[Union[str, Path]] = None, dpi: int = 150) -> plt.Figure:
    """Heatmap of scaled expression for cells of a lineage ordered by pseudotime."""
    pseudotime = trajectory.pseudotime_for(lineage).reindex(adata.obs_names).dropna().sort_values()
    genes = [g for g in genes if g in adata.var_names]
    if not genes:
        raise KeyError("None of the requested genes are present in the expression matrix.")

    subset = adata[pseudotime.index, genes]
    X = subset.X.toarray() if sparse.issparse(subset.X) else np.asarray(subset.X, dtype=float)
    spread = X.max(axis=0) - X.min(axis=0)
    scaled = (X - X.min(axis=0)) / np.where(spread > 0, spread, 1.0)

    fig, ax = plt.subplots(figsize=(10, max(3, 0.3 * len(genes))))
    sns.heatmap(pd.DataFrame(scaled.T, index=genes), ax=ax, cmap='viridis', xticklabels=False,
                cbar_kws={'label': 'scaled expression'})
    ax.set_xlabel(f"cells ordered by pseudotime ({lineage or trajectory.lineage_names[0]})")
    fig.tight_layout()
    _save(fig, save, dpi)
    return fig


def render_report_figures(adata: ad.AnnData, trajectory: TrajectoryResult,
                          importance: Optional[ImportanceResult], config: PlottingConfig,
                          output_dir: Union[str, Path],
                          n_top_genes: int = 25) -> Dict[str, str]:
    """Write the standard figure set and return a name -> path mapping.

    ``n_top_genes`` bars are drawn in the gene importance chart.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    figures: Dict[str, str] = {}

    def _record(name: str, fig: plt.Figure, path: Path) -> None:
        figures[name] = str(path)
        plt.close(fig)

    for column in config.color_by:
        if column not in adata.obs.columns and column not in adata.var_names:
            log.warning("plot_color_missing", color=column)
            continue
        path = output_dir / f"{config.basis}_{column}.png"
        _record(f"{config.basis}_{column}",
                plot_embedding(adata, column, basis=config.basis, trajectory=trajectory, save=path, dpi=config.dpi),
                path)

    path = output_dir / f"{config.basis}_pseudotime.png"
    _record("pseudotime", plot_pseudotime(adata, trajectory, basis=config.basis, save=path, dpi=config.dpi), path)

    path = output_dir / "lineage_graph.png"
    _record("lineage_graph", plot_lineage_graph(trajectory, save=path, dpi=config.dpi), path)

    if importance is not None:
        path = output_dir / "gene_importance.png"
        _record("gene_importance", plot_gene_importance(importance, n_top=n_top_genes, save=path, dpi=config.dpi), path)

        top: List[str] = importance.top_genes(config.n_heatmap_genes)
        path = output_dir / "genes_along_pseudotime.png"
        _record("genes_along_pseudotime",
                plot_genes_along_pseudotime(adata, trajectory, top, importance.lineage, save=path, dpi=config.dpi),
                path)

        for gene in top[:4]:
            path = output_dir / f"{config.basis}_{gene.replace('/', '_')}.png"
            _record(f"{config.basis}_{gene}",
                    plot_embedding(adata, gene, basis=config.basis, trajectory=trajectory, save=path, dpi=config.dpi),
                    path)

    log.info("figures_rendered", n_figures=len(figures), output_dir=str(output_dir))
    return figures

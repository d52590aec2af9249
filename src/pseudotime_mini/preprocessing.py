"""
Normalization, dimensionality reduction and clustering.
"""

from typing import Any, Dict

import anndata as ad
import numpy as np
import scanpy as sc

from .errors import InputDataError
from .logger import get_logger
from .validation import PreprocessConfig

log = get_logger(__name__)

COUNTS_LAYER = "counts"


def _stabilized_hvg_matrix(adata: ad.AnnData, config: PreprocessConfig) -> ad.AnnData:
    """Select highly variable genes and return their variance-stabilized matrix."""
    n_top_genes = min(config.n_top_genes, adata.n_vars)

    if config.hvg_flavor == "pearson_residuals":
        sc.experimental.pp.highly_variable_genes(
            adata, flavor="pearson_residuals", n_top_genes=n_top_genes, layer=COUNTS_LAYER
        )
    else:
        sc.pp.highly_variable_genes(adata, flavor="seurat", n_top_genes=n_top_genes)

    hvg = adata[:, adata.var["highly_variable"].to_numpy()].copy()
    log.info("highly_variable_genes", n_genes=hvg.n_vars, flavor=config.hvg_flavor)

    if config.normalization == "pearson_residuals":
        hvg.X = hvg.layers[COUNTS_LAYER].copy()
        sc.experimental.pp.normalize_pearson_residuals(hvg)
    else:
        sc.pp.scale(hvg, max_value=config.scale_max)
    return hvg


def run_preprocessing(adata: ad.AnnData, config: PreprocessConfig) -> ad.AnnData:
    """
    Run the standard preprocessing workflow on a raw-count AnnData.

    The input object is left untouched. The returned object carries:

      - ``layers["counts"]``: raw counts
      - ``X``: library-size normalized, log1p expression (all retained genes)
      - ``var["highly_variable"]``
      - ``obsm["X_pca"]``, ``obsm["X_umap"]`` and the neighbour graph
      - ``obs[config.cluster_key]``: Leiden clusters

    Every stochastic step is seeded with ``config.seed``.
    """
    adata = adata.copy()
    log.info("preprocessing_started", n_cells=adata.n_obs, n_genes=adata.n_vars, seed=config.seed)

    sc.pp.filter_genes(adata, min_cells=config.min_cells)
    if adata.n_vars < 2:
        raise InputDataError(f"Only {adata.n_vars} genes pass the min_cells={config.min_cells} filter.")
    if adata.n_obs < 3:
        raise InputDataError(f"At least 3 cells are required for preprocessing, got {adata.n_obs}.")

    adata.layers[COUNTS_LAYER] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=config.target_sum)
    sc.pp.log1p(adata)

    hvg = _stabilized_hvg_matrix(adata, config)

    n_comps = min(config.n_pcs, hvg.n_vars - 1, hvg.n_obs - 1)
    log.info("running_pca", n_comps=n_comps)
    sc.tl.pca(hvg, n_comps=n_comps, random_state=config.seed)
    adata.obsm["X_pca"] = hvg.obsm["X_pca"]
    adata.uns["pca"] = hvg.uns["pca"]

    n_neighbors = min(config.n_neighbors, adata.n_obs - 1)
    log.info("computing_neighbors", n_neighbors=n_neighbors)
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, use_rep="X_pca", random_state=config.seed)

    log.info("running_umap", min_dist=config.umap_min_dist)
    sc.tl.umap(adata, min_dist=config.umap_min_dist, random_state=config.seed)

    log.info("running_leiden", resolution=config.resolution)
    sc.tl.leiden(
        adata,
        resolution=config.resolution,
        random_state=config.seed,
        key_added=config.cluster_key,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )

    adata.uns["preprocess_params"] = config.model_dump_json()
    log.info(
        "preprocessing_complete",
        n_cells=adata.n_obs,
        n_genes=adata.n_vars,
        n_clusters=adata.obs[config.cluster_key].nunique(),
    )
    return adata


def preprocessing_summary(adata: ad.AnnData, cluster_key: str = "leiden") -> Dict[str, Any]:
    """Summary metrics of a preprocessed object."""
    summary = {
        'n_cells': int(adata.n_obs),
        'n_genes': int(adata.n_vars),
        'n_highly_variable_genes': int(adata.var["highly_variable"].sum()) if "highly_variable" in adata.var else 0,
        'n_clusters': int(adata.obs[cluster_key].nunique()) if cluster_key in adata.obs else 0,
        'cluster_sizes': adata.obs[cluster_key].value_counts().sort_index().to_dict() if cluster_key in adata.obs else {},
    }
    if "pca" in adata.uns and "variance_ratio" in adata.uns["pca"]:
        ratios = np.asarray(adata.uns["pca"]["variance_ratio"])
        summary['pca_variance_ratio'] = {f'PC_{i+1}': float(v) for i, v in enumerate(ratios[:10])}
    return summary

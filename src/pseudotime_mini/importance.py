"""
Gene importance along a lineage.

A random forest regresses the pseudotime of one lineage on the expression
of the most variable genes; genes are ranked by their contribution to the
fit.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse, stats
from sklearn.ensemble import RandomForestRegressor
from sklearn.inspection import permutation_importance
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score
from sklearn.model_selection import train_test_split

from .errors import InputDataError
from .logger import get_logger
from .trajectory import TrajectoryResult
from .validation import ImportanceConfig

log = get_logger(__name__)


@dataclass
class ImportanceResult:
    """Container for a pseudotime regression and its gene ranking."""
    lineage: str
    metrics: Dict[str, float]
    ranking: pd.DataFrame
    n_train: int
    n_validation: int
    n_dropped: int
    importance_method: str
    model_parameters: Dict[str, Any] = field(default_factory=dict)

    def top_genes(self, n: int = 20) -> List[str]:
        return self.ranking['gene'].head(n).tolist()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lineage': self.lineage,
            'metrics': self.metrics,
            'n_train': self.n_train,
            'n_validation': self.n_validation,
            'n_dropped': self.n_dropped,
            'importance_method': self.importance_method,
            'top_genes': self.top_genes(),
            'model_parameters': self.model_parameters,
        }


def _expression(adata: ad.AnnData, layer: Optional[str] = None):
    return adata.layers[layer] if layer is not None else adata.X


def select_top_variance_genes(adata: ad.AnnData, n_genes: int, layer: Optional[str] = None) -> List[str]:
    """Genes with the highest expression variance across cells, descending (ties by name)."""
    X = _expression(adata, layer)
    if sparse.issparse(X):
        mean = np.asarray(X.mean(axis=0)).ravel()
        mean_sq = np.asarray(X.multiply(X).mean(axis=0)).ravel()
        variance = mean_sq - mean ** 2
    else:
        variance = np.asarray(X, dtype=float).var(axis=0)

    order = pd.DataFrame({'gene': adata.var_names.astype(str), 'variance': variance})
    order = order.sort_values(['variance', 'gene'], ascending=[False, True], kind='mergesort')
    return order['gene'].head(n_genes).tolist()


def split_cells(cell_ids: Sequence[str], validation_fraction: float = 0.2,
                seed: int = 0) -> Tuple[List[str], List[str]]:
    """
    Split cells into disjoint training and validation sets.

    The two sets together contain every input cell exactly once.
    """
    cell_ids = list(cell_ids)
    if not 0 < validation_fraction < 1:
        raise ValueError(f"validation_fraction must lie in (0, 1), got {validation_fraction}")
    if len(cell_ids) < 2:
        raise InputDataError(f"At least 2 cells are needed for a train/validation split, got {len(cell_ids)}.")
    if len(set(cell_ids)) != len(cell_ids):
        raise InputDataError("Cell identifiers passed to the split are not unique.")

    train, validation = train_test_split(cell_ids, test_size=validation_fraction, random_state=seed, shuffle=True)
    return list(train), list(validation)


def _regression_metrics(y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, float]:
    metrics = {
        'rmse': float(np.sqrt(mean_squared_error(y_true, y_pred))),
        'mae': float(mean_absolute_error(y_true, y_pred)),
        'r2': float(r2_score(y_true, y_pred)) if len(y_true) > 1 else float('nan'),
    }
    if len(y_true) > 2 and np.ptp(y_true) > 0 and np.ptp(y_pred) > 0:
        r, p = stats.pearsonr(y_true, y_pred)
        metrics['pearson_r'] = float(r)
        metrics['pearson_p'] = float(p)
    else:
        metrics['pearson_r'] = float('nan')
        metrics['pearson_p'] = float('nan')
    return metrics


def _normalize(importances: np.ndarray) -> np.ndarray:
    importances = np.clip(np.asarray(importances, dtype=float), 0.0, None)
    total = importances.sum()
    return importances / total if total > 0 else importances


def rank_gene_importance(adata: ad.AnnData, trajectory: TrajectoryResult,
                         config: ImportanceConfig) -> ImportanceResult:
    """Fit pseudotime ~ expression with a random forest and rank genes."""
    lineage = config.lineage or trajectory.lineage_names[0]
    pseudotime = trajectory.pseudotime_for(lineage).reindex(adata.obs_names)

    defined = pseudotime.notna().to_numpy()
    n_dropped = int((~defined).sum())
    if n_dropped:
        log.warning("cells_without_pseudotime_dropped", lineage=lineage, n_dropped=n_dropped)
    subset = adata[defined]

    genes = select_top_variance_genes(subset, config.n_genes, layer=config.layer)
    log.info("top_variance_genes_selected", n_genes=len(genes), lineage=lineage)

    train_ids, validation_ids = split_cells(subset.obs_names, config.validation_fraction, config.seed)

    X = _expression(subset[:, genes], config.layer)
    X = X.toarray() if sparse.issparse(X) else np.asarray(X, dtype=float)
    frame = pd.DataFrame(X, index=subset.obs_names, columns=genes)
    y = pseudotime[defined]

    X_train, y_train = frame.loc[train_ids].to_numpy(), y.loc[train_ids].to_numpy()
    X_val, y_val = frame.loc[validation_ids].to_numpy(), y.loc[validation_ids].to_numpy()

    model = RandomForestRegressor(
        n_estimators=config.n_estimators,
        max_features=config.max_features,
        random_state=config.seed,
        n_jobs=config.n_jobs,
    )
    log.info("fitting_random_forest", n_train=len(train_ids), n_validation=len(validation_ids),
             n_estimators=config.n_estimators)
    model.fit(X_train, y_train)

    metrics = _regression_metrics(y_val, model.predict(X_val))
    log.info("random_forest_evaluated", lineage=lineage, **metrics)

    if config.importance_method == "permutation":
        scores = permutation_importance(
            model, X_val, y_val,
            n_repeats=config.n_permutation_repeats,
            random_state=config.seed,
            n_jobs=config.n_jobs,
        ).importances_mean
    else:
        scores = model.feature_importances_

    ranking = pd.DataFrame({'gene': genes, 'importance': _normalize(scores)})
    ranking = ranking.sort_values(['importance', 'gene'], ascending=[False, True], kind='mergesort').reset_index(drop=True)
    ranking['rank'] = np.arange(1, len(ranking) + 1)

    params = model.get_params()
    return ImportanceResult(
        lineage=lineage,
        metrics=metrics,
        ranking=ranking,
        n_train=len(train_ids),
        n_validation=len(validation_ids),
        n_dropped=n_dropped,
        importance_method=config.importance_method,
        model_parameters={k: v for k, v in params.items() if isinstance(v, (int, float, str, bool)) or v is None},
    )

"""
Sequential pseudotime analysis: load -> preprocess -> trajectory ->
importance -> figures -> saved results.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import anndata as ad

from . import cache as cache_module
from .cache import CacheManager, compute_hash
from .importance import ImportanceResult, rank_gene_importance
from .loader import load_dataset
from .logger import get_logger
from .preprocessing import preprocessing_summary, run_preprocessing
from .trajectory import TrajectoryResult, infer_trajectory
from .validation import PipelineConfig

log = get_logger(__name__)


@dataclass
class PipelineResult:
    """Artifacts of a complete pipeline run."""
    adata: ad.AnnData
    trajectory: TrajectoryResult
    importance: Optional[ImportanceResult]
    outputs: Dict[str, str] = field(default_factory=dict)
    figures: Dict[str, str] = field(default_factory=dict)


class PseudotimePipeline:
    """Runs the pseudotime workflow described by a PipelineConfig."""

    def __init__(self, config: PipelineConfig, use_cache: bool = True):
        self.config = config
        self.output_dir = Path(config.paths.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.cache = CacheManager(config.paths.cache_dir, enabled=config.cache.enabled and use_cache)

        self.adata: Optional[ad.AnnData] = None
        self.trajectory: Optional[TrajectoryResult] = None
        self.importance: Optional[ImportanceResult] = None
        self._preprocess_hash: Optional[str] = None

    def _input_files(self):
        return [p for p in (self.config.paths.counts, self.config.paths.annotation) if p is not None]

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def load_data(self) -> ad.AnnData:
        loader = self.config.loader
        self.adata = load_dataset(
            self.config.paths.counts,
            self.config.paths.annotation,
            label_key=loader.label_key,
            keep_labels=loader.keep_labels,
            cell_id_column=loader.cell_id_column,
        )
        return self.adata

    def run_preprocessing(self) -> ad.AnnData:
        params = {
            'loader': self.config.loader.model_dump(),
            'preprocess': self.config.preprocess.model_dump(),
        }
        self._preprocess_hash = compute_hash(self._input_files(), params)

        cached = cache_module.stage_output(self.cache, "preprocess", self._preprocess_hash)
        if cached is not None:
            self.adata = ad.read_h5ad(cached)
            return self.adata

        if self.adata is None:
            self.load_data()
        self.adata = run_preprocessing(self.adata, self.config.preprocess)

        if self.cache.enabled:
            self.adata.write_h5ad(self.cache.stage_path("preprocess", self._preprocess_hash))
            self.cache.mark_stage_complete("preprocess", self._preprocess_hash)
        return self.adata

    def run_trajectory(self) -> TrajectoryResult:
        if self.adata is None or self._preprocess_hash is None:
            self.run_preprocessing()

        trajectory_hash = compute_hash([], {
            'preprocess_hash': self._preprocess_hash,
            'trajectory': self.config.trajectory.model_dump(),
        })
        cached = cache_module.stage_output(self.cache, "trajectory", trajectory_hash)
        if cached is not None:
            self.adata = ad.read_h5ad(cached)
            self.trajectory = TrajectoryResult.from_anndata(self.adata)
            return self.trajectory

        self.trajectory = infer_trajectory(self.adata, self.config.trajectory)
        self.trajectory.to_anndata(self.adata)

        if self.cache.enabled:
            self.adata.write_h5ad(self.cache.stage_path("trajectory", trajectory_hash))
            self.cache.mark_stage_complete("trajectory", trajectory_hash)
        return self.trajectory

    def run_importance(self) -> ImportanceResult:
        if self.trajectory is None:
            self.run_trajectory()
        self.importance = rank_gene_importance(self.adata, self.trajectory, self.config.importance)
        return self.importance

    def render_figures(self) -> Dict[str, str]:
        from .visualization import render_report_figures

        return render_report_figures(
            self.adata, self.trajectory, self.importance, self.config.plotting, self.output_dir / "figures",
            n_top_genes=self.config.importance.n_top,
        )

    def save_results(self) -> Dict[str, str]:
        """Write the processed object, pseudotime table, lineages and importance ranking."""
        outputs = {}

        path = self.output_dir / "processed.h5ad"
        self.adata.write_h5ad(path)
        outputs['processed'] = str(path)

        path = self.output_dir / "pseudotime.csv"
        table = self.trajectory.pseudotime.copy()
        table.insert(0, self.trajectory.cluster_key, self.adata.obs[self.trajectory.cluster_key].astype(str).to_numpy())
        table.to_csv(path, index_label="cell_id")
        outputs['pseudotime'] = str(path)

        path = self.output_dir / "lineages.json"
        summary = self.trajectory.summary()
        summary['preprocessing'] = preprocessing_summary(self.adata, self.config.preprocess.cluster_key)
        with open(path, 'w') as f:
            json.dump(summary, f, indent=2, default=str)
        outputs['lineages'] = str(path)

        if self.importance is not None:
            path = self.output_dir / "gene_importance.csv"
            self.importance.ranking.to_csv(path, index=False)
            outputs['gene_importance'] = str(path)

            path = self.output_dir / "importance_metrics.json"
            with open(path, 'w') as f:
                json.dump(self.importance.to_dict(), f, indent=2, default=str)
            outputs['importance_metrics'] = str(path)

        log.info("results_saved", output_dir=str(self.output_dir), files=sorted(outputs))
        return outputs

    # ------------------------------------------------------------------
    def run(self) -> PipelineResult:
        """Run every stage in order."""
        log.info("pipeline_started", dataset=self.config.dataset_name, cache_enabled=self.cache.enabled)
        self.run_preprocessing()
        self.run_trajectory()
        self.run_importance()
        figures = self.render_figures() if self.config.plotting.enabled else {}
        outputs = self.save_results()
        log.info("pipeline_finished", dataset=self.config.dataset_name)
        return PipelineResult(
            adata=self.adata,
            trajectory=self.trajectory,
            importance=self.importance,
            outputs=outputs,
            figures=figures,
        )

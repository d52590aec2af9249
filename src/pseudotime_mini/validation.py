"""
Configuration models for pseudotime-mini.
Validates config/params.yaml with pydantic and checks that input files exist.
"""

from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError

# --- Stage Configuration Models ---


class PathsConfig(BaseModel):
    counts: Path
    annotation: Optional[Path] = None
    output_dir: Path = Path("results/pseudotime")
    cache_dir: Path = Path(".cache/pseudotime")


class LoaderConfig(BaseModel):
    label_key: str = "cell_type"
    keep_labels: Optional[List[str]] = None
    cell_id_column: Optional[str] = None

    @field_validator('keep_labels', mode='before')
    def coerce_keep_labels(cls, v):
        if v is None:
            return None
        if isinstance(v, (str, int, float)):
            v = [v]
        return [str(label) for label in v]

    @field_validator('keep_labels')
    def keep_labels_not_empty(cls, v):
        if v is not None and len(v) == 0:
            raise ValueError("`keep_labels` must list at least one label (omit it to keep all cells).")
        return v


class PreprocessConfig(BaseModel):
    min_cells: int = Field(default=3, ge=0)
    target_sum: float = Field(default=1e4, gt=0)
    hvg_flavor: Literal["seurat", "pearson_residuals"] = "seurat"
    normalization: Literal["log_normalize", "pearson_residuals"] = "log_normalize"
    n_top_genes: int = Field(default=2000, gt=0)
    scale_max: Optional[float] = 10.0
    n_pcs: int = Field(default=30, gt=1)
    n_neighbors: int = Field(default=15, gt=1)
    umap_min_dist: float = Field(default=0.5, ge=0)
    resolution: float = Field(default=0.5, gt=0)
    cluster_key: str = "leiden"
    seed: int = 0


class TrajectoryConfig(BaseModel):
    embedding_key: str = "X_umap"
    cluster_key: str = "leiden"
    start_cluster: Optional[str] = None
    end_clusters: List[str] = Field(default_factory=list)
    min_cluster_size: int = Field(default=2, ge=1)
    n_iterations: int = Field(default=10, ge=0)
    smoother_frac: float = Field(default=0.3, gt=0, le=1)
    tolerance: float = Field(default=1e-3, ge=0)
    n_curve_points: int = Field(default=100, ge=2)

    @field_validator('start_cluster', mode='before')
    def coerce_start_cluster(cls, v):
        return None if v is None else str(v)

    @field_validator('end_clusters', mode='before')
    def coerce_end_clusters(cls, v):
        return [str(c) for c in (v or [])]

    @model_validator(mode='after')
    def start_not_an_end(self):
        if self.start_cluster is not None and self.start_cluster in self.end_clusters:
            raise ValueError(f"Start cluster '{self.start_cluster}' cannot also be an end cluster.")
        return self


class ImportanceConfig(BaseModel):
    lineage: Optional[str] = None
    n_genes: int = Field(default=1000, gt=0)
    layer: Optional[str] = None
    validation_fraction: float = Field(default=0.2, gt=0, lt=1)
    n_estimators: int = Field(default=500, gt=0)
    max_features: Literal["sqrt", "log2"] | float = "sqrt"
    importance_method: Literal["impurity", "permutation"] = "impurity"
    n_permutation_repeats: int = Field(default=5, gt=0)
    n_jobs: int = -1
    seed: int = 0
    n_top: int = Field(default=25, gt=0)


class PlottingConfig(BaseModel):
    enabled: bool = True
    basis: str = "umap"
    dpi: int = Field(default=150, gt=0)
    n_heatmap_genes: int = Field(default=20, gt=0)
    color_by: List[str] = Field(default_factory=lambda: ["cell_type", "leiden"])


class CacheConfig(BaseModel):
    enabled: bool = True


class PipelineConfig(BaseModel):
    model_config = ConfigDict(extra='forbid')

    dataset_name: str = "dataset"
    paths: PathsConfig
    loader: LoaderConfig = Field(default_factory=LoaderConfig)
    preprocess: PreprocessConfig = Field(default_factory=PreprocessConfig)
    trajectory: TrajectoryConfig = Field(default_factory=TrajectoryConfig)
    importance: ImportanceConfig = Field(default_factory=ImportanceConfig)
    plotting: PlottingConfig = Field(default_factory=PlottingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    @model_validator(mode='after')
    def cluster_keys_agree(self):
        if self.trajectory.cluster_key != self.preprocess.cluster_key and self.trajectory.cluster_key != self.loader.label_key:
            raise ValueError(
                f"trajectory.cluster_key '{self.trajectory.cluster_key}' must be the clustering key "
                f"'{self.preprocess.cluster_key}' or the label key '{self.loader.label_key}'."
            )
        return self

# --- Main Validation Functions ---


def load_and_validate_config(config_path: Path) -> PipelineConfig:
    """Loads and validates the pipeline configuration file.

    Relative paths in the ``paths`` section are resolved against the
    directory containing the config file.
    """
    config_path = Path(config_path)
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path) as f:
            config_dict = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {config_path}: {e}") from e

    try:
        config = PipelineConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}:\n{e}") from e

    base = config_path.resolve().parent
    for field in ('counts', 'annotation', 'output_dir', 'cache_dir'):
        value = getattr(config.paths, field)
        if value is not None and not value.is_absolute():
            setattr(config.paths, field, base / value)
    return config


def check_paths(config: PipelineConfig) -> List[Path]:
    """Returns the configured input files that do not exist."""
    inputs = [config.paths.counts, config.paths.annotation]
    return [p for p in inputs if p is not None and not p.exists()]

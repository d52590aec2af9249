"""
Pseudotime trajectory inference and gene importance ranking for
single-cell RNA-seq data.
"""

from .errors import ConfigError, DataAlignmentError, InputDataError, PseudotimeError, TrajectoryError
from .importance import ImportanceResult, rank_gene_importance, select_top_variance_genes, split_cells
from .loader import filter_by_labels, load_dataset, read_annotation, read_count_matrix
from .pipeline import PipelineResult, PseudotimePipeline
from .preprocessing import preprocessing_summary, run_preprocessing
from .trajectory import TrajectoryResult, infer_trajectory
from .validation import (
    ImportanceConfig,
    PipelineConfig,
    PreprocessConfig,
    TrajectoryConfig,
    load_and_validate_config,
)

__all__ = [
    'ConfigError',
    'DataAlignmentError',
    'InputDataError',
    'PseudotimeError',
    'TrajectoryError',
    'ImportanceResult',
    'rank_gene_importance',
    'select_top_variance_genes',
    'split_cells',
    'filter_by_labels',
    'load_dataset',
    'read_annotation',
    'read_count_matrix',
    'PipelineResult',
    'PseudotimePipeline',
    'preprocessing_summary',
    'run_preprocessing',
    'TrajectoryResult',
    'infer_trajectory',
    'ImportanceConfig',
    'PipelineConfig',
    'PreprocessConfig',
    'TrajectoryConfig',
    'load_and_validate_config',
]

__version__ = "0.1.0"

"""
Command-line interface for pseudotime-mini.
"""

import json
import sys
from pathlib import Path

import click

from .cache import CacheManager
from .errors import PseudotimeError
from .logger import get_logger
from .validation import check_paths, load_and_validate_config

log = get_logger(__name__)


def _load_config(config_path: Path):
    try:
        return load_and_validate_config(config_path)
    except PseudotimeError as e:
        log.error("config_invalid", config=str(config_path), error=str(e))
        sys.exit(1)


@click.group()
def cli():
    """Pseudotime trajectory inference for single-cell RNA-seq."""


@cli.command()
@click.option("--config", "config_path", required=True, type=click.Path(exists=True, path_type=Path), help="Path to the params.yaml config file.")
@click.option("--use-cache/--no-cache", default=True, help="Enable or disable caching of intermediate results for this run.")
def run(config_path: Path, use_cache: bool):
    """Run the complete pipeline."""
    from .pipeline import PseudotimePipeline

    config = _load_config(config_path)
    missing = check_paths(config)
    if missing:
        log.error("input_files_missing", files=[str(p) for p in missing])
        sys.exit(1)

    try:
        result = PseudotimePipeline(config, use_cache=use_cache).run()
    except PseudotimeError as e:
        log.error("pipeline_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    click.echo(json.dumps({'outputs': result.outputs, 'figures': result.figures}, indent=2))


@cli.command("validate-config")
@click.option("--config", "config_path", required=True, type=click.Path(exists=True, path_type=Path), help="Path to the params.yaml config file.")
def validate_config(config_path: Path):
    """Validate a config file and check that its input files exist."""
    config = _load_config(config_path)
    missing = check_paths(config)
    if missing:
        log.error("input_files_missing", files=[str(p) for p in missing])
        sys.exit(1)
    log.info("config_valid", config=str(config_path), dataset=config.dataset_name)


@cli.command("cache-stats")
@click.option("--config", "config_path", required=True, type=click.Path(exists=True, path_type=Path), help="Path to the params.yaml config file.")
def cache_stats(config_path: Path):
    """Show statistics of the intermediate-result cache."""
    config = _load_config(config_path)
    stats = CacheManager(config.paths.cache_dir, enabled=config.cache.enabled).get_cache_stats()
    click.echo(json.dumps(stats, indent=2))


@cli.command("clear-cache")
@click.option("--config", "config_path", required=True, type=click.Path(exists=True, path_type=Path), help="Path to the params.yaml config file.")
def clear_cache(config_path: Path):
    """Remove every cached intermediate result."""
    config = _load_config(config_path)
    CacheManager(config.paths.cache_dir).clear_all()
    log.info("cache_cleared", cache_dir=str(config.paths.cache_dir))


if __name__ == "__main__":
    cli()

"""
Content-addressed cache of intermediate pipeline artifacts.

A stage's cache key is the SHA-256 of its input files' contents plus the
JSON representation of its parameters; its output is stored under that key
so a rerun with unchanged inputs can skip recomputation.
"""

import hashlib
import json
import shutil
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .logger import get_logger

log = get_logger(__name__)

STATUS_FILE = ".stage_status.json"


def compute_hash(input_files: Iterable[Path], params: Dict[str, Any]) -> str:
    """
    Computes a deterministic SHA256 hash for a stage based on its inputs and parameters.
    """
    hasher = hashlib.sha256()

    for file_path in sorted(Path(p) for p in input_files):
        hasher.update(file_path.name.encode())
        if file_path.exists():
            with open(file_path, "rb") as f:
                while chunk := f.read(8192):
                    hasher.update(chunk)

    params_str = json.dumps(params, sort_keys=True, default=str)
    hasher.update(params_str.encode())

    return hasher.hexdigest()


class CacheManager:
    """
    Tracks completed pipeline stages and stores their outputs by hash.
    """

    def __init__(self, cache_dir: Path, enabled: bool = True):
        self.cache_dir = Path(cache_dir)
        self.enabled = enabled
        self._stage_status_file = self.cache_dir / STATUS_FILE
        if self.enabled:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._stage_status = self._load_stage_status()

    def _load_stage_status(self) -> dict:
        """Load stage completion status from file."""
        if self._stage_status_file.exists():
            try:
                with open(self._stage_status_file, 'r') as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError):
                log.warning("stage_status_unreadable", path=str(self._stage_status_file))
                return {}
        return {}

    def _save_stage_status(self):
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        with open(self._stage_status_file, 'w') as f:
            json.dump(self._stage_status, f, indent=2)

    def stage_path(self, stage_name: str, input_hash: str, suffix: str = ".h5ad") -> Path:
        """Location of a stage's cached output for a given hash."""
        return self.cache_dir / f"{stage_name}-{input_hash[:16]}{suffix}"

    def should_skip_stage(self, stage_name: str, input_hash: str, suffix: str = ".h5ad") -> bool:
        """True when the stage already ran with this hash and its output is still on disk."""
        if not self.enabled:
            return False

        cached_hash = self._stage_status.get(stage_name, {}).get("hash")
        return cached_hash == input_hash and self.stage_path(stage_name, input_hash, suffix).exists()

    def mark_stage_complete(self, stage_name: str, input_hash: str, suffix: str = ".h5ad"):
        """Mark a stage as complete in the cache, removing the output it supersedes."""
        if not self.enabled:
            return
        previous_hash = self._stage_status.get(stage_name, {}).get("hash")
        if previous_hash and previous_hash != input_hash:
            superseded = self.stage_path(stage_name, previous_hash, suffix)
            if superseded.exists():
                superseded.unlink()
                log.info("stage_cache_superseded", stage=stage_name, hash=previous_hash[:16])
        self._stage_status[stage_name] = {
            "hash": input_hash,
            "completed_at": time.strftime("%Y-%m-%dT%H:%M:%S"),
        }
        self._save_stage_status()
        log.info("stage_cached", stage=stage_name, hash=input_hash[:16])

    def invalidate_stage(self, stage_name: str):
        """Invalidate a cached stage."""
        if stage_name in self._stage_status:
            del self._stage_status[stage_name]
            self._save_stage_status()

    def get_cache_stats(self) -> dict:
        """Get statistics about the cache."""
        if not self.cache_dir.exists():
            return {"total_files": 0, "total_size_mb": 0, "cache_dir": str(self.cache_dir), "enabled": self.enabled,
                    "stages_completed": 0}

        # Exclude hidden files like .stage_status.json
        cache_files = [f for f in self.cache_dir.glob("*") if f.is_file() and not f.name.startswith('.')]
        total_size = sum(f.stat().st_size for f in cache_files)

        return {
            "total_files": len(cache_files),
            "total_size_mb": round(total_size / (1024 * 1024), 2),
            "cache_dir": str(self.cache_dir),
            "enabled": self.enabled,
            "stages_completed": len(self._stage_status),
        }

    def clear_all(self):
        """Clear all cache entries."""
        if self.cache_dir.exists():
            shutil.rmtree(self.cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._stage_status = {}
        self._save_stage_status()


def stage_output(cache: Optional[CacheManager], stage_name: str, input_hash: str) -> Optional[Path]:
    """Path of a reusable cached output, or None when the stage must run."""
    if cache is not None and cache.should_skip_stage(stage_name, input_hash):
        path = cache.stage_path(stage_name, input_hash)
        log.info("cache_hit", stage=stage_name, hash=input_hash[:16])
        return path
    return None

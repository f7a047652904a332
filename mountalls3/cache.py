"""Local on-disk cache directories used by s3fs, one per bucket."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Union

from platformdirs import user_cache_dir

logger = logging.getLogger(__name__)

_DEFAULT_CACHE_DIR = Path(user_cache_dir("mountalls3")) / "s3fs"
DEFAULT_DISKFREE_MB = 1024


class BucketCache:
    """Per-bucket s3fs cache directories under ``<cache_dir>/<bucket>/``.

    s3fs keeps file bodies here (``use_cache``) and refuses to grow the
    cache once free space on the volume drops under *diskfree_mb*
    (``ensure_diskfree``).
    """

    def __init__(
        self,
        cache_dir: Union[str, Path, None] = None,
        diskfree_mb: int = DEFAULT_DISKFREE_MB,
    ):
        self._root = Path(cache_dir) if cache_dir else _DEFAULT_CACHE_DIR
        self._diskfree_mb = diskfree_mb

    @property
    def root(self) -> Path:
        return self._root

    @property
    def diskfree_mb(self) -> int:
        return self._diskfree_mb

    def path_for(self, bucket: str) -> Optional[Path]:
        """Cache directory for *bucket*, or None if the name escapes the root."""
        full = (self._root / bucket).resolve()
        # Prevent path traversal
        if full.parent != self._root.resolve():
            return None
        return full

    def ensure(self, bucket: str) -> Path:
        path = self.path_for(bucket)
        if path is None:
            raise ValueError(f"unsafe bucket name for cache directory: {bucket!r}")
        path.mkdir(parents=True, exist_ok=True)
        return path

    def usage(self) -> Dict[str, int]:
        """Bytes used per cached bucket."""
        if not self._root.is_dir():
            return {}
        return {
            child.name: self._dir_size(child)
            for child in sorted(self._root.iterdir())
            if child.is_dir()
        }

    @staticmethod
    def _dir_size(path: Path) -> int:
        """Total size of all files under *path* in bytes."""
        return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())

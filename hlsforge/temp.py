"""Temporary working directory management for hlsforge.

Each HLS export encodes into its own working directory below the
configured temp root; the files are persisted to storage afterwards and
the directory is removed by cleanup() on every exit path.
"""

import logging
import shutil
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict

from .exceptions import HLSError

logger = logging.getLogger(__name__)


class TemporaryFileError(HLSError):
    """Raised when a working directory cannot be created."""
    pass


@dataclass
class TempDirInfo:
    """Information about a tracked working directory.

    Attributes:
        path: Directory path
        created: When the directory was created
        category: What the directory is used for (e.g. 'hls')
    """
    path: Path
    created: datetime
    category: str


class TempManager:
    """Creates and removes per-export working directories.

    Safe to share between threads: every export gets a unique directory
    and tracking is guarded by a lock.
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self._tracked: Dict[Path, TempDirInfo] = {}
        self._lock = threading.Lock()

    def create_dir(self, category: str) -> Path:
        """Create and track a unique working directory.

        Raises:
            TemporaryFileError: If the directory cannot be created
        """
        path = self.base_dir / category / uuid.uuid4().hex
        try:
            path.mkdir(parents=True)
        except OSError as e:
            raise TemporaryFileError(f"Failed to create working directory {path}: {e}") from e

        with self._lock:
            self._tracked[path] = TempDirInfo(path=path, created=datetime.now(), category=category)
        logger.debug("Created working directory %s", path)
        return path

    def release(self, path: Path) -> None:
        """Remove one tracked directory."""
        with self._lock:
            self._tracked.pop(path, None)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
            logger.debug("Removed working directory %s", path)

    def cleanup(self) -> None:
        """Remove every tracked directory."""
        with self._lock:
            paths = list(self._tracked)
        for path in paths:
            self.release(path)

    @property
    def tracked(self) -> Dict[Path, TempDirInfo]:
        with self._lock:
            return dict(self._tracked)

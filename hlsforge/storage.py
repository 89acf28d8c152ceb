"""Storage capability used by the conversion pipeline

Files are addressed by a logical disk name and a relative path. The
pipeline only needs put/put_file/get/exists/delete plus a local filesystem path for
ffmpeg to read the source; any object store adapter providing the same
methods can be passed instead of LocalDiskStorage.
"""

import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import Dict, List, Protocol, Union

from .exceptions import StorageError

logger = logging.getLogger(__name__)

Content = Union[bytes, str]


class Storage(Protocol):
    def put(self, disk: str, path: str, contents: Content) -> None: ...

    def put_file(self, disk: str, path: str, source: Path) -> None: ...

    def get(self, disk: str, path: str) -> bytes: ...

    def exists(self, disk: str, path: str) -> bool: ...

    def delete(self, disk: str, path: str) -> None: ...

    def local_path(self, disk: str, path: str) -> Path: ...


class LocalDiskStorage:
    """Map disk names to directories on the local filesystem.

    Args:
        disks: Disk name -> root directory
    """

    def __init__(self, disks: Dict[str, Union[str, Path]]):
        self.disks = {name: Path(root) for name, root in disks.items()}

    def _root(self, disk: str) -> Path:
        try:
            return self.disks[disk]
        except KeyError:
            raise StorageError(f"Disk [{disk}] is not configured") from None

    def local_path(self, disk: str, path: str) -> Path:
        """Resolve (disk, path), refusing paths that escape the disk root."""
        root = self._root(disk)
        relative = PurePosixPath(str(path).replace("\\", "/"))
        if relative.is_absolute() or ".." in relative.parts:
            raise StorageError(f"Path must be relative to disk [{disk}]: {path}")
        return root.joinpath(*relative.parts)

    def put(self, disk: str, path: str, contents: Content) -> None:
        target = self.local_path(disk, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(contents, str):
            contents = contents.encode("utf-8")
        target.write_bytes(contents)
        logger.debug("Stored %d bytes at %s:%s", len(contents), disk, path)

    def put_file(self, disk: str, path: str, source: Path) -> None:
        """Copy a local file onto the disk without reading it into memory."""
        target = self.local_path(disk, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)

    def get(self, disk: str, path: str) -> bytes:
        target = self.local_path(disk, path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise StorageError(f"File not found on disk [{disk}]: {path}") from None

    def exists(self, disk: str, path: str) -> bool:
        return self.local_path(disk, path).exists()

    def delete(self, disk: str, path: str) -> None:
        target = self.local_path(disk, path)
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()

    def files(self, disk: str, directory: str) -> List[str]:
        """List relative file paths directly inside a directory."""
        base = self.local_path(disk, directory)
        if not base.is_dir():
            return []
        return sorted(f"{directory}/{p.name}" for p in base.iterdir() if p.is_file())

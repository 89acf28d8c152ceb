"""Executable lookup for ffmpeg and nvidia-smi

A BinaryLocator caches its own results, so each conversion (or each
detector) owns its cache and concurrent conversions never share one.
"""

import logging
import shlex
import subprocess
from typing import Callable, Dict, Iterable, List, Optional

from .utils import command_output, is_windows

logger = logging.getLogger(__name__)

UNIX_BIN_DIRS = ("/usr/bin", "/usr/local/bin")

Runner = Callable[[List[str]], str]


def _default_runner(cmd: List[str]) -> str:
    return command_output(cmd, timeout=5.0)


class BinaryLocator:
    """Find executables with `command -v` (or `where` on Windows).

    Args:
        runner: Callable taking a command list and returning combined output
        windows: Force the Windows probe; detected from the platform if None
    """

    def __init__(self, runner: Optional[Runner] = None, windows: Optional[bool] = None):
        self._runner = runner or _default_runner
        self._windows = is_windows() if windows is None else windows
        self._cache: Dict[str, Optional[str]] = {}

    def candidates(self, name: str, extra_paths: Iterable[str] = ()) -> List[str]:
        """Return lookup candidates in order: bare name, extras, Unix dirs."""
        paths = [name]
        paths.extend(extra_paths)
        paths.extend(f"{directory}/{name}" for directory in UNIX_BIN_DIRS)
        return paths

    def _probe_command(self, candidate: str) -> List[str]:
        if self._windows:
            return ["where", candidate]
        return ["sh", "-c", f"command -v {shlex.quote(candidate)}"]

    def _resolves(self, candidate: str) -> bool:
        try:
            output = self._runner(self._probe_command(candidate))
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Lookup of %s failed: %s", candidate, e)
            return False
        output = (output or "").strip()
        return bool(output) and "not found" not in output

    def find(self, name: str, extra_paths: Iterable[str] = ()) -> Optional[str]:
        """Return the first resolvable candidate for name, or None.

        None means the feature depending on the binary is unavailable;
        it is not an error.
        """
        if name in self._cache:
            return self._cache[name]

        found = None
        for candidate in self.candidates(name, extra_paths):
            if self._resolves(candidate):
                found = candidate.strip()
                break

        if found:
            logger.debug("Found %s at: %s", name, found)
        else:
            logger.debug("Binary not found: %s", name)
        self._cache[name] = found
        return found

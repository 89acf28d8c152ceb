"""Utility functions for the hlsforge conversion pipeline"""

import logging
import platform
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)


def is_windows() -> bool:
    return platform.system() == "Windows"


def run_cmd(cmd: List[str], capture_output: bool = True, check: bool = True,
            timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    """Run a command and handle errors"""
    logger.debug("Running command: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            capture_output=capture_output,
            check=check,
            text=True,
            timeout=timeout
        )
        if result.stdout:
            logger.debug("Command stdout: %s", result.stdout)
        if result.stderr:
            logger.debug("Command stderr: %s", result.stderr)
        return result
    except subprocess.CalledProcessError as e:
        logger.debug("Command failed: %s", " ".join(cmd))
        logger.debug("Error output: %s", e.stderr)
        raise


def command_output(cmd: List[str], timeout: Optional[float] = None) -> str:
    """Run a command and return stdout and stderr combined, like `cmd 2>&1`.

    Never raises for a non-zero exit; a missing executable or a timeout
    still propagates so callers can decide how to degrade.
    """
    result = run_cmd(cmd, check=False, timeout=timeout)
    return (result.stdout or "") + (result.stderr or "")


def format_duration(seconds: float) -> str:
    """Format a duration as H:MM:SS"""
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"

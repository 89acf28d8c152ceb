"""Centralized logging configuration for hlsforge"""

import logging
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(log_level: str = "INFO", debug: bool = False, log_file: Optional[Path] = None) -> logging.Logger:
    """Central logging configuration for all modules.

    The debug flag only changes the level; modules always log their
    diagnostics at DEBUG and the handlers decide what is shown.
    """
    logger = logging.getLogger("hlsforge")
    logger.setLevel(logging.DEBUG if debug else log_level.upper())

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    # Rich console handler
    console_handler = RichHandler(show_path=False, rich_tracebacks=True)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    # Capture warnings
    logging.captureWarnings(True)
    return logger

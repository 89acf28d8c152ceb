"""Progress reporting for conversions.

Sinks receive (entity, percent) on every encoder tick. Percentages are
floats in [0, 100]; ProgressTracker clamps them and derives an estimate
of the remaining time from the elapsed time.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional, Protocol

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from .utils import format_duration

logger = logging.getLogger(__name__)


def estimate_time_remaining(elapsed: float, percent: float) -> float:
    """Return seconds left, or 0.0 while the percentage is still zero."""
    if percent <= 0:
        return 0.0
    return elapsed * (100 - percent) / percent


def format_eta(seconds: float) -> str:
    return format_duration(seconds)


class ProgressSink(Protocol):
    def report(self, entity: Any, percent: float) -> None: ...


class NullProgressSink:
    def report(self, entity: Any, percent: float) -> None:
        pass


class LoggingProgressSink:
    """Log progress at INFO, at most once per `step` percent."""

    def __init__(self, step: float = 10.0):
        self.step = step
        self._last: Dict[Any, float] = {}
        self._lock = threading.Lock()

    def report(self, entity: Any, percent: float) -> None:
        with self._lock:
            last = self._last.get(entity)
            if last is not None and percent < 100 and percent - last < self.step:
                return
            self._last[entity] = percent
        logger.info("Conversion progress for %s: %.2f%%", entity, percent)


class RichProgressSink:
    """Render one rich progress bar per entity.

    Use as a context manager so the live display is started and stopped.
    """

    def __init__(self, console: Optional[Console] = None):
        self.progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=console,
        )
        self._tasks: Dict[Any, TaskID] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "RichProgressSink":
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.progress.stop()

    def report(self, entity: Any, percent: float) -> None:
        with self._lock:
            task = self._tasks.get(entity)
            if task is None:
                task = self.progress.add_task(f"Converting {entity}", total=100)
                self._tasks[entity] = task
        self.progress.update(task, completed=percent)


class ProgressTracker:
    """Per-conversion adapter from encoder ticks to a ProgressSink."""

    def __init__(self, entity: Any, sink: ProgressSink, started_at: Optional[float] = None):
        self.entity = entity
        self.sink = sink
        self.started_at = time.monotonic() if started_at is None else started_at
        self.percent = 0.0

    def __call__(self, percent: float) -> None:
        self.update(percent)

    def update(self, percent: float) -> None:
        percent = min(100.0, max(0.0, float(percent)))
        self.percent = percent
        self.sink.report(self.entity, percent)

        remaining = estimate_time_remaining(time.monotonic() - self.started_at, percent)
        logger.debug("Progress: %.2f%% (ETA: %s)", percent, format_eta(remaining))

"""Memory-aware pool running independent conversions in parallel"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import psutil

from .analysis import MediaSource
from .pipeline import Converter

log = logging.getLogger(__name__)


@dataclass
class ConversionJob:
    input_path: str
    output_folder: str
    source: MediaSource


@dataclass
class ConversionOutcome:
    job: ConversionJob
    playlist_path: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def success(self) -> bool:
        return self.error is None


class ConversionPool:
    """Run one conversion per worker thread.

    New conversions are held back while system memory usage is at or
    above memory_threshold percent. The Converter holds no per-request
    state, so a single instance is shared by every worker.
    """

    def __init__(self, converter: Converter, max_workers: Optional[int] = None,
                 memory_threshold: float = 90.0, poll_interval: float = 1.0):
        self.converter = converter
        self.max_workers = max_workers or psutil.cpu_count() or 1
        self.memory_threshold = memory_threshold
        self.poll_interval = poll_interval
        self.cancel_event = threading.Event()

    def can_submit(self) -> bool:
        """True when memory usage is below the threshold."""
        return psutil.virtual_memory().percent < self.memory_threshold

    def _wait_for_memory(self, running: Dict[Future, ConversionJob]) -> None:
        while running and not self.can_submit() and not self.cancel_event.is_set():
            log.debug("Memory usage above %.0f%%, waiting before next conversion", self.memory_threshold)
            time.sleep(self.poll_interval)
            for future in [f for f in running if f.done()]:
                running.pop(future)

    def _convert(self, job: ConversionJob) -> ConversionOutcome:
        try:
            playlist = self.converter.convert(
                job.input_path, job.output_folder, job.source, cancel_event=self.cancel_event
            )
        except Exception as e:
            log.error("Conversion of %s failed: %s", job.input_path, e)
            return ConversionOutcome(job=job, error=e)
        return ConversionOutcome(job=job, playlist_path=playlist)

    def run(self, jobs: Iterable[ConversionJob]) -> List[ConversionOutcome]:
        """Convert every job; outcomes are returned in submission order.

        An interrupt (e.g. KeyboardInterrupt) drops queued jobs, signals
        running encodes to stop and is re-raised without waiting for them.
        """
        futures: List[Future] = []
        running: Dict[Future, ConversionJob] = {}
        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            for job in jobs:
                if self.cancel_event.is_set():
                    break
                self._wait_for_memory(running)
                future = executor.submit(self._convert, job)
                futures.append(future)
                running[future] = job
            outcomes = [future.result() for future in futures]
        except BaseException:
            # Queued futures first, so a worker freed by the event cannot pick one up
            for future in futures:
                future.cancel()
            self.cancel_event.set()
            executor.shutdown(wait=False)
            log.warning("Conversion pool interrupted, %d queued job(s) dropped",
                        sum(1 for future in futures if future.cancelled()))
            raise
        executor.shutdown(wait=True)

        failed = sum(1 for outcome in outcomes if not outcome.success)
        log.info("Converted %d of %d videos", len(outcomes) - failed, len(outcomes))
        return outcomes

    def cancel(self) -> None:
        """Stop submitting jobs and cancel running encodes."""
        self.cancel_event.set()

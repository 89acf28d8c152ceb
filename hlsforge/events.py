"""Conversion lifecycle events.

The orchestrator reports exactly one terminal event per request:
ConversionCompleted on success, ConversionFailed before the error is
raised. EventEmitter fans events out to registered handlers; a failing
handler never affects the conversion.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Union

from .analysis import VideoInfo
from .utils import format_duration

logger = logging.getLogger(__name__)


class EventType(Enum):
    CONVERSION_COMPLETED = auto()
    CONVERSION_FAILED = auto()


@dataclass
class ConversionCompleted:
    """Successful conversion.

    Attributes:
        entity: Identifier of the converted entity
        backend: Encoder backend value used by the final attempt
        gpu_type: Same as backend when a GPU was used, else None
        duration: Wall time in seconds across all attempts
        video_info: Analysis result
        was_retry: True when a retry produced the output
        input_path: Source path on the video disk
        output_folder: Output folder on the HLS disk
        playlist_path: Master playlist path on the HLS disk
    """
    entity: Any
    backend: str
    gpu_type: Optional[str]
    duration: float
    video_info: Optional[VideoInfo]
    was_retry: bool
    input_path: str
    output_folder: str
    playlist_path: str
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def formatted_conversion_time(self) -> str:
        return format_duration(self.duration)

    @property
    def was_gpu_used(self) -> bool:
        return self.gpu_type is not None


@dataclass
class ConversionFailed:
    """Terminal conversion failure; video_info is None when analysis failed."""
    entity: Any
    error_message: str
    backend: Optional[str]
    gpu_type: Optional[str]
    duration: float
    video_info: Optional[VideoInfo]
    was_retry: bool
    input_path: str
    output_folder: str
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def formatted_conversion_time(self) -> str:
        return format_duration(self.duration)

    @property
    def was_gpu_used(self) -> bool:
        return self.gpu_type is not None


ConversionEvent = Union[ConversionCompleted, ConversionFailed]
Handler = Callable[[ConversionEvent], None]


class EventSink(Protocol):
    def conversion_completed(self, event: ConversionCompleted) -> None: ...

    def conversion_failed(self, event: ConversionFailed) -> None: ...


class EventEmitter:
    """Dispatch conversion events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[EventType, List[Handler]] = {}
        self._error_handlers: Set[Callable[[Exception], None]] = set()

    def on(self, event_type: EventType, handler: Handler) -> None:
        """Register an event handler.

        Args:
            event_type: Type of event to handle
            handler: Callback receiving the event dataclass
        """
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event_type: EventType, handler: Handler) -> None:
        if event_type in self._handlers:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)
            if not self._handlers[event_type]:
                del self._handlers[event_type]

    def on_error(self, handler: Callable[[Exception], None]) -> None:
        self._error_handlers.add(handler)

    def subscribe(self, listener: EventSink) -> None:
        """Register both callbacks of an EventSink-shaped listener."""
        self.on(EventType.CONVERSION_COMPLETED, listener.conversion_completed)
        self.on(EventType.CONVERSION_FAILED, listener.conversion_failed)

    def conversion_completed(self, event: ConversionCompleted) -> None:
        self.emit(EventType.CONVERSION_COMPLETED, event)

    def conversion_failed(self, event: ConversionFailed) -> None:
        self.emit(EventType.CONVERSION_FAILED, event)

    def emit(self, event_type: EventType, event: ConversionEvent) -> None:
        for handler in list(self._handlers.get(event_type, ())):
            try:
                handler(event)
            except Exception as e:
                logger.error("Event handler for %s failed: %s", event_type.name, e)
                self._handle_error(e)

    def _handle_error(self, error: Exception) -> None:
        for handler in list(self._error_handlers):
            try:
                handler(error)
            except Exception as e:
                # Prevent error handler loops
                logger.debug("Error handler failed: %s", e)


class LoggingListener:
    """Log terminal conversion events."""

    def conversion_completed(self, event: ConversionCompleted) -> None:
        logger.info(
            "HLS conversion completed for %s in %s (backend: %s%s)",
            event.entity,
            event.formatted_conversion_time,
            event.backend,
            ", retry" if event.was_retry else "",
        )
        logger.debug("Master playlist: %s", event.playlist_path)

    def conversion_failed(self, event: ConversionFailed) -> None:
        logger.error(
            "HLS conversion failed for %s after %s: %s",
            event.entity,
            event.formatted_conversion_time,
            event.error_message,
        )

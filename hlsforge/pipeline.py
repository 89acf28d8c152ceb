"""Conversion orchestration for HLS exports

Responsibilities:
  - Run analysis, planning, encoding and persistence for one request.
  - Retry once with encryption disabled when the key setup is rejected.
  - Retry once on the CPU when an attempt that used a GPU fails.
  - Report progress ticks and one terminal event per request.
  - Release the export's working files on every exit path.

The retry policy is a bounded loop over attempts; each attempt receives
its own immutable config snapshot and request, so nothing shared is
mutated while a conversion runs.
"""

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, List, Optional

from .analysis import FFProbeProber, MediaSource, Prober, VideoInfo, analyze
from .binaries import BinaryLocator
from .config import HLSConfig
from .encryption import EncryptionManager, is_encryption_error
from .events import ConversionCompleted, ConversionFailed, EventSink, LoggingListener
from .exceptions import ConversionCancelled, ConversionError, InvalidResolutionFormat, ProbeError
from .progress import NullProgressSink, ProgressSink, ProgressTracker
from .storage import Storage
from .video.encoder import FFmpegEncoder
from .video.formats import RenditionSpec, plan_formats
from .video.hardware import EncoderBackend, GPUDetector

logger = logging.getLogger(__name__)

MAX_ENCRYPTION_RETRIES = 1
MAX_GPU_RETRIES = 1

MASTER_PLAYLIST = "playlist.m3u8"

# Never retried, never wrapped
FATAL_ERRORS = (ProbeError, InvalidResolutionFormat, ConversionCancelled)


@dataclass(frozen=True)
class ConversionRequest:
    """Immutable description of one attempt.

    Attributes:
        input_path: Source path on the video disk
        output_folder: Folder on the HLS and secrets disks receiving output
        source: Entity descriptor with disks and output path segments
        is_retry: Forces CPU planning when True
    """
    input_path: str
    output_folder: str
    source: MediaSource
    is_retry: bool = False

    def derive_retry(self) -> "ConversionRequest":
        return dataclasses.replace(self, is_retry=True)

    @property
    def entity(self) -> Any:
        return self.source.key if self.source.key is not None else self.input_path


class ConversionStage(Enum):
    ANALYZING = auto()
    PLANNING = auto()
    ENCODING = auto()
    ENCRYPTION_RETRY = auto()
    GPU_RETRY = auto()
    COMPLETED = auto()
    FAILED = auto()


@dataclass
class ConversionState:
    """Retry history shared by every attempt of one request."""
    started_at: float = field(default_factory=time.monotonic)
    use_gpu_requested: bool = False
    is_retry: bool = False
    was_gpu_used: bool = False
    gpu_backend: Optional[EncoderBackend] = None
    encryption_retries: int = 0
    gpu_retries: int = 0
    attempts: int = 0
    stage: ConversionStage = ConversionStage.ANALYZING
    video_info: Optional[VideoInfo] = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def backend_name(self) -> str:
        if self.gpu_backend is None:
            return EncoderBackend.CPU.value
        return self.gpu_backend.value

    @property
    def gpu_type(self) -> Optional[str]:
        if self.was_gpu_used and self.gpu_backend is not None:
            return self.gpu_backend.value
        return None


def playlist_path_for(output_folder: str, video_info: VideoInfo) -> str:
    return f"{output_folder}/{video_info.hls_output_path}/{MASTER_PLAYLIST}"


class Converter:
    """Drive HLS conversions with bounded encryption and GPU retries.

    Args:
        config: Base configuration snapshot
        storage: Storage used for the source, playlists and keys
        encoder: Encoder driver; an FFmpegEncoder is created when omitted
        progress_sink: Receives (entity, percent) ticks
        event_sink: Receives the terminal event of each request
        prober: Source prober; ffprobe through storage when omitted
        detector: GPU detector; a request-scoped one is created when omitted
    """

    def __init__(self, config: HLSConfig, storage: Storage, encoder: Optional[FFmpegEncoder] = None,
                 progress_sink: Optional[ProgressSink] = None, event_sink: Optional[EventSink] = None,
                 prober: Optional[Prober] = None, detector: Optional[GPUDetector] = None):
        self.config = config
        self.storage = storage
        self.encoder = encoder or FFmpegEncoder(config, storage)
        self.progress_sink = progress_sink or NullProgressSink()
        self.event_sink = event_sink or LoggingListener()
        self.prober = prober or FFProbeProber(storage)
        self.detector = detector

    def convert(self, input_path: str, output_folder: str, source: MediaSource,
                cancel_event: Optional[threading.Event] = None) -> str:
        """Convert one source to HLS and return the master playlist path.

        Raises:
            ProbeError: If the source cannot be analyzed
            InvalidResolutionFormat: If a configured resolution is malformed
            ConversionCancelled: If cancel_event was set
            ConversionError: If the final attempt failed
        """
        request = ConversionRequest(input_path, output_folder, source)
        state = ConversionState(use_gpu_requested=self.config.use_gpu_acceleration)
        # One locator cache per request
        detector = self.detector or GPUDetector(self.config, BinaryLocator())
        config = self.config

        logger.info("Starting HLS conversion for %s", input_path)
        while True:
            state.attempts += 1
            try:
                playlist_path = self._attempt(request, config, state, detector, cancel_event)
            except FATAL_ERRORS as e:
                self._fail(request, state, e)
                raise
            except Exception as e:
                if (state.encryption_retries < MAX_ENCRYPTION_RETRIES
                        and config.encryption_active and is_encryption_error(e)):
                    state.encryption_retries += 1
                    state.stage = ConversionStage.ENCRYPTION_RETRY
                    logger.warning("Encryption error detected, retrying without encryption: %s", e)
                    config = config.replace(enable_encryption=False)
                    continue

                if state.was_gpu_used and state.gpu_retries < MAX_GPU_RETRIES:
                    state.gpu_retries += 1
                    state.stage = ConversionStage.GPU_RETRY
                    logger.warning("GPU encoding failed, retrying with CPU: %s", e)
                    request = request.derive_retry()
                    state.is_retry = True
                    continue

                error = ConversionError(e)
                self._fail(request, state, error)
                raise error from e

            if config.delete_original_file_after_conversion:
                self._delete_original(request, state.video_info)
            self._complete(request, state, playlist_path)
            return playlist_path

    def _attempt(self, request: ConversionRequest, config: HLSConfig, state: ConversionState,
                 detector: GPUDetector, cancel_event: Optional[threading.Event]) -> str:
        logger.debug("Attempt %d for %s (retry: %s, encryption: %s)",
                     state.attempts, request.input_path, request.is_retry, config.encryption_active)

        state.stage = ConversionStage.ANALYZING
        video_info = analyze(request.input_path, request.source, self.prober)
        state.video_info = video_info

        state.stage = ConversionStage.PLANNING
        state.was_gpu_used = False
        state.gpu_backend = None
        formats = plan_formats(video_info, request, detector, config)
        self._record_backend(state, formats)

        state.stage = ConversionStage.ENCODING
        export = self.encoder.export_for_hls(
            video_info.video_disk,
            request.input_path,
            video_info.hls_disk,
            duration=video_info.duration,
            has_audio=video_info.has_audio,
        )
        try:
            export.add_formats(formats)
            export.on_progress(ProgressTracker(request.entity, self.progress_sink, state.started_at))
            EncryptionManager(config, self.storage).setup_encryption(export, request, video_info)

            playlist_path = playlist_path_for(request.output_folder, video_info)
            export.save(playlist_path, cancel_event=cancel_event)
        finally:
            export.cleanup()

        return playlist_path

    def _delete_original(self, request: ConversionRequest, video_info: VideoInfo) -> None:
        """Remove the source after a successful conversion; failures are only logged."""
        try:
            self.storage.delete(video_info.video_disk, request.input_path)
        except Exception as e:
            logger.error("Failed to delete original file %s: %s", request.input_path, e)
            return
        logger.info("Deleted original file %s", request.input_path)

    @staticmethod
    def _record_backend(state: ConversionState, formats: List[RenditionSpec]) -> None:
        backend = formats[0].backend
        state.gpu_backend = backend
        state.was_gpu_used = any(spec.backend.is_gpu for spec in formats)
        logger.debug("Planned %d rendition(s) on the %s backend", len(formats), backend.value)

    def _complete(self, request: ConversionRequest, state: ConversionState, playlist_path: str) -> None:
        state.stage = ConversionStage.COMPLETED
        logger.info("Successfully completed HLS conversion for %s", request.input_path)
        self.event_sink.conversion_completed(ConversionCompleted(
            entity=request.entity,
            backend=state.backend_name,
            gpu_type=state.gpu_type,
            duration=state.elapsed,
            video_info=state.video_info,
            was_retry=state.attempts > 1,
            input_path=request.input_path,
            output_folder=request.output_folder,
            playlist_path=playlist_path,
        ))

    def _fail(self, request: ConversionRequest, state: ConversionState, error: BaseException) -> None:
        state.stage = ConversionStage.FAILED
        logger.error("HLS conversion failed for %s: %s", request.input_path, error)
        self.event_sink.conversion_failed(ConversionFailed(
            entity=request.entity,
            error_message=str(error),
            backend=state.backend_name if state.video_info is not None else None,
            gpu_type=state.gpu_type,
            duration=state.elapsed,
            video_info=state.video_info,
            was_retry=state.attempts > 1,
            input_path=request.input_path,
            output_folder=request.output_folder,
        ))


def convert_to_hls(input_path: str, output_folder: str, source: MediaSource, config: HLSConfig,
                   storage: Storage, progress_sink: Optional[ProgressSink] = None,
                   event_sink: Optional[EventSink] = None,
                   cancel_event: Optional[threading.Event] = None) -> str:
    """Convert one source with a default Converter; returns the playlist path."""
    converter = Converter(config, storage, progress_sink=progress_sink, event_sink=event_sink)
    return converter.convert(input_path, output_folder, source, cancel_event=cancel_event)

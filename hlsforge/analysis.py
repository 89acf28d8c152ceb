"""Source video analysis

Responsibilities:
- Probe the source through ffprobe (ffmpeg-python)
- Map the source descriptor's disks and output paths into a flat VideoInfo
- Turn any probe failure into ProbeError
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import ffmpeg

from .config import HLSConfig
from .exceptions import ProbeError, StorageError
from .storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class MediaSource:
    """Descriptor of the entity being converted.

    Attributes:
        video_path: Path of the source file on video_disk
        video_disk: Disk holding the source
        hls_disk: Disk receiving playlists and segments
        secrets_disk: Disk receiving encryption keys
        hls_output_path: Folder for playlists below the output folder
        secrets_output_path: Folder for keys below the output folder
        key: Identifier of the entity, passed through to sinks
    """
    video_path: str
    video_disk: str = "public"
    hls_disk: str = "local"
    secrets_disk: str = "local"
    hls_output_path: str = "hls"
    secrets_output_path: str = "secrets"
    key: Any = None

    @classmethod
    def from_config(cls, video_path: str, config: HLSConfig, key: Any = None) -> "MediaSource":
        return cls(
            video_path=video_path,
            video_disk=config.video_disk,
            hls_disk=config.hls_disk,
            secrets_disk=config.secrets_disk,
            hls_output_path=config.hls_output_path,
            secrets_output_path=config.secrets_output_path,
            key=key,
        )


@dataclass(frozen=True)
class ProbeResult:
    width: int
    height: int
    bitrate: int  # bits per second, 0 when unknown
    duration: float = 0.0
    has_audio: bool = False


@dataclass(frozen=True)
class VideoInfo:
    """Probed source properties plus resolved storage locations."""
    width: int
    height: int
    bitrate_kbps: int
    video_disk: str
    hls_disk: str
    secrets_disk: str
    hls_output_path: str
    secrets_output_path: str
    duration: float = 0.0
    has_audio: bool = False

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "resolution": self.resolution,
            "bitrate": self.bitrate_kbps,
            "duration": self.duration,
            "videoDisk": self.video_disk,
            "hlsDisk": self.hls_disk,
            "secretsDisk": self.secrets_disk,
            "hlsOutputPath": self.hls_output_path,
            "secretsOutputPath": self.secrets_output_path,
        }


class Prober(Protocol):
    def probe(self, disk: str, path: str) -> ProbeResult: ...


class FFProbeProber:
    """Probe files on a Storage disk with ffprobe."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def probe(self, disk: str, path: str) -> ProbeResult:
        try:
            local = self.storage.local_path(disk, path)
        except StorageError as e:
            raise ProbeError(f"Failed to open or probe video file. {e}", path) from e
        if not local.is_file():
            raise ProbeError("Failed to open or probe video file.", path)

        try:
            data = ffmpeg.probe(str(local))
        except ffmpeg.Error as e:
            stderr = e.stderr.decode("utf-8", "replace") if isinstance(e.stderr, bytes) else str(e.stderr or "")
            logger.debug("ffprobe output: %s", stderr)
            raise ProbeError("Failed to open or probe video file.", path) from e
        except OSError as e:
            raise ProbeError(f"Failed to open or probe video file. {e}", path) from e

        return parse_probe_data(data, path)


def parse_probe_data(data: Dict[str, Any], path: str = "") -> ProbeResult:
    """Extract dimensions, bitrate and duration from ffprobe JSON."""
    streams = data.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise ProbeError("Failed to open or probe video file. No video stream found.", path)

    fmt = data.get("format", {})
    try:
        width = int(video["width"])
        height = int(video["height"])
    except (KeyError, TypeError, ValueError) as e:
        raise ProbeError("Failed to open or probe video file. Missing video dimensions.", path) from e

    return ProbeResult(
        width=width,
        height=height,
        bitrate=_to_int(fmt.get("bit_rate") or video.get("bit_rate")),
        duration=_to_float(fmt.get("duration") or video.get("duration")),
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )


def _to_int(value: Optional[Any]) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _to_float(value: Optional[Any]) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def analyze(input_path: str, source: MediaSource, prober: Prober) -> VideoInfo:
    """Probe the source and collect everything planning and encoding need.

    Raises:
        ProbeError: If the source cannot be opened or parsed
    """
    try:
        result = prober.probe(source.video_disk, input_path)
    except ProbeError:
        raise
    except Exception as e:
        raise ProbeError(f"Failed to open or probe video file. {e}", input_path) from e

    info = VideoInfo(
        width=result.width,
        height=result.height,
        bitrate_kbps=int(round(result.bitrate / 1000)),
        video_disk=source.video_disk,
        hls_disk=source.hls_disk,
        secrets_disk=source.secrets_disk,
        hls_output_path=source.hls_output_path,
        secrets_output_path=source.secrets_output_path,
        duration=result.duration,
        has_audio=result.has_audio,
    )
    logger.debug("Analyzed %s: %s at %dk, %.2fs", input_path, info.resolution, info.bitrate_kbps, info.duration)
    return info

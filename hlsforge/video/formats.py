"""Rendition planning for HLS exports

Responsibilities:
- Parse and render '{width}x{height}' resolution strings
- Filter the configured ladder to renditions no taller than the source
- Fall back to the source's native resolution when nothing fits
- Choose the encoder backend once per planning pass
- Build backend-specific encoder options
"""

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, NamedTuple, Optional, Tuple

from ..config import (
    DEFAULT_BITRATE, DEFAULT_GPU_PRESET, DEFAULT_GPU_PROFILE,
    GPU_PRESETS, GPU_PROFILES, HLSConfig
)
from ..exceptions import InvalidResolutionFormat
from .hardware import EncoderBackend, GPUDetector

if TYPE_CHECKING:
    from ..analysis import VideoInfo
    from ..pipeline import ConversionRequest

logger = logging.getLogger(__name__)

RESOLUTION_PATTERN = re.compile(r"^(\d+)x(\d+)$")

FALLBACK_NAME = "original"

CPU_PRESET = "veryfast"
CPU_CRF = 22

EncoderParameters = Tuple[Tuple[str, str], ...]


class GPUSettings(NamedTuple):
    device: str
    preset: str
    profile: str


@dataclass(frozen=True)
class RenditionSpec:
    """One target output stream.

    Attributes:
        label: Ladder label such as "720p"; None for the native fallback
        width: Output width in pixels
        height: Output height in pixels
        bitrate_kbps: Target video bitrate
        backend: Encoder backend chosen at planning time
        parameters: (option, value) pairs without stream specifiers
    """
    label: Optional[str]
    width: int
    height: int
    bitrate_kbps: int
    backend: EncoderBackend
    parameters: EncoderParameters

    @property
    def name(self) -> str:
        return self.label or FALLBACK_NAME

    @property
    def resolution(self) -> str:
        return render_resolution(self.width, self.height)

    @property
    def scale_filter(self) -> str:
        return f"scale={scale_argument(self.resolution)}"


def parse_resolution(resolution: str) -> Tuple[int, int]:
    """Parse 'WxH' into (width, height).

    Raises:
        InvalidResolutionFormat: If the string is not strictly 'WxH'
    """
    match = RESOLUTION_PATTERN.fullmatch(resolution) if isinstance(resolution, str) else None
    if not match:
        raise InvalidResolutionFormat(str(resolution))
    return int(match.group(1)), int(match.group(2))


def render_resolution(width: int, height: int) -> str:
    return f"{width}x{height}"


def scale_argument(resolution: str) -> str:
    """Convert 'WxH' to the 'W:H' form used by the scale filter."""
    width, height = parse_resolution(resolution)
    return f"{width}:{height}"


def resolve_gpu_settings(config: HLSConfig) -> GPUSettings:
    """Return NVENC settings, replacing invalid values with defaults."""
    preset = config.gpu_preset
    if preset not in GPU_PRESETS:
        logger.warning("Invalid GPU preset '%s', using '%s' instead.", preset, DEFAULT_GPU_PRESET)
        preset = DEFAULT_GPU_PRESET

    profile = config.gpu_profile
    if profile not in GPU_PROFILES:
        logger.warning("Invalid GPU profile '%s', using '%s' instead.", profile, DEFAULT_GPU_PROFILE)
        profile = DEFAULT_GPU_PROFILE

    return GPUSettings(device=str(config.gpu_device), preset=preset, profile=profile)


def build_encoder_parameters(backend: EncoderBackend, bitrate_kbps: int,
                             gpu: Optional[GPUSettings] = None) -> EncoderParameters:
    """Map a backend to its encoder options for one rendition."""
    bitrate = f"{bitrate_kbps}k"
    buffer_size = f"{bitrate_kbps * 2}k"

    if backend is EncoderBackend.NVIDIA_NVENC:
        gpu = gpu or GPUSettings("auto", DEFAULT_GPU_PRESET, DEFAULT_GPU_PROFILE)
        params = [
            ("c:v", "h264_nvenc"),
            ("preset", gpu.preset),
            ("profile:v", gpu.profile),
            ("rc", "cbr"),
            ("b:v", bitrate),
            ("maxrate", bitrate),
            ("bufsize", buffer_size),
        ]
        if gpu.device != "auto":
            params.append(("gpu", gpu.device))
        return tuple(params)

    if backend is EncoderBackend.APPLE_VIDEOTOOLBOX:
        return (
            ("c:v", "h264_videotoolbox"),
            ("profile:v", "main"),
            ("realtime", "true"),
            ("b:v", bitrate),
            ("maxrate", bitrate),
            ("bufsize", buffer_size),
            ("allow_sw", "1"),
        )

    if backend is EncoderBackend.CPU:
        return (
            ("c:v", "libx264"),
            ("preset", CPU_PRESET),
            ("crf", str(CPU_CRF)),
            ("b:v", bitrate),
        )

    raise ValueError(f"Unknown encoder backend: {backend}")


def _make_spec(label: Optional[str], resolution: str, bitrate_kbps: int,
               backend: EncoderBackend, gpu: Optional[GPUSettings]) -> RenditionSpec:
    width, height = parse_resolution(resolution)
    spec = RenditionSpec(
        label=label,
        width=width,
        height=height,
        bitrate_kbps=bitrate_kbps,
        backend=backend,
        parameters=build_encoder_parameters(backend, bitrate_kbps, gpu),
    )
    logger.debug("%s format created for resolution %s (%s, %dk)",
                 backend.value, spec.name, resolution, bitrate_kbps)
    return spec


def select_backend(request: "ConversionRequest", detector: GPUDetector, config: HLSConfig) -> EncoderBackend:
    """Decide the backend for a planning pass. Calls the detector at most once."""
    if not config.use_gpu_acceleration or request.is_retry:
        return EncoderBackend.CPU
    backend = detector.detect_best_backend()
    if not backend.is_gpu:
        logger.warning("GPU acceleration enabled but no compatible GPU found. Falling back to CPU.")
    return backend


def plan_formats(video_info: "VideoInfo", request: "ConversionRequest",
                 detector: GPUDetector, config: HLSConfig) -> List[RenditionSpec]:
    """Compute the non-empty list of renditions for one attempt.

    Raises:
        InvalidResolutionFormat: If a configured resolution is malformed
    """
    source_height = video_info.height
    ladder = [
        (label, resolution) for label, resolution in config.resolutions.items()
        if parse_resolution(resolution)[1] <= source_height
    ]
    logger.debug("Processing %d resolutions: %s", len(ladder), ", ".join(label for label, _ in ladder))
    logger.debug("Original video resolution: %s, bitrate: %dk", video_info.resolution, video_info.bitrate_kbps)

    backend = select_backend(request, detector, config)
    gpu = resolve_gpu_settings(config) if backend is EncoderBackend.NVIDIA_NVENC else None

    formats = []
    for label, resolution in ladder:
        bitrate = int(config.bitrates.get(label, DEFAULT_BITRATE))
        formats.append(_make_spec(label, resolution, bitrate, backend, gpu))

    if not formats:
        logger.debug("No resolutions found, using original video format")
        bitrate = video_info.bitrate_kbps or DEFAULT_BITRATE
        formats.append(_make_spec(None, video_info.resolution, bitrate, backend, gpu))

    return formats

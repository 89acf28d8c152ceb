"""Hardware acceleration detection for encoding

Detection picks one backend per planning pass:
  - VideoToolbox when ffmpeg advertises h264_videotoolbox
  - NVENC when ffmpeg advertises h264_nvenc and the GPU is healthy
  - libx264 otherwise

Missing telemetry fails open; a GPU that reports low memory or a high
temperature fails closed. Nothing raised during detection escapes.
"""

import logging
import subprocess
from enum import Enum
from typing import Callable, List, Optional

from ..binaries import BinaryLocator
from ..config import HLSConfig
from ..utils import command_output

logger = logging.getLogger(__name__)

VIDEOTOOLBOX_ENCODER = "h264_videotoolbox"
NVENC_ENCODER = "h264_nvenc"
NVIDIA_SMI_WINDOWS = r"C:\Program Files\NVIDIA Corporation\NVSMI\nvidia-smi.exe"


class EncoderBackend(Enum):
    """Closed set of encoding backends."""
    CPU = "cpu"
    NVIDIA_NVENC = "nvidia"
    APPLE_VIDEOTOOLBOX = "apple"

    @property
    def is_gpu(self) -> bool:
        return self is not EncoderBackend.CPU


class GPUDetector:
    """Determine the best usable encoding backend right now.

    Args:
        config: Snapshot providing thresholds, device and query timeout
        locator: BinaryLocator; a fresh one is created when omitted
        runner: Callable(cmd, timeout) returning combined command output
    """

    def __init__(self, config: HLSConfig, locator: Optional[BinaryLocator] = None,
                 runner: Optional[Callable[..., str]] = None):
        self.config = config
        self.locator = locator or BinaryLocator()
        self._runner = runner or command_output

    def detect_best_backend(self) -> EncoderBackend:
        """Return APPLE_VIDEOTOOLBOX, NVIDIA_NVENC or CPU."""
        logger.debug("Detecting best available GPU...")
        try:
            ffmpeg_path = self.locator.find("ffmpeg")
            if not ffmpeg_path:
                logger.warning("GPU detection failed: ffmpeg binary not found.")
                return EncoderBackend.CPU

            encoders = self._list_encoders(ffmpeg_path)
            if encoders is None:
                return EncoderBackend.CPU

            if VIDEOTOOLBOX_ENCODER in encoders:
                logger.debug("Apple Silicon (VideoToolbox) detected")
                return EncoderBackend.APPLE_VIDEOTOOLBOX

            if NVENC_ENCODER in encoders:
                logger.debug("NVIDIA GPU (NVENC) detected")
                if self._nvidia_ready():
                    logger.debug("NVIDIA GPU is available and ready for use")
                    return EncoderBackend.NVIDIA_NVENC
                logger.warning("NVIDIA GPU check failed: memory or temperature issues.")
                return EncoderBackend.CPU
        except Exception as e:
            logger.error("GPU availability check failed: %s", e)
            return EncoderBackend.CPU

        logger.debug("No compatible GPU found. Using CPU.")
        return EncoderBackend.CPU

    def _list_encoders(self, ffmpeg_path: str) -> Optional[str]:
        try:
            return self._runner([ffmpeg_path, "-hide_banner", "-encoders"],
                                timeout=self.config.gpu_query_timeout)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error("Failed to get encoders: %s", e)
            return None

    def _nvidia_ready(self) -> bool:
        return self.has_sufficient_memory() and self.is_temperature_ok()

    def has_sufficient_memory(self) -> bool:
        """Free memory >= gpu_min_memory_mb; True when it cannot be read."""
        free_memory = self._query_nvidia("memory.free")
        if free_memory is None:
            return True
        minimum = self.config.gpu_min_memory_mb
        if free_memory < minimum:
            logger.warning("GPU check failed: Insufficient free memory. Found: %dMB, Required: %dMB.",
                           free_memory, minimum)
            return False
        return True

    def is_temperature_ok(self) -> bool:
        """Temperature < gpu_max_temp; True when it cannot be read."""
        temperature = self._query_nvidia("temperature.gpu")
        if temperature is None:
            return True
        maximum = self.config.gpu_max_temp
        if temperature >= maximum:
            logger.warning("GPU check failed: Temperature too high. Current: %d°C, Threshold: %d°C.",
                           temperature, maximum)
            return False
        return True

    def _query_nvidia(self, field: str) -> Optional[int]:
        """Read one integer field from nvidia-smi, or None if unavailable."""
        smi_path = self.locator.find("nvidia-smi", [NVIDIA_SMI_WINDOWS])
        if not smi_path:
            return None
        cmd = [smi_path, f"--query-gpu={field}", "--format=csv,noheader,nounits"]
        try:
            output = self._runner(cmd, timeout=self.config.gpu_query_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("nvidia-smi timed out querying %s", field)
            return None
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("nvidia-smi query for %s failed: %s", field, e)
            return None
        return parse_smi_value(output, self.config.gpu_device)


def parse_smi_value(output: str, device: str = "auto") -> Optional[int]:
    """Pick the line for the configured device and parse it as an integer.

    nvidia-smi prints one line per GPU. "auto" reads the first line.
    """
    lines: List[str] = [line.strip() for line in (output or "").strip().splitlines() if line.strip()]
    if not lines:
        return None
    index = int(device) if str(device).isdigit() else 0
    if index >= len(lines):
        return None
    try:
        return int(float(lines[index]))
    except (ValueError, OverflowError):
        return None

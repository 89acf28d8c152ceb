"""Configuration settings for the hlsforge conversion pipeline

This module centralizes all configuration settings including:
- The rendition ladder (label -> WxH) and per-label bitrates
- GPU acceleration preferences and health thresholds
- Segment encryption mode and key naming
- Disk names and output path segments for HLS files and secrets
- Working directory for temporary encoder output

HLSConfig is an immutable snapshot. Code that needs a variation (the
encryption retry, the CLI flags) derives a new snapshot with replace()
instead of mutating shared state.
"""

import dataclasses
import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import ConfigError

# Rendition ladder: label -> "{width}x{height}"
DEFAULT_RESOLUTIONS = {
    "360p": "640x360",
    "480p": "854x480",
    "720p": "1280x720",
    "1080p": "1920x1080",
    "1440p": "2560x1440",
    "2160p": "3840x2160",
}

# Video bitrates in kbps
DEFAULT_BITRATES = {
    "360p": 600,
    "480p": 1000,
    "720p": 2500,
    "1080p": 4500,
    "1440p": 7000,
    "2160p": 12000,
}

DEFAULT_BITRATE = 1000  # kbps, used for labels missing from the bitrate table

# NVENC settings
GPU_PRESETS = ("slow", "medium", "fast", "hq", "ll", "llhq", "lossless", "losslesshq")
GPU_PROFILES = ("baseline", "main", "high")
DEFAULT_GPU_PRESET = "fast"
DEFAULT_GPU_PROFILE = "high"

# GPU health thresholds
DEFAULT_MIN_MEMORY_MB = 500
DEFAULT_MAX_TEMP = 85
GPU_QUERY_TIMEOUT = 5.0  # Seconds per monitoring tool call

# Encryption
ENCRYPTION_AES_128 = "aes-128"
ENCRYPTION_ROTATING = "rotating"
ENCRYPTION_NONE = "none"
ENCRYPTION_METHODS = (ENCRYPTION_AES_128, ENCRYPTION_ROTATING, ENCRYPTION_NONE)

ENV_PREFIX = "HLS_"


@dataclass(frozen=True)
class HLSConfig:
    """Immutable configuration snapshot consumed by one conversion.

    Attributes:
        resolutions: Rendition label -> "WxH" string
        bitrates: Rendition label -> video bitrate in kbps
        use_gpu_acceleration: Try NVENC/VideoToolbox before libx264
        gpu_device: "auto" or an NVIDIA GPU index
        gpu_preset: NVENC preset, corrected to "fast" when invalid
        gpu_profile: NVENC profile, corrected to "high" when invalid
        gpu_min_memory_mb: Minimum free GPU memory to accept NVENC
        gpu_max_temp: NVENC is rejected at or above this temperature (C)
        gpu_query_timeout: Timeout for each nvidia-smi call in seconds
        enable_encryption: Encrypt segments with AES-128
        encryption_method: "aes-128", "rotating" or "none"
        rotating_key_segments: Segments covered by each rotating key
        encryption_key_filename: Base name of the static key file
        temp_storage_path: Root for temporary encoder working directories
        segment_duration: Target HLS segment length in seconds
        audio_bitrate: AAC bitrate in kbps for every variant
        debug: Lower the log level to DEBUG
    """
    resolutions: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_RESOLUTIONS))
    bitrates: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_BITRATES))

    use_gpu_acceleration: bool = False
    gpu_device: str = "auto"
    gpu_preset: str = DEFAULT_GPU_PRESET
    gpu_profile: str = DEFAULT_GPU_PROFILE
    gpu_min_memory_mb: int = DEFAULT_MIN_MEMORY_MB
    gpu_max_temp: int = DEFAULT_MAX_TEMP
    gpu_query_timeout: float = GPU_QUERY_TIMEOUT

    enable_encryption: bool = True
    encryption_method: str = ENCRYPTION_AES_128
    rotating_key_segments: int = 1
    encryption_key_filename: str = "secret.key"

    video_disk: str = "public"
    hls_disk: str = "local"
    secrets_disk: str = "local"
    hls_output_path: str = "hls"
    secrets_output_path: str = "secrets"
    temp_storage_path: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "hlsforge")

    segment_duration: int = 10
    audio_bitrate: int = 128
    delete_original_file_after_conversion: bool = False
    debug: bool = False

    @property
    def encryption_active(self) -> bool:
        """True when segments will be encrypted with this snapshot."""
        return self.enable_encryption and self.encryption_method != ENCRYPTION_NONE

    def replace(self, **changes: Any) -> "HLSConfig":
        """Return a derived snapshot with the given fields changed."""
        return dataclasses.replace(self, **changes)

    def validate(self) -> None:
        """Validate structural constraints.

        Resolution strings and GPU enums are checked where they are used:
        the planner raises on bad resolutions and corrects bad GPU values.

        Raises:
            ConfigError: If a value can never be used
        """
        if not isinstance(self.resolutions, dict):
            raise ConfigError("resolutions must be a mapping of label to 'WxH'")
        if not isinstance(self.bitrates, dict):
            raise ConfigError("bitrates must be a mapping of label to kbps")
        if self.rotating_key_segments < 1:
            raise ConfigError(f"rotating_key_segments must be at least 1: {self.rotating_key_segments}")
        if self.gpu_min_memory_mb < 0:
            raise ConfigError(f"gpu_min_memory_mb must be non-negative: {self.gpu_min_memory_mb}")
        if self.gpu_query_timeout <= 0:
            raise ConfigError(f"gpu_query_timeout must be positive: {self.gpu_query_timeout}")
        if self.segment_duration <= 0:
            raise ConfigError(f"segment_duration must be positive: {self.segment_duration}")
        if self.audio_bitrate <= 0:
            raise ConfigError(f"audio_bitrate must be positive: {self.audio_bitrate}")
        if self.gpu_device != "auto" and not str(self.gpu_device).isdigit():
            raise ConfigError(f"gpu_device must be 'auto' or a GPU index: {self.gpu_device}")

    @classmethod
    def from_environment(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "HLSConfig":
        """Create a snapshot from HLS_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ
            **overrides: Explicit values that win over the environment

        Raises:
            ConfigError: If a variable cannot be parsed or validation fails
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _parse_env_value(f.name, raw, _field_kind(f.name))
        values.update(overrides)

        config = cls(**values)
        config.validate()
        return config


_BOOL_FIELDS = {
    "use_gpu_acceleration", "enable_encryption",
    "delete_original_file_after_conversion", "debug",
}
_INT_FIELDS = {
    "gpu_min_memory_mb", "gpu_max_temp", "rotating_key_segments",
    "segment_duration", "audio_bitrate",
}
_FLOAT_FIELDS = {"gpu_query_timeout"}
_JSON_FIELDS = {"resolutions", "bitrates"}
_PATH_FIELDS = {"temp_storage_path"}


def _field_kind(name: str) -> str:
    if name in _BOOL_FIELDS:
        return "bool"
    if name in _INT_FIELDS:
        return "int"
    if name in _FLOAT_FIELDS:
        return "float"
    if name in _JSON_FIELDS:
        return "json"
    if name in _PATH_FIELDS:
        return "path"
    return "str"


def _parse_env_value(name: str, raw: str, kind: str) -> Any:
    env_name = ENV_PREFIX + name.upper()
    try:
        if kind == "bool":
            lowered = raw.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off", ""):
                return False
            raise ValueError(f"not a boolean: {raw!r}")
        if kind == "int":
            return int(raw)
        if kind == "float":
            return float(raw)
        if kind == "json":
            value = json.loads(raw)
            if not isinstance(value, dict):
                raise ValueError("expected a JSON object")
            return value
        if kind == "path":
            return Path(raw)
        return raw
    except ValueError as e:
        raise ConfigError(f"Invalid value for {env_name}: {e}") from e

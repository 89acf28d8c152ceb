"""Custom exceptions for the hlsforge conversion pipeline.

Only ProbeError, InvalidResolutionFormat, ConversionCancelled and the
final ConversionError ever reach callers of the orchestrator. The other
types are raised internally and absorbed by the retry policy.
"""

from typing import Optional


class HLSError(Exception):
    """Base exception class for all hlsforge errors."""
    pass


class ConfigError(HLSError):
    """Raised when a configuration value is structurally invalid."""
    pass


class StorageError(HLSError):
    """Raised when a storage disk or path cannot be resolved."""
    pass


class ProbeError(HLSError):
    """Raised when the source media cannot be opened or parsed."""
    def __init__(self, message: str = "Failed to open or probe video file.", path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class InvalidResolutionFormat(HLSError):
    """Raised when a resolution string does not match '{width}x{height}'."""
    def __init__(self, value: str) -> None:
        super().__init__(
            f"Invalid resolution format: {value}. Expected format is '{{width}}x{{height}}'."
        )
        self.value = value


class EncodeError(HLSError):
    """Raised when the encoder fails.

    Attributes:
        ffmpeg_output: Tail of the encoder output for debugging
    """
    def __init__(self, message: str, ffmpeg_output: str = "") -> None:
        super().__init__(message)
        self.ffmpeg_output = ffmpeg_output


class EncryptionError(EncodeError):
    """Raised when the encoder rejects the key or key-info setup."""
    pass


class ConversionCancelled(HLSError):
    """Raised when a conversion is cancelled through its cancel event."""
    pass


class ConversionError(HLSError):
    """Terminal conversion failure surfaced to the caller."""
    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"HLS conversion failed: {cause}")
        self.cause = cause

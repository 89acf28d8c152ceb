"""HLS segment encryption

Responsibilities:
- Generate AES-128 keys and collision-free static key filenames
- Persist keys to the secrets disk as soon as they exist
- Configure the export for static or rotating keys
- Repair key-info files whose URI a player could not resolve
"""

import hashlib
import logging
import posixpath
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Union
from urllib.parse import urlparse

from .config import ENCRYPTION_AES_128, ENCRYPTION_NONE, ENCRYPTION_ROTATING, HLSConfig
from .exceptions import EncryptionError
from .storage import Storage

if TYPE_CHECKING:
    from .analysis import VideoInfo
    from .pipeline import ConversionRequest

logger = logging.getLogger(__name__)

KEY_SIZE = 16  # AES-128
KEY_URI_PREFIX = "/hls/keys"

# Fragments of encoder output that mean the key setup was rejected
ENCRYPTION_ERROR_SIGNATURES = (
    "hls_key_info_file",
    "key info",
    "keyinfo",
    "key uri",
    "key_uri",
    "encryption key",
    "invalid key",
)

KeyCallback = Callable[[str, Union[bytes, str]], None]


@dataclass(frozen=True)
class EncryptionKey:
    secret: bytes
    filename: str


def generate_key() -> bytes:
    """Return 16 random bytes for AES-128."""
    return secrets.token_bytes(KEY_SIZE)


def unique_key_filename(base_filename: str, output_folder: str) -> str:
    """Suffix the base name with a hash of the output folder.

    'secret.key' in folder 'abc' -> 'secret_<md5(abc)[:8]>.key'
    """
    stem, ext = posixpath.splitext(base_filename)
    unique_id = hashlib.md5(output_folder.encode("utf-8")).hexdigest()[:8]
    return f"{stem}_{unique_id}{ext}"


def secrets_path(output_folder: str, secrets_output_path: str, filename: str) -> str:
    return f"{output_folder}/{secrets_output_path}/{filename}"


def is_resolvable_uri(uri: str) -> bool:
    """True for absolute URLs with scheme and host, or absolute paths."""
    uri = (uri or "").strip()
    if not uri:
        return False
    if uri.startswith("/") and not uri.startswith("//"):
        return True
    parsed = urlparse(uri)
    return bool(parsed.scheme and parsed.netloc)


def is_encryption_error(error: BaseException) -> bool:
    """True when an encode failure was caused by the key setup."""
    if isinstance(error, EncryptionError):
        return True
    text = str(error).lower()
    output = getattr(error, "ffmpeg_output", "") or ""
    text = f"{text}\n{output.lower()}"
    return any(signature in text for signature in ENCRYPTION_ERROR_SIGNATURES)


def repair_key_info(contents: str, filename: str) -> Optional[str]:
    """Return fixed key-info contents, or None when no fix is needed.

    Key-info layout: URI, key file path, optional IV.
    """
    lines = contents.strip().split("\n")
    if len(lines) < 2:
        return None

    uri = lines[0].strip()
    key_path = lines[1].strip()
    if is_resolvable_uri(uri):
        return None

    key_name = filename.replace(".keyinfo", ".key")
    fixed = [f"{KEY_URI_PREFIX}/{key_name}", key_path]
    if len(lines) > 2:
        fixed.append(lines[2].strip())
    return "\n".join(fixed)


class EncryptionManager:
    """Attach encryption to an HLS export and persist its keys."""

    def __init__(self, config: HLSConfig, storage: Storage):
        self.config = config
        self.storage = storage

    def setup_encryption(self, export, request: "ConversionRequest", video_info: "VideoInfo") -> None:
        if not self.config.encryption_active:
            logger.debug("Encryption disabled or set to 'none'")
            return

        logger.debug("Setting up HLS encryption...")
        method = self.config.encryption_method
        if method == ENCRYPTION_ROTATING:
            self._setup_rotating(export, request.output_folder, video_info)
        elif method == ENCRYPTION_AES_128:
            self._setup_static(export, request.output_folder, video_info)
        elif method == ENCRYPTION_NONE:
            logger.debug("Encryption disabled (none method selected)")
        else:
            logger.warning("Unknown encryption method: %s, using static encryption", method)
            self._setup_static(export, request.output_folder, video_info)

    def _setup_static(self, export, output_folder: str, video_info: "VideoInfo") -> EncryptionKey:
        key = EncryptionKey(
            secret=generate_key(),
            filename=unique_key_filename(self.config.encryption_key_filename, output_folder),
        )
        key_path = secrets_path(output_folder, video_info.secrets_output_path, key.filename)
        self.storage.put(video_info.secrets_disk, key_path, key.secret)
        logger.debug("Static encryption key stored at: %s", key_path)

        export.with_encryption_key(key.secret, key.filename)
        return key

    def _setup_rotating(self, export, output_folder: str, video_info: "VideoInfo") -> None:
        segments_per_key = self.config.rotating_key_segments
        logger.debug("Rotating key every %d segment(s)", segments_per_key)

        export.with_rotating_encryption_key(
            self.key_writer(output_folder, video_info.secrets_disk, video_info.secrets_output_path),
            segments_per_key,
        )

    def key_writer(self, output_folder: str, disk: str, secrets_output_path: str) -> KeyCallback:
        """Build the callback persisting each emitted key or key-info file."""
        def write_key(filename: str, contents: Union[bytes, str]) -> None:
            full_path = secrets_path(output_folder, secrets_output_path, filename)
            self.storage.put(disk, full_path, contents)
            if filename.endswith(".keyinfo"):
                logger.debug("Processing key info file: %s", filename)
                self.fix_key_info_file(disk, full_path, filename)

        return write_key

    def fix_key_info_file(self, disk: str, path: str, filename: str) -> None:
        """Rewrite a stored key-info file with a resolvable URI.

        Failures are logged only; segments may already be encoding.
        """
        try:
            contents = self.storage.get(disk, path).decode("utf-8")
            fixed = repair_key_info(contents, filename)
            if fixed is not None:
                self.storage.put(disk, path, fixed)
                logger.debug("Key info file fixed with proper URI: %s", fixed.split("\n", 1)[0])
        except Exception as e:
            logger.error("Failed to fix key info file %s: %s", filename, e)

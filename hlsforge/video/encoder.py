"""ffmpeg HLS export

Responsibilities:
- Run the whole rendition ladder through one ffmpeg invocation
- Parse -progress output into monotonic percentages
- Write static or rotating key material for ffmpeg and report it
- Persist playlists and segments to the output disk
- Keep ffmpeg's working files in a per-export temporary directory
"""

import collections
import logging
import os
import posixpath
import re
import secrets
import subprocess
import threading
from pathlib import Path
from typing import Callable, Deque, List, Optional

from ..config import HLSConfig
from ..encryption import KeyCallback, generate_key, is_encryption_error
from ..exceptions import ConversionCancelled, EncodeError, EncryptionError
from ..storage import Storage
from ..temp import TempManager
from .command_builders import build_hls_command
from .formats import RenditionSpec

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

SEGMENT_OPEN_RE = re.compile(r"Opening '(?P<path>[^']+\.ts)' for writing")
SEGMENT_INDEX_RE = re.compile(r"(?P<name>.+)_(?P<index>\d+)\.ts$")
OUTPUT_TAIL_LINES = 50


class KeyRotator:
    """Rotate the AES key every N segments of the first variant.

    ffmpeg re-reads the key-info file whenever it opens a segment
    (hls_flags periodic_rekey), so rotating means replacing that file
    before the segment that needs the new key is opened.
    """

    def __init__(self, work_dir: Path, callback: KeyCallback, segments_per_key: int = 1,
                 prefix: Optional[str] = None):
        self.work_dir = work_dir
        self.callback = callback
        self.segments_per_key = max(1, int(segments_per_key))
        self.prefix = prefix or secrets.token_hex(4)
        self.key_info_file = work_dir / "rotating.keyinfo"
        self.keys_written = 0
        self._last_rotated_index = -1
        self._tracked_variant: Optional[str] = None

    def start(self) -> None:
        """Write the key covering the first period."""
        self._rotate(0)

    def segment_opened(self, path: str) -> None:
        match = SEGMENT_INDEX_RE.match(os.path.basename(path))
        if not match:
            return
        variant = match.group("name")
        if self._tracked_variant is None:
            self._tracked_variant = variant
        if variant != self._tracked_variant:
            return

        index = int(match.group("index"))
        if index > self._last_rotated_index and index % self.segments_per_key == 0:
            self._rotate(index)

    def _rotate(self, index: int) -> None:
        self._last_rotated_index = index
        key = generate_key()
        key_name = f"{self.prefix}_{self.keys_written}.key"
        key_path = self.work_dir / key_name
        key_path.write_bytes(key)

        contents = f"{key_name}\n{key_path}\n"
        staging = self.work_dir / "rotating.keyinfo.tmp"
        staging.write_text(contents)
        os.replace(staging, self.key_info_file)

        self.keys_written += 1
        logger.debug("Rotated encryption key at segment %d: %s", index, key_name)
        self.callback(key_name, key)
        self.callback(key_name.replace(".key", ".keyinfo"), contents)


class HLSExport:
    """Builder for a single multi-variant HLS export.

    Usage mirrors the encoder driver contract: add formats, attach
    callbacks and encryption, then save() once.
    """

    def __init__(self, encoder: "FFmpegEncoder", disk: str, path: str, output_disk: str,
                 duration: float = 0.0, has_audio: bool = True):
        self.encoder = encoder
        self.disk = disk
        self.path = path
        self.output_disk = output_disk
        self.duration = duration
        self.has_audio = has_audio
        self.formats: List[RenditionSpec] = []
        self._progress_callbacks: List[ProgressCallback] = []
        self._static_key: Optional[bytes] = None
        self._static_key_filename: Optional[str] = None
        self._rotation_callback: Optional[KeyCallback] = None
        self._segments_per_key = 1
        self._work_dir: Optional[Path] = None
        self._last_percent = -1.0

    def add_format(self, spec: RenditionSpec) -> "HLSExport":
        self.formats.append(spec)
        return self

    def add_formats(self, specs: List[RenditionSpec]) -> "HLSExport":
        for spec in specs:
            self.add_format(spec)
        return self

    def on_progress(self, callback: ProgressCallback) -> "HLSExport":
        self._progress_callbacks.append(callback)
        return self

    def with_encryption_key(self, key: bytes, filename: str) -> "HLSExport":
        self._static_key = key
        self._static_key_filename = filename
        return self

    def with_rotating_encryption_key(self, callback: KeyCallback, segments_per_key: int = 1) -> "HLSExport":
        self._rotation_callback = callback
        self._segments_per_key = segments_per_key
        return self

    @property
    def encrypted(self) -> bool:
        return self._static_key is not None or self._rotation_callback is not None

    def _report(self, percent: float) -> None:
        percent = min(100.0, max(0.0, percent))
        if percent <= self._last_percent:
            return
        self._last_percent = percent
        for callback in self._progress_callbacks:
            callback(percent)

    def _write_static_key_info(self, work_dir: Path) -> Path:
        key_path = work_dir / self._static_key_filename
        key_path.write_bytes(self._static_key)
        key_info = work_dir / "static.keyinfo"
        key_info.write_text(f"{self._static_key_filename}\n{key_path}\n")
        return key_info

    def save(self, playlist_path: str, cancel_event: Optional[threading.Event] = None) -> str:
        """Encode, then persist playlists and segments next to playlist_path.

        Raises:
            EncodeError: If ffmpeg fails
            EncryptionError: If ffmpeg rejects the key setup
            ConversionCancelled: If cancel_event is set while encoding
        """
        if not self.formats:
            raise EncodeError("No formats were added to the HLS export")

        input_file = self.encoder.storage.local_path(self.disk, self.path)
        self._work_dir = work_dir = self.encoder.temp_manager.create_dir("hls")

        key_info_file = None
        rotator = None
        if self._rotation_callback is not None:
            rotator = KeyRotator(work_dir, self._rotation_callback, self._segments_per_key)
            rotator.start()
            key_info_file = rotator.key_info_file
        elif self._static_key is not None:
            key_info_file = self._write_static_key_info(work_dir)

        config = self.encoder.config
        cmd = build_hls_command(
            input_file,
            self.formats,
            work_dir,
            master_playlist=posixpath.basename(playlist_path),
            has_audio=self.has_audio,
            segment_duration=config.segment_duration,
            audio_bitrate=config.audio_bitrate,
            key_info_file=key_info_file,
            rotating=rotator is not None,
            ffmpeg_path=self.encoder.ffmpeg_path,
        )
        logger.info("Started conversion for resolutions: %s", ", ".join(spec.name for spec in self.formats))

        self._run(cmd, rotator, cancel_event)
        self._report(100.0)
        self._persist(work_dir, posixpath.dirname(playlist_path))
        return playlist_path

    def _run(self, cmd: List[str], rotator: Optional[KeyRotator],
             cancel_event: Optional[threading.Event]) -> None:
        logger.debug("Running ffmpeg command:\n%s", " \\\n    ".join(cmd))
        tail: Deque[str] = collections.deque(maxlen=OUTPUT_TAIL_LINES)

        try:
            process = subprocess.Popen(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True
            )
        except OSError as e:
            raise EncodeError(f"Failed to start ffmpeg: {e}") from e

        cancelled = False
        try:
            for line in process.stdout:
                line = line.strip()
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    process.terminate()
                    break
                if not line:
                    continue
                self._handle_line(line, rotator, tail)
            process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
            process.stdout.close()

        if cancelled:
            raise ConversionCancelled("Conversion cancelled while encoding")

        if process.returncode != 0:
            output = "\n".join(tail)
            last_line = tail[-1] if tail else "no output"
            message = f"ffmpeg exited with code {process.returncode}: {last_line}"
            error = EncodeError(message, output)
            if self.encrypted and is_encryption_error(error):
                raise EncryptionError(message, output)
            raise error

    def _handle_line(self, line: str, rotator: Optional[KeyRotator], tail: Deque[str]) -> None:
        key, sep, value = line.partition("=")
        if sep and key in ("out_time_us", "out_time_ms"):
            # Both fields are microseconds in current ffmpeg builds
            if self.duration > 0 and value.isdigit():
                self._report(int(value) / 1_000_000 / self.duration * 100)
            return
        if sep and key == "progress":
            if value == "end":
                self._report(100.0)
            return
        if sep and " " not in key:
            # Other -progress fields (fps, bitrate, ...)
            return

        tail.append(line)
        match = SEGMENT_OPEN_RE.search(line)
        if match and rotator is not None:
            rotator.segment_opened(match.group("path"))

    def _persist(self, work_dir: Path, target_dir: str) -> None:
        storage = self.encoder.storage
        count = 0
        for path in sorted(work_dir.iterdir()):
            if path.suffix not in (".m3u8", ".ts"):
                continue
            target = f"{target_dir}/{path.name}" if target_dir else path.name
            storage.put_file(self.output_disk, target, path)
            count += 1
        logger.debug("Persisted %d HLS files to %s:%s", count, self.output_disk, target_dir)

    def cleanup(self) -> None:
        """Remove this export's working directory."""
        if self._work_dir is not None:
            self.encoder.temp_manager.release(self._work_dir)
            self._work_dir = None


class FFmpegEncoder:
    """Encoder driver producing HLS exports with the ffmpeg CLI."""

    def __init__(self, config: HLSConfig, storage: Storage, temp_manager: Optional[TempManager] = None,
                 ffmpeg_path: str = "ffmpeg"):
        self.config = config
        self.storage = storage
        self.temp_manager = temp_manager or TempManager(config.temp_storage_path)
        self.ffmpeg_path = ffmpeg_path

    def export_for_hls(self, disk: str, path: str, output_disk: str,
                       duration: float = 0.0, has_audio: bool = True) -> HLSExport:
        return HLSExport(self, disk, path, output_disk, duration=duration, has_audio=has_audio)

    def cleanup_temporary_files(self) -> None:
        """Remove every working directory this encoder created."""
        self.temp_manager.cleanup()

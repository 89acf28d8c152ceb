"""Helper functions for building ffmpeg HLS commands"""

from pathlib import Path
from typing import List, Optional, Sequence

from .formats import RenditionSpec

SEGMENT_PATTERN = "%v_%05d.ts"
VARIANT_PLAYLIST_PATTERN = "%v.m3u8"


def stream_option(option: str, index: int) -> str:
    """Qualify an option for output video stream index.

    'b:v' -> '-b:v:1', 'preset' -> '-preset:v:1'
    """
    if option.endswith(":v"):
        return f"-{option}:{index}"
    return f"-{option}:v:{index}"


def build_var_stream_map(formats: Sequence[RenditionSpec], has_audio: bool) -> str:
    entries = []
    for i, spec in enumerate(formats):
        if has_audio:
            entries.append(f"v:{i},a:{i},name:{spec.name}")
        else:
            entries.append(f"v:{i},name:{spec.name}")
    return " ".join(entries)


def build_hls_command(
    input_file: Path,
    formats: Sequence[RenditionSpec],
    work_dir: Path,
    master_playlist: str = "playlist.m3u8",
    has_audio: bool = True,
    segment_duration: int = 10,
    audio_bitrate: int = 128,
    key_info_file: Optional[Path] = None,
    rotating: bool = False,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """Build one ffmpeg command encoding every rendition into an HLS ladder"""
    cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "info", "-nostats", "-y", "-i", str(input_file)]

    for _ in formats:
        cmd.extend(["-map", "0:v:0"])
        if has_audio:
            cmd.extend(["-map", "0:a:0"])

    for i, spec in enumerate(formats):
        cmd.extend([f"-filter:v:{i}", spec.scale_filter])
        for option, value in spec.parameters:
            cmd.extend([stream_option(option, i), value])

    if has_audio:
        cmd.extend(["-c:a", "aac", "-b:a", f"{audio_bitrate}k"])

    cmd.extend([
        "-f", "hls",
        "-hls_time", str(segment_duration),
        "-hls_playlist_type", "vod",
        "-hls_segment_filename", str(work_dir / SEGMENT_PATTERN),
        "-master_pl_name", master_playlist,
        "-var_stream_map", build_var_stream_map(formats, has_audio),
    ])

    if key_info_file is not None:
        cmd.extend(["-hls_key_info_file", str(key_info_file)])
        if rotating:
            cmd.extend(["-hls_flags", "periodic_rekey"])

    cmd.extend(["-progress", "pipe:1", str(work_dir / VARIANT_PLAYLIST_PATTERN)])
    return cmd

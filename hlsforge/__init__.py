"""
hlsforge - HLS transcoding orchestration on top of ffmpeg

This package turns a source video into a multi-variant HLS asset:
- Probes the source and plans renditions that do not exceed its height
- Picks an encoding backend (NVENC, VideoToolbox or libx264)
- Drives a single ffmpeg HLS export for the whole rendition ladder
- Manages static or rotating AES-128 segment keys
- Reports progress and retries once on encryption or GPU failures

The encoder, storage and event consumers are pluggable so the engine can
run inside any worker or web application.
"""

__version__ = "0.1.0"

"""
Command-line interface for the hlsforge HLS conversion pipeline
"""
import argparse
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .analysis import MediaSource
from .config import ENCRYPTION_METHODS, HLSConfig
from .events import EventEmitter, LoggingListener
from .exceptions import ConfigError, HLSError
from .formatting import print_check, print_error, print_header, print_success, print_summary, print_warning
from .logging import configure_logging
from .pipeline import Converter
from .progress import RichProgressSink
from .scheduler import ConversionJob, ConversionPool
from .storage import LocalDiskStorage
from .video.encoder import FFmpegEncoder

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".mov", ".avi", ".webm", ".m4v")

SOURCE_DISK = "source"
OUTPUT_DISK = "output"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Convert videos to multi-bitrate HLS with optional AES-128 encryption"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Set logging level (default: %(default)s)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show debug diagnostics (same as --log-level DEBUG)"
    )
    parser.add_argument(
        "--gpu",
        dest="use_gpu",
        action="store_true",
        default=None,
        help="Use NVENC or VideoToolbox when available"
    )
    parser.add_argument(
        "--encryption",
        choices=ENCRYPTION_METHODS,
        default=None,
        help="Segment encryption method"
    )
    parser.add_argument(
        "--rotating-key-segments",
        dest="rotating_key_segments",
        type=int,
        default=None,
        help="Segments covered by each key in rotating mode"
    )
    parser.add_argument(
        "--output-folder",
        dest="output_folder",
        default=None,
        help="Folder below OUTPUT_ROOT (default: the input file's stem)"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Parallel conversions when INPUT is a directory"
    )
    parser.add_argument(
        "input",
        type=Path,
        help="Input video file or directory of videos"
    )
    parser.add_argument(
        "output_root",
        type=Path,
        help="Directory receiving HLS playlists, segments and keys"
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> HLSConfig:
    """Environment configuration with command-line overrides applied."""
    overrides = {
        "video_disk": SOURCE_DISK,
        "hls_disk": OUTPUT_DISK,
        "secrets_disk": OUTPUT_DISK,
        "debug": args.debug,
    }
    if args.use_gpu is not None:
        overrides["use_gpu_acceleration"] = args.use_gpu
    if args.encryption is not None:
        overrides["encryption_method"] = args.encryption
        overrides["enable_encryption"] = args.encryption != "none"
    if args.rotating_key_segments is not None:
        overrides["rotating_key_segments"] = args.rotating_key_segments
    return HLSConfig.from_environment(**overrides)


def collect_jobs(input_path: Path, config: HLSConfig, output_folder: Optional[str]) -> List[ConversionJob]:
    """One job per video; paths are relative to the source disk root."""
    if input_path.is_dir():
        files = sorted(p for p in input_path.iterdir() if p.suffix.lower() in VIDEO_EXTENSIONS)
        base = output_folder
    else:
        files = [input_path]
        base = None

    jobs = []
    for path in files:
        if base:
            folder = f"{base}/{path.stem}"
        else:
            folder = output_folder or path.stem
        source = MediaSource.from_config(path.name, config, key=path.name)
        jobs.append(ConversionJob(input_path=path.name, output_folder=folder, source=source))
    return jobs


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    log = configure_logging(args.log_level, debug=args.debug)

    print_header(f"Starting hlsforge HLS converter v{__version__}")

    if not args.input.exists():
        log.error("Input %s does not exist", args.input)
        return 1

    try:
        config = build_config(args)
    except ConfigError as e:
        print_error(str(e))
        return 1

    source_root = args.input if args.input.is_dir() else args.input.parent
    storage = LocalDiskStorage({SOURCE_DISK: source_root, OUTPUT_DISK: args.output_root})
    encoder = FFmpegEncoder(config, storage)
    events = EventEmitter()
    events.subscribe(LoggingListener())

    jobs = collect_jobs(args.input, config, args.output_folder)
    if not jobs:
        print_warning(f"No video files found in {args.input}")
        return 1

    print_check(f"Converting {len(jobs)} video(s) into {args.output_root}")
    pool = None
    try:
        with RichProgressSink() as progress:
            converter = Converter(config, storage, encoder, progress_sink=progress, event_sink=events)
            pool = ConversionPool(converter, max_workers=args.workers)
            outcomes = pool.run(jobs)
    except KeyboardInterrupt:
        if pool is not None:
            pool.cancel()
        log.warning("Conversion interrupted by user")
        return 130
    finally:
        encoder.cleanup_temporary_files()

    print_summary(outcomes)
    failed = [outcome for outcome in outcomes if not outcome.success]
    for outcome in failed:
        if not isinstance(outcome.error, HLSError):
            log.error("Unexpected failure for %s: %s", outcome.job.input_path, outcome.error)
    if failed:
        print_error(f"{len(failed)} of {len(outcomes)} conversion(s) failed")
        return 1
    print_success(f"Converted {len(outcomes)} video(s) into {args.output_root}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Unit tests for conversion orchestration and the retry policy"""

import threading
import unittest
from unittest.mock import MagicMock, patch

from hlsforge.analysis import MediaSource, ProbeResult
from hlsforge.config import HLSConfig
from hlsforge.exceptions import (
    ConversionCancelled, ConversionError, EncodeError, EncryptionError,
    InvalidResolutionFormat, ProbeError, StorageError,
)
from hlsforge.pipeline import ConversionRequest, Converter, convert_to_hls
from hlsforge.progress import estimate_time_remaining
from hlsforge.video.hardware import EncoderBackend


class FakeExport:
    def __init__(self, encoder, disk, path, output_disk):
        self.encoder = encoder
        self.disk = disk
        self.path = path
        self.output_disk = output_disk
        self.formats = []
        self.callbacks = []
        self.static_key = None
        self.rotating = None
        self.cleaned = False

    def add_formats(self, specs):
        self.formats.extend(specs)
        return self

    def on_progress(self, callback):
        self.callbacks.append(callback)
        return self

    def with_encryption_key(self, key, filename):
        self.static_key = (key, filename)
        return self

    def with_rotating_encryption_key(self, callback, segments_per_key=1):
        self.rotating = (callback, segments_per_key)
        return self

    def save(self, playlist_path, cancel_event=None):
        self.playlist_path = playlist_path
        for percent in (10.0, 55.5, 100.0):
            for callback in self.callbacks:
                callback(percent)
        outcome = self.encoder.outcomes.pop(0) if self.encoder.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        return playlist_path

    def cleanup(self):
        self.cleaned = True


class FakeEncoder:
    """Scripted encoder; outcomes are consumed one per attempt."""
    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.exports = []

    def export_for_hls(self, disk, path, output_disk, duration=0.0, has_audio=True):
        export = FakeExport(self, disk, path, output_disk)
        self.exports.append(export)
        return export


class TestConverter(unittest.TestCase):
    def setUp(self):
        self.storage = MagicMock()
        self.prober = MagicMock()
        self.prober.probe.return_value = ProbeResult(1280, 720, 3_000_000, 60.0, True)
        self.detector = MagicMock()
        self.detector.detect_best_backend.return_value = EncoderBackend.CPU
        self.progress = MagicMock()
        self.events = MagicMock()
        self.source = MediaSource("movie.mp4", key="movie-1")

    def converter(self, encoder, **config):
        return Converter(HLSConfig(**config), self.storage, encoder,
                         progress_sink=self.progress, event_sink=self.events,
                         prober=self.prober, detector=self.detector)

    def convert(self, encoder, **config):
        return self.converter(encoder, **config).convert("movie.mp4", "videos/1", self.source)

    def failed_event(self):
        self.events.conversion_failed.assert_called_once()
        self.events.conversion_completed.assert_not_called()
        return self.events.conversion_failed.call_args[0][0]

    def test_success(self):
        encoder = FakeEncoder()
        playlist = self.convert(encoder)

        self.assertEqual(playlist, "videos/1/hls/playlist.m3u8")
        self.assertEqual(len(encoder.exports), 1)
        export = encoder.exports[0]
        self.assertEqual([spec.label for spec in export.formats], ["360p", "480p", "720p"])
        self.assertEqual((export.disk, export.output_disk), ("public", "local"))
        self.assertIsNotNone(export.static_key)
        self.assertTrue(export.cleaned)

        event = self.events.conversion_completed.call_args[0][0]
        self.assertEqual(event.entity, "movie-1")
        self.assertEqual(event.backend, "cpu")
        self.assertIsNone(event.gpu_type)
        self.assertFalse(event.was_retry)
        self.assertEqual(event.video_info.resolution, "1280x720")
        self.assertEqual(event.playlist_path, playlist)
        self.events.conversion_failed.assert_not_called()

    def test_progress_reported_to_sink(self):
        self.convert(FakeEncoder())
        percents = [call[0][1] for call in self.progress.report.call_args_list]
        self.assertEqual(percents, [10.0, 55.5, 100.0])
        self.assertTrue(all(call[0][0] == "movie-1" for call in self.progress.report.call_args_list))

    def test_static_key_stored_on_secrets_disk(self):
        self.convert(FakeEncoder())
        disk, path, secret = self.storage.put.call_args[0]
        self.assertEqual(disk, "local")
        self.assertTrue(path.startswith("videos/1/secrets/secret_"))
        self.assertEqual(len(secret), 16)

    def test_encryption_retry_once_then_success(self):
        encoder = FakeEncoder([EncryptionError("key uri missing")])
        playlist = self.convert(encoder)

        self.assertEqual(playlist, "videos/1/hls/playlist.m3u8")
        self.assertEqual(len(encoder.exports), 2)
        self.assertIsNotNone(encoder.exports[0].static_key)
        self.assertIsNone(encoder.exports[1].static_key)
        self.assertTrue(all(export.cleaned for export in encoder.exports))
        self.assertTrue(self.events.conversion_completed.call_args[0][0].was_retry)

    def test_encryption_retry_bounded(self):
        error = EncryptionError("Invalid key info file")
        encoder = FakeEncoder([error, error, error])
        with self.assertRaises(ConversionError) as ctx:
            self.convert(encoder)

        self.assertEqual(len(encoder.exports), 2)
        self.assertIs(ctx.exception.cause, error)
        self.assertTrue(str(ctx.exception).startswith("HLS conversion failed: "))
        event = self.failed_event()
        self.assertEqual(event.error_message, str(ctx.exception))
        self.assertTrue(event.was_retry)

    def test_encryption_shaped_error_without_encryption_not_retried(self):
        encoder = FakeEncoder([EncodeError("ffmpeg exited with code 1", "invalid key")])
        with self.assertRaises(ConversionError):
            self.convert(encoder, enable_encryption=False)
        self.assertEqual(len(encoder.exports), 1)

    def test_config_snapshot_not_mutated_by_retry(self):
        converter = self.converter(FakeEncoder([EncryptionError("bad key")]))
        converter.convert("movie.mp4", "videos/1", self.source)
        self.assertTrue(converter.config.enable_encryption)

    def test_gpu_retry_once(self):
        self.detector.detect_best_backend.return_value = EncoderBackend.NVIDIA_NVENC
        encoder = FakeEncoder([EncodeError("nvenc init failed")])
        self.convert(encoder, use_gpu_acceleration=True)

        self.assertEqual(len(encoder.exports), 2)
        self.assertTrue(all(spec.backend is EncoderBackend.NVIDIA_NVENC for spec in encoder.exports[0].formats))
        self.assertTrue(all(spec.backend is EncoderBackend.CPU for spec in encoder.exports[1].formats))
        self.detector.detect_best_backend.assert_called_once_with()

        event = self.events.conversion_completed.call_args[0][0]
        self.assertEqual(event.backend, "cpu")
        self.assertTrue(event.was_retry)

    def test_gpu_retry_bounded(self):
        self.detector.detect_best_backend.return_value = EncoderBackend.NVIDIA_NVENC
        error = EncodeError("encode failed")
        encoder = FakeEncoder([error, error, error])
        with self.assertRaises(ConversionError):
            self.convert(encoder, use_gpu_acceleration=True)

        self.assertEqual(len(encoder.exports), 2)
        self.assertEqual(self.detector.detect_best_backend.call_count, 1)

    def test_encryption_then_gpu_retry(self):
        self.detector.detect_best_backend.return_value = EncoderBackend.APPLE_VIDEOTOOLBOX
        encoder = FakeEncoder([EncryptionError("bad key"), EncodeError("videotoolbox failed"),
                               EncodeError("libx264 failed")])
        with self.assertRaises(ConversionError) as ctx:
            self.convert(encoder, use_gpu_acceleration=True)

        self.assertEqual(len(encoder.exports), 3)
        self.assertEqual(str(ctx.exception), "HLS conversion failed: libx264 failed")
        self.assertIsNone(encoder.exports[1].static_key)
        self.assertIsNone(encoder.exports[2].static_key)
        self.assertTrue(all(spec.backend is EncoderBackend.CPU for spec in encoder.exports[2].formats))

    def test_cpu_failure_wrapped_without_retry(self):
        error = EncodeError("Conversion failed")
        encoder = FakeEncoder([error])
        with self.assertRaises(ConversionError) as ctx:
            self.convert(encoder)

        self.assertEqual(len(encoder.exports), 1)
        self.assertIs(ctx.exception.__cause__, error)
        event = self.failed_event()
        self.assertEqual(event.backend, "cpu")
        self.assertFalse(event.was_retry)
        self.assertTrue(encoder.exports[0].cleaned)

    def test_probe_error_not_wrapped(self):
        self.prober.probe.side_effect = ProbeError("Failed to open or probe video file.", "movie.mp4")
        encoder = FakeEncoder()
        with self.assertRaises(ProbeError):
            self.convert(encoder)

        self.assertEqual(encoder.exports, [])
        event = self.failed_event()
        self.assertIsNone(event.video_info)
        self.assertIsNone(event.backend)

    def test_invalid_resolution_not_wrapped(self):
        encoder = FakeEncoder()
        with self.assertRaises(InvalidResolutionFormat) as ctx:
            self.convert(encoder, resolutions={"720p": "1280:720"})
        self.assertEqual(ctx.exception.value, "1280:720")
        self.assertEqual(encoder.exports, [])
        self.failed_event()

    def test_cancel_not_retried(self):
        self.detector.detect_best_backend.return_value = EncoderBackend.NVIDIA_NVENC
        encoder = FakeEncoder([ConversionCancelled("cancelled")])
        with self.assertRaises(ConversionCancelled):
            self.convert(encoder, use_gpu_acceleration=True)
        self.assertEqual(len(encoder.exports), 1)
        self.assertTrue(encoder.exports[0].cleaned)

    def test_failed_event_sent_before_raise(self):
        order = []
        self.events.conversion_failed.side_effect = lambda event: order.append("event")
        try:
            self.convert(FakeEncoder([EncodeError("boom")]))
        except ConversionError:
            order.append("raised")
        self.assertEqual(order, ["event", "raised"])

    def test_delete_original_after_success(self):
        self.convert(FakeEncoder(), delete_original_file_after_conversion=True)
        self.storage.delete.assert_called_once_with("public", "movie.mp4")

    def test_failed_delete_does_not_reencode(self):
        self.detector.detect_best_backend.return_value = EncoderBackend.NVIDIA_NVENC
        self.storage.delete.side_effect = StorageError("permission denied")
        encoder = FakeEncoder()

        playlist = self.convert(encoder, use_gpu_acceleration=True, delete_original_file_after_conversion=True)

        self.assertEqual(playlist, "videos/1/hls/playlist.m3u8")
        self.assertEqual(len(encoder.exports), 1)
        self.storage.delete.assert_called_once_with("public", "movie.mp4")
        event = self.events.conversion_completed.call_args[0][0]
        self.assertEqual(event.backend, EncoderBackend.NVIDIA_NVENC.value)
        self.assertFalse(event.was_retry)
        self.events.conversion_failed.assert_not_called()

    def test_original_kept_on_failure(self):
        with self.assertRaises(ConversionError):
            self.convert(FakeEncoder([EncodeError("boom")]), delete_original_file_after_conversion=True)
        self.storage.delete.assert_not_called()

    def test_cancel_event_forwarded(self):
        encoder = FakeEncoder()
        cancel = threading.Event()
        seen = []
        original = FakeExport.save

        def save(export, playlist_path, cancel_event=None):
            seen.append(cancel_event)
            return original(export, playlist_path, cancel_event)

        converter = self.converter(encoder)
        with patch.object(FakeExport, "save", save):
            converter.convert("movie.mp4", "videos/1", self.source, cancel_event=cancel)
        self.assertEqual(seen, [cancel])

    def test_convert_to_hls_wrapper(self):
        with patch("hlsforge.pipeline.Converter") as mock_converter:
            mock_converter.return_value.convert.return_value = "videos/1/hls/playlist.m3u8"
            result = convert_to_hls("movie.mp4", "videos/1", self.source, HLSConfig(), self.storage)
        self.assertEqual(result, "videos/1/hls/playlist.m3u8")
        mock_converter.return_value.convert.assert_called_once_with(
            "movie.mp4", "videos/1", self.source, cancel_event=None)


class TestConversionRequest(unittest.TestCase):
    def test_derive_retry(self):
        request = ConversionRequest("a.mp4", "out", MediaSource("a.mp4"))
        retry = request.derive_retry()
        self.assertFalse(request.is_retry)
        self.assertTrue(retry.is_retry)
        self.assertEqual(retry.input_path, "a.mp4")

    def test_entity_defaults_to_input_path(self):
        self.assertEqual(ConversionRequest("a.mp4", "out", MediaSource("a.mp4")).entity, "a.mp4")


class TestTimeRemaining(unittest.TestCase):
    def test_zero_percent(self):
        self.assertEqual(estimate_time_remaining(30.0, 0.0), 0.0)

    def test_halfway(self):
        self.assertEqual(estimate_time_remaining(30.0, 50.0), 30.0)

    def test_complete(self):
        self.assertEqual(estimate_time_remaining(30.0, 100.0), 0.0)


if __name__ == "__main__":
    unittest.main()

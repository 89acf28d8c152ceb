"""Unit tests for rendition planning"""

import unittest
from unittest.mock import MagicMock

import pytest

from hlsforge.analysis import MediaSource, VideoInfo
from hlsforge.config import HLSConfig
from hlsforge.exceptions import InvalidResolutionFormat
from hlsforge.pipeline import ConversionRequest
from hlsforge.video.formats import (
    GPUSettings, build_encoder_parameters, parse_resolution, plan_formats,
    render_resolution, resolve_gpu_settings, scale_argument,
)
from hlsforge.video.hardware import EncoderBackend

LADDER = {
    "360p": "640x360",
    "480p": "854x480",
    "720p": "1280x720",
    "1080p": "1920x1080",
}


def video_info(width, height, bitrate_kbps=3000):
    return VideoInfo(
        width=width,
        height=height,
        bitrate_kbps=bitrate_kbps,
        video_disk="public",
        hls_disk="local",
        secrets_disk="local",
        hls_output_path="hls",
        secrets_output_path="secrets",
    )


def make_request(is_retry=False):
    return ConversionRequest("in.mp4", "out", MediaSource("in.mp4"), is_retry=is_retry)


def make_detector(backend=EncoderBackend.CPU):
    detector = MagicMock()
    detector.detect_best_backend.return_value = backend
    return detector


class TestPlanFormats(unittest.TestCase):
    def setUp(self):
        self.config = HLSConfig(resolutions=dict(LADDER))

    def test_ladder_filtered_by_source_height(self):
        formats = plan_formats(video_info(1280, 720), make_request(), make_detector(), self.config)
        self.assertEqual([spec.label for spec in formats], ["360p", "480p", "720p"])
        self.assertTrue(all(spec.height <= 720 for spec in formats))

    def test_fallback_to_source_resolution(self):
        formats = plan_formats(video_info(256, 144, 400), make_request(), make_detector(), self.config)
        self.assertEqual(len(formats), 1)
        spec = formats[0]
        self.assertIsNone(spec.label)
        self.assertEqual(spec.name, "original")
        self.assertEqual((spec.width, spec.height), (256, 144))
        self.assertEqual(spec.bitrate_kbps, 400)

    def test_fallback_without_source_bitrate_uses_default(self):
        formats = plan_formats(video_info(256, 144, 0), make_request(), make_detector(), self.config)
        self.assertEqual(formats[0].bitrate_kbps, 1000)

    def test_bitrates_from_table(self):
        formats = plan_formats(video_info(1920, 1080), make_request(), make_detector(), self.config)
        self.assertEqual({spec.label: spec.bitrate_kbps for spec in formats},
                         {"360p": 600, "480p": 1000, "720p": 2500, "1080p": 4500})

    def test_missing_bitrate_uses_default(self):
        config = self.config.replace(resolutions={"540p": "960x540"}, bitrates={})
        formats = plan_formats(video_info(1920, 1080), make_request(), make_detector(), config)
        self.assertEqual(formats[0].bitrate_kbps, 1000)

    def test_invalid_resolution_names_string(self):
        config = self.config.replace(resolutions={"720p": "1280x720", "bad": "1280-720"})
        with self.assertRaises(InvalidResolutionFormat) as ctx:
            plan_formats(video_info(1920, 1080), make_request(), make_detector(), config)
        self.assertEqual(ctx.exception.value, "1280-720")
        self.assertIn("1280-720", str(ctx.exception))

    def test_invalid_resolution_raised_even_when_taller_than_source(self):
        config = self.config.replace(resolutions={"4k": "3840xabc"})
        with self.assertRaises(InvalidResolutionFormat):
            plan_formats(video_info(640, 360), make_request(), make_detector(), config)

    def test_gpu_not_requested_skips_detector(self):
        detector = make_detector(EncoderBackend.NVIDIA_NVENC)
        formats = plan_formats(video_info(1280, 720), make_request(), detector, self.config)
        detector.detect_best_backend.assert_not_called()
        self.assertTrue(all(spec.backend is EncoderBackend.CPU for spec in formats))

    def test_gpu_detected_once_per_pass(self):
        config = self.config.replace(use_gpu_acceleration=True)
        detector = make_detector(EncoderBackend.NVIDIA_NVENC)
        formats = plan_formats(video_info(1920, 1080), make_request(), detector, config)
        detector.detect_best_backend.assert_called_once_with()
        self.assertTrue(all(spec.backend is EncoderBackend.NVIDIA_NVENC for spec in formats))

    def test_retry_forces_cpu(self):
        config = self.config.replace(use_gpu_acceleration=True)
        detector = make_detector(EncoderBackend.NVIDIA_NVENC)
        formats = plan_formats(video_info(1280, 720), make_request(is_retry=True), detector, config)
        detector.detect_best_backend.assert_not_called()
        self.assertTrue(all(spec.backend is EncoderBackend.CPU for spec in formats))

    def test_gpu_requested_but_unavailable(self):
        config = self.config.replace(use_gpu_acceleration=True)
        formats = plan_formats(video_info(1280, 720), make_request(), make_detector(), config)
        self.assertTrue(all(not spec.backend.is_gpu for spec in formats))


class TestEncoderParameters(unittest.TestCase):
    def test_cpu(self):
        params = dict(build_encoder_parameters(EncoderBackend.CPU, 2500))
        self.assertEqual(params, {"c:v": "libx264", "preset": "veryfast", "crf": "22", "b:v": "2500k"})

    def test_nvenc(self):
        params = dict(build_encoder_parameters(
            EncoderBackend.NVIDIA_NVENC, 2500, GPUSettings("auto", "slow", "main")))
        self.assertEqual(params["c:v"], "h264_nvenc")
        self.assertEqual(params["preset"], "slow")
        self.assertEqual(params["profile:v"], "main")
        self.assertEqual(params["rc"], "cbr")
        self.assertEqual(params["maxrate"], "2500k")
        self.assertEqual(params["bufsize"], "5000k")
        self.assertNotIn("gpu", params)

    def test_nvenc_explicit_device(self):
        params = dict(build_encoder_parameters(
            EncoderBackend.NVIDIA_NVENC, 600, GPUSettings("1", "fast", "high")))
        self.assertEqual(params["gpu"], "1")

    def test_videotoolbox(self):
        params = dict(build_encoder_parameters(EncoderBackend.APPLE_VIDEOTOOLBOX, 1000))
        self.assertEqual(params["c:v"], "h264_videotoolbox")
        self.assertEqual(params["profile:v"], "main")
        self.assertEqual(params["realtime"], "true")
        self.assertEqual(params["allow_sw"], "1")
        self.assertEqual(params["bufsize"], "2000k")

    def test_invalid_gpu_settings_corrected(self):
        config = HLSConfig(gpu_preset="turbo", gpu_profile="extreme", gpu_device="0")
        self.assertEqual(resolve_gpu_settings(config), GPUSettings("0", "fast", "high"))

    def test_valid_gpu_settings_kept(self):
        config = HLSConfig(gpu_preset="llhq", gpu_profile="baseline")
        self.assertEqual(resolve_gpu_settings(config), GPUSettings("auto", "llhq", "baseline"))


@pytest.mark.parametrize("width,height", [(1, 1), (640, 360), (1920, 1080), (7680, 4320)])
def test_resolution_round_trip(width, height):
    assert parse_resolution(render_resolution(width, height)) == (width, height)


@pytest.mark.parametrize("value", ["1280", "1280x", "x720", "axb", "1280X720", "1280 x 720", "1280x720p", ""])
def test_invalid_resolution_strings(value):
    with pytest.raises(InvalidResolutionFormat) as excinfo:
        parse_resolution(value)
    assert excinfo.value.value == value


def test_scale_argument():
    assert scale_argument("854x480") == "854:480"


if __name__ == "__main__":
    unittest.main()

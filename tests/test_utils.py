"""Unit tests for subprocess and formatting helpers"""

import logging
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from rich.logging import RichHandler

from hlsforge.logging import configure_logging
from hlsforge.utils import command_output, format_duration, run_cmd


class TestUtils(unittest.TestCase):
    @patch("hlsforge.utils.subprocess.run")
    def test_command_output_combines_streams(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["x"], 1, stdout="out\n", stderr="err\n")
        self.assertEqual(command_output(["x"], timeout=3), "out\nerr\n")
        mock_run.assert_called_once_with(["x"], capture_output=True, check=False, text=True, timeout=3)

    @patch("hlsforge.utils.subprocess.run")
    def test_run_cmd_raises_on_failure(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["x"], stderr="bad")
        with self.assertRaises(subprocess.CalledProcessError):
            run_cmd(["x"])

    @patch("hlsforge.utils.subprocess.run")
    def test_command_output_propagates_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(["x"], 3)
        with self.assertRaises(subprocess.TimeoutExpired):
            command_output(["x"], timeout=3)

    def test_format_duration(self):
        self.assertEqual(format_duration(59.9), "0:00:59")
        self.assertEqual(format_duration(3600), "1:00:00")
        self.assertEqual(format_duration(-4), "0:00:00")


class TestConfigureLogging(unittest.TestCase):
    def tearDown(self):
        configure_logging("WARNING")

    def test_debug_flag_lowers_level(self):
        logger = configure_logging("INFO", debug=True)
        self.assertEqual(logger.level, logging.DEBUG)

    def test_handlers_replaced_not_stacked(self):
        configure_logging("INFO")
        logger = configure_logging("INFO")
        self.assertEqual(len(logger.handlers), 1)
        self.assertIsInstance(logger.handlers[0], RichHandler)

    def test_file_handler(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_file = Path(tmp) / "logs" / "hlsforge.log"
            logger = configure_logging("INFO", log_file=log_file)
            logging.getLogger("hlsforge.pipeline").info("written to file")
            for handler in logger.handlers:
                handler.flush()
            self.assertIn("hlsforge.pipeline - INFO - written to file", log_file.read_text())
            configure_logging("WARNING")


if __name__ == "__main__":
    unittest.main()

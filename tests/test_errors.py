"""Unit tests for error classification of tool output."""
from __future__ import annotations

import unittest

from grablink.core.errors import ErrorKind, GrabError, classify, classify_ffmpeg


class TestClassify(unittest.TestCase):
    """Ordered rules map raw yt-dlp output to error kinds."""

    def test_representative_messages(self) -> None:
        cases: dict[str, ErrorKind] = {
            "ERROR: [youtube] abc: Video unavailable": ErrorKind.VIDEO_NOT_FOUND,
            "ERROR: [youtube] abc: Private video. Sign in if you've been granted access": ErrorKind.VIDEO_NOT_FOUND,
            "ERROR: Sign in to confirm your age": ErrorKind.AGE_RESTRICTED,
            "ERROR: unable to download video data: HTTP Error 429: Too Many Requests": ErrorKind.RATE_LIMITED,
            "ERROR: Requested format is not available": ErrorKind.UNSUPPORTED_QUALITY,
            "ERROR: HTTP Error 404: Not Found": ErrorKind.VIDEO_NOT_FOUND,
            "ERROR: Read timed out.": ErrorKind.TIMEOUT,
            "ERROR: Unable to download webpage: <urlopen error [Errno -3] Temporary failure in name resolution>": ErrorKind.NETWORK_ERROR,
            "/usr/bin/python3: No module named yt_dlp": ErrorKind.COMMAND_NOT_FOUND,
        }
        for text, expected in cases.items():
            with self.subTest(text=text):
                self.assertEqual(classify(text, 1).kind, expected)

    def test_exit_code_127_is_missing_tool(self) -> None:
        self.assertEqual(classify("", 127).kind, ErrorKind.COMMAND_NOT_FOUND)

    def test_order_specific_before_generic(self) -> None:
        # "unavailable" would also match the format rule; the earlier rule wins.
        err: GrabError = classify("ERROR: This video is unavailable in your format", 1)
        self.assertEqual(err.kind, ErrorKind.VIDEO_NOT_FOUND)

    def test_fallback_keeps_raw_output(self) -> None:
        err: GrabError = classify("something odd\nERROR: weird failure\nmore text", 2)
        self.assertEqual(err.kind, ErrorKind.EXTRACTION_FAILED)
        self.assertEqual(err.message, "ERROR: weird failure")
        self.assertIn("weird failure", err.details["raw"])
        self.assertEqual(err.details["returncode"], 2)
        self.assertFalse(err.retryable)

    def test_retryable_kinds(self) -> None:
        self.assertTrue(classify("HTTP Error 429", 1).retryable)
        self.assertTrue(classify("connection reset by peer", 1).retryable)
        self.assertFalse(classify("Video unavailable", 1).retryable)

    def test_to_info(self) -> None:
        info = GrabError(ErrorKind.TIMEOUT, "slow", {"timeout": 5}).to_info()
        self.assertEqual(info.code, ErrorKind.TIMEOUT)
        self.assertEqual(info.details, {"timeout": 5})
        self.assertIsNone(GrabError(ErrorKind.TIMEOUT, "slow").to_info().details)


class TestClassifyFfmpeg(unittest.TestCase):
    def test_ffmpeg_rules(self) -> None:
        self.assertEqual(classify_ffmpeg("ffmpeg: not found", 127).kind, ErrorKind.COMMAND_NOT_FOUND)
        self.assertEqual(classify_ffmpeg("in.mp4: No such file or directory", 1).kind, ErrorKind.FILE_NOT_FOUND)
        self.assertEqual(
            classify_ffmpeg("Invalid data found when processing input", 1).kind,
            ErrorKind.AUDIO_EXTRACTION_FAILED,
        )
        self.assertEqual(classify_ffmpeg("mystery", 1).kind, ErrorKind.AUDIO_EXTRACTION_FAILED)


if __name__ == "__main__":
    unittest.main()

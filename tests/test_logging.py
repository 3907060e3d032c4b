"""Unit tests for the JSON log formatter."""
from __future__ import annotations

import json
import logging
import unittest
from pathlib import Path
from typing import Any

from grablink.core.logging import JsonFormatter


def render(**extra: Any) -> dict[str, Any]:
    record: logging.LogRecord = logging.getLogger("grablink.test").makeRecord(
        "grablink.test", logging.INFO, __file__, 10, "Downloaded %s", ("clip",), None, extra=extra
    )
    return json.loads(JsonFormatter("grablink-test").format(record))


class TestJsonFormatter(unittest.TestCase):
    def test_fixed_keys(self) -> None:
        payload = render()
        self.assertEqual(payload["message"], "Downloaded clip")
        self.assertEqual(payload["level"], "INFO")
        self.assertEqual(payload["service"], "grablink-test")
        self.assertEqual(payload["logger"], "grablink.test")

    def test_extra_fields_are_merged_and_stringified(self) -> None:
        payload = render(download_id="dl_1_abc", path=Path("/tmp/x.mp4"), attempt=2)
        self.assertEqual(payload["download_id"], "dl_1_abc")
        self.assertEqual(payload["path"], "/tmp/x.mp4")
        self.assertEqual(payload["attempt"], 2)
        self.assertNotIn("args", payload)
        self.assertNotIn("msg", payload)


if __name__ == "__main__":
    unittest.main()

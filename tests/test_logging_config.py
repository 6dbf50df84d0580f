import json
import shutil
import sys
import unittest
from pathlib import Path
from uuid import uuid4

from loguru import logger

from opencode_serve_client.logging_config import client_logger, setup_logging

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class SetupLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"logging-{uuid4().hex}"

    def tearDown(self) -> None:
        logger.remove()
        logger.add(sys.stderr)
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def test_registers_configured_consumers(self) -> None:
        log_path = self._tmp_dir / "client.log"

        descriptions = setup_logging(
            "DEBUG",
            [
                {"type": "console", "level": "WARNING"},
                {"type": "file", "path": str(log_path)},
                {"type": "syslog"},
            ],
        )
        logger.debug("GET /session")
        logger.remove()

        self.assertEqual(["console (stderr, WARNING)", f"file ({log_path}, DEBUG)"], descriptions)
        self.assertIn("GET /session", log_path.read_text())

    def test_records_name_the_server_they_concern(self) -> None:
        log_path = self._tmp_dir / "client.log"
        setup_logging("DEBUG", [{"type": "file", "path": str(log_path)}])

        client_logger("http://localhost:4096").info("Created session ses_1")
        logger.info("Unbound record")
        logger.remove()

        lines = log_path.read_text().splitlines()
        self.assertIn("| http://localhost:4096 |", lines[0])
        self.assertIn("Created session ses_1", lines[0])
        self.assertIn("| - |", lines[1])

    def test_serialized_file_sink_keeps_base_url(self) -> None:
        log_path = self._tmp_dir / "client.jsonl"

        descriptions = setup_logging("INFO", [{"type": "file", "path": str(log_path), "serialize": True}])
        client_logger("http://localhost:4096").warning("Event stream disconnected")
        logger.remove()

        record = json.loads(log_path.read_text().splitlines()[0])["record"]
        self.assertEqual([f"jsonl ({log_path}, INFO)"], descriptions)
        self.assertEqual("http://localhost:4096", record["extra"]["base_url"])
        self.assertEqual("Event stream disconnected", record["message"])


if __name__ == "__main__":
    unittest.main()

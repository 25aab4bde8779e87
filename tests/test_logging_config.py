import json
import tempfile
import unittest
from pathlib import Path

from loguru import logger

from practice_coach.logging_config import setup_logging


class SetupLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self) -> None:
        logger.remove()
        self._tmp.cleanup()

    def test_file_sink_shows_bound_session_or_placeholder(self) -> None:
        path = self.dir / "logs" / "coach.log"
        descriptions = setup_logging("DEBUG", [{"type": "file", "path": str(path)}])

        logger.bind(session_id=7).info("turn started")
        logger.info("server started")
        logger.remove()

        lines = path.read_text().splitlines()
        self.assertEqual([f"file ({path}, DEBUG)"], descriptions)
        self.assertIn("session=7", lines[0])
        self.assertIn("turn started", lines[0])
        self.assertIn("session=-", lines[1])

    def test_json_sink_serializes_extras(self) -> None:
        path = self.dir / "coach.jsonl"
        setup_logging("INFO", [{"type": "json", "path": str(path)}])

        logger.bind(session_id=3, user_id="u-1").warning("quota low")
        logger.debug("filtered out")
        logger.remove()

        [line] = path.read_text().splitlines()
        record = json.loads(line)["record"]
        self.assertEqual("quota low", record["message"])
        self.assertEqual({"session_id": 3, "user_id": "u-1"}, record["extra"])

    def test_per_sink_level_and_unknown_types(self) -> None:
        path = self.dir / "errors.log"
        descriptions = setup_logging(
            "DEBUG",
            [{"type": "syslog"}, {"type": "file", "path": str(path), "level": "ERROR"}],
        )

        logger.warning("not an error")
        logger.error("broken")
        logger.remove()

        self.assertEqual([f"file ({path}, ERROR)"], descriptions)
        self.assertEqual(1, len(path.read_text().splitlines()))

"""Test harness orchestration."""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from typing import Optional

from roomscribe.tests.base import TestSuite


def registered_suites() -> dict[str, type[TestSuite]]:
    from roomscribe.tests.suites.audio_sources import AudioSourcesSuite
    from roomscribe.tests.suites.composite import CompositeSuite
    from roomscribe.tests.suites.config import ConfigSuite
    from roomscribe.tests.suites.membership import MembershipSuite
    from roomscribe.tests.suites.orchestrator import OrchestratorSuite
    from roomscribe.tests.suites.segment_capture import SegmentCaptureSuite
    from roomscribe.tests.suites.transcript import TranscriptSuite
    from roomscribe.tests.suites.transport import TransportSuite

    suites: list[type[TestSuite]] = [
        AudioSourcesSuite,
        CompositeSuite,
        SegmentCaptureSuite,
        TransportSuite,
        TranscriptSuite,
        MembershipSuite,
        OrchestratorSuite,
        ConfigSuite,
    ]
    return {suite.suite_id: suite for suite in suites}


class TestHarness:
    """Runs registered suites in-process and logs each run to its own file."""

    __test__ = False

    def __init__(self, logs_dir: str):
        self.logs_dir = logs_dir
        self.suites = registered_suites()
        self.logger = logging.getLogger("roomscribe.test.harness")

    def get_available_suites(self) -> list[dict]:
        return [suite_class().get_info() for suite_class in self.suites.values()]

    def _create_test_logger(self, name: str, console: bool = True) -> tuple[logging.Logger, str]:
        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        os.makedirs(self.logs_dir, exist_ok=True)
        log_file = os.path.join(self.logs_dir, f"test_{name}_{timestamp}.log")

        logger = logging.getLogger(f"roomscribe.test.{name}")
        logger.setLevel(logging.DEBUG)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("[%(asctime)s] [%(name)s] %(message)s", datefmt="%H:%M:%S")
        )
        logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(
                logging.Formatter("[%(asctime)s] [TEST] %(message)s", datefmt="%H:%M:%S")
            )
            logger.addHandler(console_handler)

        return logger, log_file

    async def run_suite(self, suite_id: str, logger: Optional[logging.Logger] = None) -> dict:
        if suite_id not in self.suites:
            return {
                "status": "error",
                "message": f"Unknown suite: {suite_id}",
                "available": list(self.suites),
            }

        log_file = None
        if logger is None:
            logger, log_file = self._create_test_logger(suite_id)
            logger.info(f"Log file: {log_file}")

        suite = self.suites[suite_id](logger=logger)
        result = await suite.run()
        logger.debug("JSON RESULT:\n%s", json.dumps(result.to_dict(), indent=2))

        return {
            "status": "ok",
            "log_file": log_file,
            "result": result.to_dict(),
        }

    async def run_all(self) -> dict:
        logger, log_file = self._create_test_logger("all", console=False)
        logger.info("RUNNING ALL TEST SUITES")

        all_results = []
        totals = {"total_passed": 0, "total_failed": 0, "total_skipped": 0, "total_error": 0}
        for suite_id in self.suites:
            outcome = await self.run_suite(suite_id, logger=logger)
            result = outcome["result"]
            all_results.append(result)
            totals["total_passed"] += result["passed"]
            totals["total_failed"] += result["failed"]
            totals["total_skipped"] += result["skipped"]
            totals["total_error"] += result["error"]

        logger.info(
            "Total: %d passed, %d failed, %d skipped, %d errors across %d suites",
            totals["total_passed"],
            totals["total_failed"],
            totals["total_skipped"],
            totals["total_error"],
            len(all_results),
        )
        return {"status": "ok", "log_file": log_file, **totals, "suites": all_results}
